"""Certificate extraction commands."""

from pathlib import Path
from typing import Optional

import typer

from ..errors import VelociraptorError
from ..main import state
from ..output import print_dict, print_error, print_json, print_success, print_warning
from ..session import get_session


app = typer.Typer(
    name="certs",
    help="Work with certificates embedded in server configuration files",
    no_args_is_help=True,
)


@app.command("extract")
def extract(
    config_path: Path = typer.Argument(..., help="Server or API client configuration file"),
    configure: bool = typer.Option(
        False, "--configure",
        help="Activate the extracted certificate as mTLS credentials"
    ),
    server: Optional[str] = typer.Option(
        None, "--server", "-s",
        help="Server URL for --configure (default: https://127.0.0.1:<gui port>)"
    ),
) -> None:
    """Show the client certificate found in a configuration file.

    Private key material is never printed.
    """
    session = get_session()
    try:
        credentials = None
        if configure:
            credentials = session.bridge.configure_mtls_from_config(
                config_path, session.credentials, server_url=server
            )
            bundle = session.bridge.extracted_certificates
        else:
            bundle = session.bridge.extract_certificates(config_path)
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    data = {
        "common_name": bundle.common_name,
        "expires_at": bundle.expires_at.isoformat() if bundle.expires_at else None,
        "valid": bundle.is_valid,
    }
    if credentials is not None:
        data["server_url"] = credentials.server_url

    if state.json_output:
        print_json(data)
        return

    print_dict(data, title="Client Certificate")
    if not bundle.is_valid:
        print_warning("Certificate has expired")
    if credentials is not None:
        print_success(f"mTLS credentials configured for {credentials.server_url}")
