"""Credential management commands."""

from typing import Optional

import typer

from ..credentials import ApiKeyAuth, AuthMethod, BasicAuth, MTLSAuth
from ..errors import VelociraptorError
from ..log import mask_secret
from ..main import state
from ..output import print_dict, print_error, print_info, print_json, print_success
from ..session import get_session


app = typer.Typer(
    name="auth",
    help="Configure how the console authenticates to the server",
    no_args_is_help=True,
)


def _configure(server_url: str, method: AuthMethod) -> None:
    session = get_session()
    try:
        credentials = session.credentials.configure(server_url, method)
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if state.json_output:
        print_json({
            "success": True,
            "server_url": credentials.server_url,
            "method": credentials.method_name,
        })
    else:
        print_success(f"Credentials saved ({credentials.method_name}) for {credentials.server_url}")


@app.command("api-key")
def api_key(
    server: str = typer.Option(..., "--server", "-s", help="Server base URL"),
    token: str = typer.Option(
        ..., "--token", "-t", prompt=True, hide_input=True, help="API token"
    ),
) -> None:
    """Authenticate with a bearer API token."""
    _configure(server, ApiKeyAuth(token))


@app.command("basic")
def basic(
    server: str = typer.Option(..., "--server", "-s", help="Server base URL"),
    username: str = typer.Option(..., "--username", "-u", help="Username"),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, help="Password"
    ),
) -> None:
    """Authenticate with username and password."""
    _configure(server, BasicAuth(username, password))


@app.command("mtls")
def mtls(
    server: str = typer.Option(..., "--server", "-s", help="Server base URL"),
    cert: str = typer.Option(..., "--cert", help="Client certificate file (PEM or DER)"),
    key: str = typer.Option(..., "--key", help="Client private key file (PEM or DER)"),
    ca: Optional[str] = typer.Option(None, "--ca", help="CA certificate to verify the server"),
) -> None:
    """Authenticate with a client certificate (mutual TLS)."""
    _configure(server, MTLSAuth(cert, key, ca))


@app.command("show")
def show() -> None:
    """Show the active credentials (secrets masked)."""
    credentials = get_session().credentials.current_credentials()

    if credentials is None:
        if state.json_output:
            print_json({"configured": False})
        else:
            print_info("No credentials configured. Use: velociraptor-console auth api-key --server <url>")
        return

    method = credentials.auth_method
    data: dict = {
        "configured": True,
        "server_url": credentials.server_url,
        "method": credentials.method_name,
    }
    if isinstance(method, ApiKeyAuth):
        data["token"] = mask_secret(method.token)
    elif isinstance(method, BasicAuth):
        data["username"] = method.username
        data["password"] = "*" * 8
    else:
        data["certificate"] = method.certificate_path
        data["key"] = method.key_path
        data["ca_certificate"] = method.ca_path

    if state.json_output:
        print_json(data)
    else:
        print_dict(data, title="Credentials")


@app.command("clear")
def clear(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Remove all stored credentials."""
    if not force:
        typer.confirm("Remove all stored credentials?", abort=True)

    try:
        get_session().credentials.clear_credentials()
    except VelociraptorError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if state.json_output:
        print_json({"success": True})
    else:
        print_success("Credentials cleared")
