"""Pytest configuration and fixtures."""

import datetime
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from velociraptor_console.config import Settings
from velociraptor_console.credentials import CredentialStore
from velociraptor_console.keychain import MemorySecretStore

SERVER_URL = "https://vr.test"


@dataclass
class CertificateFiles:
    certificate_path: Path
    key_path: Path
    certificate_pem: str
    key_pem: str
    expires_at: datetime.datetime


def make_certificate(
    common_name: str = "Velociraptor Test Client",
    valid_days: int = 30,
) -> tuple[str, str, datetime.datetime]:
    """Mint a self-signed EC certificate; returns (cert PEM, key PEM, notAfter)."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    not_after = now + datetime.timedelta(days=valid_days)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(min(now, not_after) - datetime.timedelta(days=1))
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return cert_pem, key_pem, not_after


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retries/reconnects and no environment file."""
    return Settings(
        _env_file=None,
        request_timeout=5.0,
        connect_timeout=2.0,
        max_retries=3,
        retry_base_delay=0.0,
        heartbeat_interval=3600.0,
        pong_timeout=1.0,
        max_reconnect_attempts=3,
        reconnect_base_delay=0.0,
        recent_events_limit=100,
        process_terminate_timeout=2.0,
    )


@pytest.fixture
def secret_store() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def credential_store(secret_store: MemorySecretStore) -> CredentialStore:
    return CredentialStore(secret_store)


@pytest.fixture
def cert_files(tmp_path: Path) -> CertificateFiles:
    """A matching certificate/key pair written to PEM files."""
    cert_pem, key_pem, not_after = make_certificate()
    certificate_path = tmp_path / "client.crt"
    key_path = tmp_path / "client.key"
    certificate_path.write_text(cert_pem)
    key_path.write_text(key_pem)
    return CertificateFiles(certificate_path, key_path, cert_pem, key_pem, not_after)


# Stands in for the velociraptor executable: records its arguments next to
# itself, then emits rows in the requested format.
FAKE_BINARY = """\
#!{python}
import json
import sys
import time

args = sys.argv[1:]
with open(__file__ + ".args", "w") as f:
    json.dump(args, f)

query = args[-1]
output_format = args[args.index("--format") + 1]

if query == "fail":
    sys.stderr.write("query failed: syntax error\\n")
    sys.exit(3)

if query == "hang":
    sys.stdout.write(json.dumps({{"a": 1}}) + "\\n")
    sys.stdout.flush()
    time.sleep(30)
    sys.exit(0)

rows = [{{"b": 1, "a": "x"}}, {{"a": "y", "c": True}}, {{"a": None, "b": [1, 2]}}]

if output_format == "json":
    sys.stdout.write(json.dumps(rows))
    sys.exit(0)

lines = [json.dumps(rows[0]), "WARNING: not json", json.dumps(rows[1]), "", json.dumps(rows[2])]
data = "\\n".join(lines)
if query != "no trailing newline":
    data += "\\n"
for i in range(0, len(data), 7):
    sys.stdout.write(data[i:i + 7])
    sys.stdout.flush()
    time.sleep(0.001)
"""


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    path = tmp_path / "velociraptor"
    path.write_text(FAKE_BINARY.format(python=sys.executable))
    path.chmod(0o755)
    return path
