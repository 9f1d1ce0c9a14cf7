"""Client identity construction for mutual TLS.

A ClientIdentity bundles a parsed X.509 certificate, its private key and an
ssl.SSLContext that presents them. Certificate and key may be PEM or DER.
"""

import os
import ssl
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509.oid import NameOID

from .errors import IdentityError

logger = structlog.get_logger(__name__)

_PEM_MARKER = b"-----BEGIN"


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse a PEM or DER encoded certificate."""
    try:
        if _PEM_MARKER in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise IdentityError(f"Invalid certificate format (expected PEM or DER): {e}") from e


def load_private_key(data: bytes) -> PrivateKeyTypes:
    """Parse an unencrypted PEM or DER encoded private key."""
    try:
        if _PEM_MARKER in data:
            return serialization.load_pem_private_key(data, password=None)
        return serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise IdentityError(f"Invalid key format (expected PEM or DER): {e}") from e


def certificate_expiry(pem: str) -> datetime | None:
    """Return the notAfter of a PEM certificate, or None if it cannot be parsed."""
    try:
        cert = x509.load_pem_x509_certificate(pem.encode())
    except ValueError:
        logger.debug("certificate_expiry_unavailable")
        return None
    return cert.not_valid_after_utc


def _public_key_der(key: object) -> bytes:
    return key.public_bytes(  # type: ignore[attr-defined]
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


@dataclass(frozen=True)
class ClientIdentity:
    """Certificate + key pair usable as a TLS client identity."""

    certificate: x509.Certificate
    private_key: PrivateKeyTypes
    ssl_context: ssl.SSLContext

    @property
    def common_name(self) -> str | None:
        names = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(names[0].value) if names else None

    @property
    def expires_at(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= datetime.now(timezone.utc)

    @classmethod
    def from_bytes(
        cls,
        cert_data: bytes,
        key_data: bytes,
        ca_data: bytes | None = None,
    ) -> "ClientIdentity":
        """Build an identity from raw certificate/key bytes.

        Raises:
            IdentityError: If the data is malformed, the key does not belong
                to the certificate, or the TLS layer rejects the pair
        """
        certificate = load_certificate(cert_data)
        private_key = load_private_key(key_data)

        if _public_key_der(private_key) != _public_key_der(certificate.public_key()):
            raise IdentityError("Private key does not match certificate")

        cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        key_pem = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

        try:
            if ca_data is not None:
                ca_pem = load_certificate(ca_data).public_bytes(serialization.Encoding.PEM)
                context = ssl.create_default_context(cadata=ca_pem.decode())
            else:
                context = ssl.create_default_context()

            # ssl only loads chains from files; they are removed once loaded
            with tempfile.TemporaryDirectory(prefix="velociraptor-identity-") as tmpdir:
                cert_file = Path(tmpdir) / "client.crt"
                key_file = Path(tmpdir) / "client.key"
                _write_private(cert_file, cert_pem)
                _write_private(key_file, key_pem)
                context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))
        except ssl.SSLError as e:
            raise IdentityError(f"Failed to create identity from certificate and key: {e}") from e

        identity = cls(certificate=certificate, private_key=private_key, ssl_context=context)
        logger.info(
            "client_identity_created",
            common_name=identity.common_name,
            expires_at=identity.expires_at.isoformat(),
        )
        return identity

    @classmethod
    def from_files(
        cls,
        certificate_path: str | Path,
        key_path: str | Path,
        ca_path: str | Path | None = None,
    ) -> "ClientIdentity":
        """Read certificate/key files and build an identity."""
        try:
            cert_data = Path(certificate_path).read_bytes()
            key_data = Path(key_path).read_bytes()
            ca_data = Path(ca_path).read_bytes() if ca_path else None
        except OSError as e:
            raise IdentityError(f"Failed to read certificate material: {e}") from e
        return cls.from_bytes(cert_data, key_data, ca_data)
