"""Transport credentials: plaintext or TLS.

A Credential is an immutable bundle. A server TLS credential carries the
certificate it presents and the private key that proves possession of it;
a client TLS credential carries only the certificate it trusts to identify
the server, never a key.
"""

from __future__ import annotations

import logging
import ssl
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from unarpc.certs import (
    key_matches_certificate,
    load_certificate,
    load_private_key,
    read_pem,
    subject_names,
)
from unarpc.error import CredentialLoadError

logger = logging.getLogger(__name__)


class CredentialKind(Enum):
    INSECURE = "insecure"
    TLS = "tls"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Credential:
    """Opaque credential material owned by a single connection."""

    kind: CredentialKind
    certificate_pem: bytes | None = field(default=None, repr=False)
    private_key_pem: bytes | None = field(default=None, repr=False)
    identities: tuple[str, ...] = ()

    @property
    def is_secure(self) -> bool:
        return self.kind is CredentialKind.TLS

    @property
    def is_server(self) -> bool:
        return self.private_key_pem is not None

    @staticmethod
    def from_pem(certificate_pem: bytes, private_key_pem: bytes | None = None) -> Credential:
        """Build a TLS credential from in-memory PEM blobs.

        Raises:
            CredentialLoadError: If the certificate or key is invalid, or the
                key does not belong to the certificate
        """
        cert = load_certificate(certificate_pem)
        if private_key_pem is not None:
            key = load_private_key(private_key_pem)
            if not key_matches_certificate(key, cert):
                msg = "private key does not match certificate"
                raise CredentialLoadError(msg)
        return Credential(
            CredentialKind.TLS,
            certificate_pem,
            private_key_pem,
            tuple(subject_names(cert)),
        )

    def server_ssl_context(self) -> ssl.SSLContext:
        """Build the server-side SSL context.

        Raises:
            CredentialLoadError: If this is not a server TLS credential or
                the material is rejected by the TLS library
        """
        if not self.is_secure or self.private_key_pem is None or self.certificate_pem is None:
            msg = "a server TLS credential needs a certificate and a private key"
            raise CredentialLoadError(msg)

        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        # load_cert_chain only reads files
        with tempfile.TemporaryDirectory(prefix="unarpc-") as tmp:
            cert_file = Path(tmp) / "cert.pem"
            key_file = Path(tmp) / "key.pem"
            cert_file.write_bytes(self.certificate_pem)
            key_file.touch(mode=0o600)
            key_file.write_bytes(self.private_key_pem)
            try:
                context.load_cert_chain(cert_file, key_file)
            except ssl.SSLError as e:
                msg = f"TLS library rejected the certificate/key pair: {e}"
                raise CredentialLoadError(msg) from e
        return context

    def client_ssl_context(self) -> ssl.SSLContext:
        """Build the client-side SSL context trusting this certificate.

        Hostname verification is always on: dialing a host that the
        server certificate does not name fails the handshake.
        """
        if not self.is_secure or self.certificate_pem is None:
            msg = "a client TLS credential needs a certificate"
            raise CredentialLoadError(msg)

        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        try:
            context.load_verify_locations(cadata=self.certificate_pem.decode("ascii"))
        except (ssl.SSLError, UnicodeDecodeError) as e:
            msg = f"TLS library rejected the certificate: {e}"
            raise CredentialLoadError(msg) from e
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context


INSECURE = Credential(CredentialKind.INSECURE)


def insecure_credential() -> Credential:
    """Plaintext: no authentication, no encryption."""
    return INSECURE


def server_credential(cert_path: Path | str, key_path: Path | str) -> Credential:
    """Load the certificate and private key a server presents.

    Args:
        cert_path: PEM certificate file
        key_path: PEM private key file (unencrypted)

    Returns:
        A TLS credential holding both

    Raises:
        CredentialLoadError: If either file is missing, unreadable or
            invalid, or the key does not match the certificate
    """
    credential = Credential.from_pem(
        read_pem(cert_path, "certificate"),
        read_pem(key_path, "private key"),
    )
    logger.debug("Loaded server credential for %s", ", ".join(credential.identities))
    return credential


def client_credential(cert_path: Path | str) -> Credential:
    """Load the certificate a client uses to validate the server.

    Raises:
        CredentialLoadError: If the file is missing, unreadable or not a
            PEM certificate
    """
    return Credential.from_pem(read_pem(cert_path, "certificate"))
