"""Certificate utilities for TLS-secured connections.

This module generates self-signed certificates for development and testing
and loads PEM material with cryptography, reporting every failure as a
CredentialLoadError.
"""

from __future__ import annotations

import datetime
import ipaddress
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from unarpc.error import CredentialLoadError

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes


def generate_self_signed_cert(
    hostname: str = "localhost",
    key_size: int = 2048,
    validity_days: int = 365,
    output_dir: Path | None = None,
) -> tuple[Path, Path]:
    """Generate a self-signed certificate and private key.

    The certificate can be used both as the server's identity and as the
    client's trust anchor. For production, use properly CA-signed
    certificates.

    Args:
        hostname: The hostname for the certificate (default: "localhost")
        key_size: RSA key size in bits (default: 2048)
        validity_days: Certificate validity in days (default: 365)
        output_dir: Directory to save cert files (default: current directory)

    Returns:
        Tuple of (cert_path, key_path) - paths to the generated files

    Example:
        ```python
        cert_path, key_path = generate_self_signed_cert("localhost")
        server = server_credential(cert_path, key_path)
        client = client_credential(cert_path)
        ```
    """
    output_dir = Path.cwd() if output_dir is None else Path(output_dir)

    output_dir.mkdir(parents=True, exist_ok=True)

    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    public_key = private_key.public_key()

    # Subject and issuer are the same for self-signed
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "unarpc"),
        x509.NameAttribute(NameOID.COMMON_NAME, hostname),
    ])

    now = datetime.datetime.now(datetime.UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(
            x509.SubjectAlternativeName(_build_san_list(hostname)),
            critical=False,
        )
        # Self-signed trust anchor: must be allowed to sign itself.
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    cert_path = output_dir / f"{hostname}.crt"
    with Path(cert_path).open("wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))

    key_path = output_dir / f"{hostname}.key"
    with Path(key_path).open("wb") as f:
        f.write(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )

    return cert_path, key_path


def _build_san_list(hostname: str) -> list[x509.GeneralName]:
    """Build Subject Alternative Name list for the certificate.

    Args:
        hostname: The hostname to include in SAN

    Returns:
        List of GeneralName entries for the SAN extension
    """
    san_list: list[x509.GeneralName] = []

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        san_list.append(x509.DNSName(hostname))
    else:
        san_list.append(x509.IPAddress(ip))

    # localhost also answers on the loopback addresses
    if hostname == "localhost":
        san_list.extend((
            x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
            x509.IPAddress(ipaddress.IPv6Address("::1")),
        ))

    return san_list


def read_pem(path: Path | str, what: str) -> bytes:
    """Read a PEM file.

    Raises:
        CredentialLoadError: If the file is missing or unreadable
    """
    try:
        with Path(path).open("rb") as f:
            return f.read()
    except OSError as e:
        msg = f"cannot read {what} {str(path)!r}: {e.strerror or e}"
        raise CredentialLoadError(msg) from e


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse a PEM certificate.

    Raises:
        CredentialLoadError: If the data is not a valid PEM certificate
    """
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        msg = f"invalid certificate: {e}"
        raise CredentialLoadError(msg) from e


def load_private_key(data: bytes) -> PrivateKeyTypes:
    """Parse an unencrypted PEM private key.

    Raises:
        CredentialLoadError: If the data is not a usable private key
    """
    try:
        return serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        msg = f"invalid private key: {e}"
        raise CredentialLoadError(msg) from e


def key_matches_certificate(key: PrivateKeyTypes, cert: x509.Certificate) -> bool:
    """Check that a private key belongs to a certificate's public key."""
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    return key.public_key().public_bytes(der, spki) == cert.public_key().public_bytes(der, spki)


def subject_names(cert: x509.Certificate) -> list[str]:
    """List the identities a certificate vouches for (SAN entries, else CN)."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return [str(attr.value) for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    names: list[str] = list(san.get_values_for_type(x509.DNSName))
    names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    return names
