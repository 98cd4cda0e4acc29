"""Tests for certificate utilities."""

import ipaddress

import pytest
from cryptography import x509

from unarpc.certs import (
    generate_self_signed_cert,
    key_matches_certificate,
    load_certificate,
    load_private_key,
    read_pem,
    subject_names,
)
from unarpc.error import CredentialLoadError


class TestCertificateGeneration:
    """Test certificate generation utilities."""

    def test_generate_self_signed_cert(self, tmp_path):
        """Test generating self-signed certificates."""
        cert_path, key_path = generate_self_signed_cert(
            hostname="localhost",
            key_size=2048,
            validity_days=30,
            output_dir=tmp_path,
        )

        assert cert_path.exists()
        assert key_path.exists()
        assert cert_path.name == "localhost.crt"
        assert key_path.name == "localhost.key"

        cert = load_certificate(read_pem(cert_path, "certificate"))
        key = load_private_key(read_pem(key_path, "private key"))

        assert key_matches_certificate(key, cert)

    def test_localhost_names_loopback_addresses(self, tmp_path):
        """Test that a localhost certificate also covers 127.0.0.1 and ::1."""
        cert_path, _ = generate_self_signed_cert("localhost", output_dir=tmp_path)

        cert = load_certificate(read_pem(cert_path, "certificate"))

        assert subject_names(cert) == ["localhost", "127.0.0.1", "::1"]

    def test_generate_cert_with_ip_address(self, tmp_path):
        """Test generating certificate for an IP address."""
        cert_path, _ = generate_self_signed_cert("192.168.1.1", output_dir=tmp_path)

        cert = load_certificate(read_pem(cert_path, "certificate"))
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value

        assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("192.168.1.1")]
        assert san.get_values_for_type(x509.DNSName) == []

    def test_certificate_is_its_own_trust_anchor(self, tmp_path):
        """Test the extensions strict verifiers require of a self-signed root."""
        cert_path, _ = generate_self_signed_cert("localhost", output_dir=tmp_path)

        cert = load_certificate(read_pem(cert_path, "certificate"))
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
        usage = cert.extensions.get_extension_for_class(x509.KeyUsage)

        assert constraints.critical
        assert constraints.value.ca
        assert usage.value.key_cert_sign
        assert cert.issuer == cert.subject

    def test_generate_cert_default_output_dir(self, tmp_path, monkeypatch):
        """Test generating certificate with default output directory."""
        monkeypatch.chdir(tmp_path)

        cert_path, key_path = generate_self_signed_cert(hostname="test.local")

        assert cert_path.exists()
        assert key_path.exists()


class TestLoading:
    """Test PEM loading failures."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(CredentialLoadError, match="cannot read certificate"):
            read_pem(tmp_path / "missing.crt", "certificate")

    def test_invalid_certificate(self):
        with pytest.raises(CredentialLoadError, match="invalid certificate"):
            load_certificate(b"-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----\n")

    def test_invalid_private_key(self):
        with pytest.raises(CredentialLoadError, match="invalid private key"):
            load_private_key(b"not a key")

    def test_key_from_another_certificate(self, localhost_cert, other_cert):
        cert = load_certificate(read_pem(localhost_cert[0], "certificate"))
        key = load_private_key(read_pem(other_cert[1], "private key"))

        assert not key_matches_certificate(key, cert)
