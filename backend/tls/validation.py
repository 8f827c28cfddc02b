"""
Structural validation of fetched key/certificate material.

Checks that the bytes parse as a PEM private key and PEM certificate and
that the key belongs to the certificate. No chain-of-trust verification is
done.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from .errors import ValidationError
from .models import CredentialPair


logger = logging.getLogger(__name__)

# Everything cryptography raises for unparseable or unsupported material
_MALFORMED = (ValueError, TypeError, UnsupportedAlgorithm, x509.DuplicateExtension)


@dataclass
class CertificateInfo:
    """Information extracted from a leaf certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    domains: list[str]  # Subject CN + SANs

    def days_until_expiry(self) -> int:
        """Get days until certificate expires."""
        delta = self.not_after - datetime.now(timezone.utc)
        return max(0, delta.days)


def _common_name(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


def parse_certificate(cert: x509.Certificate) -> CertificateInfo:
    """Extract subject, issuer, validity and domains from a certificate."""
    subject_cn = _common_name(cert.subject)
    domains = [subject_cn] if subject_cn else []

    try:
        san_ext = cert.extensions.get_extension_for_oid(
            x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        )
        for name in san_ext.value.get_values_for_type(x509.DNSName):
            if name not in domains:
                domains.append(name)
    except x509.ExtensionNotFound:
        logger.debug("[TLS-VALIDATE] Certificate has no SAN extension")

    return CertificateInfo(
        subject=subject_cn,
        issuer=_common_name(cert.issuer),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        domains=domains,
    )


def validate_pair(pair: CredentialPair) -> CertificateInfo:
    """
    Validate that a credential pair is usable for a TLS server.

    Args:
        pair: Fetched private key and certificate

    Returns:
        CertificateInfo for the leaf certificate

    Raises:
        ValidationError: If either blob is malformed or they do not match
    """
    try:
        certs = x509.load_pem_x509_certificates(pair.certificate)
    except _MALFORMED as e:
        raise ValidationError(f"Cannot load certificate: {e}", hostname=pair.hostname) from e
    leaf = certs[0]

    try:
        key = serialization.load_pem_private_key(pair.private_key, password=None)
    except _MALFORMED as e:
        raise ValidationError(f"Cannot load private key: {e}", hostname=pair.hostname) from e

    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    try:
        matches = leaf.public_key().public_bytes(der, spki) == key.public_key().public_bytes(der, spki)
        info = parse_certificate(leaf)
    except _MALFORMED as e:
        raise ValidationError(f"Malformed certificate: {e}", hostname=pair.hostname) from e

    if not matches:
        raise ValidationError("Private key does not match certificate", hostname=pair.hostname)
    if info.not_after < datetime.now(timezone.utc):
        logger.warning(
            "[TLS-VALIDATE] Certificate for %s expired at %s", pair.hostname, info.not_after
        )
    return info
