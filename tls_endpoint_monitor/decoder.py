"""
X.509 certificate decoder for TLS Endpoint Monitor.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from cryptography import x509
from cryptography.x509.oid import NameOID

from tls_endpoint_monitor.errors import CertificateDecodeError
from tls_endpoint_monitor.logger import get_logger

logger = get_logger("decoder")

T = TypeVar("T")

UNKNOWN_DN = "Unknown"

SIGNATURE_ALGORITHMS: Dict[str, str] = {
    "1.2.840.113549.1.1.1": "RSA",
    "1.2.840.113549.1.1.2": "MD2-with-RSA",
    "1.2.840.113549.1.1.4": "MD5-with-RSA",
    "1.2.840.113549.1.1.5": "SHA1-with-RSA",
    "1.2.840.113549.1.1.10": "RSASSA-PSS",
    "1.2.840.113549.1.1.11": "SHA256-with-RSA",
    "1.2.840.113549.1.1.12": "SHA384-with-RSA",
    "1.2.840.113549.1.1.13": "SHA512-with-RSA",
    "1.2.840.113549.1.1.14": "SHA224-with-RSA",
    "1.2.840.10045.4.1": "ECDSA-with-SHA1",
    "1.2.840.10045.4.3.1": "ECDSA-with-SHA224",
    "1.2.840.10045.4.3.2": "ECDSA-with-SHA256",
    "1.2.840.10045.4.3.3": "ECDSA-with-SHA384",
    "1.2.840.10045.4.3.4": "ECDSA-with-SHA512",
    "1.2.840.10040.4.3": "DSA-with-SHA1",
    "2.16.840.1.101.3.4.3.2": "DSA-with-SHA256",
    "1.3.101.112": "Ed25519",
    "1.3.101.113": "Ed448",
}

DN_SHORT_NAMES: Dict[x509.ObjectIdentifier, str] = {
    NameOID.COMMON_NAME: "CN",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.COUNTRY_NAME: "C",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.LOCALITY_NAME: "L",
    NameOID.STREET_ADDRESS: "STREET",
    NameOID.EMAIL_ADDRESS: "E",
    NameOID.DOMAIN_COMPONENT: "DC",
    NameOID.USER_ID: "UID",
    NameOID.SERIAL_NUMBER: "serialNumber",
    NameOID.GIVEN_NAME: "GN",
    NameOID.SURNAME: "SN",
    NameOID.TITLE: "title",
    NameOID.POSTAL_CODE: "postalCode",
}

# Key usage bits in the order they are reported
KEY_USAGE_LABELS = [
    ("digital_signature", "Digital Signature"),
    ("content_commitment", "Non-Repudiation"),
    ("key_encipherment", "Key Encipherment"),
    ("data_encipherment", "Data Encipherment"),
    ("key_agreement", "Key Agreement"),
    ("key_cert_sign", "Certificate Signing"),
    ("crl_sign", "CRL Signing"),
]


@dataclass
class DecodedCertificate:
    """Normalized fields of a decoded leaf certificate."""

    subject: str = UNKNOWN_DN
    issuer: str = UNKNOWN_DN
    common_name: str = ""
    organization: str = ""
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    serial_number: str = ""
    signature_algorithm: str = "unknown"
    key_usage: List[str] = field(default_factory=list)
    fingerprint: str = ""
    field_errors: List[str] = field(default_factory=list)

    def as_fields(self) -> Dict[str, Any]:
        """Record fields that were actually decoded; empty values are left out."""
        values = {
            "subject": self.subject if self.subject != UNKNOWN_DN else None,
            "issuer": self.issuer if self.issuer != UNKNOWN_DN else None,
            "common_name": self.common_name,
            "organization": self.organization,
            "valid_from": self.valid_from,
            "valid_to": self.valid_to,
            "serial_number": self.serial_number,
            "signature_algorithm": self.signature_algorithm
            if self.signature_algorithm != "unknown"
            else None,
            "key_usage": self.key_usage,
            "fingerprint": self.fingerprint,
        }
        return {key: value for key, value in values.items() if value}


def compute_fingerprint(der: bytes) -> str:
    """SHA-256 over the DER bytes as lower-case colon separated hex pairs."""
    digest = hashlib.sha256(der).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def attribute_short_name(oid: x509.ObjectIdentifier) -> str:
    """Short display name for a DN attribute type."""
    if oid in DN_SHORT_NAMES:
        return DN_SHORT_NAMES[oid]
    name = getattr(oid, "_name", None)
    if name and name != "Unknown OID":
        return str(name)
    return oid.dotted_string


def _attribute_value(attribute: x509.NameAttribute) -> str:
    value = attribute.value
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def format_dn(name: x509.Name) -> str:
    """
    Format a distinguished name as ``ShortName=Value`` pairs.

    Attributes keep the order in which the certificate encodes them and are
    joined with ", ". A name without attributes formats as ``Unknown``.
    """
    pairs = [
        f"{attribute_short_name(attribute.oid)}={_attribute_value(attribute)}"
        for rdn in name.rdns
        for attribute in rdn
    ]
    return ", ".join(pairs) if pairs else UNKNOWN_DN


def find_attribute(name: x509.Name, short_name: str, long_name: str) -> str:
    """First attribute matching a short or long name, or an empty string."""
    for rdn in name.rdns:
        for attribute in rdn:
            names = {attribute_short_name(attribute.oid), getattr(attribute.oid, "_name", None)}
            if short_name in names or long_name in names:
                return _attribute_value(attribute)
    return ""


def signature_algorithm_name(oid: x509.ObjectIdentifier) -> str:
    """Display name for a signature algorithm; unknown OIDs are reported verbatim."""
    return SIGNATURE_ALGORITHMS.get(oid.dotted_string, f"OID: {oid.dotted_string}")


def key_usage_labels(cert: x509.Certificate) -> List[str]:
    """Labels of the key usage bits set on the certificate."""
    try:
        key_usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return []
    return [label for attr, label in KEY_USAGE_LABELS if getattr(key_usage, attr)]


def _best_effort(
    decoded: DecodedCertificate, label: str, extract: Callable[[], T], default: T
) -> T:
    """Run one field extractor, degrading to ``default`` if that field is malformed."""
    try:
        return extract()
    except Exception as e:
        logger.debug(f"Could not decode {label} from certificate: {e}")
        decoded.field_errors.append(f"{label}: {e}")
        return default


def decode(der: bytes) -> DecodedCertificate:
    """
    Decode a DER encoded X.509 certificate.

    The overall structure must parse; individual fields that fail to decode
    fall back to their defaults and are listed in ``field_errors``.

    Args:
        der: DER encoded certificate bytes

    Returns:
        DecodedCertificate

    Raises:
        CertificateDecodeError: the bytes are not an X.509 certificate
    """
    if not der:
        raise CertificateDecodeError("No certificate data")

    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise CertificateDecodeError(f"Could not parse certificate: {e}") from e

    decoded = DecodedCertificate(fingerprint=compute_fingerprint(der))

    subject = _best_effort(decoded, "subject", lambda: cert.subject, None)
    issuer = _best_effort(decoded, "issuer", lambda: cert.issuer, None)

    if subject is not None:
        decoded.subject = format_dn(subject)
        decoded.common_name = find_attribute(subject, "CN", "commonName")
        decoded.organization = find_attribute(subject, "O", "organizationName")
    if issuer is not None:
        decoded.issuer = format_dn(issuer)

    decoded.valid_from = _best_effort(
        decoded, "validity start", lambda: cert.not_valid_before_utc, None
    )
    decoded.valid_to = _best_effort(decoded, "validity end", lambda: cert.not_valid_after_utc, None)
    decoded.serial_number = _best_effort(
        decoded, "serial number", lambda: format(cert.serial_number, "X"), ""
    )
    decoded.signature_algorithm = _best_effort(
        decoded,
        "signature algorithm",
        lambda: signature_algorithm_name(cert.signature_algorithm_oid),
        "unknown",
    )
    decoded.key_usage = _best_effort(decoded, "key usage", lambda: key_usage_labels(cert), [])

    return decoded
