"""Certificate representations on both sides of the translator.

``CertificateTemplate`` is the conventional description, expressed with the
``cryptography`` library's X.509 value types. ``GMCertificate`` is the
national-cryptography (SM2/SM3) structure the issuer signs and parses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum, IntFlag
from ipaddress import IPv4Address, IPv6Address
from typing import Any

from cryptography import x509

from gmpki.ca.keys import SM2PublicKey

IPAddress = IPv4Address | IPv6Address


class KeyUsage(IntFlag):
    """X.509 key usage bits; flag value ``1 << i`` is BIT STRING bit ``i``."""

    DIGITAL_SIGNATURE = 1 << 0
    CONTENT_COMMITMENT = 1 << 1
    KEY_ENCIPHERMENT = 1 << 2
    DATA_ENCIPHERMENT = 1 << 3
    KEY_AGREEMENT = 1 << 4
    CERT_SIGN = 1 << 5
    CRL_SIGN = 1 << 6
    ENCIPHER_ONLY = 1 << 7
    DECIPHER_ONLY = 1 << 8


class ExtKeyUsage(IntEnum):
    ANY = 0
    SERVER_AUTH = 1
    CLIENT_AUTH = 2
    CODE_SIGNING = 3
    EMAIL_PROTECTION = 4
    IPSEC_END_SYSTEM = 5
    IPSEC_TUNNEL = 6
    IPSEC_USER = 7
    TIME_STAMPING = 8
    OCSP_SIGNING = 9
    MICROSOFT_SERVER_GATED_CRYPTO = 10
    NETSCAPE_SERVER_GATED_CRYPTO = 11
    MICROSOFT_COMMERCIAL_CODE_SIGNING = 12
    MICROSOFT_KERNEL_CODE_SIGNING = 13


class SignatureAlgorithm(Enum):
    UNKNOWN = "unknown"
    SM2_WITH_SM3 = "1.2.156.10197.1.501"


class PublicKeyAlgorithm(Enum):
    UNKNOWN = "unknown"
    SM2 = "1.2.840.10045.2.1"


@dataclass
class CertificateTemplate:
    """Unsigned conventional certificate description.

    Raw fields stay empty for templates and are filled for certificates
    loaded from DER.
    """

    raw: bytes = b""
    raw_tbs_certificate: bytes = b""
    raw_subject_public_key_info: bytes = b""
    raw_subject: bytes = b""
    raw_issuer: bytes = b""

    signature: bytes = b""
    signature_algorithm: x509.ObjectIdentifier | None = None

    public_key: Any = None

    version: int = 3
    serial_number: int = 0
    issuer: x509.Name = field(default_factory=lambda: x509.Name([]))
    subject: x509.Name = field(default_factory=lambda: x509.Name([]))
    not_before: datetime | None = None
    not_after: datetime | None = None
    key_usage: x509.KeyUsage | None = None

    extensions: list[x509.Extension] = field(default_factory=list)
    extra_extensions: list[x509.Extension] = field(default_factory=list)
    unhandled_critical_extensions: list[x509.ObjectIdentifier] = field(default_factory=list)

    ext_key_usage: list[x509.ObjectIdentifier] = field(default_factory=list)
    unknown_ext_key_usage: list[x509.ObjectIdentifier] = field(default_factory=list)

    basic_constraints_valid: bool = False
    is_ca: bool = False
    max_path_len: int | None = None

    subject_key_id: bytes = b""
    authority_key_id: bytes = b""

    ocsp_server: list[str] = field(default_factory=list)
    issuing_certificate_url: list[str] = field(default_factory=list)

    dns_names: list[str] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    ip_addresses: list[IPAddress] = field(default_factory=list)

    permitted_dns_domains_critical: bool = False
    permitted_dns_domains: list[str] = field(default_factory=list)
    excluded_dns_domains: list[str] = field(default_factory=list)

    crl_distribution_points: list[str] = field(default_factory=list)
    policy_identifiers: list[x509.ObjectIdentifier] = field(default_factory=list)


@dataclass
class GMCertificate:
    """SM2/SM3 certificate structure, either a template or a parsed certificate."""

    raw: bytes = b""
    raw_tbs_certificate: bytes = b""
    raw_subject_public_key_info: bytes = b""
    raw_subject: bytes = b""
    raw_issuer: bytes = b""

    signature: bytes = b""
    signature_algorithm: SignatureAlgorithm = SignatureAlgorithm.SM2_WITH_SM3

    public_key_algorithm: PublicKeyAlgorithm = PublicKeyAlgorithm.SM2
    public_key: SM2PublicKey | None = None

    version: int = 3
    serial_number: int = 0
    issuer: x509.Name = field(default_factory=lambda: x509.Name([]))
    subject: x509.Name = field(default_factory=lambda: x509.Name([]))
    not_before: datetime | None = None
    not_after: datetime | None = None
    key_usage: KeyUsage = KeyUsage(0)

    extensions: list[x509.Extension] = field(default_factory=list)
    extra_extensions: list[x509.Extension] = field(default_factory=list)
    unhandled_critical_extensions: list[x509.ObjectIdentifier] = field(default_factory=list)

    ext_key_usage: list[ExtKeyUsage] = field(default_factory=list)
    unknown_ext_key_usage: list[x509.ObjectIdentifier] = field(default_factory=list)

    basic_constraints_valid: bool = False
    is_ca: bool = False
    max_path_len: int | None = None

    subject_key_id: bytes = b""
    authority_key_id: bytes = b""

    ocsp_server: list[str] = field(default_factory=list)
    issuing_certificate_url: list[str] = field(default_factory=list)

    dns_names: list[str] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    ip_addresses: list[IPAddress] = field(default_factory=list)

    permitted_dns_domains_critical: bool = False
    permitted_dns_domains: list[str] = field(default_factory=list)
    excluded_dns_domains: list[str] = field(default_factory=list)

    crl_distribution_points: list[str] = field(default_factory=list)
    policy_identifiers: list[x509.ObjectIdentifier] = field(default_factory=list)

    @property
    def is_self_signed(self) -> bool:
        return self.issuer == self.subject
