"""Conventional certificate templates for each role in the test PKI."""

import secrets
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from ipaddress import ip_address

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from gmpki.ca.errors import KeyGenerationError
from gmpki.ca.models import CertificateTemplate

VALIDITY_DAYS = 3650  # ~ten years, for every role
SERIAL_NUMBER_BITS = 128
CA_SUBJECT_KEY_ID = bytes([1, 2, 3, 4])
SERVER_COMMON_NAME = "localhost"
SERVER_DNS_NAMES = ("localhost",)
SERVER_IP_ADDRESSES = ("127.0.0.1",)


class EntityRole(StrEnum):
    ROOT_CA = "root_ca"
    INTERMEDIATE_CA = "intermediate_ca"
    SERVER = "server"
    CLIENT = "client"

    @property
    def is_authority(self) -> bool:
        return self in (EntityRole.ROOT_CA, EntityRole.INTERMEDIATE_CA)


def new_serial_number(name: str) -> int:
    """Draw a non-zero 128-bit serial number from the OS CSPRNG."""
    try:
        return secrets.randbelow((1 << SERIAL_NUMBER_BITS) - 1) + 1
    except Exception as e:
        raise KeyGenerationError(name, f"Failed to draw serial number: {e}") from e


def subject_name(organization: str, common_name: str) -> x509.Name:
    """Fixed country/province/locality plus the entity's O and CN."""
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "California"),
            x509.NameAttribute(NameOID.LOCALITY_NAME, "San Francisco"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _key_usage(*, authority: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        key_encipherment=True,
        key_cert_sign=authority,
        crl_sign=authority,
        content_commitment=False,
        data_encipherment=False,
        key_agreement=False,
        encipher_only=False,
        decipher_only=False,
    )


def base_template(name: str, now: datetime | None = None) -> CertificateTemplate:
    """Baseline shared by every role: serial, validity window and leaf key usage."""
    if now is None:
        now = datetime.now(timezone.utc)
    # DER times carry whole seconds only
    now = now.replace(microsecond=0)

    return CertificateTemplate(
        serial_number=new_serial_number(name),
        not_before=now,
        not_after=now + timedelta(days=VALIDITY_DAYS),
        key_usage=_key_usage(authority=False),
        basic_constraints_valid=True,
    )


def build_template(
    name: str,
    role: EntityRole,
    now: datetime | None = None,
) -> CertificateTemplate:
    """Build the conventional template for ``name`` acting as ``role``.

    Args:
        name: Entity name, used as the subject organization.
        role: Which kind of certificate to describe.
        now: Issuance time (defaults to the current UTC time).

    Returns:
        A fresh, unsigned CertificateTemplate.

    Raises:
        KeyGenerationError: If the serial number cannot be drawn.
    """
    template = base_template(name, now)

    if role.is_authority:
        template.is_ca = True
        template.key_usage = _key_usage(authority=True)
        template.ext_key_usage = [ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE]
        template.subject = subject_name(name, name)
        template.subject_key_id = CA_SUBJECT_KEY_ID
    elif role is EntityRole.SERVER:
        template.ext_key_usage = [
            ExtendedKeyUsageOID.SERVER_AUTH,
            ExtendedKeyUsageOID.CLIENT_AUTH,
        ]
        template.subject = subject_name(name, SERVER_COMMON_NAME)
        template.dns_names = list(SERVER_DNS_NAMES)
        template.ip_addresses = [ip_address(ip) for ip in SERVER_IP_ADDRESSES]
    else:
        template.ext_key_usage = [ExtendedKeyUsageOID.CLIENT_AUTH]
        template.subject = subject_name(name, name)

    return template
