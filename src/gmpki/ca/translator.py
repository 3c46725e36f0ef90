"""Field-by-field translation between conventional and SM2 certificate structures.

Every field is assigned explicitly in both directions. Only three fields change
type on the way across: key usage (``x509.KeyUsage`` <-> ``KeyUsage`` bitmask),
extended key usage (OID <-> ``ExtKeyUsage``) and the signature algorithm, which
is always forced to SM2-with-SM3 because the result is signed by an SM2 issuer.
"""

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID
from pyasn1.codec.der import decoder, encoder
from pyasn1.type import univ
from pyasn1_modules import rfc5280

from gmpki.ca.keys import OID_EC_PUBLIC_KEY, OID_SM2_CURVE, SM2PublicKey
from gmpki.ca.models import (
    CertificateTemplate,
    ExtKeyUsage,
    GMCertificate,
    KeyUsage,
    SignatureAlgorithm,
)

EXT_KEY_USAGE_OIDS: dict[ExtKeyUsage, x509.ObjectIdentifier] = {
    ExtKeyUsage.ANY: ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE,
    ExtKeyUsage.SERVER_AUTH: ExtendedKeyUsageOID.SERVER_AUTH,
    ExtKeyUsage.CLIENT_AUTH: ExtendedKeyUsageOID.CLIENT_AUTH,
    ExtKeyUsage.CODE_SIGNING: ExtendedKeyUsageOID.CODE_SIGNING,
    ExtKeyUsage.EMAIL_PROTECTION: ExtendedKeyUsageOID.EMAIL_PROTECTION,
    ExtKeyUsage.IPSEC_END_SYSTEM: x509.ObjectIdentifier("1.3.6.1.5.5.7.3.5"),
    ExtKeyUsage.IPSEC_TUNNEL: x509.ObjectIdentifier("1.3.6.1.5.5.7.3.6"),
    ExtKeyUsage.IPSEC_USER: x509.ObjectIdentifier("1.3.6.1.5.5.7.3.7"),
    ExtKeyUsage.TIME_STAMPING: ExtendedKeyUsageOID.TIME_STAMPING,
    ExtKeyUsage.OCSP_SIGNING: ExtendedKeyUsageOID.OCSP_SIGNING,
    ExtKeyUsage.MICROSOFT_SERVER_GATED_CRYPTO: x509.ObjectIdentifier("1.3.6.1.4.1.311.10.3.3"),
    ExtKeyUsage.NETSCAPE_SERVER_GATED_CRYPTO: x509.ObjectIdentifier("2.16.840.1.113730.4.1"),
    ExtKeyUsage.MICROSOFT_COMMERCIAL_CODE_SIGNING: x509.ObjectIdentifier(
        "1.3.6.1.4.1.311.2.1.22"
    ),
    ExtKeyUsage.MICROSOFT_KERNEL_CODE_SIGNING: x509.ObjectIdentifier("1.3.6.1.4.1.311.61.1.1"),
}
EXT_KEY_USAGE_BY_OID = {oid: usage for usage, oid in EXT_KEY_USAGE_OIDS.items()}

SM2_WITH_SM3_OID = x509.ObjectIdentifier(SignatureAlgorithm.SM2_WITH_SM3.value)

_KEY_USAGE_ATTRIBUTES = (
    ("digital_signature", KeyUsage.DIGITAL_SIGNATURE),
    ("content_commitment", KeyUsage.CONTENT_COMMITMENT),
    ("key_encipherment", KeyUsage.KEY_ENCIPHERMENT),
    ("data_encipherment", KeyUsage.DATA_ENCIPHERMENT),
    ("key_agreement", KeyUsage.KEY_AGREEMENT),
    ("key_cert_sign", KeyUsage.CERT_SIGN),
    ("crl_sign", KeyUsage.CRL_SIGN),
)


def key_usage_to_flags(key_usage: x509.KeyUsage | None) -> KeyUsage:
    if key_usage is None:
        return KeyUsage(0)

    flags = KeyUsage(0)
    for attribute, flag in _KEY_USAGE_ATTRIBUTES:
        if getattr(key_usage, attribute):
            flags |= flag
    # encipher_only/decipher_only are only defined alongside key_agreement
    if key_usage.key_agreement:
        if key_usage.encipher_only:
            flags |= KeyUsage.ENCIPHER_ONLY
        if key_usage.decipher_only:
            flags |= KeyUsage.DECIPHER_ONLY
    return flags


def flags_to_key_usage(flags: KeyUsage) -> x509.KeyUsage | None:
    if not flags:
        return None

    values = {attribute: bool(flags & flag) for attribute, flag in _KEY_USAGE_ATTRIBUTES}
    key_agreement = values["key_agreement"]
    return x509.KeyUsage(
        encipher_only=key_agreement and bool(flags & KeyUsage.ENCIPHER_ONLY),
        decipher_only=key_agreement and bool(flags & KeyUsage.DECIPHER_ONLY),
        **values,
    )


def ext_key_usage_from_oid(oid: x509.ObjectIdentifier) -> ExtKeyUsage:
    try:
        return EXT_KEY_USAGE_BY_OID[oid]
    except KeyError:
        raise ValueError(
            f"Extended key usage {oid.dotted_string} has no SM2 equivalent; "
            "list it under unknown_ext_key_usage"
        ) from None


def to_gm_certificate(source: CertificateTemplate | x509.Certificate) -> GMCertificate:
    """Translate a conventional template (or parsed certificate) to an SM2 structure."""
    if isinstance(source, x509.Certificate):
        source = template_from_certificate(source)

    return GMCertificate(
        raw=source.raw,
        raw_tbs_certificate=source.raw_tbs_certificate,
        raw_subject_public_key_info=source.raw_subject_public_key_info,
        raw_subject=source.raw_subject,
        raw_issuer=source.raw_issuer,
        signature=source.signature,
        signature_algorithm=SignatureAlgorithm.SM2_WITH_SM3,
        public_key=source.public_key,
        version=source.version,
        serial_number=source.serial_number,
        issuer=source.issuer,
        subject=source.subject,
        not_before=source.not_before,
        not_after=source.not_after,
        key_usage=key_usage_to_flags(source.key_usage),
        extensions=list(source.extensions),
        extra_extensions=list(source.extra_extensions),
        unhandled_critical_extensions=list(source.unhandled_critical_extensions),
        ext_key_usage=[ext_key_usage_from_oid(oid) for oid in source.ext_key_usage],
        unknown_ext_key_usage=list(source.unknown_ext_key_usage),
        basic_constraints_valid=source.basic_constraints_valid,
        is_ca=source.is_ca,
        max_path_len=source.max_path_len,
        subject_key_id=source.subject_key_id,
        authority_key_id=source.authority_key_id,
        ocsp_server=list(source.ocsp_server),
        issuing_certificate_url=list(source.issuing_certificate_url),
        dns_names=list(source.dns_names),
        email_addresses=list(source.email_addresses),
        ip_addresses=list(source.ip_addresses),
        permitted_dns_domains_critical=source.permitted_dns_domains_critical,
        permitted_dns_domains=list(source.permitted_dns_domains),
        excluded_dns_domains=list(source.excluded_dns_domains),
        crl_distribution_points=list(source.crl_distribution_points),
        policy_identifiers=list(source.policy_identifiers),
    )


def to_conventional_template(cert: GMCertificate) -> CertificateTemplate:
    """Inverse of :func:`to_gm_certificate`."""
    if cert.signature_algorithm is SignatureAlgorithm.SM2_WITH_SM3:
        signature_algorithm = SM2_WITH_SM3_OID
    else:
        signature_algorithm = None

    return CertificateTemplate(
        raw=cert.raw,
        raw_tbs_certificate=cert.raw_tbs_certificate,
        raw_subject_public_key_info=cert.raw_subject_public_key_info,
        raw_subject=cert.raw_subject,
        raw_issuer=cert.raw_issuer,
        signature=cert.signature,
        signature_algorithm=signature_algorithm,
        public_key=cert.public_key,
        version=cert.version,
        serial_number=cert.serial_number,
        issuer=cert.issuer,
        subject=cert.subject,
        not_before=cert.not_before,
        not_after=cert.not_after,
        key_usage=flags_to_key_usage(cert.key_usage),
        extensions=list(cert.extensions),
        extra_extensions=list(cert.extra_extensions),
        unhandled_critical_extensions=list(cert.unhandled_critical_extensions),
        ext_key_usage=[EXT_KEY_USAGE_OIDS[usage] for usage in cert.ext_key_usage],
        unknown_ext_key_usage=list(cert.unknown_ext_key_usage),
        basic_constraints_valid=cert.basic_constraints_valid,
        is_ca=cert.is_ca,
        max_path_len=cert.max_path_len,
        subject_key_id=cert.subject_key_id,
        authority_key_id=cert.authority_key_id,
        ocsp_server=list(cert.ocsp_server),
        issuing_certificate_url=list(cert.issuing_certificate_url),
        dns_names=list(cert.dns_names),
        email_addresses=list(cert.email_addresses),
        ip_addresses=list(cert.ip_addresses),
        permitted_dns_domains_critical=cert.permitted_dns_domains_critical,
        permitted_dns_domains=list(cert.permitted_dns_domains),
        excluded_dns_domains=list(cert.excluded_dns_domains),
        crl_distribution_points=list(cert.crl_distribution_points),
        policy_identifiers=list(cert.policy_identifiers),
    )


_HANDLED_EXTENSIONS = {
    x509.KeyUsage,
    x509.ExtendedKeyUsage,
    x509.BasicConstraints,
    x509.SubjectKeyIdentifier,
    x509.AuthorityKeyIdentifier,
    x509.AuthorityInformationAccess,
    x509.SubjectAlternativeName,
    x509.NameConstraints,
    x509.CRLDistributionPoints,
    x509.CertificatePolicies,
}


def _uris(names) -> list[str]:
    return [name.value for name in names or () if isinstance(name, x509.UniformResourceIdentifier)]


def _subject_public_key(cert: x509.Certificate):
    """Return the raw SubjectPublicKeyInfo DER and the key it carries.

    SM2 keys are read with pyasn1 since ``cryptography`` cannot load them.

    Raises:
        ValueError: If an SM2 key is not an uncompressed curve point.
    """
    tbs, _ = decoder.decode(cert.tbs_certificate_bytes, asn1Spec=rfc5280.TBSCertificate())
    spki = tbs["subjectPublicKeyInfo"]
    algorithm = spki["algorithm"]

    if algorithm["algorithm"] == OID_EC_PUBLIC_KEY and algorithm["parameters"].isValue:
        curve, _ = decoder.decode(algorithm["parameters"].asOctets(), asn1Spec=univ.ObjectIdentifier())
        if curve == OID_SM2_CURVE:
            return encoder.encode(spki), SM2PublicKey.from_bytes(spki["subjectPublicKey"].asOctets())

    try:
        public_key = cert.public_key()
    except (ValueError, UnsupportedAlgorithm):
        public_key = None
    return encoder.encode(spki), public_key


def template_from_certificate(cert: x509.Certificate) -> CertificateTemplate:
    """Read a parsed ``cryptography`` certificate into a CertificateTemplate."""
    raw_subject_public_key_info, public_key = _subject_public_key(cert)
    template = CertificateTemplate(
        raw=cert.public_bytes(serialization.Encoding.DER),
        raw_tbs_certificate=cert.tbs_certificate_bytes,
        raw_subject_public_key_info=raw_subject_public_key_info,
        public_key=public_key,
        raw_subject=cert.subject.public_bytes(),
        raw_issuer=cert.issuer.public_bytes(),
        signature=cert.signature,
        signature_algorithm=cert.signature_algorithm_oid,
        version=cert.version.value + 1,
        serial_number=cert.serial_number,
        issuer=cert.issuer,
        subject=cert.subject,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        extensions=list(cert.extensions),
    )

    for ext in cert.extensions:
        value = ext.value
        if type(value) not in _HANDLED_EXTENSIONS:
            if ext.critical:
                template.unhandled_critical_extensions.append(ext.oid)
            continue

        if isinstance(value, x509.KeyUsage):
            template.key_usage = value
        elif isinstance(value, x509.ExtendedKeyUsage):
            for oid in value:
                if oid in EXT_KEY_USAGE_BY_OID:
                    template.ext_key_usage.append(oid)
                else:
                    template.unknown_ext_key_usage.append(oid)
        elif isinstance(value, x509.BasicConstraints):
            template.basic_constraints_valid = True
            template.is_ca = value.ca
            template.max_path_len = value.path_length
        elif isinstance(value, x509.SubjectKeyIdentifier):
            template.subject_key_id = value.digest
        elif isinstance(value, x509.AuthorityKeyIdentifier):
            template.authority_key_id = value.key_identifier or b""
        elif isinstance(value, x509.AuthorityInformationAccess):
            for description in value:
                location = _uris([description.access_location])
                if description.access_method == x509.AuthorityInformationAccessOID.OCSP:
                    template.ocsp_server.extend(location)
                elif description.access_method == x509.AuthorityInformationAccessOID.CA_ISSUERS:
                    template.issuing_certificate_url.extend(location)
        elif isinstance(value, x509.SubjectAlternativeName):
            template.dns_names = value.get_values_for_type(x509.DNSName)
            template.email_addresses = value.get_values_for_type(x509.RFC822Name)
            template.ip_addresses = value.get_values_for_type(x509.IPAddress)
        elif isinstance(value, x509.NameConstraints):
            template.permitted_dns_domains_critical = ext.critical
            template.permitted_dns_domains = [
                name.value for name in value.permitted_subtrees or () if isinstance(name, x509.DNSName)
            ]
            template.excluded_dns_domains = [
                name.value for name in value.excluded_subtrees or () if isinstance(name, x509.DNSName)
            ]
        elif isinstance(value, x509.CRLDistributionPoints):
            for point in value:
                template.crl_distribution_points.extend(_uris(point.full_name))
        elif isinstance(value, x509.CertificatePolicies):
            template.policy_identifiers = [policy.policy_identifier for policy in value]

    return template
