"""SM2/SM3 certificate issuance.

Builds the RFC 5280 ``TBSCertificate`` for a translated template with
``pyasn1``, signs it with the issuer's SM2 key and parses the signed DER back
into a :class:`GMCertificate` so it can act as the parent of descendants.
"""

import logging
import time
from datetime import datetime, timezone

from cryptography import x509
from opentelemetry import trace
from pyasn1.codec.der import decoder, encoder
from pyasn1.type import univ, useful
from pyasn1_modules import rfc5280

from gmpki.ca.errors import CertificateParseError, SigningError
from gmpki.ca.keys import (
    OID_EC_PUBLIC_KEY,
    OID_SM2_CURVE,
    OID_SM2_WITH_SM3,
    SM2PrivateKey,
    SM2PublicKey,
)
from gmpki.ca.models import GMCertificate, KeyUsage, SignatureAlgorithm
from gmpki.ca.translator import EXT_KEY_USAGE_OIDS, template_from_certificate, to_gm_certificate
from gmpki.metrics import pki_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UTC_TIME_CUTOFF_YEAR = 2050


def _oid(value: x509.ObjectIdentifier) -> univ.ObjectIdentifier:
    return univ.ObjectIdentifier(value.dotted_string)


def _name(name: x509.Name) -> rfc5280.Name:
    decoded, _ = decoder.decode(name.public_bytes(), asn1Spec=rfc5280.Name())
    return decoded


def _time(value: datetime) -> rfc5280.Time:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)

    asn1_time = rfc5280.Time()
    if value.year < UTC_TIME_CUTOFF_YEAR:
        asn1_time["utcTime"] = useful.UTCTime(value.strftime("%y%m%d%H%M%SZ"))
    else:
        asn1_time["generalTime"] = useful.GeneralizedTime(value.strftime("%Y%m%d%H%M%SZ"))
    return asn1_time


def _subject_public_key_info(public_key: SM2PublicKey) -> rfc5280.SubjectPublicKeyInfo:
    spki = rfc5280.SubjectPublicKeyInfo()
    spki["algorithm"]["algorithm"] = OID_EC_PUBLIC_KEY
    spki["algorithm"]["parameters"] = univ.Any(encoder.encode(OID_SM2_CURVE))
    spki["subjectPublicKey"] = univ.BitString.fromOctetString(public_key.to_bytes())
    return spki


def _general_name(kind: str, value) -> rfc5280.GeneralName:
    general_name = rfc5280.GeneralName()
    general_name[kind] = value
    return general_name


def _build_extensions(
    template: GMCertificate,
    authority_key_id: bytes,
) -> list[tuple[univ.ObjectIdentifier, bool, bytes]]:
    """Return (oid, critical, DER value) triples in the conventional order."""
    extensions = []

    if template.key_usage:
        bits = "".join(
            "1" if template.key_usage & (1 << i) else "0" for i in range(len(KeyUsage))
        ).rstrip("0")
        extensions.append(
            (rfc5280.id_ce_keyUsage, True, encoder.encode(rfc5280.KeyUsage(binValue=bits)))
        )

    if template.ext_key_usage or template.unknown_ext_key_usage:
        eku = rfc5280.ExtKeyUsageSyntax()
        for usage in template.ext_key_usage:
            eku.append(_oid(EXT_KEY_USAGE_OIDS[usage]))
        for oid in template.unknown_ext_key_usage:
            eku.append(_oid(oid))
        extensions.append((rfc5280.id_ce_extKeyUsage, False, encoder.encode(eku)))

    if template.basic_constraints_valid:
        constraints = rfc5280.BasicConstraints()
        if template.is_ca:
            constraints["cA"] = True
            if template.max_path_len is not None:
                constraints["pathLenConstraint"] = template.max_path_len
        extensions.append((rfc5280.id_ce_basicConstraints, True, encoder.encode(constraints)))

    if template.subject_key_id:
        ski = rfc5280.SubjectKeyIdentifier(template.subject_key_id)
        extensions.append((rfc5280.id_ce_subjectKeyIdentifier, False, encoder.encode(ski)))

    if authority_key_id:
        aki = rfc5280.AuthorityKeyIdentifier()
        aki["keyIdentifier"] = authority_key_id
        extensions.append((rfc5280.id_ce_authorityKeyIdentifier, False, encoder.encode(aki)))

    if template.ocsp_server or template.issuing_certificate_url:
        aia = rfc5280.AuthorityInfoAccessSyntax()
        for method, urls in (
            (rfc5280.id_ad_ocsp, template.ocsp_server),
            (rfc5280.id_ad_caIssuers, template.issuing_certificate_url),
        ):
            for url in urls:
                description = rfc5280.AccessDescription()
                description["accessMethod"] = method
                description["accessLocation"]["uniformResourceIdentifier"] = url
                aia.append(description)
        extensions.append((rfc5280.id_pe_authorityInfoAccess, False, encoder.encode(aia)))

    if template.dns_names or template.email_addresses or template.ip_addresses:
        san = rfc5280.SubjectAltName()
        for dns_name in template.dns_names:
            san.append(_general_name("dNSName", dns_name))
        for email in template.email_addresses:
            san.append(_general_name("rfc822Name", email))
        for ip in template.ip_addresses:
            san.append(_general_name("iPAddress", ip.packed))
        # SAN must be critical when it is the only identity (empty subject)
        critical = len(template.subject) == 0
        extensions.append((rfc5280.id_ce_subjectAltName, critical, encoder.encode(san)))

    if template.permitted_dns_domains or template.excluded_dns_domains:
        constraints = rfc5280.NameConstraints()
        for component, domains in (
            ("permittedSubtrees", template.permitted_dns_domains),
            ("excludedSubtrees", template.excluded_dns_domains),
        ):
            for domain in domains:
                subtree = rfc5280.GeneralSubtree()
                subtree["base"]["dNSName"] = domain
                constraints[component].append(subtree)
        extensions.append(
            (
                rfc5280.id_ce_nameConstraints,
                template.permitted_dns_domains_critical,
                encoder.encode(constraints),
            )
        )

    if template.crl_distribution_points:
        points = rfc5280.CRLDistributionPoints()
        for url in template.crl_distribution_points:
            point = rfc5280.DistributionPoint()
            point["distributionPoint"]["fullName"].append(
                _general_name("uniformResourceIdentifier", url)
            )
            points.append(point)
        extensions.append((rfc5280.id_ce_cRLDistributionPoints, False, encoder.encode(points)))

    if template.policy_identifiers:
        policies = rfc5280.CertificatePolicies()
        for policy_id in template.policy_identifiers:
            policy = rfc5280.PolicyInformation()
            policy["policyIdentifier"] = _oid(policy_id)
            policies.append(policy)
        extensions.append((rfc5280.id_ce_certificatePolicies, False, encoder.encode(policies)))

    # Extra extensions replace anything generated from the fields above
    extra_oids = {_oid(ext.oid) for ext in template.extra_extensions}
    extensions = [ext for ext in extensions if ext[0] not in extra_oids]
    for ext in template.extra_extensions:
        extensions.append((_oid(ext.oid), ext.critical, ext.value.public_bytes()))

    return extensions


def _check_issuer(name: str, template: GMCertificate, parent: GMCertificate, signer: SM2PrivateKey):
    if template.serial_number <= 0:
        raise SigningError(name, "Serial number must be a positive integer")
    if template.not_before is None or template.not_after is None:
        raise SigningError(name, "Validity window is not set")

    if parent.public_key is not None and parent.public_key != signer.public_key:
        raise SigningError(name, "Signing key does not match the issuer certificate")

    if parent is template:
        return
    if not parent.is_ca:
        raise SigningError(name, "Issuer certificate is not a certificate authority")
    if template.is_ca and parent.max_path_len is not None and parent.max_path_len < 1:
        raise SigningError(name, "Issuer path length does not allow intermediate authorities")


def create_certificate(
    name: str,
    template: GMCertificate,
    parent: GMCertificate,
    public_key: SM2PublicKey,
    signer: SM2PrivateKey,
) -> bytes:
    """Sign ``template`` as issued by ``parent`` and return the certificate DER.

    Pass the template itself as ``parent`` to self-sign.

    Raises:
        SigningError: If the issuer cannot sign this template.
    """
    _check_issuer(name, template, parent, signer)

    self_signed = parent is template
    authority_key_id = template.authority_key_id
    if not self_signed and parent.subject_key_id:
        authority_key_id = parent.subject_key_id

    try:
        tbs = rfc5280.TBSCertificate()
        tbs["version"] = template.version - 1
        tbs["serialNumber"] = template.serial_number
        tbs["signature"]["algorithm"] = OID_SM2_WITH_SM3
        tbs["issuer"] = _name(parent.subject)
        tbs["validity"]["notBefore"] = _time(template.not_before)
        tbs["validity"]["notAfter"] = _time(template.not_after)
        tbs["subject"] = _name(template.subject)
        tbs["subjectPublicKeyInfo"] = _subject_public_key_info(public_key)

        for oid, critical, value in _build_extensions(template, authority_key_id):
            extension = rfc5280.Extension()
            extension["extnID"] = oid
            if critical:
                extension["critical"] = True
            extension["extnValue"] = value
            tbs["extensions"].append(extension)

        signature = signer.sign(encoder.encode(tbs))

        certificate = rfc5280.Certificate()
        certificate["tbsCertificate"] = tbs
        certificate["signatureAlgorithm"]["algorithm"] = OID_SM2_WITH_SM3
        certificate["signature"] = univ.BitString.fromOctetString(signature)
        return encoder.encode(certificate)
    except Exception as e:
        raise SigningError(name, f"Failed to sign certificate: {e}") from e


def parse_certificate(name: str, der: bytes) -> GMCertificate:
    """Parse SM2/SM3 certificate DER into a fully populated GMCertificate.

    Raises:
        CertificateParseError: If the DER is malformed or not SM2-with-SM3.
    """
    try:
        parsed, rest = decoder.decode(der, asn1Spec=rfc5280.Certificate())
        if rest:
            raise ValueError(f"{len(rest)} trailing byte(s) after certificate")
        cert = x509.load_der_x509_certificate(der)
        template = template_from_certificate(cert)
    except Exception as e:
        raise CertificateParseError(name, f"Failed to parse certificate: {e}") from e

    if parsed["signatureAlgorithm"]["algorithm"] != OID_SM2_WITH_SM3:
        raise CertificateParseError(name, "Certificate is not signed with SM2-with-SM3")

    spki = parsed["tbsCertificate"]["subjectPublicKeyInfo"]
    if spki["algorithm"]["algorithm"] != OID_EC_PUBLIC_KEY:
        raise CertificateParseError(name, "Certificate does not carry an EC public key")
    if not isinstance(template.public_key, SM2PublicKey):
        raise CertificateParseError(name, "Certificate does not carry an SM2 public key")

    return to_gm_certificate(template)


def verify_signature(cert: GMCertificate, issuer: GMCertificate) -> bool:
    """Check that ``cert`` was signed by the key in ``issuer``."""
    if issuer.public_key is None or cert.signature_algorithm is not SignatureAlgorithm.SM2_WITH_SM3:
        return False
    return issuer.public_key.verify(cert.signature, cert.raw_tbs_certificate)


def issue(
    name: str,
    template: GMCertificate,
    parent: GMCertificate | None,
    public_key: SM2PublicKey,
    signer: SM2PrivateKey,
) -> tuple[bytes, GMCertificate]:
    """Create and re-parse a certificate; ``parent=None`` self-signs.

    Returns:
        Tuple of (certificate DER, parsed GMCertificate).

    Raises:
        SigningError: If signing fails.
        CertificateParseError: If the signed DER cannot be parsed back.
    """
    with tracer.start_as_current_span("issuer.issue") as span:
        span.set_attribute("entity", name)
        span.set_attribute("self_signed", parent is None)

        start_time = time.time()
        try:
            der = create_certificate(name, template, parent or template, public_key, signer)
            certificate = parse_certificate(name, der)
        except SigningError:
            pki_metrics.record_failure("signing")
            raise
        except CertificateParseError:
            pki_metrics.record_failure("parse")
            raise

        duration = time.time() - start_time
        pki_metrics.record_certificate_signed(duration)
        logger.debug(
            "certificate_signed",
            extra={
                "entity": name,
                "serial": format(certificate.serial_number, "032x"),
                "issuer": certificate.issuer.rfc4514_string(),
                "duration_seconds": duration,
            },
        )
        return der, certificate
