"""SM2/SM3 certificate authority building blocks.

This package provides:
- SM2 key pair generation and SM2-with-SM3 signatures
- Conventional certificate templates per role
- Translation of conventional templates to SM2 certificate structures
- Certificate issuance (DER encoding, signing, re-parsing)
- PEM persistence
"""

from gmpki.ca.errors import (
    CertificateParseError,
    GenerationError,
    KeyGenerationError,
    PersistenceError,
    PKIError,
    SigningError,
)
from gmpki.ca.issuer import issue
from gmpki.ca.keys import SM2PrivateKey, SM2PublicKey, generate_key_pair
from gmpki.ca.templates import EntityRole, build_template
from gmpki.ca.translator import to_conventional_template, to_gm_certificate

__all__ = [
    "CertificateParseError",
    "EntityRole",
    "GenerationError",
    "KeyGenerationError",
    "PKIError",
    "PersistenceError",
    "SM2PrivateKey",
    "SM2PublicKey",
    "SigningError",
    "build_template",
    "generate_key_pair",
    "issue",
    "to_conventional_template",
    "to_gm_certificate",
]
