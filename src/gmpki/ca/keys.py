"""SM2 key pair generation and SM2-with-SM3 signatures.

Point arithmetic and the SM3 based signature come from ``gmssl``; the DER
structures (RFC 5915 ``ECPrivateKey`` and ``ECDSA-Sig-Value``) are built
with ``pyasn1``.
"""

import logging
import secrets
from dataclasses import dataclass

from gmssl import sm2
from opentelemetry import trace
from pyasn1.codec.der import decoder, encoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ
from pyasn1_modules import rfc3279, rfc5915

from gmpki.ca.errors import KeyGenerationError
from gmpki.metrics import pki_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# GM/T 0006 object identifiers
OID_SM2_CURVE = univ.ObjectIdentifier("1.2.156.10197.1.301")
OID_SM2_WITH_SM3 = univ.ObjectIdentifier("1.2.156.10197.1.501")
OID_EC_PUBLIC_KEY = univ.ObjectIdentifier("1.2.840.10045.2.1")

CURVE = sm2.default_ecc_table
CURVE_ORDER = int(CURVE["n"], 16)
COORDINATE_HEX_LENGTH = len(CURVE["n"])
COORDINATE_SIZE = COORDINATE_HEX_LENGTH // 2


def _crypt_sm2(private_key: str | None, public_key: str) -> sm2.CryptSM2:
    crypt = sm2.CryptSM2(private_key=private_key, public_key=public_key)
    # gmssl strips a leading "04" from the key it is given; keep the exact x||y form
    crypt.public_key = public_key
    return crypt


def _random_scalar() -> int:
    """Return a scalar in [1, n-2] drawn from the OS CSPRNG."""
    return secrets.randbelow(CURVE_ORDER - 2) + 1


@dataclass(frozen=True)
class SM2PublicKey:
    """A point on the SM2 curve."""

    x: int
    y: int

    @property
    def hex(self) -> str:
        """Public point as the concatenated x||y hex string used by gmssl."""
        return f"{self.x:0{COORDINATE_HEX_LENGTH}x}{self.y:0{COORDINATE_HEX_LENGTH}x}"

    def to_bytes(self) -> bytes:
        """Uncompressed SEC1 encoding (0x04 || x || y)."""
        return b"\x04" + bytes.fromhex(self.hex)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SM2PublicKey":
        if len(data) != 1 + 2 * COORDINATE_SIZE or data[0] != 0x04:
            raise ValueError("Expected an uncompressed SM2 public point")
        return cls(
            x=int.from_bytes(data[1 : 1 + COORDINATE_SIZE], "big"),
            y=int.from_bytes(data[1 + COORDINATE_SIZE :], "big"),
        )

    def verify(self, signature: bytes, data: bytes) -> bool:
        """Verify a DER ``ECDSA-Sig-Value`` SM2 signature over ``data``."""
        try:
            sig_value, _ = decoder.decode(signature, asn1Spec=rfc3279.ECDSA_Sig_Value())
        except PyAsn1Error:
            return False
        r, s = int(sig_value["r"]), int(sig_value["s"])
        if not (0 < r < CURVE_ORDER and 0 < s < CURVE_ORDER):
            return False

        crypt = _crypt_sm2(None, self.hex)
        sign_hex = f"{r:0{COORDINATE_HEX_LENGTH}x}{s:0{COORDINATE_HEX_LENGTH}x}"
        return bool(crypt.verify_with_sm3(sign_hex, data))


@dataclass(frozen=True)
class SM2PrivateKey:
    """SM2 private scalar paired with its public point."""

    d: int
    public_key: SM2PublicKey

    @property
    def hex(self) -> str:
        return f"{self.d:0{COORDINATE_HEX_LENGTH}x}"

    def sign(self, data: bytes) -> bytes:
        """Sign ``data`` with SM2-with-SM3 (Z value over the default user id).

        Returns the DER encoded ``ECDSA-Sig-Value``.

        Raises:
            ValueError: If gmssl rejects the per-signature nonce.
        """
        crypt = _crypt_sm2(self.hex, self.public_key.hex)
        nonce = f"{_random_scalar():0{COORDINATE_HEX_LENGTH}x}"
        sign_hex = crypt.sign_with_sm3(data, nonce)
        if not sign_hex:
            raise ValueError("SM2 signature produced a degenerate (r, s) pair")

        sig_value = rfc3279.ECDSA_Sig_Value()
        sig_value["r"] = int(sign_hex[:COORDINATE_HEX_LENGTH], 16)
        sig_value["s"] = int(sign_hex[COORDINATE_HEX_LENGTH:], 16)
        return encoder.encode(sig_value)

    def to_der(self) -> bytes:
        """Encode as an RFC 5915 ``ECPrivateKey`` bound to the SM2 curve."""
        ec_key = rfc5915.ECPrivateKey()
        ec_key["version"] = 1
        ec_key["privateKey"] = univ.OctetString(self.d.to_bytes(COORDINATE_SIZE, "big"))
        ec_key["parameters"]["namedCurve"] = OID_SM2_CURVE
        # publicKey is [1] tagged; clone the schema component to keep the tag
        ec_key["publicKey"] = ec_key["publicKey"].clone(hexValue=self.public_key.to_bytes().hex())
        return encoder.encode(ec_key)


def load_private_key_der(der: bytes) -> SM2PrivateKey:
    """Load an ``EC PRIVATE KEY`` DER structure written by :meth:`SM2PrivateKey.to_der`.

    Raises:
        ValueError: If the structure is malformed or not on the SM2 curve.
    """
    try:
        ec_key, _ = decoder.decode(der, asn1Spec=rfc5915.ECPrivateKey())
    except PyAsn1Error as e:
        raise ValueError(f"Malformed EC private key: {e}") from e

    if ec_key["parameters"]["namedCurve"] != OID_SM2_CURVE:
        raise ValueError("EC private key is not on the SM2 curve")

    d = int.from_bytes(ec_key["privateKey"].asOctets(), "big")
    public_key = SM2PublicKey.from_bytes(ec_key["publicKey"].asOctets())
    return SM2PrivateKey(d=d, public_key=public_key)


def generate_key_pair(name: str) -> SM2PrivateKey:
    """Generate a fresh SM2 key pair for ``name``.

    Raises:
        KeyGenerationError: If entropy or the curve operation fails.
    """
    with tracer.start_as_current_span("keys.generate_key_pair") as span:
        span.set_attribute("entity", name)
        try:
            d = _random_scalar()
            point = _crypt_sm2(f"{d:0{COORDINATE_HEX_LENGTH}x}", "")._kg(d, CURVE["g"])
            if not point:
                raise ValueError("scalar multiplication returned the point at infinity")
            public_key = SM2PublicKey(
                x=int(point[:COORDINATE_HEX_LENGTH], 16),
                y=int(point[COORDINATE_HEX_LENGTH:], 16),
            )
        except Exception as e:
            pki_metrics.record_failure("key_generation")
            logger.error("key_generation_failed", extra={"entity": name, "error": str(e)})
            raise KeyGenerationError(name, f"Failed to generate SM2 key pair: {e}") from e

        pki_metrics.record_key_generated()
        logger.debug("key_generated", extra={"entity": name})
        return SM2PrivateKey(d=d, public_key=public_key)
