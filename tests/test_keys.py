"""Unit tests for SM2 key generation and signatures."""

from unittest.mock import patch

import pytest
from pyasn1.codec.der import decoder
from pyasn1_modules import rfc5915

from gmpki.ca.errors import KeyGenerationError
from gmpki.ca.keys import (
    CURVE_ORDER,
    OID_SM2_CURVE,
    SM2PublicKey,
    generate_key_pair,
    load_private_key_der,
)


class TestGenerateKeyPair:
    """Tests for generate_key_pair."""

    def test_generates_scalar_in_range(self):
        """Test that the private scalar lies in [1, n-2]."""
        key = generate_key_pair("Org1")
        assert 1 <= key.d <= CURVE_ORDER - 2

    def test_keys_are_fresh_per_call(self):
        """Test that two calls never return the same key material."""
        first = generate_key_pair("Org1")
        second = generate_key_pair("Org1")
        assert first.d != second.d
        assert first.public_key != second.public_key

    def test_public_key_is_uncompressed_point(self):
        """Test SEC1 uncompressed encoding of the public point."""
        key = generate_key_pair("Org1")
        encoded = key.public_key.to_bytes()
        assert len(encoded) == 65
        assert encoded[0] == 0x04
        assert SM2PublicKey.from_bytes(encoded) == key.public_key

    def test_entropy_failure_raises_key_generation_error(self):
        """Test that failures are wrapped with the entity name."""
        with patch("gmpki.ca.keys.secrets.randbelow", side_effect=OSError("no entropy")):
            with pytest.raises(KeyGenerationError, match="Org1-server1") as exc_info:
                generate_key_pair("Org1-server1")

        assert exc_info.value.entity == "Org1-server1"
        assert isinstance(exc_info.value.__cause__, OSError)


class TestSignatures:
    """Tests for SM2-with-SM3 signing and verification."""

    def test_sign_then_verify(self):
        """Test that a signature verifies with the matching public key."""
        key = generate_key_pair("Org1")
        signature = key.sign(b"tbs certificate bytes")
        assert key.public_key.verify(signature, b"tbs certificate bytes")

    def test_verify_rejects_other_message(self):
        key = generate_key_pair("Org1")
        signature = key.sign(b"original")
        assert not key.public_key.verify(signature, b"tampered")

    def test_verify_rejects_other_key(self):
        key = generate_key_pair("Org1")
        other = generate_key_pair("Org2")
        signature = key.sign(b"message")
        assert not other.public_key.verify(signature, b"message")

    def test_verify_rejects_malformed_signature(self):
        key = generate_key_pair("Org1")
        assert not key.public_key.verify(b"\x00\x01garbage", b"message")


class TestPrivateKeyEncoding:
    """Tests for the RFC 5915 EC PRIVATE KEY structure."""

    def test_der_structure(self):
        """Test version, curve and embedded public key."""
        key = generate_key_pair("Org1")
        ec_key, rest = decoder.decode(key.to_der(), asn1Spec=rfc5915.ECPrivateKey())

        assert rest == b""
        assert int(ec_key["version"]) == 1
        assert len(ec_key["privateKey"].asOctets()) == 32
        assert ec_key["parameters"]["namedCurve"] == OID_SM2_CURVE
        assert ec_key["publicKey"].asOctets() == key.public_key.to_bytes()

    def test_load_private_key_der(self):
        """Test that a written key loads back to the same key pair."""
        key = generate_key_pair("Org1")
        assert load_private_key_der(key.to_der()) == key

    def test_load_rejects_garbage(self):
        with pytest.raises(ValueError, match="Malformed"):
            load_private_key_der(b"\x30\x03\x02\x01")
