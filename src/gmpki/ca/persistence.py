"""PEM persistence for generated keys and certificates."""

import base64
import logging
import os
import textwrap
from collections.abc import Callable
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from gmpki.ca.errors import PersistenceError
from gmpki.ca.keys import SM2PrivateKey
from gmpki.metrics import pki_metrics

logger = logging.getLogger(__name__)

PRIVATE_KEY_LABEL = "EC PRIVATE KEY"
KEY_FILE_MODE = 0o600
CERT_FILE_MODE = 0o644


def key_path(directory: Path, name: str) -> Path:
    return directory / f"{name}-key.pem"


def cert_path(directory: Path, name: str) -> Path:
    return directory / f"{name}-cert.pem"


def pem_encode(label: str, der: bytes) -> bytes:
    """Wrap DER bytes in a single unencrypted PEM block.

    Only used for SM2 private keys, which ``cryptography`` cannot serialize.
    """
    body = "\n".join(textwrap.wrap(base64.b64encode(der).decode("ascii"), 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n".encode("ascii")


def _private_key_pem(key: SM2PrivateKey) -> bytes:
    return pem_encode(PRIVATE_KEY_LABEL, key.to_der())


def _certificate_pem(der: bytes) -> bytes:
    return x509.load_der_x509_certificate(der).public_bytes(serialization.Encoding.PEM)


def _write(name: str, path: Path, encode: Callable[[], bytes], mode: int) -> Path:
    try:
        data = encode()
    except Exception as e:
        pki_metrics.record_failure("persistence")
        logger.error("pem_encoding_failed", extra={"entity": name, "path": str(path), "error": str(e)})
        raise PersistenceError(name, f"Failed to encode {path.name}: {e}") from e

    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
    except OSError as e:
        pki_metrics.record_failure("persistence")
        logger.error("pem_write_failed", extra={"entity": name, "path": str(path), "error": str(e)})
        raise PersistenceError(name, f"Failed to write {path}: {e}") from e

    logger.debug("pem_written", extra={"entity": name, "path": str(path)})
    return path


def write_private_key(name: str, key: SM2PrivateKey, directory: Path) -> Path:
    """Write ``<name>-key.pem`` readable by the owner only.

    Raises:
        PersistenceError: If the key cannot be encoded or written.
    """
    return _write(name, key_path(directory, name), lambda: _private_key_pem(key), KEY_FILE_MODE)


def write_certificate(name: str, der: bytes, directory: Path) -> Path:
    """Write ``<name>-cert.pem``.

    Raises:
        PersistenceError: If the certificate cannot be encoded or written.
    """
    return _write(name, cert_path(directory, name), lambda: _certificate_pem(der), CERT_FILE_MODE)
