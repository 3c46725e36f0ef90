"""Error kinds raised while building the test PKI.

Every error carries the name of the entity (``Org1``, ``Org1-server2`` ...)
whose key or certificate could not be produced.
"""


class PKIError(Exception):
    """Base class for per-entity generation failures."""

    def __init__(self, entity: str, message: str) -> None:
        super().__init__(f"{entity}: {message}")
        self.entity = entity
        self.message = message


class KeyGenerationError(PKIError):
    """Raised when an SM2 key pair or serial number cannot be generated."""

    pass


class SigningError(PKIError):
    """Raised when a certificate cannot be signed by its issuer."""

    pass


class CertificateParseError(PKIError):
    """Raised when freshly signed DER cannot be parsed back."""

    pass


class PersistenceError(PKIError):
    """Raised when a PEM file cannot be written."""

    pass


class GenerationError(PKIError):
    """Raised for an unexpected failure while generating one entity."""

    pass
