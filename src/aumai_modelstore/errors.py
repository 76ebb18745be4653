"""Exception hierarchy for aumai-modelstore."""

from __future__ import annotations

__all__ = [
    "DigestMismatchError",
    "InvalidFormatError",
    "MissingInputError",
    "ModelStoreError",
    "NetworkError",
    "RegistryError",
    "TruncatedInputError",
    "UnsupportedTypeError",
    "UnsupportedVersionError",
]


class ModelStoreError(Exception):
    """Base exception for model store operations."""


class InvalidFormatError(ModelStoreError):
    """Raised when a file is not a valid GGUF file."""


class UnsupportedVersionError(InvalidFormatError):
    """Raised when the GGUF version is outside the supported range."""


class UnsupportedTypeError(InvalidFormatError):
    """Raised when a GGUF value carries an unknown type tag."""

    def __init__(self, type_tag: int) -> None:
        super().__init__(f"not a valid gguf file: unsupported type {type_tag}")
        self.type_tag = type_tag


class TruncatedInputError(ModelStoreError):
    """Raised when a file holds fewer bytes than its header declares."""


class NetworkError(ModelStoreError):
    """Raised on a non-success HTTP status or a transport failure."""


class DigestMismatchError(NetworkError):
    """Raised when a downloaded blob does not hash to its declared digest."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"digest mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class RegistryError(ModelStoreError):
    """Raised when the registry reports an error in a successful response."""


class MissingInputError(ModelStoreError):
    """Raised when no base model can be derived from the given inputs."""
