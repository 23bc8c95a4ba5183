"""Errors, identities and key algorithms shared across the package."""

from __future__ import annotations

import enum
from http import HTTPStatus


class KesError(Exception):
    """An error carrying an HTTP status code and a message."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = int(status_code)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KesError):
            return NotImplemented
        return (self.status_code, self.message) == (other.status_code, other.message)

    def __hash__(self) -> int:
        return hash((self.status_code, self.message))


class DecryptError(KesError):
    """Raised when a ciphertext is malformed or not authentic."""

    def __init__(self, message: str = "decryption failed: ciphertext is not authentic") -> None:
        super().__init__(HTTPStatus.BAD_REQUEST, message)


class NotAllowedError(KesError):
    """Raised when a request is not authorized."""

    def __init__(self, message: str = "not authorized: insufficient permissions") -> None:
        super().__init__(HTTPStatus.FORBIDDEN, message)


class Identity(str):
    """The identity of a client: the hex-encoded hash of its public key."""

    def is_unknown(self) -> bool:
        """Report whether this is the unknown (empty) identity."""
        return self == ""


IDENTITY_UNKNOWN = Identity("")


_ALGORITHM_NAMES = {
    "AES256": 0,
    "AES256-GCM_SHA256": 0,
    "ChaCha20": 1,
    "XCHACHA20-POLY1305": 1,
}


class KeyAlgorithm(enum.IntEnum):
    """The cryptographic algorithm of a key."""

    AES256 = 0
    CHACHA20 = 1

    def __str__(self) -> str:
        return "AES256" if self is KeyAlgorithm.AES256 else "ChaCha20"

    @classmethod
    def parse(cls, text: str | bytes) -> KeyAlgorithm:
        """Parse the textual representation of a key algorithm."""
        if isinstance(text, (bytes, bytearray)):
            text = bytes(text).decode("utf-8", errors="replace")
        try:
            return cls(_ALGORITHM_NAMES[text])
        except KeyError:
            raise ValueError(f"kes: invalid key algorithm '{text}'") from None