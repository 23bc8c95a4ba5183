"""Parsing of structured ciphertext formats produced by earlier versions."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

import msgpack

from .common import DecryptError, KeyAlgorithm

_IV_SIZE = 16
_NONCE_SIZE = 12

_JSON_AES256 = "AES-256-GCM-HMAC-SHA-256"
_JSON_CHACHA20 = "ChaCha20Poly1305"


def _json_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if not isinstance(value, str):
        raise DecryptError()
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise DecryptError() from None


@dataclass(frozen=True)
class Ciphertext:
    """Encrypted bytes together with what is needed to decrypt them."""

    algorithm: KeyAlgorithm
    iv: bytes
    nonce: bytes
    data: bytes
    id: str = ""

    @classmethod
    def from_binary(cls, data: bytes) -> Ciphertext:
        """Parse a msgpack-encoded ciphertext; raise DecryptError if malformed."""
        try:
            items = msgpack.unpackb(bytes(data), raw=False)
        except (ValueError, TypeError, msgpack.exceptions.UnpackException):
            raise DecryptError() from None

        if not isinstance(items, list) or len(items) != 5:
            raise DecryptError()
        algorithm, key_id, iv, nonce, payload = items
        if not isinstance(algorithm, str) or not isinstance(key_id, str):
            raise DecryptError()
        if not isinstance(iv, bytes) or len(iv) != _IV_SIZE:
            raise DecryptError()
        if not isinstance(nonce, bytes) or len(nonce) != _NONCE_SIZE:
            raise DecryptError()
        if not isinstance(payload, bytes):
            raise DecryptError()
        try:
            alg = KeyAlgorithm.parse(algorithm)
        except ValueError:
            raise DecryptError() from None
        return cls(algorithm=alg, iv=iv, nonce=nonce, data=payload, id=key_id)

    @classmethod
    def from_json(cls, text: str | bytes) -> Ciphertext:
        """Parse a JSON-encoded ciphertext; raise DecryptError if malformed."""
        try:
            value = json.loads(text)
        except ValueError:
            raise DecryptError() from None
        if not isinstance(value, dict):
            raise DecryptError()

        algorithm = value.get("aead")
        if algorithm not in (_JSON_AES256, _JSON_CHACHA20):
            raise DecryptError()
        key_id = value.get("id")
        if key_id is None:
            key_id = ""
        elif not isinstance(key_id, str):
            raise DecryptError()

        iv = _json_bytes(value.get("iv"))
        nonce = _json_bytes(value.get("nonce"))
        payload = _json_bytes(value.get("bytes"))
        if len(iv) != _IV_SIZE or len(nonce) != _NONCE_SIZE:
            raise DecryptError()

        alg = KeyAlgorithm.AES256 if algorithm == _JSON_AES256 else KeyAlgorithm.CHACHA20
        return cls(algorithm=alg, iv=iv, nonce=nonce, data=payload, id=key_id)


def parse_ciphertext(data: bytes) -> bytes:
    """Convert a legacy structured ciphertext into the flat format.

    The flat format is the encrypted bytes followed by the IV and the
    nonce. Data that is not a well-formed legacy ciphertext is returned
    unchanged.
    """
    data = bytes(data)
    if not data:
        return data

    first = data[0]
    try:
        if first == 0x95:  # msgpack array of five items
            c = Ciphertext.from_binary(data)
        elif first == 0x7B:  # JSON object
            c = Ciphertext.from_json(data)
        else:
            return data
    except DecryptError:
        return data
    return c.data + c.iv + c.nonce