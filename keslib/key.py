"""Secret keys, HMAC keys and versioned key material."""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import json
import os
import platform
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from . import fips
from .ciphertext import parse_ciphertext
from .common import IDENTITY_UNKNOWN, DecryptError, Identity

SECRET_KEY_SIZE = 32
HMAC_KEY_SIZE = 32

_RAND_SIZE = 28  # 16 bytes IV followed by a 12 byte nonce
_IV_SIZE = 16
_TAG_SIZE = 16

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

# Architectures whose CPUs provide hardware support for AES-GCM.
_AES_GCM_MACHINES = frozenset({"x86_64", "amd64", "aarch64", "arm64", "s390x"})


class SecretKeyType(enum.IntEnum):
    """The cipher of a secret key."""

    AES256 = 1
    CHACHA20 = 2

    def __str__(self) -> str:
        return "AES256" if self is SecretKeyType.AES256 else "ChaCha20"

    @classmethod
    def parse(cls, text: str) -> SecretKeyType:
        """Parse the textual representation of a secret key type."""
        try:
            return _CIPHER_NAMES[text]
        except (KeyError, TypeError):
            raise ValueError(f"crypto: secret key type '{text}' is not supported") from None


_CIPHER_NAMES = {
    "AES256": SecretKeyType.AES256,
    "AES256-GCM_SHA256": SecretKeyType.AES256,
    "ChaCha20": SecretKeyType.CHACHA20,
    "XCHACHA20-POLY1305": SecretKeyType.CHACHA20,
}


class Hash(enum.IntEnum):
    """A cryptographic hash function."""

    SHA256 = 1

    def __str__(self) -> str:
        return "SHA256"


def determine_secret_key_type() -> SecretKeyType:
    """Pick AES256 in FIPS mode or on CPUs with AES-GCM support, else ChaCha20."""
    if fips.ENABLED or platform.machine().lower() in _AES_GCM_MACHINES:
        return SecretKeyType.AES256
    return SecretKeyType.CHACHA20


def _read_random(random: Optional[BinaryIO], size: int) -> bytes:
    if random is None:
        return os.urandom(size)
    buf = bytearray()
    while len(buf) < size:
        chunk = random.read(size - len(buf))
        if not chunk:
            raise EOFError("crypto: not enough random bytes")
        buf += chunk
    return bytes(buf)


def _rotl32(v: int, n: int) -> int:
    return ((v << n) | (v >> (32 - n))) & 0xFFFFFFFF


def _quarter_round(x: list[int], a: int, b: int, c: int, d: int) -> None:
    x[a] = (x[a] + x[b]) & 0xFFFFFFFF
    x[d] = _rotl32(x[d] ^ x[a], 16)
    x[c] = (x[c] + x[d]) & 0xFFFFFFFF
    x[b] = _rotl32(x[b] ^ x[c], 12)
    x[a] = (x[a] + x[b]) & 0xFFFFFFFF
    x[d] = _rotl32(x[d] ^ x[a], 8)
    x[c] = (x[c] + x[d]) & 0xFFFFFFFF
    x[b] = _rotl32(x[b] ^ x[c], 7)


def _hchacha20(key: bytes, nonce: bytes) -> bytes:
    """Derive a 32 byte subkey from a 32 byte key and a 16 byte nonce."""
    state = [0x61707865, 0x3320646E, 0x79622D32, 0x6B206574]
    state += struct.unpack("<8I", key)
    state += struct.unpack("<4I", nonce)
    for _ in range(10):
        _quarter_round(state, 0, 4, 8, 12)
        _quarter_round(state, 1, 5, 9, 13)
        _quarter_round(state, 2, 6, 10, 14)
        _quarter_round(state, 3, 7, 11, 15)
        _quarter_round(state, 0, 5, 10, 15)
        _quarter_round(state, 1, 6, 11, 12)
        _quarter_round(state, 2, 7, 8, 13)
        _quarter_round(state, 3, 4, 9, 14)
    return struct.pack("<8I", *state[0:4], *state[12:16])


def _aead(cipher: SecretKeyType, key: bytes, iv: bytes) -> Union[AESGCM, ChaCha20Poly1305]:
    if cipher is SecretKeyType.AES256:
        return AESGCM(hmac.new(key, iv, hashlib.sha256).digest())
    return ChaCha20Poly1305(_hchacha20(key, iv))


class SecretKey:
    """A secret key used for authenticated encryption and decryption."""

    __slots__ = ("_cipher", "_key")

    def __init__(self, cipher: SecretKeyType, key: bytes) -> None:
        cipher = SecretKeyType(cipher)
        key = bytes(key)
        if len(key) != SECRET_KEY_SIZE:
            raise ValueError(f"crypto: invalid key length '{len(key)}' for '{cipher}'")
        self._cipher = cipher
        self._key = key

    @classmethod
    def generate(cls, cipher: SecretKeyType, random: Optional[BinaryIO] = None) -> SecretKey:
        """Create a key from random bytes read from random, or the OS if None."""
        return cls(cipher, _read_random(random, SECRET_KEY_SIZE))

    @property
    def cipher(self) -> SecretKeyType:
        return self._cipher

    @property
    def overhead(self) -> int:
        """Size difference between a plaintext and its ciphertext."""
        return _RAND_SIZE + _TAG_SIZE

    def __bytes__(self) -> bytes:
        return self._key

    def _check_fips(self) -> None:
        if fips.ENABLED and self._cipher is not SecretKeyType.AES256:
            raise ValueError("crypto: cipher not available in FIPS mode")

    def encrypt(self, plaintext: bytes, associated_data: bytes = b"") -> bytes:
        """Encrypt plaintext and authenticate it together with associated_data."""
        self._check_fips()
        random = os.urandom(_RAND_SIZE)
        iv, nonce = random[:_IV_SIZE], random[_IV_SIZE:]
        aead = _aead(self._cipher, self._key, iv)
        sealed = aead.encrypt(nonce, bytes(plaintext), bytes(associated_data or b""))
        return sealed + random

    def decrypt(self, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
        """Decrypt and authenticate ciphertext; raise DecryptError if not authentic."""
        self._check_fips()
        data = parse_ciphertext(ciphertext)
        if len(data) <= _RAND_SIZE:
            raise DecryptError()
        sealed, random = data[:-_RAND_SIZE], data[-_RAND_SIZE:]
        iv, nonce = random[:_IV_SIZE], random[_IV_SIZE:]
        aead = _aead(self._cipher, self._key, iv)
        try:
            return aead.decrypt(nonce, sealed, bytes(associated_data or b""))
        except InvalidTag:
            raise DecryptError() from None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretKey):
            return NotImplemented
        return self._cipher == other._cipher and hmac.compare_digest(self._key, other._key)

    def __hash__(self) -> int:
        return hash((self._cipher, self._key))

    def __repr__(self) -> str:
        return f"SecretKey({self._cipher})"


class HMACKey:
    """A secret key used for computing HMAC checksums."""

    __slots__ = ("_hash", "_key")

    def __init__(self, hash: Hash, key: bytes) -> None:
        hash = Hash(hash)
        key = bytes(key)
        if len(key) != HMAC_KEY_SIZE:
            raise ValueError(f"crypto: invalid key length '{len(key)}' for '{hash}'")
        self._hash = hash
        self._key = key

    @classmethod
    def generate(cls, hash: Hash, random: Optional[BinaryIO] = None) -> HMACKey:
        """Create a key from random bytes read from random, or the OS if None."""
        return cls(hash, _read_random(random, HMAC_KEY_SIZE))

    @property
    def hash(self) -> Hash:
        return self._hash

    def __bytes__(self) -> bytes:
        return self._key

    def sum(self, msg: bytes) -> bytes:
        """Return the HMAC checksum of msg."""
        return hmac.new(self._key, bytes(msg), hashlib.sha256).digest()

    def equal(self, mac1: bytes, mac2: bytes) -> bool:
        """Compare two checksums in constant time."""
        return hmac.compare_digest(bytes(mac1), bytes(mac2))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HMACKey):
            return NotImplemented
        return self._hash == other._hash and hmac.compare_digest(self._key, other._key)

    def __hash__(self) -> int:
        return hash((self._hash, self._key))

    def __repr__(self) -> str:
        return f"HMACKey({self._hash})"


# Minimal protobuf wire format support for the KeyVersion message.


def _pb_varint(value: int) -> bytes:
    if value < 0:
        value += 1 << 64
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _pb_varint_field(number: int, value: int) -> bytes:
    return _pb_varint(number << 3) + _pb_varint(value) if value else b""


def _pb_bytes_field(number: int, data: bytes) -> bytes:
    return _pb_varint(number << 3 | 2) + _pb_varint(len(data)) + data


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(data):
            raise ValueError("protobuf: truncated varint")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not b & 0x80:
            return result & 0xFFFFFFFFFFFFFFFF, pos
    raise ValueError("protobuf: varint overflow")


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise ValueError("protobuf: truncated field")
    return data[pos:end], end


def _pb_parse(data: bytes) -> dict[int, Union[int, bytes]]:
    fields: dict[int, Union[int, bytes]] = {}
    pos = 0
    while pos < len(data):
        tag, pos = _read_varint(data, pos)
        number, wire = tag >> 3, tag & 7
        if number == 0:
            raise ValueError("protobuf: invalid field number")
        value: Union[int, bytes]
        if wire == 0:
            value, pos = _read_varint(data, pos)
        elif wire == 1:
            value, pos = _take(data, pos, 8)
        elif wire == 2:
            length, pos = _read_varint(data, pos)
            value, pos = _take(data, pos, length)
        elif wire == 5:
            value, pos = _take(data, pos, 4)
        else:
            raise ValueError(f"protobuf: unsupported wire type {wire}")
        fields[number] = value
    return fields


def _pb_field(fields: dict[int, Union[int, bytes]], number: int, kind: type, default: Any) -> Any:
    value = fields.get(number, default)
    if not isinstance(value, kind):
        raise ValueError(f"protobuf: invalid wire type for field {number}")
    return value


def _signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >= 1 << (bits - 1) else value


def _pb_timestamp(t: datetime) -> bytes:
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    delta = t - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    nanos = delta.microseconds * 1000
    return _pb_varint_field(1, seconds) + _pb_varint_field(2, nanos)


def _decode_timestamp(raw: Optional[bytes]) -> datetime:
    fields = _pb_parse(raw or b"")
    seconds = _signed(_pb_field(fields, 1, int, 0), 64)
    nanos = _signed(_pb_field(fields, 2, int, 0), 32)
    try:
        return _EPOCH + timedelta(seconds=seconds, microseconds=nanos // 1000)
    except OverflowError:
        raise ValueError("crypto: key creation time out of range") from None


def _decode_secret_key(raw: Optional[bytes]) -> SecretKey:
    fields = _pb_parse(raw or b"")
    key = _pb_field(fields, 1, bytes, b"")
    kind = _pb_field(fields, 2, int, 0)
    if len(key) != SECRET_KEY_SIZE:
        raise ValueError(f"crypto: invalid secret key length '{len(key)}'")
    if kind not in (SecretKeyType.AES256, SecretKeyType.CHACHA20):
        raise ValueError(f"crypto: invalid secret key type '{kind}'")
    return SecretKey(SecretKeyType(kind), key)


def _decode_hmac_key(raw: Optional[bytes]) -> HMACKey:
    fields = _pb_parse(raw or b"")
    key = _pb_field(fields, 1, bytes, b"")
    kind = _pb_field(fields, 2, int, 0)
    if len(key) != HMAC_KEY_SIZE:
        raise ValueError(f"crypto: invalid HMAC key length '{len(key)}'")
    if kind != Hash.SHA256:
        raise ValueError(f"crypto: invalid HMAC key hash '{kind}'")
    return HMACKey(Hash(kind), key)


@dataclass(frozen=True)
class KeyVersion:
    """A version of a secret key with its HMAC key and creation metadata."""

    key: Optional[SecretKey] = None
    hmac_key: Optional[HMACKey] = None
    created_at: datetime = ZERO_TIME
    created_by: Identity = IDENTITY_UNKNOWN

    def __post_init__(self) -> None:
        object.__setattr__(self, "created_by", Identity(self.created_by))

    @property
    def has_hmac_key(self) -> bool:
        """Whether an HMAC key is present; older keys were created without one."""
        return self.hmac_key is not None

    def to_protobuf(self) -> bytes:
        """Serialize the key version to its protobuf representation."""
        if self.key is None:
            raise ValueError("crypto: secret key is not initialized")
        if self.hmac_key is None:
            raise ValueError("crypto: HMAC key is not initialized")
        encoded_key = _pb_bytes_field(1, bytes(self.key)) + _pb_varint_field(2, int(self.key.cipher))
        mac = _pb_bytes_field(1, bytes(self.hmac_key)) + _pb_varint_field(2, int(self.hmac_key.hash))
        parts = [
            _pb_bytes_field(1, encoded_key),
            _pb_bytes_field(2, mac),
            _pb_bytes_field(3, _pb_timestamp(self.created_at)),
        ]
        if self.created_by:
            parts.append(_pb_bytes_field(4, self.created_by.encode("utf-8")))
        return b"".join(parts)

    @classmethod
    def from_protobuf(cls, data: bytes) -> KeyVersion:
        """Parse a key version from its protobuf representation."""
        fields = _pb_parse(bytes(data))
        key = _decode_secret_key(_pb_field(fields, 1, bytes, b""))
        hmac_key = _decode_hmac_key(_pb_field(fields, 2, bytes, b""))
        created_at = _decode_timestamp(_pb_field(fields, 3, bytes, b""))
        created_by = _pb_field(fields, 4, bytes, b"").decode("utf-8")
        return cls(key=key, hmac_key=hmac_key, created_at=created_at, created_by=Identity(created_by))


def encode_key_version(key: KeyVersion) -> bytes:
    """Encode a key version as base64 of its protobuf representation."""
    return base64.b64encode(key.to_protobuf())


_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?([Zz]|[+-]\d{2}:\d{2})"
)


def _parse_time(value: Any) -> datetime:
    if value is None:
        return ZERO_TIME
    if not isinstance(value, str):
        raise ValueError("crypto: invalid key creation time")
    m = _RFC3339.fullmatch(value)
    if m is None:
        raise ValueError(f"crypto: invalid key creation time '{value}'")
    year, month, day, hour, minute, second = (int(g) for g in m.groups()[:6])
    micros = int((m[7] or "").ljust(6, "0")[:6])
    zone = m[8]
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    try:
        return datetime(year, month, day, hour, minute, second, micros, tzinfo=tz).astimezone(
            timezone.utc
        )
    except OverflowError:
        raise ValueError(f"crypto: invalid key creation time '{value}'") from None


def _decode_b64(value: str) -> bytes:
    return base64.b64decode(value.replace("\r", "").replace("\n", ""), validate=True)


def _key_version_from_json(value: Any) -> KeyVersion:
    if value is None:
        value = {}
    if not isinstance(value, dict):
        raise ValueError("crypto: invalid key version: not a JSON object")
    fields = {name.lower(): item for name, item in value.items()}

    raw = fields.get("bytes")
    if raw is None:
        key_bytes = b""
    elif isinstance(raw, str):
        key_bytes = _decode_b64(raw)
    else:
        raise ValueError("crypto: invalid key version: key bytes must be a string")

    kind = fields.get("algorithm")
    if kind is None or kind == "":
        cipher = SecretKeyType.AES256
    elif isinstance(kind, str):
        cipher = SecretKeyType.parse(kind)
    else:
        raise ValueError("crypto: invalid key version: algorithm must be a string")

    created_by = fields.get("created_by")
    if created_by is None:
        created_by = ""
    elif not isinstance(created_by, str):
        raise ValueError("crypto: invalid key version: created_by must be a string")

    return KeyVersion(
        key=SecretKey(cipher, key_bytes),
        created_at=_parse_time(fields.get("created_at")),
        created_by=Identity(created_by),
    )


def parse_key_version(data: Union[bytes, str]) -> KeyVersion:
    """Parse a key version from its legacy JSON or its base64 protobuf form."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    data = bytes(data)
    try:
        value = json.loads(data)
    except ValueError:
        pass
    else:
        return _key_version_from_json(value)

    raw = base64.b64decode(data.replace(b"\r", b"").replace(b"\n", b""), validate=True)
    return KeyVersion.from_protobuf(raw)