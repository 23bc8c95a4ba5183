"""Loading of TLS certificates and private keys from PEM files."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import textwrap
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

try:
    from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
except ImportError:  # older releases keep it among the primitives
    from cryptography.hazmat.primitives.ciphers.algorithms import TripleDES  # type: ignore

_PEM_START = b"\n-----BEGIN "
_PEM_END = b"\n-----END "
_PEM_EOL = b"-----"

# RFC 1423 encryption modes: name -> (key size, block size).
_RFC1423_MODES = {
    "DES-CBC": (8, 8),
    "DES-EDE3-CBC": (24, 8),
    "AES-128-CBC": (16, 16),
    "AES-192-CBC": (24, 16),
    "AES-256-CBC": (32, 16),
}


class IncorrectPasswordError(ValueError):
    """Raised when an encrypted PEM block cannot be decrypted with a password."""

    def __init__(self) -> None:
        super().__init__("x509: decryption password incorrect")


@dataclass(frozen=True)
class PemBlock:
    """A decoded PEM block: its type, optional headers and binary content."""

    type: str
    data: bytes
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Certificate:
    """A TLS certificate chain together with its private key."""

    chain: tuple[bytes, ...]
    private_key: Any
    leaf: x509.Certificate

    @property
    def certificate_pem(self) -> bytes:
        """The certificate chain as PEM."""
        return b"".join(_pem_encode(PemBlock("CERTIFICATE", der)) for der in self.chain)

    @property
    def private_key_pem(self) -> bytes:
        """The unencrypted private key as PKCS#8 PEM."""
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


def _get_line(data: bytes) -> tuple[bytes, bytes]:
    i = data.find(b"\n")
    if i < 0:
        line, rest = data, b""
    else:
        line, rest = data[:i], data[i + 1 :]
    return line.rstrip(b" \t\r"), rest


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _pem_decode(data: bytes) -> tuple[Optional[PemBlock], bytes]:
    """Find the next PEM block in data; return it and the remaining bytes.

    If no block is found, return None and data unchanged.
    """
    rest = data
    while True:
        if rest.startswith(_PEM_START[1:]):
            rest = rest[len(_PEM_START) - 1 :]
        else:
            i = rest.find(_PEM_START)
            if i < 0:
                return None, data
            rest = rest[i + len(_PEM_START) :]

        type_line, rest = _get_line(rest)
        if not type_line.endswith(_PEM_EOL):
            continue
        type_line = type_line[: -len(_PEM_EOL)]

        headers: dict[str, str] = {}
        while True:
            if not rest:
                return None, data
            line, following = _get_line(rest)
            key, sep, value = line.partition(b":")
            if not sep:
                break
            headers[_text(key.strip())] = _text(value.strip())
            rest = following

        if not headers and rest.startswith(_PEM_END[1:]):
            end_index, trailer_index = 0, len(_PEM_END) - 1
        else:
            end_index = rest.find(_PEM_END)
            trailer_index = end_index + len(_PEM_END)
        if end_index < 0:
            continue

        trailer_len = len(type_line) + len(_PEM_EOL)
        trailer = rest[trailer_index : trailer_index + trailer_len]
        if trailer != type_line + _PEM_EOL:
            continue
        tail, _ = _get_line(rest[trailer_index + trailer_len :])
        if tail:
            continue

        encoded = rest[:end_index].translate(None, b" \t\r\n")
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            continue

        _, remainder = _get_line(rest[end_index + len(_PEM_END) - 1 :])
        return PemBlock(_text(type_line), payload, headers), remainder


def _pem_blocks(data: bytes):
    rest = data
    while True:
        block, rest = _pem_decode(rest)
        if block is None:
            return
        yield block


def _pem_encode(block: PemBlock) -> bytes:
    lines = [f"-----BEGIN {block.type}-----"]
    if block.headers:
        names = sorted(k for k in block.headers if k != "Proc-Type")
        if "Proc-Type" in block.headers:
            names.insert(0, "Proc-Type")
        lines.extend(f"{name}: {block.headers[name]}" for name in names)
        lines.append("")
    lines.extend(textwrap.wrap(base64.b64encode(block.data).decode("ascii"), 64))
    lines.append(f"-----END {block.type}-----")
    return ("\n".join(lines) + "\n").encode("utf-8")


def filter_pem(pem_blocks: Union[bytes, str], predicate: Callable[[PemBlock], bool]) -> bytes:
    """Check that every PEM block passes predicate; return the trimmed input.

    Raise ValueError if the data holds no valid PEM or a block is rejected.
    """
    if isinstance(pem_blocks, str):
        pem_blocks = pem_blocks.encode("utf-8")
    pem_blocks = bytes(pem_blocks).strip()

    rest = pem_blocks
    while rest:
        block, rest = _pem_decode(rest)
        if block is None:
            raise ValueError("https: no valid PEM data")
        if not predicate(block):
            raise ValueError("https: unsupported PEM data block")
    return pem_blocks


def _is_private_key_type(kind: str) -> bool:
    return kind == "PRIVATE KEY" or kind.endswith(" PRIVATE KEY")


def _read_certificate(cert_file: Union[str, os.PathLike]) -> bytes:
    with open(cert_file, "rb") as f:
        data = f.read()
    return filter_pem(data, lambda b: b.type == "CERTIFICATE")


def _derive_key(password: bytes, salt: bytes, size: int) -> bytes:
    out = b""
    digest = b""
    while len(out) < size:
        digest = hashlib.md5(digest + password + salt, usedforsecurity=False).digest()
        out += digest
    return out[:size]


def _decrypt_pem_block(block: PemBlock, password: bytes) -> bytes:
    """Decrypt a PEM block encrypted as specified by RFC 1423."""
    dek = block.headers.get("DEK-Info")
    if dek is None:
        raise ValueError("x509: no DEK-Info header in block")
    mode, sep, hex_iv = dek.partition(",")
    if not sep:
        raise ValueError("x509: malformed DEK-Info header")
    if mode not in _RFC1423_MODES:
        raise ValueError("x509: unknown encryption mode")
    key_size, block_size = _RFC1423_MODES[mode]
    iv = bytes.fromhex(hex_iv)
    if len(iv) != block_size:
        raise ValueError("x509: incorrect IV size")

    key = _derive_key(password, iv[:8], key_size)
    if len(block.data) % block_size != 0:
        raise ValueError("x509: encrypted PEM data is not a multiple of the block size")
    algorithm = TripleDES(key) if mode.startswith("DES") else algorithms.AES(key)
    decryptor = Cipher(algorithm, modes.CBC(iv)).decryptor()
    data = decryptor.update(block.data) + decryptor.finalize()

    if not data or len(data) % block_size != 0:
        raise ValueError("x509: invalid padding")
    last = data[-1]
    if len(data) < last or last == 0 or last > block_size:
        raise IncorrectPasswordError()
    if any(b != last for b in data[-last:]):
        raise IncorrectPasswordError()
    return data[:-last]


def _read_private_key(key_file: Union[str, os.PathLike], password: Optional[str]) -> bytes:
    with open(key_file, "rb") as f:
        data = f.read()
    data = filter_pem(
        data, lambda b: b.type == "CERTIFICATE" or _is_private_key_type(b.type)
    )

    for block in _pem_blocks(data):
        if not _is_private_key_type(block.type):
            continue
        if "DEK-Info" in block.headers:
            if not password:
                raise ValueError("https: private key is encrypted: password required")
            plaintext = _decrypt_pem_block(block, password.encode("utf-8"))
            return _pem_encode(PemBlock(block.type, plaintext))
        return _pem_encode(block)
    raise ValueError("https: no PEM-encoded private key found")


def _public_key_bytes(public_key: Any) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _key_pair(cert_pem: bytes, key_pem: bytes) -> Certificate:
    chain = tuple(b.data for b in _pem_blocks(cert_pem) if b.type == "CERTIFICATE")
    if not chain:
        raise ValueError("tls: failed to find any PEM data in certificate input")
    key_block = next((b for b in _pem_blocks(key_pem) if _is_private_key_type(b.type)), None)
    if key_block is None:
        raise ValueError("tls: failed to find any PEM data in key input")

    try:
        leaf = x509.load_der_x509_certificate(chain[0])
    except ValueError:
        raise ValueError("tls: failed to parse certificate") from None
    try:
        private_key = serialization.load_der_private_key(key_block.data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise ValueError("tls: failed to parse private key") from None

    try:
        matches = _public_key_bytes(private_key.public_key()) == _public_key_bytes(
            leaf.public_key()
        )
    except (ValueError, UnsupportedAlgorithm):
        matches = False
    if not matches:
        raise ValueError("tls: private key does not match public key")
    return Certificate(chain=chain, private_key=private_key, leaf=leaf)


def certificate_from_file(
    cert_file: Union[str, os.PathLike],
    key_file: Union[str, os.PathLike],
    password: Optional[str] = None,
) -> Certificate:
    """Load a PEM certificate chain and its PEM private key from files.

    An encrypted private key (RFC 1423) is decrypted with password. Note
    that this legacy PEM encryption does not authenticate the ciphertext.
    """
    cert_pem = _read_certificate(cert_file)
    key_pem = _read_private_key(key_file, password)
    return _key_pair(cert_pem, key_pem)