"""Verification of requests forwarded by trusted TLS proxies."""

from __future__ import annotations

import hashlib
import ipaddress
import re
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Mapping, Optional, Union
from urllib.parse import unquote_to_bytes

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .certificate import _pem_decode
from .common import IDENTITY_UNKNOWN, Identity, KesError, NotAllowedError
from .headers import X_FORWARDED_FOR

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_FORWARDED_IP_KEY = object()

_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~0123456789"
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)
_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


@dataclass
class TLSState:
    """The TLS connection state of a request."""

    peer_certificates: list[x509.Certificate] = field(default_factory=list)
    verified_chains: list[Any] = field(default_factory=list)


@dataclass
class Request:
    """An incoming HTTP request as seen by the proxy verification.

    headers maps header names to lists of values. tls is None for
    requests that did not arrive over TLS.
    """

    headers: dict[str, Any] = field(default_factory=dict)
    tls: Optional[TLSState] = None
    context: dict[Any, Any] = field(default_factory=dict)


def _canonical_header_key(key: str) -> str:
    if not key or any(c not in _TOKEN_CHARS for c in key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _header_values(headers: Mapping[str, Any], name: str) -> Optional[list[str]]:
    """Return the values stored under name, or None if the header is absent."""
    wanted = _canonical_header_key(name)
    found: Optional[list[str]] = None
    for key, values in headers.items():
        if _canonical_header_key(key) != wanted:
            continue
        if found is None:
            found = []
        if isinstance(values, str):
            found.append(values)
        elif values:
            found.extend(values)
    return found


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return bool(cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca)
    except x509.ExtensionNotFound:
        return False


def _query_unescape(value: str) -> bytes:
    if _ESCAPE.search(value):
        raise ValueError("invalid URL escape")
    return unquote_to_bytes(value.replace("+", " "))


def _split_host_port(value: str) -> Optional[str]:
    """Return the host of 'host:port', or None if value has no such form."""
    if value.startswith("["):
        end = value.find("]")
        if end < 0 or value[end + 1 : end + 2] != ":":
            return None
        return value[1:end]
    if value.count(":") != 1:
        return None
    return value.split(":", 1)[0]


def identify(request: Request) -> Identity:
    """Compute the identity of the client that sent request.

    The identity is the hex-encoded SHA-256 of the public key of the single
    non-CA peer certificate. Without TLS, without such a certificate or with
    more than one, the unknown identity is returned.
    """
    if request.tls is None:
        return IDENTITY_UNKNOWN

    cert: Optional[x509.Certificate] = None
    for candidate in request.tls.peer_certificates:
        if _is_ca(candidate):
            continue
        if cert is not None:
            return IDENTITY_UNKNOWN
        cert = candidate
    if cert is None:
        return IDENTITY_UNKNOWN

    spki = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return Identity(hashlib.sha256(spki).hexdigest())


def forwarded_ip(request: Optional[Request]) -> Optional[IPAddress]:
    """Return the client IP forwarded by a proxy, or None if there is none."""
    if request is None:
        return None
    return request.context.get(_FORWARDED_IP_KEY)


class TLSProxy:
    """Handles requests sent by clients through a trusted TLS proxy.

    A request from a known proxy carries the actual client certificate,
    URL-escaped PEM, in the header cert_header. If verifier is set it is
    called with that certificate and must return its verified chains or
    raise if the certificate is not trusted.
    """

    def __init__(
        self,
        cert_header: str = "",
        verifier: Optional[Callable[[x509.Certificate], list[Any]]] = None,
    ) -> None:
        self.cert_header = cert_header
        self.verifier = verifier
        self._lock = threading.Lock()
        self._identities: set[Identity] = set()

    def is_proxy(self, identity: str) -> bool:
        """Report whether identity belongs to a TLS proxy."""
        with self._lock:
            return Identity(identity) in self._identities

    def add(self, identity: str) -> None:
        """Register identity as a TLS proxy; the unknown identity is ignored."""
        identity = Identity(identity)
        if identity.is_unknown():
            return
        with self._lock:
            self._identities.add(identity)

    def verify(self, request: Request) -> None:
        """Verify request and, if a proxy sent it, substitute the client's state.

        For a proxy the forwarded client certificate replaces the proxy's
        peer certificate and a well-formed X-Forwarded-For address is kept
        as the forwarded IP. Raises KesError if the request is rejected.
        """
        if request.tls is None:
            raise KesError(HTTPStatus.BAD_REQUEST, "insecure connection: TLS required")

        peers = [c for c in request.tls.peer_certificates if not _is_ca(c)]
        if not peers:
            raise KesError(HTTPStatus.BAD_REQUEST, "no client certificate is present")
        if len(peers) > 1:
            raise KesError(HTTPStatus.BAD_REQUEST, "too many client certificates are present")
        request.tls.peer_certificates = peers

        identity = identify(request)
        if identity.is_unknown():
            raise NotAllowedError()
        if not self.is_proxy(identity):
            return

        cert = self.get_client_certificate(request.headers)
        request.tls.peer_certificates = [cert]
        request.tls.verified_chains = []

        if self.verifier is not None:
            try:
                request.tls.verified_chains = list(self.verifier(cert))
            except Exception:
                raise KesError(HTTPStatus.FORBIDDEN, "") from None

        values = _header_values(request.headers, X_FORWARDED_FOR)
        forwarded = values[0] if values else ""
        if forwarded and forwarded != "unknown":
            # In a chain of proxies the first address is the client's.
            forwarded = forwarded.split(",", 1)[0]
            address = _split_host_port(forwarded)
            if address is None:
                address = forwarded
            try:
                ip = ipaddress.ip_address(address)
            except ValueError:
                return
            request.context[_FORWARDED_IP_KEY] = ip

    def get_client_certificate(self, headers: Mapping[str, Any]) -> x509.Certificate:
        """Extract the URL-escaped PEM client certificate from headers.

        Raises KesError if there is none, more than one, or it is invalid.
        """
        values = _header_values(headers, self.cert_header)
        if not values:
            raise KesError(HTTPStatus.BAD_REQUEST, "no client certificate is present")
        if len(values) != 1:
            raise KesError(HTTPStatus.BAD_REQUEST, "too many client certificates are present")

        invalid = KesError(HTTPStatus.BAD_REQUEST, "invalid client certificate")
        try:
            pem = _query_unescape(values[0])
        except ValueError:
            raise invalid from None

        block, _ = _pem_decode(pem)
        if block is None or block.type != "CERTIFICATE":
            raise invalid
        try:
            return x509.load_der_x509_certificate(block.data)
        except ValueError:
            raise invalid from None