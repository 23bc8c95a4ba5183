"""Common HTTP header names, content types and Accept matching."""

from __future__ import annotations

from typing import Any

# Commonly used HTTP headers.
ACCEPT = "Accept"
AUTHORIZATION = "Authorization"
CONTENT_TYPE = "Content-Type"
CONTENT_LENGTH = "Content-Length"
ETAG = "ETag"
TRANSFER_ENCODING = "Transfer-Encoding"

# Headers used by reverse proxies and load balancers.
FORWARDED = "Forwarded"
X_FORWARDED_FOR = "X-Forwarded-For"
X_FRAME_OPTIONS = "X-Frame-Options"

# Commonly used content type values.
CONTENT_TYPE_BINARY = "application/octet-stream"
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_JSON_LINES = "application/x-ndjson"
CONTENT_TYPE_TEXT = "text/plain"
CONTENT_TYPE_HTML = "text/html"


def _header_values(headers: Any, name: str) -> list[str]:
    get_all = getattr(headers, "get_all", None)
    if callable(get_all):
        values = get_all(name)
    else:
        values = headers.get(name)
    if not values:
        return []
    if isinstance(values, str):
        return [values]
    return list(values)


def _matches(value: str, content_type: str) -> bool:
    if value == "*/*":
        return True
    if value == content_type:
        return True
    star = value.find("*")
    if star > 0 and value[star - 1] == "/":  # MIME patterns, like application/*
        return content_type.startswith(value[:star])
    return False


def accepts(headers: Any, content_type: str) -> bool:
    """Report whether the Accept header values in headers include content_type.

    headers maps header names to lists of values; a single string value
    and objects offering get_all() are accepted as well.
    """
    return any(_matches(v, content_type) for v in _header_values(headers, ACCEPT))