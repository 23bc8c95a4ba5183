"""Building trust stores from PEM-encoded CA certificate files."""

from __future__ import annotations

import os
import ssl
import stat
from typing import Union

from .certificate import filter_pem


def _append_certificate(context: ssl.SSLContext, filename: str) -> None:
    with open(filename, "rb") as f:
        data = f.read()
    pem = filter_pem(data, lambda b: b.type == "CERTIFICATE")
    failure = f"https: failed to add '{filename}' as CA certificate"
    if not pem:
        raise ValueError(failure)
    try:
        context.load_verify_locations(cadata=pem.decode("ascii"))
    except (ssl.SSLError, UnicodeDecodeError):
        raise ValueError(failure) from None


def cert_pool_from_file(filename: Union[str, os.PathLike]) -> ssl.SSLContext:
    """Return a client TLS context trusting the system roots and the given CAs.

    If filename is a directory, every regular file inside is loaded as
    PEM-encoded certificates; otherwise filename itself is loaded. The
    first error encountered is raised.
    """
    filename = os.fspath(filename)
    info = os.stat(filename)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.load_default_certs()
    if not stat.S_ISDIR(info.st_mode):
        _append_certificate(context, filename)
        return context

    with os.scandir(filename) as entries:
        files = sorted(entries, key=lambda e: e.name)
    for entry in files:
        if entry.is_dir(follow_symlinks=False):
            continue
        _append_certificate(context, os.path.join(filename, entry.name))
    return context