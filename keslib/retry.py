"""An HTTP client that retries requests failing for temporary reasons."""

from __future__ import annotations

import http.client
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Union
from urllib.parse import urlencode

import requests

_DEFAULT_RETRIES = 2
_DEFAULT_DELAY = 0.2  # seconds
_DEFAULT_JITTER = 0.8  # seconds


class RetryError(requests.exceptions.RequestException):
    """A request failed: the operation and URL are kept with the reason."""

    def __init__(self, method: str, url: str, reason: str) -> None:
        super().__init__(f"{method} {url}: {reason}")
        self.method = method
        self.url = url
        self.reason = reason


def drain_body(response: Any) -> None:
    """Read whatever remains of a response body and close it.

    Draining lets the underlying connection be reused for later requests.
    Accepts a requests.Response, a file-like body or None.
    """
    if response is None:
        return
    if isinstance(response, requests.Response):
        try:
            response.content
        except (requests.exceptions.RequestException, RuntimeError, OSError):
            pass
        response.close()
        return
    read = getattr(response, "read", None)
    if callable(read):
        try:
            while read(32 * 1024):
                pass
        except (OSError, ValueError):
            pass
    close = getattr(response, "close", None)
    if callable(close):
        close()


class _NopCloser:
    """A seekable reader whose close does nothing."""

    def __init__(self, reader: Any) -> None:
        self._reader = reader

    def read(self, *args: Any) -> Any:
        return self._reader.read(*args)

    def seek(self, *args: Any) -> Any:
        return self._reader.seek(*args)

    def tell(self) -> int:
        return self._reader.tell()

    def close(self) -> None:
        return None


def retry_reader(reader: Any) -> Any:
    """Return a seekable, closable body usable for retryable requests.

    A reader that already has close() is returned as is; otherwise it is
    wrapped so that close() does nothing.
    """
    if callable(getattr(reader, "close", None)):
        return reader
    return _NopCloser(reader)


def _error_chain(err: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    pending: list[BaseException] = [err]
    while pending:
        e = pending.pop()
        if id(e) in seen:
            continue
        seen.add(id(e))
        yield e
        pending.extend(a for a in e.args if isinstance(a, BaseException))
        for linked in (e.__cause__, e.__context__, getattr(e, "reason", None)):
            if isinstance(linked, BaseException):
                pending.append(linked)


def _is_temporary(err: Optional[BaseException]) -> bool:
    """Report whether err is a timeout or a dropped connection."""
    if err is None:
        return False
    if isinstance(err, (requests.exceptions.Timeout, requests.exceptions.ChunkedEncodingError)):
        return True
    return any(
        isinstance(e, (EOFError, http.client.RemoteDisconnected, http.client.IncompleteRead))
        for e in _error_chain(err)
    )


def _is_retryable_body(body: Any) -> bool:
    if body is None or isinstance(body, (bytes, bytearray, str)):
        return True
    return all(callable(getattr(body, name, None)) for name in ("read", "seek", "close"))


@dataclass
class Retry:
    """An HTTP client retrying on temporary network errors and 5xx responses.

    A request is retried at most n times, waiting at least delay and less
    than delay + jitter seconds in between. Zero values select defaults of
    2 retries, 0.2 seconds delay and 0.8 seconds jitter. Using the session
    directly bypasses the retry mechanism.
    """

    session: requests.Session = field(default_factory=requests.Session)
    n: int = 0
    delay: float = 0.0
    jitter: float = 0.0
    timeout: Optional[float] = None
    sleep: Callable[[float], Any] = time.sleep

    def get(self, url: str) -> requests.Response:
        """Send a GET request, retrying it if it fails temporarily."""
        return self.do(requests.Request("GET", url))

    def head(self, url: str) -> requests.Response:
        """Send a HEAD request, retrying it if it fails temporarily."""
        return self.do(requests.Request("HEAD", url))

    def post(self, url: str, content_type: str, body: Any) -> requests.Response:
        """Send a POST request; a stream body must be seekable and closable."""
        request = requests.Request("POST", url, data=body, headers={"Content-Type": content_type})
        return self.do(request)

    def post_form(self, url: str, data: Any) -> requests.Response:
        """POST data URL-encoded, with keys in sorted order."""
        items = data.items() if hasattr(data, "items") else data
        encoded = urlencode(sorted(items, key=lambda kv: kv[0]), doseq=True)
        return self.post(url, "application/x-www-form-urlencoded", encoded.encode("ascii"))

    def _wait_time(self, delay: float, jitter: float) -> float:
        if jitter < 1e-6:
            return delay + random.randrange(int(jitter * 1e9)) * 1e-9
        if jitter < 1e-3:
            return delay + random.randrange(int(jitter * 1e6)) * 1e-6
        return delay + random.randrange(int(jitter * 1e3)) * 1e-3

    def _send(
        self, prepared: requests.PreparedRequest
    ) -> tuple[Optional[requests.Response], Optional[requests.exceptions.RequestException]]:
        try:
            return self.session.send(prepared, timeout=self.timeout), None
        except requests.exceptions.RequestException as err:
            return None, err

    def do(self, request: Union[requests.Request, requests.PreparedRequest]) -> requests.Response:
        """Send a request, retrying on temporary network errors and 5xx responses."""
        n = self.n or _DEFAULT_RETRIES
        delay = self.delay or _DEFAULT_DELAY
        jitter = self.jitter or _DEFAULT_JITTER

        if isinstance(request, requests.Request):
            prepared = self.session.prepare_request(request)
        else:
            prepared = request
        method = prepared.method or ""
        url = prepared.url or ""

        body = prepared.body
        if not _is_retryable_body(body):
            raise RetryError(method, url, "http: request body does not implement io.Seeker")
        seekable = body if callable(getattr(body, "seek", None)) else None

        response, err = self._send(prepared)
        while n > 0 and (
            _is_temporary(err) or (response is not None and response.status_code >= 500)
        ):
            if response is not None:
                drain_body(response)
                response = None
            n -= 1
            self.sleep(self._wait_time(delay, jitter))

            # Reset the body, otherwise only partial data would be sent again.
            if seekable is not None:
                seekable.seek(0)
            response, err = self._send(prepared)

        if _is_temporary(err):
            if response is not None:
                drain_body(response)
            raise RetryError(method, url, f"http: temporary network error: {err}") from err
        if err is not None:
            raise err
        assert response is not None
        return response