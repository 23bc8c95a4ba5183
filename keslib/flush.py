"""A response writer wrapper that flushes after every write."""

from __future__ import annotations

from typing import Any, Optional


class FlushWriter:
    """Wraps a response writer and flushes it after each successful write.

    The wrapped writer needs write(); flush(), write_header() and a
    headers attribute are used when it offers them.
    """

    def __init__(self, writer: Any) -> None:
        self._writer = writer
        flush = getattr(writer, "flush", None)
        self._flush = flush if callable(flush) else None

    @property
    def headers(self) -> Any:
        """The headers of the wrapped writer."""
        return self._writer.headers

    def write_header(self, status: int) -> None:
        """Send the response status through the wrapped writer."""
        self._writer.write_header(status)

    def write(self, data: bytes) -> Optional[int]:
        """Write data and flush; nothing is flushed if the write raises."""
        n = self._writer.write(data)
        if self._flush is not None:
            self._flush()
        return n

    def flush(self) -> None:
        """Flush the wrapped writer, if it can be flushed."""
        if self._flush is not None:
            self._flush()

    def unwrap(self) -> Any:
        """Return the wrapped writer."""
        return self._writer


def flush_on_write(writer: Any) -> FlushWriter:
    """Wrap writer so that it is flushed after every write."""
    return FlushWriter(writer)