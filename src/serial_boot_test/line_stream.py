"""Line reassembly over raw, unbuffered serial byte streams.

Serial consoles deliver bytes in arbitrary chunks: a single logical line may
arrive in several reads, and several lines may arrive in one.  ``LineStream``
buffers those chunks and hands out complete lines split on a configurable
terminator, which may be multi-byte (``b"\\r\\n"`` for output relayed through
a cooked pty).  A lone carriage return is *not* a terminator: forwarders use
it to redraw progress indicators, and those segments stay inside the line.

``read_line`` is the single blocking point of a boot test.  It takes an
absolute deadline and can be cancelled from another thread.
"""

from __future__ import annotations

import abc
import errno
import logging
import os
import select
import threading
import time
from typing import List, Optional

from typeguard import typechecked

from . import (
    DEFAULT_LINE_TERMINATOR,
    STREAM_ENCODING,
    STREAM_POLL_INTERVAL_S,
    STREAM_READ_CHUNK_SIZE,
)
from .exceptions import (
    ReadCancelledError,
    StreamClosedError,
    StreamError,
    StreamReadTimeout,
)
from .types import Deadline, LineListener

logger = logging.getLogger("serial_boot_test.line_stream")


class ByteSource(abc.ABC):
    """A bidirectional raw byte channel a ``LineStream`` can wrap."""

    name: str = "<source>"

    @abc.abstractmethod
    def read_available(self, timeout_s: float) -> Optional[bytes]:
        """Wait up to *timeout_s* seconds for data.

        Returns:
            The bytes that arrived, ``b""`` if the window passed without
            data, or ``None`` once the source reached end-of-stream.
        """

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        """Write every byte of *data*, returning the count written."""

    def close(self) -> None:
        """Release the underlying channel."""


class FdByteSource(ByteSource):
    """``ByteSource`` over a raw file descriptor (pipe, pty master).

    Reads use ``select`` so the wait honours the caller's timeout.  On Linux
    a pty master reports ``EIO`` once every holder of the secondary end has
    closed it; that is end-of-stream, not an error.
    """

    def __init__(
        self,
        fd: int,
        write_fd: Optional[int] = None,
        name: Optional[str] = None,
        owns_fd: bool = True,
    ) -> None:
        self.fd = fd
        self.write_fd = fd if write_fd is None else write_fd
        self.name = name or f"fd {fd}"
        self.owns_fd = owns_fd
        self._closed = False

    def read_available(self, timeout_s: float) -> Optional[bytes]:
        if self._closed:
            return None

        try:
            ready, _, _ = select.select([self.fd], [], [], max(timeout_s, 0.0))
        except (OSError, ValueError) as exc:
            msg = f"select() failed on {self.name}: {exc}"
            logger.error("[FD-READ] %s", msg)
            raise StreamError(msg) from exc

        if not ready:
            return b""

        try:
            data = os.read(self.fd, STREAM_READ_CHUNK_SIZE)
        except OSError as exc:
            if exc.errno == errno.EIO:
                logger.debug("[FD-READ] EIO on %s (peer closed)", self.name)
                return None
            msg = f"Read error on {self.name}: {exc}"
            logger.error("[FD-READ] %s", msg)
            raise StreamError(msg) from exc

        if not data:
            logger.debug("[FD-READ] EOF on %s", self.name)
            return None
        return data

    def write(self, data: bytes) -> int:
        view = memoryview(data)
        written = 0
        try:
            while written < len(data):
                written += os.write(self.write_fd, view[written:])
        except OSError as exc:
            msg = (
                f"Write error on {self.name} after {written}/{len(data)} "
                f"bytes: {exc}"
            )
            logger.error("[FD-WRITE] %s", msg)
            raise StreamError(msg) from exc
        return written

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.owns_fd:
            return
        for fd in {self.fd, self.write_fd}:
            try:
                os.close(fd)
            except OSError:
                pass


@typechecked
class LineStream:
    """Blocking, line-delimited reader (and raw writer) over a ``ByteSource``.

    Example::

        master_fd, secondary_fd = os.openpty()
        stream = LineStream(FdByteSource(master_fd), terminator=b"\\r\\n")
        line = stream.read_line(deadline=time.monotonic() + 5)
    """

    def __init__(
        self,
        source: ByteSource,
        terminator: bytes = DEFAULT_LINE_TERMINATOR,
        encoding: str = STREAM_ENCODING,
        poll_interval_s: float = STREAM_POLL_INTERVAL_S,
    ) -> None:
        """Initialize line stream.

        Args:
            source: The byte channel to read lines from and write bytes to.
            terminator: Byte sequence ending a line (default ``b"\\n"``).
            encoding: Decoding for completed lines; undecodable bytes are
                replaced rather than raising.
            poll_interval_s: Longest single wait on the source.  Bounds how
                late a ``cancel()`` is noticed.

        Raises:
            ValueError: If *terminator* is empty or *poll_interval_s* is not
                positive.
        """
        if not terminator:
            raise ValueError("Line terminator must be a non-empty byte sequence")
        if poll_interval_s <= 0:
            raise ValueError(
                f"Invalid poll interval {poll_interval_s!r}: must be a positive number"
            )

        self.source = source
        self.terminator = terminator
        self.encoding = encoding
        self.poll_interval_s = poll_interval_s
        self.lines_read = 0
        self._buffer = bytearray()
        self._eof = False
        self._cancelled = threading.Event()
        self._listeners: List[LineListener] = []

    @property
    def name(self) -> str:
        return self.source.name

    def add_listener(self, listener: LineListener) -> None:
        """Deliver every completed line to *listener*, in read order.

        An exception raised by a listener propagates out of ``read_line``;
        the line it was handed is already consumed.
        """
        self._listeners.append(listener)

    def cancel(self) -> None:
        """Abort the pending (and every later) ``read_line``.

        Safe to call from any thread; the reader notices within one poll
        interval.
        """
        logger.info("[LINE-READ] Cancel requested on %s", self.name)
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def read_line(self, deadline: Deadline = None) -> str:
        """Block until a full line is available and return it.

        Args:
            deadline: Absolute ``time.monotonic()`` value after which the
                read gives up.  ``None`` waits indefinitely.

        Returns:
            The decoded line with the terminator stripped.

        Raises:
            StreamClosedError: The source hit end-of-stream first.
            StreamReadTimeout: The deadline passed first.
            ReadCancelledError: ``cancel()`` was called.
            StreamError: The source failed.
        """
        while True:
            line = self._pop_line()
            if line is not None:
                self._deliver(line)
                return line

            if self._cancelled.is_set():
                raise ReadCancelledError(f"Read on {self.name} was cancelled")

            if self._eof:
                raise StreamClosedError(
                    f"End of stream on {self.name} before line terminator "
                    f"{self.terminator!r} ({len(self._buffer)} bytes pending)",
                    partial=self._decode(bytes(self._buffer)),
                )

            wait_s = self.poll_interval_s
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise StreamReadTimeout(
                        f"Deadline passed on {self.name} with "
                        f"{len(self._buffer)} bytes pending",
                        partial=self._decode(bytes(self._buffer)),
                    )
                wait_s = min(wait_s, remaining)

            chunk = self.source.read_available(wait_s)
            if chunk is None:
                self._eof = True
            elif chunk:
                self._buffer.extend(chunk)
                logger.debug(
                    "[LINE-READ] +%d bytes from %s (buffered %d)",
                    len(chunk), self.name, len(self._buffer),
                )

    def write(self, data: bytes) -> int:
        """Write raw bytes to the paired channel."""
        n = self.source.write(data)
        logger.debug("[LINE-WRITE] Wrote %d bytes to %s: %r", n, self.name, data)
        return n

    def close(self) -> None:
        self.source.close()

    def __enter__(self) -> LineStream:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    # ---- Helpers ----

    def _pop_line(self) -> Optional[str]:
        index = self._buffer.find(self.terminator)
        if index < 0:
            return None
        raw = bytes(self._buffer[:index])
        del self._buffer[:index + len(self.terminator)]
        return self._decode(raw)

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self.encoding, errors="replace")

    def _deliver(self, line: str) -> None:
        self.lines_read += 1
        logger.debug("[LINE-READ] %s | %s", self.name, line)
        for listener in self._listeners:
            try:
                listener(line)
            except Exception as exc:
                logger.error(
                    "[LINE-READ] Listener raised %s on %s: %s",
                    type(exc).__name__, self.name, exc,
                )
                raise
