"""Custom exceptions for boot test runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .orchestrator import BootTestResult


class BootTestError(Exception):
    """Common base exception for all serial_boot_test errors."""
    pass


class StreamError(BootTestError):
    """Exception for I/O failures on a byte source."""
    pass


class StreamClosedError(StreamError):
    """The byte source reached end-of-stream before a line terminator.

    Attributes:
        partial: Decoded bytes that were buffered without a terminator.
    """

    def __init__(self, message: str, *, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class StreamReadTimeout(StreamError, TimeoutError):
    """``LineStream.read_line`` hit its deadline before a terminator arrived.

    Attributes:
        partial: Decoded bytes that were buffered without a terminator.
    """

    def __init__(self, message: str, *, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class ReadCancelledError(StreamError):
    """A pending ``read_line`` was cancelled from another thread."""
    pass


class SerialPortError(StreamError):
    """The serial port could not be opened, configured, read or written."""
    pass


class ExpectationError(BootTestError):
    """The stream closed before the expected marker appeared.

    Attributes:
        marker: The literal marker that was awaited.
        observed: Lines consumed while waiting, in order.
    """

    def __init__(
        self,
        message: str,
        *,
        marker: str,
        observed: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.marker = marker
        self.observed: Tuple[str, ...] = tuple(observed)


class BootTimeoutError(BootTestError, TimeoutError):
    """The expectation deadline elapsed before the marker appeared.

    Attributes:
        marker: The literal marker that was awaited.
        timeout_s: The deadline, in seconds, that elapsed.
        observed: Lines consumed while waiting, in order.
    """

    def __init__(
        self,
        message: str,
        *,
        marker: str,
        timeout_s: float,
        observed: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.marker = marker
        self.timeout_s = timeout_s
        self.observed: Tuple[str, ...] = tuple(observed)


class SpawnError(BootTestError):
    """A side-effect process could not be started.

    Attributes:
        command: The command that failed to launch.
    """

    def __init__(self, message: str, *, command: object) -> None:
        super().__init__(message)
        self.command = command


class BootTestFailedError(BootTestError):
    """Raised by ``BootTest.run_or_raise`` when the run did not pass.

    The ``.result`` attribute contains the full ``BootTestResult``.
    """

    def __init__(
        self,
        message: str,
        *,
        result: Optional[BootTestResult] = None,
    ) -> None:
        super().__init__(message)
        self.result = result
