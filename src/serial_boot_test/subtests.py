"""Subtests: one expectation each, plus at most one side effect.

Every subtest satisfies the ``Subtest`` protocol (a ``name`` and a
``run(stream_out, stream_in)`` method).  The concrete variants are small
frozen dataclasses tagged by ``kind``; none of them carries hidden state from
a base class.

Matching is substring containment on whole lines: a line matches when the
marker appears anywhere in it, so prompt prefixes and log noise around the
marker are tolerated.  Lines are consumed and never rewound, so each marker
must appear *after* the one before it.
"""

from __future__ import annotations

import dataclasses
import logging
import subprocess
import time
from typing import Callable, ClassVar, Iterable, List, Protocol, Tuple, runtime_checkable

from . import DEFAULT_EXPECT_TIMEOUT_S
from .exceptions import (
    BootTimeoutError,
    ExpectationError,
    StreamClosedError,
    StreamReadTimeout,
)
from .line_stream import LineStream
from .processes import ProcessHandle, spawn_detached
from .types import CommandLine, StdioTarget

logger = logging.getLogger("serial_boot_test.subtests")

SpawnFn = Callable[..., ProcessHandle]


@runtime_checkable
class Subtest(Protocol):
    """A unit of a boot test pipeline."""

    name: str

    def run(self, stream_out: LineStream, stream_in: LineStream) -> None:
        ...


def check_timeout(timeout_s: float, context: str = "", marker: str = "") -> float:
    """Return *timeout_s* unchanged, rejecting zero or negative values.

    Raises:
        ValueError: If *timeout_s* is not a positive number.
    """
    if timeout_s <= 0:
        target = f" for marker {marker!r}" if marker else ""
        raise ValueError(
            f"[{context}] Invalid timeout {timeout_s!r} s{target}: "
            f"must be a positive number"
        )
    return timeout_s


def expect_or_raise(
    stream: LineStream,
    marker: str,
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S,
    context: str = "",
) -> List[str]:
    """Consume lines until one contains *marker*.

    Args:
        stream: The stream to read from.
        marker: Literal text that must appear inside a line.
        timeout_s: Deadline for the whole wait, in seconds.
        context: Description of the purpose, embedded into error messages.

    Returns:
        Every line read during the wait, the matching line last.

    Raises:
        BootTimeoutError: The deadline elapsed first.
        ExpectationError: The stream closed first.
        ValueError: *timeout_s* is not positive.
    """
    check_timeout(timeout_s, context=context, marker=marker)

    logger.info(
        "[EXPECT] [%s] Waiting up to %.1fs on %s for %r",
        context, timeout_s, stream.name, marker,
    )
    start = time.monotonic()
    deadline = start + timeout_s
    observed: List[str] = []

    while True:
        try:
            line = stream.read_line(deadline)
        except StreamReadTimeout as exc:
            msg = (
                f"[{context}] Timeout ({timeout_s:.1f}s) expired on {stream.name} "
                f"before {marker!r} appeared. Read {len(observed)} lines. "
                f"Pending partial line: {exc.partial[-200:]!r}"
            )
            logger.warning("[EXPECT] TIMEOUT: %s", msg)
            raise BootTimeoutError(
                msg, marker=marker, timeout_s=timeout_s, observed=observed,
            ) from exc
        except StreamClosedError as exc:
            msg = (
                f"[{context}] Stream {stream.name} closed before {marker!r} "
                f"appeared. Read {len(observed)} lines. "
                f"Trailing partial line: {exc.partial[-200:]!r}"
            )
            logger.warning("[EXPECT] CLOSED: %s", msg)
            raise ExpectationError(msg, marker=marker, observed=observed) from exc

        observed.append(line)
        if marker in line:
            logger.info(
                "[EXPECT] [%s] Matched %r after %d lines (%.3fs)",
                context, marker, len(observed), time.monotonic() - start,
            )
            return observed


@dataclasses.dataclass(frozen=True)
class ExpectMarker:
    """Wait for a marker; no side effect."""
    kind: ClassVar[str] = "expect"

    name: str
    marker: str
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S

    def __post_init__(self) -> None:
        check_timeout(self.timeout_s, context=self.name, marker=self.marker)

    def run(self, stream_out: LineStream, stream_in: LineStream) -> None:
        expect_or_raise(stream_out, self.marker, self.timeout_s, context=self.name)


@dataclasses.dataclass(frozen=True)
class ExpectThenSpawn:
    """Handshake: wait for a marker, then launch one detached process.

    The process is started strictly after the marker matched, so it can never
    influence the output the marker was matched against.
    """
    kind: ClassVar[str] = "expect-then-spawn"

    name: str
    marker: str
    command: CommandLine
    stdin: StdioTarget = None
    stdout: StdioTarget = None
    stderr: StdioTarget = subprocess.DEVNULL
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S
    process_name: str = "emulator"
    spawn: SpawnFn = dataclasses.field(default=spawn_detached, repr=False, compare=False)

    def __post_init__(self) -> None:
        check_timeout(self.timeout_s, context=self.name, marker=self.marker)

    def run(self, stream_out: LineStream, stream_in: LineStream) -> None:
        expect_or_raise(stream_out, self.marker, self.timeout_s, context=self.name)
        self.spawn(
            self.command,
            stdin=self.stdin,
            stdout=self.stdout,
            stderr=self.stderr,
            name=self.process_name,
            context=self.name,
        )


@dataclasses.dataclass(frozen=True)
class ExpectThenWrite:
    """Wait for a marker, then send raw bytes back to the target."""
    kind: ClassVar[str] = "expect-then-write"

    name: str
    marker: str
    data: bytes
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S

    def __post_init__(self) -> None:
        check_timeout(self.timeout_s, context=self.name, marker=self.marker)

    def run(self, stream_out: LineStream, stream_in: LineStream) -> None:
        expect_or_raise(stream_out, self.marker, self.timeout_s, context=self.name)
        stream_in.write(self.data)


@dataclasses.dataclass(frozen=True)
class WriteThenExpect:
    """Console round trip: send input, then wait for the response."""
    kind: ClassVar[str] = "write-then-expect"

    name: str
    data: bytes
    marker: str
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S

    def __post_init__(self) -> None:
        check_timeout(self.timeout_s, context=self.name, marker=self.marker)

    def run(self, stream_out: LineStream, stream_in: LineStream) -> None:
        stream_in.write(self.data)
        expect_or_raise(stream_out, self.marker, self.timeout_s, context=self.name)


def expected_print(marker: str, timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S) -> ExpectMarker:
    """The final check of a boot test: the payload's last print."""
    return ExpectMarker(
        name=f"Checking for the string: '{marker}'",
        marker=marker,
        timeout_s=timeout_s,
    )


def build_pipeline(*groups: Iterable[Subtest]) -> Tuple[Subtest, ...]:
    """Concatenate subtest groups, in argument order, into a fixed pipeline.

    Raises:
        TypeError: If an element does not satisfy the ``Subtest`` protocol.
        ValueError: If the resulting pipeline is empty.
    """
    pipeline: List[Subtest] = []
    for group in groups:
        for subtest in group:
            if not isinstance(subtest, Subtest):
                raise TypeError(
                    f"{subtest!r} is not a subtest: it needs a 'name' "
                    f"attribute and a run(stream_out, stream_in) method"
                )
            pipeline.append(subtest)

    if not pipeline:
        raise ValueError("A boot test needs at least one subtest")
    return tuple(pipeline)
