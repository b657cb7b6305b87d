"""Stream bindings: where a boot test's console output comes from.

A binding opens the ``LineStream`` the subtests read, may contribute
handshake subtests that must run before the target-specific ones, may
rewrite the captured output after a successful run, and releases everything
it opened when the run ends.

* ``DirectSerialBinding`` reads a physical UART.
* ``EmulatorBinding`` launches an emulator on a fresh pty and reads its
  console.
* ``ChainbootBinding`` puts a serial forwarder (e.g. MiniPush) between the
  test and an emulator, so the emulated target is chain-loaded exactly like
  hardware on a UART would be.
"""

from __future__ import annotations

import abc
import logging
import os
import shlex
import subprocess
import tty
from typing import List, Optional, Tuple

from typeguard import typechecked

from . import (
    BRIDGED_LINE_TERMINATOR,
    CR_COLLAPSE_MARKER,
    DEFAULT_EXPECT_TIMEOUT_S,
    DEFAULT_FORWARDER_COMMAND,
    DEFAULT_LINE_TERMINATOR,
    EXPECTED_FINAL_PRINT,
    POWER_TARGET_REQUEST,
    SERIAL_BAUD_RATE,
)
from .exceptions import StreamError
from .line_stream import FdByteSource, LineStream
from .output_log import check_cr_marker, make_cr_collapse
from .processes import DetachedProcessGroup
from .serial_comm import SerialByteSource, SerialConnectionManager
from .subtests import ExpectThenSpawn, SpawnFn, Subtest, check_timeout, expected_print
from .types import CommandLine, LineTransform

logger = logging.getLogger("serial_boot_test.bindings")


def _open_pty_pair(context: str) -> Tuple[int, int]:
    try:
        return os.openpty()
    except OSError as exc:
        msg = f"[{context}] Could not allocate a pseudo-terminal pair: {exc}"
        logger.error("[PTY] %s", msg)
        raise StreamError(msg) from exc


def _close_fd(fd: Optional[int]) -> None:
    if fd is None:
        return
    try:
        os.close(fd)
    except OSError:
        pass


class StreamBinding(abc.ABC):
    """Binds a boot test to its console stream for the duration of one run."""

    def __init__(self) -> None:
        self._stream: Optional[LineStream] = None

    @abc.abstractmethod
    def open(self, context: str) -> LineStream:
        """Acquire the console and return the stream subtests read from."""

    @property
    def stream_out(self) -> LineStream:
        if self._stream is None:
            raise StreamError(f"{self.describe()}: stream is not open; call open() first")
        return self._stream

    @property
    def stream_in(self) -> LineStream:
        """Where subtests write input; the console itself unless overridden."""
        return self.stream_out

    def handshake(self) -> Tuple[Subtest, ...]:
        """Subtests that must run before any target-specific subtest."""
        return ()

    def output_transform(self) -> Optional[LineTransform]:
        """Rewrite applied to every captured line after a passing run."""
        return None

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def describe(self) -> str:
        return type(self).__name__


@typechecked
class DirectSerialBinding(StreamBinding):
    """Console of a target attached to a physical UART."""

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        terminator: bytes = DEFAULT_LINE_TERMINATOR,
    ) -> None:
        super().__init__()
        self.terminator = terminator
        self.connection_manager = SerialConnectionManager(port, baud_rate=baud_rate)

    def open(self, context: str) -> LineStream:
        self.connection_manager.open(context)
        self._stream = LineStream(
            SerialByteSource(self.connection_manager), terminator=self.terminator,
        )
        return self._stream

    def close(self) -> None:
        super().close()
        self.connection_manager.close()

    def describe(self) -> str:
        return f"Boot test on {self.connection_manager.port}"


@typechecked
class EmulatorBinding(StreamBinding):
    """Console of an emulator spawned directly on a pseudo-terminal.

    The pty is switched to raw mode so the emulator's bytes reach the stream
    without the terminal's newline translation.
    """

    def __init__(
        self,
        command: CommandLine,
        terminator: bytes = DEFAULT_LINE_TERMINATOR,
    ) -> None:
        super().__init__()
        self.command = command
        self.terminator = terminator
        self.processes = DetachedProcessGroup()

    def open(self, context: str) -> LineStream:
        main_fd, secondary_fd = _open_pty_pair(context)
        try:
            tty.setraw(secondary_fd)
            self.processes.spawn(
                self.command,
                stdin=secondary_fd,
                stdout=secondary_fd,
                stderr=secondary_fd,
                name="emulator",
                context=context,
            )
        except BaseException:
            _close_fd(main_fd)
            raise
        finally:
            # Only the emulator holds the secondary end, so its exit reads as EOF
            _close_fd(secondary_fd)

        self._stream = LineStream(
            FdByteSource(main_fd, name="emulator console"), terminator=self.terminator,
        )
        return self._stream

    def close(self) -> None:
        self.processes.terminate_all()
        super().close()

    def describe(self) -> str:
        return "Boot test"


def boot_subtests(
    expected: str = EXPECTED_FINAL_PRINT,
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S,
) -> Tuple[Subtest, ...]:
    """Default target subtests: the payload's last print must show up."""
    return (expected_print(expected, timeout_s=timeout_s),)


def power_target_request(
    command: CommandLine,
    main_fd: int,
    spawn: SpawnFn,
    timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S,
) -> ExpectThenSpawn:
    """Handshake: once the forwarder asks for power, start the emulator.

    The emulator's virtual serial (its stdin/stdout) is the "main" pty end,
    so it talks to the forwarder sitting on the "secondary" end.
    """
    return ExpectThenSpawn(
        name="Waiting for request to power target",
        marker=POWER_TARGET_REQUEST,
        command=command,
        stdin=main_fd,
        stdout=main_fd,
        stderr=subprocess.DEVNULL,
        timeout_s=timeout_s,
        process_name="emulator",
        spawn=spawn,
    )


@typechecked
class ChainbootBinding(StreamBinding):
    """Emulated target chain-loaded through a serial forwarder.

    ``open`` allocates a linked pty pair ("main", "secondary"), starts the
    forwarder on the secondary end together with the payload path, and binds
    the stream to the forwarder's own output, so forwarder diagnostics and
    target output are read the same way.  The emulator is not started here:
    the ``handshake`` subtest launches it on the main end once the forwarder
    reports it is ready, so the target's serial always has a listener.
    """

    def __init__(
        self,
        target_command: CommandLine,
        payload_path: str,
        forwarder_command: CommandLine = DEFAULT_FORWARDER_COMMAND,
        terminator: bytes = BRIDGED_LINE_TERMINATOR,
        cr_marker: str = CR_COLLAPSE_MARKER,
        handshake_timeout_s: float = DEFAULT_EXPECT_TIMEOUT_S,
    ) -> None:
        super().__init__()
        self.target_command = target_command
        self.payload_path = payload_path
        self.forwarder_command = forwarder_command
        self.terminator = terminator
        self.cr_marker = check_cr_marker(cr_marker)
        self.handshake_timeout_s = check_timeout(handshake_timeout_s, context=self.describe())
        self.processes = DetachedProcessGroup()
        self._main_fd: Optional[int] = None
        self._secondary_fd: Optional[int] = None

    @property
    def secondary_path(self) -> str:
        if self._secondary_fd is None:
            raise StreamError("Chainboot pty pair is not allocated; call open() first")
        return os.ttyname(self._secondary_fd)

    def forwarder_argv(self, secondary_path: str) -> List[str]:
        """Forwarder command line: ``<forwarder> <secondary tty> <payload>``."""
        if isinstance(self.forwarder_command, str):
            base = shlex.split(self.forwarder_command)
        else:
            base = list(self.forwarder_command)
        return [*base, secondary_path, self.payload_path]

    def open(self, context: str) -> LineStream:
        self._main_fd, self._secondary_fd = _open_pty_pair(context)
        # The payload is binary: no newline translation between the two ends
        tty.setraw(self._secondary_fd)
        secondary_path = self.secondary_path

        logger.info(
            "[CHAINBOOT] [%s] pty pair allocated, secondary=%s, payload=%s",
            context, secondary_path, self.payload_path,
        )

        fw_main, fw_secondary = _open_pty_pair(context)
        try:
            self.processes.spawn(
                self.forwarder_argv(secondary_path),
                stdin=fw_secondary,
                stdout=fw_secondary,
                stderr=fw_secondary,
                name="forwarder",
                context=context,
            )
        except BaseException:
            _close_fd(fw_main)
            raise
        finally:
            _close_fd(fw_secondary)

        self._stream = LineStream(
            FdByteSource(fw_main, name="forwarder output"), terminator=self.terminator,
        )
        return self._stream

    def handshake(self) -> Tuple[Subtest, ...]:
        if self._main_fd is None:
            raise StreamError("Chainboot pty pair is not allocated; call open() first")
        return (
            power_target_request(
                self.target_command,
                self._main_fd,
                spawn=self.processes.spawn,
                timeout_s=self.handshake_timeout_s,
            ),
        )

    def output_transform(self) -> Optional[LineTransform]:
        return make_cr_collapse(self.cr_marker)

    def close(self) -> None:
        self.processes.terminate_all()
        super().close()
        _close_fd(self._main_fd)
        _close_fd(self._secondary_fd)
        self._main_fd = None
        self._secondary_fd = None
        logger.info("[CHAINBOOT] Released pty pair and forwarder output")

    def describe(self) -> str:
        return "Boot test using MiniPush"
