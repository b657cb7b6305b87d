"""Detached background processes (emulator, forwarder) for boot tests.

Processes are launched fire-and-forget: the orchestrator never joins or
awaits them.  A process that dies early is observed only indirectly, as the
absence of the output a later expectation waits for, which then fails with
a timeout naming that expectation.  At the end of a run the owning binding
asks still-running processes to terminate, again without waiting.
"""

from __future__ import annotations

import dataclasses
import logging
import platform
import subprocess
from typing import List, Optional, Tuple

from .exceptions import SpawnError
from .types import CommandLine, StdioTarget

logger = logging.getLogger("serial_boot_test.processes")

_IS_WINDOWS = platform.system() == "Windows"


@dataclasses.dataclass(frozen=True)
class ProcessHandle:
    """Reference to a spawned background process.

    Attributes:
        name: Human-readable role (``"emulator"``, ``"forwarder"``).
        command: The command as it was launched.
        popen: The underlying ``subprocess.Popen``.
    """
    name: str
    command: CommandLine
    popen: subprocess.Popen

    @property
    def pid(self) -> int:
        return self.popen.pid

    def is_running(self) -> bool:
        return self.popen.poll() is None

    def terminate(self) -> None:
        """Send a termination request if the process is still alive."""
        if not self.is_running():
            logger.debug(
                "[SPAWN] %s (pid %d) already exited with %s",
                self.name, self.pid, self.popen.returncode,
            )
            return
        try:
            self.popen.terminate()
            logger.info("[SPAWN] Terminated %s (pid %d)", self.name, self.pid)
        except OSError as exc:
            # Lost the race against the process exiting by itself
            logger.debug("[SPAWN] terminate() on %s: %s", self.name, exc)


def spawn_detached(
    command: CommandLine,
    *,
    stdin: StdioTarget = None,
    stdout: StdioTarget = None,
    stderr: StdioTarget = None,
    name: Optional[str] = None,
    context: str = "",
) -> ProcessHandle:
    """Launch *command* in the background and return immediately.

    Args:
        command: A string runs through the shell (so a whole emulator
            invocation can be passed as typed); a sequence is exec'd directly.
        stdin: Standard input target (fd, file object, ``subprocess.DEVNULL``).
        stdout: Standard output target.
        stderr: Standard error target.
        name: Role of the process, used in logs.
        context: Description of the purpose, embedded into error messages.

    Returns:
        A ``ProcessHandle`` for the running process.

    Raises:
        SpawnError: If the process could not be started.
    """
    label = name or "process"
    shell = isinstance(command, str)
    argv = command if shell else list(command)

    kwargs: dict = {}
    if not _IS_WINDOWS:
        # Own session: the child must not grab our controlling terminal
        kwargs["start_new_session"] = True

    logger.info("[SPAWN] [%s] Launching %s: %r", context, label, command)

    try:
        popen = subprocess.Popen(  # type: ignore[call-overload]
            argv,
            shell=shell,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            **kwargs,
        )
    except (OSError, ValueError) as exc:
        msg = f"[{context}] Failed to launch {label} {command!r}: {exc}"
        logger.error("[SPAWN] FAILED: %s", msg)
        raise SpawnError(msg, command=command) from exc

    logger.info("[SPAWN] [%s] %s running as pid %d", context, label, popen.pid)
    return ProcessHandle(name=label, command=command, popen=popen)


class DetachedProcessGroup:
    """Keeps the handles of every process spawned during one run."""

    def __init__(self) -> None:
        self._handles: List[ProcessHandle] = []

    @property
    def handles(self) -> Tuple[ProcessHandle, ...]:
        return tuple(self._handles)

    def spawn(
        self,
        command: CommandLine,
        *,
        stdin: StdioTarget = None,
        stdout: StdioTarget = None,
        stderr: StdioTarget = None,
        name: Optional[str] = None,
        context: str = "",
    ) -> ProcessHandle:
        """``spawn_detached`` that also records the handle."""
        handle = spawn_detached(
            command, stdin=stdin, stdout=stdout, stderr=stderr,
            name=name, context=context,
        )
        self._handles.append(handle)
        return handle

    def terminate_all(self) -> None:
        """Ask every recorded process to stop; never waits."""
        for handle in reversed(self._handles):
            handle.terminate()
        self._handles.clear()
