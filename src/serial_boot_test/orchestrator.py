"""Boot test orchestrator: an ordered pipeline of subtests over one stream.

State machine::

    INIT -> SETUP -> RUNNING -> FINISH -> PASSED | FAILED

* **SETUP**: the binding opens the console stream and contributes its
  handshake subtests; the pipeline is fixed as ``handshake + subtests``.
* **RUNNING**: subtests run strictly in order, one at a time, all reading
  the same stream.  The first failure ends the run.
* **FINISH**: always reached.  On success the binding's output transform is
  applied to the captured log; on failure the log is kept exactly as the
  target emitted it.  The binding is then closed.

A boot test is a single deterministic attempt.  There are no retries:
flakiness is a signal to fix timing or markers.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import time
from typing import Optional, Sequence, Tuple

from typeguard import typechecked

from .bindings import StreamBinding
from .exceptions import BootTestError, BootTestFailedError
from .line_stream import LineStream
from .output_log import OutputLog
from .subtests import Subtest, build_pipeline

logger = logging.getLogger("serial_boot_test.orchestrator")

SETUP_STEP_NAME = "setup"


class BootTestState(enum.Enum):
    INIT = "init"
    SETUP = "setup"
    RUNNING = "running"
    FINISH = "finish"
    PASSED = "passed"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class BootTestResult:
    """Immutable outcome of one boot test run.

    Attributes:
        test_name: Name of the boot test.
        passed: ``True`` only if every subtest's expectation was met in order.
        output: Finalized output (cleaned on success, raw on failure).
        raw_output: Every observed line exactly as received.
        subtest_names: Names of the executed pipeline, in order.
        completed: Number of subtests that passed.
        elapsed_seconds: Wall-clock duration of the run.
        failed_subtest: Name of the failing subtest (``"setup"`` when the
            stream could not be bound), ``None`` on success.
        failed_index: Pipeline position of the failing subtest.
        reason: The exception that failed the run.
    """
    test_name: str
    passed: bool
    output: Tuple[str, ...]
    raw_output: Tuple[str, ...]
    subtest_names: Tuple[str, ...]
    completed: int
    elapsed_seconds: float
    failed_subtest: Optional[str] = None
    failed_index: Optional[int] = None
    reason: Optional[BaseException] = None

    @property
    def status(self) -> str:
        return "PASSED" if self.passed else "FAILED"

    def tail(self, n: int) -> Tuple[str, ...]:
        """Last *n* raw lines, for diagnostics."""
        if n <= 0:
            return ()
        return self.raw_output[-n:]


@typechecked
class BootTest:
    """Runs an ordered list of subtests against a bound console stream.

    Example::

        binding = ChainbootBinding(qemu_cmd, "demo_payload_rpi3.img")
        test = BootTest(
            "Boot test using MiniPush",
            [expected_print("Echoing input now")],
            binding,
        )
        result = test.run()
    """

    def __init__(
        self,
        name: str,
        subtests: Sequence[Subtest],
        binding: StreamBinding,
        description: str = "",
    ) -> None:
        """Initialize boot test.

        Args:
            name: Test name used in logs and the report.
            subtests: Target-specific subtests, in execution order.  The
                binding's handshake subtests run before them.
            binding: Source of the console stream.
            description: Optional one-line description for the report.

        Raises:
            TypeError: If an element is not a subtest.
            ValueError: If *subtests* is empty.
        """
        self.name = name
        self.description = description
        self.binding = binding
        self.subtests = build_pipeline(subtests)
        self.pipeline: Tuple[Subtest, ...] = ()
        self.output_log = OutputLog()
        self.state = BootTestState.INIT
        self._stream: Optional[LineStream] = None

    def cancel(self) -> None:
        """Abort the blocked expectation, failing the active subtest."""
        if self._stream is not None:
            self._stream.cancel()

    def run(self) -> BootTestResult:
        """Execute the boot test once.

        Returns:
            A ``BootTestResult``; failures are reported there rather than
            raised.  Errors outside the boot test taxonomy (bugs in a custom
            subtest, ``KeyboardInterrupt``) still tear the binding down and
            then propagate.

        Raises:
            RuntimeError: If this boot test already ran.
        """
        if self.state is not BootTestState.INIT:
            raise RuntimeError(
                f"Boot test {self.name!r} already ran (state={self.state.value}); "
                f"create a new BootTest for another attempt"
            )

        logger.info("[BOOT-RUN] Running: %s (%s)", self.name, self.binding.describe())
        start = time.monotonic()

        try:
            completed, failed_index, failed_name, reason = self._execute()
        except BaseException:
            self._finish(passed=False)
            self.state = BootTestState.FAILED
            raise

        passed = reason is None
        self._finish(passed=passed)
        self.state = BootTestState.PASSED if passed else BootTestState.FAILED

        result = BootTestResult(
            test_name=self.name,
            passed=passed,
            output=self.output_log.lines,
            raw_output=self.output_log.raw_lines,
            subtest_names=tuple(s.name for s in self.pipeline),
            completed=completed,
            elapsed_seconds=time.monotonic() - start,
            failed_subtest=failed_name,
            failed_index=failed_index,
            reason=reason,
        )

        if passed:
            logger.info(
                "[BOOT-RUN] Success: %s (%d subtests, %.3fs)",
                self.name, completed, result.elapsed_seconds,
            )
        else:
            logger.warning(
                "[BOOT-RUN] Failed: %s at %r: %s",
                self.name, failed_name, reason,
            )
        return result

    def run_or_raise(self) -> BootTestResult:
        """``run()``, raising ``BootTestFailedError`` unless the test passed."""
        result = self.run()
        if not result.passed:
            raise BootTestFailedError(
                f"Boot test {self.name!r} failed at {result.failed_subtest!r}: "
                f"{result.reason}",
                result=result,
            )
        return result

    # ---- Phases ----

    def _execute(
        self,
    ) -> Tuple[int, Optional[int], Optional[str], Optional[BootTestError]]:
        """SETUP and RUNNING; returns (completed, failed index, name, reason)."""
        self.state = BootTestState.SETUP
        try:
            stream = self.binding.open(context=self.name)
            stream.add_listener(self.output_log.append)
            self._stream = stream
            self.pipeline = build_pipeline(self.binding.handshake(), self.subtests)
            stream_in = self.binding.stream_in
        except BootTestError as exc:
            logger.error("[BOOT-RUN] Setup of %s failed: %s", self.name, exc)
            return 0, None, SETUP_STEP_NAME, exc

        self.state = BootTestState.RUNNING
        total = len(self.pipeline)
        for index, subtest in enumerate(self.pipeline):
            logger.info("[SUBTEST] [%d/%d] %s", index + 1, total, subtest.name)
            try:
                subtest.run(stream, stream_in)
            except BootTestError as exc:
                logger.warning(
                    "[SUBTEST] [%d/%d] %s FAILED: %s: %s",
                    index + 1, total, subtest.name, type(exc).__name__, exc,
                )
                return index, index, subtest.name, exc
            logger.info("[SUBTEST] [%d/%d] %s ok", index + 1, total, subtest.name)

        return total, None, None, None

    def _finish(self, passed: bool) -> None:
        self.state = BootTestState.FINISH
        try:
            transform = self.binding.output_transform() if passed else None
            self.output_log.finalize(transform)
        finally:
            self.binding.close()
            self._stream = None
