"""
Report formatting test suite.

Run with full visibility:
    pytest tests/test_report.py -v -s
"""

import dataclasses

import pytest

from serial_boot_test.exceptions import BootTimeoutError
from serial_boot_test.orchestrator import BootTestResult
from serial_boot_test.report import format_report

NAMES = ("Waiting for request to power target", "Checking for the string: 'Echoing input now'")


def _passed() -> BootTestResult:
    return BootTestResult(
        test_name="Boot test using MiniPush",
        passed=True,
        output=("  100% ready", "Echoing input now"),
        raw_output=("12%\r100% ready", "Echoing input now"),
        subtest_names=NAMES,
        completed=2,
        elapsed_seconds=1.5,
    )


def _failed(lines: int = 3) -> BootTestResult:
    raw = tuple(f"line {i}" for i in range(lines))
    return BootTestResult(
        test_name="Boot test using MiniPush",
        passed=False,
        output=raw,
        raw_output=raw,
        subtest_names=NAMES,
        completed=0,
        elapsed_seconds=0.5,
        failed_subtest=NAMES[0],
        failed_index=0,
        reason=BootTimeoutError("no power request", marker="Please power", timeout_s=0.5),
    )


class TestFormatReport:

    def test_passing_report(self):
        text = format_report(_passed(), description="Checking for the string: 'Echoing input now'")
        print(text)
        assert text.startswith(" Running: Boot test using MiniPush")
        assert f"[ok]   {NAMES[0]}" in text
        assert f"[ok]   {NAMES[1]}" in text
        assert "Test output:" in text
        assert "  100% ready" in text
        assert "\r" not in text
        assert text.rstrip().endswith("Success: Boot test using MiniPush (1.50s)")

    def test_failing_report_marks_steps(self):
        text = format_report(_failed())
        print(text)
        assert f"[FAIL] {NAMES[0]}" in text
        assert f"[skip] {NAMES[1]}" in text
        assert f"Failed step: {NAMES[0]}" in text
        assert "Reason: BootTimeoutError: no power request" in text
        assert "Captured output (3 lines):" in text
        assert " Failure: Boot test using MiniPush (0.50s)" in text

    def test_failing_report_truncates_to_tail(self):
        text = format_report(_failed(lines=50), tail_lines=5)
        assert "Captured output (last 5 of 50 lines):" in text
        assert "line 49" in text
        assert "line 44" not in text

    def test_setup_failure_has_no_steps(self):
        result = dataclasses.replace(
            _failed(0), subtest_names=(), failed_subtest="setup", failed_index=None,
        )
        text = format_report(result)
        assert "Failed step: setup" in text
        assert "[FAIL]" not in text

    def test_result_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            _passed().passed = False  # type: ignore[misc]
