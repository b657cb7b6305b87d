"""Human-readable boot test report."""

from __future__ import annotations

from typing import List

from . import REPORT_TAIL_LINES
from .orchestrator import BootTestResult

_RULE = "-" * 72
_INDENT = "      "


def format_report(
    result: BootTestResult,
    description: str = "",
    tail_lines: int = REPORT_TAIL_LINES,
) -> str:
    """Render *result* as text.

    A passing report lists every subtest and the cleaned output.  A failing
    report names the failed step and its reason, then reproduces the last
    *tail_lines* lines exactly as the target emitted them.
    """
    out: List[str] = [f" Running: {result.test_name}"]
    if description:
        out.append(f"{_INDENT}{description}")
    out.append(f" {_RULE}")

    for index, name in enumerate(result.subtest_names):
        if index < result.completed:
            mark = "[ok]  "
        elif index == result.failed_index:
            mark = "[FAIL]"
        else:
            mark = "[skip]"
        out.append(f"{_INDENT}{mark} {name}")

    if result.passed:
        out.append("")
        out.append(f"{_INDENT}Test output:")
        out.extend(f"{_INDENT}  {line}" for line in result.output)
        out.append(f" {_RULE}")
        out.append(f" Success: {result.test_name} ({result.elapsed_seconds:.2f}s)")
        return "\n".join(out)

    out.append("")
    out.append(f"{_INDENT}Failed step: {result.failed_subtest}")
    if result.reason is not None:
        out.append(f"{_INDENT}Reason: {type(result.reason).__name__}: {result.reason}")

    tail = result.tail(tail_lines)
    skipped = len(result.raw_output) - len(tail)
    out.append("")
    if skipped > 0:
        out.append(f"{_INDENT}Captured output (last {len(tail)} of {len(result.raw_output)} lines):")
    else:
        out.append(f"{_INDENT}Captured output ({len(tail)} lines):")
    out.extend(f"{_INDENT}  {line}" for line in tail)
    out.append(f" {_RULE}")
    out.append(f" Failure: {result.test_name} ({result.elapsed_seconds:.2f}s)")
    return "\n".join(out)
