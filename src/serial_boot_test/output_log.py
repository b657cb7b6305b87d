"""Captured boot output and the post-run cleanup applied to it."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from . import CR_COLLAPSE_MARKER
from .types import LineTransform

logger = logging.getLogger("serial_boot_test.output_log")

# Greedy and single-line: matches through the *last* carriage return
_UP_TO_LAST_CR = re.compile(r".*\r")


def check_cr_marker(marker: str) -> str:
    """Return *marker* unchanged, rejecting one that contains a ``\\r``.

    A marker carrying its own carriage return would be collapsed again on a
    second pass, so cleanup would no longer be idempotent.

    Raises:
        ValueError: If *marker* contains ``\\r``.
    """
    if "\r" in marker:
        raise ValueError(
            f"Invalid carriage-return collapse marker {marker!r}: "
            f"it must not contain '\\r'"
        )
    return marker


def collapse_carriage_returns(line: str, marker: str = CR_COLLAPSE_MARKER) -> str:
    """Replace everything up to and including the last ``\\r`` with *marker*.

    Forwarders redraw progress (``12%\\r34%\\r...``) with bare carriage
    returns; only the final segment is meaningful in a log::

        >>> collapse_carriage_returns("12%\\r34%\\r100% done")
        '  100% done'

    Lines without a carriage return are returned unchanged, which makes the
    transform idempotent.

    Raises:
        ValueError: If *marker* contains ``\\r``.
    """
    check_cr_marker(marker)
    if "\r" not in line:
        return line
    return _UP_TO_LAST_CR.sub(lambda _m: marker, line, count=1)


def make_cr_collapse(marker: str = CR_COLLAPSE_MARKER) -> LineTransform:
    """Return ``collapse_carriage_returns`` bound to a fixed *marker*.

    Raises:
        ValueError: If *marker* contains ``\\r``.
    """
    check_cr_marker(marker)

    def _collapse(line: str) -> str:
        return collapse_carriage_returns(line, marker)

    return _collapse


class OutputLog:
    """Ordered, append-only record of every line a boot test observed.

    The raw capture is kept untouched for failure reports.  ``finalize`` may
    rewrite the lines exactly once, after the run.
    """

    def __init__(self) -> None:
        self._raw: List[str] = []
        self._final: Optional[Tuple[str, ...]] = None

    def append(self, line: str) -> None:
        if self._final is not None:
            raise RuntimeError("Output log is finalized; no more lines can be appended")
        self._raw.append(line)

    def __len__(self) -> int:
        return len(self._raw)

    @property
    def finalized(self) -> bool:
        return self._final is not None

    @property
    def raw_lines(self) -> Tuple[str, ...]:
        """Lines exactly as the target emitted them."""
        return tuple(self._raw)

    @property
    def lines(self) -> Tuple[str, ...]:
        """Finalized lines once ``finalize`` ran, raw lines before that."""
        if self._final is not None:
            return self._final
        return tuple(self._raw)

    def tail(self, n: int) -> Tuple[str, ...]:
        if n <= 0:
            return ()
        return self.lines[-n:]

    def finalize(self, transform: Optional[LineTransform] = None) -> Tuple[str, ...]:
        """Freeze the log, applying *transform* to every line.

        Raises:
            RuntimeError: If the log was already finalized.
        """
        if self._final is not None:
            raise RuntimeError("Output log was already finalized")

        if transform is None:
            self._final = tuple(self._raw)
        else:
            self._final = tuple(transform(line) for line in self._raw)
            changed = sum(1 for a, b in zip(self._raw, self._final) if a != b)
            logger.debug("[OUTPUT-LOG] Finalized %d lines (%d rewritten)", len(self._raw), changed)
        return self._final
