"""Type definitions for Serial Boot Test."""

from typing import IO, Callable, Optional, Sequence, Union

# A command either runs through the shell (str) or is exec'd directly (argv)
CommandLine = Union[str, Sequence[str]]

# Standard stream target for a spawned process: fd, file object, or a
# subprocess constant (DEVNULL / PIPE)
StdioTarget = Optional[Union[int, IO]]

# Absolute time.monotonic() deadline; None waits forever
Deadline = Optional[float]

# Per-line rewrite applied to the finalized output log
LineTransform = Callable[[str], str]

# Receives every completed line read from a LineStream
LineListener = Callable[[str], None]
