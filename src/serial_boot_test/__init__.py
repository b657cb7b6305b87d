"""
Serial Boot Test - boot verification for embedded targets over a serial line

This package drives a target (real hardware on a UART, or an emulator) through
its boot sequence and asserts that literal markers show up on the console
within bounded time.  It includes:

- **LineStream** that reassembles raw serial bytes into logical lines
- **Subtests** pairing one expectation with at most one side effect
- **BootTest** orchestrator running an ordered subtest pipeline
- **Transport bindings** for a physical UART, a directly spawned emulator,
  and an emulator chain-loaded through a serial forwarder (MiniPush)

Marker strings are a contract with the target firmware and the forwarder:
they must appear verbatim (as substrings) in the console output.
"""

import logging
import os
import warnings

logging.getLogger("serial_boot_test").addHandler(logging.NullHandler())

__version__ = "0.1.0"


def _env_float(name: str, default: float) -> float:
    """Positive float from environment variable *name*, else *default*.

    A malformed or non-positive value is reported with a warning and ignored,
    so importing the package never fails on a bad override.
    """
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        value = float("nan")
    if not value > 0:
        warnings.warn(
            f"Ignoring {name}={raw!r}: expected a positive number of seconds; "
            f"using {default:g}",
            RuntimeWarning,
            stacklevel=2,
        )
        return default
    return value


# Expectation settings.
# Override the per-expectation deadline via BOOT_TEST_EXPECT_TIMEOUT_S.
DEFAULT_EXPECT_TIMEOUT_S = _env_float("BOOT_TEST_EXPECT_TIMEOUT_S", 10.0)

# Line reassembly settings
DEFAULT_LINE_TERMINATOR = b"\n"
BRIDGED_LINE_TERMINATOR = b"\r\n"  # forwarder output arrives through a cooked pty
STREAM_POLL_INTERVAL_S = 0.01  # 10 ms; bounds how late a cancel() is noticed
STREAM_READ_CHUNK_SIZE = 4096
STREAM_ENCODING = "utf-8"

# Marker contract with the forwarder and the demo payload
POWER_TARGET_REQUEST = "Please power the target now"
EXPECTED_FINAL_PRINT = os.environ.get("BOOT_TEST_EXPECTED_PRINT", "Echoing input now")

# Forwarder invoked as: <command> <secondary pty path> <payload path>
DEFAULT_FORWARDER_COMMAND = os.environ.get(
    "BOOT_TEST_FORWARDER", "ruby ../tools/serial/minipush.rb",
)

# Replacement for everything up to the last carriage return of a line
CR_COLLAPSE_MARKER = os.environ.get("BOOT_TEST_CR_MARKER", "  ")

# Number of captured lines echoed in a failure report
REPORT_TAIL_LINES = 20

# Serial communication settings (physical UART targets)
SERIAL_BAUD_RATE = 115200
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit
SERIAL_WRITE_TIMEOUT = 10  # seconds; blocking with failsafe
DEFAULT_SERIAL_PORT = os.environ.get("BOOT_TEST_SERIAL_PORT", "/dev/ttyUSB0")
