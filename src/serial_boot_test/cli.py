"""Command-line interface for serial boot tests."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Tuple

from . import (
    DEFAULT_EXPECT_TIMEOUT_S,
    DEFAULT_FORWARDER_COMMAND,
    DEFAULT_SERIAL_PORT,
    EXPECTED_FINAL_PRINT,
    SERIAL_BAUD_RATE,
)
from .bindings import (
    ChainbootBinding,
    DirectSerialBinding,
    EmulatorBinding,
    StreamBinding,
    boot_subtests,
)
from .exceptions import BootTestFailedError, SerialPortError
from .orchestrator import BootTest
from .report import format_report
from .serial_comm import SerialConnectionManager
from .subtests import ExpectMarker


def split_invocation(words: List[str]) -> Tuple[str, str]:
    """Split ``TARGET_CMD... PAYLOAD`` into (target command, payload path).

    The last word is the payload path; all preceding words, joined with
    spaces, form the target invocation.

    Raises:
        ValueError: If there are fewer than two words.
    """
    if len(words) < 2:
        raise ValueError(
            "Expected a target command followed by a payload path, got "
            f"{len(words)} argument(s)"
        )
    *command, payload_path = words
    return " ".join(command), payload_path


def _run(test: BootTest) -> int:
    """Run *test*, print its report, and map the outcome to an exit code."""
    try:
        result = test.run_or_raise()
    except BootTestFailedError as e:
        if e.result is not None:
            print(format_report(e.result, description=test.description), file=sys.stderr)
        else:
            print(f"Error: {str(e)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"\nInterrupted: {test.name}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    print(format_report(result, description=test.description))
    return 0


def _build_test(binding: StreamBinding, expected: str, timeout: float) -> BootTest:
    return BootTest(
        binding.describe(),
        boot_subtests(expected, timeout_s=timeout),
        binding,
        description=f"Checking for the string: '{expected}'",
    )


def command_chainboot(args) -> int:
    """Boot an emulated target through a serial forwarder."""
    try:
        target_command, payload_path = split_invocation(args.invocation)
        binding = ChainbootBinding(
            target_command,
            payload_path,
            forwarder_command=args.forwarder,
            handshake_timeout_s=args.timeout,
        )
        test = _build_test(binding, args.expect, args.timeout)
    except ValueError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    return _run(test)


def command_boot(args) -> int:
    """Boot an emulator directly and watch its console."""
    if not args.invocation:
        print("Error: Expected an emulator command", file=sys.stderr)
        return 1

    try:
        binding = EmulatorBinding(" ".join(args.invocation))
        test = _build_test(binding, args.expect, args.timeout)
    except ValueError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    return _run(test)


def command_serial(args) -> int:
    """Watch a physical target's boot on a UART."""
    markers = args.expect or [EXPECTED_FINAL_PRINT]

    try:
        binding = DirectSerialBinding(args.serial_port, baud_rate=args.baud_rate)
        subtests = [
            ExpectMarker(
                name=f"Checking for the string: '{marker}'",
                marker=marker,
                timeout_s=args.timeout,
            )
            for marker in markers
        ]
    except (SerialPortError, ValueError) as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    test = BootTest(
        binding.describe(),
        subtests,
        binding,
        description=f"Checking for {len(markers)} marker(s) in order",
    )
    return _run(test)


def command_serial_list(args) -> int:
    """List available serial ports."""
    ports = SerialConnectionManager.list_available_ports()
    if not ports:
        print("No serial ports found.")
    else:
        print("Available serial ports:")
        for p in ports:
            print(f"  {p}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="Serial Boot Test - verify embedded targets boot as expected"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=False,
        help="Log every step and every received line to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Chainboot through a forwarder
    chain_parser = subparsers.add_parser(
        "chainboot", help="Boot an emulated target through a serial forwarder",
    )
    chain_parser.add_argument(
        "--forwarder", type=str, default=DEFAULT_FORWARDER_COMMAND,
        help="Forwarder command; receives the secondary pty path and the "
             f"payload path as arguments (default: {DEFAULT_FORWARDER_COMMAND!r})",
    )
    chain_parser.add_argument(
        "--timeout", type=float, default=DEFAULT_EXPECT_TIMEOUT_S,
        help=f"Per-marker timeout in seconds (default: {DEFAULT_EXPECT_TIMEOUT_S:g})",
    )
    chain_parser.add_argument(
        "--expect", type=str, default=EXPECTED_FINAL_PRINT,
        help=f"Final marker the payload prints (default: {EXPECTED_FINAL_PRINT!r})",
    )
    chain_parser.add_argument(
        "invocation", nargs=argparse.REMAINDER, metavar="TARGET_CMD... PAYLOAD",
        help="Emulator command line followed by the payload path",
    )
    chain_parser.set_defaults(func=command_chainboot)

    # Direct emulator boot
    boot_parser = subparsers.add_parser(
        "boot", help="Boot an emulator directly and watch its console",
    )
    boot_parser.add_argument(
        "--timeout", type=float, default=DEFAULT_EXPECT_TIMEOUT_S,
        help=f"Per-marker timeout in seconds (default: {DEFAULT_EXPECT_TIMEOUT_S:g})",
    )
    boot_parser.add_argument(
        "--expect", type=str, default=EXPECTED_FINAL_PRINT,
        help=f"Marker the target prints (default: {EXPECTED_FINAL_PRINT!r})",
    )
    boot_parser.add_argument(
        "invocation", nargs=argparse.REMAINDER, metavar="EMULATOR_CMD...",
        help="Emulator command line",
    )
    boot_parser.set_defaults(func=command_boot)

    # Physical UART
    serial_parser = subparsers.add_parser(
        "serial", help="Watch a physical target's boot on a UART",
    )
    serial_parser.add_argument(
        "--serial-port", type=str, default=DEFAULT_SERIAL_PORT,
        help=f"Serial port path (e.g. /dev/ttyUSB0 or COM3; default: {DEFAULT_SERIAL_PORT})",
    )
    serial_parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )
    serial_parser.add_argument(
        "--timeout", type=float, default=DEFAULT_EXPECT_TIMEOUT_S,
        help=f"Per-marker timeout in seconds (default: {DEFAULT_EXPECT_TIMEOUT_S:g})",
    )
    serial_parser.add_argument(
        "--expect", type=str, action="append", default=None,
        help="Marker to wait for; repeat for several markers in order "
             f"(default: {EXPECTED_FINAL_PRINT!r})",
    )
    serial_parser.set_defaults(func=command_serial)

    # Serial list
    serial_list_parser = subparsers.add_parser(
        "serial-list", help="List available serial ports",
    )
    serial_list_parser.set_defaults(func=command_serial_list)

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
