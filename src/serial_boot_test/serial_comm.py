"""Physical UART plumbing for boot tests on real hardware.

``SerialConnectionManager`` opens and validates the port; ``SerialByteSource``
adapts the open port to the ``ByteSource`` interface so a ``LineStream`` can
read boot output from it exactly as it would from a pty.

Cross-platform: works on both Windows (COMx) and Linux
(/dev/ttyUSB*, /dev/ttyS*, /dev/ttyACM*).

Default line settings: 115200 8N1 (no flow control).
"""

from __future__ import annotations

import logging
import platform
import time
from typing import List, Optional

import serial
import serial.tools.list_ports

from . import (
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_PARITY,
    SERIAL_STOPBITS,
    SERIAL_WRITE_TIMEOUT,
    STREAM_POLL_INTERVAL_S,
)
from .exceptions import SerialPortError
from .line_stream import ByteSource

logger = logging.getLogger("serial_boot_test.serial_comm")

_IS_WINDOWS = platform.system() == "Windows"

# Map string parity values to pyserial constants
_PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
    "M": serial.PARITY_MARK,
    "S": serial.PARITY_SPACE,
}

# Map integer stopbits to pyserial constants
_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

# Map integer bytesize to pyserial constants
_BYTESIZE_MAP = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


def _write_all(ser: serial.Serial, data: bytes, port_name: str) -> int:
    """Write *all* bytes to the serial port and flush the OS transmit buffer.

    Does **not** catch exceptions: ``serial.SerialException`` and ``OSError``
    propagate to the caller's handlers.

    Raises:
        SerialPortError: If a short write is detected.
    """
    n = ser.write(data)
    if n != len(data):
        raise SerialPortError(
            f"Short write on {port_name}: wrote {n}/{len(data)} bytes. "
            f"This usually means write_timeout is 0 (non-blocking) "
            f"and the kernel buffer is full."
        )
    ser.flush()
    return n


class SerialConnectionManager:
    """Manages a serial port connection with automatic resource cleanup.

    Example::

        with SerialConnectionManager("/dev/ttyUSB0") as mgr:
            stream = LineStream(SerialByteSource(mgr), terminator=b"\\r\\n")
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
        xonxoff: bool = False,
        rtscts: bool = False,
    ) -> None:
        """Initialize serial connection manager.

        Args:
            port: Serial port path, e.g. ``/dev/ttyUSB0`` (Linux) or ``COM3`` (Windows).
            baud_rate: Baud rate (default: 115200).
            bytesize: Number of data bits (5, 6, 7, or 8; default: 8).
            parity: Parity setting: ``"N"``, ``"E"``, ``"O"``, ``"M"`` or ``"S"``.
            stopbits: Number of stop bits (1 or 2; default: 1).
            write_timeout: Write timeout in seconds.  ``None`` blocks forever.
            xonxoff: Enable software flow control (XON/XOFF).
            rtscts: Enable hardware (RTS/CTS) flow control.

        Raises:
            SerialPortError: If any parameter value is invalid.
        """
        self.port = port
        self.baud_rate = baud_rate
        self.write_timeout = write_timeout
        self.xonxoff = xonxoff
        self.rtscts = rtscts
        self._serial: Optional[serial.Serial] = None

        if bytesize not in _BYTESIZE_MAP:
            valid = ", ".join(str(k) for k in sorted(_BYTESIZE_MAP))
            raise SerialPortError(
                f"Invalid bytesize {bytesize!r} for port {port}. "
                f"Must be one of: {valid}. "
                f"Standard UART uses 8 data bits (bytesize=8)."
            )
        self.bytesize = _BYTESIZE_MAP[bytesize]

        parity_upper = parity.upper()
        if parity_upper not in _PARITY_MAP:
            valid = ", ".join(f'"{k}"' for k in sorted(_PARITY_MAP))
            raise SerialPortError(
                f"Invalid parity {parity!r} for port {port}. "
                f"Must be one of: {valid}. "
                f'Standard UART uses no parity (parity="N").'
            )
        self.parity = _PARITY_MAP[parity_upper]

        if stopbits not in _STOPBITS_MAP:
            valid = ", ".join(str(k) for k in sorted(_STOPBITS_MAP))
            raise SerialPortError(
                f"Invalid stopbits {stopbits!r} for port {port}. "
                f"Must be one of: {valid}. "
                f"Standard UART uses 1 stop bit (stopbits=1)."
            )
        self.stopbits = _STOPBITS_MAP[stopbits]

        if baud_rate <= 0:
            raise SerialPortError(
                f"Invalid baud rate {baud_rate!r} for port {port}. "
                f"Baud rate must be a positive integer. "
                f"Common values: 9600, 19200, 38400, 57600, 115200."
            )

        if write_timeout is not None and write_timeout < 0:
            raise SerialPortError(
                f"Invalid write_timeout {write_timeout!r} for port {port}. "
                f"Must be None (blocking), 0 (non-blocking), or a positive number."
            )

        logger.info(
            "[SERIAL-INIT] Configured %s: %d %d%s%s (write_timeout=%s)",
            port, baud_rate, bytesize, parity_upper, stopbits,
            f"{write_timeout:.2f}s" if write_timeout is not None else "None (blocking)",
        )

    def open(self, context: str) -> None:
        """Open the serial port.

        Args:
            context: Description of the purpose, embedded into error messages.

        Raises:
            SerialPortError: If the port cannot be opened.  The message
                includes the OS-level reason and platform-specific hints.
        """
        if self._serial is not None and self._serial.is_open:
            logger.debug("[SERIAL-OPEN] [%s] Port %s is already open, skipping", context, self.port)
            return

        logger.info(
            "[SERIAL-OPEN] [%s] Opening %s at %d baud ...", context, self.port, self.baud_rate,
        )

        try:
            # timeout=0: non-blocking reads, the wait is owned by LineStream
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=0,
                write_timeout=self.write_timeout,
                xonxoff=self.xonxoff,
                rtscts=self.rtscts,
            )
            logger.info("[SERIAL-OPEN] [%s] Successfully opened %s", context, self.port)

        except serial.SerialException as exc:
            msg = (
                f"[{context}] Failed to open serial port {self.port} at "
                f"{self.baud_rate} baud: {exc}. {self._platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] FAILED: %s", msg)
            raise SerialPortError(msg) from exc
        except OSError as exc:
            msg = (
                f"[{context}] OS error opening serial port {self.port}: {exc}. "
                f"{self._platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] OS ERROR: %s", msg)
            raise SerialPortError(msg) from exc

    def is_open(self) -> bool:
        """Check whether the serial port is currently open."""
        return self._serial is not None and self._serial.is_open

    def close(self) -> None:
        """Close the serial port if open."""
        was_open = self.is_open()

        if self._serial is not None:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as exc:
                logger.warning(
                    "[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc,
                )
            finally:
                self._serial = None

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s", self.port)

    def get_serial(self) -> serial.Serial:
        """Return the underlying ``serial.Serial`` object.

        Raises:
            SerialPortError: If the port is not open.
        """
        if self._serial is None or not self._serial.is_open:
            raise SerialPortError(
                f"Cannot access serial port {self.port}: port is not open. "
                f"Call open() or use the context manager first."
            )
        return self._serial

    # ---- Context manager ----

    def __enter__(self) -> SerialConnectionManager:
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    # ---- Helpers ----

    @staticmethod
    def list_available_ports() -> List[str]:
        """Return a list of serial port names visible to the operating system."""
        descriptions = []
        for p in serial.tools.list_ports.comports():
            descriptions.append(f"{p.device} - {p.description}")
            logger.debug("[SERIAL-LIST] Found port: %s (%s)", p.device, p.description)
        return descriptions

    def _platform_hint(self) -> str:
        """Return a platform-specific troubleshooting hint."""
        available = ", ".join(p.device for p in serial.tools.list_ports.comports())
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager "
                "(Ports -> COM & LPT) and that no terminal program has the port "
                f"open. Available ports: {available}."
            )
        return (
            "On Linux: verify the device path exists (ls /dev/ttyUSB* /dev/ttyACM* "
            "/dev/ttyS*). Ensure your user is in the 'dialout' group and that no "
            "other process (minicom, screen, picocom) has the port open. "
            f"Available ports: {available}."
        )


class SerialByteSource(ByteSource):
    """``ByteSource`` over an open ``SerialConnectionManager``.

    A UART never reports end-of-stream on its own; a disconnected adapter
    surfaces as ``serial.SerialException`` and is reported as a closed
    stream so the waiting expectation fails instead of hanging.
    """

    def __init__(
        self,
        connection_manager: SerialConnectionManager,
        poll_interval_s: float = STREAM_POLL_INTERVAL_S,
    ) -> None:
        self.connection_manager = connection_manager
        self.poll_interval_s = poll_interval_s
        self.name = connection_manager.port

    def read_available(self, timeout_s: float) -> Optional[bytes]:
        if not self.connection_manager.is_open():
            return None
        ser = self.connection_manager.get_serial()
        deadline = time.monotonic() + max(timeout_s, 0.0)

        try:
            while True:
                waiting = ser.in_waiting
                if waiting > 0:
                    chunk = ser.read(waiting)
                    if chunk:
                        return chunk
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                time.sleep(min(self.poll_interval_s, remaining))
        except (serial.SerialException, OSError) as exc:
            logger.error(
                "[SERIAL-READ] Read error on %s: %s. The device may have been "
                "disconnected.", self.name, exc,
            )
            return None

    def write(self, data: bytes) -> int:
        ser = self.connection_manager.get_serial()
        try:
            return _write_all(ser, data, self.name)
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"Failed to write {len(data)} bytes to serial port {self.name}: "
                f"{exc}. The device may have been disconnected."
            )
            logger.error("[SERIAL-WRITE] ERROR: %s", msg)
            raise SerialPortError(msg) from exc

    def close(self) -> None:
        self.connection_manager.close()
