"""
Stream binding test suite.

Runs real boot tests against stand-in processes: a scripted forwarder and
target for the chainboot handshake, and a scripted emulator for the direct
binding.  All stand-ins are small Python programs launched with the current
interpreter, so no emulator or Ruby installation is needed.

Run with full visibility:
    pytest tests/test_bindings.py -v -s
"""

from __future__ import annotations

import platform
import subprocess
import sys
import time

import pytest

from serial_boot_test import POWER_TARGET_REQUEST
from serial_boot_test.bindings import (
    ChainbootBinding,
    EmulatorBinding,
    boot_subtests,
    power_target_request,
)
from serial_boot_test.exceptions import (
    BootTimeoutError,
    ExpectationError,
    SpawnError,
    StreamError,
)
from serial_boot_test.orchestrator import SETUP_STEP_NAME, BootTest, BootTestResult
from serial_boot_test.subtests import ExpectMarker, ExpectThenSpawn, expected_print

from fakes import FAKE_EMULATOR, FAKE_FORWARDER, FAKE_TARGET, SILENT_FORWARDER

try:
    from typeguard import TypeCheckError
    _TYPEGUARD_ERRORS = (TypeError, TypeCheckError)
except ImportError:
    _TYPEGUARD_ERRORS = (TypeError,)

pytestmark = pytest.mark.skipif(
    platform.system() == "Windows",
    reason="Bindings need POSIX pseudo-terminals",
)

PAYLOAD = b"\x00\x00\x08\x00kernel8-image\n"


def _report(label: str, detail: str = "") -> None:
    """Uniform test-level print."""
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _print_result(result: BootTestResult) -> None:
    _report(
        "RESULT",
        f"status={result.status} failed={result.failed_subtest!r} reason={result.reason!r}",
    )
    for line in result.output:
        print(f"      | {line!r}")


def _python(script: str):
    return [sys.executable, "-c", script]


def _wait_exit(popen: subprocess.Popen, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while popen.poll() is None and time.monotonic() < deadline:
        time.sleep(0.05)


@pytest.fixture()
def payload_path(tmp_path):
    path = tmp_path / "demo_payload_rpi3.img"
    path.write_bytes(PAYLOAD)
    return str(path)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — ChainbootBinding, end to end
# ═══════════════════════════════════════════════════════════════════════════

class TestChainbootEndToEnd:
    """Forwarder on the secondary pty end, target spawned on the main end."""

    def test_chainboot_passes_and_cleans_progress_lines(self, payload_path):
        binding = ChainbootBinding(
            _python(FAKE_TARGET),
            payload_path,
            forwarder_command=_python(FAKE_FORWARDER),
        )
        test = BootTest(binding.describe(), [expected_print("Echoing input now", 10)], binding)

        result = test.run()
        _print_result(result)

        assert result.passed, result.reason
        assert result.subtest_names[0] == "Waiting for request to power target"
        assert "[MP] target said: hello from target" in result.output
        assert f"[MP] Loaded {len(PAYLOAD)} bytes" in result.output

        # Progress redraws collapsed in the output, untouched in the raw log
        assert "  100% ready" in result.output
        assert "[MP] 12%\r34%\r100% ready" in result.raw_output

        power = result.output.index("[MP] " + POWER_TARGET_REQUEST)
        said = result.output.index("[MP] target said: hello from target")
        final = result.output.index("Echoing input now")
        assert power < said < final

    def test_close_releases_processes_and_ptys(self, payload_path):
        binding = ChainbootBinding(
            _python(FAKE_TARGET),
            payload_path,
            forwarder_command=_python(FAKE_FORWARDER),
        )
        test = BootTest(binding.describe(), [expected_print("Echoing input now", 10)], binding)

        handles = []
        original_close = binding.close

        def capture_then_close() -> None:
            handles.extend(binding.processes.handles)
            original_close()

        binding.close = capture_then_close  # type: ignore[method-assign]
        assert test.run().passed

        assert [h.name for h in handles] == ["forwarder", "emulator"]
        for handle in handles:
            _wait_exit(handle.popen)
            assert not handle.is_running()
        assert binding.processes.handles == ()
        with pytest.raises(StreamError):
            binding.secondary_path

    def test_silent_forwarder_fails_the_handshake(self, payload_path):
        binding = ChainbootBinding(
            _python(FAKE_TARGET),
            payload_path,
            forwarder_command=_python(SILENT_FORWARDER),
            handshake_timeout_s=0.5,
        )
        result = BootTest(binding.describe(), [expected_print("Echoing input now", 1)], binding).run()
        _print_result(result)

        assert not result.passed
        assert result.failed_subtest == "Waiting for request to power target"
        assert isinstance(result.reason, BootTimeoutError)
        assert result.reason.marker == POWER_TARGET_REQUEST

    def test_forwarder_exit_is_a_closed_stream(self, payload_path):
        binding = ChainbootBinding(
            _python(FAKE_TARGET),
            payload_path,
            forwarder_command=_python("print('[MP] cannot open payload')"),
        )
        result = BootTest(binding.describe(), [expected_print("Echoing input now", 1)], binding).run()
        _print_result(result)

        assert result.failed_subtest == "Waiting for request to power target"
        assert isinstance(result.reason, ExpectationError)

    def test_missing_forwarder_fails_setup(self, payload_path):
        binding = ChainbootBinding(
            _python(FAKE_TARGET),
            payload_path,
            forwarder_command=["/nonexistent/minipush"],
        )
        result = BootTest(binding.describe(), [expected_print("Echoing input now", 1)], binding).run()

        assert result.failed_subtest == SETUP_STEP_NAME
        assert isinstance(result.reason, SpawnError)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — ChainbootBinding, unit level
# ═══════════════════════════════════════════════════════════════════════════

class TestChainbootBinding:

    def test_forwarder_argv_from_string(self):
        binding = ChainbootBinding(
            "qemu-system-aarch64 -M raspi3b", "demo_payload_rpi3.img",
            forwarder_command="ruby ../tools/serial/minipush.rb",
        )
        assert binding.forwarder_argv("/dev/pts/7") == [
            "ruby", "../tools/serial/minipush.rb", "/dev/pts/7", "demo_payload_rpi3.img",
        ]

    def test_forwarder_argv_from_sequence(self):
        binding = ChainbootBinding("qemu", "p.img", forwarder_command=["mp", "--fast"])
        assert binding.forwarder_argv("/dev/pts/1") == ["mp", "--fast", "/dev/pts/1", "p.img"]

    def test_handshake_requires_open(self):
        binding = ChainbootBinding("qemu", "p.img")
        with pytest.raises(StreamError):
            binding.handshake()
        with pytest.raises(StreamError):
            binding.secondary_path

    def test_output_transform_uses_configured_marker(self):
        binding = ChainbootBinding("qemu", "p.img", cr_marker="~")
        transform = binding.output_transform()
        assert transform is not None
        assert transform("12%\r100% doneXYZ") == "~100% doneXYZ"

    @pytest.mark.parametrize("marker", ["\r", "\r> "])
    def test_carriage_return_marker_rejected(self, marker):
        with pytest.raises(ValueError, match="collapse marker"):
            ChainbootBinding("qemu", "p.img", cr_marker=marker)

    @pytest.mark.parametrize("timeout", [0, -1.5])
    def test_non_positive_handshake_timeout_rejected(self, timeout):
        with pytest.raises(ValueError, match="Invalid timeout"):
            ChainbootBinding("qemu", "p.img", handshake_timeout_s=timeout)

    def test_describe(self):
        assert ChainbootBinding("qemu", "p.img").describe() == "Boot test using MiniPush"

    def test_typeguard_rejects_bytes_payload(self):
        with pytest.raises(_TYPEGUARD_ERRORS):
            ChainbootBinding("qemu", b"p.img")  # type: ignore[arg-type]


class TestPowerTargetRequest:

    def test_handshake_subtest_wiring(self):
        spawn = object()
        subtest = power_target_request("qemu -kernel k", 42, spawn=spawn, timeout_s=3)  # type: ignore[arg-type]
        assert isinstance(subtest, ExpectThenSpawn)
        assert subtest.name == "Waiting for request to power target"
        assert subtest.marker == POWER_TARGET_REQUEST
        assert subtest.stdin == 42 and subtest.stdout == 42
        assert subtest.stderr == subprocess.DEVNULL
        assert subtest.spawn is spawn
        assert subtest.timeout_s == 3

    def test_default_boot_subtests(self):
        subtests = boot_subtests()
        assert len(subtests) == 1
        assert subtests[0].name == "Checking for the string: 'Echoing input now'"
        assert boot_subtests("READY", 2)[0].marker == "READY"


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — EmulatorBinding
# ═══════════════════════════════════════════════════════════════════════════

class TestEmulatorBinding:

    def test_emulator_console_markers_in_order(self):
        binding = EmulatorBinding(_python(FAKE_EMULATOR))
        test = BootTest(
            binding.describe(),
            [ExpectMarker("drivers", "[0]", 10), expected_print("Echoing input now", 10)],
            binding,
        )
        result = test.run()
        _print_result(result)

        assert result.passed, result.reason
        assert result.output == ("Booting kernel", "[0] Drivers loaded", "Echoing input now")
        assert binding.processes.handles == ()

    def test_emulator_without_marker_times_out(self):
        binding = EmulatorBinding(_python(FAKE_EMULATOR))
        result = BootTest("Boot test", [ExpectMarker("panic", "Kernel panic", 1)], binding).run()
        assert isinstance(result.reason, BootTimeoutError)
        assert "Booting kernel" in result.raw_output

    def test_exited_emulator_is_a_closed_stream(self):
        binding = EmulatorBinding(_python("print('bye')"))
        result = BootTest("Boot test", [ExpectMarker("never", "never", 5)], binding).run()
        assert isinstance(result.reason, ExpectationError)
        assert result.elapsed_seconds < 5

    def test_missing_emulator_fails_setup(self):
        binding = EmulatorBinding(["/nonexistent/qemu-system-aarch64"])
        result = BootTest("Boot test", [ExpectMarker("x", "x", 1)], binding).run()
        assert result.failed_subtest == SETUP_STEP_NAME
        assert isinstance(result.reason, SpawnError)

    def test_shell_string_command(self):
        binding = EmulatorBinding("echo one; echo 'Echoing input now'; sleep 5")
        result = BootTest("Boot test", [expected_print("Echoing input now", 5)], binding).run()
        assert result.passed, result.reason
        assert result.output == ("one", "Echoing input now")

    def test_describe(self):
        assert EmulatorBinding("qemu").describe() == "Boot test"
