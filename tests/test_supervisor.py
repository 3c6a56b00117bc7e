"""Tests for emulator command construction and process supervision.

Launch tests use ``/bin/sh`` scripts as stand-in emulators so the supervisor's
pexpect handling is exercised without QEMU.
"""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from bootharness.config import Architecture, NetworkMode, PortForward, VMConfig
from bootharness.errors import PortInUseError, ProcessStartError
from bootharness.supervisor import (
    PortRegistry,
    build_qemu_command,
    kernel_command_line,
    launch,
    probe_qemu_version,
)


def _config(**overrides) -> VMConfig:
    values = dict(
        architecture=Architecture.X86_64,
        kernel=Path("/images/bzImage"),
        rootfs=Path("/images/rootfs.ext4"),
    )
    values.update(overrides)
    return VMConfig(**values)


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_x86_64_command_line() -> None:
    config = _config(kvm=True, port_forwards=(PortForward(2222, 22),), memory="512M")

    cmd = build_qemu_command(config)

    assert cmd[0] == "qemu-system-x86_64"
    assert cmd[1:4] == ["-enable-kvm", "-cpu", "host"]
    assert cmd[cmd.index("-m") + 1] == "512M"
    assert cmd[cmd.index("-kernel") + 1] == "/images/bzImage"
    assert "file=/images/rootfs.ext4,format=raw,if=ide,index=0" in cmd
    assert "-nographic" in cmd and "-no-reboot" in cmd
    assert cmd[cmd.index("-netdev") + 1] == "user,id=net0,hostfwd=tcp:127.0.0.1:2222-:22"
    assert "virtio-net-pci,netdev=net0" in cmd
    assert "virtio-rng-pci" in cmd
    assert cmd[cmd.index("-append") + 1] == "root=/dev/sda rw console=ttyS0 panic=1"


def test_aarch64_command_line() -> None:
    config = _config(
        architecture=Architecture.AARCH64,
        kernel=Path("/images/Image"),
        network=NetworkMode.NONE,
    )

    cmd = build_qemu_command(config)

    assert cmd[:5] == ["qemu-system-aarch64", "-machine", "virt", "-cpu", "cortex-a57"]
    assert "virtio-blk-device,drive=hd0" in cmd
    assert cmd[cmd.index("-nic") + 1] == "none"
    assert "virtio-rng-device" in cmd
    assert "console=ttyAMA0" in cmd[cmd.index("-append") + 1]
    assert "root=/dev/vda" in cmd[cmd.index("-append") + 1]


def test_bridge_network_and_executable_override() -> None:
    cmd = build_qemu_command(
        _config(network=NetworkMode.BRIDGE, bridge="br-test"),
        executable="/opt/qemu/bin/qemu-system-x86_64",
    )
    assert cmd[0] == "/opt/qemu/bin/qemu-system-x86_64"
    assert cmd[cmd.index("-netdev") + 1] == "bridge,id=net0,br=br-test"


def test_kernel_command_line_with_init_override() -> None:
    line = kernel_command_line(
        _config(init_override="/boot-harness/init.sh", boot_args="  quiet loglevel=3 ")
    )
    assert line == (
        "root=/dev/sda rw console=ttyS0 panic=1 "
        "init=/boot-harness/init.sh quiet loglevel=3"
    )


def test_probe_qemu_version_missing_binary(tmp_path: Path) -> None:
    assert probe_qemu_version(str(tmp_path / "qemu-missing")) is None


def test_port_registry_claim_and_release() -> None:
    registry = PortRegistry()
    registry.claim([2222, 2223])

    with pytest.raises(PortInUseError, match="2222"):
        registry.claim([2222])
    assert registry.claimed() == frozenset({2222, 2223})

    registry.release([2222])
    registry.claim([2222])
    assert registry.allocate() not in registry.claimed()


def test_launch_and_terminate_is_idempotent(tmp_path: Path) -> None:
    registry = PortRegistry()
    serial_log = tmp_path / "case" / "serial.log"
    handle = launch(
        _config(port_forwards=(PortForward(40022, 22),)),
        timeout=60,
        command=["/bin/sh", "-c", "echo 'buildroot login: '; sleep 30"],
        serial_log=serial_log,
        grace_period=0.3,
        ports=registry,
    )
    try:
        assert handle.is_alive()
        assert handle.pid is not None
        assert registry.claimed() == frozenset({40022})
        assert _wait_for(lambda: "buildroot login:" in handle.console.text())
    finally:
        handle.terminate()

    assert handle.terminated
    assert not handle.is_alive()
    assert registry.claimed() == frozenset()
    handle.terminate()
    assert handle.terminated
    assert "buildroot login:" in serial_log.read_text(encoding="utf-8")


def test_launch_as_context_manager_after_process_exit() -> None:
    with launch(
        _config(),
        timeout=60,
        command=["/bin/sh", "-c", "sleep 0.5; echo done"],
        grace_period=0.1,
        ports=PortRegistry(),
    ) as handle:
        assert _wait_for(lambda: not handle.is_alive())
    assert handle.terminated
    assert "done" in handle.console.text()


def test_launch_reports_early_exit() -> None:
    registry = PortRegistry()
    with pytest.raises(ProcessStartError) as excinfo:
        launch(
            _config(port_forwards=(PortForward(40023, 22),)),
            timeout=60,
            command=["/bin/sh", "-c", "echo 'qemu: could not open kernel'; exit 1"],
            grace_period=3,
            ports=registry,
        )
    error = excinfo.value
    assert "failed to start" in error.message
    assert any(line.startswith("Command: /bin/sh -c") for line in error.evidence)
    assert registry.claimed() == frozenset()


def test_launch_reports_missing_executable(tmp_path: Path) -> None:
    registry = PortRegistry()
    with pytest.raises(ProcessStartError, match="failed to start"):
        launch(
            _config(port_forwards=(PortForward(40024, 22),)),
            timeout=60,
            command=[str(tmp_path / "qemu-system-none")],
            grace_period=0.1,
            ports=registry,
        )
    assert registry.claimed() == frozenset()


def test_launch_rejects_claimed_port() -> None:
    registry = PortRegistry()
    registry.claim([40025])
    with pytest.raises(PortInUseError):
        launch(
            _config(port_forwards=(PortForward(40025, 22),)),
            timeout=60,
            command=["/bin/sh", "-c", "sleep 30"],
            ports=registry,
        )


def test_watchdog_terminates_after_timeout() -> None:
    handle = launch(
        _config(),
        timeout=0.5,
        command=["/bin/sh", "-c", "sleep 30"],
        grace_period=0.1,
        ports=PortRegistry(),
    )
    try:
        assert _wait_for(lambda: handle.terminated, timeout=10)
        assert handle.timed_out
        assert not handle.is_alive()
    finally:
        handle.terminate()
