"""Emulator process supervision: command construction, launch and teardown."""

from __future__ import annotations

import shlex
import socket
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

import pexpect

from .config import DEFAULT_START_GRACE, Architecture, NetworkMode, VMConfig
from .console import ConsoleLog, ConsoleReader
from .errors import PortInUseError, ProcessStartError
from .logging_utils import log_event


@dataclass(frozen=True)
class ArchitectureProfile:
    """Emulator details that differ between guest architectures."""

    executable: str
    console: str
    root_device: str
    machine_args: Tuple[str, ...]
    nic_device: str
    rng_device: str

    def disk_args(self, rootfs: Path) -> List[str]:
        if self.root_device == "/dev/sda":
            return ["-drive", f"file={rootfs},format=raw,if=ide,index=0"]
        return [
            "-drive",
            f"file={rootfs},format=raw,if=none,id=hd0",
            "-device",
            "virtio-blk-device,drive=hd0",
        ]


ARCHITECTURE_PROFILES: Dict[Architecture, ArchitectureProfile] = {
    Architecture.X86_64: ArchitectureProfile(
        executable="qemu-system-x86_64",
        console="ttyS0",
        root_device="/dev/sda",
        machine_args=(),
        nic_device="virtio-net-pci",
        rng_device="virtio-rng-pci",
    ),
    Architecture.AARCH64: ArchitectureProfile(
        executable="qemu-system-aarch64",
        console="ttyAMA0",
        root_device="/dev/vda",
        machine_args=("-machine", "virt", "-cpu", "cortex-a57"),
        nic_device="virtio-net-device",
        rng_device="virtio-rng-device",
    ),
}


def kernel_command_line(config: VMConfig) -> str:
    """Return the ``-append`` string for *config*."""

    profile = ARCHITECTURE_PROFILES[config.architecture]
    parts = [
        f"root={profile.root_device}",
        "rw",
        f"console={profile.console}",
        "panic=1",
    ]
    if config.init_override:
        parts.append(f"init={config.init_override}")
    if config.boot_args.strip():
        parts.append(config.boot_args.strip())
    return " ".join(parts)


def _network_args(config: VMConfig, profile: ArchitectureProfile) -> List[str]:
    if config.network is NetworkMode.NONE:
        return ["-nic", "none"]
    if config.network is NetworkMode.BRIDGE:
        netdev = f"bridge,id=net0,br={config.bridge}"
    else:
        netdev = "user,id=net0"
        for rule in config.port_forwards:
            netdev += f",hostfwd={rule.to_hostfwd()}"
    return ["-netdev", netdev, "-device", f"{profile.nic_device},netdev=net0"]


def build_qemu_command(config: VMConfig, *, executable: Optional[str] = None) -> List[str]:
    """Return the full emulator invocation for *config*."""

    profile = ARCHITECTURE_PROFILES[config.architecture]
    cmd = [executable or profile.executable]
    cmd.extend(profile.machine_args)
    if config.kvm:
        cmd.extend(["-enable-kvm", "-cpu", "host"])
    cmd.extend(
        [
            "-m",
            config.memory,
            "-smp",
            str(config.smp),
            "-kernel",
            str(config.kernel),
        ]
    )
    cmd.extend(profile.disk_args(config.rootfs))
    cmd.extend(
        [
            "-append",
            kernel_command_line(config),
            "-nographic",
            "-no-reboot",
        ]
    )
    cmd.extend(_network_args(config, profile))
    cmd.extend(["-device", profile.rng_device])
    return cmd


def probe_qemu_version(executable: str) -> Optional[str]:
    """Return the first line of ``qemu --version`` output when available."""

    try:
        result = subprocess.run(
            [executable, "--version"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (subprocess.CalledProcessError, OSError):
        return None
    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    if not output:
        return None
    return output.splitlines()[0]


class PortRegistry:
    """Track forwarded host ports held by live VM handles."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: Set[int] = set()

    def allocate(self, *, attempts: int = 32) -> int:
        """Return a free loopback TCP port that no live handle has claimed."""

        for _ in range(attempts):
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind(("127.0.0.1", 0))
                port = sock.getsockname()[1]
            with self._lock:
                if port not in self._claimed:
                    return port
        raise PortInUseError("unable to find an unclaimed host port")

    def claim(self, ports: Sequence[int]) -> None:
        with self._lock:
            busy = sorted(port for port in ports if port in self._claimed)
            if busy:
                raise PortInUseError(
                    "host port(s) already claimed by a running VM: "
                    + ", ".join(str(port) for port in busy)
                )
            self._claimed.update(ports)

    def release(self, ports: Sequence[int]) -> None:
        with self._lock:
            self._claimed.difference_update(ports)

    def claimed(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._claimed)


DEFAULT_PORT_REGISTRY = PortRegistry()


class VMHandle:
    """Live reference to one emulator process and its console log.

    ``terminate()`` is idempotent and thread-safe: the watchdog timer, an
    operator cancellation and the case's own cleanup may all call it.
    """

    def __init__(
        self,
        child: "pexpect.spawn",
        *,
        command: Sequence[str],
        console: ConsoleLog,
        reader: ConsoleReader,
        ports: PortRegistry,
        claimed_ports: Sequence[int] = (),
        serial_handle: Optional[IO[str]] = None,
    ) -> None:
        self.child = child
        self.command: Tuple[str, ...] = tuple(command)
        self.console = console
        self._reader = reader
        self._ports = ports
        self._claimed_ports = tuple(claimed_ports)
        self._serial_handle = serial_handle
        self._terminate_lock = threading.Lock()
        self._terminating = threading.Event()
        self._terminated = threading.Event()
        self._watchdog: Optional[threading.Timer] = None
        self.timed_out = False

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.child, "pid", None)

    @property
    def exit_status(self) -> Optional[int]:
        return getattr(self.child, "exitstatus", None)

    @property
    def signal_status(self) -> Optional[int]:
        return getattr(self.child, "signalstatus", None)

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    def is_alive(self) -> bool:
        """Return ``False`` once the process exited or teardown began."""

        if self._terminating.is_set():
            return False
        return not self._reader.finished.is_set()

    def start_watchdog(self, timeout: float) -> None:
        """Force termination once *timeout* seconds of wall-clock time pass."""

        timer = threading.Timer(timeout, self._expire)
        timer.daemon = True
        self._watchdog = timer
        timer.start()

    def _expire(self) -> None:
        if self._terminating.is_set():
            return
        self.timed_out = True
        log_event("bootharness.vm.watchdog_expired", pid=self.pid, command=self.command)
        self.terminate()

    def describe_exit(self) -> str:
        exit_status = self.exit_status
        signal_status = self.signal_status
        return (
            f"exit status {exit_status if exit_status is not None else 'unknown'}, "
            f"signal {signal_status if signal_status is not None else 'none'}"
        )

    def terminate(self) -> None:
        """Stop the reader, kill the emulator and release held resources."""

        with self._terminate_lock:
            if self._terminated.is_set():
                return
            self._terminating.set()
            try:
                if self._watchdog is not None:
                    self._watchdog.cancel()
                if not self._reader.stop():
                    log_event("bootharness.vm.reader_stop_timeout", pid=self.pid)
                try:
                    if self.child.isalive():
                        self.child.terminate(force=True)
                except pexpect.ExceptionPexpect as exc:
                    log_event("bootharness.vm.kill_failed", pid=self.pid, error=repr(exc))
                finally:
                    try:
                        self.child.close(force=True)
                    except (pexpect.ExceptionPexpect, OSError) as exc:
                        log_event(
                            "bootharness.vm.close_failed", pid=self.pid, error=repr(exc)
                        )
            finally:
                if self._claimed_ports:
                    self._ports.release(self._claimed_ports)
                if self._serial_handle is not None:
                    self._serial_handle.close()
                self._terminated.set()
                log_event(
                    "bootharness.vm.terminated",
                    pid=self.pid,
                    exit_status=self.exit_status,
                    signal_status=self.signal_status,
                    released_ports=list(self._claimed_ports),
                )

    def __enter__(self) -> "VMHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.terminate()


def launch(
    config: VMConfig,
    timeout: float,
    *,
    command: Optional[Sequence[str]] = None,
    serial_log: Optional[Path] = None,
    grace_period: float = DEFAULT_START_GRACE,
    ports: PortRegistry = DEFAULT_PORT_REGISTRY,
    spawn: Callable[..., "pexpect.spawn"] = pexpect.spawn,
) -> VMHandle:
    """Start the emulator for *config* and return a live :class:`VMHandle`.

    Returns once the process survived *grace_period* seconds. The handle's
    watchdog terminates the process when *timeout* elapses, whatever the
    caller is doing at that moment.
    """

    cmd = list(command) if command is not None else build_qemu_command(config)
    host_ports = [rule.host_port for rule in config.port_forwards]
    ports.claim(host_ports)

    serial_handle: Optional[IO[str]] = None
    try:
        if serial_log is not None:
            serial_log.parent.mkdir(parents=True, exist_ok=True)
            serial_handle = serial_log.open("w", encoding="utf-8")
        log_event("bootharness.vm.spawn", command=cmd, timeout=timeout)
        child = spawn(
            cmd[0],
            cmd[1:],
            encoding="utf-8",
            codec_errors="ignore",
            timeout=None,
            echo=False,
        )
    except (pexpect.ExceptionPexpect, OSError) as exc:
        ports.release(host_ports)
        if serial_handle is not None:
            serial_handle.close()
        raise ProcessStartError(
            f"Emulator process failed to start: {exc}",
            evidence=[f"Command: {shlex.join(cmd)}"],
        ) from exc

    if serial_handle is not None:
        child.logfile_read = serial_handle

    console = ConsoleLog()
    reader = ConsoleReader(child, console)
    handle = VMHandle(
        child,
        command=cmd,
        console=console,
        reader=reader,
        ports=ports,
        claimed_ports=host_ports,
        serial_handle=serial_handle,
    )
    reader.start()
    handle.start_watchdog(timeout)

    if reader.finished.wait(grace_period):
        handle.terminate()
        evidence = [f"Command: {shlex.join(cmd)}", *console.tail()]
        raise ProcessStartError(
            f"Emulator process failed to start ({handle.describe_exit()})",
            evidence=evidence,
        )

    log_event("bootharness.vm.started", pid=handle.pid, command=cmd)
    return handle


__all__ = [
    "ARCHITECTURE_PROFILES",
    "ArchitectureProfile",
    "DEFAULT_PORT_REGISTRY",
    "PortRegistry",
    "VMHandle",
    "build_qemu_command",
    "kernel_command_line",
    "launch",
    "probe_qemu_version",
]
