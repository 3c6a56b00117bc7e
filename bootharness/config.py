"""VM configuration, harness settings and input validation."""

from __future__ import annotations

import enum
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ConfigError
from .logging_utils import log_event

DEFAULT_TIMEOUT = 180
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_START_GRACE = 3.0
DEFAULT_SSH_TIMEOUT = 60
DEFAULT_MEMORY = "256M"

_MEMORY_PATTERN = re.compile(r"^[1-9][0-9]*[KMGT]?$")
_KERNEL_IMAGE_NAMES = {
    "x86_64": "bzImage",
    "aarch64": "Image",
}
_ROOTFS_IMAGE_NAMES = ("rootfs.ext2", "rootfs.ext3", "rootfs.ext4")


class Architecture(str, enum.Enum):
    """Guest architectures the harness knows how to boot."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"


class NetworkMode(str, enum.Enum):
    """Guest network attachment."""

    NONE = "none"
    USER = "user"
    BRIDGE = "bridge"


@dataclass(frozen=True)
class PortForward:
    """Host-to-guest forwarding rule for user-mode networking."""

    host_port: int
    guest_port: int
    protocol: str = "tcp"

    def to_hostfwd(self) -> str:
        """Return the rule in QEMU ``hostfwd`` syntax."""

        return f"{self.protocol}:127.0.0.1:{self.host_port}-:{self.guest_port}"


@dataclass(frozen=True)
class VMConfig:
    """Everything needed to start one emulator instance.

    Instances are immutable; per-case variants are derived with
    :func:`dataclasses.replace` before launch.
    """

    architecture: Architecture
    kernel: Path
    rootfs: Path
    memory: str = DEFAULT_MEMORY
    boot_args: str = ""
    network: NetworkMode = NetworkMode.USER
    port_forwards: Tuple[PortForward, ...] = field(default_factory=tuple)
    init_override: Optional[str] = None
    kvm: bool = False
    bridge: str = "br0"
    smp: int = 1


@dataclass(frozen=True)
class HarnessSettings:
    """Timing and sizing knobs shared by every case of a suite run."""

    timeout: int = DEFAULT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    start_grace: float = DEFAULT_START_GRACE
    ssh_timeout: int = DEFAULT_SSH_TIMEOUT
    memory: str = DEFAULT_MEMORY


def _read_number_env(
    env: Mapping[str, str], name: str, default: float, *, integer: bool = False
) -> float:
    """Return a positive number configured via environment variable.

    Values are validated so that misconfiguration surfaces as an explicit
    error rather than silently shortening or disabling a wait.
    """

    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value) if integer else float(value)
    except ValueError as exc:
        kind = "an integer" if integer else "a number"
        raise ConfigError(f"{name} must be {kind} value") from exc
    if parsed <= 0:
        raise ConfigError(f"{name} must be greater than zero")
    return parsed


def load_settings(env: Optional[Mapping[str, str]] = None) -> HarnessSettings:
    """Build :class:`HarnessSettings` from ``BOOTHARNESS_*`` variables."""

    source = os.environ if env is None else env
    memory = source.get("BOOTHARNESS_MEMORY", "").strip() or DEFAULT_MEMORY
    return HarnessSettings(
        timeout=int(_read_number_env(source, "BOOTHARNESS_TIMEOUT", DEFAULT_TIMEOUT, integer=True)),
        poll_interval=_read_number_env(source, "BOOTHARNESS_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        start_grace=_read_number_env(source, "BOOTHARNESS_START_GRACE", DEFAULT_START_GRACE),
        ssh_timeout=int(
            _read_number_env(source, "BOOTHARNESS_SSH_TIMEOUT", DEFAULT_SSH_TIMEOUT, integer=True)
        ),
        memory=validate_memory(memory),
    )


def unattended_default(env: Optional[Mapping[str, str]] = None) -> bool:
    """Return ``True`` when running under CI automation."""

    source = os.environ if env is None else env
    value = source.get("CI", "").strip().lower()
    return value not in {"", "0", "false", "no"}


def parse_architecture(value: str) -> Architecture:
    try:
        return Architecture(value)
    except ValueError as exc:
        supported = ", ".join(arch.value for arch in Architecture)
        raise ConfigError(
            f"Unsupported architecture: {value} (supported: {supported})"
        ) from exc


def parse_network_mode(value: str) -> NetworkMode:
    try:
        return NetworkMode(value)
    except ValueError as exc:
        supported = ", ".join(mode.value for mode in NetworkMode)
        raise ConfigError(
            f"Unsupported network mode: {value} (supported: {supported})"
        ) from exc


def validate_memory(value: str) -> str:
    """Return *value* when it is a QEMU memory size such as ``512M``."""

    if not _MEMORY_PATTERN.match(value):
        raise ConfigError(f"Invalid memory size: {value!r} (expected e.g. 256M or 1G)")
    return value


def require_executable(executable: str) -> str:
    """Return the resolved path of *executable* or raise :class:`ConfigError`."""

    path: Optional[str] = shutil.which(executable)
    if path is None:
        raise ConfigError(f"required executable '{executable}' is not available in PATH")
    return path


def kvm_available(device: Path = Path("/dev/kvm")) -> bool:
    """Return ``True`` when the KVM device can be opened for read/write."""

    return os.access(device, os.R_OK | os.W_OK)


def resolve_kvm(
    requested: bool,
    architecture: Architecture,
    *,
    device: Path = Path("/dev/kvm"),
) -> bool:
    """Return whether KVM acceleration can actually be used."""

    if not requested:
        return False
    if architecture is not Architecture.X86_64:
        log_event(
            "bootharness.config.kvm_disabled",
            architecture=architecture,
            reason="KVM acceleration is only supported for x86_64 guests",
        )
        return False
    if not kvm_available(device):
        log_event(
            "bootharness.config.kvm_disabled",
            architecture=architecture,
            reason=f"{device} is not accessible",
        )
        return False
    return True


def validate_config(config: VMConfig) -> VMConfig:
    """Check *config* before any VM is launched and return it unchanged."""

    if not isinstance(config.architecture, Architecture):
        raise ConfigError(f"Unsupported architecture: {config.architecture}")
    if not config.kernel.is_file():
        raise ConfigError(f"Kernel image not found: {config.kernel}")
    if not config.rootfs.is_file():
        raise ConfigError(f"Root filesystem not found: {config.rootfs}")
    validate_memory(config.memory)
    if config.smp < 1:
        raise ConfigError("smp must be at least 1")
    if config.port_forwards and config.network is not NetworkMode.USER:
        raise ConfigError(
            "port forwarding requires user-mode networking "
            f"(network mode is {config.network.value})"
        )
    if config.network is NetworkMode.BRIDGE and not config.bridge:
        raise ConfigError("bridge networking requires a bridge name")
    return config


def discover_images(build_dir: Path, architecture: Architecture) -> Tuple[Path, Path]:
    """Locate the kernel and root filesystem below ``<build_dir>/images``."""

    if not build_dir.is_dir():
        raise ConfigError(f"Build directory not found: {build_dir}")
    images_dir = build_dir / "images"
    if not images_dir.is_dir():
        raise ConfigError(f"Images directory not found: {images_dir}")

    kernel_name = _KERNEL_IMAGE_NAMES[architecture.value]
    kernels = sorted(path for path in images_dir.rglob(kernel_name) if path.is_file())
    if not kernels:
        raise ConfigError(f"Kernel image {kernel_name} not found in {images_dir}")

    rootfs: Optional[Path] = None
    for name in _ROOTFS_IMAGE_NAMES:
        candidates = sorted(path for path in images_dir.rglob(name) if path.is_file())
        if candidates:
            rootfs = candidates[0]
            break
    if rootfs is None:
        raise ConfigError(f"Root filesystem not found in {images_dir}")

    log_event(
        "bootharness.config.images_discovered",
        build_dir=build_dir,
        kernel=kernels[0],
        rootfs=rootfs,
    )
    return kernels[0], rootfs


__all__ = [
    "Architecture",
    "DEFAULT_MEMORY",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_SSH_TIMEOUT",
    "DEFAULT_START_GRACE",
    "DEFAULT_TIMEOUT",
    "HarnessSettings",
    "NetworkMode",
    "PortForward",
    "VMConfig",
    "discover_images",
    "kvm_available",
    "load_settings",
    "parse_architecture",
    "parse_network_mode",
    "require_executable",
    "resolve_kvm",
    "unattended_default",
    "validate_config",
    "validate_memory",
]
