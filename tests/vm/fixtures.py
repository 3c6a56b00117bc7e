"""Fixtures for QEMU-backed integration tests.

These tests boot real guest images and therefore skip unless the images and
the emulator are available on the host::

    BOOTHARNESS_TEST_KERNEL=output/images/bzImage \
    BOOTHARNESS_TEST_ROOTFS=output/images/rootfs.ext2 \
    pytest tests/vm
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest

from bootharness.config import Architecture, VMConfig, parse_architecture, resolve_kvm
from bootharness.supervisor import ARCHITECTURE_PROFILES, probe_qemu_version


@dataclass(frozen=True)
class GuestImages:
    config: VMConfig
    qemu: str
    qemu_version: Optional[str]


def _require_executable(executable: str) -> str:
    """Ensure an executable exists in ``PATH`` or skip the invoking test."""

    path: Optional[str] = shutil.which(executable)
    if path is None:
        pytest.skip(f"required executable '{executable}' is not available in PATH")
    return path


def _require_image(variable: str) -> Path:
    value = os.environ.get(variable, "").strip()
    if not value:
        pytest.skip(f"{variable} is not set")
    path = Path(value)
    if not path.is_file():
        pytest.skip(f"{variable} points at a missing file: {path}")
    return path


@pytest.fixture(scope="session")
def guest_images() -> GuestImages:
    architecture = parse_architecture(
        os.environ.get("BOOTHARNESS_TEST_ARCH", Architecture.X86_64.value)
    )
    kernel = _require_image("BOOTHARNESS_TEST_KERNEL")
    rootfs = _require_image("BOOTHARNESS_TEST_ROOTFS")
    qemu = _require_executable(ARCHITECTURE_PROFILES[architecture].executable)
    config = VMConfig(
        architecture=architecture,
        kernel=kernel,
        rootfs=rootfs,
        kvm=resolve_kvm(True, architecture),
    )
    return GuestImages(config=config, qemu=qemu, qemu_version=probe_qemu_version(qemu))


@pytest.fixture(scope="session")
def debugfs_executable() -> str:
    return _require_executable("debugfs")


@pytest.fixture
def vm_log_dir(request: pytest.FixtureRequest, tmp_path: Path) -> Path:
    if request.config.getoption("--keep-vm-logs"):
        log_dir = Path("vm-logs") / request.node.name
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
    return tmp_path / "logs"
