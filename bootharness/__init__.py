"""QEMU boot and smoke-test harness for embedded Linux images."""

from __future__ import annotations

from importlib import resources
from importlib.metadata import PackageNotFoundError, version as pkg_version

__all__ = [
    "artifacts",
    "cli",
    "config",
    "console",
    "detection",
    "errors",
    "orchestrator",
    "payload",
    "results",
    "ssh",
    "suites",
    "supervisor",
]


def _discover_version() -> str:
    try:
        return pkg_version("boot-harness")
    except PackageNotFoundError:
        try:
            return resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return "unknown"


__version__ = _discover_version()
