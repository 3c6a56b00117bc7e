"""Exception taxonomy for the boot harness."""

from __future__ import annotations

from typing import Optional, Sequence


class HarnessError(Exception):
    """Base class for harness failures that carry console evidence."""

    def __init__(self, message: str, *, evidence: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.evidence = list(evidence or [])

    def describe(self) -> str:
        """Return the message followed by any captured console lines."""

        if not self.evidence:
            return self.message
        return "\n".join([self.message, *self.evidence])


class ConfigError(HarnessError):
    """Invalid inputs detected before any VM is launched."""


class ProcessStartError(HarnessError):
    """The emulator could not be spawned or exited during start-up."""


class BootTimeout(HarnessError):
    """No boot marker appeared before the deadline."""


class ProcessDied(HarnessError):
    """The emulator exited before a boot marker appeared."""


class SentinelNotFound(HarnessError):
    """The guest booted but never printed a result sentinel."""


class PayloadInjectionError(HarnessError):
    """The test payload could not be written into the root filesystem."""


class PortInUseError(HarnessError):
    """A forwarded host port is already claimed by a live VM handle."""


class RunCancelled(HarnessError):
    """The suite run was interrupted by the operator."""


__all__ = [
    "BootTimeout",
    "ConfigError",
    "HarnessError",
    "PayloadInjectionError",
    "PortInUseError",
    "ProcessDied",
    "ProcessStartError",
    "RunCancelled",
    "SentinelNotFound",
]
