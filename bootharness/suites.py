"""Static table of test cases and the suites built from them."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .errors import ConfigError
from .payload import (
    TestAction,
    network_action,
    package_management_action,
    performance_action,
    slugify,
    system_info_action,
)


class CaseKind(str, enum.Enum):
    BOOT = "boot"
    PAYLOAD = "payload"
    SSH = "ssh"


@dataclass(frozen=True)
class CaseDefinition:
    """One entry of the suite table.

    ``BOOT`` cases only wait for a boot marker, ``PAYLOAD`` cases inject
    ``action()`` and wait for its verdict, ``SSH`` cases probe a forwarded
    port from the host.
    """

    name: str
    kind: CaseKind
    action: Optional[Callable[[], TestAction]] = None

    @property
    def slug(self) -> str:
        return slugify(self.name)


BOOT_TEST = CaseDefinition("Boot Test", CaseKind.BOOT)
SYSTEM_INFO_TEST = CaseDefinition("SystemInfo Test", CaseKind.PAYLOAD, system_info_action)
NETWORK_TEST = CaseDefinition("Network Test", CaseKind.PAYLOAD, network_action)
SSH_TEST = CaseDefinition("SSH Test", CaseKind.SSH)
PACKAGE_MANAGEMENT_TEST = CaseDefinition(
    "Package Management Test", CaseKind.PAYLOAD, package_management_action
)
PERFORMANCE_TEST = CaseDefinition("Performance Test", CaseKind.PAYLOAD, performance_action)

_BASIC = (BOOT_TEST, SYSTEM_INFO_TEST)
_NETWORK = _BASIC + (NETWORK_TEST,)

SUITES: Dict[str, Tuple[CaseDefinition, ...]] = {
    "basic": _BASIC,
    "network": _NETWORK,
    "ssh": _NETWORK + (SSH_TEST,),
    "full": _NETWORK + (PACKAGE_MANAGEMENT_TEST, PERFORMANCE_TEST),
}


def suite_names() -> Tuple[str, ...]:
    return tuple(SUITES)


def cases_for(suite: str) -> Tuple[CaseDefinition, ...]:
    """Return the ordered cases of *suite* or raise :class:`ConfigError`."""

    try:
        return SUITES[suite]
    except KeyError as exc:
        raise ConfigError(
            f"Unknown test suite: {suite} (available: {', '.join(SUITES)})"
        ) from exc


__all__ = [
    "CaseDefinition",
    "CaseKind",
    "SUITES",
    "cases_for",
    "suite_names",
]
