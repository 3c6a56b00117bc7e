"""Per-case outcomes, the aggregated suite run and its JSON report."""

from __future__ import annotations

import datetime
import enum
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Set, Tuple

from .logging_utils import log_event

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def format_timestamp(value: datetime.datetime) -> str:
    """Return *value* as a second-precision UTC ISO-8601 string."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).strftime(TIMESTAMP_FORMAT)


class TestStatus(str, enum.Enum):
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OverallStatus(str, enum.Enum):
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TestCase:
    """Outcome of one attempted case; created once, never mutated."""

    __test__ = False

    name: str
    status: TestStatus
    details: str = ""
    timestamp: datetime.datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "status": self.status.value,
            "details": self.details,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class RunMetadata:
    """Identifying information for one suite invocation."""

    architecture: str
    test_suite: str
    timeout: int
    kernel: Path
    rootfs: Path
    timestamp: datetime.datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "architecture": self.architecture,
            "test_suite": self.test_suite,
            "timeout": int(self.timeout),
            "kernel": str(self.kernel),
            "rootfs": str(self.rootfs),
        }


@dataclass(frozen=True)
class TestSuiteRun:
    """Finalized suite run.

    Counts and the overall status are derived from ``cases`` on every access,
    so they always agree with the recorded sequence.
    """

    __test__ = False

    metadata: RunMetadata
    cases: Tuple[TestCase, ...] = ()
    cancelled: bool = False

    def _count(self, status: TestStatus) -> int:
        return sum(1 for case in self.cases if case.status is status)

    @property
    def passed(self) -> int:
        return self._count(TestStatus.PASSED)

    @property
    def failed(self) -> int:
        return self._count(TestStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(TestStatus.SKIPPED)

    @property
    def total(self) -> int:
        return len(self.cases)

    @property
    def overall_status(self) -> OverallStatus:
        if self.cancelled:
            return OverallStatus.CANCELLED
        if self.failed > 0:
            return OverallStatus.FAILED
        return OverallStatus.PASSED

    @property
    def exit_code(self) -> int:
        status = self.overall_status
        if status is OverallStatus.PASSED:
            return EXIT_PASSED
        if status is OverallStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILED

    def to_report(self) -> Dict[str, object]:
        return {
            "test_run": self.metadata.to_dict(),
            "results": {
                "overall_status": self.overall_status.value,
                "total_tests": self.total,
                "passed": self.passed,
                "failed": self.failed,
                "skipped": self.skipped,
                "tests": [case.to_dict() for case in self.cases],
            },
        }


class ResultAggregator:
    """Collect case outcomes in execution order and finalize the run."""

    def __init__(self, metadata: RunMetadata) -> None:
        self.metadata = metadata
        self._cases: List[TestCase] = []
        self._names: Set[str] = set()
        self._cancelled = False

    @property
    def cases(self) -> Tuple[TestCase, ...]:
        return tuple(self._cases)

    def record(self, case: TestCase) -> None:
        if case.name in self._names:
            raise ValueError(f"test case {case.name!r} was already recorded")
        self._names.add(case.name)
        self._cases.append(case)
        log_event(
            "bootharness.results.recorded",
            name=case.name,
            status=case.status,
            details=case.details,
        )

    def mark_cancelled(self) -> None:
        self._cancelled = True

    def finalize(self) -> TestSuiteRun:
        run = TestSuiteRun(
            metadata=self.metadata,
            cases=tuple(self._cases),
            cancelled=self._cancelled,
        )
        log_event(
            "bootharness.results.finalized",
            suite=self.metadata.test_suite,
            overall_status=run.overall_status,
            total=run.total,
            passed=run.passed,
            failed=run.failed,
            skipped=run.skipped,
        )
        return run


def render_summary(run: TestSuiteRun) -> str:
    """Return the human-readable summary printed at the end of a run."""

    metadata = run.metadata
    lines = [
        "==========================================",
        "QEMU Test Results Summary",
        "==========================================",
        f"Architecture: {metadata.architecture}",
        f"Test Suite: {metadata.test_suite}",
        f"Kernel: {metadata.kernel}",
        f"Rootfs: {metadata.rootfs}",
        "",
        "Results:",
        f"  Passed: {run.passed}",
        f"  Failed: {run.failed}",
        f"  Skipped: {run.skipped}",
        f"  Total: {run.total}",
        f"  Overall: {run.overall_status.value}",
    ]
    if run.cases:
        lines.append("")
        lines.append("Test Details:")
        for case in run.cases:
            first_line = case.details.splitlines()[0] if case.details else ""
            lines.append(f"  - {case.name}: {case.status.value} ({first_line})")
    return "\n".join(lines)


def write_report(run: TestSuiteRun, path: Path) -> Path:
    """Serialize *run* to *path* as indented JSON and return the path."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(run.to_report(), indent=2) + "\n", encoding="utf-8")
    log_event("bootharness.results.report_written", path=path)
    return path


__all__ = [
    "EXIT_CANCELLED",
    "EXIT_CONFIG_ERROR",
    "EXIT_FAILED",
    "EXIT_PASSED",
    "OverallStatus",
    "ResultAggregator",
    "RunMetadata",
    "TestCase",
    "TestStatus",
    "TestSuiteRun",
    "format_timestamp",
    "render_summary",
    "utc_now",
    "write_report",
]
