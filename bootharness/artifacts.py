"""Per-case metadata files and the cross-run ledger."""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .results import TestCase, TestSuiteRun


@dataclass
class CaseTrace:
    """Wall-clock measurements and launch details captured for one case."""

    name: str
    qemu_command: Optional[List[str]] = None
    started_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
    boot_seconds: Optional[float] = None
    sentinel_seconds: Optional[float] = None
    total_seconds: Optional[float] = None

    def to_metadata(self) -> Dict[str, object]:
        timings: Dict[str, object] = {}
        if self.started_at:
            timings["start"] = self.started_at.isoformat()
        if self.completed_at:
            timings["end"] = self.completed_at.isoformat()
        if self.boot_seconds is not None:
            timings["boot_seconds"] = round(self.boot_seconds, 3)
        if self.sentinel_seconds is not None:
            timings["sentinel_seconds"] = round(self.sentinel_seconds, 3)
        if self.total_seconds is not None:
            timings["total_seconds"] = round(self.total_seconds, 3)
        return timings


def write_case_metadata(
    metadata_path: Path,
    *,
    trace: CaseTrace,
    case: "TestCase",
    harness_log: Path,
    serial_log: Path,
    qemu_version: Optional[str] = None,
) -> None:
    """Persist structured metadata describing one finished case."""

    metadata: Dict[str, object] = {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "case": case.to_dict(),
        "logs": {
            "harness": str(harness_log),
            "serial": str(serial_log),
        },
    }
    qemu: Dict[str, object] = {}
    if trace.qemu_command:
        qemu["command"] = list(trace.qemu_command)
    if qemu_version:
        qemu["version"] = qemu_version
    if qemu:
        metadata["qemu"] = qemu
    timings = trace.to_metadata()
    if timings:
        metadata["timings"] = timings
    metadata_path.parent.mkdir(parents=True, exist_ok=True)
    metadata_path.write_text(
        json.dumps(metadata, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def append_run_ledger_entry(
    ledger_path: Path,
    *,
    run: "TestSuiteRun",
    report_path: Optional[Path],
    harness_log: Optional[Path],
    qemu_version: Optional[str],
    invocation_args: List[str],
) -> None:
    """Append a JSON line summarising a suite run to the run ledger.

    Entries are additive and should not be rewritten, so boot stability can be
    reviewed across sessions without trawling through old log directories.
    """

    entry: Dict[str, object] = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "test_run": run.metadata.to_dict(),
        "overall_status": run.overall_status.value,
        "counts": {
            "total": run.total,
            "passed": run.passed,
            "failed": run.failed,
            "skipped": run.skipped,
        },
        "failed_tests": [case.name for case in run.cases if case.status.value == "failed"],
        "qemu_version": qemu_version,
        "args": invocation_args,
    }
    if report_path is not None:
        entry["report"] = str(report_path)
    if harness_log is not None:
        entry["harness_log"] = str(harness_log)

    ledger_path = ledger_path.resolve()
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    with ledger_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True) + "\n")


__all__ = [
    "CaseTrace",
    "append_run_ledger_entry",
    "write_case_metadata",
]
