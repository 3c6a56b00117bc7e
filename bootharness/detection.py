"""Boot and result-sentinel detection over a console log."""

from __future__ import annotations

import enum
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Pattern, Sequence, Tuple

from .config import DEFAULT_POLL_INTERVAL
from .console import (
    ConsoleLog,
    ConsoleMatch,
    PatternLike,
    compile_patterns,
    find_first,
    resume_offset,
)
from .errors import RunCancelled, SentinelNotFound
from .logging_utils import log_event

DEFAULT_BOOT_MARKERS: Sequence[str] = ("login:", "root@", "Hello World")
INIT_BANNER_TEMPLATE = "BOOT-HARNESS: running {test_name}"

# Time allowed for the reader to drain buffered output after the emulator exits.
DRAIN_TIMEOUT = 2.0


class BootOutcome(str, enum.Enum):
    BOOTED = "booted"
    TIMED_OUT = "timed_out"
    PROCESS_DIED = "process_died"


@dataclass(frozen=True)
class BootDetection:
    """Classification of one boot attempt."""

    outcome: BootOutcome
    elapsed: float
    match: Optional[ConsoleMatch] = None

    @property
    def booted(self) -> bool:
        return self.outcome is BootOutcome.BOOTED


@dataclass(frozen=True)
class SentinelResult:
    """A ``<TestName> Test: <VERDICT>`` line observed on the console."""

    test_name: str
    verdict: str
    line: str
    elapsed: float

    @property
    def reason(self) -> str:
        """Return the free text following ``VERDICT - `` when present."""

        _, separator, remainder = self.line.partition(f"Test: {self.verdict}")
        if not separator:
            return ""
        return remainder.strip().lstrip("-").strip()


def init_banner(test_name: str) -> str:
    return INIT_BANNER_TEMPLATE.format(test_name=test_name)


def sentinel_pattern(test_name: str) -> Pattern[str]:
    """Return the regex matching any verdict line for *test_name*."""

    return re.compile(rf"\b{re.escape(test_name)} Test: (PASSED|FAILED|SKIPPED)\b[^\n]*")


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled("run cancelled by operator")


def _pause(seconds: float, cancel_event: Optional[threading.Event]) -> None:
    if seconds <= 0:
        return
    if cancel_event is not None:
        cancel_event.wait(seconds)
    else:
        time.sleep(seconds)


def _scannable(snapshot: str, offset: int, complete_lines: bool) -> str:
    if not complete_lines:
        return snapshot
    return snapshot[: resume_offset(snapshot, offset)]


def _poll(
    log: ConsoleLog,
    patterns: Sequence[PatternLike],
    timeout: float,
    *,
    is_alive: Callable[[], bool],
    interval: float,
    cancel_event: Optional[threading.Event],
    clock: Callable[[], float],
    complete_lines: bool = False,
) -> Tuple[Optional[ConsoleMatch], BootOutcome, float]:
    """Poll *log* until a pattern matches, the process dies, or time runs out.

    With *complete_lines* the trailing partial line is only scanned once the
    log is closed, so a match never captures a line that is still arriving.

    Returns ``(match, outcome, elapsed)``.
    """

    compiled = compile_patterns(patterns)
    started = clock()
    deadline = started + timeout
    offset = 0
    while True:
        _check_cancel(cancel_event)
        snapshot = log.text()
        found = find_first(_scannable(snapshot, offset, complete_lines), compiled, offset)
        if found is not None:
            return found, BootOutcome.BOOTED, clock() - started
        offset = resume_offset(snapshot, offset)
        if not is_alive():
            closed = log.wait_closed(DRAIN_TIMEOUT)
            final = _scannable(log.text(), offset, complete_lines and not closed)
            found = find_first(final, compiled, offset)
            if found is not None:
                return found, BootOutcome.BOOTED, clock() - started
            return None, BootOutcome.PROCESS_DIED, clock() - started
        remaining = deadline - clock()
        if remaining <= 0:
            return None, BootOutcome.TIMED_OUT, clock() - started
        _pause(min(interval, remaining), cancel_event)


def detect_boot(
    log: ConsoleLog,
    timeout: float,
    *,
    patterns: Sequence[PatternLike] = DEFAULT_BOOT_MARKERS,
    is_alive: Callable[[], bool] = lambda: True,
    interval: float = DEFAULT_POLL_INTERVAL,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
) -> BootDetection:
    """Classify a boot attempt as booted, timed out, or process died.

    Matching is case-sensitive and substring/regex based. A guest that stays
    alive but stops producing output is reported as timed out.
    """

    match, outcome, elapsed = _poll(
        log,
        patterns,
        timeout,
        is_alive=is_alive,
        interval=interval,
        cancel_event=cancel_event,
        clock=clock,
    )
    log_event(
        "bootharness.detect.boot",
        outcome=outcome,
        elapsed=round(elapsed, 3),
        matched=match.line if match else None,
    )
    return BootDetection(outcome=outcome, elapsed=elapsed, match=match)


def wait_for_sentinel(
    log: ConsoleLog,
    test_name: str,
    timeout: float,
    *,
    is_alive: Callable[[], bool] = lambda: True,
    interval: float = DEFAULT_POLL_INTERVAL,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    tail_lines: int = 20,
) -> SentinelResult:
    """Return the first verdict line printed for *test_name*.

    Raises :class:`SentinelNotFound` when the budget runs out or the guest
    exits without printing one.
    """

    pattern = sentinel_pattern(test_name)
    match, outcome, elapsed = _poll(
        log,
        [pattern],
        timeout,
        is_alive=is_alive,
        interval=interval,
        cancel_event=cancel_event,
        clock=clock,
        complete_lines=True,
    )
    if match is None:
        if outcome is BootOutcome.PROCESS_DIED:
            message = "no result sentinel observed before the guest exited"
        else:
            message = f"no result sentinel observed within {timeout:g}s"
        log_event("bootharness.detect.sentinel_missing", test=test_name, reason=message)
        raise SentinelNotFound(message, evidence=log.tail(tail_lines))

    verdict_match = pattern.search(match.text)
    verdict = verdict_match.group(1) if verdict_match else "FAILED"
    log_event(
        "bootharness.detect.sentinel",
        test=test_name,
        verdict=verdict,
        line=match.line,
    )
    return SentinelResult(
        test_name=test_name,
        verdict=verdict,
        line=match.line,
        elapsed=elapsed,
    )


__all__ = [
    "BootDetection",
    "BootOutcome",
    "DEFAULT_BOOT_MARKERS",
    "INIT_BANNER_TEMPLATE",
    "SentinelResult",
    "detect_boot",
    "init_banner",
    "sentinel_pattern",
    "wait_for_sentinel",
]
