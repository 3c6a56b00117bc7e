"""Incremental capture of the emulator's serial console."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple, Union

import pexpect

from .logging_utils import log_event

ANSI_ESCAPE_PATTERN = re.compile(
    r"""
    \x1B(
        \[[0-?]*[ -/]*[@-~]      # CSI sequences, including bracketed paste toggles
        |\][^\x07]*(?:\x07|\x1b\\)  # OSC sequences for terminal title updates
        |P[^\x07\x1b]*(?:\x07|\x1b\\)  # DCS sequences
        |[@-Z\\-_]                 # 2-character sequences (e.g. ESCc)
        |_[^\x07]*(?:\x07|\x1b\\)    # APC sequences
        |\^[^\x07]*(?:\x07|\x1b\\)   # PM sequences
    )
    """,
    re.VERBOSE,
)

PatternLike = Union[str, Pattern[str]]


def normalise_console_text(text: str) -> str:
    """Strip terminal escapes and carriage returns from serial output."""

    return ANSI_ESCAPE_PATTERN.sub("", text).replace("\r", "")


# Trailing escape sequence cut off by the end of a read.
_PARTIAL_ESCAPE_PATTERN = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|[\]P_^][^\x07\x1b]*\x1b?)?\Z")


def split_partial_escape(text: str, limit: int = 256) -> Tuple[str, str]:
    """Split *text* before a trailing escape sequence that is still incomplete.

    Returns ``(ready, pending)``; *pending* is prepended to the next chunk.
    Only the last *limit* characters are considered, so a stray escape never
    holds back output indefinitely.
    """

    found = _PARTIAL_ESCAPE_PATTERN.search(text, max(0, len(text) - limit))
    if found is None:
        return text, ""
    return text[: found.start()], text[found.start():]


def compile_patterns(patterns: Iterable[PatternLike]) -> List[Pattern[str]]:
    """Compile *patterns* as case-sensitive, multi-line regular expressions."""

    compiled: List[Pattern[str]] = []
    for pattern in patterns:
        if isinstance(pattern, str):
            compiled.append(re.compile(pattern, re.MULTILINE))
        else:
            compiled.append(pattern)
    return compiled


@dataclass(frozen=True)
class ConsoleMatch:
    """Location of a pattern match inside a :class:`ConsoleLog`."""

    pattern: str
    text: str
    line: str
    start: int
    end: int


def find_first(
    snapshot: str, patterns: Sequence[PatternLike], start: int = 0
) -> Optional[ConsoleMatch]:
    """Return the earliest match of any pattern in *snapshot* from *start*."""

    best: Optional[ConsoleMatch] = None
    for pattern in compile_patterns(patterns):
        found = pattern.search(snapshot, start)
        if found is None:
            continue
        if best is not None and found.start() >= best.start:
            continue
        line_start = snapshot.rfind("\n", 0, found.start()) + 1
        line_end = snapshot.find("\n", found.end())
        if line_end == -1:
            line_end = len(snapshot)
        best = ConsoleMatch(
            pattern=pattern.pattern,
            text=found.group(0),
            line=snapshot[line_start:line_end].strip(),
            start=found.start(),
            end=found.end(),
        )
    return best


def resume_offset(snapshot: str, start: int = 0) -> int:
    """Return the offset of the first incomplete line at or after *start*.

    Poll loops rescan from here so a marker split across two reads is still
    matched once its line completes.
    """

    last_newline = snapshot.rfind("\n", start)
    if last_newline == -1:
        return start
    return last_newline + 1


class ConsoleLog:
    """Append-only console transcript for a single VM run.

    Only the reader appends; every other component reads. Reads return
    snapshots, so callers never observe a partially-appended chunk.
    """

    def __init__(self, initial: str = "") -> None:
        self._lock = threading.Lock()
        self._chunks: List[str] = [initial] if initial else []
        self._length = len(initial)
        self._joined: Optional[str] = initial
        self._closed = threading.Event()

    def append(self, text: str) -> None:
        if not text:
            return
        if self._closed.is_set():
            raise ValueError("cannot append to a closed console log")
        with self._lock:
            self._chunks.append(text)
            self._length += len(text)
            self._joined = None

    def text(self, start: int = 0) -> str:
        with self._lock:
            if self._joined is None:
                self._joined = "".join(self._chunks)
                self._chunks = [self._joined]
            snapshot = self._joined
        return snapshot[start:] if start else snapshot

    def __len__(self) -> int:
        with self._lock:
            return self._length

    def close(self) -> None:
        """Mark the log complete; no further output will arrive."""

        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    def search(
        self, patterns: Sequence[PatternLike], start: int = 0
    ) -> Optional[ConsoleMatch]:
        """Return the earliest match of any pattern at or after *start*."""

        return find_first(self.text(), patterns, start)

    def tail(self, lines: int = 20) -> List[str]:
        """Return the last *lines* non-empty lines of output."""

        entries = [line.rstrip() for line in self.text().splitlines() if line.strip()]
        return entries[-lines:]


class ConsoleReader:
    """Pump a pexpect child's output into a :class:`ConsoleLog` on a thread.

    The reader is the only component that touches the child while it runs.
    ``stop()`` returns within one poll interval without waiting for
    end-of-stream, so termination never blocks on a silent guest.
    """

    def __init__(
        self,
        child: "pexpect.spawn",
        log: ConsoleLog,
        *,
        poll_interval: float = 0.1,
        chunk_size: int = 4096,
        name: str = "console-reader",
    ) -> None:
        self._child = child
        self._log = log
        self._poll_interval = poll_interval
        self._chunk_size = chunk_size
        self._stop = threading.Event()
        self.finished = threading.Event()
        self.error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Ask the reader to exit and wait for it; return ``True`` once stopped."""

        self._stop.set()
        if not self._thread.is_alive():
            return True
        wait = timeout if timeout is not None else self._poll_interval * 10 + 1.0
        self._thread.join(wait)
        return not self._thread.is_alive()

    def _run(self) -> None:
        pending = ""
        try:
            while not self._stop.is_set():
                try:
                    data = self._child.read_nonblocking(
                        self._chunk_size, timeout=self._poll_interval
                    )
                except pexpect.TIMEOUT:
                    if not self._child.isalive():
                        break
                    continue
                except pexpect.EOF:
                    break
                ready, pending = split_partial_escape(pending + data)
                self._log.append(normalise_console_text(ready))
        except (pexpect.ExceptionPexpect, OSError, ValueError) as exc:
            self.error = exc
            log_event("bootharness.console.reader_failed", error=repr(exc))
        finally:
            if pending:
                self._log.append(normalise_console_text(pending))
            self._log.close()
            self.finished.set()


__all__ = [
    "ANSI_ESCAPE_PATTERN",
    "ConsoleLog",
    "ConsoleMatch",
    "ConsoleReader",
    "PatternLike",
    "compile_patterns",
    "find_first",
    "normalise_console_text",
    "resume_offset",
    "split_partial_escape",
]
