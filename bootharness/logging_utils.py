"""JSON event log for boot-harness runs.

Events are off unless ``BOOTHARNESS_LOG_EVENTS`` is set to a truthy value.
When enabled each event is one JSON object per line on ``stderr``, keeping
``stdout`` free for the run summary. Setting ``BOOTHARNESS_LOG_FILE`` also
appends every event to that file, which is useful when several suite runs
share a CI job.
"""

from __future__ import annotations

import datetime as _dt
import enum
import json
import os
import sys
import threading
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

_FALSE_VALUES = {"", "0", "false", "no", "off"}

# The console reader thread and the orchestrator both emit events.
_write_lock = threading.Lock()


def _serialise(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return _serialise(value.value)
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, _dt.datetime):
        return value.isoformat()
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_serialise(item) for item in value)
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def events_enabled() -> bool:
    value = os.environ.get("BOOTHARNESS_LOG_EVENTS")
    if value is None:
        return False
    return value.strip().lower() not in _FALSE_VALUES


def log_event(event: str, **fields: Any) -> None:
    """Emit *event* with *fields* as one JSON line when events are enabled.

    Event names are dotted and start with ``bootharness.`` (for example
    ``bootharness.case.finished``). Every record carries a UTC timestamp and
    the harness pid so interleaved runs sharing a log file can be separated.
    Values that JSON cannot represent are written as their ``repr``.
    """

    if not events_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
        "pid": os.getpid(),
    }
    for key, value in fields.items():
        record[str(key)] = _serialise(value)
    message = json.dumps(record, sort_keys=True)

    with _write_lock:
        sys.stderr.write(message + "\n")
        sys.stderr.flush()
        _append_to_log_file(message)


def _log_file_path() -> Optional[Path]:
    value = os.environ.get("BOOTHARNESS_LOG_FILE")
    if value is None or not value.strip():
        return None
    return Path(value).expanduser()


def _append_to_log_file(message: str) -> None:
    log_file = _log_file_path()
    if log_file is None:
        return
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(message + "\n")
    except OSError as exc:
        sys.stderr.write(f"boot-harness: failed to write event log {log_file}: {exc}\n")
        sys.stderr.flush()


__all__ = ["events_enabled", "log_event"]
