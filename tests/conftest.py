from pathlib import Path
import sys
import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--keep-vm-logs",
        action="store_true",
        help="Write VM test serial logs and metadata under ./vm-logs instead of tmp_path.",
    )


@pytest.fixture(autouse=True)
def _isolate_harness_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host CI and BOOTHARNESS_* settings from leaking into unit tests."""

    for name in (
        "CI",
        "BOOTHARNESS_LOG_EVENTS",
        "BOOTHARNESS_LOG_FILE",
        "BOOTHARNESS_TIMEOUT",
        "BOOTHARNESS_POLL_INTERVAL",
        "BOOTHARNESS_START_GRACE",
        "BOOTHARNESS_SSH_TIMEOUT",
        "BOOTHARNESS_MEMORY",
    ):
        monkeypatch.delenv(name, raising=False)


# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
