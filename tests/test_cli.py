"""Tests for CLI entry point."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest

from bootharness import cli
from bootharness.results import ResultAggregator, RunMetadata, TestCase, TestStatus


@pytest.fixture
def images(tmp_path: Path):
    build_dir = tmp_path / "output"
    images_dir = build_dir / "images"
    images_dir.mkdir(parents=True)
    (images_dir / "bzImage").write_bytes(b"kernel")
    (images_dir / "rootfs.ext2").write_bytes(b"rootfs")
    return build_dir


@pytest.fixture
def fake_orchestrator(monkeypatch):
    created: List[object] = []

    class FakeOrchestrator:
        statuses = [TestStatus.PASSED, TestStatus.PASSED]

        def __init__(self, settings, **kwargs) -> None:
            self.settings = settings
            self.kwargs = kwargs
            self.harness_log_path = None
            self.calls = []
            created.append(self)

        def run(self, suite, config):
            self.calls.append((suite, config))
            aggregator = ResultAggregator(
                RunMetadata(
                    architecture=config.architecture.value,
                    test_suite=suite,
                    timeout=self.settings.timeout,
                    kernel=config.kernel,
                    rootfs=config.rootfs,
                )
            )
            names = ["Boot Test", "SystemInfo Test"]
            for name, status in zip(names, self.statuses):
                aggregator.record(TestCase(name, status, f"{name}: {status.value}"))
            return aggregator.finalize()

    monkeypatch.setattr(cli, "Orchestrator", FakeOrchestrator)
    monkeypatch.setattr(cli, "require_executable", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(cli, "probe_qemu_version", lambda executable: "QEMU emulator version 8.2.0")
    FakeOrchestrator.created = created
    return FakeOrchestrator


def test_cli_runs_suite_from_build_dir(images, fake_orchestrator, capsys) -> None:
    exit_code = cli.main([str(images), "--timeout", "90"])

    assert exit_code == 0
    report = json.loads((images / "test-results.json").read_text(encoding="utf-8"))
    assert report["test_run"]["timeout"] == 90
    assert report["test_run"]["kernel"] == str(images / "images" / "bzImage")
    assert report["results"]["overall_status"] == "passed"
    out = capsys.readouterr().out
    assert "QEMU Test Results Summary" in out
    assert "Report written to" in out

    (orchestrator,) = fake_orchestrator.created
    suite, config = orchestrator.calls[0]
    assert suite == "basic"
    assert config.memory == "256M"
    assert orchestrator.kwargs["unattended"] is False
    assert orchestrator.kwargs["qemu_version"] == "QEMU emulator version 8.2.0"


def test_cli_explicit_images_and_output(tmp_path, images, fake_orchestrator, monkeypatch) -> None:
    monkeypatch.setenv("CI", "true")
    output = tmp_path / "reports" / "run.json"

    exit_code = cli.main(
        [
            "--kernel",
            str(images / "images" / "bzImage"),
            "--rootfs",
            str(images / "images" / "rootfs.ext2"),
            "--suite",
            "ssh",
            "--memory",
            "1G",
            "--network",
            "none",
            "--output",
            str(output),
        ]
    )

    assert exit_code == 0
    assert output.exists()
    (orchestrator,) = fake_orchestrator.created
    _, config = orchestrator.calls[0]
    assert config.memory == "1G"
    assert config.network.value == "none"
    assert orchestrator.kwargs["unattended"] is True


def test_cli_failed_run_exit_code(images, fake_orchestrator) -> None:
    fake_orchestrator.statuses = [TestStatus.PASSED, TestStatus.FAILED]

    assert cli.main([str(images)]) == 1


def test_cli_appends_ledger(tmp_path, images, fake_orchestrator) -> None:
    ledger = tmp_path / "ledger.jsonl"

    cli.main([str(images), "--ledger", str(ledger)])

    entry = json.loads(ledger.read_text(encoding="utf-8").splitlines()[0])
    assert entry["overall_status"] == "passed"
    assert entry["args"] == [str(images), "--ledger", str(ledger)]


@pytest.mark.parametrize(
    "argv, message",
    [
        (["--suite", "nightly"], "Unknown test suite: nightly"),
        (["--arch", "riscv64"], "Unsupported architecture: riscv64"),
        (["--memory", "lots"], "Invalid memory size"),
        (["--timeout", "0"], "--timeout must be greater than zero"),
        (["--network", "tap"], "Unsupported network mode"),
    ],
)
def test_cli_config_errors(images, fake_orchestrator, capsys, argv, message) -> None:
    exit_code = cli.main([str(images), *argv])

    assert exit_code == 2
    assert message in capsys.readouterr().err
    assert fake_orchestrator.created == []


def test_cli_requires_images(fake_orchestrator, capsys) -> None:
    assert cli.main([]) == 2
    assert "either a build directory or --kernel/--rootfs" in capsys.readouterr().err


def test_cli_requires_kernel_and_rootfs_together(tmp_path, fake_orchestrator, capsys) -> None:
    assert cli.main(["--kernel", str(tmp_path / "bzImage")]) == 2
    assert "--kernel and --rootfs must be given together" in capsys.readouterr().err


def test_cli_missing_kernel_file(tmp_path, images, fake_orchestrator, capsys) -> None:
    exit_code = cli.main(
        [
            "--kernel",
            str(tmp_path / "missing-bzImage"),
            "--rootfs",
            str(images / "images" / "rootfs.ext2"),
        ]
    )
    assert exit_code == 2
    assert "Kernel image not found" in capsys.readouterr().err


def test_cli_missing_emulator(images, fake_orchestrator, monkeypatch, capsys) -> None:
    from bootharness.errors import ConfigError

    def missing(name):
        raise ConfigError(f"required executable '{name}' is not available in PATH")

    monkeypatch.setattr(cli, "require_executable", missing)

    assert cli.main([str(images)]) == 2
    assert "'qemu-system-x86_64' is not available" in capsys.readouterr().err


def test_cli_checks_ssh_only_when_attended(images, fake_orchestrator, monkeypatch) -> None:
    checked = []
    monkeypatch.setattr(cli, "require_executable", lambda name: checked.append(name) or name)

    cli.main([str(images), "--suite", "ssh", "--no-unattended"])
    assert checked == ["qemu-system-x86_64", "debugfs", "ssh"]

    checked.clear()
    cli.main([str(images), "--suite", "ssh", "--unattended"])
    assert checked == ["qemu-system-x86_64", "debugfs"]


def test_cli_config_error_during_run(images, fake_orchestrator, monkeypatch, capsys) -> None:
    from bootharness.errors import ConfigError

    def vanished(self, suite, config):
        raise ConfigError(f"Root filesystem image not found: {config.rootfs}")

    monkeypatch.setattr(fake_orchestrator, "run", vanished)

    exit_code = cli.main([str(images)])

    assert exit_code == 2
    assert "Root filesystem image not found" in capsys.readouterr().err
    assert not (images / "test-results.json").exists()
