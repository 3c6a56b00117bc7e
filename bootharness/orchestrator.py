"""Run a named suite case by case, one fresh VM per case."""

from __future__ import annotations

import dataclasses
import datetime
import re
import shlex
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .artifacts import CaseTrace, write_case_metadata
from .config import HarnessSettings, NetworkMode, PortForward, VMConfig, validate_config
from .console import PatternLike
from .detection import (
    DEFAULT_BOOT_MARKERS,
    BootDetection,
    BootOutcome,
    detect_boot,
    init_banner,
    wait_for_sentinel,
)
from .errors import BootTimeout, HarnessError, ProcessDied, RunCancelled, SentinelNotFound
from .logging_utils import log_event
from .payload import PayloadInstaller, build
from .results import (
    ResultAggregator,
    RunMetadata,
    TestCase,
    TestStatus,
    TestSuiteRun,
    utc_now,
)
from .ssh import SSHProbeResult, probe_ssh
from .suites import CaseDefinition, CaseKind, cases_for
from .supervisor import DEFAULT_PORT_REGISTRY, PortRegistry, VMHandle, launch

SSH_GUEST_PORT = 22
SSH_HOST = "127.0.0.1"
SKIPPED_IN_UNATTENDED = "not supported in this environment"

_VERDICTS = {
    "PASSED": TestStatus.PASSED,
    "FAILED": TestStatus.FAILED,
    "SKIPPED": TestStatus.SKIPPED,
}

Launcher = Callable[..., VMHandle]
SSHProbe = Callable[..., SSHProbeResult]


class Orchestrator:
    """Execute the cases of a suite sequentially and aggregate the results.

    Each case gets its own emulator process. Per-case failures become failed
    :class:`TestCase` records and the suite moves on; only configuration
    errors raised before the first launch escape :meth:`run`.
    """

    def __init__(
        self,
        settings: HarnessSettings,
        *,
        installer: PayloadInstaller,
        launcher: Launcher = launch,
        ssh_probe: SSHProbe = probe_ssh,
        unattended: bool = False,
        log_dir: Optional[Path] = None,
        ports: PortRegistry = DEFAULT_PORT_REGISTRY,
        ssh_executable: str = "ssh",
        ssh_identity: Optional[Path] = None,
        qemu_version: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.installer = installer
        self.unattended = unattended
        self.log_dir = log_dir
        self.ssh_executable = ssh_executable
        self.ssh_identity = ssh_identity
        self.qemu_version = qemu_version
        self._launcher = launcher
        self._ssh_probe = ssh_probe
        self._ports = ports
        self._clock = clock
        self._cancel_event = threading.Event()
        self._active_lock = threading.Lock()
        self._active: Optional[VMHandle] = None
        self._transcript: List[str] = []

    @property
    def harness_log_path(self) -> Optional[Path]:
        if self.log_dir is None:
            return None
        return self.log_dir / "harness.log"

    @property
    def transcript(self) -> Tuple[str, ...]:
        return tuple(self._transcript)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop the run: terminate the active VM and skip remaining cases."""

        self._cancel_event.set()
        with self._active_lock:
            handle = self._active
        if handle is not None:
            handle.terminate()
        log_event("bootharness.run.cancel_requested")

    def _log_step(self, message: str, body: Optional[str] = None) -> None:
        timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
        entry = f"[{timestamp}] {message}"
        self._transcript.append(entry)
        log_path = self.harness_log_path
        if log_path is None:
            return
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(entry + "\n")
                if body is not None:
                    lines = body.splitlines()
                    if not lines:
                        handle.write(f"[{timestamp}]   <no output>\n")
                    else:
                        for line in lines:
                            handle.write(f"[{timestamp}]   {line}\n")
        except OSError as exc:
            # The in-memory transcript still holds the entry.
            log_event("bootharness.harness_log.write_failed", path=log_path, error=str(exc))

    def run(self, suite_name: str, config: VMConfig) -> TestSuiteRun:
        """Execute *suite_name* against *config* and return the finalized run."""

        cases = cases_for(suite_name)
        validate_config(config)
        metadata = RunMetadata(
            architecture=config.architecture.value,
            test_suite=suite_name,
            timeout=self.settings.timeout,
            kernel=config.kernel,
            rootfs=config.rootfs,
        )
        aggregator = ResultAggregator(metadata)
        log_event(
            "bootharness.run.started",
            suite=suite_name,
            architecture=config.architecture,
            cases=[definition.name for definition in cases],
            unattended=self.unattended,
        )
        self._log_step(
            f"Starting suite {suite_name}",
            body="\n".join(
                [
                    f"Architecture: {config.architecture.value}",
                    f"Kernel: {config.kernel}",
                    f"Rootfs: {config.rootfs}",
                    f"Timeout: {self.settings.timeout}s",
                    f"Cases: {', '.join(definition.name for definition in cases)}",
                ]
            ),
        )

        for definition in cases:
            if self._cancel_event.is_set():
                aggregator.mark_cancelled()
                break
            try:
                case = self._run_case(definition, config)
            except (RunCancelled, KeyboardInterrupt):
                self.cancel()
                case = TestCase(definition.name, TestStatus.FAILED, "cancelled")
                aggregator.record(case)
                aggregator.mark_cancelled()
                self._log_step(f"{definition.name}: cancelled")
                break
            aggregator.record(case)

        run = aggregator.finalize()
        self._log_step(
            f"Suite {suite_name} finished: {run.overall_status.value}",
            body=(
                f"Passed: {run.passed}\nFailed: {run.failed}\n"
                f"Skipped: {run.skipped}\nTotal: {run.total}"
            ),
        )
        return run

    def _case_dir(self, definition: CaseDefinition) -> Optional[Path]:
        if self.log_dir is None:
            return None
        case_dir = self.log_dir / definition.slug
        case_dir.mkdir(parents=True, exist_ok=True)
        return case_dir

    def _run_case(self, definition: CaseDefinition, config: VMConfig) -> TestCase:
        case_dir: Optional[Path] = None
        trace = CaseTrace(name=definition.name, started_at=utc_now())
        started = self._clock()
        self._log_step(f"{definition.name}: starting")
        log_event("bootharness.case.started", name=definition.name, kind=definition.kind)
        try:
            case_dir = self._case_dir(definition)
            status, details = self._execute(definition, config, case_dir, trace)
        except RunCancelled:
            raise
        except HarnessError as exc:
            if self._cancel_event.is_set():
                raise RunCancelled("run cancelled by operator") from exc
            status, details = TestStatus.FAILED, exc.describe()
            log_event(
                "bootharness.case.error",
                name=definition.name,
                error=type(exc).__name__,
                message=exc.message,
            )
        except OSError as exc:
            if self._cancel_event.is_set():
                raise RunCancelled("run cancelled by operator") from exc
            status, details = TestStatus.FAILED, f"Host error: {exc}"
            log_event(
                "bootharness.case.error",
                name=definition.name,
                error=type(exc).__name__,
                message=str(exc),
            )
        trace.completed_at = utc_now()
        trace.total_seconds = self._clock() - started

        case = TestCase(definition.name, status, details)
        self._log_step(f"{definition.name}: {status.value}", body=details)
        log_event(
            "bootharness.case.finished",
            name=definition.name,
            status=status,
            seconds=round(trace.total_seconds, 3),
        )
        harness_log = self.harness_log_path
        if case_dir is not None and harness_log is not None:
            try:
                write_case_metadata(
                    case_dir / "metadata.json",
                    trace=trace,
                    case=case,
                    harness_log=harness_log,
                    serial_log=case_dir / "serial.log",
                    qemu_version=self.qemu_version,
                )
            except OSError as exc:
                log_event(
                    "bootharness.case.metadata_failed",
                    name=definition.name,
                    path=case_dir / "metadata.json",
                    error=str(exc),
                )
        return case

    def _execute(
        self,
        definition: CaseDefinition,
        config: VMConfig,
        case_dir: Optional[Path],
        trace: CaseTrace,
    ) -> Tuple[TestStatus, str]:
        if definition.kind is CaseKind.SSH:
            if self.unattended:
                return TestStatus.SKIPPED, SKIPPED_IN_UNATTENDED
            return self._run_ssh_case(config, case_dir, trace)
        if definition.kind is CaseKind.BOOT:
            return self._run_boot_case(config, case_dir, trace)
        return self._run_payload_case(definition, config, case_dir, trace)

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise RunCancelled("run cancelled by operator")

    def _remaining(self, deadline: float) -> float:
        return max(0.0, deadline - self._clock())

    def _launch(
        self, config: VMConfig, case_dir: Optional[Path], trace: CaseTrace
    ) -> VMHandle:
        self._check_cancelled()
        serial_log = case_dir / "serial.log" if case_dir is not None else None
        handle = self._launcher(
            config,
            self.settings.timeout,
            serial_log=serial_log,
            grace_period=self.settings.start_grace,
            ports=self._ports,
        )
        trace.qemu_command = list(handle.command)
        with self._active_lock:
            self._active = handle
        self._log_step(
            f"Launched emulator (pid {handle.pid})",
            body=shlex.join(handle.command),
        )
        if self._cancel_event.is_set():
            self._release(handle)
            raise RunCancelled("run cancelled by operator")
        return handle

    def _release(self, handle: VMHandle) -> None:
        handle.terminate()
        with self._active_lock:
            if self._active is handle:
                self._active = None

    def _await_boot(
        self,
        handle: VMHandle,
        patterns: Sequence[PatternLike],
        deadline: float,
        trace: CaseTrace,
    ) -> BootDetection:
        detection = detect_boot(
            handle.console,
            self._remaining(deadline),
            patterns=patterns,
            is_alive=handle.is_alive,
            interval=self.settings.poll_interval,
            cancel_event=self._cancel_event,
            clock=self._clock,
        )
        self._check_cancelled()
        trace.boot_seconds = detection.elapsed
        if detection.booted:
            assert detection.match is not None
            self._log_step(f"Boot marker matched: {detection.match.line}")
            return detection
        tail = handle.console.tail()
        if detection.outcome is BootOutcome.TIMED_OUT or handle.timed_out:
            raise BootTimeout(
                f"Boot timeout after {self.settings.timeout}s", evidence=tail
            )
        raise ProcessDied(
            f"Emulator exited before boot completed ({handle.describe_exit()})",
            evidence=tail,
        )

    def _run_boot_case(
        self, config: VMConfig, case_dir: Optional[Path], trace: CaseTrace
    ) -> Tuple[TestStatus, str]:
        deadline = self._clock() + self.settings.timeout
        handle = self._launch(config, case_dir, trace)
        try:
            detection = self._await_boot(handle, DEFAULT_BOOT_MARKERS, deadline, trace)
        finally:
            self._release(handle)
        assert detection.match is not None
        return TestStatus.PASSED, f"System booted successfully: {detection.match.line}"

    def _run_payload_case(
        self,
        definition: CaseDefinition,
        config: VMConfig,
        case_dir: Optional[Path],
        trace: CaseTrace,
    ) -> Tuple[TestStatus, str]:
        assert definition.action is not None
        action = definition.action()
        artifact = build(action)
        deadline = self._clock() + self.settings.timeout
        image = self.installer.install(artifact, config.rootfs)
        self._log_step(
            f"Payload for {action.test_name} written to {image}",
            body=artifact.script,
        )
        try:
            network = config.network
            if action.requires_network and network is NetworkMode.NONE:
                network = NetworkMode.USER
            case_config = dataclasses.replace(
                config,
                rootfs=image,
                init_override=artifact.init_path,
                network=network,
            )
            patterns = [*DEFAULT_BOOT_MARKERS, re.escape(init_banner(action.test_name))]
            handle = self._launch(case_config, case_dir, trace)
            try:
                self._await_boot(handle, patterns, deadline, trace)
                try:
                    result = wait_for_sentinel(
                        handle.console,
                        action.test_name,
                        self._remaining(deadline),
                        is_alive=handle.is_alive,
                        interval=self.settings.poll_interval,
                        cancel_event=self._cancel_event,
                        clock=self._clock,
                    )
                except SentinelNotFound as exc:
                    if not handle.timed_out:
                        raise
                    raise SentinelNotFound(
                        f"no result sentinel observed within {self.settings.timeout}s",
                        evidence=exc.evidence,
                    ) from exc
                self._check_cancelled()
            finally:
                self._release(handle)
        finally:
            self.installer.cleanup(image)
        trace.sentinel_seconds = result.elapsed
        return _VERDICTS[result.verdict], result.line

    def _run_ssh_case(
        self, config: VMConfig, case_dir: Optional[Path], trace: CaseTrace
    ) -> Tuple[TestStatus, str]:
        host_port = self._ports.allocate()
        case_config = dataclasses.replace(
            config,
            network=NetworkMode.USER,
            port_forwards=config.port_forwards + (PortForward(host_port, SSH_GUEST_PORT),),
        )
        deadline = self._clock() + self.settings.timeout
        handle = self._launch(case_config, case_dir, trace)
        try:
            self._await_boot(handle, DEFAULT_BOOT_MARKERS, deadline, trace)
            budget = min(float(self.settings.ssh_timeout), self._remaining(deadline))
            self._log_step(f"Probing SSH on {SSH_HOST}:{host_port} for up to {budget:g}s")
            probe = self._ssh_probe(
                SSH_HOST,
                host_port,
                executable=self.ssh_executable,
                identity=self.ssh_identity,
                timeout=budget,
                interval=self.settings.poll_interval,
                cancel_event=self._cancel_event,
            )
        finally:
            self._release(handle)
        status = TestStatus.PASSED if probe.reachable else TestStatus.FAILED
        return status, probe.summary()


__all__ = ["Orchestrator", "SKIPPED_IN_UNATTENDED", "SSH_GUEST_PORT"]
