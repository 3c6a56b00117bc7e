"""CLI entry point for boot-harness."""

from __future__ import annotations

import argparse
import dataclasses
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from .artifacts import append_run_ledger_entry
from .config import (
    Architecture,
    HarnessSettings,
    VMConfig,
    discover_images,
    load_settings,
    parse_architecture,
    parse_network_mode,
    require_executable,
    resolve_kvm,
    unattended_default,
    validate_config,
    validate_memory,
)
from .errors import ConfigError
from .logging_utils import log_event
from .orchestrator import Orchestrator
from .payload import PayloadInstaller
from .results import EXIT_CONFIG_ERROR, render_summary, write_report
from .suites import CaseKind, cases_for, suite_names
from .supervisor import ARCHITECTURE_PROFILES, probe_qemu_version

DEFAULT_REPORT_NAME = "test-results.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="boot-harness",
        description="Boot a kernel and root filesystem under QEMU and run a test suite",
    )
    parser.add_argument(
        "build_dir",
        nargs="?",
        type=Path,
        help="Build output directory containing images/ (kernel and rootfs are discovered)",
    )
    parser.add_argument("--kernel", type=Path, help="Kernel image to boot")
    parser.add_argument("--rootfs", type=Path, help="ext2/3/4 root filesystem image")
    parser.add_argument(
        "--arch",
        default=Architecture.X86_64.value,
        help="Guest architecture (x86_64 or aarch64)",
    )
    parser.add_argument(
        "--suite",
        default="basic",
        help=f"Test suite to run ({', '.join(suite_names())})",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        help="Per-case timeout in seconds (defaults to BOOTHARNESS_TIMEOUT or 180)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help=f"Report path (defaults to <build_dir>/{DEFAULT_REPORT_NAME})",
    )
    parser.add_argument("--memory", help="Guest memory size, e.g. 256M")
    parser.add_argument(
        "--kvm",
        action="store_true",
        help="Enable KVM acceleration when the host supports it (x86_64 only)",
    )
    parser.add_argument("--network", default="user", help="Network mode: none, user or bridge")
    parser.add_argument("--bridge", default="br0", help="Host bridge for --network bridge")
    parser.add_argument("--boot-args", default="", help="Extra kernel command line arguments")
    parser.add_argument(
        "--log-dir",
        type=Path,
        help="Directory for harness.log, per-case serial logs and metadata",
    )
    parser.add_argument(
        "--ledger",
        type=Path,
        help="Append a JSON line describing this run to the given ledger file",
    )
    parser.add_argument(
        "--unattended",
        dest="unattended",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Skip cases that need an interactive environment (defaults to on under CI)",
    )
    parser.add_argument("--ssh-identity", type=Path, help="Private key for the SSH case")
    parser.add_argument("--debugfs", default="debugfs", help="debugfs executable for payload injection")
    return parser


def _resolve_images(
    args: argparse.Namespace, architecture: Architecture
) -> Tuple[Path, Path]:
    if args.kernel is not None or args.rootfs is not None:
        if args.kernel is None or args.rootfs is None:
            raise ConfigError("--kernel and --rootfs must be given together")
        return args.kernel, args.rootfs
    if args.build_dir is None:
        raise ConfigError("either a build directory or --kernel/--rootfs is required")
    return discover_images(args.build_dir, architecture)


def _resolve_settings(args: argparse.Namespace) -> HarnessSettings:
    settings = load_settings()
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ConfigError("--timeout must be greater than zero")
        settings = dataclasses.replace(settings, timeout=args.timeout)
    if args.memory:
        settings = dataclasses.replace(settings, memory=validate_memory(args.memory))
    return settings


def _report_path(args: argparse.Namespace) -> Path:
    if args.output is not None:
        return args.output
    if args.build_dir is not None:
        return args.build_dir / DEFAULT_REPORT_NAME
    return Path(DEFAULT_REPORT_NAME)


def _check_host_tools(
    suite: str, architecture: Architecture, *, unattended: bool, debugfs: str
) -> str:
    """Return the resolved emulator path after checking every required tool."""

    qemu = require_executable(ARCHITECTURE_PROFILES[architecture].executable)
    kinds = {definition.kind for definition in cases_for(suite)}
    if CaseKind.PAYLOAD in kinds:
        require_executable(debugfs)
    if CaseKind.SSH in kinds and not unattended:
        require_executable("ssh")
    return qemu


def _config_error(exc: ConfigError) -> int:
    print(f"[ERROR] {exc.describe()}", file=sys.stderr)
    log_event("bootharness.cli.config_error", message=exc.message)
    return EXIT_CONFIG_ERROR


def main(argv: Optional[List[str]] = None) -> int:
    """Run the boot-harness tool and return its exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = _resolve_settings(args)
        architecture = parse_architecture(args.arch)
        cases_for(args.suite)
        kernel, rootfs = _resolve_images(args, architecture)
        config = VMConfig(
            architecture=architecture,
            kernel=kernel,
            rootfs=rootfs,
            memory=settings.memory,
            boot_args=args.boot_args,
            network=parse_network_mode(args.network),
            kvm=resolve_kvm(args.kvm, architecture),
            bridge=args.bridge,
        )
        validate_config(config)
        unattended = args.unattended if args.unattended is not None else unattended_default()
        qemu = _check_host_tools(
            args.suite, architecture, unattended=unattended, debugfs=args.debugfs
        )
    except ConfigError as exc:
        return _config_error(exc)

    qemu_version = probe_qemu_version(qemu)
    report_path = _report_path(args)
    print(f"[INFO] Running '{args.suite}' suite for {architecture.value}")
    print(f"[INFO] Kernel: {kernel}")
    print(f"[INFO] Rootfs: {rootfs}")
    if qemu_version:
        print(f"[INFO] {qemu_version}")

    with tempfile.TemporaryDirectory(prefix="boot-harness-") as work_dir:
        orchestrator = Orchestrator(
            settings,
            installer=PayloadInstaller(Path(work_dir), debugfs=args.debugfs),
            unattended=unattended,
            log_dir=args.log_dir,
            ssh_identity=args.ssh_identity,
            qemu_version=qemu_version,
        )
        try:
            run = orchestrator.run(args.suite, config)
        except ConfigError as exc:
            return _config_error(exc)

    write_report(run, report_path)
    print(render_summary(run))
    print(f"[INFO] Report written to {report_path}")
    if args.ledger is not None:
        append_run_ledger_entry(
            args.ledger,
            run=run,
            report_path=report_path,
            harness_log=orchestrator.harness_log_path,
            qemu_version=qemu_version,
            invocation_args=list(sys.argv[1:] if argv is None else argv),
        )
    return run.exit_code


if __name__ == "__main__":
    sys.exit(main())
