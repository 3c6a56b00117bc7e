"""In-guest test payloads and their injection into a root filesystem image.

A payload is a small POSIX shell script that performs one action and always
ends by printing exactly one verdict line::

    <TestName> Test: PASSED
    <TestName> Test: FAILED - <reason>
    <TestName> Test: SKIPPED - <reason>

An accompanying init override mounts the virtual filesystems the action needs,
runs the script and powers the guest off, so the only oracle the host needs is
a string search over the serial console.
"""

from __future__ import annotations

import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from .detection import init_banner
from .errors import PayloadInjectionError
from .logging_utils import log_event

PAYLOAD_DIR = "/boot-harness"
INIT_NAME = "init.sh"

# Distinct exit codes let the wrapper tell "verdict printed" from "fell through".
_PASS_EXIT = 100
_FAIL_EXIT = 101
_SKIP_EXIT = 102

_MOUNT_POINTS: Dict[str, Tuple[str, str]] = {
    "proc": ("proc", "/proc"),
    "sysfs": ("sysfs", "/sys"),
    "devtmpfs": ("devtmpfs", "/dev"),
    "tmpfs": ("tmpfs", "/tmp"),
}
DEFAULT_MOUNTS: Tuple[str, ...] = ("proc", "sysfs", "devtmpfs")


def slugify(name: str) -> str:
    """Return a filesystem-safe lowercase form of *name*."""

    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "payload"


@dataclass(frozen=True)
class TestAction:
    """One in-guest check expressed as a shell fragment.

    The body may call ``pass_test``, ``fail_test REASON`` or
    ``skip_test REASON``; falling off the end is reported as a failure.
    """

    __test__ = False

    test_name: str
    body: str
    mounts: Tuple[str, ...] = DEFAULT_MOUNTS
    requires_network: bool = False

    @property
    def slug(self) -> str:
        return slugify(self.test_name)


@dataclass(frozen=True)
class InjectionArtifact:
    """The rendered scripts for one action, keyed by guest path."""

    test_name: str
    script_path: str
    script: str
    init_path: str
    init_script: str
    mounts: Tuple[str, ...] = field(default_factory=tuple)

    def files(self) -> List[Tuple[str, str]]:
        return [(self.script_path, self.script), (self.init_path, self.init_script)]


def _verdict_helpers(test_name: str) -> List[str]:
    label = shlex.quote(f"{test_name} Test:")
    return [
        f'pass_test() {{ echo {label} "PASSED${{1:+ - $1}}"; exit {_PASS_EXIT}; }}',
        f'fail_test() {{ echo {label} "FAILED${{1:+ - $1}}"; exit {_FAIL_EXIT}; }}',
        f'skip_test() {{ echo {label} "SKIPPED${{1:+ - $1}}"; exit {_SKIP_EXIT}; }}',
    ]


def render_script(action: TestAction) -> str:
    label = shlex.quote(f"{action.test_name} Test:")
    lines = ["#!/bin/sh", f"# {action.test_name} payload generated by boot-harness", ""]
    lines.extend(_verdict_helpers(action.test_name))
    lines.append("")
    lines.append("(")
    for raw_line in action.body.strip("\n").splitlines():
        lines.append(f"    {raw_line}" if raw_line.strip() else "")
    lines.append(")")
    lines.append("status=$?")
    lines.append('case "$status" in')
    lines.append(f"    {_PASS_EXIT}|{_FAIL_EXIT}|{_SKIP_EXIT}) ;;")
    lines.append(f'    *) echo {label} "FAILED - payload exited without a verdict (status $status)" ;;')
    lines.append("esac")
    return "\n".join(lines) + "\n"


def render_init(action: TestAction, script_path: str) -> str:
    lines = ["#!/bin/sh", "# init override generated by boot-harness", ""]
    for name in action.mounts:
        try:
            fstype, target = _MOUNT_POINTS[name]
        except KeyError as exc:
            raise ValueError(f"unsupported virtual filesystem: {name}") from exc
        lines.append(f"mount -t {fstype} {fstype} {target} 2>/dev/null || true")
    lines.append("")
    lines.append(f"echo {shlex.quote(init_banner(action.test_name))}")
    lines.append(f"/bin/sh {script_path}")
    lines.append("")
    lines.append("sync")
    lines.append("poweroff -f || echo o > /proc/sysrq-trigger")
    return "\n".join(lines) + "\n"


def build(action: TestAction) -> InjectionArtifact:
    """Render the payload script and init override for *action*."""

    script_path = f"{PAYLOAD_DIR}/{action.slug}.sh"
    return InjectionArtifact(
        test_name=action.test_name,
        script_path=script_path,
        script=render_script(action),
        init_path=f"{PAYLOAD_DIR}/{INIT_NAME}",
        init_script=render_init(action, script_path),
        mounts=action.mounts,
    )


def system_info_action() -> TestAction:
    body = """
echo "Hello World! Boot harness guest is running."
echo "System Information:"
echo "  Kernel: $(uname -r)"
echo "  Uptime: $(uptime)"
echo "  Memory: $(free -m 2>/dev/null | grep '^Mem:' | awk '{print $3}') MB used"
echo "  Disk: $(df -h / 2>/dev/null | tail -1 | awk '{print $4}') available"
if [ -z "$(uname -r)" ]; then
    fail_test "uname reported no kernel release"
fi
pass_test
"""
    return TestAction(test_name="SystemInfo", body=body)


def network_action(
    *,
    interface: str = "eth0",
    address: str = "10.0.2.15",
    netmask: str = "255.255.255.0",
    gateway: str = "10.0.2.2",
) -> TestAction:
    """Return an action that configures *interface* and pings *gateway*.

    The defaults match QEMU's user-mode network.
    """

    body = f"""
echo "Network Test Starting..."
if ! ifconfig {interface} >/dev/null 2>&1; then
    fail_test "No network interface {interface}"
fi
ifconfig {interface} {address} netmask {netmask} up || fail_test "Cannot configure {interface}"
sleep 2
if ping -c 2 {gateway} >/dev/null 2>&1; then
    pass_test
fi
fail_test "Cannot ping gateway"
"""
    return TestAction(test_name="Network", body=body, requires_network=True)


def package_management_action(package: str = "wget") -> TestAction:
    body = f"""
echo "Package Management Test Starting..."
if ! command -v opkg >/dev/null 2>&1; then
    skip_test "No package manager found"
fi
echo "Package Manager Found: opkg"
opkg update >/dev/null 2>&1 || fail_test "Package lists could not be updated"
opkg install {package} >/dev/null 2>&1 || fail_test "Package installation failed"
command -v {package} >/dev/null 2>&1 || fail_test "Package verification failed"
pass_test
"""
    return TestAction(
        test_name="Package Management",
        body=body,
        mounts=DEFAULT_MOUNTS + ("tmpfs",),
        requires_network=True,
    )


def performance_action() -> TestAction:
    body = """
echo "Performance Test Starting..."
output=$(dd if=/dev/zero of=/dev/null bs=1M count=100 2>&1)
echo "$output"
rate=$(echo "$output" | grep -oE '[0-9.]+ ?[KMG]i?B/s' | tail -1)
free -m 2>/dev/null | grep -q 'Mem' || fail_test "Cannot get memory info"
if [ -n "$rate" ]; then
    pass_test "Throughput: $rate"
fi
fail_test "Poor performance detected"
"""
    return TestAction(test_name="Performance", body=body)


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class PayloadInstaller:
    """Write payloads into scratch copies of an ext2/3/4 root filesystem.

    The original image is never modified; each case boots its own copy, which
    :meth:`cleanup` removes afterwards.
    """

    def __init__(
        self,
        work_dir: Path,
        *,
        debugfs: str = "debugfs",
        run: Runner = subprocess.run,
    ) -> None:
        self.work_dir = work_dir
        self.debugfs = debugfs
        self._run = run

    def _debugfs(self, args: List[str], image: Path) -> "subprocess.CompletedProcess[str]":
        cmd = [self.debugfs, *args, str(image)]
        try:
            return self._run(cmd, check=False, capture_output=True, text=True)
        except OSError as exc:
            raise PayloadInjectionError(f"failed to run {self.debugfs}: {exc}") from exc

    def install(self, artifact: InjectionArtifact, rootfs: Path) -> Path:
        """Return the path of a rootfs copy containing *artifact*.

        On failure the scratch copy is removed before the error propagates.
        """

        case_dir = self.work_dir / slugify(artifact.test_name)
        scratch = case_dir / rootfs.name
        try:
            case_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PayloadInjectionError(f"failed to create work directory {case_dir}: {exc}") from exc
        try:
            shutil.copyfile(rootfs, scratch)
        except OSError as exc:
            self.cleanup(scratch)
            raise PayloadInjectionError(f"failed to copy {rootfs} to {scratch}: {exc}") from exc

        try:
            self._write_payload(artifact, case_dir, scratch)
        except BaseException:
            self.cleanup(scratch)
            raise
        log_event(
            "bootharness.payload.installed",
            test=artifact.test_name,
            image=scratch,
            init=artifact.init_path,
        )
        return scratch

    def _write_payload(self, artifact: InjectionArtifact, case_dir: Path, scratch: Path) -> None:
        commands = [f"mkdir {PAYLOAD_DIR}", f"cd {PAYLOAD_DIR}"]
        try:
            for guest_path, content in artifact.files():
                name = guest_path.rsplit("/", 1)[-1]
                local = case_dir / name
                local.write_text(content, encoding="utf-8")
                commands.append(f"rm {name}")
                commands.append(f"write {local} {name}")
                commands.append(f"sif {name} mode 0100755")
            command_file = case_dir / "debugfs.cmd"
            command_file.write_text("\n".join(commands) + "\n", encoding="utf-8")
        except OSError as exc:
            raise PayloadInjectionError(f"failed to stage payload files in {case_dir}: {exc}") from exc

        result = self._debugfs(["-w", "-f", str(command_file)], scratch)
        log_event(
            "bootharness.payload.debugfs",
            image=scratch,
            returncode=result.returncode,
            commands=commands,
        )
        if result.returncode != 0:
            raise PayloadInjectionError(
                f"debugfs failed to write payload into {scratch}",
                evidence=(result.stderr or "").strip().splitlines(),
            )

        verify = self._debugfs(["-R", f"stat {artifact.init_path}"], scratch)
        if verify.returncode != 0 or "Inode:" not in (verify.stdout or ""):
            raise PayloadInjectionError(
                f"payload init {artifact.init_path} missing from {scratch} after injection",
                evidence=(verify.stderr or "").strip().splitlines(),
            )

    def cleanup(self, image: Path) -> None:
        """Remove a scratch image created by :meth:`install`."""

        try:
            image.unlink()
        except FileNotFoundError:
            return


__all__ = [
    "DEFAULT_MOUNTS",
    "INIT_NAME",
    "InjectionArtifact",
    "PAYLOAD_DIR",
    "PayloadInstaller",
    "TestAction",
    "build",
    "network_action",
    "package_management_action",
    "performance_action",
    "render_init",
    "render_script",
    "slugify",
    "system_info_action",
]
