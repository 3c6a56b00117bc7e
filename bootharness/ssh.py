"""SSH reachability probing for guests with a forwarded port."""

from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .errors import RunCancelled
from .logging_utils import log_event

SSH_READY_MARKER = "SSH_READY"


@dataclass(frozen=True)
class SSHProbeResult:
    """Outcome of polling a guest's SSH service."""

    reachable: bool
    attempts: int
    output: str = ""
    last_returncode: Optional[int] = None
    last_stderr: str = ""

    def summary(self) -> str:
        if self.reachable:
            return f"SSH command succeeded on attempt {self.attempts}"
        code = self.last_returncode if self.last_returncode is not None else "N/A"
        stderr = self.last_stderr.strip() or "<no stderr>"
        return (
            f"SSH service not available after {self.attempts} attempts "
            f"(last return code: {code}; last stderr: {stderr})"
        )


def build_ssh_command(
    executable: str,
    host: str,
    port: int,
    command: str,
    *,
    user: str = "root",
    identity: Optional[Path] = None,
    connect_timeout: int = 5,
) -> List[str]:
    cmd = [executable]
    if identity is not None:
        cmd.extend(["-i", str(identity)])
    cmd.extend(
        [
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            f"ConnectTimeout={connect_timeout}",
            "-p",
            str(port),
            f"{user}@{host}",
            command,
        ]
    )
    return cmd


def probe_ssh(
    host: str,
    port: int,
    *,
    executable: str = "ssh",
    identity: Optional[Path] = None,
    user: str = "root",
    timeout: float = 60,
    interval: float = 2.0,
    connect_timeout: int = 5,
    cancel_event: Optional[threading.Event] = None,
    run: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
    clock: Callable[[], float] = time.monotonic,
) -> SSHProbeResult:
    """Retry ``ssh ... echo SSH_READY`` until it succeeds or *timeout* passes."""

    cmd = build_ssh_command(
        executable,
        host,
        port,
        f"echo {SSH_READY_MARKER}",
        user=user,
        identity=identity,
        connect_timeout=connect_timeout,
    )
    deadline = clock() + timeout
    attempts = 0
    last_returncode: Optional[int] = None
    last_stderr = ""
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("run cancelled by operator")
        attempts += 1
        try:
            result = run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                timeout=connect_timeout + 5,
            )
        except subprocess.TimeoutExpired:
            last_returncode = None
            last_stderr = f"ssh attempt exceeded {connect_timeout + 5}s"
        else:
            output = (result.stdout or "").strip()
            if result.returncode == 0 and SSH_READY_MARKER in output:
                log_event(
                    "bootharness.ssh.reachable",
                    host=host,
                    port=port,
                    attempts=attempts,
                )
                return SSHProbeResult(
                    reachable=True,
                    attempts=attempts,
                    output=output,
                    last_returncode=result.returncode,
                )
            last_returncode = result.returncode
            last_stderr = result.stderr or ""
        log_event(
            "bootharness.ssh.attempt_failed",
            host=host,
            port=port,
            attempt=attempts,
            returncode=last_returncode,
        )
        remaining = deadline - clock()
        if remaining <= 0:
            break
        if cancel_event is not None:
            cancel_event.wait(min(interval, remaining))
        else:
            time.sleep(min(interval, remaining))

    return SSHProbeResult(
        reachable=False,
        attempts=attempts,
        last_returncode=last_returncode,
        last_stderr=last_stderr,
    )


__all__ = ["SSHProbeResult", "SSH_READY_MARKER", "build_ssh_command", "probe_ssh"]
