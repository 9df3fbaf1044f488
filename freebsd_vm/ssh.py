"""Remote shell and file transfer over the forwarded SSH port."""

from __future__ import annotations

import shlex
import subprocess
import time
from pathlib import Path
from typing import Iterable, List, Optional

from freebsd_vm.console import CancelToken
from freebsd_vm.constants import GUEST_USER, SSH_OPTIONS
from freebsd_vm.exceptions import ManagerError, RemoteCommandError, WaitCancelled
from freebsd_vm.utils import log, run


class RemoteShell:
    def __init__(self, ssh_port: int, user: str = GUEST_USER, host: str = "localhost") -> None:
        self.ssh_port = ssh_port
        self.user = user
        self.host = host

    def ssh_command(self) -> List[str]:
        return [
            "ssh",
            "-p",
            str(self.ssh_port),
            *SSH_OPTIONS,
            "-o",
            "BatchMode=yes",
            f"{self.user}@{self.host}",
        ]

    def run(self, command: str, check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        log("INFO", f"[guest] {command}")
        result = run(self.ssh_command() + ["--", command], check=False, **kwargs)
        if check and result.returncode != 0:
            raise RemoteCommandError(command, result.returncode)
        return result

    def is_reachable(self) -> bool:
        try:
            result = run(
                self.ssh_command() + ["--", "true"],
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=30,
            )
        except subprocess.TimeoutExpired:
            return False
        return result.returncode == 0

    def wait_until_reachable(
        self,
        timeout: float,
        interval: float = 5.0,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        log("INFO", f"Waiting for SSH on port {self.ssh_port}...")
        cancel = cancel or CancelToken()
        start = time.monotonic()
        deadline = start + timeout
        while time.monotonic() < deadline:
            if cancel.is_set():
                raise WaitCancelled("Cancelled while waiting for SSH")
            if self.is_reachable():
                log("SUCCESS", f"SSH reachable after {int(time.monotonic() - start)}s")
                return
            if cancel.wait(interval):
                raise WaitCancelled("Cancelled while waiting for SSH")
        raise ManagerError(f"SSH on port {self.ssh_port} did not become reachable within {int(timeout)}s")

    def upload_tree(self, source: Path, destination: str, exclude: Iterable[str] = ()) -> None:
        """Copy a directory into the guest as a tar stream over ssh."""
        if not source.is_dir():
            raise ManagerError(f"Source directory not found: {source}")
        tar_cmd = ["tar", "-C", str(source)]
        for pattern in exclude:
            tar_cmd.append(f"--exclude={pattern}")
        tar_cmd.extend(["-cf", "-", "."])
        quoted = shlex.quote(destination)
        remote = f"mkdir -p {quoted} && tar -C {quoted} -xf -"
        log("INFO", f"Copying {source} to guest:{destination}")
        log("DEBUG", f"Running: {' '.join(tar_cmd)} | ssh ... {remote}")

        producer = subprocess.Popen(tar_cmd, stdout=subprocess.PIPE)
        try:
            consumer = subprocess.run(self.ssh_command() + ["--", remote], stdin=producer.stdout, check=False)
        finally:
            if producer.stdout is not None:
                producer.stdout.close()
            producer_rc = producer.wait()
        if producer_rc != 0:
            raise ManagerError(f"tar of {source} failed (exit {producer_rc})")
        if consumer.returncode != 0:
            raise RemoteCommandError(remote, consumer.returncode)
