"""Shared test fixtures: configuration objects and a scripted guest console."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from freebsd_vm.console import CancelToken, ConsoleDriver
from freebsd_vm.models import GuestProfile, VMConfig
from freebsd_vm.orchestrator import Provisioner
from freebsd_vm.transcript import MemoryTranscript


@pytest.fixture
def default_profile() -> GuestProfile:
    return GuestProfile(
        release="14.2",
        mirrors=["https://mirror.example.com/VM-IMAGES/14.2-RELEASE/amd64/Latest"],
        image_file="FreeBSD-14.2-RELEASE-amd64.qcow2.xz",
        boot_menu_prompt="Autoboot in",
        boot_menu_keys="1",
        banner="FreeBSD/amd64",
        login_prompt="login:",
        shell_prompt="root@",
        password_prompt="New Password:",
        rc_conf=['sshd_enable="YES"'],
        sshd_config=["PermitRootLogin yes", "PermitEmptyPasswords yes"],
        restart_services=["sshd"],
        update_commands=["freebsd-update fetch install", "pkg upgrade -y"],
        packages=["gmake", "pkgconf"],
    )


@pytest.fixture
def default_vm_config(default_profile, tmp_path) -> VMConfig:
    """Return a VMConfig rooted in the test's temporary directory."""
    return VMConfig(
        ssh_port=2222,
        nproc=2,
        memory_mb=2048,
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        image_name="freebsd-14.2",
        profile=default_profile,
        source_dir=tmp_path / "src",
        build_command="cd /root/src && gmake -j2",
        poll_interval=0.001,
        console_timeout=5.0,
        ssh_timeout=10.0,
        shutdown_timeout=10.0,
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Environment variables read by parse_env(), cleared for a clean slate.
_PARSE_ENV_VARS = [
    "PROFILE",
    "SSH_PORT",
    "NPROC",
    "MEMORY",
    "IMAGE_NAME",
    "CACHE_DIR",
    "WORK_DIR",
    "SOURCE_DIR",
    "BUILD_COMMAND",
    "POLL_INTERVAL",
    "CONSOLE_TIMEOUT",
    "SSH_TIMEOUT",
    "SHUTDOWN_TIMEOUT",
    "QEMU_DISPLAY",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


PROMPT = "root@freebsd:~ # "
_TOKEN_RE = re.compile(r"; echo ([A-Za-z0-9]+)$")


class ScriptedGuest:
    """Fake tmux session that answers keystrokes the way a booting FreeBSD guest would."""

    def __init__(self) -> None:
        self.transcript = MemoryTranscript("Loading kernel...\r\nAutoboot in 10 seconds. ")
        self.sent = []
        self.commands = []
        self._passwd_step = 0
        self._alive = True
        self.transcript_path = Path("/nonexistent")

    def alive(self) -> bool:
        return self._alive

    def send_keys(self, text: str) -> None:
        self.sent.append(text)
        if text == "1":
            self.transcript.feed("\r\nBooting...\r\nFreeBSD/amd64 (freebsd) (ttyv0)\r\n\r\nlogin: ")
        elif text == "root\n":
            self.transcript.feed("root\r\nFreeBSD 14.2-RELEASE\r\n" + PROMPT)
        elif text == "passwd\n":
            self._passwd_step = 1
            self.transcript.feed("passwd\r\nChanging local password for root\r\nNew Password:")
        elif text == "\n" and self._passwd_step == 1:
            self._passwd_step = 2
            self.transcript.feed("\r\nRetype New Password:")
        elif text == "\n" and self._passwd_step == 2:
            self._passwd_step = 0
            self.transcript.feed("\r\n" + PROMPT)
        else:
            line = text.rstrip("\n")
            match = _TOKEN_RE.search(line)
            if match:
                self.commands.append(line[: match.start()])
                # the guest echoes the input, then prints the token as output
                self.transcript.feed(f"{line}\r\n{match.group(1)}\r\n{PROMPT}")

    def kill(self) -> None:
        self._alive = False


@pytest.fixture
def scripted_guest() -> ScriptedGuest:
    return ScriptedGuest()


@pytest.fixture
def scripted_provisioner(default_vm_config, scripted_guest):
    """Provisioner whose VM is a ScriptedGuest and whose SSH always succeeds."""
    vm = MagicMock()
    vm.start.side_effect = lambda cancel=None: ConsoleDriver(
        scripted_guest,
        scripted_guest.transcript,
        poll_interval=0.001,
        timeout=5.0,
        cancel=cancel,
    )
    vm.wait_until_stopped.return_value = True
    remote = MagicMock()
    remote.run.return_value = subprocess.CompletedProcess(args=["ssh"], returncode=0)
    return Provisioner(default_vm_config, vm=vm, remote=remote, cancel=CancelToken())
