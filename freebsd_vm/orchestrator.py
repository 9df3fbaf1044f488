"""Provisioning state machine driving a fresh FreeBSD guest to an SSH-ready state."""

from __future__ import annotations

import shlex
from typing import List, Optional

from freebsd_vm.console import CancelToken, ConsoleDriver
from freebsd_vm.constants import GUEST_USER
from freebsd_vm.exceptions import ManagerError, WaitCancelled
from freebsd_vm.models import ProvisionState, VMConfig
from freebsd_vm.qemu import VirtualMachine
from freebsd_vm.ssh import RemoteShell
from freebsd_vm.utils import log


def append_line_command(line: str, path: str) -> str:
    return f"echo {shlex.quote(line)} >> {path}"


class Provisioner:
    """Runs the console install steps, then hands over to SSH.

    ``install()`` walks the guest through every ProvisionState in order;
    ``update()`` boots an already provisioned image and only refreshes
    the base system and packages.
    """

    def __init__(
        self,
        cfg: VMConfig,
        vm: Optional[VirtualMachine] = None,
        remote: Optional[RemoteShell] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.cfg = cfg
        self.vm = vm or VirtualMachine(cfg)
        self.remote = remote or RemoteShell(cfg.ssh_port)
        self.cancel = cancel or CancelToken()
        self.history: List[ProvisionState] = []
        self.console: Optional[ConsoleDriver] = None

    def _transition(self, state: ProvisionState) -> None:
        self.history.append(state)
        log("INFO", f"Provisioning state: {state.name}")

    def check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise WaitCancelled("Provisioning cancelled")

    def _require_console(self) -> ConsoleDriver:
        if self.console is None:
            raise ManagerError("VM console is not attached")
        return self.console

    def install(self) -> None:
        self.console = self.vm.start(cancel=self.cancel)
        self._transition(ProvisionState.VM_STARTED)
        self._select_boot_entry()
        self._wait_for_boot()
        self._login()
        self._configure_network()
        self._clear_password()
        self._wait_for_ssh()
        self._apply_updates()
        self._transition(ProvisionState.READY)
        log("SUCCESS", "Guest provisioned")

    def _select_boot_entry(self) -> None:
        console = self._require_console()
        profile = self.cfg.profile
        console.wait_for(profile.boot_menu_prompt)
        console.send_keys(profile.boot_menu_keys)
        self._transition(ProvisionState.BOOT_MENU_SELECTED)

    def _wait_for_boot(self) -> None:
        console = self._require_console()
        console.wait_for(self.cfg.profile.banner)
        console.wait_for(self.cfg.profile.login_prompt)
        self._transition(ProvisionState.BOOTED)

    def _login(self) -> None:
        console = self._require_console()
        console.send_keys(f"{GUEST_USER}\n")
        self._transition(ProvisionState.LOGIN_PROMPTED)
        console.wait_for(self.cfg.profile.shell_prompt)
        self._transition(ProvisionState.LOGGED_IN)

    def _configure_network(self) -> None:
        console = self._require_console()
        profile = self.cfg.profile
        for line in profile.rc_conf:
            console.run_and_wait(append_line_command(line, "/etc/rc.conf"))
        for line in profile.sshd_config:
            console.run_and_wait(append_line_command(line, "/etc/ssh/sshd_config"))
        for service in profile.restart_services:
            console.run_and_wait(f"service {shlex.quote(service)} restart")
        self._transition(ProvisionState.NETWORK_CONFIGURED)

    def _clear_password(self) -> None:
        console = self._require_console()
        profile = self.cfg.profile
        console.send_keys("passwd\n")
        console.wait_for(profile.password_prompt)
        console.send_keys("\n")
        # the retype prompt ends with the same text
        console.wait_for(profile.password_prompt)
        console.send_keys("\n")
        console.wait_for(profile.shell_prompt)
        self._transition(ProvisionState.PASSWORDLESS)

    def _wait_for_ssh(self) -> None:
        self.remote.wait_until_reachable(self.cfg.ssh_timeout, cancel=self.cancel)

    def _apply_updates(self) -> None:
        profile = self.cfg.profile
        for command in profile.update_commands:
            self.check_cancelled()
            # "no updates available" exits non-zero and is not an error
            result = self.remote.run(command, check=False)
            if result.returncode != 0:
                log("WARN", f"Ignoring exit status {result.returncode} of: {command}")
        if profile.packages:
            self.check_cancelled()
            packages = " ".join(shlex.quote(p) for p in profile.packages)
            self.remote.run(f"env ASSUME_ALWAYS_YES=yes pkg install -y {packages}")

    def update(self) -> None:
        self.boot()
        self._apply_updates()
        log("SUCCESS", "Guest updated")

    def boot(self) -> None:
        """Start a provisioned image and wait until it accepts SSH logins."""
        self.console = self.vm.start(cancel=self.cancel)
        self._wait_for_ssh()

    def power_off(self) -> None:
        log("INFO", "Powering off guest")
        # the connection drops as the guest halts, so the exit status is meaningless
        self.remote.run("shutdown -p now", check=False)
        if not self.vm.wait_until_stopped(self.cfg.shutdown_timeout):
            log("WARN", f"Guest did not power off within {int(self.cfg.shutdown_timeout)}s")
            self.vm.kill()
        self.console = None
