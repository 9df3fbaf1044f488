"""Base image retrieval and QEMU process lifecycle for freebsd-ci-vm."""

from __future__ import annotations

import os
import random
import re
import time
from pathlib import Path
from typing import List, Optional

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from freebsd_vm.console import CancelToken, ConsoleDriver, TmuxSession
from freebsd_vm.constants import TMUX_SESSION_PREFIX
from freebsd_vm.exceptions import ManagerError
from freebsd_vm.models import GuestProfile, VMConfig
from freebsd_vm.utils import (
    decompress_xz,
    download_file,
    ensure_directory,
    kvm_available,
    log,
    run,
    verify_sha512,
)

_CHECKSUM_LINE_RE = re.compile(r"^SHA512 \((?P<name>[^)]+)\) = (?P<digest>[0-9a-fA-F]{128})\s*$")


def choose_mirror(profile: GuestProfile) -> str:
    """Pick one mirror at random to spread CI load across them."""
    return random.choice(profile.image_urls())


def parse_checksum_file(text: str, filename: str) -> Optional[str]:
    for line in text.splitlines():
        match = _CHECKSUM_LINE_RE.match(line.strip())
        if match and match.group("name") == filename:
            return match.group("digest").lower()
    return None


def fetch_published_checksum(image_url: str, filename: str) -> str:
    """Read the digest for ``filename`` from the CHECKSUM.SHA512 next to it."""
    checksum_url = image_url.rsplit("/", 1)[0] + "/CHECKSUM.SHA512"
    log("INFO", f"Fetching published checksums: {checksum_url}")
    try:
        response = requests.get(checksum_url, timeout=30, headers={"User-Agent": "freebsd-ci-vm/1.0"})
        response.raise_for_status()
    except requests.RequestException as exc:
        raise ManagerError(f"Failed to fetch {checksum_url}: {exc}") from exc
    digest = parse_checksum_file(response.text, filename)
    if digest is None:
        raise ManagerError(f"No SHA512 entry for {filename} in {checksum_url}")
    return digest


def fetch_base_image(cfg: VMConfig) -> Path:
    """Download, verify and unpack a pristine base image to ``cfg.image_path``."""
    profile = cfg.profile
    ensure_directory(cfg.work_dir)
    url = choose_mirror(profile)
    expected = profile.image_sha512 or fetch_published_checksum(url, profile.image_file)

    download_path = cfg.work_dir / profile.image_file
    download_file(url, download_path, label="Downloading base image")
    try:
        verify_sha512(download_path, expected)
    except ManagerError:
        download_path.unlink(missing_ok=True)
        raise

    if download_path.suffix == ".xz":
        decompress_xz(download_path, cfg.image_path)
    else:
        download_path.replace(cfg.image_path)

    if profile.disk_size:
        log("INFO", f"Resizing disk to {profile.disk_size}...")
        run(["qemu-img", "resize", str(cfg.image_path), profile.disk_size])
    return cfg.image_path


def qemu_command(cfg: VMConfig, use_kvm: bool) -> List[str]:
    cmd = [
        "qemu-system-x86_64",
        "-m",
        str(cfg.memory_mb),
        "-smp",
        str(cfg.nproc),
        "-drive",
        f"file={cfg.image_path},format=qcow2,if=virtio",
        "-nic",
        f"user,model=virtio-net-pci,hostfwd=tcp:127.0.0.1:{cfg.ssh_port}-:22",
    ]
    if use_kvm:
        cmd.extend(["-accel", "kvm", "-cpu", "host"])
    else:
        cmd.extend(["-accel", "tcg"])
    if cfg.display == "curses":
        cmd.extend(["-display", "curses"])
    else:
        cmd.append("-nographic")
    return cmd


class VirtualMachine:
    """One QEMU instance running inside a tmux session."""

    def __init__(self, cfg: VMConfig, session: Optional[TmuxSession] = None) -> None:
        self.cfg = cfg
        if session is None:
            session = TmuxSession(f"{TMUX_SESSION_PREFIX}-{os.getpid()}", cfg.transcript_path)
        self.session = session

    def start(self, cancel: Optional[CancelToken] = None) -> ConsoleDriver:
        if not self.cfg.image_path.exists():
            raise ManagerError(f"Disk image not found: {self.cfg.image_path}")
        use_kvm = kvm_available()
        if not use_kvm:
            log("WARN", "KVM not available; running under TCG (much slower)")
        self.session.start(qemu_command(self.cfg, use_kvm))
        log("SUCCESS", f"VM started ({self.cfg.memory_mb} MiB, {self.cfg.nproc} CPUs, ssh port {self.cfg.ssh_port})")
        return ConsoleDriver(
            self.session,
            poll_interval=self.cfg.poll_interval,
            timeout=self.cfg.console_timeout,
            cancel=cancel,
        )

    def alive(self) -> bool:
        return self.session.alive()

    def wait_until_stopped(self, timeout: float, interval: float = 1.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.session.alive():
                log("INFO", "VM process has exited")
                return True
            time.sleep(interval)
        return False

    def kill(self) -> None:
        if self.session.alive():
            log("WARN", f"Killing console session '{self.session.name}'")
            self.session.kill()
