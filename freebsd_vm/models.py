"""Data models for freebsd-ci-vm."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from freebsd_vm.constants import TRANSCRIPT_NAME

_VERSION_PART_RE = re.compile(r"(\d+)")


class ProvisionState(Enum):
    VM_STARTED = "vm-started"
    BOOT_MENU_SELECTED = "boot-menu-selected"
    BOOTED = "booted"
    LOGIN_PROMPTED = "login-prompted"
    LOGGED_IN = "logged-in"
    NETWORK_CONFIGURED = "network-configured"
    PASSWORDLESS = "passwordless"
    READY = "ready"


class CachePlan(Enum):
    FRESH = "fresh"  # no cached image, full install
    REUSE = "reuse"  # cached image with identical tag snapshot
    UPDATE = "update"  # cached image, tag snapshot changed


def version_key(tag: str) -> Tuple:
    """Natural sort key: digit runs compare numerically, the rest as text."""
    parts = _VERSION_PART_RE.split(tag)
    return tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in parts if part)


@dataclass(frozen=True)
class TagSnapshot:
    """Version-sorted tag list, used only to detect change between runs."""

    tags: Tuple[str, ...] = ()

    @classmethod
    def from_lines(cls, lines: Iterable[str], presorted: bool = False) -> "TagSnapshot":
        tags = [line.strip() for line in lines if line.strip()]
        if not presorted:
            tags.sort(key=version_key)
        return cls(tuple(tags))

    @classmethod
    def parse(cls, text: str) -> "TagSnapshot":
        """Read a snapshot file verbatim; order is taken as stored."""
        return cls.from_lines(text.splitlines(), presorted=True)

    def serialize(self) -> str:
        if not self.tags:
            return ""
        return "\n".join(self.tags) + "\n"

    def __len__(self) -> int:
        return len(self.tags)


@dataclass
class CachedImage:
    archive: Path
    snapshot_file: Path

    def exists(self) -> bool:
        return self.archive.is_file()

    def snapshot(self) -> Optional[TagSnapshot]:
        if not self.snapshot_file.is_file():
            return None
        return TagSnapshot.parse(self.snapshot_file.read_text())


@dataclass
class GuestProfile:
    release: str
    mirrors: List[str]
    image_file: str
    boot_menu_prompt: str
    boot_menu_keys: str
    banner: str
    login_prompt: str
    shell_prompt: str
    password_prompt: str
    rc_conf: List[str] = field(default_factory=list)
    sshd_config: List[str] = field(default_factory=list)
    restart_services: List[str] = field(default_factory=list)
    update_commands: List[str] = field(default_factory=list)
    packages: List[str] = field(default_factory=list)
    image_sha512: Optional[str] = None
    disk_size: Optional[str] = None

    def image_urls(self) -> List[str]:
        return [mirror.rstrip("/") + "/" + self.image_file for mirror in self.mirrors]


@dataclass
class VMConfig:
    ssh_port: int
    nproc: int
    memory_mb: int
    cache_dir: Path
    work_dir: Path
    image_name: str
    profile: GuestProfile
    source_dir: Path
    build_command: str
    poll_interval: float
    console_timeout: Optional[float]
    ssh_timeout: float
    shutdown_timeout: float
    display: str = "curses"

    @property
    def image_path(self) -> Path:
        return self.work_dir / f"{self.image_name}.qcow2"

    @property
    def transcript_path(self) -> Path:
        return self.work_dir / TRANSCRIPT_NAME
