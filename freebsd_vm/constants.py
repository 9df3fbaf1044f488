"""Global constants and path configuration for freebsd-ci-vm."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_PROFILE_PATH = PACKAGE_DIR / "profile.yaml"

DEFAULT_CACHE_DIR = Path(".vm-cache")
DEFAULT_WORK_DIR = Path(".vm-work")
TAG_SNAPSHOT_NAME = "tags.txt"
ARCHIVE_SUFFIX = ".tgz"

TMUX_SESSION_PREFIX = "freebsd-vm"
TRANSCRIPT_NAME = "console.log"

GUEST_USER = "root"
GUEST_SOURCE_DIR = "/root/src"
DEFAULT_BUILD_COMMAND = "cd /root/src && ./configure && gmake -j{nproc} && gmake check"

TOKEN_LENGTH = 16
TOKEN_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_CONSOLE_TIMEOUT = 1800
DEFAULT_SSH_TIMEOUT = 600
DEFAULT_SHUTDOWN_TIMEOUT = 300

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

SHA512_RE = re.compile(r"^[0-9a-f]{128}$")
IMAGE_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")

SSH_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "LogLevel=ERROR",
    "-o",
    "ConnectTimeout=10",
)
