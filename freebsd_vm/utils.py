"""Utility functions for freebsd-ci-vm."""

from __future__ import annotations

import hashlib
import lzma
import os
import random
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from freebsd_vm.constants import (
    _LOG_VERBOSE,
    TOKEN_ALPHABET,
    TOKEN_LENGTH,
    TRUTHY,
)
from freebsd_vm.exceptions import ChecksumMismatch, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level prefixes."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ManagerError(f"{name} must be a number (got '{raw}')")
    if value <= min_val:
        raise ManagerError(f"{name} must be > {min_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def random_token(length: int = TOKEN_LENGTH) -> str:
    """Return a random alphanumeric string used to mark command completion."""
    rng = random.SystemRandom()
    return "".join(rng.choice(TOKEN_ALPHABET) for _ in range(length))


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress line using urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "freebsd-ci-vm/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(f"\r  {pct:5.1f}% {downloaded_mb:.1f} MiB", end="", flush=True)
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise


def sha512_file(path: Path) -> str:
    digest = hashlib.sha512()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_sha512(path: Path, expected: str) -> None:
    """Raise ChecksumMismatch unless ``path`` hashes to ``expected``."""
    actual = sha512_file(path)
    if actual != expected.lower():
        raise ChecksumMismatch(
            f"SHA-512 mismatch for {path.name}\n"
            f"  expected: {expected.lower()}\n"
            f"  actual:   {actual}"
        )
    log("SUCCESS", f"Checksum verified for {path.name}")


def decompress_xz(archive: Path, destination: Path) -> Path:
    """Decompress an ``.xz`` file to ``destination`` and remove the archive."""
    log("INFO", f"Decompressing {archive.name}...")
    tmp_path = destination.with_name(destination.name + ".part")
    try:
        with lzma.open(archive, "rb") as src, open(tmp_path, "wb") as dst:
            shutil.copyfileobj(src, dst, 1024 * 1024)
    except (lzma.LZMAError, OSError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise ManagerError(f"Failed to decompress {archive}: {exc}") from exc
    tmp_path.replace(destination)
    archive.unlink(missing_ok=True)
    return destination


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
