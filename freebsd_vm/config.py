"""Configuration loading and environment variable parsing for freebsd-ci-vm."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from freebsd_vm.constants import (
    DEFAULT_BUILD_COMMAND,
    DEFAULT_CACHE_DIR,
    DEFAULT_CONSOLE_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PROFILE_PATH,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SSH_TIMEOUT,
    DEFAULT_WORK_DIR,
    IMAGE_NAME_RE,
    SHA512_RE,
)
from freebsd_vm.exceptions import ManagerError
from freebsd_vm.models import GuestProfile, VMConfig
from freebsd_vm.utils import get_env, parse_float_env, parse_int_env

_REQUIRED_CONSOLE_KEYS = (
    "boot_menu_prompt",
    "boot_menu_keys",
    "banner",
    "login_prompt",
    "shell_prompt",
    "password_prompt",
)


def _string_list(section: Dict[str, Any], key: str, where: str) -> List[str]:
    value = section.get(key) or []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ManagerError(f"Profile '{where}.{key}' must be a list of strings")
    return list(value)


def load_profile(config_path: Optional[Path] = None) -> GuestProfile:
    if config_path is None:
        config_path = DEFAULT_PROFILE_PATH
    if not config_path.exists():
        raise ManagerError(f"Guest profile missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Guest profile {config_path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ManagerError(f"Guest profile {config_path} must contain a YAML mapping")

    release = str(data.get("release") or "").strip()
    if not release:
        raise ManagerError("Profile is missing 'release'")

    image = data.get("image") or {}
    console = data.get("console") or {}
    guest = data.get("guest") or {}
    for name, section in (("image", image), ("console", console), ("guest", guest)):
        if not isinstance(section, dict):
            raise ManagerError(f"Profile section '{name}' must be a mapping")

    image_file = str(image.get("file") or "").strip()
    if not image_file:
        raise ManagerError("Profile is missing 'image.file'")
    mirrors = [m.format(release=release) for m in _string_list(image, "mirrors", "image")]
    if not mirrors:
        raise ManagerError("Profile must list at least one mirror under 'image.mirrors'")

    sha512 = str(image.get("sha512") or "").strip().lower() or None
    if sha512 is not None and not SHA512_RE.match(sha512):
        raise ManagerError("Profile 'image.sha512' must be 128 hexadecimal characters")

    missing = [key for key in _REQUIRED_CONSOLE_KEYS if not console.get(key)]
    if missing:
        raise ManagerError(f"Profile 'console' section is missing: {', '.join(missing)}")

    disk_size = image.get("disk_size")
    return GuestProfile(
        release=release,
        mirrors=mirrors,
        image_file=image_file.format(release=release),
        boot_menu_prompt=str(console["boot_menu_prompt"]),
        boot_menu_keys=str(console["boot_menu_keys"]),
        banner=str(console["banner"]),
        login_prompt=str(console["login_prompt"]),
        shell_prompt=str(console["shell_prompt"]),
        password_prompt=str(console["password_prompt"]),
        rc_conf=_string_list(guest, "rc_conf", "guest"),
        sshd_config=_string_list(guest, "sshd_config", "guest"),
        restart_services=_string_list(guest, "restart_services", "guest"),
        update_commands=_string_list(guest, "update_commands", "guest"),
        packages=_string_list(guest, "packages", "guest"),
        image_sha512=sha512,
        disk_size=str(disk_size) if disk_size else None,
    )


def parse_env() -> VMConfig:
    profile_env = get_env("PROFILE")
    profile = load_profile(Path(profile_env) if profile_env else None)

    ssh_port = parse_int_env("SSH_PORT", "2222", min_val=1, max_val=65535)
    nproc = parse_int_env("NPROC", str(os.cpu_count() or 1))
    memory_mb = parse_int_env("MEMORY", "2048", min_val=256)

    image_name = (get_env("IMAGE_NAME") or "").strip() or f"freebsd-{profile.release}"
    if not IMAGE_NAME_RE.match(image_name):
        raise ManagerError(f"IMAGE_NAME may only contain letters, digits, '.', '_' and '-' (got '{image_name}')")

    cache_dir = Path(get_env("CACHE_DIR") or DEFAULT_CACHE_DIR)
    work_dir = Path(get_env("WORK_DIR") or DEFAULT_WORK_DIR)
    source_dir = Path(get_env("SOURCE_DIR") or ".")

    build_command = get_env("BUILD_COMMAND") or DEFAULT_BUILD_COMMAND
    build_command = build_command.replace("{nproc}", str(nproc))

    poll_interval = parse_float_env("POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))
    # 0 disables the console deadline and waits indefinitely
    console_timeout_raw = parse_int_env("CONSOLE_TIMEOUT", str(DEFAULT_CONSOLE_TIMEOUT), min_val=0)
    console_timeout: Optional[float] = float(console_timeout_raw) if console_timeout_raw else None
    ssh_timeout = float(parse_int_env("SSH_TIMEOUT", str(DEFAULT_SSH_TIMEOUT)))
    shutdown_timeout = float(parse_int_env("SHUTDOWN_TIMEOUT", str(DEFAULT_SHUTDOWN_TIMEOUT)))

    display = (get_env("QEMU_DISPLAY") or "curses").strip().lower()
    if display not in {"curses", "nographic"}:
        raise ManagerError(f"Unsupported QEMU_DISPLAY '{display}'. Expected curses or nographic.")

    return VMConfig(
        ssh_port=ssh_port,
        nproc=nproc,
        memory_mb=memory_mb,
        cache_dir=cache_dir,
        work_dir=work_dir,
        image_name=image_name,
        profile=profile,
        source_dir=source_dir,
        build_command=build_command,
        poll_interval=poll_interval,
        console_timeout=console_timeout,
        ssh_timeout=ssh_timeout,
        shutdown_timeout=shutdown_timeout,
        display=display,
    )
