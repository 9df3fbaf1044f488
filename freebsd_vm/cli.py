"""CLI entry points for freebsd-ci-vm."""

from __future__ import annotations

import argparse
import dataclasses
import shutil
import signal
from typing import List, Optional

from freebsd_vm.cache import CacheManager, capture_tag_snapshot
from freebsd_vm.config import parse_env
from freebsd_vm.console import CancelToken
from freebsd_vm.constants import GUEST_SOURCE_DIR
from freebsd_vm.exceptions import ManagerError
from freebsd_vm.models import VMConfig
from freebsd_vm.orchestrator import Provisioner
from freebsd_vm.utils import kvm_available, log

REQUIRED_TOOLS = ("tmux", "qemu-system-x86_64", "qemu-img", "ssh", "git", "tar")


def show_config(cfg: VMConfig) -> None:
    """Print the resolved configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                print(f"    {sub_field.name}: {getattr(value, sub_field.name)}")
        else:
            print(f"  {field.name}: {value}")


def run_build(cfg: VMConfig, provisioner: Provisioner) -> int:
    """Boot the prepared image, copy the source tree in and run the build."""
    provisioner.boot()
    try:
        provisioner.check_cancelled()
        excludes = [str(path) for path in (cfg.cache_dir, cfg.work_dir) if not path.is_absolute()]
        provisioner.remote.upload_tree(cfg.source_dir, GUEST_SOURCE_DIR, exclude=excludes)
        result = provisioner.remote.run(cfg.build_command, check=False)
    finally:
        provisioner.power_off()
    if result.returncode != 0:
        log("ERROR", f"Build failed in guest (exit {result.returncode})")
    else:
        log("SUCCESS", "Build succeeded in guest")
    return result.returncode


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision, cache and build in a FreeBSD CI virtual machine")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and environment, then exit")
    parser.add_argument("--prepare-only", action="store_true", help="Prepare the cached image but skip the build")
    args = parser.parse_args(argv)

    try:
        cfg = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    try:
        snapshot = capture_tag_snapshot(cfg.source_dir)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    cache = CacheManager(cfg)

    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== Environment Checks ===")
        for tool in REQUIRED_TOOLS:
            if shutil.which(tool):
                log("SUCCESS", f"{tool}: found")
            else:
                log("ERROR", f"{tool}: NOT FOUND")
        if kvm_available():
            log("SUCCESS", "KVM: available (/dev/kvm)")
        else:
            log("WARN", "KVM: NOT available (will use TCG)")
        log("INFO", f"Tags: {len(snapshot)} | cache decision: {cache.plan(snapshot).value}")
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return 0

    cancel = CancelToken()

    def _request_cancel(signum, frame):
        log("WARN", f"{signal.Signals(signum).name} received, aborting")
        cancel.cancel()

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    provisioner = Provisioner(cfg, cancel=cancel)
    try:
        cache.ensure_image(provisioner, snapshot)
        if args.prepare_only:
            return 0
        return run_build(cfg, provisioner)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        provisioner.vm.kill()
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)
