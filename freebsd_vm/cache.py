"""Cached disk image handling keyed on the repository tag snapshot."""

from __future__ import annotations

import subprocess
import tarfile
import tempfile
from pathlib import Path, PurePosixPath

from freebsd_vm.constants import ARCHIVE_SUFFIX, TAG_SNAPSHOT_NAME
from freebsd_vm.exceptions import ManagerError
from freebsd_vm.models import CachedImage, CachePlan, TagSnapshot, VMConfig
from freebsd_vm.qemu import fetch_base_image
from freebsd_vm.utils import ensure_directory, log, run


def capture_tag_snapshot(repo_dir: Path) -> TagSnapshot:
    """Return the repository's tags sorted in version order."""
    try:
        result = run(["git", "-C", str(repo_dir), "tag", "--list"], capture_output=True)
    except FileNotFoundError as exc:
        raise ManagerError("git is required but was not found in PATH") from exc
    except subprocess.CalledProcessError as exc:
        raise ManagerError(f"Could not list git tags in {repo_dir}: {(exc.stderr or '').strip()}") from exc
    return TagSnapshot.from_lines(result.stdout.splitlines())


class CacheManager:
    """Chooses between fresh install, plain reuse and incremental update."""

    def __init__(self, cfg: VMConfig) -> None:
        self.cfg = cfg
        self.cached = CachedImage(
            archive=cfg.cache_dir / f"{cfg.image_name}{ARCHIVE_SUFFIX}",
            snapshot_file=cfg.cache_dir / TAG_SNAPSHOT_NAME,
        )

    def plan(self, current: TagSnapshot) -> CachePlan:
        if not self.cached.exists():
            return CachePlan.FRESH
        if self.cached.snapshot() == current:
            return CachePlan.REUSE
        return CachePlan.UPDATE

    def restore(self) -> Path:
        """Unpack the cached archive into the work directory."""
        ensure_directory(self.cfg.work_dir)
        log("INFO", f"Restoring cached image {self.cached.archive}")
        try:
            with tarfile.open(self.cached.archive, "r:gz") as tar:
                members = tar.getmembers()
                for member in members:
                    path = PurePosixPath(member.name)
                    if path.is_absolute() or ".." in path.parts or not (member.isfile() or member.isdir()):
                        raise ManagerError(f"Refusing unsafe archive member '{member.name}'")
                tar.extractall(self.cfg.work_dir, members=members)
        except (tarfile.TarError, OSError) as exc:
            raise ManagerError(f"Failed to unpack {self.cached.archive}: {exc}") from exc
        if not self.cfg.image_path.exists():
            raise ManagerError(f"{self.cached.archive} does not contain {self.cfg.image_path.name}")
        return self.cfg.image_path

    def archive(self, snapshot: TagSnapshot) -> None:
        """Store the work image and its tag snapshot in the cache directory."""
        ensure_directory(self.cfg.cache_dir)
        image = self.cfg.image_path
        log("INFO", f"Archiving {image.name} to {self.cached.archive}")
        with tempfile.NamedTemporaryFile(delete=False, dir=self.cfg.cache_dir, suffix=".part") as tmp:
            tmp_path = Path(tmp.name)
        try:
            with tarfile.open(tmp_path, "w:gz") as tar:
                tar.add(image, arcname=image.name)
            tmp_path.replace(self.cached.archive)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
        self.cached.snapshot_file.write_text(snapshot.serialize())
        log("SUCCESS", f"Cached image updated ({len(snapshot)} tags)")

    def ensure_image(self, provisioner, snapshot: TagSnapshot) -> CachePlan:
        plan = self.plan(snapshot)
        log("INFO", f"Cache decision: {plan.value}")
        if plan is CachePlan.REUSE:
            self.restore()
            return plan

        if plan is CachePlan.FRESH:
            fetch_base_image(self.cfg)
            provisioner.install()
        else:
            self.restore()
            provisioner.update()
        provisioner.power_off()
        provisioner.check_cancelled()
        self.archive(snapshot)
        return plan
