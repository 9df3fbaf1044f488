#!/usr/bin/env python3
"""Validate the guest profile: schema correctness and mirror reachability."""

from __future__ import annotations

import sys
from pathlib import Path

import requests

from freebsd_vm.config import load_profile
from freebsd_vm.exceptions import ManagerError
from freebsd_vm.models import GuestProfile

PROFILE_PATH = Path(__file__).resolve().parents[2] / "freebsd_vm" / "profile.yaml"
REQUEST_TIMEOUT = 30
USER_AGENT = "freebsd-ci-vm/profile-validator (GitHub Actions)"


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # Some mirrors reject HEAD; fall back to GET with streaming
        if resp.status_code in (403, 405):
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
            if resp.status_code < 400:
                return None
        return f"HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"{exc.__class__.__name__}: {exc} for {url}"


def validate_mirrors(profile: GuestProfile) -> list[str]:
    errors: list[str] = []
    for url in profile.image_urls():
        for candidate in (url, url.rsplit("/", 1)[0] + "/CHECKSUM.SHA512"):
            err = check_url(candidate)
            if err:
                errors.append(err)
    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {PROFILE_PATH}")

    print("\n=== Phase 1: Schema validation ===")
    try:
        profile = load_profile(PROFILE_PATH)
    except ManagerError as exc:
        print(f"  ERROR: {exc}")
        return 1
    print(f"  OK: FreeBSD {profile.release}, {len(profile.mirrors)} mirrors, {len(profile.packages)} packages")

    print("\n=== Phase 2: Mirror reachability ===")
    url_errors = validate_mirrors(profile)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nMirror validation failed: {len(url_errors)} unreachable URL(s)")
        return 1
    print(f"  OK: all {len(profile.mirrors)} mirrors reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
