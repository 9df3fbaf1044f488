"""freebsd-ci-vm package."""

__all__ = [
    "cache",
    "cli",
    "config",
    "console",
    "constants",
    "exceptions",
    "models",
    "orchestrator",
    "qemu",
    "ssh",
    "transcript",
    "utils",
]
