"""Custom exceptions for freebsd-ci-vm."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ChecksumMismatch(ManagerError):
    """Downloaded base image does not match its pinned digest."""


class ExpectTimeout(ManagerError):
    """An expected console string did not appear before the deadline."""


class WaitCancelled(ManagerError):
    """A console wait was interrupted through its cancel token."""


class SessionClosed(ManagerError):
    """The terminal session exited while output was still expected."""


class RemoteCommandError(ManagerError):
    """A command run over SSH exited with a non-zero status."""

    def __init__(self, command: str, returncode: int) -> None:
        super().__init__(f"Remote command failed (exit {returncode}): {command}")
        self.command = command
        self.returncode = returncode
