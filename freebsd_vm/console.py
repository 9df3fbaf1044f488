"""tmux-backed console session and the keystroke/transcript driver."""

from __future__ import annotations

import re
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional, Union

from freebsd_vm.constants import DEFAULT_POLL_INTERVAL
from freebsd_vm.exceptions import ExpectTimeout, ManagerError, SessionClosed, WaitCancelled
from freebsd_vm.transcript import Expectation, FileTranscript, Transcript
from freebsd_vm.utils import ensure_directory, log, random_token, run


class CancelToken:
    """Cooperative cancellation shared by every wait of one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the token is cancelled."""
        return self._event.wait(seconds)


class TmuxSession:
    """A detached tmux session whose pane output is piped to a log file."""

    def __init__(self, name: str, transcript_path: Path, width: int = 120, height: int = 40) -> None:
        self.name = name
        self.transcript_path = transcript_path
        self.width = width
        self.height = height

    @property
    def target(self) -> str:
        # "=" forces an exact session-name match
        return f"={self.name}"

    def start(self, command: List[str]) -> None:
        if self.alive():
            raise ManagerError(f"tmux session '{self.name}' already exists")
        ensure_directory(self.transcript_path.parent)
        self.transcript_path.write_bytes(b"")
        try:
            run(
                [
                    "tmux",
                    "new-session",
                    "-d",
                    "-s",
                    self.name,
                    "-x",
                    str(self.width),
                    "-y",
                    str(self.height),
                    shlex.join(command),
                ]
            )
            run(
                [
                    "tmux",
                    "pipe-pane",
                    "-o",
                    "-t",
                    self.target,
                    f"cat >> {shlex.quote(str(self.transcript_path))}",
                ]
            )
        except FileNotFoundError as exc:
            raise ManagerError("tmux is required but was not found in PATH") from exc
        except subprocess.CalledProcessError as exc:
            raise ManagerError(f"Failed to start tmux session '{self.name}' (exit {exc.returncode})") from exc
        log("INFO", f"Console session '{self.name}' started (transcript: {self.transcript_path})")

    def alive(self) -> bool:
        try:
            result = run(
                ["tmux", "has-session", "-t", self.target],
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def send_keys(self, text: str) -> None:
        """Type ``text`` verbatim; each newline becomes an Enter key press."""
        lines = text.split("\n")
        for index, line in enumerate(lines):
            if line:
                run(["tmux", "send-keys", "-t", self.target, "-l", "--", line])
            if index < len(lines) - 1:
                run(["tmux", "send-keys", "-t", self.target, "Enter"])

    def kill(self) -> None:
        run(
            ["tmux", "kill-session", "-t", self.target],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )


def completion_expectation(token: str) -> Expectation:
    """Match the token as command output: at the start of a new row, allowing one stray character.

    A new row is either a line break or, under the curses display, a cursor
    move to column 1 (``ESC[row;1H``). In the echoed input line the token
    follows ``echo `` on the same row, so it never starts a row there.
    """
    return Expectation.pattern(
        r"(?:\r?\n|\x1b\[\d+;1H)[^\n]?" + re.escape(token),
        description=f"completion token {token}",
    )


class ConsoleDriver:
    """Sends keystrokes into a session and waits for text in its transcript."""

    def __init__(
        self,
        session,
        transcript: Optional[Transcript] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.session = session
        if transcript is None:
            transcript = FileTranscript(session.transcript_path)
        self.transcript = transcript
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.cancel = cancel or CancelToken()

    def send_keys(self, text: str) -> None:
        log("DEBUG", f"Console <- {text!r}")
        self.session.send_keys(text)

    def wait_for(
        self,
        pattern: Union[str, Expectation],
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """Block until ``pattern`` shows up in the transcript and return the matched text.

        ``timeout=None`` falls back to the driver default; when that is also
        None the wait never expires and only cancellation or the session
        exiting ends it.
        """
        expectation = pattern if isinstance(pattern, Expectation) else Expectation.literal(pattern)
        interval = self.poll_interval if poll_interval is None else poll_interval
        limit = self.timeout if timeout is None else timeout
        token = cancel or self.cancel
        deadline = None if limit is None else time.monotonic() + limit

        log("DEBUG", f"Waiting for '{expectation}'")
        while True:
            matched = self._match(expectation)
            if matched is not None:
                return matched
            if not self.session.alive():
                # output flushed just before exit may still hold the match
                matched = self._match(expectation)
                if matched is not None:
                    return matched
                raise SessionClosed(
                    f"Console session ended while waiting for '{expectation}'\n"
                    f"  last output: {self.transcript.tail()!r}"
                )
            if token.is_set():
                raise WaitCancelled(f"Cancelled while waiting for '{expectation}'")
            sleep_for = interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ExpectTimeout(
                        f"Timed out after {limit:.0f}s waiting for '{expectation}'\n"
                        f"  last output: {self.transcript.tail()!r}"
                    )
                sleep_for = min(interval, remaining)
            if token.wait(sleep_for):
                raise WaitCancelled(f"Cancelled while waiting for '{expectation}'")

    def _match(self, expectation: Expectation) -> Optional[str]:
        match = expectation.search(self.transcript.poll())
        if match is None:
            return None
        self.transcript.consume(match.end())
        log("DEBUG", f"Matched '{expectation}'")
        return match.group(0)

    def run_and_wait(self, command: str, timeout: Optional[float] = None) -> str:
        """Run a shell command on the console and block until it has finished."""
        token = random_token()
        self.send_keys(f"{command}; echo {token}\n")
        self.wait_for(completion_expectation(token), timeout=timeout)
        return token
