"""Tests for freebsd_vm.console module."""

from __future__ import annotations

import subprocess
import threading
from unittest.mock import MagicMock, call, patch

import pytest

from freebsd_vm.console import CancelToken, ConsoleDriver, TmuxSession, completion_expectation
from freebsd_vm.exceptions import ExpectTimeout, ManagerError, SessionClosed, WaitCancelled
from freebsd_vm.transcript import Expectation, MemoryTranscript


class FakeSession:
    def __init__(self, alive=True):
        self._alive = alive
        self.sent = []

    def alive(self):
        return self._alive

    def send_keys(self, text):
        self.sent.append(text)


def _driver(text="", alive=True, timeout=None, cancel=None):
    session = FakeSession(alive=alive)
    transcript = MemoryTranscript(text)
    return ConsoleDriver(session, transcript, poll_interval=0.001, timeout=timeout, cancel=cancel), session, transcript


class TestTmuxSession:
    def test_start_creates_session_and_pipe(self, tmp_path):
        log_path = tmp_path / "work" / "console.log"
        session = TmuxSession("vm-test", log_path)
        with (
            patch.object(session, "alive", return_value=False),
            patch("freebsd_vm.console.run") as mock_run,
        ):
            session.start(["qemu-system-x86_64", "-m", "2048"])
        assert log_path.exists()
        assert log_path.read_bytes() == b""
        new_session = mock_run.call_args_list[0].args[0]
        assert new_session[:5] == ["tmux", "new-session", "-d", "-s", "vm-test"]
        assert new_session[-1] == "qemu-system-x86_64 -m 2048"
        pipe = mock_run.call_args_list[1].args[0]
        assert pipe[:5] == ["tmux", "pipe-pane", "-o", "-t", "=vm-test"]
        assert pipe[-1] == f"cat >> {log_path}"

    def test_start_refuses_existing_session(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        with patch.object(session, "alive", return_value=True):
            with pytest.raises(ManagerError, match="already exists"):
                session.start(["true"])

    def test_start_without_tmux(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        with (
            patch.object(session, "alive", return_value=False),
            patch("freebsd_vm.console.run", side_effect=FileNotFoundError("tmux")),
        ):
            with pytest.raises(ManagerError, match="tmux is required"):
                session.start(["true"])

    def test_send_keys_splits_on_newlines(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        with patch("freebsd_vm.console.run") as mock_run:
            session.send_keys("root\n")
        assert mock_run.call_args_list == [
            call(["tmux", "send-keys", "-t", "=vm-test", "-l", "--", "root"]),
            call(["tmux", "send-keys", "-t", "=vm-test", "Enter"]),
        ]

    def test_send_keys_blank_line_is_just_enter(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        with patch("freebsd_vm.console.run") as mock_run:
            session.send_keys("\n")
        mock_run.assert_called_once_with(["tmux", "send-keys", "-t", "=vm-test", "Enter"])

    def test_send_keys_without_newline(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        with patch("freebsd_vm.console.run") as mock_run:
            session.send_keys("1")
        mock_run.assert_called_once_with(["tmux", "send-keys", "-t", "=vm-test", "-l", "--", "1"])

    def test_alive_reflects_has_session(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        done = subprocess.CompletedProcess(args=["tmux"], returncode=0)
        gone = subprocess.CompletedProcess(args=["tmux"], returncode=1)
        with patch("freebsd_vm.console.run", side_effect=[done, gone]):
            assert session.alive() is True
            assert session.alive() is False

    def test_alive_without_tmux(self, tmp_path):
        session = TmuxSession("vm-test", tmp_path / "console.log")
        with patch("freebsd_vm.console.run", side_effect=FileNotFoundError("tmux")):
            assert session.alive() is False


class TestWaitFor:
    def test_returns_when_pattern_present(self):
        driver, _, _ = _driver("Autoboot in 10 seconds")
        assert driver.wait_for("Autoboot in") == "Autoboot in"

    def test_consumes_through_match(self):
        driver, _, transcript = _driver("login: root\r\nlogin: ")
        driver.wait_for("login:")
        assert transcript.poll() == " root\r\nlogin: "
        driver.wait_for("login:")
        assert transcript.poll() == " "

    def test_earlier_output_not_rematched(self):
        driver, _, _ = _driver("root@freebsd:~ # ")
        driver.wait_for("root@")
        with pytest.raises(ExpectTimeout):
            driver.wait_for("root@", timeout=0.02)

    def test_accepts_expectation_objects(self):
        driver, _, _ = _driver("FreeBSD/amd64 (freebsd) (ttyv0)")
        assert driver.wait_for(Expectation.wildcard("(ttyv?)")) == "(ttyv0)"

    def test_pattern_arriving_later(self):
        driver, _, transcript = _driver("Booting...")
        timer = threading.Timer(0.05, transcript.feed, args=("\r\nlogin: ",))
        timer.start()
        try:
            assert driver.wait_for("login:", timeout=5) == "login:"
        finally:
            timer.cancel()

    def test_timeout_raises(self):
        driver, _, _ = _driver("nothing here")
        with pytest.raises(ExpectTimeout, match="waiting for 'login:'"):
            driver.wait_for("login:", timeout=0.05)

    def test_driver_default_timeout(self):
        driver, _, _ = _driver("nothing here", timeout=0.05)
        with pytest.raises(ExpectTimeout):
            driver.wait_for("login:")

    def test_unbounded_wait_blocks_until_pattern(self):
        driver, _, transcript = _driver("Booting...")
        result = {}

        def _wait():
            result["match"] = driver.wait_for("login:")

        waiter = threading.Thread(target=_wait, daemon=True)
        waiter.start()
        waiter.join(0.3)
        assert waiter.is_alive()
        assert "match" not in result

        transcript.feed("\r\nlogin: ")
        waiter.join(5)
        assert not waiter.is_alive()
        assert result["match"] == "login:"

    def test_cancel_interrupts_wait(self):
        cancel = CancelToken()
        driver, _, _ = _driver("Booting...", cancel=cancel)
        errors = []

        def _wait():
            try:
                driver.wait_for("login:")
            except WaitCancelled as exc:
                errors.append(exc)

        waiter = threading.Thread(target=_wait, daemon=True)
        waiter.start()
        waiter.join(0.1)
        assert waiter.is_alive()
        cancel.cancel()
        waiter.join(5)
        assert not waiter.is_alive()
        assert len(errors) == 1

    def test_per_call_cancel_token(self):
        driver, _, _ = _driver("Booting...")
        token = CancelToken()
        token.cancel()
        with pytest.raises(WaitCancelled):
            driver.wait_for("login:", cancel=token)

    def test_session_exit_raises(self):
        driver, _, _ = _driver("panic: page fault", alive=False)
        with pytest.raises(SessionClosed, match="panic: page fault"):
            driver.wait_for("login:")

    def test_match_flushed_before_exit(self):
        session = MagicMock()
        session.alive.return_value = False
        transcript = MagicMock()
        transcript.poll.side_effect = ["", "login: "]
        driver = ConsoleDriver(session, transcript, poll_interval=0.001)
        assert driver.wait_for("login:") == "login:"
        transcript.consume.assert_called_once_with(len("login:"))


class TestCompletionToken:
    def test_ignores_token_in_echoed_input(self):
        exp = completion_expectation("Zx81Qa")
        assert exp.search("root@freebsd:~ # service sshd restart; echo Zx81Qa") is None

    def test_matches_output_occurrence_only(self):
        text = "root@freebsd:~ # true; echo Zx81Qa\r\nZx81Qa\r\nroot@freebsd:~ # "
        match = completion_expectation("Zx81Qa").search(text)
        assert match is not None
        assert match.start() == text.index("\r\nZx81Qa")

    def test_tolerates_one_stray_character(self):
        exp = completion_expectation("Zx81Qa")
        assert exp.search("echo Zx81Qa\r\n\x0fZx81Qa")
        assert exp.search("echo Zx81Qa\n Zx81Qa")

    def test_rejects_two_stray_characters(self):
        exp = completion_expectation("Zx81Qa")
        assert exp.search("echo Zx81Qa\r\nxyZx81Qa") is None

    def test_curses_row_move_starts_output(self):
        text = "root@freebsd:~ # true; echo Zx81Qa\x1b[25;1HZx81Qa\x1b[26;1Hroot@freebsd:~ # "
        match = completion_expectation("Zx81Qa").search(text)
        assert match is not None
        assert match.start() == text.index("\x1b[25;1H")

    def test_curses_echoed_input_ignored(self):
        exp = completion_expectation("Zx81Qa")
        assert exp.search("\x1b[24;1Hroot@freebsd:~ # true; echo Zx81Qa") is None
        # cursor moved mid-row, not to column 1
        assert exp.search("\x1b[24;1Hroot@freebsd:~ # true; echo \x1b[24;28HZx81Qa") is None

    def test_curses_row_move_with_stray_character(self):
        exp = completion_expectation("Zx81Qa")
        assert exp.search("echo Zx81Qa\x1b[7;1H\x0fZx81Qa")
        assert exp.search("echo Zx81Qa\x1b[7;1H\x1b[KZx81Qa") is None


class TestRunAndWait:
    def test_appends_token_echo_and_waits_for_output(self):
        session = FakeSession()
        transcript = MemoryTranscript()
        driver = ConsoleDriver(session, transcript, poll_interval=0.001, timeout=5)

        def _echo(text):
            session.sent.append(text)
            line = text.rstrip("\n")
            token = line.rsplit(" ", 1)[1]
            transcript.feed(f"{line}\r\n{token}\r\nroot@freebsd:~ # ")

        session.send_keys = _echo
        with patch("freebsd_vm.console.random_token", return_value="Tok3n"):
            token = driver.run_and_wait("sysrc sshd_enable=YES")
        assert token == "Tok3n"
        assert session.sent == ["sysrc sshd_enable=YES; echo Tok3n\n"]
        assert transcript.poll() == "\r\nroot@freebsd:~ # "

    def test_curses_rendered_output(self):
        session = FakeSession()
        transcript = MemoryTranscript("\x1b[24;1Hroot@freebsd:~ # ")
        driver = ConsoleDriver(session, transcript, poll_interval=0.001, timeout=5)

        def _redraw(text):
            line = text.rstrip("\n")
            token = line.rsplit(" ", 1)[1]
            transcript.feed(f"{line}\x1b[25;1H{token}\x1b[26;1Hroot@freebsd:~ # ")

        session.send_keys = _redraw
        with patch("freebsd_vm.console.random_token", return_value="Tok3n"):
            assert driver.run_and_wait("true") == "Tok3n"
        assert transcript.poll() == "\x1b[26;1Hroot@freebsd:~ # "

    def test_times_out_when_only_input_is_echoed(self):
        session = FakeSession()
        transcript = MemoryTranscript()
        driver = ConsoleDriver(session, transcript, poll_interval=0.001)

        def _echo_only(text):
            transcript.feed(text.rstrip("\n"))

        session.send_keys = _echo_only
        with pytest.raises(ExpectTimeout, match="completion token"):
            driver.run_and_wait("sleep 1000", timeout=0.05)
