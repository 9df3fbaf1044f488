"""Console transcripts and the expectations matched against them.

A transcript is the only view into a guest that has no network yet: the
terminal multiplexer appends everything the VM renders to a log file, and
the console driver polls that log.  Readers keep a cursor so that text
consumed by one wait is never matched again by the next one.
"""

from __future__ import annotations

import codecs
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Pattern


@dataclass(frozen=True)
class Expectation:
    """A pattern that must appear in the transcript before the driver proceeds."""

    description: str
    regex: Pattern[str]

    @classmethod
    def literal(cls, text: str) -> "Expectation":
        if not text:
            raise ValueError("expectation text must not be empty")
        return cls(text, re.compile(re.escape(text)))

    @classmethod
    def wildcard(cls, text: str) -> "Expectation":
        """``*`` matches any run of characters on one line, ``?`` exactly one."""
        if not text:
            raise ValueError("expectation text must not be empty")
        if not text.strip("*?"):
            raise ValueError(f"wildcard '{text}' has no literal character")
        parts = []
        for char in text:
            if char == "*":
                parts.append("[^\n]*?")
            elif char == "?":
                parts.append("[^\n]")
            else:
                parts.append(re.escape(char))
        return cls(text, re.compile("".join(parts)))

    @classmethod
    def pattern(cls, regex: str, description: Optional[str] = None) -> "Expectation":
        return cls(description or regex, re.compile(regex))

    def search(self, text: str) -> Optional[re.Match]:
        return self.regex.search(text)

    def __str__(self) -> str:
        return self.description


class Transcript:
    """Base reader: ``poll()`` returns unconsumed text, ``consume()`` drops a prefix."""

    def __init__(self) -> None:
        self._pending = ""

    def _read_more(self) -> str:
        raise NotImplementedError

    def poll(self) -> str:
        self._pending += self._read_more()
        return self._pending

    def consume(self, count: int) -> None:
        self._pending = self._pending[count:]

    def tail(self, limit: int = 400) -> str:
        return self._pending[-limit:]


class FileTranscript(Transcript):
    """Reads a log file that another process keeps appending to."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self.offset = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _read_more(self) -> str:
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                data = f.read()
        except FileNotFoundError:
            return ""
        self.offset += len(data)
        # a multi-byte sequence split across reads is held back by the decoder
        return self._decoder.decode(data)


class MemoryTranscript(Transcript):
    """In-memory transcript fed by a test or another thread."""

    def __init__(self, initial: str = "") -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._incoming = initial

    def feed(self, text: str) -> None:
        with self._lock:
            self._incoming += text

    def _read_more(self) -> str:
        with self._lock:
            data, self._incoming = self._incoming, ""
        return data
