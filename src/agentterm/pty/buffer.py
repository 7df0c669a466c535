"""Rolling output buffer for terminal sessions."""

from __future__ import annotations

import re
import threading

from agentterm.tool.truncation import clean_terminal_text

DEFAULT_CAPACITY = 100_000  # bytes


class OutputBuffer:
    """Thread-safe, byte-capped rolling buffer of raw shell output.

    Holds at most ``capacity`` bytes. When an append overflows the cap the
    oldest bytes are evicted first, so the buffer always holds the most
    recent window of output exactly as the shell produced it (ANSI escape
    sequences included).

    Eviction works on bytes and may cut a multi-byte UTF-8 sequence at the
    head of the window. ``text()`` skips such a dangling prefix. Command
    capture never reads from here, it taps the live output stream, so
    eviction only affects passive inspection.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._data = bytearray()
        self._total_bytes: int = 0  # Total bytes ever appended
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        """Append raw bytes, evicting the oldest bytes beyond capacity."""
        if not data:
            return
        with self._lock:
            self._data.extend(data)
            self._total_bytes += len(data)
            overflow = len(self._data) - self._capacity
            if overflow > 0:
                del self._data[:overflow]

    def snapshot(self) -> bytes:
        """Return the current buffered bytes."""
        with self._lock:
            return bytes(self._data)

    def text(self) -> str:
        """Decode the buffered bytes as UTF-8 text."""
        data = self.snapshot()
        # Skip continuation bytes orphaned by eviction
        start = 0
        while start < len(data) and start < 3 and (data[start] & 0xC0) == 0x80:
            start += 1
        return data[start:].decode("utf-8", errors="replace")

    def tail_lines(self, n: int = 100) -> list[str]:
        """Last N lines, ANSI-stripped and sanitized for an agent to read."""
        cleaned = self._cleaned_lines()
        return cleaned[-n:] if len(cleaned) > n else cleaned

    def search(self, pattern: str, limit: int = 50) -> list[tuple[int, str]]:
        """Search cleaned lines for a regex pattern.

        Returns list of (line_number, line_text) tuples.
        """
        try:
            compiled = re.compile(pattern)
        except re.error:
            return []

        results = []
        for i, line in enumerate(self._cleaned_lines()):
            if compiled.search(line):
                results.append((i, line))
                if len(results) >= limit:
                    break
        return results

    def _cleaned_lines(self) -> list[str]:
        return clean_terminal_text(self.text()).split("\n")

    @property
    def size(self) -> int:
        """Current number of bytes in the buffer."""
        with self._lock:
            return len(self._data)

    @property
    def total_bytes(self) -> int:
        """Total number of bytes ever appended."""
        with self._lock:
            return self._total_bytes

    @property
    def capacity(self) -> int:
        return self._capacity

    def clear(self) -> None:
        """Clear the buffer."""
        with self._lock:
            self._data.clear()
            self._total_bytes = 0

    def __len__(self) -> int:
        return self.size
