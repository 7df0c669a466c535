"""Output shaping — turn raw terminal bytes-as-text into something an LLM can read.

Two concerns live here: bounding the size of what a tool returns
(``truncate_output``) and stripping the parts of terminal output that only
make sense to a terminal emulator (``clean_terminal_text``).
"""

from __future__ import annotations

import os
import re
import tempfile

MAX_LINES = 2000
MAX_BYTES = 50 * 1024  # 50KB

OUTPUT_DIR = "~/.agentterm/tool-output"

# CSI (including private modes like ?2004h) and OSC (window titles, cwd hints)
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")

# C0 except tab/LF/CR, DEL and C1, interlinear annotation format chars
_BINARY_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufff9-\ufffb]")


def truncate_output(
    text: str,
    max_lines: int = MAX_LINES,
    max_bytes: int = MAX_BYTES,
    save_full: bool = True,
) -> str:
    """Bound terminal output to ``max_lines`` and ``max_bytes``.

    The tail is kept, since a failing build or test run reports at the end.
    When anything is dropped, a notice line is prepended and (with
    ``save_full``) the complete text is written under ``OUTPUT_DIR`` so the
    agent can page through it with other means.
    """
    if not text:
        return text

    lines = text.split("\n")
    total_bytes = len(text.encode("utf-8", errors="replace"))
    if len(lines) <= max_lines and total_bytes <= max_bytes:
        return text

    dropped_lines = max(0, len(lines) - max_lines)
    tail = "\n".join(lines[dropped_lines:]).encode("utf-8", errors="replace")

    dropped_bytes = max(0, len(tail) - max_bytes)
    # Slicing may land inside a multi-byte char; the partial lead is dropped
    body = tail[dropped_bytes:].decode("utf-8", errors="ignore")

    skipped = []
    if dropped_lines:
        skipped.append(f"{dropped_lines} lines skipped")
    if dropped_bytes:
        skipped.append(f"{dropped_bytes} bytes skipped")
    notice = (
        f"[Output truncated: {', '.join(skipped)}. "
        f"Total: {len(lines)} lines, {total_bytes} bytes]"
    )
    if save_full:
        notice += f"\n[Full output saved to: {_save_full(text)}]"
    return f"{notice}\n{body}"


def _save_full(text: str) -> str:
    out_dir = os.path.expanduser(OUTPUT_DIR)
    os.makedirs(out_dir, exist_ok=True)
    fd, path = tempfile.mkstemp(prefix="agentterm-", suffix=".txt", dir=out_dir)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)
    return path


def strip_ansi(text: str) -> str:
    """Strip ANSI CSI and OSC escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Drop control characters a terminal would not print.

    Tab, newline and carriage return survive; so does every printable
    code point, including non-ASCII text.
    """
    return _BINARY_RE.sub("", text)


def _collapse_overwrites(line: str) -> str:
    # A bare CR returns the cursor; only what was written last stays visible
    line = line.rstrip("\r")
    return line.rsplit("\r", 1)[-1]


def clean_terminal_text(text: str) -> str:
    """Render raw shell output roughly the way the user saw it.

    CRLF becomes LF, progress-bar style CR overwrites collapse to the
    final state, and escape sequences and binary noise are removed.
    """
    text = sanitize_binary_output(strip_ansi(text.replace("\r\n", "\n")))
    if "\r" not in text:
        return text
    return "\n".join(_collapse_overwrites(line) for line in text.split("\n"))
