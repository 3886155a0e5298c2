"""Keystroke translation, output scrubbing and sentinel command helpers."""

from __future__ import annotations

import re
import secrets

KEY_MAP: dict[str, str] = {
    "Enter": "\r",
    "Return": "\r",
    "Tab": "\t",
    "Escape": "\x1b",
    "Esc": "\x1b",
    "Backspace": "\x7f",
    "Delete": "\x1b[3~",
    "Up": "\x1b[A",
    "Down": "\x1b[B",
    "Right": "\x1b[C",
    "Left": "\x1b[D",
    "Home": "\x1b[H",
    "End": "\x1b[F",
    "PageUp": "\x1b[5~",
    "PageDown": "\x1b[6~",
    "Ctrl+C": "\x03",
    "Ctrl+D": "\x04",
    "Ctrl+Z": "\x1a",
    "Ctrl+L": "\x0c",
    "Ctrl+A": "\x01",
    "Ctrl+E": "\x05",
    "Ctrl+K": "\x0b",
    "Ctrl+U": "\x15",
    "Ctrl+W": "\x17",
    "Ctrl+R": "\x12",
    "Space": " ",
}

SENTINEL_PREFIX = "__SHELLPILOT_DONE_"

_ANSI_PATTERNS = (
    re.compile(r"\x1b\[[?=>!]?[0-9;]*[a-zA-Z]"),
    re.compile(r"\x9b[0-9;]*[a-zA-Z]"),
    re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)"),
    re.compile(r"\x1b[()][A-Z0-9]"),
    re.compile(r"\x1b[>=<~}|]"),
    re.compile(r"\x1b\[[0-9;]*[ -/]*[@-~]"),
    # CSI fragments whose ESC byte was split into a previous chunk.
    re.compile(r"\[\?[0-9;]*[a-zA-Z]|\[[0-9;]+[a-zA-Z]"),
)
_MARKER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def translate_keys(keys: str) -> str:
    """Turn ``"y Enter"`` style key specs into the bytes a terminal expects.

    Tokens are separated by whitespace; symbolic names from ``KEY_MAP`` are
    replaced, anything else is sent literally. Tokens are joined with no
    separator, so ``"ls Space -la Enter"`` types ``ls -la`` and presses Enter.
    """
    return "".join(KEY_MAP.get(token, token) for token in keys.split())


def strip_ansi(text: str) -> str:
    cleaned = text
    for pattern in _ANSI_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned.replace("\r", "")


def new_marker() -> str:
    return f"{SENTINEL_PREFIX}{secrets.token_hex(6).upper()}__"


def validate_marker(marker: str) -> str:
    if not _MARKER_PATTERN.match(marker):
        raise ValueError(f"Sentinel marker must be a plain word: {marker!r}")
    return marker


def build_sentinel_command(command: str, marker: str) -> str:
    return f"{command}; echo {validate_marker(marker)}\n"


def find_marker(cleaned: str, marker: str) -> int:
    """Index of the line break preceding ``marker``, or -1."""
    return cleaned.find("\n" + marker)


def extract_command_output(cleaned: str, marker_index: int) -> str:
    # The first line is the shell echoing the command back.
    before = cleaned[:marker_index]
    first_newline = before.find("\n")
    if first_newline >= 0:
        return before[first_newline + 1 :].strip()
    return before.strip()
