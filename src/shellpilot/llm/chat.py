"""Plain chat mode: command-tagged answers without driving the terminal."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable

from typing_extensions import TypedDict

CHAT_SYSTEM_PROMPT = (
    "You are a Linux/macOS expert. Every time you mention a terminal command, you must wrap it in "
    "<cmd> and </cmd> tags. Example: Use <cmd>ls -la</cmd> to list files."
)
CHAT_PROVIDERS = ("gemini", "claude")
DEFAULT_CHAT_PROVIDER = "gemini"

_CMD_TAG = re.compile(r"<cmd>(.*?)</cmd>", re.DOTALL)


class ChatTurn(TypedDict):
    role: str
    text: str


ChatCall = Callable[[str, list[ChatTurn]], Awaitable[str]]


def chat_turn(role: str, text: str) -> ChatTurn:
    return {"role": "model" if role == "model" else "user", "text": text}


def extract_commands(text: str) -> list[str]:
    """Commands the model tagged with ``<cmd>``, in order, blanks skipped."""
    commands: list[str] = []
    for match in _CMD_TAG.finditer(text):
        command = match.group(1).strip()
        if command:
            commands.append(command)
    return commands
