"""Binds the agent loop to one bridge session."""

from __future__ import annotations

from typing import Protocol

from shellpilot.terminal.bridge import SessionBridge
from shellpilot.terminal.capture import CaptureResult


class CommandExecutor(Protocol):
    async def run_command(self, command: str) -> CaptureResult: ...

    async def send_keys(self, keys: str) -> CaptureResult: ...

    def abort(self) -> bool: ...


class SessionExecutor:
    def __init__(self, bridge: SessionBridge, session_id: str) -> None:
        self.bridge = bridge
        self.session_id = session_id

    async def run_command(self, command: str) -> CaptureResult:
        return await self.bridge.run_command(self.session_id, command)

    async def send_keys(self, keys: str) -> CaptureResult:
        return await self.bridge.send_keys(self.session_id, keys)

    def abort(self) -> bool:
        return self.bridge.abort_capture(self.session_id)
