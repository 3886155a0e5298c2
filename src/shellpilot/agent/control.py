"""Cooperative pause/resume/stop control for one agent run."""

from __future__ import annotations

import asyncio
from enum import Enum


class RunPhase(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class RunControl:
    """Three-state run control observed by the agent loop at each iteration.

    ``request_pause`` only takes effect when the loop reaches ``checkpoint``.
    ``stop`` is a one-way latch: it wakes a paused checkpoint and every later
    checkpoint reports that the run must end.
    """

    def __init__(self) -> None:
        self._phase = RunPhase.RUNNING
        self._pause_requested = False
        self._changed = asyncio.Event()

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def paused(self) -> bool:
        return self._phase == RunPhase.PAUSED

    @property
    def stopped(self) -> bool:
        return self._phase == RunPhase.STOPPED

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    def request_pause(self) -> bool:
        if self._phase != RunPhase.RUNNING or self._pause_requested:
            return False
        self._pause_requested = True
        return True

    def resume(self) -> bool:
        self._pause_requested = False
        if self._phase != RunPhase.PAUSED:
            return False
        self._phase = RunPhase.RUNNING
        self._changed.set()
        return True

    def stop(self) -> bool:
        if self._phase == RunPhase.STOPPED:
            return False
        self._phase = RunPhase.STOPPED
        self._pause_requested = False
        self._changed.set()
        return True

    async def checkpoint(self) -> bool:
        """Block while paused; True when the run may continue."""
        if self._phase == RunPhase.STOPPED:
            return False
        if self._pause_requested:
            self._pause_requested = False
            self._phase = RunPhase.PAUSED
        while self._phase == RunPhase.PAUSED:
            self._changed.clear()
            await self._changed.wait()
        return self._phase == RunPhase.RUNNING
