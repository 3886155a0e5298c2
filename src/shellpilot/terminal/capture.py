"""Sentinel and quiescence-window capture over a live terminal output stream."""

from __future__ import annotations

import asyncio
import logging as py_logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from shellpilot.errors import ExitCode, ShellPilotError
from shellpilot.terminal.keys import (
    build_sentinel_command,
    extract_command_output,
    find_marker,
    new_marker,
    strip_ansi,
    translate_keys,
)

logger = py_logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_KEYS_WINDOW = 3.0
ABORTED_TEXT = "(aborted by user)"
NO_KEYS_OUTPUT_TEXT = "(no visible output after sending keys)"
NOT_CONNECTED_TEXT = "Error: terminal not connected"


def timeout_text(seconds: float) -> str:
    return f"(command timed out after {seconds:g}s — it may be waiting for input)"


class CaptureMode(str, Enum):
    SENTINEL = "sentinel"
    SAMPLE = "sample"


class CaptureStatus(str, Enum):
    DONE = "done"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass(frozen=True)
class CaptureResult:
    mode: CaptureMode
    status: CaptureStatus
    output: str

    @property
    def timed_out(self) -> bool:
        return self.status == CaptureStatus.TIMEOUT


@dataclass
class CaptureRequest:
    mode: CaptureMode
    future: asyncio.Future[CaptureResult]
    marker: str = ""
    deadline: float = 0.0
    buffer: list[str] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None

    def text(self) -> str:
        return "".join(self.buffer)


Writer = Callable[[str], None]


class OutputCapture:
    """One pending capture at a time over a session's output stream.

    ``feed`` must be called with every output chunk in arrival order. The
    display path keeps receiving the raw stream; this object only buffers a
    copy while a request is pending. Each request resolves exactly once: by
    marker match, deadline, explicit ``abort`` or a write failure.
    """

    def __init__(self, writer: Writer) -> None:
        self._writer = writer
        self._pending: CaptureRequest | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    async def run_command(
        self,
        command: str,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        marker: str | None = None,
    ) -> CaptureResult:
        resolved_marker = marker or new_marker()
        payload = build_sentinel_command(command, resolved_marker)
        request = self._begin(CaptureMode.SENTINEL, timeout, marker=resolved_marker)
        logger.debug("capture-event step=start mode=sentinel marker=%s timeout=%s", resolved_marker, timeout)
        return await self._send_and_wait(request, payload)

    async def send_keys(self, keys: str, *, window: float = DEFAULT_KEYS_WINDOW) -> CaptureResult:
        payload = translate_keys(keys)
        request = self._begin(CaptureMode.SAMPLE, window)
        logger.debug("capture-event step=start mode=sample window=%s bytes=%s", window, len(payload))
        return await self._send_and_wait(request, payload)

    def feed(self, chunk: str) -> None:
        request = self._pending
        if request is None or not chunk:
            return
        request.buffer.append(chunk)
        if request.mode != CaptureMode.SENTINEL:
            return
        cleaned = strip_ansi(request.text())
        index = find_marker(cleaned, request.marker)
        if index >= 0:
            self._resolve(request, CaptureStatus.DONE, extract_command_output(cleaned, index))

    def abort(self) -> bool:
        request = self._pending
        if request is None:
            return False
        output = strip_ansi(request.text()).strip()
        self._resolve(request, CaptureStatus.ABORTED, output or ABORTED_TEXT)
        return True

    def _begin(self, mode: CaptureMode, seconds: float, *, marker: str = "") -> CaptureRequest:
        if self._pending is not None:
            raise ShellPilotError(
                "A capture is already pending for this session.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Await the current capture before starting another.",
            )
        loop = asyncio.get_running_loop()
        request = CaptureRequest(
            mode=mode,
            future=loop.create_future(),
            marker=marker,
            deadline=loop.time() + seconds,
        )
        request.timer = loop.call_later(seconds, self._expire, request, seconds)
        self._pending = request
        return request

    async def _send_and_wait(self, request: CaptureRequest, payload: str) -> CaptureResult:
        try:
            self._writer(payload)
        except Exception as exc:
            logger.warning("capture-event step=write-failed mode=%s error=%s", request.mode.value, exc)
            self._resolve(request, CaptureStatus.ERROR, f"Error: {exc}")
        try:
            return await asyncio.shield(request.future)
        except asyncio.CancelledError:
            self.abort()
            raise

    def _expire(self, request: CaptureRequest, seconds: float) -> None:
        output = strip_ansi(request.text()).strip()
        if request.mode == CaptureMode.SENTINEL:
            self._resolve(request, CaptureStatus.TIMEOUT, output or timeout_text(seconds))
        else:
            self._resolve(request, CaptureStatus.DONE, output or NO_KEYS_OUTPUT_TEXT)

    def _resolve(self, request: CaptureRequest, status: CaptureStatus, output: str) -> None:
        if request.future.done():
            return
        if request.timer is not None:
            request.timer.cancel()
            request.timer = None
        if self._pending is request:
            self._pending = None
        request.future.set_result(CaptureResult(mode=request.mode, status=status, output=output))
        logger.debug("capture-event step=resolved mode=%s status=%s chars=%s", request.mode.value, status.value, len(output))
