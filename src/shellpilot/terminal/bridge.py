"""Per-client session multiplexer over local and remote shell backends."""

from __future__ import annotations

import asyncio
import logging as py_logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass

from shellpilot.config import AppConfig
from shellpilot.errors import ExitCode, ShellPilotError
from shellpilot.terminal.capture import (
    CaptureMode,
    CaptureResult,
    CaptureStatus,
    NOT_CONNECTED_TEXT,
    OutputCapture,
)
from shellpilot.terminal.models import (
    BackendKind,
    ConnectionDescriptor,
    Session,
    SessionStatus,
    TerminalSize,
)
from shellpilot.terminal.pty_backend import (
    BackendAdapter,
    BackendEvent,
    LocalPtyAdapter,
    RemoteShellAdapter,
)

logger = py_logging.getLogger(__name__)

EventSink = Callable[[str, object], Awaitable[None]]
LocalAdapterFactory = Callable[[ConnectionDescriptor], BackendAdapter]
RemoteAdapterFactory = Callable[[ConnectionDescriptor], BackendAdapter]


@dataclass
class SessionHandle:
    session: Session
    sink: EventSink
    capture: OutputCapture
    adapter: BackendAdapter | None = None
    pump: asyncio.Task[None] | None = None


class SessionBridge:
    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        local_factory: LocalAdapterFactory | None = None,
        remote_factory: RemoteAdapterFactory | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self._local_factory = local_factory or self._default_local_adapter
        self._remote_factory = remote_factory or self._default_remote_adapter
        self._sessions: dict[str, SessionHandle] = {}
        self._failures: set[asyncio.Task[None]] = set()

    def open_session(self, session_id: str, sink: EventSink) -> Session:
        if session_id in self._sessions:
            raise ShellPilotError(
                f"Session already open: {session_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a unique session id per client connection.",
            )
        session = Session(
            session_id=session_id,
            pending_size=TerminalSize(self.config.default_cols, self.config.default_rows),
        )
        handle: SessionHandle

        def write(data: str) -> None:
            self._write(handle, data)

        handle = SessionHandle(session=session, sink=sink, capture=OutputCapture(write))
        self._sessions[session_id] = handle
        logger.info("session-event session=%s step=open", session_id)
        return session

    def get_session(self, session_id: str) -> Session:
        return self._must_get(session_id).session

    def list_sessions(self) -> list[Session]:
        return [self._sessions[key].session for key in sorted(self._sessions)]

    def is_attached(self, session_id: str) -> bool:
        handle = self._sessions.get(session_id)
        return handle is not None and _attached(handle)

    async def connect(self, session_id: str, descriptor: ConnectionDescriptor) -> Session:
        handle = self._must_get(session_id)
        if handle.adapter is not None or handle.pump is not None:
            await self._teardown(handle)

        kind = BackendKind.LOCAL if descriptor.is_local(self.config.local_hosts) else BackendKind.REMOTE
        session = Session(
            session_id=session_id,
            backend_kind=kind,
            pending_size=handle.session.pending_size,
        )
        handle.session = session
        logger.info(
            "session-event session=%s step=connect backend=%s target=%s",
            session_id,
            kind.value,
            descriptor.target,
        )
        await self._send(handle, "status", {"status": SessionStatus.CONNECTING.value})

        try:
            factory = self._local_factory if kind == BackendKind.LOCAL else self._remote_factory
            adapter = factory(descriptor)
        except ShellPilotError as exc:
            await self._fail(handle, session, str(exc))
            return session

        handle.adapter = adapter
        handle.pump = asyncio.create_task(self._pump(handle, session, adapter))
        size = session.pending_size
        try:
            await adapter.start(size)
        except ShellPilotError as exc:
            if handle.session is session:
                await self._fail(handle, session, str(exc))
            return session
        except Exception as exc:
            logger.exception("session-event session=%s step=start-crashed", session_id)
            if handle.session is session:
                await self._fail(handle, session, str(exc) or "Backend failed to start.")
            return session

        if handle.adapter is adapter and session.pending_size != size:
            # A resize landed while the backend was still spawning.
            try:
                adapter.resize(session.pending_size.cols, session.pending_size.rows)
            except Exception as exc:
                await self._fail(handle, session, f"Failed to resize session {session_id}: {exc}")
        return session

    def send_data(self, session_id: str, data: str) -> bool:
        handle = self._sessions.get(session_id)
        if handle is None or not _attached(handle):
            logger.debug("session-event session=%s step=drop-data bytes=%s", session_id, len(data))
            return False
        try:
            self._write(handle, data)
        except ShellPilotError as exc:
            self._fail_soon(handle, str(exc))
            return False
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        handle = self._sessions.get(session_id)
        if handle is None:
            return
        try:
            size = TerminalSize(int(cols), int(rows))
        except (ShellPilotError, TypeError, ValueError):
            logger.debug("session-event session=%s step=drop-resize cols=%s rows=%s", session_id, cols, rows)
            return
        handle.session.pending_size = size
        if _attached(handle):
            try:
                handle.adapter.resize(size.cols, size.rows)
            except Exception as exc:
                self._fail_soon(handle, f"Failed to resize session {session_id}: {exc}")

    async def run_command(
        self,
        session_id: str,
        command: str,
        *,
        timeout: float | None = None,
        marker: str | None = None,
    ) -> CaptureResult:
        handle = self._must_get(session_id)
        if not _attached(handle):
            return CaptureResult(CaptureMode.SENTINEL, CaptureStatus.ERROR, NOT_CONNECTED_TEXT)
        return await handle.capture.run_command(
            command,
            timeout=timeout or self.config.command_timeout_seconds,
            marker=marker,
        )

    async def send_keys(self, session_id: str, keys: str, *, window: float | None = None) -> CaptureResult:
        handle = self._must_get(session_id)
        if not _attached(handle):
            return CaptureResult(CaptureMode.SAMPLE, CaptureStatus.ERROR, NOT_CONNECTED_TEXT)
        return await handle.capture.send_keys(keys, window=window or self.config.keys_window_seconds)

    def abort_capture(self, session_id: str) -> bool:
        handle = self._sessions.get(session_id)
        if handle is None:
            return False
        return handle.capture.abort()

    async def disconnect(self, session_id: str) -> None:
        handle = self._sessions.get(session_id)
        if handle is None or (handle.adapter is None and handle.pump is None):
            return
        await self._teardown(handle)
        if handle.session.transition(SessionStatus.DISCONNECTED):
            logger.info("session-event session=%s step=disconnect", session_id)
            await self._send(handle, "status", {"status": SessionStatus.DISCONNECTED.value})

    async def close_session(self, session_id: str) -> None:
        handle = self._sessions.pop(session_id, None)
        if handle is None:
            return
        await self._teardown(handle)
        handle.session.transition(SessionStatus.DISCONNECTED)
        logger.info("session-event session=%s step=close", session_id)

    async def close_all(self) -> None:
        if self._failures:
            await asyncio.gather(*self._failures, return_exceptions=True)
        for session_id in list(self._sessions):
            await self.close_session(session_id)

    async def _pump(self, handle: SessionHandle, session: Session, adapter: BackendAdapter) -> None:
        while True:
            event = await adapter.events.get()
            if event.kind == "data":
                await self._send(handle, "output", event.data)
                handle.capture.feed(event.data)
            elif event.kind == "status" and event.status is not None:
                if session.transition(event.status):
                    logger.info(
                        "session-event session=%s step=status status=%s",
                        session.session_id,
                        event.status.value,
                    )
                    await self._send(handle, "status", {"status": event.status.value})
            elif event.kind == "exit":
                await self._on_exit(handle, session, adapter, event)
                return
            elif event.kind == "error":
                await self._fail(handle, session, event.message or "Backend failure.")
                return

    async def _on_exit(
        self,
        handle: SessionHandle,
        session: Session,
        adapter: BackendAdapter,
        event: BackendEvent,
    ) -> None:
        logger.info(
            "session-event session=%s step=exit code=%s signal=%s",
            session.session_id,
            event.exit_code,
            event.signal,
        )
        handle.capture.abort()
        if handle.adapter is adapter:
            handle.adapter = None
            handle.pump = None
            adapter.close()
        if session.transition(SessionStatus.DISCONNECTED):
            await self._send(handle, "status", {"status": SessionStatus.DISCONNECTED.value})

    async def _fail(self, handle: SessionHandle, session: Session, message: str) -> None:
        logger.warning("session-event session=%s step=error message=%s", session.session_id, message)
        await self._teardown(handle)
        session.error_message = message
        if session.transition(SessionStatus.ERROR):
            await self._send(handle, "error", {"message": message})
            await self._send(handle, "status", {"status": SessionStatus.ERROR.value})

    def _fail_soon(self, handle: SessionHandle, message: str) -> None:
        """Report a backend I/O failure from a synchronous entry point."""
        session = handle.session
        logger.warning("session-event session=%s step=io-failed message=%s", session.session_id, message)

        async def fail_if_current() -> None:
            if handle.session is session:
                await self._fail(handle, session, message)

        task = asyncio.get_running_loop().create_task(fail_if_current())
        self._failures.add(task)
        task.add_done_callback(self._failures.discard)

    async def _teardown(self, handle: SessionHandle) -> None:
        handle.capture.abort()
        adapter, handle.adapter = handle.adapter, None
        pump, handle.pump = handle.pump, None
        if adapter is not None:
            adapter.close()
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump

    def _write(self, handle: SessionHandle, data: str) -> None:
        adapter = handle.adapter
        if adapter is None or not adapter.running:
            raise ShellPilotError(
                "Terminal not connected.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Connect the session before sending input.",
            )
        try:
            adapter.write(data)
        except ShellPilotError:
            raise
        except Exception as exc:
            raise ShellPilotError(
                f"Failed to write to session {handle.session.session_id}.",
                code=ExitCode.RUNTIME_ERROR,
                hint=str(exc) or "Verify terminal process health.",
            ) from exc

    async def _send(self, handle: SessionHandle, event: str, payload: object) -> None:
        try:
            await handle.sink(event, payload)
        except Exception:
            logger.warning(
                "session-event session=%s step=sink-failed event=%s",
                handle.session.session_id,
                event,
                exc_info=True,
            )

    def _must_get(self, session_id: str) -> SessionHandle:
        handle = self._sessions.get(session_id)
        if handle is None:
            raise ShellPilotError(
                f"Session not found: {session_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Open the session before using it.",
            )
        return handle

    def _default_local_adapter(self, _descriptor: ConnectionDescriptor) -> BackendAdapter:
        return LocalPtyAdapter(shell=self.config.shell)

    def _default_remote_adapter(self, descriptor: ConnectionDescriptor) -> BackendAdapter:
        return RemoteShellAdapter(
            descriptor,
            connect_timeout=self.config.ssh_connect_timeout_seconds,
        )


def _attached(handle: SessionHandle) -> bool:
    return handle.adapter is not None and handle.adapter.running
