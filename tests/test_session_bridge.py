from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from shellpilot.config import AppConfig
from shellpilot.errors import ShellPilotError, SpawnError, TransportAuthError
from shellpilot.terminal import (
    BackendAdapter,
    BackendEvent,
    BackendKind,
    CaptureStatus,
    ConnectionDescriptor,
    SessionBridge,
    SessionStatus,
    TerminalSize,
)
from shellpilot.terminal.capture import ABORTED_TEXT, NOT_CONNECTED_TEXT

LOCAL = ConnectionDescriptor(host="localhost")
REMOTE = ConnectionDescriptor(host="box.example", username="ada", password="pw")


class _FakeAdapter(BackendAdapter):
    kind = BackendKind.LOCAL

    def __init__(
        self,
        *,
        fail: Exception | None = None,
        gate: asyncio.Event | None = None,
        responder: Callable[[str], str] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        self.fail = fail
        self.gate = gate
        self.responder = responder
        self.on_close = on_close
        self.started_with: TerminalSize | None = None
        self.writes: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.close_calls = 0

    async def start(self, size: TerminalSize) -> None:
        self._bind_loop()
        self.started_with = size
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        self._running = True
        self.events.put_nowait(BackendEvent(kind="status", status=SessionStatus.AUTHENTICATED))
        self.events.put_nowait(BackendEvent(kind="status", status=SessionStatus.READY))

    def write(self, data: str) -> None:
        self.writes.append(data)
        if self.responder is not None:
            self.push(self.responder(data))

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    def close(self) -> None:
        self.close_calls += 1
        if self.on_close is not None:
            self.on_close()
        self._closed = True

    def push(self, data: str) -> None:
        self.events.put_nowait(BackendEvent(kind="data", data=data))

    def exit(self, code: int = 0) -> None:
        self._running = False
        self.events.put_nowait(BackendEvent(kind="exit", exit_code=code))


class _Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    async def __call__(self, event: str, payload: object) -> None:
        self.events.append((event, payload))

    def statuses(self) -> list[str]:
        return [payload["status"] for event, payload in self.events if event == "status"]

    def named(self, name: str) -> list[object]:
        return [payload for event, payload in self.events if event == name]


def _bridge(*adapters: _FakeAdapter, remote: list[_FakeAdapter] | None = None) -> tuple[SessionBridge, list]:
    pool = list(adapters)
    remote_pool = list(remote or [])
    used: list[tuple[str, ConnectionDescriptor]] = []

    def local_factory(descriptor: ConnectionDescriptor) -> BackendAdapter:
        used.append(("local", descriptor))
        return pool.pop(0)

    def remote_factory(descriptor: ConnectionDescriptor) -> BackendAdapter:
        used.append(("remote", descriptor))
        return remote_pool.pop(0)

    config = AppConfig(command_timeout_seconds=2, keys_window_seconds=0.05)
    return SessionBridge(config=config, local_factory=local_factory, remote_factory=remote_factory), used


async def _wait_for_status(bridge: SessionBridge, session_id: str, status: SessionStatus) -> None:
    for _ in range(200):
        if bridge.get_session(session_id).status == status:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"session {session_id} never reached {status.value}")


def _echo_shell(output: str) -> Callable[[str], str]:
    def respond(data: str) -> str:
        command, _, marker = data.rstrip("\n").rpartition("; echo ")
        return f"{command}; echo {marker}\r\n{output}\r\n{marker}\r\n$ "

    return respond


@pytest.mark.asyncio
async def test_local_connect_reports_statuses_in_order() -> None:
    adapter = _FakeAdapter()
    bridge, used = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)

    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    assert sink.statuses() == ["connecting", "authenticated", "ready"]
    assert bridge.get_session("s1").backend_kind == BackendKind.LOCAL
    assert used == [("local", LOCAL)]
    assert bridge.is_attached("s1")


@pytest.mark.asyncio
async def test_remote_hosts_use_the_remote_factory() -> None:
    adapter = _FakeAdapter()
    bridge, used = _bridge(remote=[adapter])
    bridge.open_session("s1", _Recorder())

    await bridge.connect("s1", REMOTE)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    assert used == [("remote", REMOTE)]
    assert bridge.get_session("s1").backend_kind == BackendKind.REMOTE


@pytest.mark.asyncio
async def test_output_is_forwarded_and_input_written() -> None:
    adapter = _FakeAdapter()
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)

    assert not bridge.send_data("s1", "dropped")
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    assert bridge.send_data("s1", "ls\r")
    adapter.push("file1\r\n")
    await asyncio.sleep(0.01)

    assert adapter.writes == ["ls\r"]
    assert sink.named("output") == ["file1\r\n"]


@pytest.mark.asyncio
async def test_pending_resize_is_applied_at_spawn() -> None:
    adapter = _FakeAdapter()
    bridge, _ = _bridge(adapter)
    bridge.open_session("s1", _Recorder())

    bridge.resize("s1", 120, 40)
    await bridge.connect("s1", LOCAL)

    assert adapter.started_with == TerminalSize(120, 40)
    assert adapter.resizes == []


@pytest.mark.asyncio
async def test_resize_during_spawn_is_applied_once_ready() -> None:
    gate = asyncio.Event()
    adapter = _FakeAdapter(gate=gate)
    bridge, _ = _bridge(adapter)
    bridge.open_session("s1", _Recorder())

    connecting = asyncio.create_task(bridge.connect("s1", LOCAL))
    await asyncio.sleep(0.01)
    bridge.resize("s1", 100, 30)
    gate.set()
    await connecting

    assert adapter.started_with == TerminalSize(80, 24)
    assert adapter.resizes == [(100, 30)]


@pytest.mark.asyncio
async def test_invalid_resize_is_dropped() -> None:
    bridge, _ = _bridge()
    bridge.open_session("s1", _Recorder())

    bridge.resize("s1", 0, 40)
    bridge.resize("missing", 100, 30)

    assert bridge.get_session("s1").pending_size == TerminalSize(80, 24)


@pytest.mark.asyncio
async def test_double_disconnect_reports_once() -> None:
    adapter = _FakeAdapter()
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    await bridge.disconnect("s1")
    await bridge.disconnect("s1")

    assert sink.statuses().count("disconnected") == 1
    assert adapter.close_calls == 1
    assert not bridge.is_attached("s1")


@pytest.mark.asyncio
async def test_spawn_failure_reports_error_then_status() -> None:
    adapter = _FakeAdapter(fail=SpawnError("Failed to start local shell /bin/nope."))
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)

    session = await bridge.connect("s1", LOCAL)

    assert session.status == SessionStatus.ERROR
    assert "Failed to start local shell" in session.error_message
    assert sink.events[-2][0] == "error"
    assert sink.statuses() == ["connecting", "error"]
    assert adapter.close_calls == 1


@pytest.mark.asyncio
async def test_errors_stay_inside_their_session() -> None:
    broken = _FakeAdapter(fail=TransportAuthError("Authentication failed for ada@box.example:22."))
    healthy = _FakeAdapter()
    bridge, _ = _bridge(healthy, remote=[broken])
    first, second = _Recorder(), _Recorder()
    bridge.open_session("s1", first)
    bridge.open_session("s2", second)

    await bridge.connect("s1", REMOTE)
    await bridge.connect("s2", LOCAL)
    await _wait_for_status(bridge, "s2", SessionStatus.READY)

    assert bridge.get_session("s1").status == SessionStatus.ERROR
    assert first.named("error")
    assert second.named("error") == []
    assert bridge.send_data("s2", "echo ok\r")


@pytest.mark.asyncio
async def test_run_command_captures_sentinel_output() -> None:
    adapter = _FakeAdapter(responder=_echo_shell("Linux"))
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    result = await bridge.run_command("s1", "uname")

    assert result.status == CaptureStatus.DONE
    assert result.output == "Linux"
    assert adapter.writes[0].startswith("uname; echo __SHELLPILOT_DONE_")
    assert sink.named("output")


@pytest.mark.asyncio
async def test_captures_require_an_attached_backend() -> None:
    bridge, _ = _bridge()
    bridge.open_session("s1", _Recorder())

    result = await bridge.run_command("s1", "ls")
    keys = await bridge.send_keys("s1", "Enter")

    assert result.status == CaptureStatus.ERROR
    assert result.output == NOT_CONNECTED_TEXT
    assert keys.output == NOT_CONNECTED_TEXT
    with pytest.raises(ShellPilotError):
        await bridge.run_command("missing", "ls")


@pytest.mark.asyncio
async def test_process_exit_aborts_capture_and_disconnects() -> None:
    adapter = _FakeAdapter()
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    pending = asyncio.create_task(bridge.run_command("s1", "exit"))
    await asyncio.sleep(0.01)
    adapter.exit()
    result = await pending

    assert result.status == CaptureStatus.ABORTED
    assert result.output == ABORTED_TEXT
    await _wait_for_status(bridge, "s1", SessionStatus.DISCONNECTED)
    assert sink.statuses()[-1] == "disconnected"
    assert not bridge.is_attached("s1")


@pytest.mark.asyncio
async def test_teardown_aborts_capture_before_closing_backend() -> None:
    bridge, _ = _bridge()
    observed: list[bool] = []
    adapter = _FakeAdapter(on_close=lambda: observed.append(bridge.abort_capture("s1")))
    bridge._local_factory = lambda _descriptor: adapter
    bridge.open_session("s1", _Recorder())
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    pending = asyncio.create_task(bridge.send_keys("s1", "q", window=5))
    await asyncio.sleep(0.01)
    await bridge.disconnect("s1")

    assert (await pending).status == CaptureStatus.ABORTED
    assert observed == [False]


@pytest.mark.asyncio
async def test_reconnect_replaces_previous_backend() -> None:
    first, second = _FakeAdapter(), _FakeAdapter()
    bridge, _ = _bridge(first, second)
    sink = _Recorder()
    bridge.open_session("s1", sink)

    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    assert first.close_calls == 1
    bridge.send_data("s1", "pwd\r")
    assert second.writes == ["pwd\r"]
    assert first.writes == []


@pytest.mark.asyncio
async def test_close_session_forgets_it() -> None:
    adapter = _FakeAdapter()
    bridge, _ = _bridge(adapter)
    bridge.open_session("s1", _Recorder())
    await bridge.connect("s1", LOCAL)

    await bridge.close_session("s1")
    await bridge.close_session("s1")

    assert adapter.close_calls == 1
    assert bridge.list_sessions() == []
    with pytest.raises(ShellPilotError):
        bridge.get_session("s1")


@pytest.mark.asyncio
async def test_duplicate_session_ids_are_rejected() -> None:
    bridge, _ = _bridge()
    bridge.open_session("s1", _Recorder())
    with pytest.raises(ShellPilotError):
        bridge.open_session("s1", _Recorder())


@pytest.mark.asyncio
async def test_failing_sink_does_not_break_the_session() -> None:
    adapter = _FakeAdapter()
    bridge, _ = _bridge(adapter)

    async def sink(_event: str, _payload: object) -> None:
        raise RuntimeError("client went away")

    bridge.open_session("s1", sink)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    assert bridge.send_data("s1", "ls\r")
    await bridge.close_all()


class _FailingIoAdapter(_FakeAdapter):
    def write(self, data: str) -> None:
        raise OSError(5, "Input/output error")

    def resize(self, cols: int, rows: int) -> None:
        raise OSError(9, "Bad file descriptor")


@pytest.mark.asyncio
async def test_write_failure_moves_session_to_error_instead_of_raising() -> None:
    adapter = _FailingIoAdapter()
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    assert not bridge.send_data("s1", "ls\r")
    await _wait_for_status(bridge, "s1", SessionStatus.ERROR)

    session = bridge.get_session("s1")
    assert "Input/output error" in session.error_message
    assert sink.named("error") == [{"message": session.error_message}]
    assert sink.statuses()[-1] == "error"
    assert adapter.close_calls == 1
    assert not bridge.is_attached("s1")


@pytest.mark.asyncio
async def test_resize_failure_moves_session_to_error_instead_of_raising() -> None:
    adapter = _FailingIoAdapter()
    bridge, _ = _bridge(adapter)
    sink = _Recorder()
    bridge.open_session("s1", sink)
    await bridge.connect("s1", LOCAL)
    await _wait_for_status(bridge, "s1", SessionStatus.READY)

    bridge.resize("s1", 100, 30)
    await _wait_for_status(bridge, "s1", SessionStatus.ERROR)

    assert bridge.get_session("s1").error_message == "Failed to resize session s1: [Errno 9] Bad file descriptor"
    await bridge.close_all()
    assert bridge.list_sessions() == []
