"""Local pty and remote SSH shell adapters behind one event-queue interface."""

from __future__ import annotations

import asyncio
import codecs
import io
import logging as py_logging
import os
import socket
import threading
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import paramiko

from shellpilot.errors import (
    ShellPilotError,
    SpawnError,
    TransportAuthError,
    TransportConnectError,
)
from shellpilot.terminal.models import BackendKind, ConnectionDescriptor, SessionStatus, TerminalSize

logger = py_logging.getLogger(__name__)

TERM_NAME = "xterm-256color"
DEFAULT_LANG = "en_US.UTF-8"
READ_CHUNK = 4096


@dataclass(frozen=True)
class BackendEvent:
    kind: str
    data: str = ""
    status: SessionStatus | None = None
    exit_code: int | None = None
    signal: int | None = None
    message: str = ""


PtySpawn = Callable[[list[str], str | None, dict[str, str] | None, tuple[int, int]], Any]
TransportFactory = Callable[[str, int, float], Any]


def build_local_env(base: dict[str, str] | None = None, *, home: str | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["TERM"] = TERM_NAME
    env["HOME"] = home or str(Path.home())
    env["LANG"] = env.get("LANG") or DEFAULT_LANG
    return env


def _spawn_with_ptyprocess(
    command: list[str],
    cwd: str | None,
    env: dict[str, str] | None,
    dimensions: tuple[int, int],
) -> Any:
    try:
        from ptyprocess import PtyProcess
    except Exception as exc:
        raise SpawnError(
            "ptyprocess backend is unavailable.",
            hint="Local terminals need a POSIX host with ptyprocess installed.",
        ) from exc
    return PtyProcess.spawn(command, cwd=cwd, env=env, dimensions=dimensions)


def _open_paramiko_transport(host: str, port: int, timeout: float) -> paramiko.Transport:
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise TransportConnectError(
            f"Failed to connect to {host}:{port}: {exc}",
            hint="Check the host, port and network reachability.",
        ) from exc
    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=timeout)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        transport.close()
        raise TransportConnectError(
            f"SSH handshake with {host}:{port} failed: {exc}",
            hint="Verify the target runs an SSH server.",
        ) from exc
    return transport


def load_private_key(text: str, passphrase: str | None = None) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise TransportAuthError(
        "Unsupported or invalid private key.",
        hint=str(last_error) if last_error else "Provide an Ed25519, ECDSA or RSA key in PEM/OpenSSH format.",
    )


class BackendAdapter:
    """Shared event plumbing: worker threads post events into ``events``."""

    kind: BackendKind

    def __init__(self) -> None:
        self.events: asyncio.Queue[BackendEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reader: threading.Thread | None = None
        self._closed = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running and not self._closed

    async def start(self, size: TerminalSize) -> None:
        raise NotImplementedError

    def write(self, data: str) -> None:
        raise NotImplementedError

    def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def _bind_loop(self) -> None:
        self._loop = asyncio.get_running_loop()

    def _emit(self, event: BackendEvent) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self.events.put_nowait, event)
        except RuntimeError:
            logger.debug("backend-event step=dropped-after-shutdown kind=%s", event.kind)

    def _emit_status(self, status: SessionStatus) -> None:
        self._emit(BackendEvent(kind="status", status=status))

    def _start_reader(self, target: Callable[[], None], name: str) -> None:
        self._reader = threading.Thread(target=target, name=name, daemon=True)
        self._reader.start()


class LocalPtyAdapter(BackendAdapter):
    kind = BackendKind.LOCAL

    def __init__(
        self,
        *,
        shell: str,
        spawn: PtySpawn | None = None,
        home: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.shell = shell
        self._spawn = spawn or _spawn_with_ptyprocess
        self._home = home or str(Path.home())
        self._base_env = env
        self._process: Any = None

    async def start(self, size: TerminalSize) -> None:
        self._bind_loop()
        # No login step for local shells.
        self._emit_status(SessionStatus.AUTHENTICATED)
        env = build_local_env(self._base_env, home=self._home)
        try:
            process = self._spawn([self.shell], self._home, env, (size.rows, size.cols))
        except ShellPilotError:
            raise
        except Exception as exc:
            raise SpawnError(
                f"Failed to start local shell {self.shell}.",
                hint=str(exc) or "Check the configured shell path.",
            ) from exc
        self._process = process
        self._running = True
        logger.info("backend-event kind=local step=spawned shell=%s cols=%s rows=%s", self.shell, size.cols, size.rows)
        self._emit_status(SessionStatus.READY)
        self._start_reader(self._read_loop, "shellpilot-local-pty")

    def write(self, data: str) -> None:
        if not self.running:
            return
        self._process.write(data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        if not self.running:
            return
        self._process.setwinsize(rows, cols)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        process = self._process
        if process is None:
            return
        alive = _is_alive(process)
        with suppress(Exception):
            process.close(force=True)
        if alive and _is_alive(process):
            with suppress(Exception):
                process.terminate(force=True)

    def _read_loop(self) -> None:
        process = self._process
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = process.read(READ_CHUNK)
            except (EOFError, OSError):
                break
            if not chunk:
                break
            text = decoder.decode(chunk) if isinstance(chunk, bytes) else str(chunk)
            if text:
                self._emit(BackendEvent(kind="data", data=text))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._emit(BackendEvent(kind="data", data=tail))
        with suppress(Exception):
            process.wait()
        exit_code = getattr(process, "exitstatus", None)
        signal = getattr(process, "signalstatus", None)
        self._running = False
        logger.info("backend-event kind=local step=exited code=%s signal=%s", exit_code, signal)
        self._emit(BackendEvent(kind="exit", exit_code=exit_code, signal=signal))


class RemoteShellAdapter(BackendAdapter):
    kind = BackendKind.REMOTE

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        connect_timeout: float = 10.0,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        super().__init__()
        self.descriptor = descriptor
        self.connect_timeout = connect_timeout
        self._transport_factory = transport_factory or _open_paramiko_transport
        self._transport: Any = None
        self._channel: Any = None
        self._lock = threading.Lock()

    async def start(self, size: TerminalSize) -> None:
        self._bind_loop()
        logger.info("backend-event kind=ssh step=connecting target=%s", self.descriptor.target)
        await asyncio.to_thread(self._open, size)
        if self._closed:
            return
        self._running = True
        self._emit_status(SessionStatus.READY)
        self._start_reader(self._read_loop, "shellpilot-ssh-reader")

    def _open(self, size: TerminalSize) -> None:
        transport = self._transport_factory(
            self.descriptor.host,
            self.descriptor.port,
            self.connect_timeout,
        )
        if not self._adopt(transport=transport):
            logger.info("backend-event kind=ssh step=handshake-abandoned target=%s stage=transport", self.descriptor.target)
            return
        try:
            self._authenticate(transport)
        except ShellPilotError:
            self._shutdown_channel()
            if self._closed:
                return
            raise
        logger.info("backend-event kind=ssh step=authenticated target=%s", self.descriptor.target)
        self._emit_status(SessionStatus.AUTHENTICATED)
        try:
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.set_combine_stderr(True)
            channel.get_pty(term=TERM_NAME, width=size.cols, height=size.rows)
            channel.invoke_shell()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._shutdown_channel()
            if self._closed:
                return
            raise TransportConnectError(
                f"Failed to open remote shell: {exc}",
                hint="The server accepted the login but refused a pty shell.",
            ) from exc
        if not self._adopt(channel=channel):
            logger.info("backend-event kind=ssh step=handshake-abandoned target=%s stage=channel", self.descriptor.target)

    def _adopt(self, *, transport: Any = None, channel: Any = None) -> bool:
        """Attach a handshake resource; False once ``close()`` has already run."""
        with self._lock:
            if transport is not None:
                self._transport = transport
            if channel is not None:
                self._channel = channel
            closed = self._closed
        if closed:
            self._shutdown_channel()
        return not closed

    def _authenticate(self, transport: Any) -> None:
        username = self.descriptor.username
        password = self.descriptor.password

        def answer_prompts(_title: str, _instructions: str, prompts: list[tuple[str, bool]]) -> list[str]:
            return [password for _ in prompts]

        attempts: list[Callable[[], object]] = []
        if self.descriptor.private_key:
            key = load_private_key(self.descriptor.private_key)
            attempts.append(lambda: transport.auth_publickey(username, key))
        elif password:
            attempts.append(lambda: transport.auth_password(username, password))
        attempts.append(lambda: transport.auth_interactive(username, answer_prompts))

        last_error: Exception | None = None
        for attempt in attempts:
            try:
                attempt()
            except paramiko.AuthenticationException as exc:
                last_error = exc
                continue
            except (paramiko.SSHException, OSError, EOFError) as exc:
                raise TransportConnectError(
                    f"SSH connection lost during authentication: {exc}",
                    hint="Retry the connection.",
                ) from exc
            if transport.is_authenticated():
                return
        raise TransportAuthError(
            f"Authentication failed for {self.descriptor.target}.",
            hint=str(last_error) if last_error else "Check the username and credentials.",
        )

    def write(self, data: str) -> None:
        if not self.running:
            return
        self._channel.sendall(data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        if not self.running:
            return
        self._channel.resize_pty(width=cols, height=rows)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._shutdown_channel()

    def _shutdown_channel(self) -> None:
        # Shell channel first so its close never races a half-closed transport.
        with self._lock:
            channel, self._channel = self._channel, None
            transport, self._transport = self._transport, None
        if channel is not None:
            with suppress(Exception):
                channel.close()
        if transport is not None:
            with suppress(Exception):
                transport.close()

    def _read_loop(self) -> None:
        channel = self._channel
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = channel.recv(READ_CHUNK)
            except (OSError, EOFError, paramiko.SSHException):
                break
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._emit(BackendEvent(kind="data", data=text))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._emit(BackendEvent(kind="data", data=tail))
        exit_code = None
        with suppress(Exception):
            if channel.exit_status_ready():
                exit_code = channel.recv_exit_status()
        self._running = False
        logger.info("backend-event kind=ssh step=closed target=%s code=%s", self.descriptor.target, exit_code)
        self._emit(BackendEvent(kind="exit", exit_code=exit_code))


def _is_alive(process: Any) -> bool:
    if hasattr(process, "isalive"):
        try:
            return bool(process.isalive())
        except Exception:
            return True
    return True
