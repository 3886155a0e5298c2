"""Session bridge domain models."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from shellpilot.errors import ExitCode, ShellPilotError


class BackendKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SessionStatus(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    ERROR = "error"
    DISCONNECTED = "disconnected"


_FORWARD_ORDER = {
    SessionStatus.CONNECTING: 0,
    SessionStatus.AUTHENTICATED: 1,
    SessionStatus.READY: 2,
}
TERMINAL_STATUSES = frozenset({SessionStatus.ERROR, SessionStatus.DISCONNECTED})


@dataclass(frozen=True)
class TerminalSize:
    cols: int = 80
    rows: int = 24

    def __post_init__(self) -> None:
        if self.cols <= 0 or self.rows <= 0:
            raise ShellPilotError(
                f"Invalid terminal size: {self.cols}x{self.rows}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use positive terminal row/column values.",
            )


@dataclass(frozen=True)
class ConnectionDescriptor:
    host: str = ""
    port: int = 22
    username: str = ""
    password: str = ""
    private_key: str = ""
    local: bool = False

    def is_local(self, local_hosts: Iterable[str]) -> bool:
        if self.local:
            return True
        return self.host.strip().lower() in {item.lower() for item in local_hosts}

    @property
    def target(self) -> str:
        if self.local:
            return "local"
        return f"{self.username}@{self.host}:{self.port}"

    @classmethod
    def from_payload(cls, payload: object) -> ConnectionDescriptor:
        if not isinstance(payload, dict):
            raise ShellPilotError(
                "Connection payload must be an object.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Send host, port, username and credentials.",
            )
        raw_port = payload.get("port", 22)
        try:
            port = int(raw_port) if raw_port not in (None, "") else 22
        except (TypeError, ValueError) as exc:
            raise ShellPilotError(
                f"Invalid port: {raw_port!r}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a numeric SSH port.",
            ) from exc
        return cls(
            host=str(payload.get("host") or "").strip(),
            port=port,
            username=str(payload.get("username") or "").strip(),
            password=str(payload.get("password") or ""),
            private_key=str(payload.get("privateKey") or payload.get("private_key") or ""),
            local=bool(payload.get("local", False)),
        )

    def __repr__(self) -> str:
        # Credentials never reach logs.
        return (
            f"ConnectionDescriptor(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, local={self.local})"
        )


@dataclass
class Session:
    session_id: str
    backend_kind: BackendKind | None = None
    pending_size: TerminalSize = field(default_factory=TerminalSize)
    status: SessionStatus = SessionStatus.CONNECTING
    error_message: str = ""

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: SessionStatus) -> bool:
        """Apply a status change; returns False when it is not a forward move."""
        if self.finished:
            return False
        if status in TERMINAL_STATUSES:
            self.status = status
            return True
        if _FORWARD_ORDER[status] <= _FORWARD_ORDER[self.status]:
            return False
        self.status = status
        return True
