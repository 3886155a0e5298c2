"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    SPAWN_ERROR = 5
    TRANSPORT_ERROR = 6
    VALIDATION_ERROR = 7
    MODEL_ERROR = 8


@dataclass
class ShellPilotError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


@dataclass
class SpawnError(ShellPilotError):
    """Local pseudo-terminal unavailable or the shell failed to start."""

    code: ExitCode = ExitCode.SPAWN_ERROR


@dataclass
class TransportConnectError(ShellPilotError):
    """Remote host unreachable, handshake failure or connect timeout."""

    code: ExitCode = ExitCode.TRANSPORT_ERROR


@dataclass
class TransportAuthError(TransportConnectError):
    """Remote host rejected every supplied credential."""


@dataclass
class ModelCallError(ShellPilotError):
    code: ExitCode = ExitCode.MODEL_ERROR


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
