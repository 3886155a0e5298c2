"""Terminal session bridge domain package."""

from .bridge import EventSink, SessionBridge
from .capture import CaptureMode, CaptureResult, CaptureStatus, OutputCapture
from .keys import KEY_MAP, strip_ansi, translate_keys
from .models import BackendKind, ConnectionDescriptor, Session, SessionStatus, TerminalSize
from .pty_backend import BackendAdapter, BackendEvent, LocalPtyAdapter, RemoteShellAdapter

__all__ = [
    "BackendAdapter",
    "BackendEvent",
    "BackendKind",
    "CaptureMode",
    "CaptureResult",
    "CaptureStatus",
    "ConnectionDescriptor",
    "EventSink",
    "KEY_MAP",
    "LocalPtyAdapter",
    "OutputCapture",
    "RemoteShellAdapter",
    "Session",
    "SessionBridge",
    "SessionStatus",
    "strip_ansi",
    "TerminalSize",
    "translate_keys",
]
