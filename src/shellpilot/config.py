"""XDG config loading/saving."""

from __future__ import annotations

import os
import sys
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

DEFAULT_CONFIG_PATH = Path("~/.config/shellpilot/config.toml").expanduser()
DEFAULT_MODEL = "gemini-3-flash-preview"
DEFAULT_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
DEFAULT_SHELL = "/bin/zsh"
DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-20250514"
GEMINI_API_KEY_ENV = "GEMINI_API_KEY"
ANTHROPIC_API_KEY_ENV = "ANTHROPIC_API_KEY"
CONFIG_FILE_MODE = 0o600
SHELL_ENV = "SHELL"


def _default_shell() -> str:
    return os.getenv(SHELL_ENV, "").strip() or DEFAULT_SHELL


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    server_host: str = "127.0.0.1"
    server_port: int = Field(default=3001, ge=0, le=65535)
    model: str = DEFAULT_MODEL
    gemini_api_key: str = ""
    claude_model: str = DEFAULT_CLAUDE_MODEL
    anthropic_api_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    model_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    chat_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=4096, ge=1)
    max_iterations: int = Field(default=20, ge=1, le=200)
    command_timeout_seconds: float = Field(default=60.0, gt=0)
    keys_window_seconds: float = Field(default=3.0, gt=0)
    ssh_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    default_cols: int = Field(default=80, ge=1)
    default_rows: int = Field(default=24, ge=1)
    local_hosts: list[str] = Field(default_factory=lambda: list(DEFAULT_LOCAL_HOSTS))
    shell: str = Field(default_factory=_default_shell)

    @field_validator("model", "claude_model", "api_base_url", "shell")
    @classmethod
    def _validate_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Value cannot be blank")
        return value.strip()

    @field_validator("local_hosts")
    @classmethod
    def _validate_local_hosts(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for item in value:
            host = item.strip().lower()
            if host and host not in normalized:
                normalized.append(host)
        return normalized


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_scalar(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    # Assign field by field so one bad value only resets itself.
    for name in AppConfig.model_fields:
        if name not in raw:
            continue
        value = raw[name]
        if isinstance(value, bool):
            continue
        try:
            setattr(cfg, name, value)
        except ValueError:
            continue

    env_key = os.getenv(GEMINI_API_KEY_ENV, "").strip()
    if env_key:
        cfg.gemini_api_key = env_key
    anthropic_key = os.getenv(ANTHROPIC_API_KEY_ENV, "").strip()
    if anthropic_key:
        cfg.anthropic_api_key = anthropic_key
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    return _sanitize(raw)


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        f"{name} = {_toml_scalar(getattr(config, name))}"
        for name in AppConfig.model_fields
    ]
    # Owner-only from creation; the file holds API keys.
    fd = os.open(resolved, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CONFIG_FILE_MODE)
    with suppress(OSError):
        os.fchmod(fd, CONFIG_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")
    return resolved
