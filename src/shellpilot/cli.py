"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging as py_logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from .agent.executor import SessionExecutor
from .agent.loop import AgentLoop, AgentStep, ChatMessage, ModelCall, RunOutcome, StepStatus
from .config import AppConfig, load_config
from .errors import ExitCode, ShellPilotError, user_facing_error
from .llm.gemini import ModelClientCache, make_model_call
from .logging import configure_logging, default_log_path
from .server import BridgeServer
from .terminal.bridge import SessionBridge
from .terminal.models import BackendKind, ConnectionDescriptor, SessionStatus

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_HEADLESS_SESSION_ID = "cli"
_READY_GRACE_SECONDS = 5.0

_OUTCOME_EXIT_CODES = {
    RunOutcome.COMPLETED: ExitCode.SUCCESS,
    RunOutcome.TEXT_ANSWER: ExitCode.SUCCESS,
    RunOutcome.ERROR: ExitCode.MODEL_ERROR,
}


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _port_type(value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--port must be an integer") from exc
    if port < 0 or port > 65535:
        raise argparse.ArgumentTypeError("--port must be between 0 and 65535")
    return port


def _iterations_type(value: str) -> int:
    try:
        count = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--max-iterations must be an integer") from exc
    if count < 1 or count > 200:
        raise argparse.ArgumentTypeError("--max-iterations must be between 1 and 200")
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shellpilot")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--log-level", type=_log_level_type, default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the WebSocket bridge server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=_port_type, default=None)

    run = commands.add_parser("run", help="Run one agent task headless and print its steps")
    run.add_argument("prompt")
    run.add_argument("--host", default=None, help="Remote host; omit for a local shell")
    run.add_argument("--port", type=_port_type, default=22)
    run.add_argument("--user", default="")
    run.add_argument("--password", default="")
    run.add_argument("--key-file", type=Path, default=None)
    run.add_argument("--max-iterations", type=_iterations_type, default=None)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def resolve_config(namespace: argparse.Namespace) -> AppConfig:
    config = load_config(namespace.config)
    try:
        if namespace.model:
            config.model = namespace.model
        if getattr(namespace, "max_iterations", None):
            config.max_iterations = namespace.max_iterations
        if namespace.command == "serve":
            if namespace.host:
                config.server_host = namespace.host
            if namespace.port is not None:
                config.server_port = namespace.port
    except ValueError as exc:
        raise ShellPilotError(
            "Invalid configuration override.",
            code=ExitCode.CONFIG_ERROR,
            hint=str(exc),
        ) from exc
    return config


def build_descriptor(namespace: argparse.Namespace) -> ConnectionDescriptor:
    if not namespace.host:
        return ConnectionDescriptor(local=True)
    private_key = ""
    if namespace.key_file is not None:
        key_path = namespace.key_file.expanduser()
        try:
            private_key = key_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ShellPilotError(
                f"Cannot read key file: {key_path}",
                code=ExitCode.INVALID_ARGS,
                hint=str(exc),
            ) from exc
    return ConnectionDescriptor(
        host=namespace.host,
        port=namespace.port,
        username=namespace.user,
        password=namespace.password,
        private_key=private_key,
    )


def format_step(step: AgentStep) -> str:
    if step.command is not None:
        head = f"[{step.type.value}:{step.status.value}] $ {step.command}"
    elif step.keys is not None:
        head = f"[{step.type.value}:{step.status.value}] keys: {step.keys}"
    elif step.summary is not None:
        head = f"[{step.type.value}] {step.summary}"
    elif step.text is not None:
        head = f"[{step.type.value}] {step.text}"
    else:
        head = f"[{step.type.value}]"
    if step.output:
        return f"{head}\n{step.output}"
    return head


async def _wait_until_settled(bridge: SessionBridge, session_id: str, timeout: float) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        session = bridge.get_session(session_id)
        if session.status == SessionStatus.READY:
            return
        if session.finished:
            code = ExitCode.SPAWN_ERROR if session.backend_kind == BackendKind.LOCAL else ExitCode.TRANSPORT_ERROR
            raise ShellPilotError(
                session.error_message or "Terminal session closed before it became ready.",
                code=code,
                hint="Check the connection details and try again.",
            )
        if loop.time() >= deadline:
            raise ShellPilotError(
                "Timed out waiting for the terminal session.",
                code=ExitCode.TRANSPORT_ERROR,
                hint="Verify the host is reachable.",
            )
        await asyncio.sleep(0.05)


async def run_headless(
    prompt: str,
    descriptor: ConnectionDescriptor,
    config: AppConfig,
    *,
    bridge: SessionBridge | None = None,
    model_call: ModelCall | None = None,
    out: TextIO | None = None,
) -> int:
    stream = out or sys.stdout
    bridge = bridge or SessionBridge(config=config)
    logger = py_logging.getLogger("shellpilot.cli")

    async def sink(event: str, payload: object) -> None:
        if event == "error" and isinstance(payload, dict):
            logger.warning("cli-event step=session-error message=%s", payload.get("message"))

    def on_step(step: AgentStep) -> None:
        if step.status != StepStatus.RUNNING:
            print(format_step(step), file=stream, flush=True)

    def on_message(message: ChatMessage) -> None:
        print(f"{message.type}: {message.text}", file=stream, flush=True)

    cache = ModelClientCache() if model_call is None else None
    call = model_call or make_model_call(cache, config)
    bridge.open_session(_HEADLESS_SESSION_ID, sink)
    try:
        await bridge.connect(_HEADLESS_SESSION_ID, descriptor)
        await _wait_until_settled(
            bridge,
            _HEADLESS_SESSION_ID,
            config.ssh_connect_timeout_seconds + _READY_GRACE_SECONDS,
        )
        agent = AgentLoop(
            model_call=call,
            executor=SessionExecutor(bridge, _HEADLESS_SESSION_ID),
            model=config.model,
            max_iterations=config.max_iterations,
            on_step=on_step,
            on_message=on_message,
        )
        outcome = await agent.start(prompt)
    finally:
        await bridge.close_all()
        if cache is not None:
            await cache.aclose()

    logger.info("cli-event step=finished outcome=%s", outcome.value)
    return int(_OUTCOME_EXIT_CODES.get(outcome, ExitCode.RUNTIME_ERROR))


def run_serve(config: AppConfig) -> int:
    server = BridgeServer(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        pass
    return int(ExitCode.SUCCESS)


def run_cli_flow(namespace: argparse.Namespace) -> int:
    config = resolve_config(namespace)
    if namespace.command == "run":
        descriptor = build_descriptor(namespace)
        return asyncio.run(run_headless(namespace.prompt, descriptor, config))
    return run_serve(config)


def main(argv: Sequence[str] | None = None) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        logger.debug("Starting CLI flow command=%s", namespace.command or "serve")
        return run_cli_flow(namespace)
    except ShellPilotError as exc:
        logger.error(
            "Handled ShellPilotError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        hint = f"Inspect logs: {log_path}"
        print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
