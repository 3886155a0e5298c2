"""WebSocket front door: one client connection drives one terminal session."""

from __future__ import annotations

import asyncio
import json
import logging as py_logging
import uuid
from collections.abc import Coroutine
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any

from typing_extensions import TypedDict
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from shellpilot.agent.executor import SessionExecutor
from shellpilot.agent.loop import AgentLoop, AgentRunState, AgentStep, ChatMessage, ModelCall
from shellpilot.config import AppConfig
from shellpilot.errors import ShellPilotError
from shellpilot.llm.chat import (
    CHAT_PROVIDERS,
    DEFAULT_CHAT_PROVIDER,
    ChatCall,
    ChatTurn,
    chat_turn,
    extract_commands,
)
from shellpilot.llm.gemini import ModelClientCache, make_chat_call, make_model_call
from shellpilot.terminal.bridge import SessionBridge
from shellpilot.terminal.models import ConnectionDescriptor

logger = py_logging.getLogger(__name__)

HEALTH_PATH = "/api/health"
SERVICE_MODE = "shellpilot"


def encode_frame(event: str, data: object) -> str:
    return json.dumps({"event": event, "data": data})


def decode_frame(message: str | bytes) -> tuple[str, object]:
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    payload = json.loads(message)
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        raise ValueError("Frame must be an object with an 'event' name.")
    return payload["event"], payload.get("data")


class HealthPayload(TypedDict):
    status: str
    timestamp: str
    model: str
    mode: str


def health_payload(config: AppConfig) -> HealthPayload:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "model": config.model,
        "mode": SERVICE_MODE,
    }


@dataclass
class ClientState:
    session_id: str
    websocket: ServerConnection
    outbox: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    agent: AgentLoop | None = None
    agent_task: asyncio.Task[None] | None = None
    connect_task: asyncio.Task[object] | None = None
    chat_turns: list[ChatTurn] = field(default_factory=list)
    chat_task: asyncio.Task[None] | None = None
    writer: asyncio.Task[None] | None = None

    def push(self, event: str, data: object) -> None:
        self.outbox.put_nowait(encode_frame(event, data))

    async def sink(self, event: str, data: object) -> None:
        self.push(event, data)


class BridgeServer:
    def __init__(
        self,
        config: AppConfig,
        *,
        bridge: SessionBridge | None = None,
        model_call: ModelCall | None = None,
        chat_call: ChatCall | None = None,
    ) -> None:
        self.config = config
        self.bridge = bridge or SessionBridge(config=config)
        self._model_call = model_call
        self._chat_call = chat_call
        self._given_calls = (model_call, chat_call)
        self._model_cache: ModelClientCache | None = None
        self._server: Server | None = None
        self._clients: dict[str, ClientState] = {}

    @property
    def port(self) -> int:
        if self._server is None:
            return self.config.server_port
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return self.config.server_port

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        if self._server is not None:
            return
        if self._model_call is None or self._chat_call is None:
            self._model_cache = ModelClientCache()
            if self._model_call is None:
                self._model_call = make_model_call(self._model_cache, self.config)
            if self._chat_call is None:
                self._chat_call = make_chat_call(self._model_cache, self.config)
        self._server = await serve(
            self._handle_client,
            self.config.server_host,
            self.config.server_port,
            process_request=self._process_request,
            ping_interval=30,
            ping_timeout=10,
        )
        logger.info(
            "server-event step=listening host=%s port=%s model=%s",
            self.config.server_host,
            self.port,
            self.config.model,
        )

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
        await self.bridge.close_all()
        cache, self._model_cache = self._model_cache, None
        if cache is not None:
            await cache.aclose()
            self._model_call, self._chat_call = self._given_calls
        logger.info("server-event step=stopped")

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        if request.path.split("?", 1)[0] != HEALTH_PATH:
            return None
        body = json.dumps(health_payload(self.config)).encode("utf-8")
        headers = Headers(
            [
                ("Content-Type", "application/json"),
                ("Content-Length", str(len(body))),
                ("Connection", "close"),
            ]
        )
        return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, body)

    async def _handle_client(self, websocket: ServerConnection) -> None:
        client = ClientState(session_id=uuid.uuid4().hex, websocket=websocket)
        client.writer = asyncio.create_task(self._write_loop(client))
        self.bridge.open_session(client.session_id, client.sink)
        client.agent = self._build_agent(client)
        self._clients[client.session_id] = client
        logger.info("server-event step=client-connected session=%s", client.session_id)

        try:
            async for message in websocket:
                await self._handle_message(client, message)
        except ConnectionClosed:
            pass
        finally:
            await self._release(client)
            logger.info("server-event step=client-disconnected session=%s", client.session_id)

    def _build_agent(self, client: ClientState) -> AgentLoop:
        def on_step(step: AgentStep) -> None:
            client.push("agent:step", step.to_dict())

        def on_message(message: ChatMessage) -> None:
            client.push("agent:message", {"type": message.type, "text": message.text})

        def on_state(state: AgentRunState) -> None:
            client.push("agent:state", state.to_dict())

        assert self._model_call is not None
        return AgentLoop(
            model_call=self._model_call,
            executor=SessionExecutor(self.bridge, client.session_id),
            model=self.config.model,
            max_iterations=self.config.max_iterations,
            on_step=on_step,
            on_message=on_message,
            on_state=on_state,
        )

    async def _handle_message(self, client: ClientState, message: str | bytes) -> None:
        try:
            event, data = decode_frame(message)
        except ValueError as exc:
            client.push("error", {"message": f"Invalid frame: {exc}"})
            return

        try:
            await self._dispatch(client, event, data)
        except ShellPilotError as exc:
            logger.warning(
                "server-event step=event-failed session=%s event=%s message=%s",
                client.session_id,
                event,
                exc.message,
            )
            client.push("error", {"message": exc.message})
        except Exception:
            logger.exception("server-event step=event-crashed session=%s event=%s", client.session_id, event)
            client.push("error", {"message": f"Failed to handle event: {event}"})

    async def _dispatch(self, client: ClientState, event: str, data: object) -> None:
        session_id = client.session_id
        agent = client.agent
        assert agent is not None

        if event == "connect":
            try:
                descriptor = ConnectionDescriptor.from_payload(data)
            except ShellPilotError as exc:
                client.push("error", {"message": exc.message})
                return
            await self._cancel_connect(client)
            client.connect_task = asyncio.create_task(self.bridge.connect(session_id, descriptor))
        elif event == "data":
            if isinstance(data, str):
                self.bridge.send_data(session_id, data)
        elif event == "resize":
            if isinstance(data, dict):
                self.bridge.resize(session_id, data.get("cols", 0), data.get("rows", 0))
        elif event == "disconnect":
            await self._cancel_connect(client)
            await self.bridge.disconnect(session_id)
        elif event == "agent:start":
            prompt = data.get("prompt") if isinstance(data, dict) else data
            if not isinstance(prompt, str) or not prompt.strip():
                client.push("error", {"message": "Agent prompt cannot be empty."})
                return
            self._launch_agent(client, agent.start(prompt))
        elif event == "agent:pause":
            agent.pause()
        elif event == "agent:resume":
            agent.resume()
        elif event == "agent:stop":
            agent.stop()
        elif event == "agent:retry":
            self._launch_agent(client, agent.retry_last())
        elif event == "chat:send":
            self._send_chat(client, data)
        elif event == "chat:clear":
            await self._cancel_chat(client)
            client.chat_turns.clear()
        else:
            client.push("error", {"message": f"Unknown event: {event}"})

    def _launch_agent(self, client: ClientState, run: Coroutine[Any, Any, object]) -> None:
        if client.agent_task is not None and not client.agent_task.done():
            run.close()
            client.push("error", {"message": "An agent run is already active."})
            return
        client.agent_task = asyncio.create_task(self._run_agent(client, run))

    async def _run_agent(self, client: ClientState, run: Coroutine[Any, Any, object]) -> None:
        try:
            await run
        except ShellPilotError as exc:
            client.push("error", {"message": exc.message})
        except Exception:
            logger.exception("server-event step=agent-crashed session=%s", client.session_id)
            client.push("error", {"message": "Agent run failed unexpectedly."})

    def _send_chat(self, client: ClientState, data: object) -> None:
        if isinstance(data, dict):
            text = data.get("text")
            provider = data.get("provider") or DEFAULT_CHAT_PROVIDER
        else:
            text, provider = data, DEFAULT_CHAT_PROVIDER
        if not isinstance(text, str) or not text.strip():
            client.push("error", {"message": "Chat message cannot be empty."})
            return
        if provider not in CHAT_PROVIDERS:
            client.push("error", {"message": f"Unknown chat provider: {provider}"})
            return
        if client.chat_task is not None and not client.chat_task.done():
            client.push("error", {"message": "A chat reply is already pending."})
            return
        client.chat_turns.append(chat_turn("user", text))
        client.chat_task = asyncio.create_task(self._run_chat(client, provider))

    async def _run_chat(self, client: ClientState, provider: str) -> None:
        assert self._chat_call is not None
        try:
            reply = await self._chat_call(provider, list(client.chat_turns))
        except ShellPilotError as exc:
            client.push("error", {"message": exc.message})
            return
        except Exception:
            logger.exception("server-event step=chat-crashed session=%s", client.session_id)
            client.push("error", {"message": "Chat request failed unexpectedly."})
            return
        client.chat_turns.append(chat_turn("model", reply))
        client.push("chat:reply", {"provider": provider, "text": reply, "commands": extract_commands(reply)})

    async def _cancel_chat(self, client: ClientState) -> None:
        task, client.chat_task = client.chat_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _cancel_connect(self, client: ClientState) -> None:
        task, client.connect_task = client.connect_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _release(self, client: ClientState) -> None:
        self._clients.pop(client.session_id, None)
        if client.agent is not None:
            client.agent.stop()
        task, client.agent_task = client.agent_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._cancel_chat(client)
        await self._cancel_connect(client)
        await self.bridge.close_session(client.session_id)
        writer, client.writer = client.writer, None
        if writer is not None:
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer

    async def _write_loop(self, client: ClientState) -> None:
        while True:
            frame = await client.outbox.get()
            try:
                await client.websocket.send(frame)
            except ConnectionClosed:
                return
