"""Gemini ``generateContent`` client for agent runs and plain chat."""

from __future__ import annotations

import logging as py_logging
from typing import Any

import httpx

from shellpilot.agent.actions import AGENT_SYSTEM_PROMPT, AGENT_TOOLS, NO_RESPONSE_TEXT, HistoryEntry, Part
from shellpilot.agent.loop import ModelCall
from shellpilot.config import DEFAULT_API_BASE_URL, AppConfig
from shellpilot.errors import ModelCallError
from shellpilot.llm.chat import CHAT_PROVIDERS, CHAT_SYSTEM_PROMPT, ChatCall, ChatTurn
from shellpilot.llm.claude import ClaudeChatClient

logger = py_logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 120.0
DEFAULT_TEMPERATURE = 0.3
DEFAULT_CHAT_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_TOKENS = 4096


def convert_schema(schema: dict[str, Any] | None) -> dict[str, Any] | None:
    """Lower-case ``type`` names recursively, as the REST API expects."""
    if not schema:
        return schema
    result = dict(schema)
    if isinstance(result.get("type"), str):
        result["type"] = result["type"].lower()
    if isinstance(result.get("properties"), dict):
        result["properties"] = {key: convert_schema(value) for key, value in result["properties"].items()}
    if isinstance(result.get("items"), dict):
        result["items"] = convert_schema(result["items"])
    return result


def build_tools(tools: list[dict[str, Any]] = AGENT_TOOLS) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for group in tools:
        declarations = []
        for declaration in group.get("functionDeclarations", []):
            item = dict(declaration)
            if "parameters" in item:
                item["parameters"] = convert_schema(item["parameters"])
            declarations.append(item)
        converted.append({"functionDeclarations": declarations})
    return converted


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"Google AI API error: HTTP {response.status_code}"


class GeminiClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        temperature: float = DEFAULT_TEMPERATURE,
        chat_temperature: float = DEFAULT_CHAT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.chat_temperature = chat_temperature
        self.max_output_tokens = max_output_tokens
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    def build_request(self, history: list[HistoryEntry]) -> dict[str, Any]:
        return {
            "contents": [{"role": entry["role"], "parts": entry["parts"]} for entry in history],
            "systemInstruction": {"parts": [{"text": AGENT_SYSTEM_PROMPT}]},
            "tools": build_tools(),
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    def build_chat_request(self, turns: list[ChatTurn]) -> dict[str, Any]:
        return {
            "contents": [
                {"role": "model" if turn["role"] == "model" else "user", "parts": [{"text": turn["text"]}]}
                for turn in turns
            ],
            "systemInstruction": {"parts": [{"text": CHAT_SYSTEM_PROMPT}]},
            "generationConfig": {
                "temperature": self.chat_temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    async def generate(self, model: str, history: list[HistoryEntry]) -> list[Part]:
        if not history:
            raise ModelCallError("history is required")
        logger.debug("model-event step=request model=%s entries=%s", model, len(history))
        return _first_parts(await self._post(model, self.build_request(history)))

    async def chat(self, model: str, turns: list[ChatTurn]) -> str:
        """Text-only reply for chat mode; commands come back ``<cmd>``-tagged."""
        if not turns:
            raise ModelCallError("messages are required")
        logger.debug("model-event step=chat-request provider=gemini model=%s turns=%s", model, len(turns))
        parts = _first_parts(await self._post(model, self.build_chat_request(turns)))
        text = parts[0].get("text") if parts and isinstance(parts[0], dict) else None
        return text if isinstance(text, str) else NO_RESPONSE_TEXT

    async def _post(self, model: str, body: dict[str, Any]) -> object:
        if not self.api_key:
            raise ModelCallError(
                "GEMINI_API_KEY is required for this model.",
                hint="Set gemini_api_key in the config file or export GEMINI_API_KEY.",
            )
        url = f"{self.base_url}/models/{model}:generateContent"
        try:
            response = await self._http.post(url, json=body, headers={"x-goog-api-key": self.api_key})
        except httpx.HTTPError as exc:
            raise ModelCallError(f"Google AI API request failed: {exc}") from exc

        if response.status_code != 200:
            message = _error_message(response)
            logger.warning("model-event step=error status=%s message=%s", response.status_code, message)
            raise ModelCallError(message)

        try:
            return response.json()
        except ValueError as exc:
            raise ModelCallError("Google AI API returned invalid JSON.") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


def _first_parts(data: object) -> list[Part]:
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if isinstance(parts, list) and parts:
            return parts
    return [{"text": NO_RESPONSE_TEXT}]


class ModelClientCache:
    """Keeps one client per endpoint, key and generation settings for the process lifetime."""

    def __init__(self, *, http_client: httpx.AsyncClient | None = None, anthropic_client: Any = None) -> None:
        self._http = http_client
        self._anthropic = anthropic_client
        self._clients: dict[tuple[str, str, float, float, int], GeminiClient] = {}
        self._claude: dict[tuple[str, int], ClaudeChatClient] = {}

    def get(self, config: AppConfig) -> GeminiClient:
        key = (
            config.api_base_url,
            config.gemini_api_key,
            config.model_temperature,
            config.chat_temperature,
            config.max_output_tokens,
        )
        client = self._clients.get(key)
        if client is None:
            client = GeminiClient(
                api_key=config.gemini_api_key,
                base_url=config.api_base_url,
                http_client=self._http,
                temperature=config.model_temperature,
                chat_temperature=config.chat_temperature,
                max_output_tokens=config.max_output_tokens,
            )
            self._clients[key] = client
        return client

    def claude(self, config: AppConfig) -> ClaudeChatClient:
        key = (config.anthropic_api_key, config.max_output_tokens)
        client = self._claude.get(key)
        if client is None:
            client = ClaudeChatClient(
                api_key=config.anthropic_api_key,
                client=self._anthropic,
                max_tokens=config.max_output_tokens,
            )
            self._claude[key] = client
        return client

    def __len__(self) -> int:
        return len(self._clients) + len(self._claude)

    async def aclose(self) -> None:
        clients: list[GeminiClient | ClaudeChatClient] = [*self._clients.values(), *self._claude.values()]
        self._clients.clear()
        self._claude.clear()
        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> ModelClientCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def make_model_call(cache: ModelClientCache, config: AppConfig) -> ModelCall:
    async def model_call(model: str, history: list[HistoryEntry]) -> list[Part]:
        return await cache.get(config).generate(model, history)

    return model_call


def make_chat_call(cache: ModelClientCache, config: AppConfig) -> ChatCall:
    async def chat_call(provider: str, turns: list[ChatTurn]) -> str:
        if provider == "claude":
            return await cache.claude(config).reply(config.claude_model, turns)
        if provider == "gemini":
            return await cache.get(config).chat(config.model, turns)
        raise ModelCallError(
            f"Unknown chat provider: {provider}",
            hint=f"Use one of: {', '.join(CHAT_PROVIDERS)}.",
        )

    return chat_call
