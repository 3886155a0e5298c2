"""Anthropic Messages client for plain chat mode."""

from __future__ import annotations

import logging as py_logging
from typing import Any

import anthropic

from shellpilot.agent.actions import NO_RESPONSE_TEXT
from shellpilot.errors import ModelCallError
from shellpilot.llm.chat import CHAT_SYSTEM_PROMPT, ChatTurn

logger = py_logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


class ClaudeChatClient:
    def __init__(
        self,
        *,
        api_key: str,
        client: Any = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.api_key = api_key
        self.max_tokens = max_tokens
        self._owns_client = client is None
        self._client = client

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def reply(self, model: str, turns: list[ChatTurn]) -> str:
        if not self.api_key:
            raise ModelCallError(
                "Anthropic API key is required.",
                hint="Set anthropic_api_key in the config file or export ANTHROPIC_API_KEY.",
            )
        if not turns:
            raise ModelCallError("messages are required")

        messages = [
            {"role": "assistant" if turn["role"] == "model" else "user", "content": turn["text"]}
            for turn in turns
        ]
        logger.debug("model-event step=chat-request provider=claude model=%s turns=%s", model, len(turns))
        try:
            result = await self._ensure_client().messages.create(
                model=model,
                max_tokens=self.max_tokens,
                system=CHAT_SYSTEM_PROMPT,
                messages=messages,
            )
        except anthropic.APIError as exc:
            message = getattr(exc, "message", "") or str(exc)
            logger.warning("model-event step=chat-error provider=claude message=%s", message)
            raise ModelCallError(message) from exc

        for block in getattr(result, "content", None) or []:
            if getattr(block, "type", "") == "text":
                return str(block.text)
        return NO_RESPONSE_TEXT

    async def aclose(self) -> None:
        client = self._client
        if self._owns_client and client is not None:
            self._client = None
            await client.close()
