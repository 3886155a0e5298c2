from __future__ import annotations

import json

import httpx
import pytest

from shellpilot.agent.actions import NO_RESPONSE_TEXT, user_entry
from shellpilot.config import AppConfig
from shellpilot.errors import ModelCallError
from shellpilot.llm import (
    GeminiClient,
    ModelClientCache,
    chat_turn,
    convert_schema,
    extract_commands,
    make_chat_call,
    make_model_call,
)

BASE_URL = "https://gemini.test/v1beta"


def _client(handler, **kwargs) -> tuple[GeminiClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiClient(api_key="k-123", base_url=BASE_URL, http_client=http, **kwargs), http


def test_convert_schema_lowercases_nested_types() -> None:
    schema = {
        "type": "OBJECT",
        "properties": {
            "command": {"type": "STRING"},
            "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
        },
        "required": ["command"],
    }
    converted = convert_schema(schema)

    assert converted == {
        "type": "object",
        "properties": {
            "command": {"type": "string"},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["command"],
    }
    assert schema["type"] == "OBJECT"
    assert convert_schema(None) is None


@pytest.mark.asyncio
async def test_generate_posts_history_tools_and_generation_config() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        parts = [{"functionCall": {"name": "run_command", "args": {"command": "ls"}}}]
        return httpx.Response(200, json={"candidates": [{"content": {"role": "model", "parts": parts}}]})

    client, http = _client(handler, temperature=0.3, max_output_tokens=4096)
    parts = await client.generate("gemini-3-flash-preview", [user_entry("list files")])
    await http.aclose()

    assert parts == [{"functionCall": {"name": "run_command", "args": {"command": "ls"}}}]
    request = seen[0]
    assert str(request.url) == f"{BASE_URL}/models/gemini-3-flash-preview:generateContent"
    assert request.headers["x-goog-api-key"] == "k-123"
    body = json.loads(request.content)
    assert body["contents"] == [{"role": "user", "parts": [{"text": "list files"}]}]
    assert body["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 4096}
    assert body["systemInstruction"]["parts"][0]["text"].startswith("You are an expert")
    declarations = body["tools"][0]["functionDeclarations"]
    assert declarations[0]["parameters"]["type"] == "object"
    assert declarations[0]["parameters"]["properties"]["command"]["type"] == "string"


@pytest.mark.asyncio
async def test_missing_candidates_yield_no_response_part() -> None:
    client, http = _client(lambda _request: httpx.Response(200, json={"candidates": []}))
    parts = await client.generate("m", [user_entry("hi")])
    await http.aclose()

    assert parts == [{"text": NO_RESPONSE_TEXT}]


@pytest.mark.asyncio
async def test_api_error_message_is_surfaced() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"code": 429, "message": "Resource has been exhausted"}})

    client, http = _client(handler)
    with pytest.raises(ModelCallError, match="Resource has been exhausted"):
        await client.generate("m", [user_entry("hi")])
    await http.aclose()


@pytest.mark.asyncio
async def test_non_json_error_falls_back_to_status() -> None:
    client, http = _client(lambda _request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(ModelCallError, match="HTTP 502"):
        await client.generate("m", [user_entry("hi")])
    await http.aclose()


@pytest.mark.asyncio
async def test_transport_failure_becomes_model_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network down", request=request)

    client, http = _client(handler)
    with pytest.raises(ModelCallError, match="network down"):
        await client.generate("m", [user_entry("hi")])
    await http.aclose()


@pytest.mark.asyncio
async def test_missing_api_key_is_rejected_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = GeminiClient(api_key="", base_url=BASE_URL, http_client=http)
    with pytest.raises(ModelCallError, match="GEMINI_API_KEY"):
        await client.generate("m", [user_entry("hi")])
    await http.aclose()

    assert calls == []


@pytest.mark.asyncio
async def test_cache_reuses_clients_per_endpoint_and_key() -> None:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda _request: httpx.Response(200, json={"candidates": []}))
    )
    first = AppConfig(gemini_api_key="a", api_base_url=BASE_URL)
    second = AppConfig(gemini_api_key="b", api_base_url=BASE_URL)

    async with ModelClientCache(http_client=http) as cache:
        assert cache.get(first) is cache.get(first)
        assert cache.get(first) is not cache.get(second)
        assert len(cache) == 2

        call = make_model_call(cache, first)
        assert await call("m", [user_entry("hi")]) == [{"text": NO_RESPONSE_TEXT}]

    assert len(cache) == 0
    await http.aclose()


@pytest.mark.asyncio
async def test_cache_tracks_generation_settings() -> None:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda _request: httpx.Response(200, json={"candidates": []}))
    )
    config = AppConfig(gemini_api_key="a", api_base_url=BASE_URL)

    async with ModelClientCache(http_client=http) as cache:
        first = cache.get(config)
        config.model_temperature = 0.9
        warmer = cache.get(config)
        config.max_output_tokens = 512
        shorter = cache.get(config)

        assert first is not warmer
        assert warmer is not shorter
        assert (warmer.temperature, shorter.max_output_tokens) == (0.9, 512)
        assert cache.get(config) is shorter
    await http.aclose()


@pytest.mark.asyncio
async def test_chat_sends_text_turns_with_command_tag_instruction() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        parts = [{"text": "Run <cmd>uptime</cmd> for load."}]
        return httpx.Response(200, json={"candidates": [{"content": {"role": "model", "parts": parts}}]})

    client, http = _client(handler, chat_temperature=0.7)
    reply = await client.chat(
        "gemini-3-flash-preview",
        [chat_turn("user", "load?"), chat_turn("model", "Which host?"), chat_turn("user", "this one")],
    )
    await http.aclose()

    assert reply == "Run <cmd>uptime</cmd> for load."
    body = json.loads(seen[0].content)
    assert [content["role"] for content in body["contents"]] == ["user", "model", "user"]
    assert body["contents"][2]["parts"] == [{"text": "this one"}]
    assert "tools" not in body
    assert body["generationConfig"]["temperature"] == 0.7
    assert "<cmd>" in body["systemInstruction"]["parts"][0]["text"]


@pytest.mark.asyncio
async def test_chat_without_text_part_returns_placeholder() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        parts = [{"functionCall": {"name": "run_command", "args": {}}}]
        return httpx.Response(200, json={"candidates": [{"content": {"parts": parts}}]})

    client, http = _client(handler)
    assert await client.chat("m", [chat_turn("user", "hi")]) == NO_RESPONSE_TEXT
    with pytest.raises(ModelCallError):
        await client.chat("m", [])
    await http.aclose()


@pytest.mark.asyncio
async def test_chat_call_routes_by_provider() -> None:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(
            lambda _request: httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})
        )
    )
    config = AppConfig(gemini_api_key="k", api_base_url=BASE_URL, anthropic_api_key="")

    async with ModelClientCache(http_client=http) as cache:
        call = make_chat_call(cache, config)
        assert await call("gemini", [chat_turn("user", "hi")]) == "ok"
        with pytest.raises(ModelCallError, match="Anthropic API key"):
            await call("claude", [chat_turn("user", "hi")])
        with pytest.raises(ModelCallError, match="Unknown chat provider"):
            await call("gpt", [chat_turn("user", "hi")])
    await http.aclose()


def test_extract_commands_reads_tags_in_order() -> None:
    text = "Try <cmd>ls -la</cmd>, then <cmd> </cmd> or <cmd>du -sh\n.</cmd>."
    assert extract_commands(text) == ["ls -la", "du -sh\n."]
    assert extract_commands("no commands here") == []
