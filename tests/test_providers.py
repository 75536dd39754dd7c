"""Tests for the text-generation provider clients."""

from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from script_conveyor.config import ConfigurationError, DeepSeekSettings, OpenAISettings, ServiceConfig
from script_conveyor.providers.base import ProviderTransportError
from script_conveyor.providers.deepseek_client import DeepSeekTextProvider
from script_conveyor.providers.openai_client import OpenAITextProvider
from script_conveyor.providers.registry import ProviderRegistry


def test_parse_sse_line() -> None:
    assert DeepSeekTextProvider.parse_sse_line('data: {"a": 1}') == {"a": 1}
    assert DeepSeekTextProvider.parse_sse_line("data: [DONE]") is None
    assert DeepSeekTextProvider.parse_sse_line(": keep-alive") is None
    assert DeepSeekTextProvider.parse_sse_line("data: {broken") is None


def test_delta_text_from_structured_parts() -> None:
    parts = [{"type": "text", "text": '{"scenes": '}, SimpleNamespace(text="[]"), "}"]

    assert OpenAITextProvider._delta_text(parts) == '{"scenes": []}'
    assert OpenAITextProvider._delta_text(None) == ""


def _sse(*chunks: dict) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_deepseek_streams_content_and_thinking() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        body = _sse(
            {"choices": [{"delta": {"reasoning_content": "Considering the hook"}}]},
            {"choices": [{"delta": {"content": '{"scenes": '}}]},
            {"choices": [{"delta": {"content": "[]}"}}]},
            {"choices": [], "usage": {"prompt_tokens": 1000, "completion_tokens": 500}},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = DeepSeekTextProvider(DeepSeekSettings(api_key="key"), transport=httpx.MockTransport(handler))
    thoughts = []

    completion = await provider.complete("system", "user", max_tokens=100, on_thinking=thoughts.append)

    assert completion.text == '{"scenes": []}'
    assert thoughts == ["Considering the hook"]
    assert completion.input_tokens == 1000
    assert completion.cost_usd == pytest.approx((1000 * 0.27 + 500 * 1.10) / 1_000_000)
    assert requests[0]["response_format"] == {"type": "json_object"}
    assert requests[0]["max_tokens"] == 100


@pytest.mark.asyncio
async def test_deepseek_reasoner_omits_response_format() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "{}"}}]}))

    provider = DeepSeekTextProvider(
        DeepSeekSettings(api_key="key", model="deepseek-reasoner"), transport=httpx.MockTransport(handler)
    )

    await provider.complete("system", "user", max_tokens=10)

    assert "response_format" not in requests[0]


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, retryable", [(503, True), (429, True), (400, False)])
async def test_deepseek_http_errors_become_transport_errors(status_code: int, retryable: bool) -> None:
    provider = DeepSeekTextProvider(
        DeepSeekSettings(api_key="key"),
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code, text="nope")),
    )

    with pytest.raises(ProviderTransportError) as excinfo:
        await provider.complete("system", "user", max_tokens=10)

    assert excinfo.value.retryable is retryable
    assert excinfo.value.status_code == status_code


@pytest.mark.asyncio
async def test_deepseek_connection_errors_are_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = DeepSeekTextProvider(DeepSeekSettings(api_key="key"), transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderTransportError) as excinfo:
        await provider.complete("system", "user", max_tokens=10)

    assert excinfo.value.retryable is True


class FakeCompletions:
    def __init__(self, chunks=None, error=None) -> None:
        self.chunks = chunks or []
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error

        async def stream():
            for chunk in self.chunks:
                yield chunk

        return stream()


def _fake_client(completions: FakeCompletions) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _chunk(content=None, reasoning=None, usage=None) -> SimpleNamespace:
    choices = []
    if content is not None or reasoning is not None:
        choices.append(SimpleNamespace(delta=SimpleNamespace(content=content, reasoning_content=reasoning)))
    return SimpleNamespace(choices=choices, usage=usage)


@pytest.mark.asyncio
async def test_openai_streams_content_and_usage() -> None:
    completions = FakeCompletions(
        [
            _chunk(reasoning="Looking at the facts"),
            _chunk(content='{"ok": '),
            _chunk(content="true}"),
            _chunk(usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=2000)),
        ]
    )
    provider = OpenAITextProvider(OpenAISettings(api_key="key"), client=_fake_client(completions))
    thoughts = []

    completion = await provider.complete("Write a script", "content", max_tokens=50, on_thinking=thoughts.append)

    assert completion.text == '{"ok": true}'
    assert thoughts == ["Looking at the facts"]
    assert completion.cost_usd == pytest.approx(0.00135)
    assert completions.kwargs["stream"] is True
    assert completions.kwargs["messages"][0]["content"].endswith("Respond with valid JSON.")


@pytest.mark.asyncio
async def test_openai_rate_limit_is_retryable() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    provider = OpenAITextProvider(
        OpenAISettings(api_key="key"), client=_fake_client(FakeCompletions(error=error))
    )

    with pytest.raises(ProviderTransportError) as excinfo:
        await provider.complete("json please", "content", max_tokens=50)

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 429


def test_registry_reports_configuration() -> None:
    registry = ProviderRegistry(ServiceConfig(deepseek=DeepSeekSettings(api_key="key")))

    assert registry.is_configured("deepseek") is True
    assert registry.is_configured("openai") is False
    with pytest.raises(ConfigurationError):
        registry.ensure_configured("openai")
    with pytest.raises(ConfigurationError):
        registry.ensure_configured("anthropic")
    assert isinstance(registry.get("deepseek"), DeepSeekTextProvider)
    assert registry.get("deepseek") is registry.get("deepseek")
