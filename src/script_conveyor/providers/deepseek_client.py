"""Client for DeepSeek chat completions, streamed over server-sent events."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

import httpx

from ..config import DeepSeekSettings
from .base import (
    Completion,
    ProviderTransportError,
    ThinkingCallback,
    estimate_cost,
    is_retryable_status,
)

LOGGER = logging.getLogger(__name__)


class DeepSeekTextProvider:
    """Minimal wrapper over DeepSeek's OpenAI-compatible streaming API."""

    name = "deepseek"

    def __init__(self, settings: DeepSeekSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._settings = settings
        base_url = settings.base_url or "https://api.deepseek.com/v1"
        self._endpoint = base_url.rstrip("/") + "/chat/completions"
        self._transport = transport

    @property
    def model(self) -> str:
        return self._settings.model

    def _client(self) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self._settings.timeout_seconds),
            "trust_env": self._settings.trust_env,
        }
        if self._settings.verify is not None:
            kwargs["verify"] = self._settings.verify
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
        on_thinking: Optional[ThinkingCallback] = None,
    ) -> Completion:
        payload = {
            "model": self._settings.model,
            "temperature": self._settings.temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        # deepseek-reasoner rejects response_format; the prompt already demands JSON.
        if "reasoner" not in self._settings.model:
            payload["response_format"] = {"type": "json_object"}
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

        parts: List[str] = []
        usage: dict[str, Any] = {}
        try:
            async with self._client() as client:
                async with client.stream("POST", self._endpoint, json=payload, headers=headers) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise ProviderTransportError(
                            f"DeepSeek request failed with status {response.status_code}: {body[:200]}",
                            retryable=is_retryable_status(response.status_code),
                            status_code=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        chunk = self.parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk.get("usage"):
                            usage = chunk["usage"]
                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            reasoning = delta.get("reasoning_content")
                            if reasoning and on_thinking is not None:
                                on_thinking(reasoning)
                            if delta.get("content"):
                                parts.append(delta["content"])
        except httpx.TransportError as exc:
            raise ProviderTransportError(f"DeepSeek connection failed: {exc}") from exc

        input_tokens = int(usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or 0)
        content = "".join(parts)
        LOGGER.info(
            "DeepSeek completion finished (%s chars, %s/%s tokens)",
            len(content),
            input_tokens,
            output_tokens,
        )
        return Completion(
            text=content,
            provider=self.name,
            model=self._settings.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=estimate_cost(
                input_tokens,
                output_tokens,
                self._settings.input_cost_per_million,
                self._settings.output_cost_per_million,
            ),
        )

    @staticmethod
    def parse_sse_line(line: str) -> Optional[dict]:
        """Decode one ``data:`` line of the stream; ``None`` for anything else."""

        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            LOGGER.warning("Skipping undecodable DeepSeek stream chunk: %s", data[:120])
            return None


__all__ = ["DeepSeekTextProvider"]
