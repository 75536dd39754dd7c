"""OpenAI chat-completions transport for the conveyor agents."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ..config import OpenAISettings
from .base import (
    Completion,
    ProviderTransportError,
    ThinkingCallback,
    estimate_cost,
    is_retryable_status,
)

LOGGER = logging.getLogger(__name__)


class OpenAITextProvider:
    """Wrapper around the async OpenAI client that streams JSON completions."""

    name = "openai"

    def __init__(self, settings: OpenAISettings, client: Optional[AsyncOpenAI] = None) -> None:
        self._settings = settings
        if client is None:
            kwargs: dict[str, Any] = {"api_key": settings.api_key}
            if settings.base_url:
                kwargs["base_url"] = settings.base_url
            http_client_kwargs: dict[str, object] = {}
            if settings.trust_env is not None:
                http_client_kwargs["trust_env"] = settings.trust_env
            if settings.proxy:
                http_client_kwargs["proxy"] = settings.proxy
            if settings.timeout_seconds is not None:
                http_client_kwargs["timeout"] = httpx.Timeout(settings.timeout_seconds)
            if settings.verify is not None:
                http_client_kwargs["verify"] = settings.verify
            client = AsyncOpenAI(http_client=httpx.AsyncClient(**http_client_kwargs), **kwargs)
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        return self._client

    @property
    def model(self) -> str:
        return self._settings.model

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
        on_thinking: Optional[ThinkingCallback] = None,
    ) -> Completion:
        if "json" not in system_prompt.lower():
            system_prompt = f"{system_prompt.strip()} Respond with valid JSON."
        request_payload = {
            "model": self._settings.model,
            "temperature": self._settings.temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        LOGGER.debug("Calling OpenAI chat completion with model %s", self._settings.model)

        parts: List[str] = []
        input_tokens = output_tokens = 0
        try:
            stream = await self._client.chat.completions.create(**request_payload)
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    input_tokens = usage.prompt_tokens or 0
                    output_tokens = usage.completion_tokens or 0
                for choice in chunk.choices or []:
                    delta = choice.delta
                    if delta is None:
                        continue
                    # Reasoning models expose their chain of thought on a separate field.
                    reasoning = getattr(delta, "reasoning_content", None)
                    if reasoning and on_thinking is not None:
                        on_thinking(reasoning)
                    text = self._delta_text(delta.content)
                    if text:
                        parts.append(text)
        except openai.APIStatusError as exc:
            raise ProviderTransportError(
                f"OpenAI request failed with status {exc.status_code}: {exc.message}",
                retryable=is_retryable_status(exc.status_code),
                status_code=exc.status_code,
            ) from exc
        except (openai.APIConnectionError, httpx.TransportError) as exc:
            raise ProviderTransportError(f"OpenAI connection failed: {exc}") from exc

        content = "".join(parts)
        LOGGER.info(
            "OpenAI completion finished (%s chars, %s/%s tokens)",
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
    def _delta_text(content: Any) -> str:
        """Normalise delta content that may arrive as a string or a list of parts."""

        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts: List[str] = []
            for part in content:
                if isinstance(part, str):
                    texts.append(part)
                elif isinstance(part, dict):
                    texts.append(str(part.get("text") or ""))
                else:
                    texts.append(str(getattr(part, "text", "") or ""))
            return "".join(texts)
        return str(content)

    async def aclose(self) -> None:
        await self._client.close()


__all__ = ["OpenAITextProvider"]
