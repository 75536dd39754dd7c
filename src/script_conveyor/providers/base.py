"""Transport contract shared by the text-generation providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

ThinkingCallback = Callable[[str], None]


class ProviderTransportError(RuntimeError):
    """Raised when the provider cannot be reached or refuses the request.

    ``retryable`` distinguishes transient failures (timeouts, rate limits,
    5xx responses) from requests that will keep failing if repeated.
    """

    def __init__(self, message: str, *, retryable: bool = True, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass(frozen=True)
class Completion:
    """Text returned by a provider plus its usage accounting."""

    text: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class TextProvider(Protocol):
    """Streams a chat completion and returns the assembled text."""

    name: str

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
        on_thinking: Optional[ThinkingCallback] = None,
    ) -> Completion:
        """Run one completion, forwarding reasoning deltas to ``on_thinking``."""


def estimate_cost(
    input_tokens: int,
    output_tokens: int,
    input_cost_per_million: float,
    output_cost_per_million: float,
) -> float:
    cost = (
        input_tokens * input_cost_per_million
        + output_tokens * output_cost_per_million
    ) / 1_000_000
    return round(cost, 6)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


__all__ = [
    "Completion",
    "ProviderTransportError",
    "TextProvider",
    "ThinkingCallback",
    "estimate_cost",
    "is_retryable_status",
]
