"""
Model client protocol and tier routing.

Runtimes never talk to a provider SDK directly. They ask a ``ModelRouter``
for the client serving a tier and call ``complete`` on it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import ConfigurationError
from .types import CompletionResult, Message, ModelTier

if TYPE_CHECKING:
    from ..tools.base import Tool

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


@runtime_checkable
class ModelClient(Protocol):
    """Interface for a single model endpoint."""

    async def complete(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        max_tokens: int,
        temperature: float,
        tools: list[Tool] | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> CompletionResult:
        """
        Generate a completion.

        Args:
            system_prompt: System instructions
            messages: Conversation so far
            max_tokens: Maximum output tokens
            temperature: Sampling temperature
            tools: Tools the model may call
            response_format: Provider response format, e.g. ``{"type": "json_object"}``

        Returns:
            CompletionResult; failures are reported through ``status``/``error``.
        """
        ...


class ModelRouter:
    """
    Maps a model tier to the client serving it.

    Example:
        ```python
        router = ModelRouter({
            ModelTier.CLASSIFY: OpenAIModelClient("gpt-4o-mini"),
            ModelTier.SYNTHESIZE: OpenAIModelClient("gpt-4o"),
        })
        client = router.for_tier(ModelTier.CLASSIFY)
        ```
    """

    def __init__(
        self,
        clients: dict[ModelTier, ModelClient],
        temperatures: dict[ModelTier, float] | None = None,
    ) -> None:
        self._clients = dict(clients)
        self._temperatures = {ModelTier.CLASSIFY: 0.0, ModelTier.SYNTHESIZE: 0.7}
        if temperatures:
            self._temperatures.update(temperatures)

    @classmethod
    def single(cls, client: ModelClient) -> ModelRouter:
        """Route every tier to the same client."""
        return cls({tier: client for tier in ModelTier})

    def for_tier(self, tier: ModelTier) -> ModelClient:
        client = self._clients.get(tier)
        if client is None:
            raise ConfigurationError(f"No model client configured for tier '{tier.value}'")
        return client

    def temperature(self, tier: ModelTier) -> float:
        return self._temperatures[tier]


async def with_retry(
    operation: Callable[[], Awaitable[CompletionResult]],
    *,
    attempts: int = 3,
    backoff: float = 1.0,
) -> CompletionResult:
    """
    Execute a completion with retry and jittered exponential backoff.

    Only results whose ``status`` is in ``RETRYABLE_STATUSES`` are retried;
    the last result is returned when attempts run out.
    """
    current_backoff = backoff
    result = await operation()
    for attempt in range(1, attempts):
        if result.status not in RETRYABLE_STATUSES:
            break
        wait_time = current_backoff * random.uniform(0.8, 1.2)
        logger.warning(f"Model call returned {result.status}, retrying in {wait_time:.2f}s (attempt {attempt + 1})")
        await asyncio.sleep(wait_time)
        current_backoff *= 2
        result = await operation()
    return result


__all__ = ["ModelClient", "ModelRouter", "RETRYABLE_STATUSES", "with_retry"]
