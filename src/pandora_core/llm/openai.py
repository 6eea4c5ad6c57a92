"""
OpenAI model client.

Adapts ``openai.AsyncOpenAI`` chat completions to the ``ModelClient``
protocol. SDK exceptions are mapped to ``CompletionResult`` status codes
so transient failures can be retried.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import openai
from openai import AsyncOpenAI

from .base import with_retry
from .types import CompletionResult, Message, ToolCall, Usage

if TYPE_CHECKING:
    from ..config import ModelConfig
    from ..tools.base import Tool

logger = logging.getLogger(__name__)


class OpenAIModelClient:
    """
    Chat-completions client for one OpenAI model.

    Example:
        ```python
        client = OpenAIModelClient("gpt-4o-mini", api_key=settings.model.api_key)
        result = await client.complete("You are terse.", [Message.user("Hi")], max_tokens=50, temperature=0)
        ```
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        attempts: int = 3,
        backoff: float = 1.0,
        client: AsyncOpenAI | None = None,
    ):
        self.model_name = model
        self.attempts = attempts
        self.backoff = backoff

        if client is None:
            client_kwargs: dict[str, Any] = {"timeout": timeout}
            if api_key:
                client_kwargs["api_key"] = api_key
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)
        self.client = client

    @classmethod
    def from_config(cls, config: ModelConfig, *, model: str) -> OpenAIModelClient:
        return cls(model, api_key=config.api_key, base_url=config.base_url, timeout=config.timeout)

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
        api_messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        api_messages.extend(m.to_dict() for m in messages)

        params: dict[str, Any] = {
            "model": self.model_name,
            "messages": api_messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            params["tools"] = [tool.to_openai_format() for tool in tools]
        if response_format:
            params["response_format"] = response_format

        async def _do_completion() -> CompletionResult:
            try:
                response = await self.client.chat.completions.create(**params)
            except openai.APIConnectionError as e:
                return CompletionResult(status=500, error=str(e.__cause__ or e))
            except openai.RateLimitError as e:
                return CompletionResult(status=429, error=f"Rate limit exceeded: {e}")
            except openai.APIStatusError as e:
                return CompletionResult(status=e.status_code, error=str(e))

            choice = response.choices[0]
            tool_calls = None
            if choice.message.tool_calls:
                tool_calls = [
                    ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments)
                    for tc in choice.message.tool_calls
                ]

            usage = Usage()
            if response.usage is not None:
                usage = Usage(
                    input_tokens=response.usage.prompt_tokens or 0,
                    output_tokens=response.usage.completion_tokens or 0,
                )

            return CompletionResult(
                content=choice.message.content,
                tool_calls=tool_calls,
                usage=usage,
                finish_reason=choice.finish_reason,
                model=self.model_name,
            )

        result = await with_retry(_do_completion, attempts=self.attempts, backoff=self.backoff)
        if not result.ok:
            logger.warning(f"OpenAI completion failed for {self.model_name}: {result.status} {result.error}")
        return result


__all__ = ["OpenAIModelClient"]
