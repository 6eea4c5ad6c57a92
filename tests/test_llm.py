"""
Tests for model routing and the OpenAI client adapter.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from pandora_core.errors import ConfigurationError
from pandora_core.llm import CompletionResult, Message, ModelRouter, ModelTier, ToolCall, Usage
from pandora_core.llm.base import with_retry
from pandora_core.llm.openai import OpenAIModelClient
from pandora_core.tools.base import Tool
from tests.conftest import FakeModelClient


def chat_response(content="ok", tool_calls=None, prompt_tokens=12, completion_tokens=4):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def fake_sdk(*responses):
    create = AsyncMock(side_effect=list(responses))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), create


class TestTypes:
    def test_usage_add(self):
        usage = Usage(10, 5).add(Usage(1, 1)).add(None)
        assert usage.total_tokens == 17
        assert usage.to_dict() == {"input_tokens": 11, "output_tokens": 6, "total_tokens": 17}

    def test_assistant_message_with_tool_calls(self):
        message = Message.assistant(tool_calls=[ToolCall(id="c1", name="lookup", arguments='{"q": 1}')])

        d = message.to_dict()

        assert "content" not in d
        assert d["tool_calls"][0]["function"] == {"name": "lookup", "arguments": '{"q": 1}'}

    def test_tool_result_message(self):
        d = Message.tool_result("c1", "42", name="lookup").to_dict()
        assert d == {"role": "tool", "content": "42", "name": "lookup", "tool_call_id": "c1"}

    def test_completion_ok(self):
        assert CompletionResult(content="x").ok
        assert not CompletionResult(status=200, error="empty").ok
        assert not CompletionResult(status=429).ok


class TestModelRouter:
    def test_tiers(self):
        cheap, strong = FakeModelClient(), FakeModelClient()
        router = ModelRouter(
            {ModelTier.CLASSIFY: cheap, ModelTier.SYNTHESIZE: strong}, temperatures={ModelTier.SYNTHESIZE: 0.3}
        )

        assert router.for_tier(ModelTier.CLASSIFY) is cheap
        assert router.for_tier(ModelTier.SYNTHESIZE) is strong
        assert router.temperature(ModelTier.CLASSIFY) == 0.0
        assert router.temperature(ModelTier.SYNTHESIZE) == 0.3

    def test_single(self):
        client = FakeModelClient()
        router = ModelRouter.single(client)
        assert router.for_tier(ModelTier.CLASSIFY) is router.for_tier(ModelTier.SYNTHESIZE) is client

    def test_missing_tier(self):
        router = ModelRouter({ModelTier.CLASSIFY: FakeModelClient()})
        with pytest.raises(ConfigurationError, match="No model client configured for tier 'synthesize'"):
            router.for_tier(ModelTier.SYNTHESIZE)


class TestWithRetry:
    async def test_retries_retryable_status(self):
        results = [CompletionResult(status=503, error="busy"), CompletionResult(content="done")]
        operation = AsyncMock(side_effect=results)

        result = await with_retry(operation, attempts=3, backoff=0)

        assert result.content == "done"
        assert operation.await_count == 2

    async def test_client_errors_not_retried(self):
        operation = AsyncMock(return_value=CompletionResult(status=400, error="bad request"))

        result = await with_retry(operation, attempts=3, backoff=0)

        assert result.status == 400
        assert operation.await_count == 1

    async def test_last_result_returned(self):
        operation = AsyncMock(return_value=CompletionResult(status=429, error="slow down"))
        result = await with_retry(operation, attempts=2, backoff=0)
        assert result.status == 429
        assert operation.await_count == 2


class TestOpenAIModelClient:
    async def test_complete(self):
        sdk, create = fake_sdk(chat_response("Three deals need attention."))
        client = OpenAIModelClient("gpt-4o", client=sdk)

        result = await client.complete(
            "You are terse.",
            [Message.user("Summarize")],
            max_tokens=50,
            temperature=0.2,
            response_format={"type": "json_object"},
        )

        assert result.ok
        assert result.content == "Three deals need attention."
        assert result.usage.total_tokens == 16
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["messages"][0] == {"role": "system", "content": "You are terse."}
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "tools" not in kwargs

    async def test_tool_calls_are_mapped(self):
        call = SimpleNamespace(id="call_1", function=SimpleNamespace(name="lookup", arguments='{"deal_id": "d1"}'))
        sdk, create = fake_sdk(chat_response(None, tool_calls=[call]))
        client = OpenAIModelClient("gpt-4o", client=sdk)
        tool = Tool(name="lookup", handler=lambda deal_id: deal_id)

        result = await client.complete("", [Message.user("Go")], max_tokens=50, temperature=0, tools=[tool])

        assert result.has_tool_calls
        assert result.tool_calls[0].parse_arguments() == {"deal_id": "d1"}
        assert create.await_args.kwargs["tools"][0]["function"]["name"] == "lookup"
        assert create.await_args.kwargs["messages"][0]["role"] == "user"

    async def test_connection_error_becomes_status(self):
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        sdk, create = fake_sdk(error)
        client = OpenAIModelClient("gpt-4o", client=sdk, attempts=1)

        result = await client.complete("", [Message.user("Go")], max_tokens=50, temperature=0)

        assert result.status == 500
        assert not result.ok
        assert create.await_count == 1
