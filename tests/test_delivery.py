"""
Tests for message chunking and delivery channels.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp import test_utils

from pandora_core.delivery import ChannelRegistry, LogChannel, SlackWebhookChannel, chunk_text, format_blocks
from pandora_core.errors import ConfigurationError, DeliveryError


class TestChunkText:
    def test_short_text_is_one_chunk(self):
        assert chunk_text("hello", 100) == ["hello"]

    def test_blank_text(self):
        assert chunk_text("  \n ", 100) == []

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            chunk_text("hello", 0)

    def test_splits_on_line_boundaries(self):
        lines = [f"line {i:02d} " + "x" * 20 for i in range(10)]
        text = "\n".join(lines)

        chunks = chunk_text(text, 100)

        assert [len(c.split("\n")) for c in chunks] == [3, 3, 3, 1]
        assert all(len(c) <= 100 for c in chunks)
        assert "\n".join(chunks) == text

    def test_code_fence_kept_whole(self):
        text = "intro\n```\ncode1\ncode2\n```\noutro"
        assert chunk_text(text, 20) == ["intro", "```\ncode1\ncode2\n```", "outro"]

    def test_oversized_fence_split_into_closed_blocks(self):
        body = "\n".join(f"row_{i} = {i}" for i in range(30))
        text = f"```python\n{body}\n```"

        chunks = chunk_text(text, 80)

        assert len(chunks) > 1
        for chunk in chunks:
            assert len(chunk) <= 80
            assert chunk.startswith("```python\n")
            assert chunk.endswith("\n```")

    def test_unterminated_fence_is_closed(self):
        text = "a" * 30 + "\n```\n" + "b" * 30
        chunks = chunk_text(text, 40)
        assert chunks[-1] == "```\n" + "b" * 30 + "\n```"

    def test_table_rows_never_split(self):
        rows = ["| Deal | Stage | Amount |", "|---|---|---|"]
        rows += [f"| Deal {i} | Negotiation | ${i * 1000} |" for i in range(20)]

        chunks = chunk_text("\n".join(rows), 120)

        for chunk in chunks:
            for line in chunk.split("\n"):
                assert line.startswith("|") and line.endswith("|")

    def test_overlong_line_split_on_whitespace(self):
        text = "word " * 50
        chunks = chunk_text(text, 30)

        assert all(len(c) <= 30 for c in chunks)
        assert all(not c.startswith(" ") for c in chunks)
        assert " ".join(chunks).split() == text.split()


class TestFormatBlocks:
    def test_sections_and_bold(self):
        text = "## Summary\n**3 deals** at risk\n## Actions\n1. Call Acme\n2. Update close dates"

        blocks = format_blocks(text, title="Weekly Briefing")

        assert blocks[0] == {"type": "header", "text": {"type": "plain_text", "text": "Weekly Briefing"}}
        assert blocks[1] == {"type": "divider"}
        sections = [b["text"]["text"] for b in blocks if b["type"] == "section"]
        assert sections == ["*Summary*\n*3 deals* at risk", "*Actions*", "1. Call Acme", "2. Update close dates"]
        assert blocks[-1]["type"] == "context"

    def test_without_title(self):
        blocks = format_blocks("Just one paragraph.")
        assert [b["type"] for b in blocks] == ["section", "divider", "context"]

    def test_long_section_chunked(self):
        blocks = format_blocks("\n".join(["x" * 100] * 60))
        sections = [b for b in blocks if b["type"] == "section"]
        assert len(sections) == 3


class TestChannels:
    async def test_log_channel_deliver(self):
        channel = LogChannel(max_message_chars=100)

        posted = await channel.deliver("\n".join(["y" * 60] * 3), title="Report")

        assert posted == 3
        assert channel.sent == 3

    def test_registry_lookup(self):
        channel = LogChannel()
        registry = ChannelRegistry([channel])

        assert registry.get("log") is channel
        assert "log" in registry
        with pytest.raises(ConfigurationError, match="Unknown delivery channel: email"):
            registry.get("email")


@pytest.fixture
async def webhook():
    state = SimpleNamespace(received=[], paths=[], statuses=[])

    async def handler(request):
        state.received.append(await request.json())
        state.paths.append(request.path)
        status = state.statuses.pop(0) if state.statuses else 200
        return web.Response(status=status, text="ok" if status < 400 else "invalid_payload")

    app = web.Application()
    app.router.add_post("/hook", handler)
    app.router.add_post("/other", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    state.url = str(server.make_url("/hook"))
    state.other_url = str(server.make_url("/other"))
    yield state
    await server.close()


class TestSlackWebhookChannel:
    async def test_post_text(self, webhook):
        channel = SlackWebhookChannel(webhook.url)
        try:
            await channel.post_text("Three deals need attention.")
        finally:
            await channel.close()

        assert webhook.received == [{"text": "Three deals need attention."}]

    async def test_target_overrides_url(self, webhook):
        channel = SlackWebhookChannel(webhook.url)
        try:
            await channel.post_text("hi", target=webhook.other_url)
        finally:
            await channel.close()

        assert webhook.paths == ["/other"]

    async def test_retries_server_errors(self, webhook):
        webhook.statuses.extend([500, 429])
        channel = SlackWebhookChannel(webhook.url, backoff_base=0)
        try:
            await channel.post_text("hi")
        finally:
            await channel.close()

        assert len(webhook.received) == 3

    async def test_client_error_not_retried(self, webhook):
        webhook.statuses.append(400)
        channel = SlackWebhookChannel(webhook.url, backoff_base=0)
        try:
            with pytest.raises(DeliveryError) as exc_info:
                await channel.post_text("hi")
        finally:
            await channel.close()

        assert exc_info.value.http_status == 400
        assert "invalid_payload" in exc_info.value.message
        assert len(webhook.received) == 1

    async def test_gives_up_after_retries(self, webhook):
        webhook.statuses.extend([503, 503])
        channel = SlackWebhookChannel(webhook.url, max_retries=2, backoff_base=0)
        try:
            with pytest.raises(DeliveryError):
                await channel.post_text("hi")
        finally:
            await channel.close()

        assert len(webhook.received) == 2

    async def test_blocks_are_batched(self, webhook):
        blocks = [{"type": "divider"}] * 120
        channel = SlackWebhookChannel(webhook.url)
        try:
            await channel.post_blocks(blocks)
        finally:
            await channel.close()

        assert [len(body["blocks"]) for body in webhook.received] == [50, 50, 20]

    async def test_no_url(self):
        with pytest.raises(DeliveryError, match="No Slack webhook URL configured"):
            await SlackWebhookChannel(None).post_text("hi")
