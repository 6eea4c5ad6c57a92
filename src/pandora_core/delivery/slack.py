"""
Slack incoming-webhook channel.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

import aiohttp

from ..config import DeliveryConfig
from ..errors import DeliveryError
from .base import DeliveryChannel
from .chunking import chunk_text

logger = logging.getLogger(__name__)

SECTION_TEXT_LIMIT = 2900

_SECTION_BREAK = re.compile(r"\n(?=#{1,3}\s)|\n(?=\d+\.\s)")
_HEADING = re.compile(r"^#{1,3}[ \t]*(.+?)[ \t]*$", re.MULTILINE)
_BOLD = re.compile(r"\*\*([^*]+)\*\*")


def format_blocks(text: str, title: str | None = None) -> list[dict[str, Any]]:
    """
    Convert markdown narrative into Slack blocks.

    Sections start at headings or numbered items. Headings and ``**bold**``
    become Slack ``*bold*``. Sections over the Slack limit are chunked.
    """
    blocks: list[dict[str, Any]] = []
    if title:
        blocks.append({"type": "header", "text": {"type": "plain_text", "text": title[:150]}})
        blocks.append({"type": "divider"})

    for section in _SECTION_BREAK.split(text):
        section = section.strip()
        if not section:
            continue
        cleaned = _BOLD.sub(r"*\1*", _HEADING.sub(r"*\1*", section))
        for chunk in chunk_text(cleaned, SECTION_TEXT_LIMIT):
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": chunk}})

    blocks.append({"type": "divider"})
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M")
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"Pandora | {stamp} UTC"}]})
    return blocks


class SlackWebhookChannel(DeliveryChannel):
    """
    Posts to a Slack incoming webhook.

    Features:
    - Async HTTP POST with configurable timeout
    - Retries with exponential backoff on transport errors and 429/5xx
    - ``target`` overrides the webhook URL per message

    Raises ``DeliveryError`` after the last attempt fails.
    """

    name = "slack"

    def __init__(
        self,
        url: str | None,
        *,
        max_message_chars: int = 3000,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
    ) -> None:
        self.url = url
        self.max_message_chars = max_message_chars
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_config(cls, config: DeliveryConfig) -> SlackWebhookChannel:
        return cls(
            config.slack_webhook_url,
            max_message_chars=config.max_message_chars,
            timeout_seconds=config.timeout,
            max_retries=config.max_retries,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def post_text(self, text: str, *, target: str | None = None) -> None:
        await self._send({"text": text}, target)

    async def post_blocks(self, blocks: list[dict[str, Any]], *, target: str | None = None) -> None:
        # Slack caps a message at 50 blocks.
        for start in range(0, max(len(blocks), 1), 50):
            await self._send({"blocks": blocks[start : start + 50]}, target)

    async def _send(self, body: dict[str, Any], target: str | None) -> None:
        url = target or self.url
        if not url:
            raise DeliveryError("No Slack webhook URL configured")

        session = await self._get_session()
        payload = json.dumps(body)
        headers = {"Content-Type": "application/json"}

        last_error: str | None = None
        last_status: int | None = None
        for attempt in range(self.max_retries):
            try:
                async with session.post(
                    url,
                    data=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    if response.status < 400:
                        return
                    last_status = response.status
                    last_error = f"HTTP {response.status}: {(await response.text())[:200]}"
                    if response.status < 500 and response.status != 429:
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_base * (2**attempt))

        logger.warning(f"Slack delivery failed after {attempt + 1} attempts: {last_error}")
        raise DeliveryError(f"Slack delivery failed: {last_error}", http_status=last_status)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


__all__ = ["SlackWebhookChannel", "format_blocks", "SECTION_TEXT_LIMIT"]
