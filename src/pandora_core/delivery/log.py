"""Channel that writes messages to the log. Used for local runs and the ``api`` target."""

from __future__ import annotations

import json
import logging
from typing import Any

from ..logging import truncate_for_log
from .base import DeliveryChannel

logger = logging.getLogger(__name__)


class LogChannel(DeliveryChannel):
    name = "log"

    def __init__(self, max_message_chars: int = 3000, level: int = logging.INFO) -> None:
        self.max_message_chars = max_message_chars
        self.level = level
        self.sent: int = 0

    async def post_text(self, text: str, *, target: str | None = None) -> None:
        self.sent += 1
        logger.log(self.level, f"[delivery:{target or 'default'}] {truncate_for_log(text, 500)}")

    async def post_blocks(self, blocks: list[dict[str, Any]], *, target: str | None = None) -> None:
        self.sent += 1
        logger.log(self.level, f"[delivery:{target or 'default'}] {truncate_for_log(json.dumps(blocks), 500)}")


__all__ = ["LogChannel"]
