"""Delivery channels and message chunking."""

from .base import ChannelRegistry, DeliveryChannel
from .chunking import chunk_text
from .log import LogChannel
from .slack import SlackWebhookChannel, format_blocks

__all__ = [
    "ChannelRegistry",
    "DeliveryChannel",
    "LogChannel",
    "SlackWebhookChannel",
    "chunk_text",
    "format_blocks",
]
