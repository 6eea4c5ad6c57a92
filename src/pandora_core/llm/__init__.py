"""
Model client abstraction: message types, tier routing and the OpenAI adapter.
"""

from .base import ModelClient, ModelRouter, with_retry
from .openai import OpenAIModelClient
from .types import CompletionResult, Message, ModelTier, Role, ToolCall, Usage

__all__ = [
    # Types
    "Role",
    "ModelTier",
    "ToolCall",
    "Message",
    "Usage",
    "CompletionResult",
    # Clients
    "ModelClient",
    "ModelRouter",
    "OpenAIModelClient",
    "with_retry",
]
