"""Cortex Chat: streaming chat relay with persisted conversation threads.

This package provides:
- An upstream completion client for OpenAI-compatible APIs (blocking and streaming)
- A stream relay that forwards fragments and commits each turn exactly once
- SQL and in-memory conversation stores
- A client-side stream consumer built on a pure reducer

The FastAPI application lives in ``cortex_chat.main``.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""

from cortex_chat.services.completion_client import CompletionClient
from cortex_chat.services.errors import (
    ChatError,
    ChatValidationError,
    StorageError,
    ThreadNotFoundError,
    UpstreamError,
)
from cortex_chat.services.relay import StreamRelay, TurnSession, TurnState
from cortex_chat.services.thread_store import InMemoryThreadStore, SQLThreadStore, ThreadStore
from cortex_chat.ui.consumer import ChatConsumer

__version__ = "0.1.0"

__all__ = [
    # Upstream
    "CompletionClient",
    # Relay
    "StreamRelay",
    "TurnSession",
    "TurnState",
    # Stores
    "ThreadStore",
    "SQLThreadStore",
    "InMemoryThreadStore",
    # Consumer
    "ChatConsumer",
    # Errors
    "ChatError",
    "ChatValidationError",
    "StorageError",
    "ThreadNotFoundError",
    "UpstreamError",
]
