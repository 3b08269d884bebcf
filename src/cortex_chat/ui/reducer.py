"""
Client-side conversation reducer.

Local conversation state is an immutable tuple of ``ChatMessage`` values.
Every change the stream consumer makes goes through ``reduce(state, event)``,
a pure function, so the merge rules can be tested without any transport::

    state = reduce((), MessageSubmitted("Hello"))
    state = reduce(state, TokenReceived("Hi"))
    state = reduce(state, TokenReceived(" there"))
    state = reduce(state, StreamCompleted())
    # (user:"Hello", assistant:"Hi there")

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple, Union

# Shown in place of an answer that failed or came back empty
FALLBACK_REPLY = "Sorry, something went wrong while generating the response."


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str = ""


Messages = Tuple[ChatMessage, ...]


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class MessageSubmitted:
    """User sent ``content``; adds the user message and an empty placeholder."""

    content: str


@dataclass(frozen=True)
class TokenReceived:
    """One streamed fragment, applied in arrival order."""

    text: str


@dataclass(frozen=True)
class StreamCompleted:
    """The relay sent its ``done`` frame (or closed the stream cleanly)."""


@dataclass(frozen=True)
class StreamFailed:
    """The relay sent an ``error`` frame or the connection broke."""

    message: str = ""


@dataclass(frozen=True)
class StreamCancelled:
    """The user stopped the stream."""


@dataclass(frozen=True)
class ReplyRegenerated:
    """A non-streamed replacement for the trailing answer."""

    reply: str


@dataclass(frozen=True)
class ThreadLoaded:
    """Authoritative messages fetched from the server."""

    messages: Tuple[ChatMessage, ...]

    @classmethod
    def from_payload(cls, payload: Iterable[dict]) -> "ThreadLoaded":
        return cls(tuple(ChatMessage(role=m["role"], content=m.get("content") or "") for m in payload))


ChatEvent = Union[
    MessageSubmitted,
    TokenReceived,
    StreamCompleted,
    StreamFailed,
    StreamCancelled,
    ReplyRegenerated,
    ThreadLoaded,
]


# =============================================================================
# Reducer
# =============================================================================


def _ends_with_assistant(state: Messages) -> bool:
    return bool(state) and state[-1].role == "assistant"


def _replace_or_append_assistant(state: Messages, content: str) -> Messages:
    if _ends_with_assistant(state):
        return state[:-1] + (ChatMessage("assistant", content),)
    return state + (ChatMessage("assistant", content),)


def reduce(state: Messages, event: ChatEvent) -> Messages:
    """Apply ``event`` to ``state`` and return the new state.

    Rules:
        * MessageSubmitted: append ``user`` and an empty ``assistant``.
        * TokenReceived: extend the trailing ``assistant`` message, or append a
          new one when the last message is not an assistant message.
        * StreamCompleted: an empty trailing ``assistant`` becomes the fallback.
        * StreamFailed: the trailing ``assistant`` becomes the fallback (one is
          appended if missing).
        * StreamCancelled: an empty trailing ``assistant`` is removed; partial
          content is kept as-is.
        * ReplyRegenerated: replace (or append) the trailing ``assistant``.
        * ThreadLoaded: the server copy replaces local state.
    """
    if isinstance(event, MessageSubmitted):
        return state + (ChatMessage("user", event.content), ChatMessage("assistant", ""))

    if isinstance(event, TokenReceived):
        if not event.text:
            return state
        if _ends_with_assistant(state):
            last = state[-1]
            return state[:-1] + (ChatMessage("assistant", last.content + event.text),)
        return state + (ChatMessage("assistant", event.text),)

    if isinstance(event, StreamCompleted):
        if _ends_with_assistant(state) and not state[-1].content.strip():
            return state[:-1] + (ChatMessage("assistant", FALLBACK_REPLY),)
        return state

    if isinstance(event, StreamFailed):
        return _replace_or_append_assistant(state, FALLBACK_REPLY)

    if isinstance(event, StreamCancelled):
        if _ends_with_assistant(state) and not state[-1].content.strip():
            return state[:-1]
        return state

    if isinstance(event, ReplyRegenerated):
        return _replace_or_append_assistant(state, event.reply)

    if isinstance(event, ThreadLoaded):
        return tuple(event.messages)

    raise TypeError(f"unknown chat event: {event!r}")


def can_regenerate(state: Messages) -> bool:
    """Regeneration needs at least one user and one assistant message."""
    return any(m.role == "user" for m in state) and any(m.role == "assistant" for m in state)
