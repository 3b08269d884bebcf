"""Shared fakes and builders for the test suite."""
import asyncio
import json
from typing import Iterable, List, Optional

import httpx

from cortex_chat.config import ServiceSettings
from cortex_chat.services.errors import StorageError, UpstreamError
from cortex_chat.services.thread_store import ChatMessage, InMemoryThreadStore

FALLBACK = "Sorry, something went wrong while generating the response."
UPSTREAM_URL = "http://upstream.test/v1"


def make_settings(**overrides) -> ServiceSettings:
    values = dict(
        openai_api_key="test-key",
        openai_base_url=UPSTREAM_URL,
        thread_store_backend="memory",
        commit_backoff_base=0.0,
    )
    values.update(overrides)
    return ServiceSettings(_env_file=None, **values)


def upstream_chunk(content: Optional[str] = None, role: Optional[str] = None) -> str:
    delta = {}
    if role:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return f"data: {json.dumps({'choices': [{'index': 0, 'delta': delta}]})}\n\n"


def upstream_body(fragments: Iterable[str], done: bool = True) -> bytes:
    body = "".join(upstream_chunk(f) for f in fragments)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode()


def parse_relay_frames(body: str) -> List[dict]:
    frames = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data:"):
            frames.append(json.loads(block[len("data:"):].strip()))
    return frames


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class ScriptedCompletion:
    """Completion stand-in that plays back a fixed list of fragments.

    ``gate`` (when given) is awaited after ``gate_after`` fragments have been
    delivered; ``fail`` raises an upstream error once playback ends.
    """

    def __init__(
        self,
        fragments: Iterable[str] = (),
        reply: str = "",
        fail: bool = False,
        gate: Optional[asyncio.Event] = None,
        gate_after: int = 0,
        fallback_reply: str = FALLBACK,
    ):
        self.fragments = list(fragments)
        self.reply = reply
        self.fail = fail
        self.gate = gate
        self.gate_after = gate_after
        self.fallback_reply = fallback_reply
        self.started = asyncio.Event()
        self.calls: List[List[ChatMessage]] = []

    async def stream(self, messages, on_fragment, **overrides) -> str:
        self.calls.append(list(messages))
        self.started.set()
        for index, fragment in enumerate(self.fragments):
            if self.gate is not None and index == self.gate_after:
                await self.gate.wait()
            await on_fragment(fragment)
            await asyncio.sleep(0)
        if self.gate is not None and self.gate_after >= len(self.fragments):
            await self.gate.wait()
        if self.fail:
            raise UpstreamError("connection reset by peer")
        return "".join(self.fragments)

    async def complete(self, messages) -> str:
        self.calls.append(list(messages))
        return self.reply or self.fallback_reply


class StaticTitles:
    def __init__(self, title: str = "Greeting"):
        self.title = title
        self.seen: List[str] = []

    async def suggest_title(self, first_message: str) -> str:
        self.seen.append(first_message)
        return self.title


class FlakyStore(InMemoryThreadStore):
    """In-memory store whose whole-list writes fail ``failures`` times."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.write_attempts = 0

    def _maybe_fail(self) -> None:
        self.write_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise StorageError()

    async def create_thread(self, thread_id, title, messages, timestamp=None):
        self._maybe_fail()
        return await super().create_thread(thread_id, title, messages, timestamp)

    async def replace_messages(self, thread_id, messages, timestamp=None):
        self._maybe_fail()
        await super().replace_messages(thread_id, messages, timestamp)
