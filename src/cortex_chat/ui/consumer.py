"""
Stream consumer for the chat relay.

``ChatConsumer`` is the client half of a conversation: it submits messages
to the relay, renders streamed fragments through the pure reducer in
``cortex_chat.ui.reducer``, supports stop-generation, and refreshes the
thread list once a turn settles.

Relay stream format::

    data: {"token": "Hi"}
    data: {"token": " there"}
    data: {"done": true}        (or {"error": "..."})

Connection failures before the first fragment are retried with exponential
backoff; after that a failure is rendered as the fallback reply. The server
copy of a thread stays authoritative: ``load_thread`` replaces local state.

Example::

    async with ChatConsumer(on_update=render) as chat:
        await chat.send_message("Hello")
        await chat.regenerate()

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from httpx_sse import aconnect_sse
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cortex_chat.ui.reducer import (
    ChatEvent,
    Messages,
    MessageSubmitted,
    ReplyRegenerated,
    StreamCancelled,
    StreamCompleted,
    StreamFailed,
    ThreadLoaded,
    TokenReceived,
    can_regenerate,
    reduce,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


class ConsumerSettings(BaseSettings):
    """Client settings loaded from environment variables.

    Attributes:
        chat_api_url: Base URL of the relay service.
        chat_api_timeout: HTTP request timeout in seconds.
        max_retries: Connection attempts before a stream is given up.
        retry_backoff_base: Base delay (seconds) for exponential backoff.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    chat_api_url: str = "http://localhost:8080"
    chat_api_timeout: float = 120.0

    max_retries: int = 3
    retry_backoff_base: float = 1.0


class ThreadSummary(BaseModel):
    """Sidebar entry from ``GET /api/thread``."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId")
    title: str
    updated_at: datetime = Field(alias="updatedAt")


class ChatStreamError(Exception):
    """The relay reported a failure (error frame or non-2xx response)."""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


# =============================================================================
# Consumer
# =============================================================================

UpdateCallback = Callable[[Messages], Any]


class ChatConsumer:
    """Client-side session over one conversation thread.

    Args:
        client: Optional ``httpx.AsyncClient`` (must carry the relay base
            URL). A pooled client is created and owned otherwise.
        settings: Client settings; read from the environment when omitted.
        thread_id: Existing thread to continue; a new UUID otherwise.
        on_update: Called with the new message tuple after every change.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[ConsumerSettings] = None,
        thread_id: Optional[str] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> None:
        self._settings = settings or ConsumerSettings()
        self._client = client
        self._owns_client = client is None
        self._on_update = on_update

        self.thread_id: str = thread_id or str(uuid.uuid4())
        self.messages: Messages = ()
        self.threads: List[ThreadSummary] = []

        self._busy = False
        self._active_task: Optional[asyncio.Task] = None
        self._stop_requested = False

    async def __aenter__(self) -> "ChatConsumer":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def busy(self) -> bool:
        return self._busy

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._settings.chat_api_url,
                timeout=httpx.Timeout(self._settings.chat_api_timeout, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            )
            self._owns_client = True
        return self._client

    def _apply(self, event: ChatEvent) -> None:
        self.messages = reduce(self.messages, event)
        if self._on_update is not None:
            self._on_update(self.messages)

    # -------------------------------------------------------------------------
    # Streaming turn
    # -------------------------------------------------------------------------

    async def send_message(self, text: str) -> bool:
        """Submit ``text`` and render the streamed answer.

        Ignored (returns False) while another turn or regeneration is in
        flight, or when ``text`` is blank.

        Returns:
            True when the relay finished the turn with ``done``.
        """
        text = text.strip()
        if self._busy or not text:
            logger.info("chat.send_ignored busy=%s", self._busy)
            return False

        self._busy = True
        self._stop_requested = False
        self._apply(MessageSubmitted(text))

        task = asyncio.create_task(self._consume_stream(text))
        self._active_task = task
        try:
            await task
        except asyncio.CancelledError:
            self._apply(StreamCancelled())
            logger.info("chat.cancelled_by_user partial=%s", bool(self.messages and self.messages[-1].content))
            if not self._stop_requested:
                raise
            if self.messages and self.messages[-1].role == "assistant":
                await self.refresh_threads()
            return False
        except (ChatStreamError, httpx.HTTPError) as exc:
            logger.error("chat.stream_failed thread_id=%s error=%s", self.thread_id, exc)
            self._apply(StreamFailed(str(exc)))
            await self.refresh_threads()
            return False
        finally:
            self._active_task = None
            self._busy = False

        self._apply(StreamCompleted())
        logger.info("chat.response_complete thread_id=%s len=%d", self.thread_id, len(self.messages[-1].content))
        await self.refresh_threads()
        return True

    async def _consume_stream(self, text: str) -> None:
        """Open the relay stream and feed every fragment to the reducer.

        Raises:
            ChatStreamError: Error frame or non-2xx relay response.
            httpx.HTTPError: Transport failure after retries, or after the
                first fragment arrived.
        """
        client = await self._http()
        payload = {"threadId": self.thread_id, "message": text}
        tokens_started = False
        max_retries = max(1, self._settings.max_retries)

        for attempt in range(max_retries):
            try:
                async with aconnect_sse(client, "POST", "/api/chat/stream", json=payload) as event_source:
                    response = event_source.response
                    if response.is_error:
                        await response.aread()
                        raise ChatStreamError(_error_message(response))

                    async for sse in event_source.aiter_sse():
                        try:
                            frame: Dict[str, Any] = json.loads(sse.data)
                        except json.JSONDecodeError:
                            logger.warning("chat.malformed_frame size=%d", len(sse.data))
                            continue
                        if not isinstance(frame, dict):
                            continue

                        token = frame.get("token")
                        if token:
                            tokens_started = True
                            self._apply(TokenReceived(token))
                        if frame.get("error"):
                            raise ChatStreamError(str(frame["error"]))
                        if frame.get("done"):
                            return
                # Stream closed without a terminal frame
                return

            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                # Only retry if no fragment has been rendered yet
                if tokens_started or attempt >= max_retries - 1:
                    raise
                backoff = self._settings.retry_backoff_base * (2 ** attempt)
                logger.warning(
                    "chat.stream_retry attempt=%d/%d backoff=%.1fs error=%s",
                    attempt + 1,
                    max_retries,
                    backoff,
                    exc,
                )
                await asyncio.sleep(backoff)

    def stop(self) -> bool:
        """Stop the in-flight stream. Returns False when nothing is streaming."""
        task = self._active_task
        if task is None or task.done():
            return False
        self._stop_requested = True
        task.cancel()
        return True

    # -------------------------------------------------------------------------
    # Regeneration
    # -------------------------------------------------------------------------

    async def regenerate(self) -> bool:
        """Replace the trailing answer with a freshly generated one.

        Uses the non-streaming regenerate endpoint; the reply is applied in
        one step. Returns False when skipped or when the relay refused.
        """
        if self._busy or not can_regenerate(self.messages):
            return False

        self._busy = True
        try:
            client = await self._http()
            response = await client.post("/api/chat/regenerate", json={"threadId": self.thread_id})
            if response.is_error:
                logger.error("chat.regenerate_failed status=%d error=%s", response.status_code, _error_message(response))
                return False
            reply = response.json().get("reply")
            if not reply:
                logger.error("chat.regenerate_failed error=missing reply")
                return False
        except httpx.HTTPError as exc:
            logger.error("chat.regenerate_failed error=%s", exc)
            return False
        finally:
            self._busy = False

        self._apply(ReplyRegenerated(reply))
        await self.refresh_threads()
        return True

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    async def refresh_threads(self) -> List[ThreadSummary]:
        """Reload thread summaries (titles may have changed). Keeps the old
        list when the relay cannot be reached."""
        try:
            client = await self._http()
            response = await client.get("/api/thread")
            response.raise_for_status()
            self.threads = [ThreadSummary.model_validate(item) for item in response.json()]
            logger.debug("threads.refreshed count=%d", len(self.threads))
        except httpx.HTTPError as exc:
            logger.warning("threads.refresh_failed error=%s", exc)
        return self.threads

    async def load_thread(self, thread_id: str) -> bool:
        """Switch to ``thread_id`` and replace local state with the server copy."""
        if self._busy:
            return False
        client = await self._http()
        response = await client.get(f"/api/thread/{thread_id}")
        if response.status_code == 404:
            logger.warning("chat.thread_missing thread_id=%s", thread_id)
            return False
        response.raise_for_status()
        self.thread_id = thread_id
        self._apply(ThreadLoaded.from_payload(response.json()))
        logger.info("chat.resume thread_id=%s messages=%d", thread_id, len(self.messages))
        return True

    def new_chat(self) -> str:
        """Start a fresh thread locally; it is created on the first message."""
        self.stop()
        self.thread_id = str(uuid.uuid4())
        self._apply(ThreadLoaded(()))
        logger.info("chat.start thread_id=%s", self.thread_id)
        return self.thread_id
