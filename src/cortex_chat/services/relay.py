"""
Stream relay: runs one chat turn end to end.

Turn lifecycle::

    IDLE -> AWAITING_THREAD -> STREAMING -> COMMITTING -> DONE
                  |                |
                  +----> FAILED <--+

A turn is opened with ``open_turn`` (new user message) or
``open_regeneration`` (replace the trailing assistant answer). Both validate
and load the thread before anything is sent to the client, so their failures
surface as ordinary JSON errors. The opened ``TurnSession`` is then driven by
``run_turn`` (blocking reply) or ``stream_turn`` (relay event stream).

Streaming runs the upstream call in a worker task that feeds a queue the
response generator drains. Every fragment goes to the session accumulator
first and to the client second, so persisted text and forwarded text come
from the same source. The worker commits the turn exactly once, before the
terminal frame is queued:

    {"token": "..."}   zero or more, in upstream order
    {"done": true}     turn committed
    {"error": "..."}   upstream failed (partial text still committed)
                       or the commit failed after all retries

When the client goes away the generator marks the turn cancelled. With
``RELAY_CONTINUE_ON_DISCONNECT`` (default) the worker keeps consuming
upstream and commits everything it received; otherwise the upstream request
is cancelled and whatever was accumulated so far is committed. A cancelled
turn with nothing accumulated commits the user message alone.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import asyncio
import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Set

import structlog

from cortex_chat.config import ServiceSettings, get_settings
from cortex_chat.services.completion_client import CompletionClient
from cortex_chat.services.errors import (
    ChatValidationError,
    StorageError,
    ThreadNotFoundError,
    UpstreamError,
)
from cortex_chat.services.event_stream import done_frame, error_frame, token_frame
from cortex_chat.services.observability import record_metric
from cortex_chat.services.thread_store import ChatMessage, ThreadStore, utcnow
from cortex_chat.services.title_generator import TitleGenerator

logger = structlog.get_logger(__name__)

# Public messages for terminal error frames
STREAM_FAILED_MESSAGE = "Failed to generate a response"
COMMIT_FAILED_MESSAGE = "Failed to save the conversation"


class TurnState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_THREAD = "awaiting_thread"
    STREAMING = "streaming"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnSession:
    """
    Per-turn state owned by the relay.

    Attributes:
        thread_id: Target thread
        messages: In-memory copy of the thread's messages for this turn
        title: Thread title (generated for new threads)
        is_new: Thread does not exist in the store yet
        fragments: Accumulator of upstream fragments, in arrival order
        cancelled: Set when the client stopped listening
    """
    thread_id: str
    messages: List[ChatMessage] = field(default_factory=list)
    title: str = ""
    is_new: bool = False
    state: TurnState = TurnState.IDLE
    fragments: List[str] = field(default_factory=list)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    error: Optional[str] = None
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    worker: Optional[asyncio.Task] = None

    @property
    def accumulated_text(self) -> str:
        return "".join(self.fragments)


class StreamRelay:
    """
    Orchestrates chat turns between the client, the upstream completion
    service and the thread store.

    Args:
        store: Conversation store
        completion: Upstream completion client
        title_generator: Title collaborator used for new threads
        settings: Relay policies (disconnect handling, commit retries)

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """

    def __init__(
        self,
        store: ThreadStore,
        completion: CompletionClient,
        title_generator: TitleGenerator,
        settings: Optional[ServiceSettings] = None,
    ):
        self._store = store
        self._completion = completion
        self._title_generator = title_generator
        self._settings = settings or get_settings()
        self._workers: Set[asyncio.Task] = set()

    # ========================================================================
    # Opening a turn
    # ========================================================================

    async def open_turn(self, thread_id: Optional[str], message: Optional[str]) -> TurnSession:
        """
        Validate the request, load or prepare the thread, append the user message.

        Raises:
            ChatValidationError: Thread id or message missing/blank
            StorageError: The thread could not be loaded
        """
        if not thread_id or not thread_id.strip() or not message or not message.strip():
            raise ChatValidationError("Thread ID and message are required")

        session = TurnSession(thread_id=thread_id, state=TurnState.AWAITING_THREAD)
        try:
            thread = await self._store.get_thread(thread_id)
        except StorageError:
            session.state = TurnState.FAILED
            raise

        if thread is None:
            session.is_new = True
            session.title = await self._title_generator.suggest_title(message)
        else:
            session.title = thread.title
            session.messages = list(thread.messages)

        session.messages.append(ChatMessage(role="user", content=message))
        logger.info(
            "relay.turn.start",
            thread_id=thread_id,
            turn_id=session.turn_id,
            new_thread=session.is_new,
            history=len(session.messages),
        )
        return session

    async def open_regeneration(self, thread_id: Optional[str]) -> TurnSession:
        """
        Prepare a turn that replaces the trailing assistant answer.

        Raises:
            ChatValidationError: Thread id missing, or no user message left
            ThreadNotFoundError: Unknown thread
        """
        if not thread_id or not thread_id.strip():
            raise ChatValidationError("Thread ID is required")

        session = TurnSession(thread_id=thread_id, state=TurnState.AWAITING_THREAD)
        thread = await self._store.get_thread(thread_id)
        if thread is None:
            session.state = TurnState.FAILED
            raise ThreadNotFoundError()

        messages = list(thread.messages)
        if messages and messages[-1].role == "assistant":
            messages.pop()
        if not any(m.role == "user" for m in messages):
            session.state = TurnState.FAILED
            raise ChatValidationError("No user message to regenerate a response for")

        session.title = thread.title
        session.messages = messages
        logger.info(
            "relay.turn.regenerate",
            thread_id=thread_id,
            turn_id=session.turn_id,
            history=len(messages),
        )
        return session

    # ========================================================================
    # Blocking turn
    # ========================================================================

    async def run_turn(self, session: TurnSession) -> str:
        """
        Produce the whole reply in one upstream call and commit it.

        Upstream failures degrade to the fallback reply. Storage failures
        propagate as ``StorageError``.
        """
        started = time.perf_counter()
        session.state = TurnState.STREAMING
        reply = await self._completion.complete(session.messages)
        if reply:
            session.fragments.append(reply)

        session.state = TurnState.COMMITTING
        try:
            messages = await self._commit(session)
        except StorageError:
            session.state = TurnState.FAILED
            record_metric("relay.turn.blocking", (time.perf_counter() - started) * 1000, success=False)
            raise
        session.state = TurnState.DONE
        record_metric("relay.turn.blocking", (time.perf_counter() - started) * 1000, success=True)
        return messages[-1].content

    # ========================================================================
    # Streaming turn
    # ========================================================================

    async def stream_turn(self, session: TurnSession) -> AsyncIterator[str]:
        """
        Relay frames for ``session`` as an async iterator of SSE strings.

        Closing the iterator before the terminal frame counts as a client
        disconnect.
        """
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        worker = asyncio.create_task(self._stream_worker(session, queue))
        session.worker = worker
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

        completed = False
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    completed = True
                    break
                yield frame
        finally:
            if not completed:
                session.cancelled.set()
                logger.info(
                    "relay.client.disconnected",
                    thread_id=session.thread_id,
                    turn_id=session.turn_id,
                    state=session.state.value,
                    fragments=len(session.fragments),
                )
                if (
                    not self._settings.relay_continue_on_disconnect
                    and session.state == TurnState.STREAMING
                ):
                    worker.cancel()

    async def _stream_worker(self, session: TurnSession, queue: "asyncio.Queue[Optional[str]]") -> None:
        started = time.perf_counter()
        session.state = TurnState.STREAMING

        async def forward(fragment: str) -> None:
            session.fragments.append(fragment)
            await queue.put(token_frame(fragment))

        terminal = done_frame()
        try:
            await self._completion.stream(session.messages, forward)
        except asyncio.CancelledError:
            logger.info(
                "relay.stream.cancelled",
                thread_id=session.thread_id,
                turn_id=session.turn_id,
                fragments=len(session.fragments),
            )
            await self._finish_cancelled(session)
            raise
        except UpstreamError as exc:
            session.error = str(exc)
            terminal = error_frame(STREAM_FAILED_MESSAGE)
            logger.warning(
                "relay.stream.upstream_error",
                thread_id=session.thread_id,
                turn_id=session.turn_id,
                error=str(exc),
                status_code=exc.status_code,
                fragments=len(session.fragments),
            )
        except Exception as exc:
            session.error = str(exc)
            terminal = error_frame(STREAM_FAILED_MESSAGE)
            logger.exception(
                "relay.stream.error",
                thread_id=session.thread_id,
                turn_id=session.turn_id,
            )

        session.state = TurnState.COMMITTING
        try:
            await self._commit(session)
            session.state = TurnState.FAILED if session.error else TurnState.DONE
        except StorageError:
            session.state = TurnState.FAILED
            terminal = error_frame(COMMIT_FAILED_MESSAGE)

        logger.info(
            "relay.turn.complete",
            thread_id=session.thread_id,
            turn_id=session.turn_id,
            state=session.state.value,
            chars=len(session.accumulated_text),
            client_disconnected=session.cancelled.is_set(),
        )
        record_metric(
            "relay.turn.stream",
            (time.perf_counter() - started) * 1000,
            success=session.state == TurnState.DONE,
        )
        await queue.put(terminal)
        await queue.put(None)

    async def _finish_cancelled(self, session: TurnSession) -> None:
        session.cancelled.set()
        session.state = TurnState.COMMITTING
        try:
            await self._commit(session)
            session.state = TurnState.DONE
        except StorageError:
            session.state = TurnState.FAILED

    # ========================================================================
    # Commit
    # ========================================================================

    def _final_messages(self, session: TurnSession) -> List[ChatMessage]:
        messages = list(session.messages)
        text = session.accumulated_text
        if text:
            messages.append(ChatMessage(role="assistant", content=text))
        elif not session.cancelled.is_set():
            messages.append(ChatMessage(role="assistant", content=self._completion.fallback_reply))
        return messages

    async def _commit(self, session: TurnSession) -> List[ChatMessage]:
        """
        Write the turn's final message list, retrying with exponential backoff.

        Returns:
            List[ChatMessage]: The committed message list

        Raises:
            StorageError: All attempts failed
        """
        messages = self._final_messages(session)
        max_attempts = self._settings.commit_max_attempts
        attempt = 0

        while True:
            attempt += 1
            try:
                if session.is_new:
                    await self._store.create_thread(session.thread_id, session.title, messages, timestamp=utcnow())
                    session.is_new = False
                else:
                    await self._store.replace_messages(session.thread_id, messages, timestamp=utcnow())
                break
            except StorageError as exc:
                if attempt >= max_attempts:
                    logger.error(
                        "relay.commit.failed",
                        thread_id=session.thread_id,
                        turn_id=session.turn_id,
                        attempts=attempt,
                        client_disconnected=session.cancelled.is_set(),
                        error=repr(exc.__cause__ or exc),
                    )
                    raise
                delay = self._settings.commit_backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "relay.commit.retry",
                    thread_id=session.thread_id,
                    turn_id=session.turn_id,
                    attempt=attempt,
                    delay=delay,
                )
                await asyncio.sleep(delay)

        logger.debug(
            "relay.commit.success",
            thread_id=session.thread_id,
            turn_id=session.turn_id,
            messages=len(messages),
        )
        return messages

    async def drain(self) -> None:
        """Wait for in-flight stream workers (called on shutdown)."""
        if self._workers:
            logger.info("relay.drain", workers=len(self._workers))
            await asyncio.gather(*list(self._workers), return_exceptions=True)
