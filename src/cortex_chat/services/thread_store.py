"""
Conversation store: durable message log keyed by thread id.

The relay treats the store as an external collaborator with a small async
contract (``ThreadStore``). Two backends implement it:

    SQLThreadStore      - thread/message tables through async SQLAlchemy;
                          each write is one transaction, so a whole message
                          list is replaced atomically.
    InMemoryThreadStore - process-local dict, for development and tests.

Concurrent writes to the same thread id are last-writer-wins on the full
message list; no optimistic concurrency control is attempted.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cortex_chat.db.engine import get_session_factory, session_scope
from cortex_chat.db.models import Message as MessageRow
from cortex_chat.db.models import Thread as ThreadRow
from cortex_chat.services.errors import StorageError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Domain Models
# ============================================================================

class ChatMessage(BaseModel):
    """
    One message of a thread.

    Attributes:
        role: ``user`` or ``assistant``
        content: Message text (may be empty while an answer is streaming)
    """
    role: Literal["user", "assistant"]
    content: str = ""


class ThreadSummary(BaseModel):
    """Thread row without messages, as listed in the sidebar."""
    thread_id: str
    title: str
    updated_at: datetime


class ThreadSnapshot(ThreadSummary):
    """A thread with its ordered messages (insertion order = conversation order)."""
    messages: List[ChatMessage] = Field(default_factory=list)


# ============================================================================
# Store Contract
# ============================================================================

class ThreadStore(Protocol):
    """Async conversation store contract used by the relay and routers."""

    async def get_thread(self, thread_id: str) -> Optional[ThreadSnapshot]: ...

    async def create_thread(
        self,
        thread_id: str,
        title: str,
        messages: Sequence[ChatMessage],
        timestamp: Optional[datetime] = None,
    ) -> ThreadSnapshot: ...

    async def replace_messages(
        self,
        thread_id: str,
        messages: Sequence[ChatMessage],
        timestamp: Optional[datetime] = None,
    ) -> None: ...

    async def append_message(self, thread_id: str, message: ChatMessage) -> None: ...

    async def truncate_last(self, thread_id: str) -> Optional[ChatMessage]: ...

    async def list_threads(self) -> List[ThreadSummary]: ...

    async def rename_thread(self, thread_id: str, title: str) -> bool: ...

    async def delete_thread(self, thread_id: str) -> bool: ...

    async def ping(self) -> bool: ...


# ============================================================================
# In-Memory Backend
# ============================================================================

class InMemoryThreadStore:
    """Dict-backed store. Snapshots are copied in and out, never shared."""

    def __init__(self) -> None:
        self._threads: Dict[str, ThreadSnapshot] = {}

    async def get_thread(self, thread_id: str) -> Optional[ThreadSnapshot]:
        thread = self._threads.get(thread_id)
        return copy.deepcopy(thread) if thread is not None else None

    async def create_thread(self, thread_id, title, messages, timestamp=None) -> ThreadSnapshot:
        if thread_id in self._threads:
            raise StorageError()
        snapshot = ThreadSnapshot(
            thread_id=thread_id,
            title=title,
            updated_at=timestamp or utcnow(),
            messages=[m.model_copy() for m in messages],
        )
        self._threads[thread_id] = snapshot
        return copy.deepcopy(snapshot)

    async def replace_messages(self, thread_id, messages, timestamp=None) -> None:
        thread = self._require(thread_id)
        thread.messages = [m.model_copy() for m in messages]
        thread.updated_at = timestamp or utcnow()

    async def append_message(self, thread_id: str, message: ChatMessage) -> None:
        thread = self._require(thread_id)
        thread.messages.append(message.model_copy())
        thread.updated_at = utcnow()

    async def truncate_last(self, thread_id: str) -> Optional[ChatMessage]:
        thread = self._require(thread_id)
        if not thread.messages:
            return None
        removed = thread.messages.pop()
        thread.updated_at = utcnow()
        return removed

    async def list_threads(self) -> List[ThreadSummary]:
        ordered = sorted(self._threads.values(), key=lambda t: t.updated_at, reverse=True)
        return [ThreadSummary(thread_id=t.thread_id, title=t.title, updated_at=t.updated_at) for t in ordered]

    async def rename_thread(self, thread_id: str, title: str) -> bool:
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        thread.title = title
        thread.updated_at = utcnow()
        return True

    async def delete_thread(self, thread_id: str) -> bool:
        return self._threads.pop(thread_id, None) is not None

    async def ping(self) -> bool:
        return True

    def _require(self, thread_id: str) -> ThreadSnapshot:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise StorageError()
        return thread


# ============================================================================
# SQL Backend
# ============================================================================

class SQLThreadStore:
    """
    Store backed by the ``thread`` and ``message`` tables.

    Every public method runs in its own transaction. Engine errors are
    re-raised as ``StorageError`` with the original exception chained.

    Args:
        session_factory: async_sessionmaker bound to the target engine

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_thread(self, thread_id: str) -> Optional[ThreadSnapshot]:
        try:
            async with self._session_factory() as session:
                thread = await session.get(ThreadRow, thread_id)
                if thread is None:
                    return None
                messages = await self._load_messages(session, thread_id)
                return ThreadSnapshot(
                    thread_id=thread.id,
                    title=thread.title,
                    updated_at=thread.updated_at,
                    messages=messages,
                )
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def create_thread(self, thread_id, title, messages, timestamp=None) -> ThreadSnapshot:
        timestamp = timestamp or utcnow()
        try:
            async with session_scope(self._session_factory) as session:
                session.add(ThreadRow(id=thread_id, title=title, created_at=timestamp, updated_at=timestamp))
                await session.flush()
                self._add_messages(session, thread_id, messages)
        except SQLAlchemyError as exc:
            raise StorageError() from exc
        return ThreadSnapshot(
            thread_id=thread_id,
            title=title,
            updated_at=timestamp,
            messages=[m.model_copy() for m in messages],
        )

    async def replace_messages(self, thread_id, messages, timestamp=None) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    update(ThreadRow)
                    .where(ThreadRow.id == thread_id)
                    .values(updated_at=timestamp or utcnow())
                )
                if result.rowcount == 0:
                    raise StorageError()
                await session.execute(delete(MessageRow).where(MessageRow.thread_id == thread_id))
                self._add_messages(session, thread_id, messages)
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def append_message(self, thread_id: str, message: ChatMessage) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                thread = await session.get(ThreadRow, thread_id)
                if thread is None:
                    raise StorageError()
                count = await session.scalar(
                    select(func.count(MessageRow.id)).where(MessageRow.thread_id == thread_id)
                )
                session.add(MessageRow(
                    thread_id=thread_id,
                    position=count or 0,
                    role=message.role,
                    content=message.content,
                ))
                thread.updated_at = utcnow()
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def truncate_last(self, thread_id: str) -> Optional[ChatMessage]:
        try:
            async with session_scope(self._session_factory) as session:
                thread = await session.get(ThreadRow, thread_id)
                if thread is None:
                    raise StorageError()
                last = await session.scalar(
                    select(MessageRow)
                    .where(MessageRow.thread_id == thread_id)
                    .order_by(MessageRow.position.desc())
                    .limit(1)
                )
                if last is None:
                    return None
                removed = ChatMessage(role=last.role, content=last.content)
                await session.delete(last)
                thread.updated_at = utcnow()
                return removed
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def list_threads(self) -> List[ThreadSummary]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(ThreadRow).order_by(ThreadRow.updated_at.desc()))
                return [
                    ThreadSummary(thread_id=t.id, title=t.title, updated_at=t.updated_at)
                    for t in result.scalars().all()
                ]
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def rename_thread(self, thread_id: str, title: str) -> bool:
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    update(ThreadRow)
                    .where(ThreadRow.id == thread_id)
                    .values(title=title, updated_at=utcnow())
                )
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def delete_thread(self, thread_id: str) -> bool:
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(delete(MessageRow).where(MessageRow.thread_id == thread_id))
                result = await session.execute(delete(ThreadRow).where(ThreadRow.id == thread_id))
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    @staticmethod
    async def _load_messages(session: AsyncSession, thread_id: str) -> List[ChatMessage]:
        result = await session.execute(
            select(MessageRow)
            .where(MessageRow.thread_id == thread_id)
            .order_by(MessageRow.position)
        )
        return [ChatMessage(role=row.role, content=row.content) for row in result.scalars().all()]

    @staticmethod
    def _add_messages(session: AsyncSession, thread_id: str, messages: Sequence[ChatMessage]) -> None:
        session.add_all([
            MessageRow(thread_id=thread_id, position=index, role=m.role, content=m.content)
            for index, m in enumerate(messages)
        ])


def create_thread_store(settings) -> "ThreadStore":
    """
    Build the store selected by ``THREAD_STORE_BACKEND``.

    The SQL backend shares the engine's lazily created session factory;
    tables are created separately by ``init_db()`` at startup.
    """
    if settings.thread_store_backend == "memory":
        return InMemoryThreadStore()
    return SQLThreadStore(get_session_factory())
