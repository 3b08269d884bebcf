"""
SQLModel database models for the conversation store.

Defines the database schema for:
    - Thread: Conversation threads keyed by a client-generated id
    - Message: Individual messages within threads, ordered by position

A thread's message list is always rewritten as a whole, so positions are
dense (0..n-1) and never reordered.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Thread(SQLModel, table=True):
    """
    Conversation thread model.

    Attributes:
        id: Opaque thread identifier chosen by the client
        title: Display title (generated from the first message or a default)
        created_at: UTC timestamp of creation
        updated_at: UTC timestamp of the last committed turn or rename

    Table: thread

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    id: str = Field(primary_key=True, max_length=255)
    title: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=_utcnow, index=True, sa_type=DateTime(timezone=True))


class Message(SQLModel, table=True):
    """
    Chat message model.

    Attributes:
        id: Unique message identifier (UUID)
        thread_id: Parent thread ID (foreign key)
        position: Index of the message within its thread
        role: Message author role ('user' or 'assistant')
        content: Message text content

    Table: message

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    thread_id: str = Field(foreign_key="thread.id", index=True)
    position: int
    role: str
    content: str
