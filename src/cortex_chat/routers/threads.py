"""
Thread management endpoints.

Endpoints:
    - GET    /api/thread             - Thread summaries, newest first
    - GET    /api/thread/{thread_id} - Messages of one thread
    - PATCH  /api/thread/{thread_id} - Rename a thread
    - DELETE /api/thread/{thread_id} - Delete a thread and its messages

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import structlog
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from cortex_chat.services.errors import ThreadNotFoundError
from cortex_chat.services.thread_store import ChatMessage, ThreadStore

logger = structlog.get_logger(__name__)

router = APIRouter()


class ThreadSummaryResponse(BaseModel):
    """Sidebar entry, serialized as ``{threadId, title, updatedAt}``."""
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId")
    title: str
    updated_at: datetime = Field(alias="updatedAt")


class RenameThreadRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class DeleteThreadResponse(BaseModel):
    success: str = "Thread deleted successfully"


def get_thread_store(request: Request) -> ThreadStore:
    return request.app.state.thread_store


@router.get("/api/thread", response_model=List[ThreadSummaryResponse], response_model_by_alias=True)
async def list_threads(store: ThreadStore = Depends(get_thread_store)):
    """
    List thread summaries ordered by last modification, newest first.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    threads = await store.list_threads()
    return [
        ThreadSummaryResponse(thread_id=t.thread_id, title=t.title, updated_at=t.updated_at)
        for t in threads
    ]


@router.get("/api/thread/{thread_id}", response_model=List[ChatMessage])
async def get_thread_messages(thread_id: str, store: ThreadStore = Depends(get_thread_store)):
    """Return the thread's messages in conversation order."""
    thread = await store.get_thread(thread_id)
    if thread is None:
        raise ThreadNotFoundError()
    return thread.messages


@router.patch("/api/thread/{thread_id}", response_model=ThreadSummaryResponse, response_model_by_alias=True)
async def rename_thread(
    thread_id: str,
    request: RenameThreadRequest,
    store: ThreadStore = Depends(get_thread_store),
):
    """
    Rename a thread.

    Args:
        thread_id: Thread to rename
        request: New title (1-255 characters)

    Returns:
        ThreadSummaryResponse: The renamed thread

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    if not await store.rename_thread(thread_id, request.title):
        raise ThreadNotFoundError()
    thread = await store.get_thread(thread_id)
    if thread is None:
        raise ThreadNotFoundError()
    logger.info("thread.renamed", thread_id=thread_id)
    return ThreadSummaryResponse(thread_id=thread.thread_id, title=thread.title, updated_at=thread.updated_at)


@router.delete("/api/thread/{thread_id}", response_model=DeleteThreadResponse)
async def delete_thread(thread_id: str, store: ThreadStore = Depends(get_thread_store)):
    """Delete a thread together with its messages."""
    if not await store.delete_thread(thread_id):
        raise ThreadNotFoundError()
    logger.info("thread.deleted", thread_id=thread_id)
    return DeleteThreadResponse()
