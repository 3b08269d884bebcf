"""
Chat error taxonomy and error response utilities.

Every user-facing failure is rendered with the same flat shape:
{
    "error": "Human-readable message"
}

Error Types:
    - ChatValidationError: Missing thread id, blank message, nothing to regenerate (400)
    - ThreadNotFoundError: Thread id does not exist (404)
    - StorageError: Conversation store read/write failure (500)
    - UpstreamError: Transport or protocol failure talking to the completion API.
      Never rendered verbatim; callers map it to their own fallback policy.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
from typing import Optional

from fastapi.responses import JSONResponse


# ============================================================================
# Exceptions
# ============================================================================

class ChatError(Exception):
    """
    Base class for failures that map onto an HTTP error response.

    Attributes:
        message: Stable, human-readable message safe to return to clients
        status_code: HTTP status code for the response

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    status_code: int = 500
    message: str = "An internal server error occurred"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ChatValidationError(ChatError):
    """Request rejected before any upstream call; nothing was mutated."""
    status_code = 400
    message = "Invalid request"


class ThreadNotFoundError(ChatError):
    status_code = 404
    message = "Thread not found"


class StorageError(ChatError):
    """Conversation store failure. The underlying cause is chained, not exposed."""
    status_code = 500
    message = "Failed to process chat message"


class UpstreamError(Exception):
    """
    Upstream completion API failure.

    Attributes:
        status_code: Upstream HTTP status when one was received

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ============================================================================
# Error Response Factory
# ============================================================================

def create_error_response(message: str, status_code: int = 400) -> JSONResponse:
    """
    Create a flat error response.

    Args:
        message: Human-readable error description
        status_code: HTTP status code

    Returns:
        JSONResponse with ``{"error": message}``

    Example:
        >>> create_error_response("Thread not found", status_code=404)

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    return JSONResponse(status_code=status_code, content={"error": message})


def chat_error_response(exc: ChatError) -> JSONResponse:
    """Render a ChatError using its own status and public message."""
    return create_error_response(exc.message, status_code=exc.status_code)


def internal_error() -> JSONResponse:
    """
    Create error response for an unexpected server error.

    Returns:
        JSONResponse with 500 status and a generic message

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    return create_error_response("An internal server error occurred", status_code=500)
