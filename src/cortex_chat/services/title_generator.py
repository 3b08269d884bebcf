"""Auto-generate conversation titles from the first user message.

This module provides functionality to generate concise, descriptive titles
for new conversation threads. It asks the upstream completion API for a
short title and falls back to the configured static default when the call
fails or produces nothing usable.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import structlog
from typing import Optional

from cortex_chat.services.completion_client import CompletionClient
from cortex_chat.services.errors import UpstreamError

logger = structlog.get_logger(__name__)

# Title generation prompt template
TITLE_PROMPT_TEMPLATE = 'Generate a short 5-word title for this conversation: "{message}"'

# Maximum length for message preview in prompt
MAX_MESSAGE_PREVIEW_LENGTH: int = 200

# Maximum length for generated title
MAX_TITLE_LENGTH: int = 50


def _clean_title(title: str) -> str:
    """
    Clean and normalize a generated title.

    Removes surrounding quotes, excessive whitespace, and truncates to max length.

    Args:
        title: Raw title from the LLM

    Returns:
        str: Cleaned title (may be empty)

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    title = " ".join(title.split())
    title = title.strip('"\'').strip()
    return title[:MAX_TITLE_LENGTH].rstrip()


async def generate_title(
    first_message: str,
    completion: CompletionClient,
    model: Optional[str] = None,
) -> Optional[str]:
    """
    Generate a concise title from the first user message.

    Args:
        first_message: The first message from the user
        completion: Upstream completion client
        model: Model override for title generation

    Returns:
        Optional[str]: Generated title or None if generation fails

    Example:
        >>> title = await generate_title("How do I reverse a list in Python?", client)
        >>> print(title)
        "Reversing Lists in Python"

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    if not first_message or not first_message.strip():
        return None

    prompt = TITLE_PROMPT_TEMPLATE.format(message=first_message[:MAX_MESSAGE_PREVIEW_LENGTH])

    try:
        raw_title = await completion.request_completion(
            [{"role": "user", "content": prompt}],
            model=model,
            max_tokens=20,
            temperature=0.3,
        )
    except UpstreamError as e:
        logger.warning("title_generation.error", error=str(e), status_code=e.status_code)
        return None

    title = _clean_title(raw_title)
    if not title:
        logger.warning("title_generation.empty_response")
        return None

    logger.debug("title_generation.success", title=title)
    return title


class TitleGenerator:
    """
    Title generator collaborator used by the relay for new threads.

    Always returns a title: the generated one, or ``default_title``.
    """

    def __init__(self, completion: CompletionClient, default_title: str = "New Chat", model: Optional[str] = None):
        self._completion = completion
        self._default_title = default_title
        self._model = model

    async def suggest_title(self, first_message: str) -> str:
        title = await generate_title(first_message, self._completion, model=self._model)
        if title:
            return title
        logger.info("title_generation.fallback", title=self._default_title)
        return self._default_title
