"""
Pooled upstream HTTP client shared by every completion call.

One httpx AsyncClient is created lazily and kept for the life of the
process, so chat turns and title requests reuse warm HTTP/2 connections
to the completion endpoint instead of opening one per turn.

Configuration Environment Variables (see cortex_chat.config):
    HTTP_MAX_CONNECTIONS: Upper bound on open upstream connections (default 100)
    HTTP_MAX_KEEPALIVE: Idle connections kept warm (default 20)
    HTTP_TIMEOUT_CONNECT: Seconds allowed to establish a connection (default 5.0)
    HTTP_TIMEOUT_READ: Longest silence between upstream chunks (default 120.0)
    HTTP_TIMEOUT_WRITE: Seconds allowed to send the request body (default 30.0)
    HTTP_TIMEOUT_POOL: Seconds to wait for a free pooled connection (default 10.0)

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import structlog
from typing import Optional

import httpx

from cortex_chat.config import ServiceSettings, get_settings

logger = structlog.get_logger(__name__)


# ============================================================================
# Client Configuration
# ============================================================================

def _create_limits(settings: ServiceSettings) -> httpx.Limits:
    """
    Build pool limits from the HTTP_* settings.

    Args:
        settings: Service settings carrying pool sizes

    Returns:
        httpx.Limits: Pool sizing for the shared client

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    return httpx.Limits(
        max_connections=settings.http_max_connections,
        max_keepalive_connections=settings.http_max_keepalive,
        keepalive_expiry=5.0,
    )


def _create_timeout(settings: ServiceSettings) -> httpx.Timeout:
    """
    Build per-phase timeouts from the HTTP_* settings.

    The read timeout bounds the gap between two upstream chunks, not the
    whole stream.

    Returns:
        httpx.Timeout: Connect, read, write and pool limits

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    return httpx.Timeout(
        connect=settings.http_timeout_connect,
        read=settings.http_timeout_read,
        write=settings.http_timeout_write,
        pool=settings.http_timeout_pool,
    )


# ============================================================================
# Client Singleton
# ============================================================================

# Created on first use, cleared by close_client()
_client: Optional[httpx.AsyncClient] = None


async def get_client() -> httpx.AsyncClient:
    """
    Return the process-wide upstream client, creating it if needed.

    A client closed by close_client() is replaced on the next call.

    Returns:
        httpx.AsyncClient: Shared client instance

    Note:
        The lifespan owns shutdown; callers never close this client.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    global _client

    if _client is None or _client.is_closed:
        settings = get_settings()
        logger.info(
            "http_client.init",
            max_connections=settings.http_max_connections,
            max_keepalive=settings.http_max_keepalive,
        )
        _client = httpx.AsyncClient(
            limits=_create_limits(settings),
            timeout=_create_timeout(settings),
            http2=True,
        )

    return _client


async def close_client() -> None:
    """
    Close the upstream client and drop the pooled connections.

    Run from the application lifespan after in-flight turns have drained.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    global _client

    if _client is not None:
        logger.info("http_client.close")
        await _client.aclose()
        _client = None
        logger.info("http_client.closed")
