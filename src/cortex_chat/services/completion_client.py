"""
Upstream completion client for an OpenAI-compatible chat completions API.

Two modes over the same payload:

    Blocking  - ``complete(messages)`` returns the whole reply. Any transport
                or upstream-reported failure is logged and replaced by the
                configured fallback reply; it never raises.

    Streaming - ``stream(messages, on_fragment)`` decodes the upstream event
                stream and awaits ``on_fragment(text)`` for every non-empty
                fragment, in arrival order. Returns the concatenated text.
                Failures raise ``UpstreamError``; a failed stream cannot be
                resumed and has to be re-issued from scratch.

Upstream request:
{
    "model": "gpt-4o-mini",
    "messages": [{"role": "user", "content": "..."}],
    "temperature": 0.7,
    "stream": true
}

Uses the shared HTTP client for connection pooling unless a client is
injected (tests pass one backed by ``httpx.MockTransport``).

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import json
import structlog
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from cortex_chat.config import ServiceSettings, get_settings
from cortex_chat.services.errors import UpstreamError
from cortex_chat.services.event_stream import EventStreamDecoder, ServerSentEvent
from cortex_chat.services.http_client import get_client

logger = structlog.get_logger(__name__)

# Sentinel payload closing an upstream stream
STREAM_DONE_SENTINEL: str = "[DONE]"

FragmentSink = Callable[[str], Awaitable[None]]


class _StreamFinished(Exception):
    """Internal signal: the upstream sent its close sentinel."""


def _extract_text_content(value: Any) -> str:
    """Normalize message content payloads to plain text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: list[str] = []
        for item in value:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return ""


def _upstream_error_message(body: Any) -> Optional[str]:
    """Pull ``error.message`` out of an upstream error body, if present."""
    if not isinstance(body, dict) or "error" not in body:
        return None
    error = body["error"]
    if isinstance(error, dict):
        return str(error.get("message") or "upstream error")
    return str(error)


class CompletionClient:
    """
    Client for the upstream completion API.

    Args:
        settings: Service settings (defaults to the cached instance)
        http_client: Optional client; the shared pooled client is used otherwise

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings()
        self._http_client = http_client

    @property
    def fallback_reply(self) -> str:
        return self._settings.fallback_reply

    async def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return await get_client()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.openai_api_key:
            headers["Authorization"] = f"Bearer {self._settings.openai_api_key}"
        return headers

    def build_payload(
        self,
        messages: Iterable[Any],
        stream: bool,
        **overrides: Any,
    ) -> Dict[str, Any]:
        """
        Build the upstream request body.

        Args:
            messages: Full ordered history; dicts or objects with role/content
            stream: Whether to request incremental delivery
            **overrides: Per-call fields (model, temperature, max_tokens)

        Returns:
            dict: JSON-serializable request body
        """
        payload: Dict[str, Any] = {
            "model": self._settings.chat_model,
            "messages": [_as_wire_message(m) for m in messages],
            "temperature": self._settings.chat_temperature,
            "stream": stream,
        }
        payload.update({k: v for k, v in overrides.items() if v is not None})
        return payload

    # ------------------------------------------------------------------
    # Blocking mode
    # ------------------------------------------------------------------

    async def request_completion(self, messages: Iterable[Any], **overrides: Any) -> str:
        """
        Issue a non-streaming request and return the reply text.

        Raises:
            UpstreamError: On transport failure, non-200 status, an upstream
                error body, or a response without choices.
        """
        payload = self.build_payload(messages, stream=False, **overrides)
        client = await self._client()

        try:
            response = await client.post(
                self._settings.get_completions_url(),
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"transport error: {type(exc).__name__}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200:
            detail = _upstream_error_message(body) or f"status {response.status_code}"
            raise UpstreamError(detail, status_code=response.status_code)

        error_message = _upstream_error_message(body)
        if error_message:
            raise UpstreamError(error_message)

        if not isinstance(body, dict) or not body.get("choices"):
            raise UpstreamError("no choices in upstream response")

        choice = body["choices"][0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise UpstreamError("malformed upstream response")
        return _extract_text_content(message.get("content"))

    async def complete(self, messages: Iterable[Any]) -> str:
        """
        Blocking completion with the fallback policy applied.

        Returns:
            str: The reply, or the configured fallback reply on any failure
        """
        try:
            return await self.request_completion(messages)
        except UpstreamError as exc:
            logger.warning(
                "completion.request.error",
                error=str(exc),
                status_code=exc.status_code,
            )
            return self.fallback_reply

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    async def stream(
        self,
        messages: Iterable[Any],
        on_fragment: FragmentSink,
        **overrides: Any,
    ) -> str:
        """
        Stream a completion, delivering fragments to ``on_fragment``.

        Args:
            messages: Full ordered history
            on_fragment: Awaited once per non-empty fragment, in arrival order
            **overrides: Per-call payload fields

        Returns:
            str: Concatenation of every delivered fragment

        Raises:
            UpstreamError: Transport failure, non-200 status, or an upstream
                error frame. Fragments already delivered stay delivered.
        """
        payload = self.build_payload(messages, stream=True, **overrides)
        client = await self._client()
        decoder = EventStreamDecoder()
        fragments: List[str] = []

        async def _emit(events: List[ServerSentEvent]) -> None:
            for event in events:
                text = self._fragment_from_event(event)
                if text:
                    fragments.append(text)
                    await on_fragment(text)

        try:
            async with client.stream(
                "POST",
                self._settings.get_completions_url(),
                json=payload,
                headers=self._headers(),
            ) as response:
                if response.status_code != 200:
                    raw = await response.aread()
                    detail = f"status {response.status_code}"
                    try:
                        detail = _upstream_error_message(json.loads(raw)) or detail
                    except ValueError:
                        pass
                    raise UpstreamError(detail, status_code=response.status_code)

                try:
                    async for chunk in response.aiter_bytes():
                        await _emit(decoder.feed(chunk))
                    await _emit(decoder.flush())
                except _StreamFinished:
                    pass
        except httpx.HTTPError as exc:
            raise UpstreamError(f"transport error: {type(exc).__name__}") from exc

        logger.debug("completion.stream.complete", fragments=len(fragments))
        return "".join(fragments)

    def _fragment_from_event(self, event: ServerSentEvent) -> Optional[str]:
        """
        Map one decoded frame to a text fragment.

        Returns None for frames that carry no text (role-only deltas,
        malformed JSON). Raises _StreamFinished on the close sentinel and
        UpstreamError on an upstream error frame.
        """
        data = event.data.strip()
        if data == STREAM_DONE_SENTINEL:
            raise _StreamFinished()

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("completion.stream.malformed_frame", sse_event=event.event, size=len(data))
            return None

        error_message = _upstream_error_message(chunk)
        if error_message:
            raise UpstreamError(error_message)

        if not isinstance(chunk, dict):
            return None
        choices = chunk.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return None
        return _extract_text_content(delta.get("content")) or None


def _as_wire_message(message: Any) -> Dict[str, str]:
    if isinstance(message, dict):
        return {"role": message["role"], "content": message["content"]}
    return {"role": message.role, "content": message.content}
