"""UpstreamClient: httpx exchange with the workflow engine.

Buffered and streaming turns both go through ``_with_stale_fallback``, the
only place the "conversation not found -> retry once without
conversation_id" policy lives.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

import httpx

from ..core.events import classify_frame
from ..core.framing import FrameDecoder
from ..types import (
    Done,
    StreamEvent,
    StreamFrameDecodeError,
    TokenUsage,
    UpstreamApplicationError,
    UpstreamConfig,
    UpstreamError,
    UpstreamReply,
    UpstreamTransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHAT_PATH = "/chat-messages"
MESSAGES_PATH = "/messages"


def _application_error(status_code: int, body: bytes) -> UpstreamApplicationError:
    """Build an application error from the upstream's ``{code, message}`` body."""
    text = body.decode("utf-8", errors="replace")
    code = f"http_{status_code}"
    message = text[:500]
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if isinstance(data, dict):
        code = str(data.get("code") or code)
        message = str(data.get("message") or data.get("error") or message)
    return UpstreamApplicationError(code=code, message=message, status_code=status_code)


class UpstreamStream:
    """An open streaming response. Iterate ``aiter_bytes()``, then ``aclose()``."""

    def __init__(
        self,
        response: httpx.Response,
        *,
        sent_conversation_ref: str | None,
        recovered_from: str | None = None,
    ) -> None:
        self.response = response
        self.sent_conversation_ref = sent_conversation_ref
        self.recovered_from = recovered_from

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"stream read failed: {e!r}") from e

    async def aclose(self) -> None:
        await self.response.aclose()


class UpstreamClient:
    """Async client for ``<base_url>/chat-messages`` and friends."""

    def __init__(
        self,
        config: UpstreamConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.buffered_timeout = httpx.Timeout(config.buffered_timeout, connect=config.connect_timeout)
        self.streaming_timeout = httpx.Timeout(config.streaming_timeout, connect=config.connect_timeout)
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.buffered_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Stale conversation fallback
    # ------------------------------------------------------------------

    async def _with_stale_fallback(
        self,
        payload: dict,
        attempt: Callable[[dict], Awaitable[T]],
    ) -> tuple[T, dict, str | None]:
        """Run *attempt*; on conversation-not-found retry once without the id.

        Returns ``(result, payload_sent, recovered_from)``.
        """
        try:
            return await attempt(payload), payload, None
        except UpstreamApplicationError as e:
            stale = payload.get("conversation_id")
            if not (stale and e.conversation_not_found):
                raise
            logger.warning(
                "Upstream conversation %s not found (%s), retrying as new conversation",
                stale, e.code,
            )

        retry_payload = {k: v for k, v in payload.items() if k != "conversation_id"}
        try:
            return await attempt(retry_payload), retry_payload, stale
        except UpstreamError as e:
            e.stale_conversation_id = stale
            raise

    # ------------------------------------------------------------------
    # Buffered
    # ------------------------------------------------------------------

    async def _post_buffered(self, payload: dict) -> dict:
        try:
            resp = await self._client.post(CHAT_PATH, json=payload, timeout=self.buffered_timeout)
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"POST {CHAT_PATH} failed: {e!r}") from e
        if resp.status_code >= 300:
            raise _application_error(resp.status_code, resp.content)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamApplicationError(
                code="invalid_response",
                message=f"non-JSON reply: {resp.text[:200]}",
                status_code=resp.status_code,
            ) from e
        if not isinstance(data, dict):
            raise UpstreamApplicationError(
                code="invalid_response",
                message="reply is not a JSON object",
                status_code=resp.status_code,
            )
        return data

    async def send_buffered(self, payload: dict) -> UpstreamReply:
        """Send a blocking turn. Raises UpstreamError subclasses."""
        payload = {**payload, "response_mode": "blocking"}
        data, sent, recovered_from = await self._with_stale_fallback(payload, self._post_buffered)
        return UpstreamReply(
            answer=str(data.get("answer") or ""),
            conversation_id=data.get("conversation_id") or None,
            message_id=data.get("message_id") or data.get("id") or None,
            usage=TokenUsage.from_metadata(data.get("metadata")),
            sent_conversation_ref=sent.get("conversation_id"),
            recovered_from=recovered_from,
            raw=data,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _open(self, payload: dict) -> httpx.Response:
        req = self._client.build_request(
            "POST", CHAT_PATH, json=payload, timeout=self.streaming_timeout,
        )
        try:
            resp = await self._client.send(req, stream=True)
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"POST {CHAT_PATH} (stream) failed: {e!r}") from e
        if resp.status_code >= 300:
            try:
                body = await resp.aread()
            except httpx.TransportError:
                body = b""
            finally:
                await resp.aclose()
            raise _application_error(resp.status_code, body)
        return resp

    async def open_stream(self, payload: dict) -> UpstreamStream:
        """Open a streaming turn; resolves once response headers arrive."""
        payload = {**payload, "response_mode": "streaming"}
        resp, sent, recovered_from = await self._with_stale_fallback(payload, self._open)
        return UpstreamStream(
            resp,
            sent_conversation_ref=sent.get("conversation_id"),
            recovered_from=recovered_from,
        )

    async def send_streaming(self, payload: dict) -> AsyncIterator[StreamEvent]:
        """Yield decoded StreamEvents until ``Done`` or transport close.

        Malformed frames are logged and skipped. Not restartable.
        """
        stream = await self.open_stream(payload)
        decoder = FrameDecoder()
        try:
            async for chunk in stream.aiter_bytes():
                for frame in decoder.feed(chunk):
                    try:
                        event = classify_frame(frame)
                    except StreamFrameDecodeError as e:
                        logger.warning("Skipping malformed frame: %s", e)
                        continue
                    yield event
                    if isinstance(event, Done):
                        return
            for frame in decoder.close():
                try:
                    event = classify_frame(frame)
                except StreamFrameDecodeError as e:
                    logger.warning("Skipping malformed frame: %s", e)
                    continue
                yield event
        finally:
            await stream.aclose()

    # ------------------------------------------------------------------
    # Existence check
    # ------------------------------------------------------------------

    async def conversation_exists(self, upstream_id: str, user: str) -> bool:
        """Lightweight check that *upstream_id* is still known upstream."""
        params = {"conversation_id": upstream_id, "user": user, "limit": 1}
        try:
            resp = await self._client.get(MESSAGES_PATH, params=params, timeout=self.buffered_timeout)
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"GET {MESSAGES_PATH} failed: {e!r}") from e
        if resp.status_code < 300:
            return True
        error = _application_error(resp.status_code, resp.content)
        if error.conversation_not_found or resp.status_code == 404:
            return False
        raise error
