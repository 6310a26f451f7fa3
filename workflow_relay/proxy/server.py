"""FastAPI application: downstream turn routes wired to the relay pipeline."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import anyio
import anyio.to_thread
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from ..config import load_config
from ..core.contract import build_turn_request
from ..core.identity import ConversationIdentityResolver
from ..core.persistence import PersistenceBridge
from ..core.store import ConversationStore
from ..storage import SQLiteStore
from ..types import (
    CallerInputError,
    PersistenceError,
    RelayConfig,
    ResponseMode,
    TurnRecord,
    TurnRequest,
    UpstreamApplicationError,
    UpstreamError,
    UpstreamTransportError,
)
from .client import UpstreamClient
from .metrics import RelayMetrics
from .relay import StreamRelay

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that always closes its body and runs *on_close*.

    Both happen even when the client is gone before the first body chunk,
    in which case the body generator never started and its own ``finally``
    would not run.
    """

    def __init__(
        self,
        content,
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.body_iterator.aclose()
                if self.on_close is not None:
                    await self.on_close()


class RelayState:
    """Everything one turn needs: store, resolver, upstream client, metrics."""

    def __init__(
        self,
        config: RelayConfig,
        store: ConversationStore,
        client: UpstreamClient,
        metrics: RelayMetrics,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        self.metrics = metrics
        self.resolver = ConversationIdentityResolver(store)
        self.bridge = PersistenceBridge(store, self.resolver, metrics)

    async def prepare(self, local_id: str, body: dict, mode: ResponseMode) -> TurnRequest:
        """Resolve identity and build the outbound request.

        Must run while the conversation's turn lock is held.
        """
        user = body.get("user") or self.config.upstream.default_user
        resolved = await anyio.to_thread.run_sync(self.resolver.resolve, local_id)
        if self.config.upstream.validate_before_reuse and not resolved.is_new:
            resolved = await self.resolver.validate(
                local_id, resolved,
                lambda upstream_id: self.client.conversation_exists(upstream_id, user),
            )
        return build_turn_request(body.get("message"), resolved, body.get("inputs"), user, mode)

    async def reconcile(
        self,
        local_id: str,
        *,
        sent_conversation_ref: str | None,
        reply_conversation_id: str | None,
        recovered_from: str | None = None,
    ) -> bool:
        return await anyio.to_thread.run_sync(functools.partial(
            self.bridge.reconcile,
            local_id,
            sent_conversation_ref=sent_conversation_ref,
            reply_conversation_id=reply_conversation_id,
            recovered_from=recovered_from,
        ))

    async def on_upstream_failure(self, local_id: str, error: UpstreamError, *, streaming: bool) -> None:
        """Log, count, and drop a linkage the failed fallback proved stale."""
        if error.stale_conversation_id:
            await self.reconcile(
                local_id,
                sent_conversation_ref=None,
                reply_conversation_id=None,
                recovered_from=error.stale_conversation_id,
            )
        kind = "transport" if isinstance(error, UpstreamTransportError) else "application"
        code = getattr(error, "code", "upstream_unavailable")
        logger.error("[conv %s] upstream %s error: %s", local_id, kind, error)
        self.metrics.record({
            "type": "upstream_error",
            "local_id": local_id,
            "kind": kind,
            "code": code,
            "streaming": streaming,
        })

    def on_fallback(self, local_id: str, stale_id: str | None) -> None:
        if stale_id:
            self.metrics.record({"type": "fallback", "local_id": local_id, "stale_id": stale_id})


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise CallerInputError("request body must be JSON") from e
    if not isinstance(body, dict):
        raise CallerInputError("request body must be a JSON object")
    return body


def create_app(
    config: RelayConfig | None = None,
    config_path: str | None = None,
    *,
    store: ConversationStore | None = None,
    client: UpstreamClient | None = None,
    metrics: RelayMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI relay application.

    Args:
        config: Loaded config. Loaded from *config_path* (or discovered) if None.
        config_path: Path to a workflow-relay config file.
        store: Conversation store to use instead of the configured SQLite file.
        client: Upstream client to use instead of one built from config.
        metrics: Reuse an existing metrics collector.
    """
    if config is None:
        config = load_config(config_path)
    if store is None:
        store = SQLiteStore(config.storage.sqlite_path)
    if client is None:
        client = UpstreamClient(config.upstream)
    if metrics is None:
        metrics = RelayMetrics()

    state = RelayState(config, store, client, metrics)
    engine = config.engine

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        logger.info(
            "Relay ready: engine=%s, upstream=%s, storage=%s",
            engine, config.upstream.base_url, config.storage.sqlite_path,
        )
        yield
        await client.aclose()
        store.close()

    app = FastAPI(title="workflow-relay", lifespan=lifespan)
    app.state.relay = state

    # --------------- Error mapping ---------------

    @app.exception_handler(CallerInputError)
    async def _caller_input(request: Request, exc: CallerInputError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(UpstreamTransportError)
    async def _upstream_transport(request: Request, exc: UpstreamTransportError) -> JSONResponse:
        return JSONResponse({"error": "upstream unavailable"}, status_code=502)

    @app.exception_handler(UpstreamApplicationError)
    async def _upstream_application(request: Request, exc: UpstreamApplicationError) -> JSONResponse:
        return JSONResponse({"error": "upstream request failed", "code": exc.code}, status_code=502)

    @app.exception_handler(PersistenceError)
    async def _storage(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("storage failure: %s", exc)
        return JSONResponse({"error": "storage unavailable"}, status_code=503)

    def _check_engine(name: str) -> JSONResponse | None:
        if name != engine:
            return JSONResponse({"error": f"unknown engine: {name}"}, status_code=404)
        return None

    # --------------- Routes ---------------

    @app.get("/api/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "engine": engine,
            "upstream_configured": bool(config.upstream.base_url and config.upstream.api_key),
        }

    @app.get("/api/metrics")
    async def get_metrics() -> dict:
        return metrics.snapshot()

    @app.get("/api/{engine_name}/{conversation_id}/messages")
    async def list_messages(engine_name: str, conversation_id: str, limit: int = 50):
        if (miss := _check_engine(engine_name)) is not None:
            return miss
        if limit < 1:
            raise CallerInputError("limit must be positive")
        rows = await anyio.to_thread.run_sync(store.get_messages, conversation_id, limit)
        return {
            "conversation_id": conversation_id,
            "messages": [
                {
                    "id": m.id,
                    "role": m.role,
                    "content": m.content,
                    "message_id": m.upstream_message_id,
                    "usage": m.usage.to_dict() if m.usage else None,
                    "created_at": m.created_at.isoformat(),
                }
                for m in rows
            ],
        }

    @app.post("/api/{engine_name}/{conversation_id}")
    async def send_turn(engine_name: str, conversation_id: str, request: Request):
        if (miss := _check_engine(engine_name)) is not None:
            return miss
        body = await _read_body(request)
        t0 = time.monotonic()

        async with state.resolver.locks.hold(conversation_id):
            turn = await state.prepare(conversation_id, body, ResponseMode.BUFFERED)
            try:
                reply = await client.send_buffered(turn.to_payload())
            except UpstreamError as e:
                await state.on_upstream_failure(conversation_id, e, streaming=False)
                raise
            state.on_fallback(conversation_id, reply.recovered_from)
            await state.reconcile(
                conversation_id,
                sent_conversation_ref=reply.sent_conversation_ref,
                reply_conversation_id=reply.conversation_id,
                recovered_from=reply.recovered_from,
            )

        latency_ms = round((time.monotonic() - t0) * 1000, 1)
        logger.info(
            "[conv %s] RESPONSE stream=False new=%s recovered=%s tokens=%d %.0fms",
            conversation_id, turn.conversation_ref is None, bool(reply.recovered_from),
            reply.usage.total_tokens if reply.usage else 0, latency_ms,
        )
        metrics.record({
            "type": "turn",
            "local_id": conversation_id,
            "streaming": False,
            "latency_ms": latency_ms,
            "recovered": bool(reply.recovered_from),
            "total_tokens": reply.usage.total_tokens if reply.usage else 0,
        })

        record = TurnRecord(
            local_id=conversation_id,
            user_message=turn.query,
            assistant_message=reply.answer,
            upstream_conversation_id=reply.conversation_id,
            message_id=reply.message_id,
            usage=reply.usage,
        )
        return JSONResponse(
            {
                "answer": reply.answer,
                "conversation_id": reply.conversation_id,
                "message_id": reply.message_id,
            },
            background=BackgroundTask(state.bridge.record_turn, record),
        )

    @app.post("/api/{engine_name}/{conversation_id}/stream")
    async def stream_turn(engine_name: str, conversation_id: str, request: Request):
        if (miss := _check_engine(engine_name)) is not None:
            return miss
        body = await _read_body(request)

        # Held until the response closes; released in close().
        await state.resolver.locks.acquire(conversation_id)
        try:
            turn = await state.prepare(conversation_id, body, ResponseMode.STREAMING)
            try:
                stream = await client.open_stream(turn.to_payload())
            except UpstreamError as e:
                await state.on_upstream_failure(conversation_id, e, streaming=True)
                raise
        except BaseException:
            state.resolver.locks.release(conversation_id)
            raise

        state.on_fallback(conversation_id, stream.recovered_from)
        relay = StreamRelay(stream, conversation_id, metrics)

        async def finish() -> None:
            signals = relay.signals
            await state.reconcile(
                conversation_id,
                sent_conversation_ref=stream.sent_conversation_ref,
                reply_conversation_id=signals.conversation_id,
                recovered_from=stream.recovered_from,
            )
            if not relay.completed:
                return
            errors = [e.code or e.message for e in signals.errors]
            if relay.transport_failed:
                errors.append("upstream_unavailable")
            logger.info(
                "[conv %s] RESPONSE stream=True new=%s recovered=%s events=%d nodes=%d errors=%d %.0fms",
                conversation_id, stream.sent_conversation_ref is None, bool(stream.recovered_from),
                signals.event_count, signals.nodes_finished, len(errors), relay.elapsed_ms,
            )
            metrics.record({
                "type": "turn",
                "local_id": conversation_id,
                "streaming": True,
                "latency_ms": relay.elapsed_ms,
                "recovered": bool(stream.recovered_from),
                "total_tokens": signals.usage.total_tokens if signals.usage else 0,
                "nodes_finished": signals.nodes_finished,
                "stream_errors": len(errors),
                "malformed_frames": signals.malformed_count,
            })
            record = TurnRecord(
                local_id=conversation_id,
                user_message=turn.query,
                assistant_message=signals.answer,
                upstream_conversation_id=signals.conversation_id or stream.sent_conversation_ref,
                message_id=signals.message_id,
                usage=signals.usage,
                errors=errors,
                streaming=True,
            )
            await anyio.to_thread.run_sync(state.bridge.record_turn, record)

        frames = relay.relay()
        closed = False

        async def close() -> None:
            nonlocal closed
            if closed:
                return
            closed = True
            try:
                with anyio.CancelScope(shield=True):
                    await frames.aclose()
                    await relay.aclose()
                    await finish()
            finally:
                state.resolver.locks.release(conversation_id)

        async def body_iter() -> AsyncIterator[bytes]:
            try:
                async for chunk in frames:
                    yield chunk
            finally:
                await close()

        return RelayStreamingResponse(
            body_iter(),
            on_close=close,
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    return app
