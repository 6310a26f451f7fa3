"""StreamRelay: forward upstream frames downstream while extracting signals."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator

import anyio

from ..core.events import classify_frame
from ..core.framing import DONE_FRAME, Frame, FrameDecoder
from ..core.signals import StreamSignals
from ..types import StreamFrameDecodeError, UpstreamTransportError
from .client import UpstreamStream
from .metrics import RelayMetrics

logger = logging.getLogger(__name__)

UNAVAILABLE_FRAME = (
    b"data: "
    + json.dumps({
        "event": "error",
        "code": "upstream_unavailable",
        "message": "upstream unavailable",
    }).encode()
    + b"\n\n"
)


class StreamRelay:
    """Relay one upstream stream.

    ``relay()`` is an async generator meant to be handed to a
    ``StreamingResponse``. It reads the next upstream chunk only when the
    downstream asks for the next frame. After it finishes, ``completed`` and
    ``signals`` describe the turn.
    """

    def __init__(
        self,
        stream: UpstreamStream,
        local_id: str,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self.stream = stream
        self.local_id = local_id
        self.metrics = metrics
        self.signals = StreamSignals()
        self.completed = False
        self.transport_failed = False
        self._decoder = FrameDecoder()
        self._started = time.monotonic()
        self._closed = False

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self._started) * 1000, 1)

    def _observe(self, frame: Frame) -> None:
        try:
            event = classify_frame(frame)
        except StreamFrameDecodeError as e:
            self.signals.malformed_count += 1
            logger.warning("[conv %s] forwarding malformed frame: %s", self.local_id, e)
            return
        self.signals.observe(event)

    async def relay(self) -> AsyncIterator[bytes]:
        try:
            try:
                async for chunk in self.stream.aiter_bytes():
                    for frame in self._decoder.feed(chunk):
                        self._observe(frame)
                        yield frame.raw
                        if self.signals.done:
                            break
                    if self.signals.done:
                        break
                else:
                    for frame in self._decoder.close():
                        self._observe(frame)
                        yield frame.raw
            except UpstreamTransportError as e:
                self.transport_failed = True
                logger.error("[conv %s] upstream stream failed: %s", self.local_id, e)
                if self.metrics:
                    self.metrics.record({
                        "type": "upstream_error",
                        "local_id": self.local_id,
                        "kind": "transport",
                        "code": "upstream_unavailable",
                        "streaming": True,
                    })
                yield UNAVAILABLE_FRAME

            if not self.signals.done:
                yield DONE_FRAME
            self.completed = True
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the upstream response. Idempotent; works before ``relay()`` starts."""
        if self._closed:
            return
        self._closed = True
        if not self.completed:
            logger.info("[conv %s] client went away, closing upstream stream", self.local_id)
            if self.metrics:
                self.metrics.record({"type": "client_disconnect", "local_id": self.local_id})
        with anyio.CancelScope(shield=True):
            await self.stream.aclose()
