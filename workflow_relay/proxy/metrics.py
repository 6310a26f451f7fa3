"""Thread-safe event collector for relay turns."""

from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from datetime import datetime, timezone


class RelayMetrics:
    """Collects structured events from the relay pipeline.

    Thread-safe: ``record()`` is called from the event loop and from the
    worker threads that write finished turns to the store.

    Event types: ``turn``, ``fallback``, ``upstream_error``,
    ``client_disconnect``, ``turn_persisted``, ``persistence_failure``.
    """

    def __init__(self, max_events: int = 5000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)

    def events_since(self, seq: int) -> list[dict]:
        """Return events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        """Aggregate stats for ``GET /api/metrics``."""
        with self._lock:
            turns = [e for e in self._events if e.get("type") == "turn"]
            fallbacks = [e for e in self._events if e.get("type") == "fallback"]
            upstream_errors = [e for e in self._events if e.get("type") == "upstream_error"]
            disconnects = [e for e in self._events if e.get("type") == "client_disconnect"]
            persisted = [e for e in self._events if e.get("type") == "turn_persisted"]
            persist_failures = [e for e in self._events if e.get("type") == "persistence_failure"]

            latency_values = [t["latency_ms"] for t in turns if "latency_ms" in t]
            streaming = [t for t in turns if t.get("streaming")]

            return {
                "type": "snapshot",
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_turns": len(turns),
                "streaming_turns": len(streaming),
                "buffered_turns": len(turns) - len(streaming),
                "stale_fallbacks": len(fallbacks),
                "upstream_errors": len(upstream_errors),
                "client_disconnects": len(disconnects),
                "turns_persisted": len(persisted),
                "persistence_failures": len(persist_failures),
                "nodes_finished": sum(t.get("nodes_finished", 0) for t in turns),
                "stream_errors": sum(t.get("stream_errors", 0) for t in turns),
                "total_tokens": sum(t.get("total_tokens", 0) for t in turns),
                "avg_latency_ms": round(statistics.mean(latency_values), 1) if latency_values else 0,
                "recent_turns": list(turns[-50:]),
                "recent_errors": list(upstream_errors[-50:]),
            }
