"""Reassemble the upstream's chunked ``data: <json>`` stream into frames.

Chunks arrive split at arbitrary byte boundaries (mid-line, mid-UTF-8
sequence). ``FrameDecoder`` buffers bytes and only emits complete events,
delimited by a blank line (``\\n\\n`` or ``\\r\\n\\r\\n``). Nothing here
parses JSON; see ``events.classify_frame``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_LITERAL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"


@dataclass(frozen=True)
class Frame:
    """One complete SSE event block."""
    raw: bytes       # exact bytes as received, terminator included
    event_name: str  # value of an ``event:`` line, "" if none
    data: str        # ``data:`` lines joined with "\n", "" if none

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_LITERAL

    @property
    def has_data(self) -> bool:
        return bool(self.data)


def _next_boundary(buf: bytes) -> int:
    """Return the end offset of the first complete event in *buf*, or -1."""
    idx_rn = buf.find(b"\r\n\r\n")
    idx_n = buf.find(b"\n\n")
    if idx_rn == -1 and idx_n == -1:
        return -1
    if idx_rn != -1 and (idx_n == -1 or idx_rn <= idx_n):
        return idx_rn + 4
    return idx_n + 2


def parse_frame(raw: bytes) -> Frame:
    """Split one event block into its ``event:`` name and ``data:`` payload."""
    text = raw.decode("utf-8", errors="replace")
    event_name = ""
    data_lines: list[str] = []
    for line in text.split("\n"):
        line = line.rstrip("\r")
        if line.startswith(DATA_PREFIX):
            value = line[len(DATA_PREFIX):]
            data_lines.append(value[1:] if value.startswith(" ") else value)
        elif line.startswith("event:"):
            event_name = line[len("event:"):].strip()
    return Frame(raw=raw, event_name=event_name, data="\n".join(data_lines))


class FrameDecoder:
    """Incremental decoder: ``feed()`` bytes in, complete ``Frame``s out."""

    def __init__(self) -> None:
        self._buf = b""

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet emitted."""
        return len(self._buf)

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buf += chunk
        frames: list[Frame] = []
        while True:
            end = _next_boundary(self._buf)
            if end == -1:
                break
            raw, self._buf = self._buf[:end], self._buf[end:]
            if not raw.strip():
                continue  # stray blank lines between events
            frames.append(parse_frame(raw))
        return frames

    def close(self) -> list[Frame]:
        """Flush at transport close.

        A trailing block made of complete lines is emitted with a blank-line
        terminator appended. An incomplete last line is dropped.
        """
        buf, self._buf = self._buf, b""
        if not buf.strip():
            return []
        if not buf.endswith(b"\n"):
            logger.warning("Dropping %d bytes of incomplete trailing frame", len(buf))
            return []
        return [parse_frame(buf + b"\n")]
