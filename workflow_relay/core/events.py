"""Classify a decoded frame into a StreamEvent variant."""

from __future__ import annotations

import json

from .framing import Frame
from ..types import (
    Done,
    ErrorEvent,
    MessageDelta,
    MessageEnd,
    NodeFinished,
    NodeStarted,
    StreamEvent,
    StreamFrameDecodeError,
    TokenUsage,
    UnknownEvent,
    WorkflowFinished,
    WorkflowStarted,
)

# Upstream event names carrying incremental answer text
MESSAGE_EVENTS = frozenset({"message", "agent_message"})


def _str_or_none(value) -> str | None:
    return str(value) if value not in (None, "") else None


def _common(data: dict, event_name: str) -> dict:
    return {
        "event": event_name,
        "conversation_id": _str_or_none(data.get("conversation_id")),
        "message_id": _str_or_none(data.get("message_id") or data.get("id")),
        "task_id": _str_or_none(data.get("task_id")),
        "raw": data,
    }


def _node_fields(node: dict) -> dict:
    return {
        "node_id": str(node.get("node_id") or node.get("id") or ""),
        "node_title": str(node.get("title") or ""),
        "node_type": str(node.get("node_type") or ""),
    }


def decode_payload(frame: Frame) -> dict:
    """Parse the frame's JSON payload. Raises StreamFrameDecodeError."""
    try:
        data = json.loads(frame.data)
    except (ValueError, TypeError) as e:
        raise StreamFrameDecodeError(f"invalid JSON in frame: {e}", frame.raw) from e
    if not isinstance(data, dict):
        raise StreamFrameDecodeError(
            f"frame payload is {type(data).__name__}, expected object", frame.raw,
        )
    return data


def classify_payload(data: dict, event_name: str = "") -> StreamEvent:
    """Map a decoded upstream payload to its StreamEvent variant."""
    name = str(data.get("event") or event_name or "")
    base = _common(data, name)
    body = data.get("data") if isinstance(data.get("data"), dict) else {}

    if name in MESSAGE_EVENTS:
        return MessageDelta(**base, delta_text=str(data.get("answer") or ""))

    if name == "message_end":
        return MessageEnd(**base, usage=TokenUsage.from_metadata(data.get("metadata")))

    if name == "node_started":
        return NodeStarted(**base, **_node_fields(body))

    if name == "node_finished":
        outputs = body.get("outputs")
        elapsed = body.get("elapsed_time")
        return NodeFinished(
            **base,
            **_node_fields(body),
            status=str(body.get("status") or ""),
            outputs=outputs if isinstance(outputs, dict) else {},
            elapsed_time=float(elapsed) if isinstance(elapsed, (int, float)) else None,
            error=_str_or_none(body.get("error")),
        )

    if name == "workflow_started":
        return WorkflowStarted(
            **base,
            workflow_run_id=str(data.get("workflow_run_id") or body.get("id") or ""),
        )

    if name == "workflow_finished":
        outputs = body.get("outputs")
        return WorkflowFinished(
            **base,
            workflow_run_id=str(data.get("workflow_run_id") or body.get("id") or ""),
            status=str(body.get("status") or ""),
            final_outputs=outputs if isinstance(outputs, dict) else {},
            error=_str_or_none(body.get("error")),
        )

    if name == "error":
        status = data.get("status")
        return ErrorEvent(
            **base,
            code=str(data.get("code") or ""),
            message=str(data.get("message") or ""),
            status=status if isinstance(status, int) else None,
        )

    return UnknownEvent(**base)


def classify_frame(frame: Frame) -> StreamEvent:
    """Decode and classify one frame.

    ``[DONE]`` maps to ``Done``. Raises StreamFrameDecodeError for a frame
    whose payload is not a JSON object.
    """
    if frame.is_done:
        return Done(event="done")
    if not frame.has_data:
        # event-only blocks such as ``event: ping``
        return UnknownEvent(event=frame.event_name)
    return classify_payload(decode_payload(frame), frame.event_name)
