"""Signals extracted from a relayed stream for persistence and monitoring."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..types import (
    Done,
    ErrorEvent,
    MessageDelta,
    MessageEnd,
    NodeFinished,
    NodeRecord,
    NodeStarted,
    StreamEvent,
    TokenUsage,
    WorkflowFinished,
)

logger = logging.getLogger(__name__)


@dataclass
class StreamSignals:
    """Running accumulation over the events of one streaming turn.

    ``observe`` never raises and never blocks; error events are collected,
    they do not end the stream.
    """
    deltas: list[str] = field(default_factory=list)
    final_answer: str | None = None
    errors: list[ErrorEvent] = field(default_factory=list)
    conversation_id: str | None = None
    message_id: str | None = None
    usage: TokenUsage | None = None
    nodes: dict[str, NodeRecord] = field(default_factory=dict)
    workflow_status: str = ""
    event_count: int = 0
    malformed_count: int = 0
    done: bool = False

    @property
    def answer(self) -> str:
        """Workflow's final answer if it sent one, else the joined deltas."""
        if self.final_answer is not None:
            return self.final_answer
        return "".join(self.deltas)

    def observe(self, event: StreamEvent) -> None:
        self.event_count += 1
        if self.conversation_id is None and event.conversation_id:
            self.conversation_id = event.conversation_id
        if self.message_id is None and event.message_id and isinstance(event, (MessageDelta, MessageEnd)):
            self.message_id = event.message_id

        if isinstance(event, MessageDelta):
            self.deltas.append(event.delta_text)
        elif isinstance(event, MessageEnd):
            if event.usage is not None:
                self.usage = event.usage
        elif isinstance(event, NodeStarted):
            self.nodes[event.node_id] = NodeRecord(
                node_id=event.node_id,
                node_title=event.node_title,
                node_type=event.node_type,
            )
            logger.debug("node started: %s (%s)", event.node_title or event.node_id, event.node_type)
        elif isinstance(event, NodeFinished):
            record = self.nodes.setdefault(
                event.node_id,
                NodeRecord(node_id=event.node_id, node_title=event.node_title, node_type=event.node_type),
            )
            record.status = event.status or "finished"
            record.elapsed_time = event.elapsed_time
            logger.debug(
                "node finished: %s status=%s", event.node_title or event.node_id, event.status,
            )
        elif isinstance(event, WorkflowFinished):
            self.workflow_status = event.status
            answer = event.final_outputs.get("answer")
            if isinstance(answer, str):
                self.final_answer = answer
        elif isinstance(event, ErrorEvent):
            self.errors.append(event)
            logger.warning("upstream stream error: code=%s message=%s", event.code, event.message)
        elif isinstance(event, Done):
            self.done = True

    @property
    def nodes_finished(self) -> int:
        return sum(1 for n in self.nodes.values() if n.status != "running")
