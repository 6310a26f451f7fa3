"""Tests for frame classification."""

import json

import pytest

from workflow_relay.core.events import classify_frame, classify_payload
from workflow_relay.core.framing import DONE_FRAME, FrameDecoder, parse_frame
from workflow_relay.types import (
    Done,
    ErrorEvent,
    MessageDelta,
    MessageEnd,
    NodeFinished,
    NodeStarted,
    StreamFrameDecodeError,
    UnknownEvent,
    WorkflowFinished,
    WorkflowStarted,
)


def _frame(payload: dict):
    return parse_frame(f"data: {json.dumps(payload)}\n\n".encode())


class TestClassifyPayload:
    def test_message(self):
        ev = classify_payload({
            "event": "message", "answer": "Hel", "conversation_id": "u-1",
            "message_id": "m-1", "task_id": "t-1",
        })
        assert isinstance(ev, MessageDelta)
        assert ev.delta_text == "Hel"
        assert ev.conversation_id == "u-1"
        assert ev.message_id == "m-1"
        assert ev.task_id == "t-1"

    def test_agent_message_is_delta(self):
        ev = classify_payload({"event": "agent_message", "answer": "x"})
        assert isinstance(ev, MessageDelta)
        assert ev.event == "agent_message"

    def test_message_end_usage(self):
        ev = classify_payload({
            "event": "message_end", "id": "m-1",
            "metadata": {"usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
        })
        assert isinstance(ev, MessageEnd)
        assert ev.usage.total_tokens == 5
        assert ev.message_id == "m-1"

    def test_message_end_without_usage(self):
        ev = classify_payload({"event": "message_end"})
        assert ev.usage is None

    def test_node_started(self):
        ev = classify_payload({
            "event": "node_started",
            "data": {"node_id": "n1", "title": "LLM", "node_type": "llm"},
        })
        assert isinstance(ev, NodeStarted)
        assert (ev.node_id, ev.node_title, ev.node_type) == ("n1", "LLM", "llm")

    def test_node_finished(self):
        ev = classify_payload({
            "event": "node_finished",
            "data": {
                "node_id": "n1", "title": "LLM", "node_type": "llm", "status": "succeeded",
                "outputs": {"text": "hi"}, "elapsed_time": 1.25,
            },
        })
        assert isinstance(ev, NodeFinished)
        assert ev.status == "succeeded"
        assert ev.outputs == {"text": "hi"}
        assert ev.elapsed_time == 1.25
        assert ev.error is None

    def test_workflow_lifecycle(self):
        started = classify_payload({"event": "workflow_started", "workflow_run_id": "r1", "data": {"id": "r1"}})
        assert isinstance(started, WorkflowStarted)
        assert started.workflow_run_id == "r1"

        finished = classify_payload({
            "event": "workflow_finished", "workflow_run_id": "r1",
            "data": {"status": "succeeded", "outputs": {"answer": "final"}},
        })
        assert isinstance(finished, WorkflowFinished)
        assert finished.final_outputs == {"answer": "final"}
        assert finished.status == "succeeded"

    def test_error(self):
        ev = classify_payload({"event": "error", "code": "quota", "message": "Quota exceeded", "status": 400})
        assert isinstance(ev, ErrorEvent)
        assert (ev.code, ev.message, ev.status) == ("quota", "Quota exceeded", 400)

    @pytest.mark.parametrize("name", ["ping", "agent_thought", "tts_message", "message_file"])
    def test_unknown_passthrough(self, name):
        ev = classify_payload({"event": name, "conversation_id": "u-1"})
        assert isinstance(ev, UnknownEvent)
        assert ev.event == name
        assert ev.conversation_id == "u-1"

    def test_event_line_used_when_payload_has_no_event(self):
        ev = classify_payload({"answer": "x"}, "message")
        assert isinstance(ev, MessageDelta)


class TestClassifyFrame:
    def test_done(self):
        assert isinstance(classify_frame(parse_frame(DONE_FRAME)), Done)

    def test_json_frame(self):
        ev = classify_frame(_frame({"event": "message", "answer": "a"}))
        assert isinstance(ev, MessageDelta)

    def test_event_only_block(self):
        ev = classify_frame(parse_frame(b"event: ping\n\n"))
        assert isinstance(ev, UnknownEvent)
        assert ev.event == "ping"

    def test_invalid_json_raises(self):
        with pytest.raises(StreamFrameDecodeError) as exc:
            classify_frame(parse_frame(b"data: {not json\n\n"))
        assert exc.value.raw == b"data: {not json\n\n"

    def test_non_object_raises(self):
        with pytest.raises(StreamFrameDecodeError):
            classify_frame(parse_frame(b"data: [1, 2]\n\n"))


class TestDecodeAcrossSplits:
    STREAM = (
        b'data: {"event": "node_started", "data": {"node_id": "n1", "title": "LLM"}}\n\n'
        b'data: {"event": "message", "answer": "caf\xc3\xa9 "}\n\n'
        b"data: {not json}\n\n"
        b'data: {"event": "message", "answer": "ok"}\r\n\r\n'
        b'data: {"event": "message_end", "metadata": {"usage": {"total_tokens": 3}}}\n\n'
        b"data: [DONE]\n\n"
    )

    @staticmethod
    def _decode(chunks: list[bytes]) -> list:
        decoder = FrameDecoder()
        events = []
        for chunk in chunks:
            for frame in decoder.feed(chunk):
                try:
                    events.append(classify_frame(frame))
                except StreamFrameDecodeError:
                    continue
        return events

    def test_every_two_way_split_matches_unsplit(self):
        expected = self._decode([self.STREAM])
        assert [e.event for e in expected] == ["node_started", "message", "message", "message_end", "done"]
        for i in range(1, len(self.STREAM)):
            got = self._decode([self.STREAM[:i], self.STREAM[i:]])
            assert got == expected, f"split at byte {i}"

    def test_three_way_splits_match(self):
        expected = self._decode([self.STREAM])
        n = len(self.STREAM)
        for i in range(1, n, 7):
            for j in range(i + 1, n, 11):
                got = self._decode([self.STREAM[:i], self.STREAM[i:j], self.STREAM[j:]])
                assert got == expected

    def test_malformed_frame_between_good_ones(self):
        events = self._decode([self.STREAM])
        deltas = [e.delta_text for e in events if isinstance(e, MessageDelta)]
        assert deltas == ["café ", "ok"]

    def test_message_split_mid_event_name(self):
        events = self._decode([b'data: {"event":"mess', b'age","answer":"X"}\n\n'])
        assert len(events) == 1
        assert isinstance(events[0], MessageDelta)
        assert events[0].delta_text == "X"
