"""Shared fixtures for workflow-relay tests."""

from __future__ import annotations

import json
import tempfile
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from workflow_relay.config import load_config
from workflow_relay.core.identity import ConversationIdentityResolver
from workflow_relay.proxy.client import UpstreamClient
from workflow_relay.storage.sqlite import SQLiteStore
from workflow_relay.types import RelayConfig


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def tmp_sqlite_db(tmp_store_dir):
    return tmp_store_dir / "relay.db"


@pytest.fixture
def store(tmp_sqlite_db):
    s = SQLiteStore(db_path=tmp_sqlite_db)
    yield s
    s.close()


@pytest.fixture
def resolver(store) -> ConversationIdentityResolver:
    return ConversationIdentityResolver(store)


@pytest.fixture
def relay_config(tmp_sqlite_db, monkeypatch) -> RelayConfig:
    monkeypatch.delenv("DIFY_API_URL", raising=False)
    return load_config(config_dict={
        "engine": "dify",
        "upstream": {
            "base_url": "https://upstream.test/v1",
            "api_key": "app-test-key",
        },
        "storage": {"sqlite_path": str(tmp_sqlite_db)},
    })


def sse(*payloads: dict | str) -> bytes:
    """Encode payloads as ``data: <json>\\n\\n`` frames. Strings are sent raw."""
    out = b""
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        out += f"data: {data}\n\n".encode()
    return out


class FakeUpstream:
    """Scriptable upstream for ``httpx.MockTransport``.

    ``replies`` is consumed one per ``POST /chat-messages``; every request is
    kept in ``requests`` with its decoded JSON body.
    """

    def __init__(self, replies: list[httpx.Response | Callable[[httpx.Request], httpx.Response]] | None = None):
        self.replies = list(replies or [])
        self.requests: list[httpx.Request] = []
        self.exists: dict[str, bool] = {}

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path.endswith("/messages"):
            conv = request.url.params.get("conversation_id")
            if self.exists.get(conv, True):
                return httpx.Response(200, json={"data": [], "has_more": False, "limit": 1})
            return httpx.Response(404, json={"code": "not_found", "message": "Conversation Not Exists.", "status": 404})
        if not self.replies:
            return httpx.Response(500, json={"code": "internal_error", "message": "no scripted reply"})
        reply = self.replies.pop(0)
        if callable(reply):
            return reply(request)
        return reply

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, config: RelayConfig) -> UpstreamClient:
        return UpstreamClient(config.upstream, transport=self.transport())


def not_found_response() -> httpx.Response:
    return httpx.Response(
        404, json={"code": "not_found", "message": "Conversation Not Exists.", "status": 404},
    )


def blocking_response(answer: str = "Hi there", conversation_id: str = "u-1", **extra) -> httpx.Response:
    body = {
        "event": "message",
        "message_id": extra.pop("message_id", "m-1"),
        "conversation_id": conversation_id,
        "mode": "advanced-chat",
        "answer": answer,
        "metadata": {
            "usage": {
                "prompt_tokens": 12,
                "completion_tokens": 5,
                "total_tokens": 17,
                "total_price": "0.0001",
                "currency": "USD",
            },
        },
    }
    body.update(extra)
    return httpx.Response(200, json=body)


def streaming_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)
