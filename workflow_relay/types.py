"""All dataclasses, enums, and exceptions for workflow-relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RelayError(Exception):
    """Base class for all workflow-relay errors."""


class ConfigError(RelayError):
    """Raised when the configuration cannot be loaded or is invalid."""


class CallerInputError(RelayError):
    """The caller sent an unusable turn (empty message, missing user)."""


class UpstreamError(RelayError):
    """Base class for failures talking to the upstream engine.

    ``stale_conversation_id`` is set when the failure happened on the
    retry that dropped a conversation id the upstream reported gone.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.stale_conversation_id: str | None = None


class UpstreamTransportError(UpstreamError):
    """Network-level failure: DNS, refused connection, timeout, TLS."""


class UpstreamApplicationError(UpstreamError):
    """Structured error reply from the upstream (HTTP 4xx/5xx)."""

    NOT_FOUND_CODES = frozenset({"conversation_not_found", "not_found"})

    def __init__(self, code: str, message: str, status_code: int) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def conversation_not_found(self) -> bool:
        """True when the upstream says the referenced conversation is gone."""
        if self.code == "conversation_not_found":
            return True
        if self.code in self.NOT_FOUND_CODES and self.status_code == 404:
            return True
        return self.status_code == 404 and "conversation not exist" in self.message.lower()


class StreamFrameDecodeError(RelayError):
    """A single stream frame could not be decoded."""

    def __init__(self, message: str, raw: bytes = b"") -> None:
        super().__init__(message)
        self.raw = raw


class PersistenceError(RelayError):
    """A storage write failed after the turn was already delivered."""


# ---------------------------------------------------------------------------
# Conversation identity
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversationHandle:
    """Local conversation plus its (optional) upstream linkage."""
    local_id: str
    upstream_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class ResolvedIdentity:
    """Resolver output for one turn."""
    upstream_id: str | None = None
    validated: bool = False  # True when pre-checked against the upstream

    @property
    def is_new(self) -> bool:
        return self.upstream_id is None


# ---------------------------------------------------------------------------
# Upstream contract
# ---------------------------------------------------------------------------

class ResponseMode(str, Enum):
    BUFFERED = "blocking"
    STREAMING = "streaming"


@dataclass
class TurnRequest:
    """Outbound payload for one chat turn. Built fresh per turn, never stored."""
    query: str
    user: str
    response_mode: ResponseMode
    conversation_ref: str | None = None
    inputs: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload: dict = {
            "query": self.query,
            "user": self.user,
            "response_mode": self.response_mode.value,
        }
        if self.conversation_ref is not None:
            payload["conversation_id"] = self.conversation_ref
        if self.inputs:
            payload["inputs"] = dict(self.inputs)
        return payload


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_price: str = ""
    currency: str = ""

    @classmethod
    def from_metadata(cls, metadata: dict | None) -> TokenUsage | None:
        """Parse ``metadata.usage`` from an upstream reply. None if absent."""
        if not isinstance(metadata, dict):
            return None
        usage = metadata.get("usage")
        if not isinstance(usage, dict):
            return None
        return cls(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
            total_price=str(usage.get("total_price") or ""),
            currency=str(usage.get("currency") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "total_price": self.total_price,
            "currency": self.currency,
        }


@dataclass
class UpstreamReply:
    """Parsed buffered reply from ``POST /chat-messages``."""
    answer: str
    conversation_id: str | None
    message_id: str | None
    usage: TokenUsage | None = None
    sent_conversation_ref: str | None = None  # conversation_id of the request that succeeded
    recovered_from: str | None = None  # stale id dropped by the not-found fallback
    raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass
class StreamEvent:
    """One decoded unit of the upstream's chunked response."""
    event: str = ""
    conversation_id: str | None = None
    message_id: str | None = None
    task_id: str | None = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)


@dataclass
class NodeStarted(StreamEvent):
    node_id: str = ""
    node_title: str = ""
    node_type: str = ""


@dataclass
class NodeFinished(StreamEvent):
    node_id: str = ""
    node_title: str = ""
    node_type: str = ""
    status: str = ""
    outputs: dict = field(default_factory=dict)
    elapsed_time: float | None = None
    error: str | None = None


@dataclass
class MessageDelta(StreamEvent):
    delta_text: str = ""


@dataclass
class MessageEnd(StreamEvent):
    usage: TokenUsage | None = None


@dataclass
class WorkflowStarted(StreamEvent):
    workflow_run_id: str = ""


@dataclass
class WorkflowFinished(StreamEvent):
    workflow_run_id: str = ""
    status: str = ""
    final_outputs: dict = field(default_factory=dict)
    error: str | None = None


@dataclass
class ErrorEvent(StreamEvent):
    code: str = ""
    message: str = ""
    status: int | None = None


@dataclass
class Done(StreamEvent):
    """Terminal sentinel (``data: [DONE]``)."""


@dataclass
class UnknownEvent(StreamEvent):
    """Any event name the relay does not interpret (ping, agent_thought, ...)."""


@dataclass
class NodeRecord:
    """Lifecycle of one workflow node as observed in the stream."""
    node_id: str
    node_title: str = ""
    node_type: str = ""
    status: str = "running"
    elapsed_time: float | None = None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@dataclass
class TurnRecord:
    """One completed turn: becomes a user row and an assistant row."""
    local_id: str
    user_message: str
    assistant_message: str
    upstream_conversation_id: str | None = None
    message_id: str | None = None
    usage: TokenUsage | None = None
    errors: list[str] = field(default_factory=list)
    streaming: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class StoredMessage:
    id: int
    local_id: str
    role: str  # "user" or "assistant"
    content: str
    usage: TokenUsage | None = None
    upstream_message_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class UpstreamConfig:
    base_url: str = "https://api.dify.ai/v1"
    api_key: str = ""
    api_key_env: str = "DIFY_API_KEY"
    buffered_timeout: float = 30.0
    streaming_timeout: float = 120.0  # workflows may run many nodes before the first token
    connect_timeout: float = 10.0
    validate_before_reuse: bool = False
    default_user: str = "default-user"


@dataclass
class StorageConfig:
    backend: str = "sqlite"
    sqlite_path: str = ".workflow-relay/relay.db"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class RelayConfig:
    version: str = "0.1"
    engine: str = "dify"
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
