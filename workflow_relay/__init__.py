"""workflow-relay: conversation-state proxy and stream relay for workflow engines."""

from .config import load_config
from .types import (
    ConversationHandle,
    RelayConfig,
    ResolvedIdentity,
    ResponseMode,
    StreamEvent,
    TurnRecord,
    TurnRequest,
    UpstreamReply,
)

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "ConversationHandle",
    "RelayConfig",
    "ResolvedIdentity",
    "ResponseMode",
    "StreamEvent",
    "TurnRecord",
    "TurnRequest",
    "UpstreamReply",
]
