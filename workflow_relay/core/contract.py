"""Request contract for ``POST /chat-messages``.

The upstream treats ``conversation_*`` inputs as its own conversation-scoped
variables. Sending them from the client overwrites engine state (state
resets, misrouted workflow branches), so every payload goes through
``sanitize_inputs`` here and nowhere else.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from ..types import CallerInputError, ResolvedIdentity, ResponseMode, TurnRequest

RESERVED_INPUT_RE = re.compile(r"^conversation_", re.IGNORECASE)


def is_reserved_input(key: str) -> bool:
    return bool(RESERVED_INPUT_RE.match(key))


def sanitize_inputs(raw_inputs: Mapping[str, Any] | None) -> dict[str, Any]:
    """Drop reserved keys; keep every other key and value unchanged."""
    if not isinstance(raw_inputs, Mapping):
        return {}
    return {k: v for k, v in raw_inputs.items() if not is_reserved_input(str(k))}


def build_turn_request(
    message: str,
    resolved: ResolvedIdentity,
    raw_inputs: Mapping[str, Any] | None,
    user_token: str,
    mode: ResponseMode,
) -> TurnRequest:
    """Build the outbound request for one turn.

    ``conversation_id`` is included only when continuing an upstream
    conversation. ``inputs`` is omitted when nothing survives sanitizing:
    the upstream reads an empty-but-present ``inputs`` object as a reset.
    ``ResponseMode.BUFFERED`` goes on the wire as ``"blocking"``, the
    upstream's name for a buffered reply.
    """
    if not isinstance(message, str) or not message.strip():
        raise CallerInputError("message must be a non-empty string")
    if not isinstance(user_token, str) or not user_token.strip():
        raise CallerInputError("user must be a non-empty string")

    return TurnRequest(
        query=message,
        user=user_token,
        response_mode=ResponseMode(mode),
        conversation_ref=None if resolved.is_new else resolved.upstream_id,
        inputs=sanitize_inputs(raw_inputs),
    )
