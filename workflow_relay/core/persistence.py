"""PersistenceBridge: reconcile upstream identity and record completed turns."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .identity import ConversationIdentityResolver
from .store import ConversationStore
from ..types import PersistenceError, TurnRecord

if TYPE_CHECKING:
    from ..proxy.metrics import RelayMetrics

logger = logging.getLogger(__name__)


class PersistenceBridge:
    """Terminal step of a turn.

    ``reconcile`` runs while the conversation's turn lock is held, so the
    next turn sees the new linkage. ``record_turn`` runs after the response
    has been delivered; its failures are logged, never raised.
    """

    def __init__(
        self,
        store: ConversationStore,
        resolver: ConversationIdentityResolver,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.metrics = metrics

    def _failed(self, local_id: str, what: str, error: PersistenceError) -> None:
        logger.warning("[conv %s] %s: %s", local_id, what, error)
        if self.metrics:
            self.metrics.record({
                "type": "persistence_failure",
                "local_id": local_id,
                "error": str(error),
            })

    def reconcile(
        self,
        local_id: str,
        *,
        sent_conversation_ref: str | None,
        reply_conversation_id: str | None,
        recovered_from: str | None = None,
    ) -> bool:
        """Apply what the upstream told us about this conversation's identity.

        Returns False if the store rejected a write; the turn itself is
        unaffected.
        """
        try:
            if recovered_from:
                self.resolver.on_upstream_not_found(local_id, stale_id=recovered_from)
            if sent_conversation_ref is None and reply_conversation_id:
                self.resolver.on_upstream_assigned(local_id, reply_conversation_id)
            elif (
                sent_conversation_ref
                and reply_conversation_id
                and reply_conversation_id != sent_conversation_ref
            ):
                logger.warning(
                    "[conv %s] upstream replied with conversation %s for request on %s",
                    local_id, reply_conversation_id, sent_conversation_ref,
                )
        except PersistenceError as e:
            self._failed(local_id, "upstream linkage not saved", e)
            return False
        return True

    def record_turn(self, record: TurnRecord) -> bool:
        """Write the turn's user and assistant rows. Returns False on failure."""
        try:
            self.store.append_turn(record)
        except PersistenceError as e:
            self._failed(record.local_id, "turn not persisted", e)
            return False
        if self.metrics:
            self.metrics.record({
                "type": "turn_persisted",
                "local_id": record.local_id,
                "streaming": record.streaming,
                "total_tokens": record.usage.total_tokens if record.usage else 0,
            })
        return True
