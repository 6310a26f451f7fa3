"""ConversationStore abstract base class: conversation linkage + message log."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..types import ConversationHandle, StoredMessage, TurnRecord


class ConversationStore(ABC):
    """Pluggable storage backend owning ConversationHandle rows and messages.

    ``assign_upstream_id`` and ``clear_upstream_id`` must be atomic with
    respect to concurrent callers on the same ``local_id``. Storage failures
    are raised as ``PersistenceError``.
    """

    @abstractmethod
    def get_conversation(self, local_id: str) -> ConversationHandle | None:
        """Return the handle for *local_id*, or None if never seen."""

    @abstractmethod
    def ensure_conversation(self, local_id: str) -> ConversationHandle:
        """Create the handle if missing and return it."""

    @abstractmethod
    def assign_upstream_id(self, local_id: str, upstream_id: str) -> str:
        """Set the upstream id only if none is stored.

        Returns the value stored after the call: *upstream_id* if it was
        written (or already equal), otherwise the existing value.
        """

    @abstractmethod
    def clear_upstream_id(self, local_id: str, expected: str | None = None) -> bool:
        """Reset the upstream id to absent.

        When *expected* is given, only clear if the stored value equals it.
        Returns True if a value was cleared.
        """

    @abstractmethod
    def append_turn(self, record: TurnRecord) -> None:
        """Write the user and assistant rows of a turn in one transaction."""

    @abstractmethod
    def get_messages(self, local_id: str, limit: int = 50) -> list[StoredMessage]:
        """Return the most recent messages of a conversation, oldest first."""

    def close(self) -> None:
        """Release backend resources."""
