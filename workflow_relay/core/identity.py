"""Conversation identity: local handle <-> upstream conversation id.

The resolver is the only component allowed to mutate a conversation's
upstream id. It does so through two operations:

- ``on_upstream_assigned``: first writer wins, an existing different id is
  never overwritten.
- ``on_upstream_not_found``: drop the linkage, keep the conversation row
  and its local history.

``ConversationLocks`` serializes turns per ``local_id`` so two turns on
the same conversation cannot both observe "no upstream id" and create two
upstream conversations.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from .store import ConversationStore
from ..types import ResolvedIdentity, UpstreamError

logger = logging.getLogger(__name__)


class ConversationLocks:
    """Per-key asyncio locks, dropped once nobody holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    async def acquire(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

    def release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def active_count(self) -> int:
        return len(self._locks)


class ConversationIdentityResolver:
    """Decides new vs. continued upstream conversation for each turn."""

    def __init__(self, store: ConversationStore) -> None:
        self.store = store
        self.locks = ConversationLocks()

    def resolve(self, local_id: str) -> ResolvedIdentity:
        """Return the stored upstream id for *local_id* (tentatively valid)."""
        handle = self.store.get_conversation(local_id)
        if handle is None:
            self.store.ensure_conversation(local_id)
            return ResolvedIdentity(upstream_id=None)
        return ResolvedIdentity(upstream_id=handle.upstream_id)

    async def validate(
        self,
        local_id: str,
        resolved: ResolvedIdentity,
        exists: Callable[[str], Awaitable[bool]],
    ) -> ResolvedIdentity:
        """Pre-check a stored upstream id before reusing it.

        A definite "gone" answer clears the stored id and returns a
        new-conversation identity. If the check itself fails, the tentative
        id is kept; the main request path still handles staleness.
        """
        if resolved.is_new:
            return resolved
        try:
            alive = await exists(resolved.upstream_id)
        except UpstreamError as e:
            logger.warning(
                "[conv %s] existence check failed, keeping %s: %s",
                local_id, resolved.upstream_id, e,
            )
            return resolved
        if alive:
            return ResolvedIdentity(upstream_id=resolved.upstream_id, validated=True)
        self.on_upstream_not_found(local_id, stale_id=resolved.upstream_id)
        return ResolvedIdentity(upstream_id=None, validated=True)

    def on_upstream_assigned(self, local_id: str, upstream_id: str) -> bool:
        """Persist the upstream id created by this turn. Returns True if stored."""
        stored = self.store.assign_upstream_id(local_id, upstream_id)
        if stored != upstream_id:
            logger.warning(
                "[conv %s] upstream id %s already linked, ignoring %s",
                local_id, stored, upstream_id,
            )
            return False
        logger.info("[conv %s] linked to upstream conversation %s", local_id, upstream_id)
        return True

    def on_upstream_not_found(self, local_id: str, stale_id: str | None = None) -> bool:
        """Forget the upstream linkage. The conversation row itself stays."""
        cleared = self.store.clear_upstream_id(local_id, expected=stale_id)
        if cleared:
            logger.info(
                "[conv %s] upstream conversation %s gone, linkage cleared",
                local_id, stale_id or "(any)",
            )
        return cleared
