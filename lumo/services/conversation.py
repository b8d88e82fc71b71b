"""Per-user message history with bounded retention and pinned (flagged) turns.

Persistence is best effort: a failed read degrades to an empty context and a
failed write is logged and dropped, so message delivery never waits on the
store being healthy.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from lumo.config import (
    CONTEXT_MESSAGES_LIMIT,
    FLAGGED_MESSAGES_LIMIT,
    MESSAGE_HISTORY_LIMIT,
)
from lumo.models import Message, Role
from lumo.storage.base import Store

logger = logging.getLogger(__name__)


def _chronological(message: Message) -> tuple:
    return message.timestamp, message.id or 0


class ConversationStore:
    """Append, trim and read back a user's conversation."""

    def __init__(
        self,
        store: Store,
        *,
        history_limit: int = MESSAGE_HISTORY_LIMIT,
        context_limit: int = CONTEXT_MESSAGES_LIMIT,
        flagged_limit: int = FLAGGED_MESSAGES_LIMIT,
    ) -> None:
        self._store = store
        self.history_limit = history_limit
        self.context_limit = context_limit
        self.flagged_limit = flagged_limit

    async def append(
        self,
        user_id: str,
        role: Role,
        content: str,
        *,
        flagged: bool = False,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> int | None:
        """Persist one turn and enforce retention.  Returns the stored id or ``None``."""
        message = Message(
            user_id=user_id,
            role=role,
            content=content,
            is_flagged=flagged,
            metadata=dict(metadata or {}),
            message_id=message_id,
        )
        try:
            stored_id = await self._store.add_message(message)
        except Exception:
            logger.exception("Failed to save %s message for %s", role, user_id)
            return None

        await self.enforce_retention(user_id)
        return stored_id

    async def enforce_retention(self, user_id: str) -> int:
        """Trim history to the most recent turns plus pinned ones.

        Once the stored count reaches ``history_limit`` everything except the
        ``history_limit`` most recent messages and the ``flagged_limit`` most
        recent flagged messages is deleted.  Returns the number removed.
        """
        try:
            if await self._store.count_messages(user_id) < self.history_limit:
                return 0
            recent = await self._store.list_messages(user_id, limit=self.history_limit)
            pinned = await self._store.list_messages(
                user_id, limit=self.flagged_limit, flagged_only=True,
            )
            keep = {m.id for m in recent} | {m.id for m in pinned}
            removed = await self._store.delete_messages_except(user_id, keep)
        except Exception:
            logger.exception("Retention cleanup failed for %s", user_id)
            return 0

        if removed:
            logger.debug("Trimmed %d old messages for %s", removed, user_id)
        return removed

    async def get_context(
        self, user_id: str, *, exclude_ids: Iterable[int] = (),
    ) -> list[Message]:
        """Recent turns merged with pinned ones, oldest first.

        At most ``context_limit + flagged_limit`` messages, each at most once.
        """
        excluded = set(exclude_ids)
        try:
            # over-fetch so excluded ids do not shrink the window
            recent = await self._store.list_messages(
                user_id, limit=self.context_limit + len(excluded),
            )
            # pinned turns already in the recent window do not count towards F
            pinned = await self._store.list_messages(
                user_id,
                limit=self.flagged_limit + self.context_limit + len(excluded),
                flagged_only=True,
            )
        except Exception:
            logger.exception("Failed to load history for %s; continuing without context", user_id)
            return []

        merged: dict[int | None, Message] = {}
        for message in [m for m in recent if m.id not in excluded][: self.context_limit]:
            merged[message.id] = message
        extra = 0
        for message in pinned:
            if extra >= self.flagged_limit:
                break
            if message.id in excluded or message.id in merged:
                continue
            merged[message.id] = message
            extra += 1

        context = sorted(merged.values(), key=_chronological)
        logger.debug("Loaded %d context messages for %s", len(context), user_id)
        return context
