"""Tests for conversation history retention and context loading."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from lumo.models import Role
from lumo.services.conversation import ConversationStore


def _fill(conversation: ConversationStore, user_id: str, count: int, *, flag_every: int = 0):
    async def run():
        ids = []
        for i in range(count):
            flagged = bool(flag_every) and i % flag_every == 0
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            ids.append(await conversation.append(user_id, role, f"msg {i}", flagged=flagged))
        return ids

    return asyncio.run(run())


class TestAppend:
    def test_append_returns_stored_id(self, store):
        conversation = ConversationStore(store)
        message_id = asyncio.run(conversation.append("u1", Role.USER, "hello"))
        assert isinstance(message_id, int)
        assert asyncio.run(store.count_messages("u1")) == 1

    def test_append_keeps_metadata(self, store):
        conversation = ConversationStore(store)

        async def run():
            await conversation.append(
                "u1", Role.USER, "[Attachment]", metadata={"media_mimetype": "image/png"},
            )
            return await store.list_messages("u1", limit=1)

        (message,) = asyncio.run(run())
        assert message.metadata == {"media_mimetype": "image/png"}

    def test_storage_failure_is_swallowed(self, store):
        store.add_message = AsyncMock(side_effect=RuntimeError("disk full"))
        conversation = ConversationStore(store)
        assert asyncio.run(conversation.append("u1", Role.USER, "hello")) is None


class TestRetention:
    def test_history_is_trimmed_to_limit(self, store):
        conversation = ConversationStore(store, history_limit=10, flagged_limit=0)
        _fill(conversation, "u1", 25)
        assert asyncio.run(store.count_messages("u1")) == 10

    def test_most_recent_messages_survive(self, store):
        conversation = ConversationStore(store, history_limit=5, flagged_limit=0)
        _fill(conversation, "u1", 12)
        remaining = asyncio.run(store.list_messages("u1", limit=100))
        assert [m.content for m in reversed(remaining)] == [f"msg {i}" for i in range(7, 12)]

    def test_flagged_messages_are_pinned(self, store):
        conversation = ConversationStore(store, history_limit=5, flagged_limit=3)
        _fill(conversation, "u1", 30, flag_every=10)  # flags msg 0, 10, 20
        contents = {m.content for m in asyncio.run(store.list_messages("u1", limit=100))}
        assert {"msg 0", "msg 10", "msg 20"} <= contents
        assert len(contents) <= 5 + 3

    def test_retention_is_per_user(self, store):
        conversation = ConversationStore(store, history_limit=3, flagged_limit=0)
        _fill(conversation, "u1", 2)
        _fill(conversation, "u2", 10)
        assert asyncio.run(store.count_messages("u1")) == 2
        assert asyncio.run(store.count_messages("u2")) == 3


class TestGetContext:
    def test_context_is_chronological(self, store):
        conversation = ConversationStore(store, context_limit=4, flagged_limit=0)
        _fill(conversation, "u1", 8)
        context = asyncio.run(conversation.get_context("u1"))
        assert [m.content for m in context] == ["msg 4", "msg 5", "msg 6", "msg 7"]

    def test_flagged_messages_are_merged_without_duplicates(self, store):
        conversation = ConversationStore(store, context_limit=3, flagged_limit=2)
        _fill(conversation, "u1", 10, flag_every=3)  # flags msg 0, 3, 6, 9
        context = asyncio.run(conversation.get_context("u1"))
        contents = [m.content for m in context]
        # recent 7, 8, 9 plus the two newest flagged not already present (6, 3)
        assert contents == ["msg 3", "msg 6", "msg 7", "msg 8", "msg 9"]
        assert len(set(m.id for m in context)) == len(context)

    def test_excluded_ids_do_not_shrink_window(self, store):
        conversation = ConversationStore(store, context_limit=3, flagged_limit=0)
        ids = _fill(conversation, "u1", 6)
        context = asyncio.run(conversation.get_context("u1", exclude_ids=[ids[-1]]))
        assert [m.content for m in context] == ["msg 2", "msg 3", "msg 4"]

    def test_unknown_user_has_empty_context(self, store):
        conversation = ConversationStore(store)
        assert asyncio.run(conversation.get_context("nobody")) == []

    def test_read_failure_degrades_to_empty(self, store):
        store.list_messages = AsyncMock(side_effect=RuntimeError("timeout"))
        conversation = ConversationStore(store)
        assert asyncio.run(conversation.get_context("u1")) == []
