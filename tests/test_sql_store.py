"""Tests for the SQLAlchemy store against a temporary SQLite database."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from lumo.models import BlockEntry, BlockKind, InteractionLog, Message, Role, SlotStatus
from lumo.services.conversation import ConversationStore
from lumo.services.scheduler import ERR_ACTIVE_BOOKING, ERR_SLOT_TAKEN, AppointmentScheduler
from lumo.storage import InMemoryStore, build_store
from lumo.storage.sql import SqlStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def sql_store(tmp_path):
    store = SqlStore(f"sqlite:///{tmp_path / 'lumo.db'}")
    yield store
    store.dispose()


class TestBuildStore:
    def test_empty_url_gives_memory_store(self):
        assert isinstance(build_store(None), InMemoryStore)
        assert isinstance(build_store(""), InMemoryStore)

    def test_url_gives_sql_store(self, tmp_path):
        store = build_store(f"sqlite:///{tmp_path / 'x.db'}")
        assert isinstance(store, SqlStore)
        store.dispose()


class TestUsers:
    def test_upsert_creates_then_updates(self, sql_store):
        async def run():
            first = await sql_store.upsert_user("u1", display_name="Asha")
            second = await sql_store.upsert_user("u1", plain_phone="91980")
            return first, second

        first, second = asyncio.run(run())
        assert first.message_count == 1
        assert second.message_count == 2
        assert second.display_name == "Asha"
        assert second.plain_phone == "91980"
        assert second.last_seen.tzinfo is not None

    def test_get_missing_user(self, sql_store):
        assert asyncio.run(sql_store.get_user("nobody")) is None

    def test_concurrent_first_contact_creates_one_user(self, sql_store):
        async def run():
            return await asyncio.gather(
                *(sql_store.upsert_user("u1", display_name="Asha") for _ in range(4))
            )

        results = asyncio.run(run())
        assert len(results) == 4
        assert all(user.identity == "u1" for user in results)
        assert asyncio.run(sql_store.get_user("u1")).message_count == 4


class TestMessages:
    def test_round_trip_keeps_fields(self, sql_store):
        async def run():
            await sql_store.add_message(Message(
                user_id="u1", role=Role.USER, content="[Attachment]",
                metadata={"media_mimetype": "image/png"}, message_id="wa-1", is_flagged=True,
            ))
            return await sql_store.list_messages("u1", limit=5)

        (message,) = asyncio.run(run())
        assert message.role == Role.USER
        assert message.metadata == {"media_mimetype": "image/png"}
        assert message.message_id == "wa-1"
        assert message.is_flagged
        assert message.timestamp.tzinfo is not None

    def test_list_newest_first_and_flagged_filter(self, sql_store):
        async def run():
            for i in range(5):
                await sql_store.add_message(Message(
                    user_id="u1", role=Role.USER, content=f"m{i}",
                    timestamp=T0 + timedelta(minutes=i), is_flagged=i == 1,
                ))
            recent = await sql_store.list_messages("u1", limit=3)
            flagged = await sql_store.list_messages("u1", limit=3, flagged_only=True)
            return recent, flagged

        recent, flagged = asyncio.run(run())
        assert [m.content for m in recent] == ["m4", "m3", "m2"]
        assert [m.content for m in flagged] == ["m1"]

    def test_retention_through_conversation_store(self, sql_store):
        conversation = ConversationStore(sql_store, history_limit=4, flagged_limit=1)

        async def run():
            await conversation.append("u1", Role.USER, "pinned", flagged=True)
            for i in range(10):
                await conversation.append("u1", Role.USER, f"m{i}")
            return await sql_store.list_messages("u1", limit=100)

        contents = [m.content for m in asyncio.run(run())]
        assert contents == ["m9", "m8", "m7", "m6", "pinned"]


class TestSlots:
    def test_cas_update(self, sql_store):
        async def run():
            slot = await sql_store.create_slot(T0 + timedelta(days=1))
            patch = {"status": SlotStatus.BOOKED, "user_id": "u1", "booked_at": T0}
            first = await sql_store.update_slot_if(slot.id, 0, SlotStatus.OPEN, patch)
            stale = await sql_store.update_slot_if(slot.id, 0, SlotStatus.OPEN, patch)
            return first, stale, await sql_store.get_slot(slot.id)

        first, stale, stored = asyncio.run(run())
        assert first is True
        assert stale is False
        assert stored.status == SlotStatus.BOOKED
        assert stored.version == 1
        assert stored.booked_at == T0

    def test_open_slot_listing(self, sql_store):
        async def run():
            past = await sql_store.create_slot(T0 - timedelta(days=1))
            later = await sql_store.create_slot(T0 + timedelta(days=2))
            sooner = await sql_store.create_slot(T0 + timedelta(days=1))
            return past, later, sooner, await sql_store.list_open_slots(T0, 10)

        _, later, sooner, slots = asyncio.run(run())
        assert [s.id for s in slots] == [sooner.id, later.id]

    def test_concurrent_bookings_have_one_winner(self, sql_store):
        scheduler = AppointmentScheduler(sql_store, clock=lambda: T0)

        async def run():
            slot = await sql_store.create_slot(T0 + timedelta(days=1))
            results = await asyncio.gather(
                *(scheduler.book(slot.id, f"user-{i}", f"User {i}") for i in range(5))
            )
            return slot, results

        slot, results = asyncio.run(run())
        winners = [r for r in results if r.success]
        assert len(winners) == 1
        assert all(r.error for r in results if not r.success)
        stored = asyncio.run(sql_store.get_slot(slot.id))
        assert stored.version == 1
        assert stored.user_id == winners[0].appointment.user_id

    def test_same_user_concurrent_bookings_keep_one_active(self, sql_store):
        scheduler = AppointmentScheduler(sql_store, clock=lambda: T0)

        async def run():
            slots = [await sql_store.create_slot(T0 + timedelta(days=d)) for d in (1, 2, 3)]
            results = await asyncio.gather(
                *(scheduler.book(slot.id, "u1", "Asha") for slot in slots)
            )
            return results, await sql_store.list_user_appointments("u1")

        results, appointments = asyncio.run(run())
        assert sum(r.success for r in results) == 1
        assert {r.error for r in results if not r.success} == {ERR_ACTIVE_BOOKING}
        assert [s.status for s in appointments] == [SlotStatus.BOOKED]

    def test_exclusive_update_ignores_past_bookings(self, sql_store):
        async def run():
            old = await sql_store.create_slot(T0 - timedelta(days=1))
            new = await sql_store.create_slot(T0 + timedelta(days=1))
            patch = {"status": SlotStatus.BOOKED, "user_id": "u1", "booked_at": T0}
            await sql_store.update_slot_if(old.id, 0, SlotStatus.OPEN, patch)
            return await sql_store.update_slot_if(
                new.id, 0, SlotStatus.OPEN, patch, exclusive_for="u1", now=T0,
            )

        assert asyncio.run(run()) is True

    def test_user_appointments_and_active_booking(self, sql_store):
        scheduler = AppointmentScheduler(sql_store, clock=lambda: T0)

        async def run():
            slot = await sql_store.create_slot(T0 + timedelta(days=1))
            await scheduler.book(slot.id, "u1", "Asha")
            active = await sql_store.find_active_booking("u1", T0)
            mine = await sql_store.list_user_appointments("u1")
            return slot, active, mine

        slot, active, mine = asyncio.run(run())
        assert active.id == slot.id
        assert [s.id for s in mine] == [slot.id]

    def test_losing_booking_reports_slot_taken(self, sql_store):
        scheduler = AppointmentScheduler(sql_store, clock=lambda: T0)

        async def run():
            slot = await sql_store.create_slot(T0 + timedelta(days=1))
            # another writer wins between our read and our update
            await sql_store.update_slot_if(slot.id, 0, SlotStatus.OPEN, {"user_name": "edited"})
            original_get = sql_store.get_slot

            async def stale_get(slot_id):
                current = await original_get(slot_id)
                current.version = 0
                return current

            sql_store.get_slot = stale_get
            return await scheduler.book(slot.id, "u1", "Asha")

        assert asyncio.run(run()).error == ERR_SLOT_TAKEN


class TestBlocksAndLogs:
    def test_blocks_are_per_kind_and_idempotent(self, sql_store):
        async def run():
            entry = BlockEntry(identity="troll", reason="spam", kind=BlockKind.ABUSE)
            await sql_store.add_block(entry)
            await sql_store.add_block(entry)
            return (
                await sql_store.is_blocked("troll", BlockKind.ABUSE),
                await sql_store.is_blocked("troll", BlockKind.SILENT),
            )

        assert asyncio.run(run()) == (True, False)

    def test_interaction_log_accepts_missing_user(self, sql_store):
        log = InteractionLog(user_id=None, action_type="security_block", details={"count": 3})
        assert isinstance(asyncio.run(sql_store.add_interaction(log)), int)
