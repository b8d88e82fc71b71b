"""Tests for appointment booking and cancellation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from lumo.models import AppointmentSlot, SlotStatus
from lumo.services.scheduler import (
    ERR_ACTIVE_BOOKING,
    ERR_BOOKING_FAILED,
    ERR_NOT_FOUND,
    ERR_SLOT_TAKEN,
    ERR_SLOT_UNAVAILABLE,
    AppointmentScheduler,
)


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock(fixed_now):
    return MutableClock(fixed_now)


@pytest.fixture
def scheduler(store, clock):
    return AppointmentScheduler(store, clock=clock)


@pytest.fixture
def open_slot(store, future_slot_time):
    return asyncio.run(store.create_slot(future_slot_time))


class TestQueries:
    def test_list_available_returns_open_future_slots_in_order(self, store, scheduler, fixed_now):
        async def run():
            late = await store.create_slot(fixed_now + timedelta(days=3))
            early = await store.create_slot(fixed_now + timedelta(days=1))
            await store.create_slot(fixed_now - timedelta(days=1))
            return late, early, await scheduler.list_available()

        late, early, slots = asyncio.run(run())
        assert [s.id for s in slots] == [early.id, late.id]

    def test_list_available_respects_limit(self, store, scheduler, fixed_now):
        async def run():
            for day in range(1, 8):
                await store.create_slot(fixed_now + timedelta(days=day))
            return await scheduler.list_available(limit=5)

        assert len(asyncio.run(run())) == 5

    def test_list_available_degrades_on_error(self, store, scheduler):
        store.list_open_slots = AsyncMock(side_effect=RuntimeError("down"))
        assert asyncio.run(scheduler.list_available()) == []

    def test_list_for_user_splits_upcoming_and_past(self, store, scheduler, fixed_now):
        store.put_slot(AppointmentSlot(
            id=1, slot_datetime=fixed_now + timedelta(days=1),
            status=SlotStatus.BOOKED, user_id="u1",
        ))
        store.put_slot(AppointmentSlot(
            id=2, slot_datetime=fixed_now - timedelta(days=1),
            status=SlotStatus.COMPLETED, user_id="u1",
        ))
        store.put_slot(AppointmentSlot(
            id=3, slot_datetime=fixed_now + timedelta(days=2),
            status=SlotStatus.CANCELLED, user_id="u1",
        ))
        result = asyncio.run(scheduler.list_for_user("u1"))
        assert [s.id for s in result.upcoming] == [1]
        assert sorted(s.id for s in result.past) == [2, 3]

    def test_create_slot_normalises_naive_datetime(self, scheduler):
        slot = asyncio.run(scheduler.create_slot(datetime(2026, 5, 1, 10, 0)))
        assert slot.slot_datetime.tzinfo is not None
        assert slot.status == SlotStatus.OPEN
        assert slot.version == 0


class TestBooking:
    def test_book_open_slot(self, store, scheduler, open_slot, fixed_now):
        result = asyncio.run(scheduler.book(open_slot.id, "u1", "Asha", "Project chat"))

        assert result.success
        assert result.error is None
        assert result.appointment.status == SlotStatus.BOOKED
        assert result.appointment.user_id == "u1"
        assert result.appointment.booked_at == fixed_now
        assert result.appointment.version == open_slot.version + 1

        stored = asyncio.run(store.get_slot(open_slot.id))
        assert stored.status == SlotStatus.BOOKED
        assert stored.reason == "Project chat"

    def test_booking_is_logged(self, store, scheduler, open_slot):
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        (entry,) = store.interactions
        assert entry.action_type == "appointment"
        assert entry.details["appointment_id"] == open_slot.id

    def test_unknown_slot_is_unavailable(self, scheduler):
        result = asyncio.run(scheduler.book(999, "u1", "Asha"))
        assert not result.success
        assert result.error == ERR_SLOT_UNAVAILABLE

    def test_booked_slot_is_unavailable(self, scheduler, open_slot):
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        result = asyncio.run(scheduler.book(open_slot.id, "u2", "Ben"))
        assert result.error == ERR_SLOT_UNAVAILABLE

    def test_past_slot_is_unavailable(self, store, scheduler, fixed_now):
        slot = asyncio.run(store.create_slot(fixed_now - timedelta(hours=1)))
        assert asyncio.run(scheduler.book(slot.id, "u1", "Asha")).error == ERR_SLOT_UNAVAILABLE

    def test_single_active_booking_per_user(self, store, scheduler, open_slot, fixed_now):
        other = asyncio.run(store.create_slot(fixed_now + timedelta(days=5)))
        assert asyncio.run(scheduler.book(open_slot.id, "u1", "Asha")).success

        result = asyncio.run(scheduler.book(other.id, "u1", "Asha"))
        assert not result.success
        assert result.error == ERR_ACTIVE_BOOKING
        assert asyncio.run(store.get_slot(other.id)).status == SlotStatus.OPEN

    def test_concurrent_bookings_have_one_winner(self, store, scheduler, future_slot_time):
        store.put_slot(AppointmentSlot(id=42, slot_datetime=future_slot_time, version=3))

        async def race():
            return await asyncio.gather(
                scheduler.book(42, "alice", "Alice"),
                scheduler.book(42, "bob", "Bob"),
            )

        results = asyncio.run(race())
        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error == ERR_SLOT_TAKEN

        stored = asyncio.run(store.get_slot(42))
        assert stored.status == SlotStatus.BOOKED
        assert stored.version == 4
        assert stored.user_id == winners[0].appointment.user_id

    def test_same_user_racing_for_two_slots_books_one(self, store, scheduler, fixed_now):
        first = asyncio.run(store.create_slot(fixed_now + timedelta(days=1)))
        second = asyncio.run(store.create_slot(fixed_now + timedelta(days=2)))

        async def race():
            return await asyncio.gather(
                scheduler.book(first.id, "u1", "Asha"),
                scheduler.book(second.id, "u1", "Asha"),
            )

        results = asyncio.run(race())
        assert sorted(r.success for r in results) == [False, True]
        assert [r.error for r in results if not r.success] == [ERR_ACTIVE_BOOKING]

        statuses = [asyncio.run(store.get_slot(s.id)).status for s in (first, second)]
        assert sorted(statuses) == [SlotStatus.BOOKED, SlotStatus.OPEN]

    def test_past_booking_does_not_block_a_new_one(self, store, scheduler, clock, open_slot):
        assert asyncio.run(scheduler.book(open_slot.id, "u1", "Asha")).success
        clock.now = open_slot.slot_datetime + timedelta(hours=1)
        later = asyncio.run(store.create_slot(clock.now + timedelta(days=1)))
        assert asyncio.run(scheduler.book(later.id, "u1", "Asha")).success

    def test_storage_error_becomes_generic_error(self, store, scheduler, open_slot):
        store.update_slot_if = AsyncMock(side_effect=RuntimeError("deadlock"))
        result = asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        assert not result.success
        assert result.error == ERR_BOOKING_FAILED


class TestCancellation:
    def test_cancel_within_window(self, store, scheduler, clock, open_slot):
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        clock.now += timedelta(hours=2, minutes=59)

        result = asyncio.run(scheduler.cancel(open_slot.id, "u1"))
        assert result.success
        stored = asyncio.run(store.get_slot(open_slot.id))
        assert stored.status == SlotStatus.CANCELLED
        assert stored.cancelled_at == clock.now
        assert stored.version == open_slot.version + 2

    def test_cancel_outside_window_is_refused(self, store, scheduler, clock, open_slot):
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        clock.now += timedelta(hours=3, minutes=1)

        result = asyncio.run(scheduler.cancel(open_slot.id, "u1"))
        assert not result.success
        assert "within 3 hours" in result.error
        assert asyncio.run(store.get_slot(open_slot.id)).status == SlotStatus.BOOKED

    def test_cannot_cancel_someone_elses_booking(self, scheduler, open_slot):
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        result = asyncio.run(scheduler.cancel(open_slot.id, "u2"))
        assert result.error == ERR_NOT_FOUND

    def test_cancel_twice(self, scheduler, open_slot):
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        assert asyncio.run(scheduler.cancel(open_slot.id, "u1")).success
        assert asyncio.run(scheduler.cancel(open_slot.id, "u1")).error == ERR_NOT_FOUND

    def test_can_book_again_after_cancelling(self, store, scheduler, open_slot, fixed_now):
        other = asyncio.run(store.create_slot(fixed_now + timedelta(days=4)))
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        asyncio.run(scheduler.cancel(open_slot.id, "u1"))
        assert asyncio.run(scheduler.book(other.id, "u1", "Asha")).success

    def test_custom_window_in_message(self, store, fixed_now, open_slot):
        clock = MutableClock(fixed_now)
        scheduler = AppointmentScheduler(store, cancellation_window=timedelta(hours=1), clock=clock)
        asyncio.run(scheduler.book(open_slot.id, "u1", "Asha"))
        clock.now += timedelta(hours=2)
        assert "within 1 hour " in asyncio.run(scheduler.cancel(open_slot.id, "u1")).error


def test_clock_defaults_to_utc(store):
    scheduler = AppointmentScheduler(store)
    assert scheduler._now().tzinfo == UTC
