"""Appointment slots with optimistic-locking bookings.

Slot lifecycle::

    open ──book──▶ booked ──cancel──▶ cancelled
                     └── (time passes) ──▶ completed

Every write goes through :meth:`Store.update_slot_if`, a compare-and-swap on
``(status, version)``.  Two tasks that read the same open slot can both reach
the update, but only the first one matches; the loser sees ``False`` and is
told the slot was just taken.  A booking's update also carries the
one-active-booking rule, so the same user racing for two different slots
cannot win both.

All results are plain values: user-facing errors travel in
:class:`BookingResult.error` and never as exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from lumo.config import CANCELLATION_WINDOW_HOURS, SLOT_LOOKAHEAD
from lumo.models import (
    AppointmentSlot,
    InteractionLog,
    Sentiment,
    SlotStatus,
    as_utc,
    utcnow,
)
from lumo.storage.base import Store

logger = logging.getLogger(__name__)

# ── User-facing errors ──────────────────────────────────────────────
ERR_ACTIVE_BOOKING = (
    "You already have an active booking. "
    "Please cancel it first or wait until it completes."
)
ERR_SLOT_UNAVAILABLE = "This slot is no longer available. Please choose another."
ERR_SLOT_TAKEN = "This slot was just booked by someone else. Please choose another."
ERR_NOT_FOUND = "Appointment not found or already cancelled."
ERR_BOOKING_FAILED = "An error occurred while booking. Please try again."
ERR_CANCEL_FAILED = "An error occurred while cancelling. Please try again."


def _cancel_window_error(window: timedelta) -> str:
    hours = window.total_seconds() / 3600
    label = f"{hours:g} hour" + ("" if hours == 1 else "s")
    return f"Cancellation is only allowed within {label} of booking."


@dataclass
class BookingResult:
    success: bool
    appointment: AppointmentSlot | None = None
    error: str | None = None


@dataclass
class UserAppointments:
    upcoming: list[AppointmentSlot] = field(default_factory=list)
    past: list[AppointmentSlot] = field(default_factory=list)


class AppointmentScheduler:
    """Books and cancels slots against a :class:`Store`."""

    def __init__(
        self,
        store: Store,
        *,
        cancellation_window: timedelta = timedelta(hours=CANCELLATION_WINDOW_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._window = cancellation_window
        self._clock = clock

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ── Admin ────────────────────────────────────────────────────────

    async def create_slot(self, slot_datetime: datetime) -> AppointmentSlot:
        """Open a new bookable slot.  Storage errors propagate to the caller."""
        slot = await self._store.create_slot(as_utc(slot_datetime))
        logger.info("Created slot %s at %s", slot.id, slot.slot_datetime.isoformat())
        return slot

    # ── Queries ──────────────────────────────────────────────────────

    async def list_available(
        self, from_time: datetime | None = None, limit: int = SLOT_LOOKAHEAD,
    ) -> list[AppointmentSlot]:
        """Open slots at or after *from_time* (default: now), soonest first."""
        start = as_utc(from_time) if from_time else self._now()
        try:
            slots = await self._store.list_open_slots(start, limit)
        except Exception:
            logger.exception("Failed to list available slots")
            return []
        logger.debug("Found %d available slots", len(slots))
        return slots

    async def list_for_user(self, user_id: str) -> UserAppointments:
        """Split the user's non-open appointments into upcoming and past."""
        try:
            appointments = await self._store.list_user_appointments(user_id)
        except Exception:
            logger.exception("Failed to list appointments for %s", user_id)
            return UserAppointments()

        now = self._now()
        result = UserAppointments()
        for slot in appointments:
            if slot.status == SlotStatus.BOOKED and slot.slot_datetime >= now:
                result.upcoming.append(slot)
            else:
                result.past.append(slot)
        return result

    # ── Booking ──────────────────────────────────────────────────────

    async def book(
        self,
        slot_id: int,
        user_id: str,
        user_name: str | None,
        reason: str | None = None,
    ) -> BookingResult:
        """Reserve *slot_id* for *user_id*; at most one concurrent caller wins."""
        logger.info("Attempting to book slot %s for %s", slot_id, user_id)
        try:
            now = self._now()
            if await self._store.find_active_booking(user_id, now) is not None:
                logger.info("User %s already holds an active booking", user_id)
                return BookingResult(False, error=ERR_ACTIVE_BOOKING)

            slot = await self._store.get_slot(slot_id)
            if slot is None or slot.status != SlotStatus.OPEN or slot.slot_datetime < now:
                logger.info("Slot %s is not available", slot_id)
                return BookingResult(False, error=ERR_SLOT_UNAVAILABLE)

            patch = {
                "status": SlotStatus.BOOKED,
                "user_id": user_id,
                "user_name": user_name,
                "reason": reason,
                "booked_at": now,
            }
            applied = await self._store.update_slot_if(
                slot.id, slot.version, SlotStatus.OPEN, patch,
                exclusive_for=user_id, now=now,
            )
            if not applied:
                if await self._store.find_active_booking(user_id, now) is not None:
                    logger.info("User %s booked another slot concurrently", user_id)
                    return BookingResult(False, error=ERR_ACTIVE_BOOKING)
                logger.info("Lost the race for slot %s", slot_id)
                return BookingResult(False, error=ERR_SLOT_TAKEN)
        except Exception:
            logger.exception("Error booking slot %s", slot_id)
            return BookingResult(False, error=ERR_BOOKING_FAILED)

        booked = replace(slot, **patch, version=slot.version + 1)
        logger.info("Booked slot %s for %s", slot_id, user_id)
        await self._log_booking(booked)
        return BookingResult(True, appointment=booked)

    async def _log_booking(self, slot: AppointmentSlot) -> None:
        try:
            await self._store.add_interaction(
                InteractionLog(
                    user_id=slot.user_id,
                    action_type="appointment",
                    sentiment=Sentiment.POSITIVE,
                    details={
                        "appointment_id": slot.id,
                        "slot_datetime": slot.slot_datetime.isoformat(),
                        "reason": slot.reason,
                    },
                )
            )
        except Exception:
            logger.exception("Failed to log booking of slot %s", slot.id)

    # ── Cancellation ─────────────────────────────────────────────────

    async def cancel(self, appointment_id: int, user_id: str) -> BookingResult:
        """Cancel the caller's booking if it was made within the window."""
        logger.info("Attempting to cancel appointment %s for %s", appointment_id, user_id)
        try:
            slot = await self._store.get_slot(appointment_id)
            if slot is None or slot.user_id != user_id or slot.status != SlotStatus.BOOKED:
                return BookingResult(False, error=ERR_NOT_FOUND)

            now = self._now()
            if slot.booked_at is None or now - slot.booked_at > self._window:
                logger.info("Cancellation of %s denied; outside window", appointment_id)
                return BookingResult(False, error=_cancel_window_error(self._window))

            patch = {"status": SlotStatus.CANCELLED, "cancelled_at": now}
            applied = await self._store.update_slot_if(
                slot.id, slot.version, SlotStatus.BOOKED, patch,
            )
            if not applied:
                return BookingResult(False, error=ERR_NOT_FOUND)
        except Exception:
            logger.exception("Error cancelling appointment %s", appointment_id)
            return BookingResult(False, error=ERR_CANCEL_FAILED)

        logger.info("Cancelled appointment %s", appointment_id)
        return BookingResult(True, appointment=replace(slot, **patch, version=slot.version + 1))
