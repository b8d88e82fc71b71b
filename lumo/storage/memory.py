"""Process-local store used in tests and when no database URL is configured.

State lives in plain dicts guarded by a ``threading.Lock``; records are
copied on the way in and out so callers never alias stored state.  Every
operation yields to the event loop once before touching state, the way a
networked backend would, so concurrent tasks interleave realistically.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from lumo.models import (
    AppointmentSlot,
    BlockEntry,
    BlockKind,
    InteractionLog,
    Message,
    SlotStatus,
    User,
    as_utc,
    utcnow,
)
from lumo.storage.base import Store

logger = logging.getLogger(__name__)


def _order_key(message: Message) -> tuple[datetime, int]:
    return message.timestamp, message.id or 0


class InMemoryStore(Store):
    """Dictionary-backed :class:`Store`.  Data is lost on process restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._users: dict[str, User] = {}
        self._messages: dict[int, Message] = {}
        self._interactions: list[InteractionLog] = []
        self._slots: dict[int, AppointmentSlot] = {}
        self._blocks: dict[tuple[BlockKind, str], BlockEntry] = {}

    @staticmethod
    async def _yield() -> None:
        await asyncio.sleep(0)

    # ── Users ────────────────────────────────────────────────────────

    async def upsert_user(
        self,
        identity: str,
        *,
        display_name: str | None = None,
        plain_phone: str | None = None,
        email: str | None = None,
    ) -> User:
        await self._yield()
        now = utcnow()
        with self._lock:
            user = self._users.get(identity)
            if user is None:
                user = User(
                    identity=identity,
                    display_name=display_name,
                    plain_phone=plain_phone,
                    email=email,
                    message_count=1,
                    created_at=now,
                    last_seen=now,
                )
                logger.info("Created new user %s", identity)
            else:
                user = replace(
                    user,
                    display_name=display_name or user.display_name,
                    plain_phone=plain_phone or user.plain_phone,
                    email=email or user.email,
                    message_count=user.message_count + 1,
                    last_seen=now,
                )
            self._users[identity] = user
            return replace(user)

    async def get_user(self, identity: str) -> User | None:
        await self._yield()
        with self._lock:
            user = self._users.get(identity)
            return replace(user) if user else None

    # ── Messages ─────────────────────────────────────────────────────

    async def add_message(self, message: Message) -> int:
        await self._yield()
        with self._lock:
            message_id = next(self._ids)
            self._messages[message_id] = replace(
                message, id=message_id, metadata=dict(message.metadata),
            )
            return message_id

    async def list_messages(
        self, user_id: str, *, limit: int, flagged_only: bool = False,
    ) -> list[Message]:
        await self._yield()
        with self._lock:
            rows = [
                m for m in self._messages.values()
                if m.user_id == user_id and (m.is_flagged or not flagged_only)
            ]
        rows.sort(key=_order_key, reverse=True)
        return [replace(m) for m in rows[:limit]]

    async def count_messages(self, user_id: str) -> int:
        await self._yield()
        with self._lock:
            return sum(1 for m in self._messages.values() if m.user_id == user_id)

    async def delete_messages_except(self, user_id: str, keep_ids: Iterable[int]) -> int:
        await self._yield()
        keep = set(keep_ids)
        with self._lock:
            doomed = [
                mid for mid, m in self._messages.items()
                if m.user_id == user_id and mid not in keep
            ]
            for mid in doomed:
                del self._messages[mid]
            return len(doomed)

    # ── Interaction log ──────────────────────────────────────────────

    async def add_interaction(self, log: InteractionLog) -> int:
        await self._yield()
        with self._lock:
            log_id = next(self._ids)
            self._interactions.append(replace(log, id=log_id, details=dict(log.details)))
            return log_id

    @property
    def interactions(self) -> list[InteractionLog]:
        """Snapshot of the audit trail, oldest first."""
        with self._lock:
            return [replace(entry) for entry in self._interactions]

    # ── Appointment slots ────────────────────────────────────────────

    async def create_slot(self, slot_datetime: datetime) -> AppointmentSlot:
        await self._yield()
        with self._lock:
            slot = AppointmentSlot(id=next(self._ids), slot_datetime=as_utc(slot_datetime))
            self._slots[slot.id] = slot
            return replace(slot)

    async def get_slot(self, slot_id: int) -> AppointmentSlot | None:
        await self._yield()
        with self._lock:
            slot = self._slots.get(slot_id)
            return replace(slot) if slot else None

    async def list_open_slots(self, from_time: datetime, limit: int) -> list[AppointmentSlot]:
        await self._yield()
        with self._lock:
            rows = [
                s for s in self._slots.values()
                if s.status == SlotStatus.OPEN and s.slot_datetime >= from_time
            ]
        rows.sort(key=lambda s: (s.slot_datetime, s.id))
        return [replace(s) for s in rows[:limit]]

    async def list_user_appointments(self, user_id: str) -> list[AppointmentSlot]:
        await self._yield()
        with self._lock:
            rows = [
                s for s in self._slots.values()
                if s.user_id == user_id and s.status != SlotStatus.OPEN
            ]
        rows.sort(key=lambda s: (s.slot_datetime, s.id))
        return [replace(s) for s in rows]

    def _active_booking(self, user_id: str, now: datetime) -> AppointmentSlot | None:
        # caller holds self._lock
        for slot in self._slots.values():
            if (
                slot.user_id == user_id
                and slot.status == SlotStatus.BOOKED
                and slot.slot_datetime >= now
            ):
                return slot
        return None

    async def find_active_booking(self, user_id: str, now: datetime) -> AppointmentSlot | None:
        await self._yield()
        with self._lock:
            slot = self._active_booking(user_id, now)
            return replace(slot) if slot else None

    async def update_slot_if(
        self,
        slot_id: int,
        expected_version: int,
        expected_status: SlotStatus,
        patch: dict[str, Any],
        *,
        exclusive_for: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        await self._yield()
        with self._lock:
            slot = self._slots.get(slot_id)
            if (
                slot is None
                or slot.status != expected_status
                or slot.version != expected_version
            ):
                return False
            if exclusive_for is not None:
                held = self._active_booking(exclusive_for, as_utc(now or utcnow()))
                if held is not None and held.id != slot_id:
                    return False
            self._slots[slot_id] = replace(slot, **patch, version=slot.version + 1)
            return True

    def put_slot(self, slot: AppointmentSlot) -> None:
        """Seed a slot verbatim (keeps its id, status and version)."""
        with self._lock:
            self._slots[slot.id] = replace(slot, slot_datetime=as_utc(slot.slot_datetime))

    # ── Block list ───────────────────────────────────────────────────

    async def add_block(self, entry: BlockEntry) -> None:
        await self._yield()
        with self._lock:
            self._blocks.setdefault((entry.kind, entry.identity), replace(entry))

    async def is_blocked(self, identity: str, kind: BlockKind) -> bool:
        await self._yield()
        with self._lock:
            return (kind, identity) in self._blocks
