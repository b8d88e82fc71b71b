"""Abstract storage interface used by the conversation, scheduling and pipeline code.

Every method is a coroutine: each call is a suspension point, so concurrent
message tasks interleave around storage I/O.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
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
)


class Store(ABC):
    """Persistence operations the assistant needs, and nothing more."""

    # ── Users ────────────────────────────────────────────────────────

    @abstractmethod
    async def upsert_user(
        self,
        identity: str,
        *,
        display_name: str | None = None,
        plain_phone: str | None = None,
        email: str | None = None,
    ) -> User:
        """Create the user on first contact, otherwise refresh ``last_seen``,
        bump ``message_count`` and overwrite contact fields that were given."""

    @abstractmethod
    async def get_user(self, identity: str) -> User | None: ...

    # ── Messages ─────────────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: Message) -> int: ...

    @abstractmethod
    async def list_messages(
        self, user_id: str, *, limit: int, flagged_only: bool = False,
    ) -> list[Message]:
        """Newest first, ordered by ``(timestamp, id)``."""

    @abstractmethod
    async def count_messages(self, user_id: str) -> int: ...

    @abstractmethod
    async def delete_messages_except(self, user_id: str, keep_ids: Iterable[int]) -> int:
        """Delete every message of *user_id* whose id is not in *keep_ids*."""

    # ── Interaction log ──────────────────────────────────────────────

    @abstractmethod
    async def add_interaction(self, log: InteractionLog) -> int: ...

    # ── Appointment slots ────────────────────────────────────────────

    @abstractmethod
    async def create_slot(self, slot_datetime: datetime) -> AppointmentSlot: ...

    @abstractmethod
    async def get_slot(self, slot_id: int) -> AppointmentSlot | None: ...

    @abstractmethod
    async def list_open_slots(self, from_time: datetime, limit: int) -> list[AppointmentSlot]:
        """Open slots at or after *from_time*, ascending, at most *limit*."""

    @abstractmethod
    async def list_user_appointments(self, user_id: str) -> list[AppointmentSlot]:
        """Every non-open slot attached to *user_id*, ascending by time."""

    @abstractmethod
    async def find_active_booking(self, user_id: str, now: datetime) -> AppointmentSlot | None:
        """A ``booked`` slot of *user_id* whose time is at or after *now*."""

    @abstractmethod
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
        """Atomically apply *patch* and increment ``version``.

        Only succeeds when the stored status and version still equal the
        expected values.  With *exclusive_for*, it also requires that this
        user holds no other ``booked`` slot at or after *now*, checked in
        the same atomic step.  Returns whether the update was applied.
        """

    # ── Block list ───────────────────────────────────────────────────

    @abstractmethod
    async def add_block(self, entry: BlockEntry) -> None: ...

    @abstractmethod
    async def is_blocked(self, identity: str, kind: BlockKind) -> bool: ...
