"""Domain records shared by the storage backends, services and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Sentiment(StrEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class SlotStatus(StrEnum):
    OPEN = "open"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BlockKind(StrEnum):
    """``silent`` entries are added by an admin, ``abuse`` ones automatically."""

    SILENT = "silent"
    ABUSE = "abuse"


@dataclass
class User:
    identity: str
    display_name: str | None = None
    plain_phone: str | None = None
    email: str | None = None
    message_count: int = 1
    created_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    user_id: str
    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    is_flagged: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    id: int | None = None


@dataclass
class InteractionLog:
    user_id: str | None
    action_type: str
    sentiment: Sentiment = Sentiment.NEUTRAL
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class AppointmentSlot:
    id: int
    slot_datetime: datetime
    status: SlotStatus = SlotStatus.OPEN
    user_id: str | None = None
    user_name: str | None = None
    reason: str | None = None
    booked_at: datetime | None = None
    cancelled_at: datetime | None = None
    version: int = 0


@dataclass
class BlockEntry:
    identity: str
    reason: str
    kind: BlockKind = BlockKind.SILENT
    created_at: datetime = field(default_factory=utcnow)
