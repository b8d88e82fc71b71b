"""SQLAlchemy-backed store (SQLite locally, any SQLAlchemy URL in production).

SQLAlchemy sessions are blocking, so every public coroutine offloads its
work to the default thread pool via ``asyncio.to_thread`` and the event loop
stays responsive.  Each call uses its own short-lived session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased, declarative_base, sessionmaker

from lumo.models import (
    AppointmentSlot,
    BlockEntry,
    BlockKind,
    InteractionLog,
    Message,
    Role,
    Sentiment,
    SlotStatus,
    User,
    as_utc,
    utcnow,
)
from lumo.storage.base import Store

logger = logging.getLogger(__name__)

Base = declarative_base()


# ── Tables ───────────────────────────────────────────────────────────


class UserRow(Base):
    __tablename__ = "users"

    identity = Column(String(255), primary_key=True)
    display_name = Column(String(255))
    plain_phone = Column(String(64))
    email = Column(String(255))
    message_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)


class MessageRow(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    is_flagged = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    message_id = Column(String(255))


class InteractionRow(Base):
    __tablename__ = "interaction_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), index=True)
    action_type = Column(String(64), nullable=False)
    sentiment = Column(String(16), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)


class AppointmentRow(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slot_datetime = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=SlotStatus.OPEN.value, index=True)
    user_id = Column(String(255), index=True)
    user_name = Column(String(255))
    reason = Column(Text)
    booked_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=0)


class BlockRow(Base):
    __tablename__ = "blocks"
    __table_args__ = (UniqueConstraint("identity", "kind", name="uq_blocks_identity_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity = Column(String(255), nullable=False)
    kind = Column(String(16), nullable=False)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


# ── Row → record conversion ─────────────────────────────────────────


def _opt_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _to_user(row: UserRow) -> User:
    return User(
        identity=row.identity,
        display_name=row.display_name,
        plain_phone=row.plain_phone,
        email=row.email,
        message_count=row.message_count,
        created_at=as_utc(row.created_at),
        last_seen=as_utc(row.last_seen),
    )


def _to_message(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        user_id=row.user_id,
        role=Role(row.role),
        content=row.content,
        timestamp=as_utc(row.timestamp),
        is_flagged=row.is_flagged,
        metadata=dict(row.meta or {}),
        message_id=row.message_id,
    )


def _to_slot(row: AppointmentRow) -> AppointmentSlot:
    return AppointmentSlot(
        id=row.id,
        slot_datetime=as_utc(row.slot_datetime),
        status=SlotStatus(row.status),
        user_id=row.user_id,
        user_name=row.user_name,
        reason=row.reason,
        booked_at=_opt_utc(row.booked_at),
        cancelled_at=_opt_utc(row.cancelled_at),
        version=row.version,
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, (SlotStatus, Role, Sentiment, BlockKind)):
        return value.value
    return value


class SqlStore(Store):
    """:class:`Store` on top of a SQLAlchemy engine."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self._engine = create_engine(url, connect_args=connect_args, echo=echo)
        self._sessions = sessionmaker(
            bind=self._engine, autoflush=False, expire_on_commit=False,
        )
        Base.metadata.create_all(bind=self._engine)
        logger.info("SQL store ready (%s)", self._engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self._engine.dispose()

    # ── Users ────────────────────────────────────────────────────────

    async def upsert_user(
        self,
        identity: str,
        *,
        display_name: str | None = None,
        plain_phone: str | None = None,
        email: str | None = None,
    ) -> User:
        return await asyncio.to_thread(
            self._upsert_user, identity, display_name, plain_phone, email,
        )

    def _upsert_user(
        self,
        identity: str,
        display_name: str | None,
        plain_phone: str | None,
        email: str | None,
    ) -> User:
        try:
            return self._write_user(identity, display_name, plain_phone, email)
        except IntegrityError:
            # another task inserted the same identity first
            logger.debug("User %s was created concurrently; retrying as update", identity)
            return self._write_user(identity, display_name, plain_phone, email)

    def _write_user(
        self,
        identity: str,
        display_name: str | None,
        plain_phone: str | None,
        email: str | None,
    ) -> User:
        now = utcnow()
        with self._sessions() as session, session.begin():
            row = session.get(UserRow, identity)
            if row is None:
                row = UserRow(
                    identity=identity,
                    display_name=display_name,
                    plain_phone=plain_phone,
                    email=email,
                    message_count=1,
                    created_at=now,
                    last_seen=now,
                )
                session.add(row)
                session.flush()
                logger.info("Created new user %s", identity)
            else:
                row.display_name = display_name or row.display_name
                row.plain_phone = plain_phone or row.plain_phone
                row.email = email or row.email
                row.message_count = UserRow.message_count + 1
                row.last_seen = now
                session.flush()
            return _to_user(row)

    async def get_user(self, identity: str) -> User | None:
        return await asyncio.to_thread(self._get_user, identity)

    def _get_user(self, identity: str) -> User | None:
        with self._sessions() as session:
            row = session.get(UserRow, identity)
            return _to_user(row) if row else None

    # ── Messages ─────────────────────────────────────────────────────

    async def add_message(self, message: Message) -> int:
        return await asyncio.to_thread(self._add_message, message)

    def _add_message(self, message: Message) -> int:
        with self._sessions() as session, session.begin():
            row = MessageRow(
                user_id=message.user_id,
                role=_column_value(message.role),
                content=message.content,
                timestamp=message.timestamp,
                is_flagged=message.is_flagged,
                meta=dict(message.metadata),
                message_id=message.message_id,
            )
            session.add(row)
            session.flush()
            return row.id

    async def list_messages(
        self, user_id: str, *, limit: int, flagged_only: bool = False,
    ) -> list[Message]:
        return await asyncio.to_thread(self._list_messages, user_id, limit, flagged_only)

    def _list_messages(self, user_id: str, limit: int, flagged_only: bool) -> list[Message]:
        query = select(MessageRow).where(MessageRow.user_id == user_id)
        if flagged_only:
            query = query.where(MessageRow.is_flagged.is_(True))
        query = query.order_by(MessageRow.timestamp.desc(), MessageRow.id.desc()).limit(limit)
        with self._sessions() as session:
            return [_to_message(row) for row in session.scalars(query)]

    async def count_messages(self, user_id: str) -> int:
        return await asyncio.to_thread(self._count_messages, user_id)

    def _count_messages(self, user_id: str) -> int:
        query = select(func.count()).select_from(MessageRow).where(MessageRow.user_id == user_id)
        with self._sessions() as session:
            return session.scalar(query) or 0

    async def delete_messages_except(self, user_id: str, keep_ids: Iterable[int]) -> int:
        return await asyncio.to_thread(self._delete_messages_except, user_id, list(keep_ids))

    def _delete_messages_except(self, user_id: str, keep_ids: list[int]) -> int:
        stmt = delete(MessageRow).where(MessageRow.user_id == user_id)
        if keep_ids:
            stmt = stmt.where(MessageRow.id.not_in(keep_ids))
        with self._sessions() as session, session.begin():
            return session.execute(stmt).rowcount or 0

    # ── Interaction log ──────────────────────────────────────────────

    async def add_interaction(self, log: InteractionLog) -> int:
        return await asyncio.to_thread(self._add_interaction, log)

    def _add_interaction(self, log: InteractionLog) -> int:
        with self._sessions() as session, session.begin():
            row = InteractionRow(
                user_id=log.user_id,
                action_type=log.action_type,
                sentiment=_column_value(log.sentiment),
                details=dict(log.details),
                timestamp=log.timestamp,
            )
            session.add(row)
            session.flush()
            return row.id

    # ── Appointment slots ────────────────────────────────────────────

    async def create_slot(self, slot_datetime: datetime) -> AppointmentSlot:
        return await asyncio.to_thread(self._create_slot, as_utc(slot_datetime))

    def _create_slot(self, slot_datetime: datetime) -> AppointmentSlot:
        with self._sessions() as session, session.begin():
            row = AppointmentRow(
                slot_datetime=slot_datetime, status=SlotStatus.OPEN.value, version=0,
            )
            session.add(row)
            session.flush()
            return _to_slot(row)

    async def get_slot(self, slot_id: int) -> AppointmentSlot | None:
        return await asyncio.to_thread(self._get_slot, slot_id)

    def _get_slot(self, slot_id: int) -> AppointmentSlot | None:
        with self._sessions() as session:
            row = session.get(AppointmentRow, slot_id)
            return _to_slot(row) if row else None

    async def list_open_slots(self, from_time: datetime, limit: int) -> list[AppointmentSlot]:
        return await asyncio.to_thread(self._list_open_slots, from_time, limit)

    def _list_open_slots(self, from_time: datetime, limit: int) -> list[AppointmentSlot]:
        query = (
            select(AppointmentRow)
            .where(
                AppointmentRow.status == SlotStatus.OPEN.value,
                AppointmentRow.slot_datetime >= from_time,
            )
            .order_by(AppointmentRow.slot_datetime.asc(), AppointmentRow.id.asc())
            .limit(limit)
        )
        with self._sessions() as session:
            return [_to_slot(row) for row in session.scalars(query)]

    async def list_user_appointments(self, user_id: str) -> list[AppointmentSlot]:
        return await asyncio.to_thread(self._list_user_appointments, user_id)

    def _list_user_appointments(self, user_id: str) -> list[AppointmentSlot]:
        query = (
            select(AppointmentRow)
            .where(
                AppointmentRow.user_id == user_id,
                AppointmentRow.status != SlotStatus.OPEN.value,
            )
            .order_by(AppointmentRow.slot_datetime.asc(), AppointmentRow.id.asc())
        )
        with self._sessions() as session:
            return [_to_slot(row) for row in session.scalars(query)]

    async def find_active_booking(self, user_id: str, now: datetime) -> AppointmentSlot | None:
        return await asyncio.to_thread(self._find_active_booking, user_id, now)

    def _find_active_booking(self, user_id: str, now: datetime) -> AppointmentSlot | None:
        query = (
            select(AppointmentRow)
            .where(
                AppointmentRow.user_id == user_id,
                AppointmentRow.status == SlotStatus.BOOKED.value,
                AppointmentRow.slot_datetime >= now,
            )
            .limit(1)
        )
        with self._sessions() as session:
            row = session.scalars(query).first()
            return _to_slot(row) if row else None

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
        return await asyncio.to_thread(
            self._update_slot_if,
            slot_id, expected_version, expected_status, patch, exclusive_for, now,
        )

    def _update_slot_if(
        self,
        slot_id: int,
        expected_version: int,
        expected_status: SlotStatus,
        patch: dict[str, Any],
        exclusive_for: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        values = {key: _column_value(value) for key, value in patch.items()}
        conditions = [
            AppointmentRow.id == slot_id,
            AppointmentRow.status == expected_status.value,
            AppointmentRow.version == expected_version,
        ]
        if exclusive_for is not None:
            other = aliased(AppointmentRow)
            held = select(other.id).where(
                other.user_id == exclusive_for,
                other.status == SlotStatus.BOOKED.value,
                other.slot_datetime >= (now or utcnow()),
                other.id != slot_id,
            )
            conditions.append(~held.exists())
        stmt = (
            update(AppointmentRow)
            .where(*conditions)
            .values(**values, version=AppointmentRow.version + 1)
        )
        with self._sessions() as session, session.begin():
            if exclusive_for is not None and self._engine.dialect.name != "sqlite":
                # serialise one user's bookings; SQLite already serialises writers
                session.execute(
                    select(UserRow.identity)
                    .where(UserRow.identity == exclusive_for)
                    .with_for_update()
                )
            return session.execute(stmt).rowcount == 1

    # ── Block list ───────────────────────────────────────────────────

    async def add_block(self, entry: BlockEntry) -> None:
        await asyncio.to_thread(self._add_block, entry)

    def _add_block(self, entry: BlockEntry) -> None:
        with self._sessions() as session, session.begin():
            existing = session.scalars(
                select(BlockRow).where(
                    BlockRow.identity == entry.identity,
                    BlockRow.kind == entry.kind.value,
                )
            ).first()
            if existing is not None:
                logger.debug("Block for %s (%s) already present", entry.identity, entry.kind)
                return
            session.add(
                BlockRow(
                    identity=entry.identity,
                    kind=entry.kind.value,
                    reason=entry.reason,
                    created_at=entry.created_at,
                )
            )

    async def is_blocked(self, identity: str, kind: BlockKind) -> bool:
        return await asyncio.to_thread(self._is_blocked, identity, kind)

    def _is_blocked(self, identity: str, kind: BlockKind) -> bool:
        query = select(BlockRow.id).where(
            BlockRow.identity == identity, BlockRow.kind == kind.value,
        )
        with self._sessions() as session:
            return session.scalars(query).first() is not None
