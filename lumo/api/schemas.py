"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lumo.config import MAX_MESSAGE_LENGTH
from lumo.models import as_utc

# RFC 5322-ish pattern: covers the vast majority of real-world emails
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str | None) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "Email is required"
    if not _EMAIL_RE.match(email.strip()):
        return "Invalid email format"
    return None


# ── Web chat ─────────────────────────────────────────────────────────


class ChatRequest(BaseModel):
    """Incoming chat message from the web frontend."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", max_length=255, description="Stable visitor id")
    name: str = Field(..., max_length=255, description="Visitor display name")
    email: str = Field(..., max_length=255, description="Visitor email")
    message: str = Field(..., description="The visitor's message")

    @field_validator("user_id", "name", "email", "message")
    @classmethod
    def _required_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        error = validate_email(value)
        if error:
            raise ValueError(error)
        return value

    @field_validator("message")
    @classmethod
    def _bounded_message(cls, value: str) -> str:
        if len(value) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
        return value


class ChatResponse(BaseModel):
    """Reply returned to the web frontend."""

    message: str = Field(..., description="The assistant's reply")


# ── Messaging webhook ────────────────────────────────────────────────


class WebhookPayload(BaseModel):
    """Inbound message pushed by the messaging gateway."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(..., alias="from", min_length=1, description="Sender identity (jid)")
    text: str | None = None
    media_mimetype: str | None = None
    display_name: str | None = None
    plain_phone: str | None = None
    message_id: str | None = None

    @property
    def has_content(self) -> bool:
        return bool((self.text and self.text.strip()) or self.media_mimetype)


class WebhookResponse(BaseModel):
    success: bool = True
    message: str = "Message received"


# ── Admin ────────────────────────────────────────────────────────────


class SlotCreateRequest(BaseModel):
    slot_datetime: datetime = Field(..., description="Slot start; naive values are taken as UTC")

    @field_validator("slot_datetime")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SlotOut(BaseModel):
    id: int
    slot_datetime: datetime
    status: str
    version: int


class BlockRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: str = Field(..., alias="jid", min_length=1)
    reason: str = "Blocked by admin"


class BlockResponse(BaseModel):
    success: bool = True
    identity: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "lumo-assistant"
