"""Shared test fixtures for the Lumo test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so ``lumo.config`` reads a deterministic
    environment: demo-mode LLM, in-memory store, metrics off.
    """
    os.environ["LLM_API_KEY"] = ""
    os.environ["DATABASE_URL"] = ""
    os.environ["METRICS_ENABLED"] = "false"
    os.environ["ADMIN_IDENTITY"] = "admin@s.whatsapp.net"
    os.environ["ADMIN_SECRET"] = "test-admin-secret"
    os.environ.setdefault("DELIVERY_URL", "http://gateway.test/send")
    os.environ.setdefault("DELIVERY_AUTH_KEY", "test-delivery-key")


class FakeDelivery:
    """Records outbound messages instead of sending them."""

    def __init__(self, admin_identity: str | None = "admin@s.whatsapp.net"):
        self.admin_identity = admin_identity
        self.sent: list[tuple[str, str, str | None]] = []
        self.admin_messages: list[str] = []
        self.closed = False

    async def send(self, identity: str, text: str, image_url: str | None = None) -> bool:
        self.sent.append((identity, text, image_url))
        return True

    async def notify_admin(self, text: str) -> bool:
        self.admin_messages.append(text)
        return True

    async def aclose(self) -> None:
        self.closed = True

    def texts_to(self, identity: str) -> list[str]:
        return [text for to, text, _ in self.sent if to == identity]


@pytest.fixture
def fake_delivery():
    return FakeDelivery()


@pytest.fixture
def store():
    from lumo.storage.memory import InMemoryStore

    return InMemoryStore()


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def future_slot_time(fixed_now):
    return fixed_now + timedelta(days=2)


@pytest.fixture
def mock_llm():
    """Factory fixture: a chat model whose ``ainvoke`` returns *content*."""
    from langchain_core.messages import AIMessage

    def _make(content: str = "Hello from the model!"):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content=content))
        return llm

    return _make
