"""Persistence backends behind the :class:`~lumo.storage.base.Store` interface."""

from __future__ import annotations

import logging

from lumo.storage.base import Store
from lumo.storage.memory import InMemoryStore

logger = logging.getLogger(__name__)

__all__ = ["InMemoryStore", "Store", "build_store"]


def build_store(url: str | None) -> Store:
    """Return a :class:`SqlStore` for *url*, or an in-memory store when unset."""
    if not url:
        logger.info("No DATABASE_URL configured; using in-memory store")
        return InMemoryStore()

    from lumo.storage.sql import SqlStore  # noqa: PLC0415

    return SqlStore(url)
