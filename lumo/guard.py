"""Post-generation leak scan for outbound replies."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import NamedTuple

logger = logging.getLogger(__name__)

# Internal vocabulary that must never reach a user.
LEAK_KEYWORDS: tuple[str, ...] = (
    "FRAGMENTS",
    "assemble_prompt",
    "config",
    "sqlalchemy",
    "langchain",
    "langgraph",
    "anthropic",
    "claude",
    "fastapi",
    "uvicorn",
    "pydantic",
    "api",
    "database",
    "schema",
    "system prompt",
    "instructions",
    "programming",
    "code",
)

SAFE_REPLY = "I'd be happy to help you! 😊 What would you like to know?"


class GuardResult(NamedTuple):
    text: str
    leaked: bool
    matched: tuple[str, ...] = ()


class ResponseGuard:
    """Replace any reply containing a denylisted token with a safe redirect.

    Matching is a case-insensitive substring test.  Because the safe reply is
    checked against the denylist up front, scanning a guarded reply again
    never matches.
    """

    def __init__(
        self,
        keywords: Iterable[str] = LEAK_KEYWORDS,
        safe_reply: str = SAFE_REPLY,
    ) -> None:
        self._keywords = tuple(k.lower() for k in keywords if k)
        if self._find(safe_reply):
            raise ValueError("safe_reply contains a denylisted keyword")
        self.safe_reply = safe_reply

    def _find(self, text: str) -> tuple[str, ...]:
        lowered = text.lower()
        return tuple(k for k in self._keywords if k in lowered)

    def scan(self, text: str) -> GuardResult:
        matched = self._find(text or "")
        if not matched:
            return GuardResult(text, False)
        logger.warning("Leak guard suppressed a reply (matched: %s)", ", ".join(matched))
        return GuardResult(self.safe_reply, True, matched)
