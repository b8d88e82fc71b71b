"""Keyword/regex context classification for inbound messages.

``classify`` is a pure function over the message and the recent history: the
same input always produces the same tags.  The rules are data (ordered
tuples of compiled patterns) so they can be table-tested and extended
without touching the control flow.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import NamedTuple

from lumo.config import OWNER_NAME

SECURITY_ALERT = "security_alert"
GREETING = "greeting"
GENERAL = "general"

# ── Injection heuristics (checked against the message alone) ─────────
INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ignore\s+(previous|above|all|prior)\s+(\w+\s+)?(instructions?|prompts?|rules?|commands?)",
        r"(show|reveal|display|print|output|give|tell)\s+(me\s+)?(your\s+)?(system\s+)?"
        r"(prompt|instruction|code|configuration|rules?)",
        r"what\s+(are|is)\s+(your\s+)?(system\s+)?(instructions?|prompts?|rules?|programming)",
        r"repeat\s+(everything|all|what|text)\s+(above|before|prior)",
        r"you\s+are\s+now\s+(a|an)?",
        r"forget\s+(previous|all|everything)",
        r"(output|show|print)\s+your\s+(training|system|configuration)",
        r"how\s+(were|are)\s+you\s+(programmed|made|built|created|coded)",
        r"<\|.*?\|>",
        r"\{system\}",
        r"sudo\s+mode",
        r"developer\s+mode",
        r"admin\s+mode",
        r"act\s+as\s+(if|a|an)\b",
        r"role.*?play",
        r"pretend\s+you\s+are",
    )
)

GREETINGS = frozenset({
    "hi", "hii", "hello", "hey", "hey there", "hi there", "hello there",
    "yo", "hola", "namaste", "good morning", "good afternoon", "good evening",
})

# ── Topic rules (checked against message + history) ──────────────────
def build_topic_rules(owner_name: str) -> tuple[tuple[str, re.Pattern[str]], ...]:
    """Topic patterns; *owner_name* is accepted wherever "him" is."""
    owner = re.escape(owner_name.strip().lower()) or "him"
    return (
        ("appointment", re.compile(
            r"\b(appointments?|book(ing)?|schedul\w*|meetings?|slots?|cancel\w*|"
            r"reschedul\w*|meet|call)\b"
        )),
        ("project", re.compile(
            r"\b(boardbro|board bro|projects?|education|student portal)\b"
            r"|what.*working on|current.*project"
        )),
        ("skills", re.compile(
            r"\b(ai|artificial intelligence|chatbots?|bots?|automation|llms?|"
            r"technology|tech|stack|skills?|development)\b|how.*built?"
        )),
        ("experience", re.compile(
            r"\b(experience|intern(ship)?|worked|work history|freelanc\w*|"
            r"achievements?|portfolio|resume|cv)\b"
        )),
        ("personal", re.compile(
            r"\b(study|studies|student|college|school|learning|personal|hobbies)\b"
            rf"|where.*from|about (him|{owner})|who.*({owner}|is he)"
        )),
        ("contact", re.compile(
            r"\b(contact|reach|connect|email|phone|whatsapp)\b"
            rf"|talk to (him|{owner})|get in touch"
        )),
    )


TOPIC_RULES = build_topic_rules(OWNER_NAME)

_TRAILING_PUNCTUATION = "!.?,~ "


class Classification(NamedTuple):
    tags: tuple[str, ...]
    is_injection: bool = False


def is_injection(message: str) -> bool:
    return any(pattern.search(message) for pattern in INJECTION_PATTERNS)


def is_greeting(message: str) -> bool:
    return message.strip().lower().rstrip(_TRAILING_PUNCTUATION) in GREETINGS


def classify(message: str, history: Iterable = ()) -> Classification:
    """Tag *message* for prompt assembly.

    *history* may hold plain strings or objects with a ``content`` attribute.
    An injection match short-circuits everything else.
    """
    message = message or ""
    if is_injection(message):
        return Classification((SECURITY_ALERT,), True)

    if is_greeting(message):
        return Classification((GREETING,))

    history_text = " ".join(getattr(item, "content", item) for item in history)
    combined = f"{message} {history_text}".lower().strip()
    if not combined:
        return Classification((GENERAL,))

    tags = tuple(tag for tag, pattern in TOPIC_RULES if pattern.search(combined))
    return Classification(tags or (GENERAL,))
