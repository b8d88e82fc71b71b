"""Centralized configuration for the Lumo assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/lumo/<VARIABLE_NAME>``.

Nothing here is mandatory: without an LLM key the assistant answers in demo
mode, and without a database URL conversation state lives in memory.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (lazy: only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/lumo/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when it is not set."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        return _get_ssm_parameter(name)

    return None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── Assistant persona ───────────────────────────────────────────────
ASSISTANT_NAME: str = os.getenv("ASSISTANT_NAME", "Lumo")
OWNER_NAME: str = os.getenv("OWNER_NAME", "Ranvir")
DISPLAY_TIMEZONE: str = os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata")

# ── LLM ─────────────────────────────────────────────────────────────
# No key means demo mode (see services/llm_gateway.py).
LLM_API_KEY: str | None = _optional_secret("LLM_API_KEY")
LLM_API_URL: str | None = os.getenv("LLM_API_URL") or None
LLM_MODEL: str = os.getenv("LLM_MODEL", "claude-haiku-4-5")
LLM_TEMPERATURE: float = _env_float("LLM_TEMPERATURE", 0.7)
LLM_MAX_TOKENS: int = _env_int("LLM_MAX_TOKENS", 1000)
# Some models reject temperature and top_p together, so top_p is opt-in.
LLM_TOP_P: float | None = _env_float("LLM_TOP_P", None)
LLM_TIMEOUT_SECONDS: float = _env_float("LLM_TIMEOUT_SECONDS", 30.0)
STRUCTURED_OUTPUT: bool = _env_bool("STRUCTURED_OUTPUT", True)

# ── Storage ─────────────────────────────────────────────────────────
# Any SQLAlchemy URL, e.g. ``sqlite:///lumo.db``.  Unset → in-memory store.
DATABASE_URL: str | None = _optional_secret("DATABASE_URL")

# ── Outbound delivery ───────────────────────────────────────────────
DELIVERY_URL: str = os.getenv("DELIVERY_URL", "http://localhost:5000/send")
DELIVERY_AUTH_KEY: str | None = _optional_secret("DELIVERY_AUTH_KEY")
DELIVERY_TIMEOUT_SECONDS: float = _env_float("DELIVERY_TIMEOUT_SECONDS", 10.0)
ADMIN_IDENTITY: str | None = os.getenv("ADMIN_IDENTITY") or None
ADMIN_SECRET: str | None = _optional_secret("ADMIN_SECRET") or DELIVERY_AUTH_KEY

# ── Conversation limits ─────────────────────────────────────────────
MAX_MESSAGE_LENGTH: int = _env_int("MAX_MESSAGE_LENGTH", 1000)
MESSAGE_HISTORY_LIMIT: int = _env_int("MESSAGE_HISTORY_LIMIT", 50)
CONTEXT_MESSAGES_LIMIT: int = _env_int("CONTEXT_MESSAGES_LIMIT", 15)
FLAGGED_MESSAGES_LIMIT: int = _env_int("FLAGGED_MESSAGES_LIMIT", 10)

# ── Abuse protection ────────────────────────────────────────────────
RATE_LIMIT_WINDOW_SECONDS: float = _env_float("RATE_LIMIT_WINDOW_SECONDS", 15.0)
RATE_LIMIT_MAX: int = _env_int("RATE_LIMIT_MAX", 5)
SPAM_WINDOW_SECONDS: float = _env_float("SPAM_WINDOW_SECONDS", 60.0)
SPAM_MAX_MESSAGES: int = _env_int("SPAM_MAX_MESSAGES", 20)
INJECTION_WINDOW_SECONDS: float = _env_float("INJECTION_WINDOW_SECONDS", 3600.0)
INJECTION_BLOCK_THRESHOLD: int = _env_int("INJECTION_BLOCK_THRESHOLD", 3)

# ── Appointments ────────────────────────────────────────────────────
APPOINTMENTS_ENABLED: bool = _env_bool("APPOINTMENTS_ENABLED", True)
CANCELLATION_WINDOW_HOURS: float = _env_float("CANCELLATION_WINDOW_HOURS", 3.0)
SLOT_LOOKAHEAD: int = _env_int("SLOT_LOOKAHEAD", 5)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8000",
).split(",")
