"""Outbound message delivery through the messaging gateway's ``/send`` endpoint.

The gateway expects ``POST {jid, message, image_url}`` authenticated with an
``Auth-Key`` header.  Timeouts, connection failures and 5xx responses are
retried with exponential backoff; anything else is final.  Delivery problems
never raise: callers get ``False`` and the details go to the log.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from lumo.config import (
    ADMIN_IDENTITY,
    DELIVERY_AUTH_KEY,
    DELIVERY_TIMEOUT_SECONDS,
    DELIVERY_URL,
)
from lumo.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0

ADMIN_PREFIX = "🔔 *Notification*\n\n"


class DeliveryError(Exception):
    """Raised internally when the gateway rejects a message."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DeliveryClient:
    """Async client for the messaging gateway, with automatic retries."""

    def __init__(
        self,
        url: str | None = None,
        auth_key: str | None = None,
        *,
        admin_identity: str | None = ADMIN_IDENTITY,
        client: httpx.AsyncClient | None = None,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    ):
        self._url = url or DELIVERY_URL
        self._auth_key = auth_key or DELIVERY_AUTH_KEY
        self.admin_identity = admin_identity
        self._initial_backoff = initial_backoff
        self._client = client or httpx.AsyncClient(timeout=DELIVERY_TIMEOUT_SECONDS)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_key:
            headers["Auth-Key"] = self._auth_key
        return headers

    async def _post(self, payload: dict) -> None:
        """POST *payload* with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.post(
                    self._url, json=payload, headers=self._headers(),
                )
                if response.status_code >= 500:
                    raise DeliveryError(
                        f"Server error {response.status_code}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise DeliveryError(
                        f"Client error {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                return

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Delivery attempt %d/%d failed (%s)",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except DeliveryError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Delivery gateway error on attempt %d/%d", attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                await asyncio.sleep(self._initial_backoff * (2 ** (attempt - 1)))

        raise DeliveryError(f"Delivery failed after {MAX_RETRIES} attempts: {last_error}")

    async def send(self, identity: str, text: str, image_url: str | None = None) -> bool:
        """Deliver *text* to *identity*.  Returns whether the gateway accepted it."""
        payload = {"jid": identity, "message": text, "image_url": image_url}
        logger.info("Sending to %s: %.80s", identity, text)
        start = time.perf_counter()
        try:
            await self._post(payload)
        except Exception as exc:
            latency = (time.perf_counter() - start) * 1000
            metrics.record_failure("delivery", "send", type(exc).__name__, latency)
            logger.error("Could not deliver message to %s: %s", identity, exc)
            return False

        latency = (time.perf_counter() - start) * 1000
        metrics.record_success("delivery", "send", latency)
        return True

    async def notify_admin(self, text: str) -> bool:
        """Forward an operator notification to the admin identity, if configured."""
        if not self.admin_identity:
            logger.info("Admin notification (no admin identity configured): %.200s", text)
            return False
        return await self.send(self.admin_identity, ADMIN_PREFIX + text)

    async def aclose(self) -> None:
        await self._client.aclose()
