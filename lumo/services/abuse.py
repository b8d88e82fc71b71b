"""Thread-safe fixed-window counters for rate limiting and abuse tracking.

One counter instance backs each policy:

* web chat rate limit, keyed by client IP (5 requests / 15 s)
* per-user spam burst detection (20 messages / 60 s)
* per-user prompt-injection attempts (threshold within one hour)

Design
──────
• A window opens on the first event for a key and lasts ``window_seconds``;
  the next event after it expires starts a fresh window.
• **OrderedDict** keeps keys in least-recently-touched order so the table
  can be bounded (``max_keys``) by evicting the stalest key.
• **threading.Lock** makes check-and-increment a single atomic step, so
  two concurrent requests can never both observe "under the limit".
• Purely ephemeral; counts reset on process restart.

>>> limiter = WindowCounter(max_events=5, window_seconds=15)
>>> limiter.check_and_increment("203.0.113.7")
True
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_KEYS = 10_000


class WindowCounter:
    """Count events per key in fixed windows anchored at the first event."""

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_events < 0:
            raise ValueError("max_events must be >= 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._max_events = max_events
        self._window = window_seconds
        self._max_keys = max_keys
        self._clock = clock
        # key → (window_start, count)
        self._windows: OrderedDict[str, tuple[float, int]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_events(self) -> int:
        return self._max_events

    def check_and_increment(self, key: str) -> bool:
        """Record one event for *key*.

        Returns ``True`` while the key is within its allowance and ``False``
        once the event exceeds ``max_events`` for the current window.  Denied
        events are still counted.
        """
        now = self._clock()
        with self._lock:
            start, count = self._live_window(key, now)
            count += 1
            self._windows[key] = (start, count)
            self._windows.move_to_end(key)

            while len(self._windows) > self._max_keys:
                evicted, _ = self._windows.popitem(last=False)
                logger.debug("Window counter: evicted %s", evicted)

        allowed = count <= self._max_events
        if not allowed:
            logger.debug("Window counter: %s over limit (%d > %d)", key, count, self._max_events)
        return allowed

    def count(self, key: str) -> int:
        """Events recorded for *key* in its current window."""
        with self._lock:
            return self._live_window(key, self._clock())[1]

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _live_window(self, key: str, now: float) -> tuple[float, int]:
        entry = self._windows.get(key)
        if entry is None or now - entry[0] >= self._window:
            return now, 0
        return entry
