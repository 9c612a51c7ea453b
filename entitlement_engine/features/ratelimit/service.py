"""
Sliding-window throttle for license key validation.

At most max_attempts failed validations are allowed inside a window that
starts at the first failure. Once the window has elapsed the record is
dropped and counting starts over.

The counter lives in the shared store, so every change is a single
KeyValueStore.update call. guarded_attempt() goes one step further and runs
the check, the validation and the increment inside the same atomic update,
so parallel callers (in this process or another) can never squeeze more than
max_attempts validations into one window.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple

from entitlement_engine.core.config import settings
from entitlement_engine.core.locks import KeyLocks
from entitlement_engine.core.store import DELETE, KEEP, KeyValueStore
from entitlement_engine.models.billing import RateLimitRecord
from entitlement_engine.models.results import RateLimitStatus


logger = logging.getLogger("entitlements")

RATE_LIMIT_KEY = "billing_rate_limit"


def epoch_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_attempts: Optional[int] = None,
        window_ms: Optional[int] = None,
        clock: Callable[[], int] = epoch_ms,
        key: str = RATE_LIMIT_KEY,
        locks: Optional[KeyLocks] = None,
    ):
        self.store = store
        self.max_attempts = max_attempts if max_attempts is not None else settings.RATE_LIMIT_MAX_ATTEMPTS
        self.window_ms = window_ms if window_ms is not None else settings.RATE_LIMIT_WINDOW_SECONDS * 1000
        self.clock = clock
        self.key = key
        self.locks = locks or KeyLocks()

    def _live_record(self, raw, now: int) -> Optional[RateLimitRecord]:
        if not raw:
            return None
        record = RateLimitRecord.from_store(raw)
        if now - record.first_attempt_time >= self.window_ms:
            return None
        return record

    def _status(self, record: Optional[RateLimitRecord], now: int) -> RateLimitStatus:
        if record is None or record.attempts < self.max_attempts:
            return RateLimitStatus(blocked=False)
        remaining = self.window_ms - (now - record.first_attempt_time)
        return RateLimitStatus(blocked=True, remaining_ms=max(0, remaining))

    async def check_rate_limit(self) -> RateLimitStatus:
        now = self.clock()
        seen = {}

        def mutate(raw):
            record = self._live_record(raw, now)
            seen["record"] = record
            if raw and record is None:
                return DELETE
            return KEEP

        async with self.locks.hold(self.key):
            await self.store.update(self.key, mutate)
        return self._status(seen.get("record"), now)

    async def record_failed_attempt(self) -> RateLimitRecord:
        now = self.clock()

        def mutate(raw):
            record = self._live_record(raw, now)
            if record is None:
                return RateLimitRecord(attempts=1, first_attempt_time=now).to_store()
            return RateLimitRecord(attempts=record.attempts + 1, first_attempt_time=record.first_attempt_time).to_store()

        async with self.locks.hold(self.key):
            stored = await self.store.update(self.key, mutate)
        record = RateLimitRecord.from_store(stored)
        if record.attempts >= self.max_attempts:
            logger.warning(
                "[ratelimit] license validation locked",
                extra={"event_type": "ratelimit.locked", "attempts": record.attempts},
            )
        return record

    async def clear_rate_limit(self) -> None:
        async with self.locks.hold(self.key):
            await self.store.remove([self.key])

    async def guarded_attempt(self, attempt: Callable[[], bool]) -> Tuple[RateLimitStatus, bool]:
        """
        Run attempt() unless blocked, counting a failure or clearing on success.

        attempt must be pure and synchronous; it may run more than once if the
        store retries under contention. Returns (status before the attempt,
        attempt result); the result is False when blocked.
        """
        now = self.clock()
        outcome = {}

        def mutate(raw):
            record = self._live_record(raw, now)
            status = self._status(record, now)
            outcome["status"] = status
            if status.blocked:
                outcome["ok"] = False
                return KEEP
            ok = bool(attempt())
            outcome["ok"] = ok
            if ok:
                return DELETE if raw else KEEP
            if record is None:
                return RateLimitRecord(attempts=1, first_attempt_time=now).to_store()
            return RateLimitRecord(attempts=record.attempts + 1, first_attempt_time=record.first_attempt_time).to_store()

        async with self.locks.hold(self.key):
            await self.store.update(self.key, mutate)
        return outcome["status"], outcome["ok"]
