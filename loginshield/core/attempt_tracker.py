"""Brute-force protection: failed-attempt counting and lockout per identity.

Lockout expiry is lazy. There is no sweeper: the first ``is_locked`` read
after ``locked_until`` has passed resets the record, so "locked" is only
authoritative as of the last read.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional, Set

from loginshield.core.config import PolicyConfig
from loginshield.core.identity import short_hash
from loginshield.core.notifier import Notifier, NullNotifier, lockout_message
from loginshield.core.store import AttemptRecord, RecordStore, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptSnapshot:
    """What a login form needs to know about the caller."""

    remaining: int
    max: int
    locked: bool
    lock_minutes: int


@dataclass(frozen=True)
class AttemptsOverview:
    total: int
    locked: int
    safe_percent: int


class AttemptTracker:
    """Lockout state machine over a ``RecordStore``.

    Every method takes the identity hash resolved once per request.
    """

    def __init__(
        self,
        store: RecordStore,
        policy: PolicyConfig,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        site_name: str = "Login Shield",
        notify_timeout: float = 10.0,
    ):
        self.store = store
        self.policy = policy
        self.notifier = notifier or NullNotifier()
        self.clock = clock
        self.site_name = site_name
        self.notify_timeout = notify_timeout
        self._pending: Set[asyncio.Task] = set()

    async def is_locked(self, identity_hash: str) -> bool:
        """Check if the identity is currently locked out, resetting an expired lock."""
        rec = await self.store.get(identity_hash)
        if rec is None or rec.locked_until is None:
            return False
        now = self.clock()
        if rec.is_locked_at(now):
            return True
        # Lockout expired. A concurrent caller may already have cleared it
        if await self.store.reset_expired(identity_hash, now):
            logger.info("Lockout expired for %s, counter reset", short_hash(identity_hash))
        return False

    async def remaining_lockout_minutes(self, identity_hash: str) -> int:
        """Whole minutes (rounded up) until the lock lifts; 0 if not locked."""
        rec = await self.store.get(identity_hash)
        if rec is None or rec.locked_until is None:
            return 0
        remaining = (rec.locked_until - self.clock()).total_seconds()
        return max(0, math.ceil(remaining / 60))

    async def remaining_attempts(self, identity_hash: str) -> int:
        """Failures left before lockout."""
        rec = await self.store.get(identity_hash)
        if rec is None:
            return self.policy.max_attempts
        return max(0, self.policy.max_attempts - rec.attempts)

    async def record_failure(self, identity_hash: str) -> AttemptRecord:
        """Count one failed login. Enters lockout when the threshold is reached."""
        now = self.clock()
        rec = await self.store.upsert_increment(identity_hash, now)

        if rec.attempts >= self.policy.max_attempts:
            locked_until = now + self.policy.lockout_duration
            # Only the caller that flips the lock notifies; concurrent racers see it already set.
            if await self.store.set_lock(identity_hash, locked_until, now):
                logger.warning(
                    "Identity %s locked out for %d min after %d failed login attempts",
                    short_hash(identity_hash), self.policy.lockout_minutes, rec.attempts,
                )
                self._schedule_notification(rec.attempts)
                rec = replace(rec, locked_until=locked_until)
        else:
            logger.debug(
                "Failed login %d/%d for %s",
                rec.attempts, self.policy.max_attempts, short_hash(identity_hash),
            )
        return rec

    async def record_success(self, identity_hash: str) -> None:
        """Reset failure counter on successful login."""
        await self.store.reset(identity_hash)

    async def list_records(self) -> List[AttemptRecord]:
        return await self.store.list_all()

    async def delete_record(self, record_id: int) -> bool:
        """Remove a record by id, which also lifts its lockout."""
        deleted = await self.store.delete(record_id)
        if deleted:
            logger.info("Attempt record %d deleted by admin", record_id)
        return deleted

    def overview(self, records: List[AttemptRecord]) -> AttemptsOverview:
        now = self.clock()
        total = len(records)
        locked = sum(1 for rec in records if rec.is_locked_at(now))
        if total == 0:
            safe = 100
        else:
            # Round half up
            safe = math.floor((total - locked) / total * 100 + 0.5)
        return AttemptsOverview(total=total, locked=locked, safe_percent=safe)

    async def snapshot(self, identity_hash: str) -> AttemptSnapshot:
        locked = await self.is_locked(identity_hash)
        return AttemptSnapshot(
            remaining=await self.remaining_attempts(identity_hash),
            max=self.policy.max_attempts,
            locked=locked,
            lock_minutes=await self.remaining_lockout_minutes(identity_hash) if locked else 0,
        )

    # ── Notifications ──────────────────────────────────────────

    def _schedule_notification(self, attempts: int) -> None:
        address = self.policy.notify_address
        if not address:
            return
        subject, body = lockout_message(self.site_name, attempts, self.policy.lockout_minutes)
        task = asyncio.create_task(self._notify_safely(address, subject, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _notify_safely(self, address: str, subject: str, body: str) -> None:
        try:
            await asyncio.wait_for(
                self.notifier.notify(address, subject, body),
                timeout=self.notify_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Lockout notification timed out after %.0fs", self.notify_timeout)
        except Exception as e:
            logger.warning("Failed to send lockout notification: %s", e)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notifications (shutdown, tests)."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
