"""Tests for loginshield.core.attempt_tracker: failure counting and lockout."""
import asyncio
from datetime import timedelta

import pytest

from loginshield.core.attempt_tracker import AttemptTracker
from loginshield.core.store import InMemoryRecordStore
from loginshield.tests.conftest import FailingNotifier, FakeClock, RecordingNotifier, make_policy

KEY = "a" * 64
OTHER = "b" * 64


class TestLockout:
    """Threshold, boundary and remaining-time behaviour."""

    def setup_method(self):
        self.store = InMemoryRecordStore()
        self.clock = FakeClock()
        self.notifier = RecordingNotifier()
        self.tracker = AttemptTracker(
            self.store, make_policy(), notifier=self.notifier, clock=self.clock,
        )

    @pytest.mark.asyncio
    async def test_three_failures_lock_with_max_three(self):
        tracker = AttemptTracker(self.store, make_policy(max_attempts=3), clock=self.clock)
        for _ in range(3):
            await tracker.record_failure(KEY)
        assert await tracker.is_locked(KEY)
        assert await tracker.remaining_lockout_minutes(KEY) > 0

    @pytest.mark.asyncio
    async def test_one_below_threshold_not_locked(self):
        for _ in range(4):
            await self.tracker.record_failure(KEY)
        assert not await self.tracker.is_locked(KEY)
        assert await self.tracker.remaining_attempts(KEY) == 1

    @pytest.mark.asyncio
    async def test_exactly_max_attempts_locks(self):
        for _ in range(5):
            rec = await self.tracker.record_failure(KEY)
        assert rec.locked_until == self.clock.now + timedelta(minutes=10)
        assert await self.tracker.is_locked(KEY)

    @pytest.mark.asyncio
    async def test_remaining_minutes_rounds_up(self):
        for _ in range(5):
            await self.tracker.record_failure(KEY)
        self.clock.advance(minutes=3, seconds=30)
        assert await self.tracker.remaining_lockout_minutes(KEY) == 7

    @pytest.mark.asyncio
    async def test_remaining_minutes_zero_when_not_locked(self):
        assert await self.tracker.remaining_lockout_minutes(KEY) == 0
        await self.tracker.record_failure(KEY)
        assert await self.tracker.remaining_lockout_minutes(KEY) == 0

    @pytest.mark.asyncio
    async def test_remaining_attempts_non_increasing(self):
        previous = await self.tracker.remaining_attempts(KEY)
        for _ in range(7):
            await self.tracker.record_failure(KEY)
            current = await self.tracker.remaining_attempts(KEY)
            assert current <= previous
            previous = current
        assert previous == 0

    @pytest.mark.asyncio
    async def test_failures_while_locked_keep_counting(self):
        for _ in range(6):
            rec = await self.tracker.record_failure(KEY)
        assert rec.attempts == 6
        assert await self.tracker.is_locked(KEY)

    @pytest.mark.asyncio
    async def test_identities_independent(self):
        for _ in range(5):
            await self.tracker.record_failure(KEY)
        assert await self.tracker.is_locked(KEY)
        assert not await self.tracker.is_locked(OTHER)
        assert await self.tracker.remaining_attempts(OTHER) == 5


class _StaleReadStore(InMemoryRecordStore):
    """Parks one ``get`` after it has read, so another caller can run in between."""

    def __init__(self):
        super().__init__()
        self.hold_next_read = None

    async def get(self, identity_hash):
        rec = await super().get(identity_hash)
        if self.hold_next_read is not None:
            release, self.hold_next_read = self.hold_next_read, None
            await release.wait()
        return rec


class TestResetAndExpiry:
    """Success reset and lazy lock expiry."""

    def setup_method(self):
        self.store = InMemoryRecordStore()
        self.clock = FakeClock()
        self.tracker = AttemptTracker(self.store, make_policy(), clock=self.clock)

    @pytest.mark.asyncio
    async def test_unseen_identity(self):
        assert not await self.tracker.is_locked(KEY)
        assert await self.tracker.remaining_attempts(KEY) == 5

    @pytest.mark.asyncio
    async def test_success_restores_full_budget(self):
        for _ in range(3):
            await self.tracker.record_failure(KEY)
        await self.tracker.record_success(KEY)
        assert await self.tracker.remaining_attempts(KEY) == 5

    @pytest.mark.asyncio
    async def test_success_without_record_creates_nothing(self):
        await self.tracker.record_success(KEY)
        assert await self.store.get(KEY) is None
        assert await self.store.list_all() == []

    @pytest.mark.asyncio
    async def test_lock_expires_lazily(self):
        for _ in range(5):
            await self.tracker.record_failure(KEY)
        self.clock.advance(minutes=10, seconds=1)

        # Still stored as locked until someone reads it
        rec = await self.store.get(KEY)
        assert rec.locked_until is not None

        assert not await self.tracker.is_locked(KEY)
        assert await self.tracker.remaining_attempts(KEY) == 5
        rec = await self.store.get(KEY)
        assert rec.attempts == 0
        assert rec.locked_until is None

    @pytest.mark.asyncio
    async def test_lock_holds_until_deadline(self):
        for _ in range(5):
            await self.tracker.record_failure(KEY)
        self.clock.advance(minutes=9, seconds=59)
        assert await self.tracker.is_locked(KEY)

    @pytest.mark.asyncio
    async def test_stale_expiry_read_keeps_newer_failure(self):
        """A reader that saw the old lock must not wipe a failure counted after it."""
        store = _StaleReadStore()
        tracker = AttemptTracker(store, make_policy(), clock=self.clock)
        for _ in range(5):
            await tracker.record_failure(KEY)
        self.clock.advance(minutes=11)

        release = asyncio.Event()
        store.hold_next_read = release
        slow_reader = asyncio.create_task(tracker.is_locked(KEY))
        await asyncio.sleep(0)

        assert not await tracker.is_locked(KEY)
        await tracker.record_failure(KEY)

        release.set()
        assert not await slow_reader
        rec = await store.get(KEY)
        assert rec.attempts == 1
        assert rec.locked_until is None

    @pytest.mark.asyncio
    async def test_count_restarts_after_reset(self):
        await self.tracker.record_failure(KEY)
        await self.tracker.record_success(KEY)
        self.clock.advance(minutes=1)
        rec = await self.tracker.record_failure(KEY)
        assert rec.attempts == 1
        assert rec.first_attempt_at == self.clock.now


class TestNotifications:
    """Lockout notification is detached, single and never fatal."""

    def setup_method(self):
        self.store = InMemoryRecordStore()
        self.clock = FakeClock()
        self.notifier = RecordingNotifier()

    def _tracker(self, notifier=None, **policy):
        return AttemptTracker(
            self.store,
            make_policy(**policy),
            notifier=notifier or self.notifier,
            clock=self.clock,
            site_name="Example",
        )

    @pytest.mark.asyncio
    async def test_notifies_once_on_lock(self):
        tracker = self._tracker()
        for _ in range(7):
            await tracker.record_failure(KEY)
        await tracker.drain()

        assert len(self.notifier.sent) == 1
        address, subject, body = self.notifier.sent[0]
        assert address == "admin@example.com"
        assert subject == "[Example] Login Shield: IP Locked Out"
        assert "5 failed login attempts" in body
        assert "10 minutes" in body

    @pytest.mark.asyncio
    async def test_body_never_contains_identity(self):
        tracker = self._tracker()
        for _ in range(5):
            await tracker.record_failure(KEY)
        await tracker.drain()
        _, subject, body = self.notifier.sent[0]
        assert KEY[:12] not in subject + body

    @pytest.mark.asyncio
    async def test_no_address_no_notification(self):
        tracker = self._tracker(notify_address=None)
        for _ in range(5):
            await tracker.record_failure(KEY)
        await tracker.drain()
        assert self.notifier.sent == []
        assert await tracker.is_locked(KEY)

    @pytest.mark.asyncio
    async def test_relock_after_expiry_notifies_again(self):
        tracker = self._tracker()
        for _ in range(5):
            await tracker.record_failure(KEY)
        self.clock.advance(minutes=11)
        assert not await tracker.is_locked(KEY)
        for _ in range(5):
            await tracker.record_failure(KEY)
        await tracker.drain()
        assert len(self.notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_concurrent_failures_notify_once(self):
        tracker = self._tracker(max_attempts=3)
        await asyncio.gather(*(tracker.record_failure(KEY) for _ in range(10)))
        await tracker.drain()

        rec = await self.store.get(KEY)
        assert rec.attempts == 10
        assert await tracker.is_locked(KEY)
        assert len(self.notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_notify_failure_is_swallowed(self):
        failing = FailingNotifier()
        tracker = self._tracker(notifier=failing)
        for _ in range(5):
            await tracker.record_failure(KEY)
        await tracker.drain()
        assert failing.calls == 1
        assert await tracker.is_locked(KEY)

    @pytest.mark.asyncio
    async def test_slow_notifier_times_out(self):
        class HangingNotifier:
            async def notify(self, address, subject, body):
                await asyncio.sleep(60)

        tracker = AttemptTracker(
            self.store, make_policy(), notifier=HangingNotifier(),
            clock=self.clock, notify_timeout=0.05,
        )
        for _ in range(5):
            await tracker.record_failure(KEY)
        await asyncio.wait_for(tracker.drain(), timeout=2)
        assert await tracker.is_locked(KEY)


class TestSnapshotAndOverview:

    def setup_method(self):
        self.store = InMemoryRecordStore()
        self.clock = FakeClock()
        self.tracker = AttemptTracker(self.store, make_policy(), clock=self.clock)

    @pytest.mark.asyncio
    async def test_snapshot_unlocked(self):
        await self.tracker.record_failure(KEY)
        snap = await self.tracker.snapshot(KEY)
        assert snap.remaining == 4
        assert snap.max == 5
        assert not snap.locked
        assert snap.lock_minutes == 0

    @pytest.mark.asyncio
    async def test_snapshot_locked(self):
        for _ in range(5):
            await self.tracker.record_failure(KEY)
        snap = await self.tracker.snapshot(KEY)
        assert snap.locked
        assert snap.lock_minutes == 10
        assert snap.remaining == 0

    @pytest.mark.asyncio
    async def test_overview_counts(self):
        for _ in range(5):
            await self.tracker.record_failure(KEY)
        await self.tracker.record_failure(OTHER)
        await self.tracker.record_failure("c" * 64)
        overview = self.tracker.overview(await self.tracker.list_records())
        assert overview.total == 3
        assert overview.locked == 1
        assert overview.safe_percent == 67

    def test_overview_empty_is_fully_safe(self):
        overview = self.tracker.overview([])
        assert overview.total == 0
        assert overview.safe_percent == 100

    @pytest.mark.asyncio
    async def test_delete_record_unlocks(self):
        for _ in range(5):
            rec = await self.tracker.record_failure(KEY)
        assert await self.tracker.delete_record(rec.id)
        assert not await self.tracker.is_locked(KEY)
        assert not await self.tracker.delete_record(rec.id)
