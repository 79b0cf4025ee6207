"""Attempt record storage.

Two implementations of the same async interface:

- ``InMemoryRecordStore``: single-process, for development and tests.
- ``PostgresRecordStore``: asyncpg pool, safe for many workers behind a load
  balancer. Increments and lock transitions are single SQL statements, so
  concurrent failures for one identity serialize on the row lock.
"""
import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import asyncpg
from asyncpg import Pool

from loginshield.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttemptRecord:
    """Failure counter for one hashed identity."""

    identity_hash: str
    attempts: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    locked_until: Optional[datetime] = None
    id: Optional[int] = None

    def is_locked_at(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @classmethod
    def from_row(cls, row) -> "AttemptRecord":
        return cls(
            id=row["id"],
            identity_hash=row["identity_hash"],
            attempts=row["attempts"],
            first_attempt_at=row["first_attempt_at"],
            last_attempt_at=row["last_attempt_at"],
            locked_until=row["locked_until"],
        )


class RecordStore(Protocol):
    """Operations the tracker needs from durable storage."""

    async def get(self, identity_hash: str) -> Optional[AttemptRecord]: ...

    async def upsert_increment(self, identity_hash: str, now: datetime) -> AttemptRecord: ...

    async def reset(self, identity_hash: str) -> None: ...

    async def reset_expired(self, identity_hash: str, now: datetime) -> bool: ...

    async def set_lock(self, identity_hash: str, locked_until: datetime, now: datetime) -> bool: ...

    async def list_all(self) -> List[AttemptRecord]: ...

    async def delete(self, record_id: int) -> bool: ...


class InMemoryRecordStore:
    """Process-local record store.

    Each operation completes inside one short critical section with no awaits,
    so it is atomic for coroutines and threads alike.
    """

    def __init__(self):
        self._records: Dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    async def get(self, identity_hash: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._records.get(identity_hash)

    async def upsert_increment(self, identity_hash: str, now: datetime) -> AttemptRecord:
        with self._lock:
            rec = self._records.get(identity_hash)
            if rec is None:
                rec = AttemptRecord(
                    id=next(self._ids),
                    identity_hash=identity_hash,
                    attempts=1,
                    first_attempt_at=now,
                    last_attempt_at=now,
                )
            else:
                rec = replace(
                    rec,
                    attempts=rec.attempts + 1,
                    first_attempt_at=now if rec.attempts == 0 else rec.first_attempt_at,
                    last_attempt_at=now,
                )
            self._records[identity_hash] = rec
            return rec

    async def reset(self, identity_hash: str) -> None:
        with self._lock:
            rec = self._records.get(identity_hash)
            if rec is not None:
                self._records[identity_hash] = replace(rec, attempts=0, locked_until=None)

    async def reset_expired(self, identity_hash: str, now: datetime) -> bool:
        with self._lock:
            rec = self._records.get(identity_hash)
            if rec is None or rec.locked_until is None or rec.locked_until > now:
                return False
            self._records[identity_hash] = replace(rec, attempts=0, locked_until=None)
            return True

    async def set_lock(self, identity_hash: str, locked_until: datetime, now: datetime) -> bool:
        with self._lock:
            rec = self._records.get(identity_hash)
            if rec is None or rec.is_locked_at(now):
                return False
            self._records[identity_hash] = replace(rec, locked_until=locked_until)
            return True

    async def list_all(self) -> List[AttemptRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.last_attempt_at, reverse=True)

    async def delete(self, record_id: int) -> bool:
        with self._lock:
            for key, rec in self._records.items():
                if rec.id == record_id:
                    del self._records[key]
                    return True
            return False


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS login_attempts (
    id BIGSERIAL PRIMARY KEY,
    identity_hash VARCHAR(64) NOT NULL UNIQUE,
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    first_attempt_at TIMESTAMP WITH TIME ZONE NOT NULL,
    last_attempt_at TIMESTAMP WITH TIME ZONE NOT NULL,
    locked_until TIMESTAMP WITH TIME ZONE
);

CREATE INDEX IF NOT EXISTS idx_login_attempts_last ON login_attempts(last_attempt_at DESC);
"""

_UPSERT_INCREMENT_SQL = """
INSERT INTO login_attempts (identity_hash, attempts, first_attempt_at, last_attempt_at, locked_until)
VALUES ($1, 1, $2, $2, NULL)
ON CONFLICT (identity_hash) DO UPDATE SET
    attempts = login_attempts.attempts + 1,
    first_attempt_at = CASE
        WHEN login_attempts.attempts = 0 THEN EXCLUDED.first_attempt_at
        ELSE login_attempts.first_attempt_at
    END,
    last_attempt_at = EXCLUDED.last_attempt_at
RETURNING *
"""

_RESET_EXPIRED_SQL = """
UPDATE login_attempts SET attempts = 0, locked_until = NULL
WHERE identity_hash = $1 AND locked_until IS NOT NULL AND locked_until <= $2
RETURNING id
"""

_SET_LOCK_SQL = """
UPDATE login_attempts SET locked_until = $2
WHERE identity_hash = $1 AND (locked_until IS NULL OR locked_until <= $3)
RETURNING id
"""


class PostgresRecordStore:
    """asyncpg-backed record store.

    Every asyncpg or connection error surfaces as ``StoreUnavailable`` so the
    policy gate can apply the configured fail-open/fail-closed behaviour.
    """

    def __init__(self, database_url: Optional[str] = None, min_size: int = 1, max_size: int = 10):
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if database connection is established."""
        return self._pool is not None and not self._pool._closed

    async def connect(self, max_retries: int = 5, retry_delay: float = 2.0) -> bool:
        """Initialize the pool with retry logic. Returns True if connected."""
        if not self._database_url:
            logger.warning("DATABASE_URL not configured, record store disabled")
            return False

        async with self._lock:
            if self._pool is not None:
                return True

            delay = retry_delay
            for attempt in range(1, max_retries + 1):
                try:
                    logger.debug("Connecting to PostgreSQL (attempt %d/%d)...", attempt, max_retries)
                    self._pool = await asyncpg.create_pool(
                        dsn=self._database_url,
                        min_size=self._min_size,
                        max_size=self._max_size,
                        command_timeout=10,
                    )
                    async with self._pool.acquire() as conn:
                        await conn.execute(SCHEMA_SQL)
                    logger.info("Record store connected")
                    return True
                except Exception as e:
                    self._pool = None
                    if attempt < max_retries:
                        logger.warning(
                            "Record store connection attempt %d/%d failed: %s. Retrying in %.0fs...",
                            attempt, max_retries, e, delay,
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 30)
                    else:
                        logger.error("Failed to connect record store after %d attempts: %s", max_retries, e)
                        return False
        return False

    async def disconnect(self) -> None:
        async with self._lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
                logger.info("Record store disconnected")

    async def _fetchrow(self, query: str, *args):
        if not self.is_connected:
            raise StoreUnavailable("Record store not connected")
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Record store error: {e}") from e

    async def _fetch(self, query: str, *args):
        if not self.is_connected:
            raise StoreUnavailable("Record store not connected")
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Record store error: {e}") from e

    async def _execute(self, query: str, *args) -> str:
        if not self.is_connected:
            raise StoreUnavailable("Record store not connected")
        try:
            async with self._pool.acquire() as conn:
                return await conn.execute(query, *args)
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailable(f"Record store error: {e}") from e

    async def get(self, identity_hash: str) -> Optional[AttemptRecord]:
        row = await self._fetchrow(
            "SELECT * FROM login_attempts WHERE identity_hash = $1 LIMIT 1",
            identity_hash,
        )
        return AttemptRecord.from_row(row) if row else None

    async def upsert_increment(self, identity_hash: str, now: datetime) -> AttemptRecord:
        row = await self._fetchrow(_UPSERT_INCREMENT_SQL, identity_hash, now)
        return AttemptRecord.from_row(row)

    async def reset(self, identity_hash: str) -> None:
        await self._execute(
            "UPDATE login_attempts SET attempts = 0, locked_until = NULL WHERE identity_hash = $1",
            identity_hash,
        )

    async def reset_expired(self, identity_hash: str, now: datetime) -> bool:
        """Clear a lock that has run out. False if the lock is still live or already gone."""
        row = await self._fetchrow(_RESET_EXPIRED_SQL, identity_hash, now)
        return row is not None

    async def set_lock(self, identity_hash: str, locked_until: datetime, now: datetime) -> bool:
        row = await self._fetchrow(_SET_LOCK_SQL, identity_hash, locked_until, now)
        return row is not None

    async def list_all(self) -> List[AttemptRecord]:
        rows = await self._fetch("SELECT * FROM login_attempts ORDER BY last_attempt_at DESC")
        return [AttemptRecord.from_row(r) for r in rows]

    async def delete(self, record_id: int) -> bool:
        result = await self._execute("DELETE FROM login_attempts WHERE id = $1", record_id)
        # asyncpg returns a status tag like "DELETE 1"
        return result.split()[-1] != "0"
