"""
Lease locks stored in the database.

Execution takes an exclusive lock per partition and the merge engine takes
one per object. A lock is a row in ilm_locks with a holder and an expiry, so
a holder that dies without releasing only blocks others until its lease runs
out. Released locks are expired in place rather than deleted.
"""

from __future__ import annotations

import math
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Generator

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.errors import LockTimeoutError

_RELEASED = datetime(1970, 1, 1)


def partition_lock_key(owner: str, object_name: str, partition_name: str) -> str:
    return f"partition:{owner}.{object_name}.{partition_name}"


def object_lock_key(owner: str, object_name: str) -> str:
    return f"object:{owner}.{object_name}"


def refresh_lock_key(owner: str, object_name: str) -> str:
    return f"refresh:{owner}.{object_name}"


class LeaseLock:
    """
    Acquire and release named lease locks.

    Usage:
        locks = LeaseLock(holder=run_id)
        with locks.hold(partition_lock_key("DWH", "SALES", "P_2024_01"), timeout=30):
            ...  # exclusive work
    """

    def __init__(
        self,
        db_path: str | None = None,
        holder: str | None = None,
        lease_seconds: float = 3600.0,
        poll_interval: float = 0.2,
    ):
        """
        Initialize the lock manager.

        Args:
            db_path: Optional database path
            holder: Identity written into held locks (defaults to a random id)
            lease_seconds: How long a lock stays valid without release
            poll_interval: Seconds between acquisition attempts
        """
        self._db = get_db(db_path)
        ensure_schema(self._db)
        self.holder = holder or uuid.uuid4().hex
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval

    def try_acquire(self, key: str) -> bool:
        """
        Try once to acquire a lock.

        Returns:
            True if this holder now owns the lock
        """
        now = datetime.now()
        expires = now + timedelta(seconds=self.lease_seconds)
        with self._db.transaction() as conn:
            taken = conn.execute(
                """
                UPDATE ilm_locks
                SET holder = ?, acquired_at = ?, expires_at = ?
                WHERE lock_key = ? AND expires_at <= ?
                RETURNING lock_key
                """,
                (self.holder, now, expires, key, now),
            ).fetchone()
            if taken:
                return True

            row = conn.execute(
                "SELECT holder FROM ilm_locks WHERE lock_key = ?", (key,)
            ).fetchone()
            if row is not None:
                return False

            conn.execute(
                """
                INSERT INTO ilm_locks (lock_key, holder, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (key, self.holder, now, expires),
            )
            row = conn.execute(
                "SELECT holder FROM ilm_locks WHERE lock_key = ?", (key,)
            ).fetchone()
            return row is not None and row[0] == self.holder

    def acquire(self, key: str, timeout: float) -> None:
        """
        Acquire a lock, polling until the timeout elapses.

        Args:
            key: Lock key
            timeout: Seconds to keep trying (0 tries once)

        Raises:
            LockTimeoutError: If the lock could not be obtained in time
        """
        attempts = max(1, math.ceil(timeout / self.poll_interval) + 1) if self.poll_interval else 1
        for attempt in range(attempts):
            if self.try_acquire(key):
                logger.debug(f"Acquired lock {key}")
                return
            if attempt < attempts - 1:
                time.sleep(self.poll_interval)
        raise LockTimeoutError(key, timeout)

    def release(self, key: str) -> None:
        """Release a lock held by this holder."""
        self._db.execute(
            "UPDATE ilm_locks SET expires_at = ? WHERE lock_key = ? AND holder = ?",
            (_RELEASED, key, self.holder),
        )
        logger.debug(f"Released lock {key}")

    def is_locked(self, key: str) -> bool:
        """Check whether any holder currently owns a lock."""
        row = self._db.fetchone(
            "SELECT 1 FROM ilm_locks WHERE lock_key = ? AND expires_at > ?",
            (key, datetime.now()),
        )
        return row is not None

    @contextmanager
    def hold(self, key: str, timeout: float) -> Generator[None, None, None]:
        """Hold a lock for the duration of a with block."""
        self.acquire(key, timeout)
        try:
            yield
        finally:
            self.release(key)
