"""
Append-only audit logs for executed actions and merge attempts.

Every execution attempt writes exactly one row to ilm_execution_log and
every merge attempt one row to ilm_merge_log. Rows are never updated; the
only deletion is retention cleanup of rows past LOG_RETENTION_DAYS.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import pandas as pd
from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema


class ExecutionStatus(Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class MergeStatus(Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class ExecutionLogEntry:
    """
    One attempted action.

    Attributes:
        run_id: Execution run the attempt belongs to
        size_before_mb: Partition size before the action
        size_after_mb: Partition size after the action (before size on failure)
        target_location: Location the action moved the partition to
        target_codec: Codec the action applied
        error_message: Error text for FAILED attempts, verbatim
    """

    run_id: str
    policy_id: int | None
    policy_name: str | None
    table_owner: str
    table_name: str
    partition_name: str
    action_type: str
    status: str
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: float | None = None
    size_before_mb: float | None = None
    size_after_mb: float | None = None
    target_location: str | None = None
    target_codec: str | None = None
    error_message: str | None = None
    queue_id: int | None = None
    execution_id: int | None = None

    @property
    def space_saved_mb(self) -> float | None:
        if self.size_before_mb is None or self.size_after_mb is None:
            return None
        return round(self.size_before_mb - self.size_after_mb, 4)

    @property
    def compression_ratio(self) -> float | None:
        """Size before divided by size after, None when nothing remains."""
        if not self.size_before_mb or not self.size_after_mb:
            return None
        return round(self.size_before_mb / self.size_after_mb, 4)


@dataclass
class MergeLogEntry:
    """One attempted merge."""

    table_owner: str
    table_name: str
    source_partition: str
    target_partition: str | None
    status: str
    reason: str | None
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: float | None = None
    rows_merged: int = 0
    error_message: str | None = None
    merge_id: int | None = None


@dataclass
class LogCleanupResult:
    """Result of deleting audit rows past retention."""

    retention_days: int
    dry_run: bool
    execution_rows: int = 0
    merge_rows: int = 0

    @property
    def records_deleted(self) -> int:
        return self.execution_rows + self.merge_rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "retention_days": self.retention_days,
            "dry_run": self.dry_run,
            "execution_rows": self.execution_rows,
            "merge_rows": self.merge_rows,
            "records_deleted": self.records_deleted,
        }


class AuditLog:
    """Write and query the execution and merge logs."""

    def __init__(self, db_path: str | None = None):
        self._db = get_db(db_path)
        ensure_schema(self._db)

    def log_execution(self, entry: ExecutionLogEntry) -> int:
        """
        Append an execution attempt.

        Returns:
            The assigned execution_id
        """
        with self._db.transaction() as conn:
            execution_id = conn.execute(
                "SELECT COALESCE(MAX(execution_id), 0) + 1 FROM ilm_execution_log"
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO ilm_execution_log (
                    execution_id, run_id, queue_id, policy_id, policy_name,
                    table_owner, table_name, partition_name, action_type, status,
                    start_time, end_time, duration_seconds,
                    size_before_mb, size_after_mb, space_saved_mb, compression_ratio,
                    target_location, target_codec, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    entry.run_id,
                    entry.queue_id,
                    entry.policy_id,
                    entry.policy_name,
                    entry.table_owner,
                    entry.table_name,
                    entry.partition_name,
                    entry.action_type,
                    entry.status,
                    entry.start_time,
                    entry.end_time,
                    entry.duration_seconds,
                    entry.size_before_mb,
                    entry.size_after_mb,
                    entry.space_saved_mb,
                    entry.compression_ratio,
                    entry.target_location,
                    entry.target_codec,
                    entry.error_message,
                ),
            )
        entry.execution_id = execution_id
        return execution_id

    def log_merge(self, entry: MergeLogEntry) -> int:
        """
        Append a merge attempt.

        Returns:
            The assigned merge_id
        """
        with self._db.transaction() as conn:
            merge_id = conn.execute(
                "SELECT COALESCE(MAX(merge_id), 0) + 1 FROM ilm_merge_log"
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO ilm_merge_log (
                    merge_id, table_owner, table_name, source_partition, target_partition,
                    status, reason, start_time, end_time, duration_seconds,
                    rows_merged, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    merge_id,
                    entry.table_owner,
                    entry.table_name,
                    entry.source_partition,
                    entry.target_partition,
                    entry.status,
                    entry.reason,
                    entry.start_time,
                    entry.end_time,
                    entry.duration_seconds,
                    entry.rows_merged,
                    entry.error_message,
                ),
            )
        entry.merge_id = merge_id
        return merge_id

    def executions(
        self,
        run_id: str | None = None,
        table_owner: str | None = None,
        table_name: str | None = None,
        partition_name: str | None = None,
        policy_id: int | None = None,
    ) -> pd.DataFrame:
        """Query execution log rows, oldest first."""
        filters = {
            "run_id": run_id,
            "table_owner": table_owner,
            "table_name": table_name,
            "partition_name": partition_name,
            "policy_id": policy_id,
        }
        return self._query("ilm_execution_log", filters, "execution_id")

    def merges(
        self,
        table_owner: str | None = None,
        table_name: str | None = None,
        source_partition: str | None = None,
    ) -> pd.DataFrame:
        """Query merge log rows, oldest first."""
        filters = {
            "table_owner": table_owner,
            "table_name": table_name,
            "source_partition": source_partition,
        }
        return self._query("ilm_merge_log", filters, "merge_id")

    def _query(self, table: str, filters: dict[str, Any], order_by: str) -> pd.DataFrame:
        conditions = [f"{column} = ?" for column, value in filters.items() if value is not None]
        params = [value for value in filters.values() if value is not None]
        query = f"SELECT * FROM {table}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" ORDER BY {order_by}"
        return self._db.fetchdf(query, params)

    def cleanup(
        self, retention_days: int, as_of: datetime | None = None, dry_run: bool = False
    ) -> LogCleanupResult:
        """
        Delete execution and merge log rows older than the retention period.

        Args:
            retention_days: Rows whose start time is older than this are deleted
            as_of: Reference time (defaults to now)
            dry_run: Only count the rows that would be deleted

        Returns:
            LogCleanupResult with per-log counts
        """
        cutoff = (as_of or datetime.now()) - timedelta(days=retention_days)
        result = LogCleanupResult(retention_days=retention_days, dry_run=dry_run)

        with self._db.transaction() as conn:
            result.execution_rows = conn.execute(
                "SELECT COUNT(*) FROM ilm_execution_log WHERE start_time < ?", (cutoff,)
            ).fetchone()[0]
            result.merge_rows = conn.execute(
                "SELECT COUNT(*) FROM ilm_merge_log WHERE start_time < ?", (cutoff,)
            ).fetchone()[0]
            if not dry_run:
                conn.execute("DELETE FROM ilm_execution_log WHERE start_time < ?", (cutoff,))
                conn.execute("DELETE FROM ilm_merge_log WHERE start_time < ?", (cutoff,))

        action = "Would delete" if dry_run else "Deleted"
        logger.info(
            f"{action} {result.execution_rows} execution and {result.merge_rows} merge "
            f"log rows older than {retention_days} days"
        )
        return result
