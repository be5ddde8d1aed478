"""
Read-only rollups over policies, queue, tracker state and audit logs.

Every rollup returns a pandas DataFrame. generate_summary() condenses them
into a JSON-serialisable dict for the ops server and the CLI.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

import pandas as pd
from loguru import logger

from ilm.data.catalog import ObjectCatalog
from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.evaluation import is_at_target
from ilm.lifecycle.policies import PolicyStore
from ilm.lifecycle.settings import ConfigStore
from ilm.lifecycle.tracker import PartitionTracker

URGENCY_ORDER = ["Overdue", "Today", "This Week", "This Month", "Future"]


def _db(db_path: str | None):
    db = get_db(db_path)
    ensure_schema(db)
    return db


def urgency(days_until_due: int) -> str:
    """Bucket a due date relative to today."""
    if days_until_due < 0:
        return "Overdue"
    if days_until_due == 0:
        return "Today"
    if days_until_due <= 7:
        return "This Week"
    if days_until_due <= 30:
        return "This Month"
    return "Future"


def execution_stats(
    days: int = 30, as_of: datetime | None = None, db_path: str | None = None
) -> pd.DataFrame:
    """
    Per-policy execution outcomes over the last `days` days.

    Returns:
        DataFrame with policy_id, policy_name, total, succeeded, failed,
        skipped, avg_duration_seconds, space_saved_mb, avg_compression_ratio
    """
    since = (as_of or datetime.now()) - timedelta(days=days)
    return _db(db_path).fetchdf(
        """
        SELECT
            policy_id,
            policy_name,
            COUNT(*) AS total,
            SUM(CASE WHEN status = 'SUCCESS' THEN 1 ELSE 0 END) AS succeeded,
            SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
            SUM(CASE WHEN status = 'SKIPPED' THEN 1 ELSE 0 END) AS skipped,
            ROUND(AVG(duration_seconds), 3) AS avg_duration_seconds,
            ROUND(COALESCE(SUM(CASE WHEN status = 'SUCCESS' THEN space_saved_mb END), 0), 2)
                AS space_saved_mb,
            ROUND(AVG(CASE WHEN status = 'SUCCESS' THEN compression_ratio END), 2)
                AS avg_compression_ratio
        FROM ilm_execution_log
        WHERE start_time >= ?
        GROUP BY policy_id, policy_name
        ORDER BY policy_id
        """,
        (since,),
    )


def space_savings(db_path: str | None = None) -> pd.DataFrame:
    """Space reclaimed by successful actions, per object."""
    return _db(db_path).fetchdf(
        """
        SELECT
            table_owner,
            table_name,
            COUNT(*) AS actions,
            ROUND(COALESCE(SUM(size_before_mb), 0), 2) AS size_before_mb,
            ROUND(COALESCE(SUM(size_after_mb), 0), 2) AS size_after_mb,
            ROUND(COALESCE(SUM(space_saved_mb), 0), 2) AS space_saved_mb
        FROM ilm_execution_log
        WHERE status = 'SUCCESS'
        GROUP BY table_owner, table_name
        ORDER BY space_saved_mb DESC, table_owner, table_name
        """
    )


def policy_summary(db_path: str | None = None) -> pd.DataFrame:
    """Per-policy queue counts by status and number of successful executions."""
    return _db(db_path).fetchdf(
        """
        SELECT
            p.policy_id,
            p.policy_name,
            p.table_owner,
            p.table_name,
            p.action_type,
            p.priority,
            p.enabled,
            COALESCE(q.pending, 0) AS pending,
            COALESCE(q.executing, 0) AS executing,
            COALESCE(q.failed, 0) AS failed,
            COALESCE(q.skipped, 0) AS skipped,
            COALESCE(e.executed, 0) AS executed
        FROM ilm_policies p
        LEFT JOIN (
            SELECT
                policy_id,
                SUM(CASE WHEN status = 'PENDING' AND eligible THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN status = 'EXECUTING' THEN 1 ELSE 0 END) AS executing,
                SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status = 'SKIPPED' THEN 1 ELSE 0 END) AS skipped
            FROM ilm_evaluation_queue
            GROUP BY policy_id
        ) q ON q.policy_id = p.policy_id
        LEFT JOIN (
            SELECT policy_id, COUNT(*) AS executed
            FROM ilm_execution_log
            WHERE status = 'SUCCESS'
            GROUP BY policy_id
        ) e ON e.policy_id = p.policy_id
        ORDER BY p.priority, p.policy_id
        """
    )


def upcoming_actions(db_path: str | None = None) -> pd.DataFrame:
    """
    Age-triggered actions that will come due, as of the last tracker refresh.

    Pairs every enabled policy that has an age trigger with the tracked
    partitions of its object that still exist and are not yet at the
    policy's target.

    Returns:
        DataFrame sorted by days_until_due with an urgency bucket per row
    """
    policies = PolicyStore(db_path)
    catalog = ObjectCatalog(db_path)
    tracker = PartitionTracker(db_path, catalog=catalog)

    rows = []
    records_by_object: dict[tuple[str, str], list] = {}
    for policy in policies.list_policies(enabled_only=True):
        threshold = policy.age_threshold_days
        if threshold is None:
            continue
        key = (policy.table_owner, policy.table_name)
        if key not in records_by_object:
            existing = {p.partition_name for p in catalog.list_partitions(*key)}
            records_by_object[key] = [
                r for r in tracker.get_records(*key) if r.partition_name in existing
            ]
        for record in records_by_object[key]:
            if is_at_target(policy, record):
                continue
            days_until_due = math.ceil(threshold) - record.days_since_write
            rows.append(
                {
                    "policy_id": policy.policy_id,
                    "policy_name": policy.policy_name,
                    "table_owner": policy.table_owner,
                    "table_name": policy.table_name,
                    "partition_name": record.partition_name,
                    "action_type": policy.action_type,
                    "age_days": record.days_since_write,
                    "days_until_due": days_until_due,
                    "urgency": urgency(days_until_due),
                }
            )

    columns = [
        "policy_id", "policy_name", "table_owner", "table_name", "partition_name",
        "action_type", "age_days", "days_until_due", "urgency",
    ]
    if not rows:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame(rows, columns=columns)
    return df.sort_values(["days_until_due", "policy_id", "partition_name"]).reset_index(drop=True)


def merge_stats(db_path: str | None = None) -> pd.DataFrame:
    """Merge outcomes per object."""
    return _db(db_path).fetchdf(
        """
        SELECT
            table_owner,
            table_name,
            COUNT(*) AS attempts,
            SUM(CASE WHEN status = 'SUCCESS' THEN 1 ELSE 0 END) AS merged,
            SUM(CASE WHEN status = 'SKIPPED' THEN 1 ELSE 0 END) AS skipped,
            SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
            COALESCE(SUM(rows_merged), 0) AS rows_merged,
            ROUND(AVG(duration_seconds), 3) AS avg_duration_seconds
        FROM ilm_merge_log
        GROUP BY table_owner, table_name
        ORDER BY table_owner, table_name
        """
    )


def lifecycle_status(db_path: str | None = None) -> pd.DataFrame:
    """
    Partition count, rows and size per temperature.

    Only partitions still in the catalog are counted; tracker rows of merged
    or dropped partitions are kept but ignored here.
    """
    return _db(db_path).fetchdf(
        """
        SELECT
            a.temperature,
            COUNT(*) AS partitions,
            COALESCE(SUM(p.num_rows), 0) AS num_rows,
            ROUND(COALESCE(SUM(p.size_mb), 0), 2) AS size_mb
        FROM ilm_partition_access a
        JOIN ilm_partitions p
          ON p.owner = a.table_owner
         AND p.object_name = a.table_name
         AND p.partition_name = a.partition_name
        GROUP BY a.temperature
        ORDER BY CASE a.temperature
            WHEN 'HOT' THEN 1 WHEN 'WARM' THEN 2 WHEN 'COLD' THEN 3 WHEN 'FROZEN' THEN 4 ELSE 5
        END
        """
    )


def _jsonable(value: Any) -> Any:
    if pd.isna(value):
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def to_records(df: pd.DataFrame) -> list[dict[str, Any]]:
    """DataFrame rows as plain JSON-friendly dicts."""
    if df.empty:
        return []
    return [
        {key: _jsonable(value) for key, value in row.items()}
        for row in df.to_dict(orient="records")
    ]


def generate_summary(days: int = 7, db_path: str | None = None) -> dict[str, Any]:
    """
    Condensed lifecycle state.

    Args:
        days: Window for execution counts
        db_path: Optional database path

    Returns:
        {
            "generated_at": str,
            "emergency_stop": bool,
            "policies": {"total": int, "enabled": int},
            "queue": {status: count},
            "executions": {"days": int, "total": int, "succeeded": int,
                           "failed": int, "space_saved_mb": float},
            "merges": {"attempts": int, "merged": int, "failed": int},
            "temperatures": [{temperature, partitions, num_rows, size_mb}],
            "upcoming": {urgency: count},
        }
    """
    db = _db(db_path)
    logger.debug(f"Generating lifecycle summary ({days}d window)")

    total_policies, enabled_policies = db.fetchone(
        "SELECT COUNT(*), COALESCE(SUM(CASE WHEN enabled THEN 1 ELSE 0 END), 0) FROM ilm_policies"
    )
    queue = {
        status: int(count)
        for status, count in db.fetchall(
            "SELECT status, COUNT(*) FROM ilm_evaluation_queue GROUP BY status ORDER BY status"
        )
    }

    stats = execution_stats(days, db_path=db_path)
    merges = merge_stats(db_path)
    upcoming = upcoming_actions(db_path)
    counts = upcoming["urgency"].value_counts() if not upcoming.empty else pd.Series(dtype=int)

    return {
        "generated_at": datetime.now().isoformat(),
        "emergency_stop": ConfigStore(db_path).is_emergency_stop(),
        "policies": {"total": int(total_policies), "enabled": int(enabled_policies)},
        "queue": queue,
        "executions": {
            "days": days,
            "total": int(stats["total"].sum()) if not stats.empty else 0,
            "succeeded": int(stats["succeeded"].sum()) if not stats.empty else 0,
            "failed": int(stats["failed"].sum()) if not stats.empty else 0,
            "space_saved_mb": round(float(stats["space_saved_mb"].sum()), 2) if not stats.empty else 0.0,
        },
        "merges": {
            "attempts": int(merges["attempts"].sum()) if not merges.empty else 0,
            "merged": int(merges["merged"].sum()) if not merges.empty else 0,
            "failed": int(merges["failed"].sum()) if not merges.empty else 0,
        },
        "temperatures": to_records(lifecycle_status(db_path)),
        "upcoming": {bucket: int(counts.get(bucket, 0)) for bucket in URGENCY_ORDER},
    }

