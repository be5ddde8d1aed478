"""
Policy evaluation.

Evaluation matches the tracked partitions of each enabled policy's target
against the policy's triggers and keeps ilm_evaluation_queue in step with
the result. Queue rows are keyed by (policy, partition) and refreshed with an
explicit compare-and-swap: an UPDATE guarded on the current status, followed
by an INSERT only when no row exists. Rows being executed are never touched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from loguru import logger

from ilm.data.catalog import ObjectCatalog
from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.conditions import Condition, parse_condition
from ilm.lifecycle.errors import EvaluationError, IlmError, InvalidCustomCondition, PolicyNotFound
from ilm.lifecycle.policies import ActionType, Policy, PolicyStore
from ilm.lifecycle.profiles import Temperature, ThresholdProfile, ThresholdResolver
from ilm.lifecycle.settings import LifecycleConfig, load_config
from ilm.lifecycle.tracker import PartitionAccessRecord, PartitionTracker


PARTITION_GONE = "Partition no longer exists"


class QueueStatus(Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class Decision:
    """Eligibility of one partition for one policy."""

    eligible: bool
    reason: str


@dataclass
class QueueEntry:
    """One row of the evaluation queue."""

    queue_id: int
    policy_id: int
    table_owner: str
    table_name: str
    partition_name: str
    eligible: bool
    reason: str | None
    action_type: str
    target_location: str | None
    target_codec: str | None
    priority: int
    status: str
    attempts: int
    last_error: str | None
    queued_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        data["queued_at"] = self.queued_at.isoformat() if self.queued_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class EvaluationResult:
    """Result of evaluating one policy."""

    policy_id: int | None
    policy_name: str
    partitions_evaluated: int = 0
    eligible: int = 0
    already_at_target: int = 0
    not_eligible: int = 0
    in_flight: int = 0
    retired: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "partitions_evaluated": self.partitions_evaluated,
            "eligible": self.eligible,
            "already_at_target": self.already_at_target,
            "not_eligible": self.not_eligible,
            "in_flight": self.in_flight,
            "retired": self.retired,
            "errors": self.errors,
            "success": self.success,
        }


@dataclass
class EvaluationSummary:
    """Result of evaluating all enabled policies."""

    policies_evaluated: int = 0
    policies_failed: int = 0
    total_eligible: int = 0
    stale_entries_purged: int = 0
    results: list[EvaluationResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "policies_evaluated": self.policies_evaluated,
            "policies_failed": self.policies_failed,
            "total_eligible": self.total_eligible,
            "stale_entries_purged": self.stale_entries_purged,
            "results": [r.to_dict() for r in self.results],
            "errors": self.errors,
            "success": self.success,
        }


_QUEUE_COLUMNS = [
    "queue_id",
    "policy_id",
    "table_owner",
    "table_name",
    "partition_name",
    "eligible",
    "reason",
    "action_type",
    "target_location",
    "target_codec",
    "priority",
    "status",
    "attempts",
    "last_error",
    "queued_at",
    "updated_at",
]
SELECT_QUEUE = f"SELECT {', '.join(_QUEUE_COLUMNS)} FROM ilm_evaluation_queue"


def to_queue_entry(row: tuple[Any, ...]) -> QueueEntry:
    data = dict(zip(_QUEUE_COLUMNS, row))
    data["eligible"] = bool(data["eligible"])
    data["attempts"] = int(data["attempts"] or 0)
    return QueueEntry(**data)


def is_at_target(policy: Policy, record: PartitionAccessRecord) -> bool:
    """
    Check whether a partition already has the state a policy would give it.

    DROP is never at target while the partition exists.
    """
    action = policy.action_type
    if action == ActionType.COMPRESS.value:
        return record.codec == policy.compression_type
    if action == ActionType.MOVE.value:
        return record.location == policy.target_location and (
            not policy.compression_type or record.codec == policy.compression_type
        )
    if action == ActionType.READ_ONLY.value:
        return record.read_only
    if action == ActionType.TRUNCATE.value:
        return record.num_rows == 0
    return False


def decide(
    policy: Policy,
    record: PartitionAccessRecord,
    profile: ThresholdProfile,
    config: LifecycleConfig,
    condition: Condition | None = None,
) -> Decision:
    """
    Apply a policy's triggers to one partition. Every trigger set must hold.

    Args:
        policy: Policy being evaluated
        record: Tracked partition state
        profile: Thresholds resolved for the policy
        config: Config snapshot of the run
        condition: Parsed custom condition, if the policy has one

    Returns:
        Decision with a human-readable reason
    """
    reasons = []

    if policy.age_months is not None:
        if record.age_months < policy.age_months:
            return Decision(False, f"Age {record.age_months} months < {policy.age_months} months")
        reasons.append(f"age {record.age_months} months >= {policy.age_months} months")
    elif policy.age_days is not None:
        if record.days_since_write < policy.age_days:
            return Decision(False, f"Age {record.days_since_write} days < {policy.age_days} days")
        reasons.append(f"age {record.days_since_write} days >= {policy.age_days} days")

    temperature = profile.classify(record.days_since_write, split_frozen=config.frozen_tier_enabled)
    if policy.access_pattern is not None:
        matched = temperature.value == policy.access_pattern or (
            policy.access_pattern == Temperature.COLD.value and temperature is Temperature.FROZEN
        )
        if not matched:
            return Decision(
                False, f"Temperature {temperature.value} does not match {policy.access_pattern}"
            )
        reasons.append(f"temperature {temperature.value} ({profile.name})")

    if policy.size_threshold_mb is not None:
        if record.size_mb < policy.size_threshold_mb:
            return Decision(
                False, f"Size {record.size_mb:.1f} MB < {policy.size_threshold_mb:g} MB"
            )
        reasons.append(f"size {record.size_mb:.1f} MB >= {policy.size_threshold_mb:g} MB")

    if condition is not None:
        context = record.context()
        context["temperature"] = temperature.value
        if not condition.matches(context):
            return Decision(False, "Custom condition not met")
        reasons.append("custom condition met")

    return Decision(True, "Eligible: " + ", ".join(reasons))


class EvaluationEngine:
    """
    Populates the evaluation queue from enabled policies.

    Usage:
        engine = EvaluationEngine()
        summary = engine.evaluate_all()
        print(f"{summary.total_eligible} partitions queued")
    """

    def __init__(
        self,
        db_path: str | None = None,
        tracker: PartitionTracker | None = None,
        policies: PolicyStore | None = None,
        resolver: ThresholdResolver | None = None,
        catalog: ObjectCatalog | None = None,
    ):
        self._db = get_db(db_path)
        self._db_path = db_path
        ensure_schema(self._db)
        self._catalog = catalog or ObjectCatalog(db_path)
        self._tracker = tracker or PartitionTracker(db_path, catalog=self._catalog)
        self._policies = policies or PolicyStore(db_path)
        self._resolver = resolver or ThresholdResolver(db_path)

    def evaluate(
        self,
        policy: Policy | int,
        config: LifecycleConfig | None = None,
        as_of: datetime | None = None,
    ) -> EvaluationResult:
        """
        Evaluate one policy against its target's tracked partitions.

        Args:
            policy: Policy or policy id
            config: Config snapshot (loaded when omitted)
            as_of: Evaluation time (defaults to now)

        Returns:
            EvaluationResult with counts per outcome

        Raises:
            EvaluationError: If the policy cannot be evaluated at all
        """
        if not isinstance(policy, Policy):
            found = self._policies.get(policy)
            if found is None:
                raise PolicyNotFound(f"Policy {policy} does not exist", field="policy_id")
            policy = found

        result = EvaluationResult(policy_id=policy.policy_id, policy_name=policy.policy_name)
        if not policy.enabled:
            logger.debug(f"Policy {policy.policy_name} is disabled, not evaluating")
            return result

        config = config or load_config(self._db_path)
        as_of = as_of or datetime.now()

        condition = None
        if policy.custom_condition:
            try:
                condition = parse_condition(policy.custom_condition)
            except InvalidCustomCondition as e:
                raise EvaluationError(f"Policy {policy.policy_name}: {e}") from e

        if self._catalog.get_object(policy.table_owner, policy.table_name) is None:
            raise EvaluationError(
                f"Policy {policy.policy_name}: target {policy.table_owner}.{policy.table_name} "
                "no longer exists"
            )

        profile = self._resolver.resolve(policy, config)
        existing = {
            p.partition_name for p in self._catalog.list_partitions(policy.table_owner, policy.table_name)
        }
        result.retired = self._retire_missing(policy, as_of)
        records = [
            r
            for r in self._tracker.get_records(policy.table_owner, policy.table_name)
            if r.partition_name in existing
        ]

        for record in records:
            result.partitions_evaluated += 1
            if is_at_target(policy, record):
                result.already_at_target += 1
                self._mark_ineligible(policy, record, "Already at target", as_of)
                continue

            decision = decide(policy, record, profile, config, condition)
            if decision.eligible:
                if self._enqueue(policy, record, decision.reason, as_of):
                    result.eligible += 1
                else:
                    result.in_flight += 1
            else:
                result.not_eligible += 1
                self._mark_ineligible(policy, record, decision.reason, as_of)
            logger.debug(
                f"{policy.policy_name} / {record.partition_name}: {decision.reason}"
            )

        logger.info(
            f"Evaluated {policy.policy_name}: {result.eligible} eligible, "
            f"{result.already_at_target} at target, {result.not_eligible} not eligible"
        )
        return result

    def evaluate_all(
        self, config: LifecycleConfig | None = None, as_of: datetime | None = None
    ) -> EvaluationSummary:
        """
        Evaluate every enabled policy in ascending priority order.

        A policy that fails is logged and skipped; its siblings still run.
        """
        config = config or load_config(self._db_path)
        as_of = as_of or datetime.now()
        summary = EvaluationSummary()
        summary.stale_entries_purged = self.purge_stale_entries(config.queue_retention_days, as_of)

        for policy in self._policies.list_policies(enabled_only=True):
            try:
                result = self.evaluate(policy, config=config, as_of=as_of)
            except IlmError as e:
                summary.policies_failed += 1
                summary.errors.append(f"{policy.policy_name}: {e}")
                logger.error(f"Evaluation of {policy.policy_name} failed: {e}")
                continue
            summary.policies_evaluated += 1
            summary.total_eligible += result.eligible
            summary.results.append(result)

        logger.info(
            f"Evaluation complete: {summary.policies_evaluated} policies, "
            f"{summary.total_eligible} eligible, {summary.policies_failed} failed"
        )
        return summary

    def _enqueue(
        self, policy: Policy, record: PartitionAccessRecord, reason: str, now: datetime
    ) -> bool:
        """
        Insert or refresh the queue entry for (policy, partition).

        Returns:
            False if the entry is currently executing and was left alone
        """
        key = (policy.policy_id, record.table_owner, record.table_name, record.partition_name)
        target_codec = policy.compression_type
        if policy.action_type not in (ActionType.COMPRESS.value, ActionType.MOVE.value):
            target_codec = None

        with self._db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE ilm_evaluation_queue
                SET eligible = TRUE,
                    reason = ?,
                    action_type = ?,
                    target_location = ?,
                    target_codec = ?,
                    priority = ?,
                    status = CASE WHEN status = 'FAILED' THEN 'FAILED' ELSE 'PENDING' END,
                    attempts = CASE WHEN status IN ('SUCCESS', 'SKIPPED') THEN 0 ELSE attempts END,
                    queued_at = CASE WHEN status IN ('SUCCESS', 'SKIPPED') THEN ? ELSE queued_at END,
                    updated_at = ?
                WHERE policy_id = ? AND table_owner = ? AND table_name = ? AND partition_name = ?
                  AND status != 'EXECUTING'
                RETURNING queue_id
                """,
                (
                    reason,
                    policy.action_type,
                    policy.target_location,
                    target_codec,
                    policy.priority,
                    now,
                    now,
                    *key,
                ),
            ).fetchone()
            if updated is not None:
                return True

            if conn.execute(
                """
                SELECT 1 FROM ilm_evaluation_queue
                WHERE policy_id = ? AND table_owner = ? AND table_name = ? AND partition_name = ?
                """,
                key,
            ).fetchone():
                return False

            queue_id = conn.execute(
                "SELECT COALESCE(MAX(queue_id), 0) + 1 FROM ilm_evaluation_queue"
            ).fetchone()[0]
            conn.execute(
                f"""
                INSERT INTO ilm_evaluation_queue ({', '.join(_QUEUE_COLUMNS)})
                VALUES ({', '.join('?' * len(_QUEUE_COLUMNS))})
                """,
                (
                    queue_id,
                    *key,
                    True,
                    reason,
                    policy.action_type,
                    policy.target_location,
                    target_codec,
                    policy.priority,
                    QueueStatus.PENDING.value,
                    0,
                    None,
                    now,
                    now,
                ),
            )
        return True

    def _retire_missing(self, policy: Policy, now: datetime) -> int:
        """Mark waiting entries of partitions gone from the catalog SKIPPED."""
        rows = self._db.fetchall(
            """
            UPDATE ilm_evaluation_queue
            SET eligible = FALSE, reason = ?, status = 'SKIPPED', updated_at = ?
            WHERE policy_id = ? AND status IN ('PENDING', 'FAILED')
              AND NOT EXISTS (
                  SELECT 1 FROM ilm_partitions p
                  WHERE p.owner = ilm_evaluation_queue.table_owner
                    AND p.object_name = ilm_evaluation_queue.table_name
                    AND p.partition_name = ilm_evaluation_queue.partition_name
              )
            RETURNING partition_name
            """,
            (PARTITION_GONE, now, policy.policy_id),
        )
        for (partition_name,) in rows:
            logger.info(f"{policy.policy_name} / {partition_name}: {PARTITION_GONE}")
        return len(rows)

    def _mark_ineligible(
        self, policy: Policy, record: PartitionAccessRecord, reason: str, now: datetime
    ) -> None:
        """Mark a waiting entry SKIPPED. Executing and finished entries are kept."""
        self._db.execute(
            """
            UPDATE ilm_evaluation_queue
            SET eligible = FALSE, reason = ?, status = 'SKIPPED', updated_at = ?
            WHERE policy_id = ? AND table_owner = ? AND table_name = ? AND partition_name = ?
              AND status IN ('PENDING', 'FAILED')
            """,
            (reason, now, policy.policy_id, record.table_owner, record.table_name, record.partition_name),
        )

    def purge_stale_entries(self, retention_days: int, as_of: datetime | None = None) -> int:
        """
        Delete queue entries not updated within the retention period.

        Entries being executed are kept.

        Returns:
            Number of entries deleted
        """
        cutoff = (as_of or datetime.now()) - timedelta(days=retention_days)
        with self._db.transaction() as conn:
            count = conn.execute(
                """
                SELECT COUNT(*) FROM ilm_evaluation_queue
                WHERE status != 'EXECUTING' AND updated_at < ?
                """,
                (cutoff,),
            ).fetchone()[0]
            if count:
                conn.execute(
                    "DELETE FROM ilm_evaluation_queue WHERE status != 'EXECUTING' AND updated_at < ?",
                    (cutoff,),
                )
        if count:
            logger.info(f"Purged {count} stale queue entries older than {retention_days} days")
        return count

    def clear_queue(self, policy_id: int | None = None) -> int:
        """
        Delete queue entries that are not executing.

        Args:
            policy_id: Only clear this policy's entries

        Returns:
            Number of entries deleted
        """
        condition = "status != 'EXECUTING'"
        params: list[Any] = []
        if policy_id is not None:
            condition += " AND policy_id = ?"
            params.append(policy_id)

        with self._db.transaction() as conn:
            count = conn.execute(
                f"SELECT COUNT(*) FROM ilm_evaluation_queue WHERE {condition}", params
            ).fetchone()[0]
            conn.execute(f"DELETE FROM ilm_evaluation_queue WHERE {condition}", params)
        logger.info(f"Cleared {count} queue entries")
        return count

    def get_queue(
        self, status: str | None = None, policy_id: int | None = None, eligible_only: bool = False
    ) -> list[QueueEntry]:
        """List queue entries in execution order."""
        conditions = []
        params: list[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if policy_id is not None:
            conditions.append("policy_id = ?")
            params.append(policy_id)
        if eligible_only:
            conditions.append("eligible")

        query = SELECT_QUEUE
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY priority, queued_at, queue_id"
        return [to_queue_entry(row) for row in self._db.fetchall(query, params)]
