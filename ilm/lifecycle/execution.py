"""
Queue execution.

The execution engine drains eligible queue entries in (priority, queued time)
order and performs at most one action per partition per run. Each real
attempt moves its entry PENDING -> EXECUTING -> SUCCESS or FAILED under an
exclusive partition lock and writes exactly one execution log row. Failed
entries stay in the queue and are retried by later runs.

Simulate mode walks the same entries with the same dedup rule and reports
what each action would do, without locks, log rows or state changes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from ilm.data.catalog import CatalogError, ObjectCatalog, StorageChange, estimate_size
from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.audit import AuditLog, ExecutionLogEntry, ExecutionStatus
from ilm.lifecycle.errors import ExecutionError, LockTimeoutError
from ilm.lifecycle.evaluation import (
    PARTITION_GONE,
    SELECT_QUEUE,
    QueueEntry,
    QueueStatus,
    to_queue_entry,
)
from ilm.lifecycle.locks import LeaseLock, partition_lock_key
from ilm.lifecycle.merge import COARSE_TIERS, MergeResult, PartitionMerger
from ilm.lifecycle.policies import ActionType, Policy, PolicyStore
from ilm.lifecycle.settings import ConfigStore, LifecycleConfig, load_config
from ilm.lifecycle.tracker import PartitionTracker
from ilm.utils.timing import Timer, timed_section


@dataclass
class ExecutionScope:
    """Narrows which queue entries a run drains."""

    table_owner: str | None = None
    table_name: str | None = None
    policy_id: int | None = None

    def sql(self) -> tuple[str, list[Any]]:
        """SQL conditions and parameters for this scope."""
        conditions = []
        params: list[Any] = []
        for column in ("table_owner", "table_name", "policy_id"):
            value = getattr(self, column)
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        return " AND ".join(conditions), params

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_owner": self.table_owner,
            "table_name": self.table_name,
            "policy_id": self.policy_id,
        }


@dataclass
class PlannedAction:
    """What an entry's action does to its partition."""

    queue_id: int
    policy_id: int
    policy_name: str
    table_owner: str
    table_name: str
    partition_name: str
    action_type: str
    priority: int
    current_location: str | None
    current_codec: str | None
    target_location: str | None
    target_codec: str | None
    size_before_mb: float | None
    size_after_mb: float | None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ActionOutcome:
    """Result of one real action attempt."""

    queue_id: int
    policy_name: str
    partition_name: str
    action_type: str
    status: str
    size_before_mb: float | None = None
    size_after_mb: float | None = None
    duration_seconds: float = 0.0
    error: str | None = None
    merge: MergeResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_id": self.queue_id,
            "policy_name": self.policy_name,
            "partition_name": self.partition_name,
            "action_type": self.action_type,
            "status": self.status,
            "size_before_mb": self.size_before_mb,
            "size_after_mb": self.size_after_mb,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "merge": self.merge.to_dict() if self.merge else None,
        }


@dataclass
class ExecutionReport:
    """
    Result of one execution run.

    Attributes:
        run_id: Identifier written into every log row of the run
        simulate: Whether this was a simulation
        planned: Actions a simulation would perform, in order
        outcomes: Real action attempts, in order
        skipped: Entries skipped as duplicates, for disabled policies or for
            partitions that no longer exist
        stopped_reason: Why the run stopped early or never started
    """

    run_id: str
    simulate: bool
    scope: ExecutionScope | None = None
    planned: list[PlannedAction] = field(default_factory=list)
    outcomes: list[ActionOutcome] = field(default_factory=list)
    skipped: int = 0
    stopped_reason: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ExecutionStatus.SUCCESS.value)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ExecutionStatus.FAILED.value)

    @property
    def errors(self) -> list[str]:
        return [f"{o.partition_name}: {o.error}" for o in self.outcomes if o.error]

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "simulate": self.simulate,
            "scope": self.scope.to_dict() if self.scope else None,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "stopped_reason": self.stopped_reason,
            "duration_seconds": self.duration_seconds,
            "planned": [p.to_dict() for p in self.planned],
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def new_run_id(now: datetime | None = None) -> str:
    return f"{(now or datetime.now()):%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


class ExecutionEngine:
    """
    Drains the evaluation queue.

    Usage:
        engine = ExecutionEngine()
        preview = engine.execute(max_actions=10, simulate=True)
        report = engine.execute(max_actions=10)
        print(f"{report.succeeded} succeeded, {report.failed} failed")
    """

    def __init__(
        self,
        db_path: str | None = None,
        catalog: ObjectCatalog | None = None,
        tracker: PartitionTracker | None = None,
        policies: PolicyStore | None = None,
        audit: AuditLog | None = None,
        merger: PartitionMerger | None = None,
    ):
        self._db = get_db(db_path)
        self._db_path = db_path
        ensure_schema(self._db)
        self._catalog = catalog or ObjectCatalog(db_path)
        self._tracker = tracker or PartitionTracker(db_path, catalog=self._catalog)
        self._policies = policies or PolicyStore(db_path)
        self._audit = audit or AuditLog(db_path)
        self._merger = merger or PartitionMerger(db_path, catalog=self._catalog, audit=self._audit)
        self._config_store = ConfigStore(db_path)

    def execute(
        self,
        max_actions: int | None = None,
        simulate: bool = False,
        scope: ExecutionScope | None = None,
        scheduled: bool = False,
        config: LifecycleConfig | None = None,
        now: datetime | None = None,
    ) -> ExecutionReport:
        """
        Run up to max_actions queued actions.

        Args:
            max_actions: Action budget (defaults to MAX_ACTIONS_PER_RUN)
            simulate: Report planned actions without changing anything
            scope: Optional owner/object/policy filter
            scheduled: Apply the auto-execution flag and execution window
            config: Config snapshot (loaded when omitted)
            now: Run time used for the window check and run id

        Returns:
            ExecutionReport for the run
        """
        config = config or load_config(self._db_path)
        now = now or datetime.now()
        report = ExecutionReport(run_id=new_run_id(now), simulate=simulate, scope=scope)
        timer = Timer()

        if self._config_store.is_emergency_stop():
            report.stopped_reason = "Emergency stop is set"
            logger.warning(f"Execution run {report.run_id} not started: emergency stop is set")
            return report

        if scheduled:
            if not config.enable_auto_execution:
                report.stopped_reason = "Automatic execution is disabled"
                logger.warning(f"Scheduled run {report.run_id} not started: auto execution disabled")
                return report
            if not config.in_execution_window(now):
                report.stopped_reason = (
                    f"Outside execution window {config.execution_window_start:%H:%M}-"
                    f"{config.execution_window_end:%H:%M}"
                )
                logger.warning(f"Scheduled run {report.run_id} not started: {report.stopped_reason}")
                return report

        budget = max_actions if max_actions is not None else config.max_actions_per_run
        candidates = self._candidates(scope)
        logger.info(
            f"Execution run {report.run_id} (simulate={simulate}): "
            f"{len(candidates)} candidates, budget {budget}"
        )

        handled: dict[tuple[str, str, str], str] = {}
        performed = 0
        for entry in candidates:
            if performed >= budget:
                break

            key = (entry.table_owner, entry.table_name, entry.partition_name)
            if key in handled:
                report.skipped += 1
                if not simulate:
                    self._mark_skipped(entry, f"Superseded by {handled[key]} in run {report.run_id}")
                continue

            policy = self._policies.get(entry.policy_id)
            if policy is None or not policy.enabled:
                report.skipped += 1
                if not simulate:
                    state = "deleted" if policy is None else "disabled"
                    self._mark_skipped(entry, f"Policy {entry.policy_id} is {state}")
                continue

            handled[key] = policy.policy_name

            if simulate:
                report.planned.append(self.plan(entry, policy))
                performed += 1
                continue

            if self._config_store.is_emergency_stop():
                report.stopped_reason = "Emergency stop is set"
                logger.warning(f"Execution run {report.run_id} stopped: emergency stop is set")
                break

            outcome = self._execute_entry(entry, policy, config, report.run_id)
            if outcome is None:
                continue
            if outcome.status == ExecutionStatus.SKIPPED.value:
                report.skipped += 1
                continue
            report.outcomes.append(outcome)
            performed += 1

        report.duration_seconds = timer.stop()
        if simulate:
            logger.info(f"Simulated run {report.run_id}: {len(report.planned)} planned actions")
        else:
            logger.info(
                f"Execution run {report.run_id}: {report.succeeded} succeeded, "
                f"{report.failed} failed, {report.skipped} skipped"
            )
        return report

    def _candidates(self, scope: ExecutionScope | None) -> list[QueueEntry]:
        query = f"{SELECT_QUEUE} WHERE eligible AND status IN ('PENDING', 'FAILED')"
        params: list[Any] = []
        if scope is not None:
            conditions, params = scope.sql()
            if conditions:
                query += f" AND {conditions}"
        query += " ORDER BY priority, queued_at, queue_id"
        return [to_queue_entry(row) for row in self._db.fetchall(query, params)]

    def plan(self, entry: QueueEntry, policy: Policy) -> PlannedAction:
        """Compute what an entry's action would do, without doing it."""
        partition = self._catalog.get_partition(
            entry.table_owner, entry.table_name, entry.partition_name
        )
        size_before = size_after = None
        location = codec = None
        target_location, target_codec = entry.target_location, entry.target_codec

        if partition is not None:
            size_before = partition.size_mb
            location, codec = partition.location, partition.codec
            if entry.action_type == ActionType.COMPRESS.value:
                target_location = location
                size_after = estimate_size(partition.size_mb, partition.codec, target_codec)
            elif entry.action_type == ActionType.MOVE.value:
                target_codec = target_codec or partition.codec
                size_after = estimate_size(partition.size_mb, partition.codec, target_codec)
            elif entry.action_type == ActionType.READ_ONLY.value:
                target_location, target_codec = location, codec
                size_after = partition.size_mb
            else:
                target_location, target_codec = location, codec
                size_after = 0.0

        return PlannedAction(
            queue_id=entry.queue_id,
            policy_id=entry.policy_id,
            policy_name=policy.policy_name,
            table_owner=entry.table_owner,
            table_name=entry.table_name,
            partition_name=entry.partition_name,
            action_type=entry.action_type,
            priority=entry.priority,
            current_location=location,
            current_codec=codec,
            target_location=target_location,
            target_codec=target_codec,
            size_before_mb=size_before,
            size_after_mb=size_after,
        )

    def _apply(self, entry: QueueEntry) -> StorageChange:
        owner, table, partition = entry.table_owner, entry.table_name, entry.partition_name
        action = entry.action_type
        if action == ActionType.COMPRESS.value:
            return self._catalog.recompress(owner, table, partition, entry.target_codec)
        if action == ActionType.MOVE.value:
            return self._catalog.relocate(
                owner, table, partition, entry.target_location, entry.target_codec
            )
        if action == ActionType.READ_ONLY.value:
            return self._catalog.set_read_only(owner, table, partition)
        if action == ActionType.TRUNCATE.value:
            return self._catalog.truncate_partition(owner, table, partition)
        if action == ActionType.DROP.value:
            return self._catalog.drop_partition(owner, table, partition)
        raise ExecutionError(f"Unsupported action type: {action}")

    def _claim(self, entry: QueueEntry, now: datetime) -> bool:
        """Move an entry to EXECUTING if it is still waiting."""
        row = self._db.fetchone(
            """
            UPDATE ilm_evaluation_queue
            SET status = 'EXECUTING', updated_at = ?
            WHERE queue_id = ? AND status IN ('PENDING', 'FAILED')
            RETURNING queue_id
            """,
            (now, entry.queue_id),
        )
        return row is not None

    def _execute_entry(
        self, entry: QueueEntry, policy: Policy, config: LifecycleConfig, run_id: str
    ) -> ActionOutcome | None:
        """
        Perform one entry's action.

        A partition that no longer exists when the entry is claimed (merged
        away or dropped since evaluation) gives a SKIPPED attempt.

        Returns:
            The outcome, or None when another run claimed the entry first
        """
        locks = LeaseLock(self._db_path, holder=run_id)
        lock_key = partition_lock_key(entry.table_owner, entry.table_name, entry.partition_name)
        change: StorageChange | None = None
        error: str | None = None
        skip_reason: str | None = None
        claimed = True
        executing = False

        with timed_section(f"{entry.action_type} {entry.partition_name}") as timing:
            try:
                with locks.hold(lock_key, config.partition_lock_timeout):
                    claimed = executing = self._claim(entry, timing.started_at)
                    if claimed:
                        if self._catalog.get_partition(
                            entry.table_owner, entry.table_name, entry.partition_name
                        ) is None:
                            skip_reason = PARTITION_GONE
                        else:
                            change = self._apply(entry)
            except LockTimeoutError as e:
                error = str(e)
                logger.warning(f"{entry.partition_name}: {error}, retrying next run")
            except (CatalogError, ExecutionError) as e:
                error = str(e)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

        if not claimed:
            logger.debug(f"Queue entry {entry.queue_id} was claimed by another run")
            return None

        partition = self._catalog.get_partition(
            entry.table_owner, entry.table_name, entry.partition_name
        )
        if skip_reason:
            status = ExecutionStatus.SKIPPED
        else:
            status = ExecutionStatus.FAILED if error else ExecutionStatus.SUCCESS
        if change is not None:
            size_before, size_after = change.size_before_mb, change.size_after_mb
        else:
            size_before = size_after = partition.size_mb if partition else None

        self._audit.log_execution(
            ExecutionLogEntry(
                run_id=run_id,
                queue_id=entry.queue_id,
                policy_id=policy.policy_id,
                policy_name=policy.policy_name,
                table_owner=entry.table_owner,
                table_name=entry.table_name,
                partition_name=entry.partition_name,
                action_type=entry.action_type,
                status=status.value,
                start_time=timing.started_at,
                end_time=timing.finished_at,
                duration_seconds=timing.elapsed_seconds,
                size_before_mb=size_before,
                size_after_mb=size_after,
                target_location=change.location if change else entry.target_location,
                target_codec=change.codec if change else entry.target_codec,
                error_message=error or skip_reason,
            )
        )

        outcome = ActionOutcome(
            queue_id=entry.queue_id,
            policy_name=policy.policy_name,
            partition_name=entry.partition_name,
            action_type=entry.action_type,
            status=status.value,
            size_before_mb=size_before,
            size_after_mb=size_after,
            duration_seconds=timing.elapsed_seconds,
            error=error,
        )

        if skip_reason:
            self._finish(entry, QueueStatus.SKIPPED, None, executing, reason=skip_reason)
            logger.warning(
                f"{entry.action_type} {entry.table_owner}.{entry.table_name}."
                f"{entry.partition_name} skipped: {skip_reason}"
            )
            return outcome

        if error:
            self._finish(entry, QueueStatus.FAILED, error, executing)
            logger.error(
                f"{entry.action_type} {entry.table_owner}.{entry.table_name}."
                f"{entry.partition_name} failed: {error}"
            )
            return outcome

        self._finish(entry, QueueStatus.SUCCESS, None, executing)
        self._tracker.update_after_transition(
            entry.table_owner,
            entry.table_name,
            entry.partition_name,
            location=change.location,
            codec=change.codec,
            size_mb=change.size_after_mb,
            num_rows=change.num_rows,
            read_only=change.read_only,
        )
        logger.info(
            f"{entry.action_type} {entry.table_owner}.{entry.table_name}.{entry.partition_name} "
            f"({policy.policy_name}): {size_before:.1f} MB -> {size_after:.1f} MB"
        )

        if self._enters_coarser_tier(entry) and config.auto_merge_partitions:
            outcome.merge = self._merge_after(entry, config)
        return outcome

    def _enters_coarser_tier(self, entry: QueueEntry) -> bool:
        if entry.action_type != ActionType.MOVE.value:
            return False
        return self._catalog.get_location_tier(entry.target_location) in COARSE_TIERS

    def _merge_after(self, entry: QueueEntry, config: LifecycleConfig) -> MergeResult | None:
        try:
            return self._merger.merge_into_coarser(
                entry.table_owner, entry.table_name, entry.partition_name, config=config
            )
        except Exception as e:
            logger.error(f"Post-move merge of {entry.partition_name} failed: {e}")
            return None

    def _finish(
        self,
        entry: QueueEntry,
        status: QueueStatus,
        error: str | None,
        executing: bool,
        reason: str | None = None,
    ) -> None:
        # An entry never claimed (lock timeout) is only updated while still waiting
        expected = "('EXECUTING')" if executing else "('PENDING', 'FAILED')"
        self._db.execute(
            f"""
            UPDATE ilm_evaluation_queue
            SET status = ?, attempts = attempts + 1, last_error = ?,
                reason = COALESCE(?, reason), updated_at = ?
            WHERE queue_id = ? AND status IN {expected}
            """,
            (status.value, error, reason, datetime.now(), entry.queue_id),
        )

    def _mark_skipped(self, entry: QueueEntry, reason: str) -> None:
        self._db.execute(
            """
            UPDATE ilm_evaluation_queue
            SET status = 'SKIPPED', reason = ?, updated_at = ?
            WHERE queue_id = ? AND status IN ('PENDING', 'FAILED')
            """,
            (reason, datetime.now(), entry.queue_id),
        )
        logger.debug(f"Skipped queue entry {entry.queue_id}: {reason}")
