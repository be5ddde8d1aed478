"""
Tests for queue execution.

Tests cover:
- Executing queued actions and keeping state consistent for re-evaluation
- One action per partition per run, highest priority first
- Simulation planning the same actions without side effects
- Lock timeouts, emergency stop, execution window and action budget
- Consolidation after moves into coarse tiers
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from ilm.data.catalog import CatalogError, ObjectCatalog
from ilm.lifecycle.audit import AuditLog
from ilm.lifecycle.evaluation import PARTITION_GONE, EvaluationEngine
from ilm.lifecycle.execution import ExecutionEngine, ExecutionScope
from ilm.lifecycle.locks import LeaseLock, partition_lock_key
from ilm.lifecycle.policies import Policy, PolicyStore
from ilm.lifecycle.settings import ConfigStore, LifecycleConfig
from ilm.lifecycle.tracker import PartitionTracker

AS_OF = datetime(2024, 3, 6, 12, 0)
NIGHT = datetime(2024, 3, 6, 23, 0)


def compress(name="SALES_COMPRESS_30D", priority=100, **overrides):
    fields = dict(
        policy_name=name,
        table_owner="DWH",
        table_name="SALES_FACT",
        policy_type="COMPRESSION",
        action_type="COMPRESS",
        age_days=30,
        compression_type="QUERY HIGH",
        priority=priority,
    )
    fields.update(overrides)
    return Policy(**fields)


def move(name="SALES_MOVE", target="TBS_WARM", priority=200, **overrides):
    return compress(
        name,
        priority=priority,
        policy_type="TIERING",
        action_type="MOVE",
        target_location=target,
        compression_type=overrides.pop("compression_type", None),
        **overrides,
    )


@pytest.fixture
def tracked(test_db, catalog):
    PartitionTracker(test_db).refresh("DWH", "SALES_FACT", as_of=AS_OF)
    return test_db


def evaluate(db_path):
    return EvaluationEngine(db_path).evaluate_all(as_of=AS_OF)


def statuses(db_path):
    return {
        (e.policy_id, e.partition_name): e.status for e in EvaluationEngine(db_path).get_queue()
    }


class TestExecute:
    """Tests for real execution runs."""

    def test_compress_then_nothing_left(self, tracked, catalog):
        """An executed compression is at target on the next evaluation."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        engine = ExecutionEngine(tracked)

        report = engine.execute(now=AS_OF)

        assert report.succeeded == 2
        assert report.success
        partition = catalog.get_partition("DWH", "SALES_FACT", "P_2024_01")
        assert partition.codec == "QUERY HIGH"
        assert partition.size_mb == pytest.approx(120.0)
        record = PartitionTracker(tracked).get_record("DWH", "SALES_FACT", "P_2024_01")
        assert (record.codec, record.size_mb) == ("QUERY HIGH", pytest.approx(120.0))

        PartitionTracker(tracked).refresh("DWH", "SALES_FACT", as_of=AS_OF)
        summary = evaluate(tracked)
        assert summary.total_eligible == 0
        assert engine.execute(now=AS_OF).outcomes == []

    def test_one_log_row_per_attempt(self, tracked):
        """Each executed entry writes one log row with sizes and the run id."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(now=AS_OF)
        log = AuditLog(tracked).executions(run_id=report.run_id)

        assert len(log) == 2
        row = log[log["partition_name"] == "P_2024_01"].iloc[0]
        assert row["status"] == "SUCCESS"
        assert row["size_before_mb"] == pytest.approx(1200.0)
        assert row["size_after_mb"] == pytest.approx(120.0)
        assert set(statuses(tracked).values()) == {"SUCCESS"}

    def test_highest_priority_wins(self, tracked):
        """With two eligible policies, only the higher priority acts on a partition."""
        store = PolicyStore(tracked)
        first = store.create(compress(priority=100))
        second = store.create(move(priority=200))
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(now=AS_OF)
        log = AuditLog(tracked).executions(partition_name="P_2024_01")

        assert len(log) == 1
        assert int(log.iloc[0]["policy_id"]) == first.policy_id
        assert report.skipped == 2
        queue = statuses(tracked)
        assert queue[(first.policy_id, "P_2024_01")] == "SUCCESS"
        assert queue[(second.policy_id, "P_2024_01")] == "SKIPPED"
        superseded = EvaluationEngine(tracked).get_queue(policy_id=second.policy_id)
        assert all("Superseded by SALES_COMPRESS_30D" in e.reason for e in superseded)

    def test_disabled_policy_entries_skipped(self, tracked):
        """Entries of a policy disabled after evaluation are not executed."""
        store = PolicyStore(tracked)
        policy = store.create(compress())
        evaluate(tracked)
        store.set_enabled(policy.policy_id, False)

        report = ExecutionEngine(tracked).execute(now=AS_OF)

        assert report.outcomes == []
        assert report.skipped == 2
        assert set(statuses(tracked).values()) == {"SKIPPED"}

    def test_budget(self, tracked):
        """max_actions limits the number of attempts."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(max_actions=1, now=AS_OF)

        assert len(report.outcomes) == 1
        assert report.outcomes[0].partition_name == "P_2023_12"
        assert sorted(statuses(tracked).values()) == ["PENDING", "SUCCESS"]

    def test_budget_from_config(self, tracked):
        """Without max_actions, MAX_ACTIONS_PER_RUN applies."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(config=LifecycleConfig(max_actions_per_run=1), now=AS_OF)

        assert len(report.outcomes) == 1

    def test_scope(self, tracked):
        """A scoped run only drains matching entries."""
        store = PolicyStore(tracked)
        store.create(compress(age_days=60))
        other = store.create(compress("SALES_RO", policy_type="ARCHIVAL", action_type="READ_ONLY",
                                      compression_type=None, priority=300))
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(scope=ExecutionScope(policy_id=other.policy_id), now=AS_OF)

        assert [o.policy_name for o in report.outcomes] == ["SALES_RO", "SALES_RO"]


class TestSimulate:
    """Tests for simulate mode."""

    def test_simulation_matches_real_run(self, tracked, catalog):
        """A simulation plans what the real run then does, and changes nothing."""
        store = PolicyStore(tracked)
        store.create(compress(priority=100))
        store.create(move(priority=200))
        evaluate(tracked)
        engine = ExecutionEngine(tracked)
        before = statuses(tracked)

        preview = engine.execute(simulate=True, now=AS_OF)

        assert [(p.partition_name, p.action_type) for p in preview.planned] == [
            ("P_2023_12", "COMPRESS"),
            ("P_2024_01", "COMPRESS"),
        ]
        assert preview.planned[1].size_after_mb == pytest.approx(120.0)
        assert preview.outcomes == []
        assert statuses(tracked) == before
        assert catalog.get_partition("DWH", "SALES_FACT", "P_2024_01").codec == "NONE"
        assert AuditLog(tracked).executions().empty

        report = engine.execute(now=AS_OF)
        assert [(o.partition_name, o.action_type) for o in report.outcomes] == [
            (p.partition_name, p.action_type) for p in preview.planned
        ]


class TestStopConditions:
    """Tests for conditions that prevent or stop a run."""

    def test_emergency_stop(self, tracked):
        """No action starts while the emergency stop is set."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        ConfigStore(tracked).set_emergency_stop(True)

        report = ExecutionEngine(tracked).execute(now=AS_OF)

        assert report.stopped_reason == "Emergency stop is set"
        assert report.outcomes == []
        assert set(statuses(tracked).values()) == {"PENDING"}

    def test_emergency_stop_between_actions(self, tracked, catalog):
        """A stop set during an action lets it finish and starts no other."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        real_recompress = ObjectCatalog.recompress

        def recompress_then_stop(self, *args, **kwargs):
            ConfigStore(tracked).set_emergency_stop(True)
            return real_recompress(self, *args, **kwargs)

        with patch.object(ObjectCatalog, "recompress", recompress_then_stop):
            report = ExecutionEngine(tracked).execute(now=AS_OF)

        assert report.stopped_reason == "Emergency stop is set"
        assert [(o.partition_name, o.status) for o in report.outcomes] == [("P_2023_12", "SUCCESS")]
        assert sorted(statuses(tracked).values()) == ["PENDING", "SUCCESS"]
        assert catalog.get_partition("DWH", "SALES_FACT", "P_2024_01").codec == "NONE"

    def test_scheduled_outside_window(self, tracked):
        """Scheduled runs only start inside the execution window."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        engine = ExecutionEngine(tracked)

        stopped = engine.execute(scheduled=True, now=AS_OF)
        assert stopped.stopped_reason == "Outside execution window 22:00-06:00"
        assert stopped.outcomes == []

        report = engine.execute(scheduled=True, now=NIGHT)
        assert report.stopped_reason is None
        assert report.succeeded == 2

    def test_manual_run_ignores_window(self, tracked):
        """Unscheduled runs are not bound to the window."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)

        assert ExecutionEngine(tracked).execute(scheduled=False, now=AS_OF).succeeded == 2

    def test_auto_execution_disabled(self, tracked):
        """Scheduled runs respect ENABLE_AUTO_EXECUTION."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        ConfigStore(tracked).set("ENABLE_AUTO_EXECUTION", "N")

        report = ExecutionEngine(tracked).execute(scheduled=True, now=NIGHT)

        assert report.stopped_reason == "Automatic execution is disabled"


class TestLocking:
    """Tests for partition locks during execution."""

    def test_lock_timeout_fails_and_retries(self, tracked, catalog):
        """A held partition lock fails the entry, and a later run retries it."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        key = partition_lock_key("DWH", "SALES_FACT", "P_2024_01")
        other = LeaseLock(tracked, holder="other-session")
        assert other.try_acquire(key)
        config = LifecycleConfig(partition_lock_timeout=0)
        engine = ExecutionEngine(tracked)

        report = engine.execute(config=config, now=AS_OF)

        assert (report.succeeded, report.failed) == (1, 1)
        entry = [e for e in EvaluationEngine(tracked).get_queue() if e.partition_name == "P_2024_01"][0]
        assert (entry.status, entry.attempts) == ("FAILED", 1)
        assert "Timed out" in entry.last_error
        log = AuditLog(tracked).executions(partition_name="P_2024_01")
        assert list(log["status"]) == ["FAILED"]
        assert catalog.get_partition("DWH", "SALES_FACT", "P_2024_01").codec == "NONE"

        other.release(key)
        retry = engine.execute(config=config, now=AS_OF)

        assert [o.partition_name for o in retry.outcomes] == ["P_2024_01"]
        assert retry.succeeded == 1
        assert catalog.get_partition("DWH", "SALES_FACT", "P_2024_01").codec == "QUERY HIGH"

    def test_storage_failure_recorded(self, tracked, catalog):
        """A failing storage operation marks the entry FAILED and logs the error."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)

        with patch.object(ObjectCatalog, "recompress", side_effect=CatalogError("disk full")):
            report = ExecutionEngine(tracked).execute(now=AS_OF)

        assert (report.succeeded, report.failed) == (0, 2)
        assert set(statuses(tracked).values()) == {"FAILED"}
        log = AuditLog(tracked).executions()
        assert set(log["error_message"]) == {"disk full"}
        assert catalog.get_partition("DWH", "SALES_FACT", "P_2024_01").codec == "NONE"

    def test_locks_released_after_run(self, tracked):
        """Partition locks are released once an action finishes."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)

        ExecutionEngine(tracked).execute(now=AS_OF)

        assert not LeaseLock(tracked).is_locked(partition_lock_key("DWH", "SALES_FACT", "P_2024_01"))


class TestMergeAfterMove:
    """Tests for consolidation following moves into coarse tiers."""

    def test_move_to_cold_folds_into_yearly(self, tracked, catalog):
        """Monthly partitions moved to a cold location become yearly partitions."""
        PolicyStore(tracked).create(move("SALES_TO_COLD", target="TBS_COLD", priority=100))
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(now=AS_OF)

        assert report.succeeded == 2
        assert [o.merge.status for o in report.outcomes] == ["SUCCESS", "SUCCESS"]
        names = [p.partition_name for p in catalog.list_partitions("DWH", "SALES_FACT")]
        assert names == ["P_2023", "P_2024", "P_2024_02"]
        assert len(AuditLog(tracked).merges(table_name="SALES_FACT")) == 2

    def test_move_to_hot_does_not_merge(self, tracked, catalog):
        """Moves within the hot tier leave partition names alone."""
        PolicyStore(tracked).create(move("SALES_TO_USERS", target="USERS", priority=100))
        evaluate(tracked)

        report = ExecutionEngine(tracked).execute(now=AS_OF)

        assert all(o.merge is None for o in report.outcomes)
        assert AuditLog(tracked).merges().empty

    def test_auto_merge_disabled(self, tracked, catalog):
        """With auto-merge off, moved partitions keep their names."""
        PolicyStore(tracked).create(move("SALES_TO_COLD", target="TBS_COLD", priority=100))
        evaluate(tracked)

        ExecutionEngine(tracked).execute(config=LifecycleConfig(auto_merge_partitions=False), now=AS_OF)

        names = [p.partition_name for p in catalog.list_partitions("DWH", "SALES_FACT")]
        assert names == ["P_2023_12", "P_2024_01", "P_2024_02"]


class TestVanishedPartitions:
    """Tests for queue entries whose partition was merged away or dropped."""

    def test_missing_partition_is_skipped(self, tracked, catalog):
        """An entry whose partition is gone is skipped without using the budget."""
        PolicyStore(tracked).create(compress())
        evaluate(tracked)
        catalog.drop_partition("DWH", "SALES_FACT", "P_2023_12")

        report = ExecutionEngine(tracked).execute(max_actions=1, now=AS_OF)

        assert (report.succeeded, report.failed, report.skipped) == (1, 0, 1)
        assert [o.partition_name for o in report.outcomes] == ["P_2024_01"]
        entry = [e for e in EvaluationEngine(tracked).get_queue() if e.partition_name == "P_2023_12"][0]
        assert (entry.status, entry.reason) == ("SKIPPED", PARTITION_GONE)
        log = AuditLog(tracked).executions(partition_name="P_2023_12")
        assert list(log["status"]) == ["SKIPPED"]

        assert ExecutionEngine(tracked).execute(now=AS_OF).outcomes == []

    def test_entries_retired_after_merge(self, tracked, catalog):
        """Entries of a partition renamed by a merge are retired and never retried."""
        store = PolicyStore(tracked)
        store.create(move("SALES_TO_COLD", target="TBS_COLD", priority=100))
        compress_policy = store.create(compress(priority=200))
        evaluate(tracked)
        engine = ExecutionEngine(tracked)
        engine.execute(max_actions=1, now=AS_OF)
        assert catalog.get_partition("DWH", "SALES_FACT", "P_2023_12") is None

        retired = []
        for day in range(1, 5):
            as_of = AS_OF + timedelta(days=day)
            PartitionTracker(tracked).refresh("DWH", "SALES_FACT", as_of=as_of)
            summary = EvaluationEngine(tracked).evaluate_all(as_of=as_of)
            retired.append({r.policy_name: r.retired for r in summary.results})
            engine.execute(max_actions=1, now=as_of)

        assert retired[0]["SALES_COMPRESS_30D"] == 1
        entry = statuses(tracked)[(compress_policy.policy_id, "P_2023_12")]
        assert entry == "SKIPPED"
        log = AuditLog(tracked).executions()
        assert "FAILED" not in set(log["status"])
        assert list(log[log["partition_name"] == "P_2023_12"]["status"]) == ["SUCCESS"]
