"""Tests for lifecycle reports."""

from datetime import datetime

import pandas as pd
import pytest

from ilm.lifecycle.evaluation import EvaluationEngine
from ilm.lifecycle.execution import ExecutionEngine
from ilm.lifecycle.policies import Policy, PolicyStore
from ilm.lifecycle.reports import (
    URGENCY_ORDER,
    execution_stats,
    generate_summary,
    lifecycle_status,
    merge_stats,
    policy_summary,
    space_savings,
    to_records,
    upcoming_actions,
    urgency,
)
from ilm.lifecycle.tracker import PartitionTracker

AS_OF = datetime(2024, 3, 6, 12, 0)


@pytest.fixture
def compress_policy(test_db, catalog):
    """A 30-day compression policy over tracked SALES_FACT partitions."""
    PartitionTracker(test_db).refresh("DWH", "SALES_FACT", as_of=AS_OF)
    return PolicyStore(test_db).create(
        Policy(
            policy_name="SALES_COMPRESS_30D",
            table_owner="DWH",
            table_name="SALES_FACT",
            policy_type="COMPRESSION",
            action_type="COMPRESS",
            age_days=30,
            compression_type="QUERY HIGH",
        )
    )


@pytest.fixture
def executed(test_db, compress_policy):
    """The compression policy evaluated and executed once."""
    EvaluationEngine(test_db).evaluate_all(as_of=AS_OF)
    ExecutionEngine(test_db).execute(now=AS_OF)
    return compress_policy


class TestUrgency:
    """Tests for urgency buckets."""

    @pytest.mark.parametrize(
        "days,bucket",
        [(-3, "Overdue"), (0, "Today"), (1, "This Week"), (7, "This Week"), (8, "This Month"),
         (30, "This Month"), (31, "Future")],
    )
    def test_buckets(self, days, bucket):
        """Days until due map onto fixed buckets."""
        assert urgency(days) == bucket


class TestReports:
    """Tests for the report rollups."""

    def test_execution_stats(self, test_db, executed):
        """Execution outcomes are rolled up per policy."""
        stats = execution_stats(db_path=test_db)

        row = stats.iloc[0]
        assert (row["policy_name"], row["total"], row["succeeded"], row["failed"]) == (
            "SALES_COMPRESS_30D", 2, 2, 0,
        )
        assert row["space_saved_mb"] == pytest.approx(1980.0)
        assert row["avg_compression_ratio"] == pytest.approx(10.0)

    def test_space_savings(self, test_db, executed):
        """Savings are summed per object."""
        savings = space_savings(test_db)

        assert list(savings["table_name"]) == ["SALES_FACT"]
        assert savings.iloc[0]["space_saved_mb"] == pytest.approx(1980.0)

    def test_policy_summary(self, test_db, executed):
        """Policies list queue and execution counts."""
        summary = policy_summary(test_db)

        row = summary.iloc[0]
        assert (row["pending"], row["failed"], row["executed"]) == (0, 0, 2)

    def test_policy_summary_pending(self, test_db, compress_policy):
        """Evaluated but unexecuted entries count as pending."""
        EvaluationEngine(test_db).evaluate_all(as_of=AS_OF)

        assert policy_summary(test_db).iloc[0]["pending"] == 2

    def test_upcoming_actions(self, test_db, compress_policy):
        """Due dates follow the tracked ages."""
        upcoming = upcoming_actions(test_db)

        assert list(upcoming["partition_name"]) == ["P_2023_12", "P_2024_01", "P_2024_02"]
        assert list(upcoming["days_until_due"]) == [-36, -5, 24]
        assert list(upcoming["urgency"]) == ["Overdue", "Overdue", "This Month"]

    def test_upcoming_excludes_done(self, test_db, executed):
        """Partitions already at target are not upcoming."""
        assert list(upcoming_actions(test_db)["partition_name"]) == ["P_2024_02"]

    def test_upcoming_empty(self, test_db):
        """Without policies, the frame is empty but has its columns."""
        upcoming = upcoming_actions(test_db)

        assert upcoming.empty
        assert "urgency" in upcoming.columns

    def test_lifecycle_status(self, test_db, compress_policy):
        """Tracked partitions are grouped by temperature."""
        status = lifecycle_status(test_db)

        assert list(status["temperature"]) == ["HOT"]
        assert int(status.iloc[0]["partitions"]) == 3
        assert status.iloc[0]["size_mb"] == pytest.approx(3000.0)

    def test_rollups_after_merge(self, test_db, catalog):
        """Partitions merged away drop out of the status and upcoming rollups."""
        tracker = PartitionTracker(test_db)
        tracker.refresh("DWH", "SALES_FACT", as_of=AS_OF)
        PolicyStore(test_db).create(
            Policy(
                policy_name="SALES_TO_COLD",
                table_owner="DWH",
                table_name="SALES_FACT",
                policy_type="TIERING",
                action_type="MOVE",
                age_days=30,
                target_location="TBS_COLD",
            )
        )
        EvaluationEngine(test_db).evaluate_all(as_of=AS_OF)
        ExecutionEngine(test_db).execute(now=AS_OF)
        tracker.refresh("DWH", "SALES_FACT", as_of=AS_OF)

        partitions = catalog.list_partitions("DWH", "SALES_FACT")
        status = lifecycle_status(test_db)
        assert int(status["partitions"].sum()) == len(partitions) == 3
        assert status["size_mb"].sum() == pytest.approx(sum(p.size_mb for p in partitions))

        upcoming = set(upcoming_actions(test_db)["partition_name"])
        assert not upcoming & {"P_2023_12", "P_2024_01"}

    def test_merge_stats_empty(self, test_db):
        """Without merges, merge_stats is empty."""
        assert merge_stats(test_db).empty


class TestSummary:
    """Tests for generate_summary and to_records."""

    def test_summary_shape(self, test_db, executed):
        """The summary condenses every rollup."""
        summary = generate_summary(db_path=test_db)

        assert set(summary) == {
            "generated_at", "emergency_stop", "policies", "queue", "executions",
            "merges", "temperatures", "upcoming",
        }
        assert summary["policies"] == {"total": 1, "enabled": 1}
        assert summary["queue"] == {"SUCCESS": 2}
        assert summary["executions"]["succeeded"] == 2
        assert summary["merges"] == {"attempts": 0, "merged": 0, "failed": 0}
        assert list(summary["upcoming"]) == URGENCY_ORDER
        assert summary["upcoming"]["This Month"] == 1
        assert summary["emergency_stop"] is False

    def test_summary_on_empty_database(self, test_db):
        """An empty database yields zero counts."""
        summary = generate_summary(db_path=test_db)

        assert summary["executions"]["total"] == 0
        assert summary["queue"] == {}
        assert summary["temperatures"] == []

    def test_to_records_replaces_missing(self):
        """Missing values become None and timestamps ISO strings."""
        df = pd.DataFrame({"a": [1.5, None], "when": [datetime(2024, 3, 6), None]})

        records = to_records(df)

        assert records[0]["when"] == "2024-03-06T00:00:00"
        assert records[1] == {"a": None, "when": None}
