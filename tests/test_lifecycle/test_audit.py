"""Tests for the execution and merge audit logs."""

from datetime import datetime, timedelta

import pytest

from ilm.lifecycle.audit import AuditLog, ExecutionLogEntry, MergeLogEntry

AS_OF = datetime(2024, 3, 6, 12, 0)


def execution(partition="P_2024_01", status="SUCCESS", start=AS_OF, before=1200.0, after=120.0, **extra):
    return ExecutionLogEntry(
        run_id=extra.pop("run_id", "run-1"),
        policy_id=extra.pop("policy_id", 1),
        policy_name="SALES_COMPRESS_30D",
        table_owner="DWH",
        table_name="SALES_FACT",
        partition_name=partition,
        action_type="COMPRESS",
        status=status,
        start_time=start,
        end_time=start + timedelta(seconds=2),
        duration_seconds=2.0,
        size_before_mb=before,
        size_after_mb=after,
        **extra,
    )


def merge(source="P_2024_01", status="SUCCESS", start=AS_OF):
    return MergeLogEntry(
        table_owner="DWH",
        table_name="SALES_FACT",
        source_partition=source,
        target_partition="P_2024",
        status=status,
        reason="Created P_2024 from P_2024_01",
        start_time=start,
        rows_merged=12_000,
    )


class TestExecutionLogEntry:
    """Tests for derived execution log fields."""

    def test_space_saved_and_ratio(self):
        """Savings and ratio follow from the sizes."""
        entry = execution()

        assert entry.space_saved_mb == pytest.approx(1080.0)
        assert entry.compression_ratio == pytest.approx(10.0)

    def test_ratio_undefined_when_nothing_remains(self):
        """A dropped partition has no compression ratio."""
        entry = execution(after=0.0)

        assert entry.compression_ratio is None
        assert entry.space_saved_mb == pytest.approx(1200.0)

    def test_missing_sizes(self):
        """Without sizes, no savings are derived."""
        entry = execution(before=None, after=None)

        assert entry.space_saved_mb is None
        assert entry.compression_ratio is None


class TestAuditLog:
    """Tests for AuditLog."""

    def test_ids_are_sequential(self, test_db):
        """Each appended row gets the next id."""
        audit = AuditLog(test_db)

        assert audit.log_execution(execution()) == 1
        assert audit.log_execution(execution("P_2023_12")) == 2
        assert audit.log_merge(merge()) == 1

    def test_query_filters(self, test_db):
        """executions() filters on any combination of columns."""
        audit = AuditLog(test_db)
        audit.log_execution(execution(run_id="run-1"))
        audit.log_execution(execution("P_2023_12", run_id="run-1"))
        audit.log_execution(execution(status="FAILED", run_id="run-2", error_message="Timed out"))

        assert len(audit.executions()) == 3
        assert len(audit.executions(run_id="run-1")) == 2
        failed = audit.executions(partition_name="P_2024_01", run_id="run-2")
        assert list(failed["error_message"]) == ["Timed out"]
        assert audit.executions(policy_id=99).empty

    def test_stored_savings(self, test_db):
        """Derived fields are stored with the row."""
        audit = AuditLog(test_db)
        audit.log_execution(execution())

        row = audit.executions().iloc[0]
        assert row["space_saved_mb"] == pytest.approx(1080.0)
        assert row["compression_ratio"] == pytest.approx(10.0)

    def test_merges_query(self, test_db):
        """merges() filters on source partition."""
        audit = AuditLog(test_db)
        audit.log_merge(merge())
        audit.log_merge(merge("P_2024_02", status="SKIPPED"))

        assert list(audit.merges(source_partition="P_2024_02")["status"]) == ["SKIPPED"]


class TestCleanup:
    """Tests for log retention cleanup."""

    def test_cleanup_deletes_old_rows(self, test_db):
        """Rows older than the retention period are deleted from both logs."""
        audit = AuditLog(test_db)
        audit.log_execution(execution(start=AS_OF - timedelta(days=400)))
        audit.log_execution(execution(start=AS_OF - timedelta(days=10)))
        audit.log_merge(merge(start=AS_OF - timedelta(days=500)))

        result = audit.cleanup(365, as_of=AS_OF)

        assert (result.execution_rows, result.merge_rows, result.records_deleted) == (1, 1, 2)
        assert len(audit.executions()) == 1
        assert audit.merges().empty

    def test_dry_run_only_counts(self, test_db):
        """A dry run reports without deleting."""
        audit = AuditLog(test_db)
        audit.log_execution(execution(start=AS_OF - timedelta(days=400)))

        result = audit.cleanup(365, as_of=AS_OF, dry_run=True)

        assert result.execution_rows == 1
        assert result.to_dict()["dry_run"] is True
        assert len(audit.executions()) == 1
