"""
Tests for partition consolidation.

Tests cover:
- Coarse partition naming
- Renaming the first fine partition into the coarse one
- Merging adjacent compatible partitions
- Skipped and failed attempts, each with one merge log row
"""

from datetime import date

import pytest

from ilm.data.catalog import ObjectCatalog
from ilm.lifecycle.audit import AuditLog
from ilm.lifecycle.locks import LeaseLock, object_lock_key
from ilm.lifecycle.merge import PartitionMerger, coarser_partition_name
from ilm.lifecycle.settings import LifecycleConfig


@pytest.fixture
def history(test_db):
    """
    DWH.SALES_HIST with a yearly P_2022 and monthly 2023 partitions.

    P_2023_01 and P_2023_02 sit in TBS_COLD, P_2023_03 in TBS_HOT.
    """
    cat = ObjectCatalog(test_db)
    cat.register_object("DWH", "SALES_HIST", partitioned=True, partition_interval="MONTHLY")
    cat.add_partition("DWH", "SALES_HIST", "P_2022", date(2023, 1, 1), "TBS_COLD", "BASIC", 500, 50.0)
    cat.add_partition("DWH", "SALES_HIST", "P_2023_01", date(2023, 2, 1), "TBS_COLD", "BASIC", 100, 10.0)
    cat.add_partition("DWH", "SALES_HIST", "P_2023_02", date(2023, 3, 1), "TBS_COLD", "BASIC", 80, 8.0)
    cat.add_partition("DWH", "SALES_HIST", "P_2023_03", date(2023, 4, 1), "TBS_HOT", "NONE", 90, 18.0)
    return cat


@pytest.fixture
def merger(test_db):
    return PartitionMerger(test_db)


def names(cat):
    return [p.partition_name for p in cat.list_partitions("DWH", "SALES_HIST")]


class TestCoarserName:
    """Tests for coarser_partition_name."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("P_2024_01", "P_2024"),
            ("P_2024_12", "P_2024"),
            ("P_2024_03_05", "P_2024_03"),
            ("P_2024", None),
            ("P_2024_13", None),
            ("P_MAXVALUE", None),
            ("SALES_2024_01", None),
        ],
    )
    def test_names(self, name, expected):
        """Monthly names fold to years, daily names to months."""
        assert coarser_partition_name(name) == expected


class TestMergeIntoCoarser:
    """Tests for PartitionMerger.merge_into_coarser."""

    def test_first_partition_is_renamed(self, test_db, history, merger):
        """Without a coarse partition, the source becomes it."""
        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")

        assert result.status == "SUCCESS"
        assert result.target_partition == "P_2023"
        assert result.rows_merged == 100
        assert names(history) == ["P_2022", "P_2023", "P_2023_02", "P_2023_03"]
        renamed = history.get_partition("DWH", "SALES_HIST", "P_2023")
        assert (renamed.high_value, renamed.location, renamed.num_rows) == (date(2023, 2, 1), "TBS_COLD", 100)

    def test_adjacent_partition_is_merged(self, test_db, history, merger):
        """A compatible neighbour is folded into the coarse partition."""
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")

        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_02")

        assert result.status == "SUCCESS"
        assert result.rows_merged == 80
        assert names(history) == ["P_2022", "P_2023", "P_2023_03"]
        merged = history.get_partition("DWH", "SALES_HIST", "P_2023")
        assert merged.high_value == date(2023, 3, 1)
        assert merged.num_rows == 180
        assert merged.size_mb == pytest.approx(18.0)

    def test_non_fine_name_skipped(self, test_db, history, merger):
        """Coarse partitions are never merged further."""
        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2022")

        assert result.status == "SKIPPED"
        assert result.target_partition is None
        assert names(history)[0] == "P_2022"

    def test_missing_source_skipped(self, test_db, history, merger):
        """A source that no longer exists is skipped."""
        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_07")

        assert result.status == "SKIPPED"
        assert "no longer exists" in result.reason

    def test_location_mismatch_skipped(self, test_db, history, merger):
        """Partitions in different locations are not merged."""
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_02")

        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_03")

        assert result.status == "SKIPPED"
        assert "Location mismatch" in result.reason
        assert "P_2023_03" in names(history)

    def test_codec_mismatch_skipped(self, test_db, history, merger):
        """Partitions with different codecs are not merged."""
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")
        history.recompress("DWH", "SALES_HIST", "P_2023_02", "QUERY HIGH")

        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_02")

        assert result.status == "SKIPPED"
        assert "Codec mismatch" in result.reason

    def test_read_only_target_skipped(self, test_db, history, merger):
        """A read-only coarse partition does not accept merges."""
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")
        history.set_read_only("DWH", "SALES_HIST", "P_2023")

        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_02")

        assert result.status == "SKIPPED"
        assert "read-only" in result.reason

    def test_not_adjacent_skipped(self, test_db, history, merger):
        """Only neighbouring partitions are merged."""
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")
        history.relocate("DWH", "SALES_HIST", "P_2023_03", "TBS_COLD", "BASIC")
        history.drop_partition("DWH", "SALES_HIST", "P_2023_02")
        history.add_partition("DWH", "SALES_HIST", "P_2023_02", date(2023, 3, 1), "TBS_HOT", "NONE", 80, 8.0)

        result = merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_03")

        assert result.status == "SKIPPED"
        assert "not adjacent" in result.reason

    def test_auto_merge_disabled(self, test_db, history, merger):
        """With auto-merge off, nothing changes."""
        result = merger.merge_into_coarser(
            "DWH", "SALES_HIST", "P_2023_01", config=LifecycleConfig(auto_merge_partitions=False)
        )

        assert result.status == "SKIPPED"
        assert "P_2023_01" in names(history)

    def test_lock_timeout_fails(self, test_db, history, merger):
        """A held object lock fails the attempt."""
        LeaseLock(test_db, holder="other-merge").try_acquire(object_lock_key("DWH", "SALES_HIST"))

        result = merger.merge_into_coarser(
            "DWH", "SALES_HIST", "P_2023_01", config=LifecycleConfig(merge_lock_timeout=0)
        )

        assert result.status == "FAILED"
        assert not result.success
        assert "Timed out" in result.error
        assert "P_2023_01" in names(history)

    def test_every_attempt_logged(self, test_db, history, merger):
        """Each attempt writes one merge log row, whatever its outcome."""
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2022")
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_01")
        LeaseLock(test_db, holder="other-merge").try_acquire(object_lock_key("DWH", "SALES_HIST"))
        merger.merge_into_coarser("DWH", "SALES_HIST", "P_2023_02", config=LifecycleConfig(merge_lock_timeout=0))

        log = AuditLog(test_db).merges(table_name="SALES_HIST")

        assert list(log["status"]) == ["SKIPPED", "SUCCESS", "FAILED"]
        assert log.iloc[2]["error_message"].startswith("Timed out")


class TestConsolidate:
    """Tests for PartitionMerger.consolidate."""

    def test_consolidates_coarse_tier_partitions(self, test_db, history, merger):
        """Monthly partitions in cold storage fold into the yearly partition."""
        result = merger.consolidate("DWH", "SALES_HIST")

        assert (result.merged, result.skipped, result.failed) == (2, 0, 0)
        assert result.success
        assert names(history) == ["P_2022", "P_2023", "P_2023_03"]

    def test_hot_partitions_untouched(self, test_db, history, merger):
        """Partitions in hot locations are not candidates."""
        result = merger.consolidate("DWH", "SALES_HIST")

        assert all(r.source_partition != "P_2023_03" for r in result.results)
