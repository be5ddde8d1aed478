"""
Partition consolidation.

Once a fine-grained partition has aged into a coarse tier it is folded into
its enclosing coarse partition: monthly P_YYYY_MM into yearly P_YYYY, daily
P_YYYY_MM_DD into monthly P_YYYY_MM. The first partition to arrive becomes
the coarse partition by renaming; later ones are merged into it.

Every attempt writes exactly one merge log row. Preconditions that do not
hold give SKIPPED. Lock timeouts and storage failures give FAILED. Neither
ever touches the tier transition that led to the merge.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ilm.data.catalog import CatalogError, ObjectCatalog
from ilm.lifecycle.audit import AuditLog, MergeLogEntry, MergeStatus
from ilm.lifecycle.errors import LockTimeoutError, MergeError
from ilm.lifecycle.locks import LeaseLock, object_lock_key
from ilm.lifecycle.settings import LifecycleConfig, load_config
from ilm.utils.timing import timed_section

MONTHLY_PARTITION = re.compile(r"^P_(\d{4})_(0[1-9]|1[0-2])$")
DAILY_PARTITION = re.compile(r"^P_(\d{4})_(0[1-9]|1[0-2])_(0[1-9]|[12]\d|3[01])$")

# Location tiers whose partitions are consolidated
COARSE_TIERS = {"WARM", "COLD", "FROZEN"}


def coarser_partition_name(partition_name: str) -> str | None:
    """
    Name of the coarse partition a fine-grained partition folds into.

    Returns:
        P_YYYY for P_YYYY_MM, P_YYYY_MM for P_YYYY_MM_DD, else None
    """
    match = MONTHLY_PARTITION.match(partition_name)
    if match:
        return f"P_{match.group(1)}"
    match = DAILY_PARTITION.match(partition_name)
    if match:
        return f"P_{match.group(1)}_{match.group(2)}"
    return None


@dataclass
class MergeResult:
    """Outcome of one merge attempt."""

    owner: str
    object_name: str
    source_partition: str
    target_partition: str | None
    status: str
    reason: str
    rows_merged: int = 0
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status != MergeStatus.FAILED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "object_name": self.object_name,
            "source_partition": self.source_partition,
            "target_partition": self.target_partition,
            "status": self.status,
            "reason": self.reason,
            "rows_merged": self.rows_merged,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
        }


@dataclass
class ConsolidationResult:
    """Outcome of a consolidation sweep over one object."""

    owner: str
    object_name: str
    results: list[MergeResult] = field(default_factory=list)

    def _count(self, status: MergeStatus) -> int:
        return sum(1 for r in self.results if r.status == status.value)

    @property
    def merged(self) -> int:
        return self._count(MergeStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return self._count(MergeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(MergeStatus.FAILED)

    @property
    def errors(self) -> list[str]:
        return [f"{r.source_partition}: {r.error}" for r in self.results if r.error]

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "object_name": self.object_name,
            "merged": self.merged,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class PartitionMerger:
    """
    Folds fine-grained partitions into their coarse siblings.

    Usage:
        merger = PartitionMerger()
        result = merger.merge_into_coarser("DWH", "SALES_FACT", "P_2019_03")
        if result.status == "SKIPPED":
            print(result.reason)
    """

    def __init__(
        self,
        db_path: str | None = None,
        catalog: ObjectCatalog | None = None,
        audit: AuditLog | None = None,
        locks: LeaseLock | None = None,
    ):
        self._db_path = db_path
        self._catalog = catalog or ObjectCatalog(db_path)
        self._audit = audit or AuditLog(db_path)
        self._locks = locks or LeaseLock(db_path)

    def merge_into_coarser(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        config: LifecycleConfig | None = None,
    ) -> MergeResult:
        """
        Fold one fine-grained partition into its enclosing coarse partition.

        Args:
            owner: Object owner
            object_name: Object name
            partition_name: Fine-grained source partition
            config: Config snapshot (loaded when omitted)

        Returns:
            MergeResult with status SUCCESS, SKIPPED or FAILED
        """
        config = config or load_config(self._db_path)
        target_name = coarser_partition_name(partition_name)

        with timed_section(f"merge {owner}.{object_name}.{partition_name}") as timing:
            result = self._attempt(owner, object_name, partition_name, target_name, config)
        result.duration_seconds = timing.elapsed_seconds

        self._audit.log_merge(
            MergeLogEntry(
                table_owner=owner,
                table_name=object_name,
                source_partition=partition_name,
                target_partition=result.target_partition,
                status=result.status,
                reason=result.reason,
                start_time=timing.started_at,
                end_time=timing.finished_at,
                duration_seconds=timing.elapsed_seconds,
                rows_merged=result.rows_merged,
                error_message=result.error,
            )
        )

        if result.status == MergeStatus.FAILED.value:
            logger.error(f"Merge of {owner}.{object_name}.{partition_name} failed: {result.error}")
        elif result.status == MergeStatus.SKIPPED.value:
            logger.debug(f"Merge of {owner}.{object_name}.{partition_name} skipped: {result.reason}")
        else:
            logger.info(
                f"Merged {owner}.{object_name}.{partition_name} into {result.target_partition} "
                f"({result.rows_merged} rows)"
            )
        return result

    def _attempt(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        target_name: str | None,
        config: LifecycleConfig,
    ) -> MergeResult:
        def outcome(status: MergeStatus, reason: str, rows: int = 0, error: str | None = None):
            return MergeResult(
                owner=owner,
                object_name=object_name,
                source_partition=partition_name,
                target_partition=target_name,
                status=status.value,
                reason=reason,
                rows_merged=rows,
                error=error,
            )

        if not config.auto_merge_partitions:
            return outcome(MergeStatus.SKIPPED, "Automatic partition merging is disabled")
        if target_name is None:
            return outcome(
                MergeStatus.SKIPPED,
                f"{partition_name} does not match a fine-grained partition name",
            )

        try:
            with self._locks.hold(object_lock_key(owner, object_name), config.merge_lock_timeout):
                return self._merge_locked(owner, object_name, partition_name, target_name, outcome)
        except LockTimeoutError as e:
            return outcome(MergeStatus.FAILED, "Object lock not obtained", error=str(e))
        except (CatalogError, MergeError) as e:
            return outcome(MergeStatus.FAILED, "Storage operation failed", error=str(e))

    def _merge_locked(self, owner, object_name, partition_name, target_name, outcome) -> MergeResult:
        source = self._catalog.get_partition(owner, object_name, partition_name)
        if source is None:
            return outcome(MergeStatus.SKIPPED, f"{partition_name} no longer exists")

        target = self._catalog.get_partition(owner, object_name, target_name)
        if target is None:
            self._catalog.rename_partition(owner, object_name, partition_name, target_name)
            return outcome(
                MergeStatus.SUCCESS,
                f"Created {target_name} from {partition_name}",
                rows=source.num_rows,
            )

        if target.location != source.location:
            return outcome(
                MergeStatus.SKIPPED,
                f"Location mismatch: {source.location} vs {target.location}",
            )
        if target.codec != source.codec:
            return outcome(MergeStatus.SKIPPED, f"Codec mismatch: {source.codec} vs {target.codec}")
        if target.read_only:
            return outcome(MergeStatus.SKIPPED, f"{target_name} is read-only")

        names = [p.partition_name for p in self._catalog.list_partitions(owner, object_name)]
        if abs(names.index(partition_name) - names.index(target_name)) != 1:
            return outcome(
                MergeStatus.SKIPPED, f"{partition_name} is not adjacent to {target_name}"
            )

        rows = self._catalog.merge_partitions(owner, object_name, partition_name, target_name)
        return outcome(MergeStatus.SUCCESS, f"Merged into {target_name}", rows=rows)

    def consolidate(
        self, owner: str, object_name: str, config: LifecycleConfig | None = None
    ) -> ConsolidationResult:
        """
        Merge every fine-grained partition sitting in a coarse-tier location.

        Partitions are visited oldest first, so each coarse partition grows
        forward one neighbour at a time.
        """
        config = config or load_config(self._db_path)
        result = ConsolidationResult(owner=owner, object_name=object_name)
        tiers = self._catalog.list_locations()

        candidates = [
            p.partition_name
            for p in self._catalog.list_partitions(owner, object_name)
            if coarser_partition_name(p.partition_name) and tiers.get(p.location) in COARSE_TIERS
        ]
        logger.info(f"Consolidating {owner}.{object_name}: {len(candidates)} candidates")

        for partition_name in candidates:
            result.results.append(
                self.merge_into_coarser(owner, object_name, partition_name, config=config)
            )

        logger.info(
            f"Consolidation of {owner}.{object_name}: {result.merged} merged, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result
