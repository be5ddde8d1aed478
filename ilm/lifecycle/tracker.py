"""
Partition access and temperature tracking.

The tracker keeps one PartitionAccessRecord per partition of every managed
object. Last-write times come from the storage engine's heat statistics when
they exist. Without them, a partition's upper key bound minus one day stands
in as the estimated last write. Rows that carry real observations recorded
through record_access() are never replaced by that estimate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any

from loguru import logger

from ilm.data.catalog import HeatStats, ObjectCatalog, PartitionInfo
from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.errors import IlmError, LockTimeoutError, TrackingError
from ilm.lifecycle.locks import LeaseLock, refresh_lock_key
from ilm.lifecycle.policies import DAYS_PER_MONTH
from ilm.lifecycle.profiles import Temperature, ThresholdProfile, default_profile
from ilm.lifecycle.settings import ConfigStore, LifecycleConfig, load_config


class StatsSource(Enum):
    """Where a record's last-write time came from."""

    HEAT_MAP = "HEAT_MAP"
    RECORDED = "RECORDED"
    ESTIMATED = "ESTIMATED"


class AccessType(Enum):
    READ = "READ"
    WRITE = "WRITE"


@dataclass
class PartitionAccessRecord:
    """Tracked state of one partition."""

    table_owner: str
    table_name: str
    partition_name: str
    high_value: date | None
    last_write_time: datetime | None
    last_read_time: datetime | None
    read_count: int
    write_count: int
    num_rows: int
    size_mb: float
    location: str | None
    codec: str | None
    read_only: bool
    days_since_write: int
    temperature: str
    stats_source: str
    last_refresh: datetime | None

    @property
    def age_months(self) -> int:
        return int(self.days_since_write / DAYS_PER_MONTH)

    @property
    def has_observations(self) -> bool:
        return self.read_count > 0 or self.write_count > 0

    def context(self) -> dict[str, Any]:
        """Field values exposed to custom conditions."""
        return {
            "age_days": self.days_since_write,
            "age_months": self.age_months,
            "num_rows": self.num_rows,
            "read_count": self.read_count,
            "write_count": self.write_count,
            "size_mb": self.size_mb,
            "location": self.location,
            "codec": self.codec,
            "temperature": self.temperature,
            "partition_name": self.partition_name,
            "read_only": self.read_only,
        }

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        for key in ("high_value", "last_write_time", "last_read_time", "last_refresh"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class TrackingResult:
    """Result of refreshing one object."""

    owner: str
    object_name: str
    partitions_tracked: int = 0
    partitions_failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "object_name": self.object_name,
            "partitions_tracked": self.partitions_tracked,
            "partitions_failed": self.partitions_failed,
            "errors": self.errors,
            "success": self.success,
        }


_RECORD_COLUMNS = [
    "table_owner",
    "table_name",
    "partition_name",
    "high_value",
    "last_write_time",
    "last_read_time",
    "read_count",
    "write_count",
    "num_rows",
    "size_mb",
    "location",
    "codec",
    "read_only",
    "days_since_write",
    "temperature",
    "stats_source",
    "last_refresh",
]
_KEY_COLUMNS = ("table_owner", "table_name", "partition_name")
_SELECT_RECORD = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM ilm_partition_access"


def _to_record(row: tuple[Any, ...]) -> PartitionAccessRecord:
    data = dict(zip(_RECORD_COLUMNS, row))
    data["read_count"] = int(data["read_count"] or 0)
    data["write_count"] = int(data["write_count"] or 0)
    data["num_rows"] = int(data["num_rows"] or 0)
    data["size_mb"] = float(data["size_mb"] or 0.0)
    data["read_only"] = bool(data["read_only"])
    data["days_since_write"] = int(data["days_since_write"] or 0)
    return PartitionAccessRecord(**data)


def days_between(earlier: datetime | None, later: datetime) -> int:
    """Whole days from earlier to later, never negative."""
    if earlier is None:
        return 0
    return max(0, (later - earlier).days)


def estimate_last_write(high_value: date | None, as_of: datetime) -> datetime:
    """
    Estimate a partition's last write from its upper key bound.

    Data in a range partition is written up to the day before its exclusive
    upper bound. A MAXVALUE partition is the one still being written.
    """
    if high_value is None:
        return as_of
    return datetime.combine(high_value, time.min) - timedelta(days=1)


class PartitionTracker:
    """
    Maintains PartitionAccessRecord rows.

    Usage:
        tracker = PartitionTracker()
        result = tracker.refresh("DWH", "SALES_FACT")
        hot = [r for r in tracker.get_records("DWH", "SALES_FACT") if r.temperature == "HOT"]
    """

    def __init__(self, db_path: str | None = None, catalog: ObjectCatalog | None = None):
        self._db = get_db(db_path)
        self._db_path = db_path
        ensure_schema(self._db)
        self._catalog = catalog or ObjectCatalog(db_path)

    def refresh(
        self,
        owner: str,
        object_name: str,
        config: LifecycleConfig | None = None,
        as_of: datetime | None = None,
    ) -> TrackingResult:
        """
        Recompute access records for every partition of an object.

        Args:
            owner: Object owner
            object_name: Object name
            config: Config snapshot (loaded when omitted)
            as_of: Reference time (defaults to now)

        Returns:
            TrackingResult with per-partition failures
        """
        config = config or load_config(self._db_path)
        as_of = as_of or datetime.now()
        result = TrackingResult(owner=owner, object_name=object_name)
        profile = default_profile(config)

        # Two refreshes of the same object must not interleave their upserts
        locks = LeaseLock(self._db_path)
        try:
            with locks.hold(refresh_lock_key(owner, object_name), config.partition_lock_timeout):
                self._refresh_partitions(owner, object_name, profile, config, as_of, result)
        except LockTimeoutError as e:
            logger.warning(f"Skipping refresh of {owner}.{object_name}: {e}")
            result.errors.append(str(e))
            return result

        logger.info(
            f"Refreshed {owner}.{object_name}: {result.partitions_tracked} tracked, "
            f"{result.partitions_failed} failed"
        )
        return result

    def refresh_all(
        self, config: LifecycleConfig | None = None, as_of: datetime | None = None
    ) -> list[TrackingResult]:
        """Refresh every partitioned object in the catalog."""
        config = config or load_config(self._db_path)
        return [
            self.refresh(obj.owner, obj.object_name, config=config, as_of=as_of)
            for obj in self._catalog.list_objects(partitioned_only=True)
        ]

    def _refresh_partitions(
        self,
        owner: str,
        object_name: str,
        profile: ThresholdProfile,
        config: LifecycleConfig,
        as_of: datetime,
        result: TrackingResult,
    ) -> None:
        partitions = self._catalog.list_partitions(owner, object_name)
        heat = self._catalog.heat_stats(owner, object_name)

        for partition in partitions:
            try:
                record = self._compute(
                    partition, heat.get(partition.partition_name), profile, config, as_of
                )
                self._upsert(record)
                result.partitions_tracked += 1
            except (IlmError, ValueError, TypeError) as e:
                result.partitions_failed += 1
                result.errors.append(f"{partition.partition_name}: {e}")
                logger.error(
                    f"Failed to track {owner}.{object_name}.{partition.partition_name}: {e}"
                )

    def _compute(
        self,
        partition: PartitionInfo,
        heat: HeatStats | None,
        profile: ThresholdProfile,
        config: LifecycleConfig,
        as_of: datetime,
    ) -> PartitionAccessRecord:
        existing = self.get_record(partition.owner, partition.object_name, partition.partition_name)

        if heat is not None and heat.last_write is not None:
            source = StatsSource.HEAT_MAP
            last_write, last_read = heat.last_write, heat.last_read
            read_count, write_count = heat.read_count, heat.write_count
        elif existing is not None and existing.has_observations:
            source = StatsSource.RECORDED
            last_write, last_read = existing.last_write_time, existing.last_read_time
            read_count, write_count = existing.read_count, existing.write_count
            if last_write is None:
                last_write = estimate_last_write(partition.high_value, as_of)
        else:
            source = StatsSource.ESTIMATED
            last_write = estimate_last_write(partition.high_value, as_of)
            last_read = None
            read_count = write_count = 0

        if partition.high_value is None and source is StatsSource.ESTIMATED:
            age = 0
        else:
            age = days_between(last_write, as_of)
        temperature = profile.classify(age, split_frozen=config.frozen_tier_enabled)

        logger.debug(
            f"{partition.owner}.{partition.object_name}.{partition.partition_name}: "
            f"age={age}d temperature={temperature.value} source={source.value}"
        )
        return PartitionAccessRecord(
            table_owner=partition.owner,
            table_name=partition.object_name,
            partition_name=partition.partition_name,
            high_value=partition.high_value,
            last_write_time=last_write,
            last_read_time=last_read,
            read_count=read_count,
            write_count=write_count,
            num_rows=partition.num_rows,
            size_mb=partition.size_mb,
            location=partition.location,
            codec=partition.codec,
            read_only=partition.read_only,
            days_since_write=age,
            temperature=temperature.value,
            stats_source=source.value,
            last_refresh=as_of,
        )

    def _upsert(self, record: PartitionAccessRecord) -> None:
        values = {column: getattr(record, column) for column in _RECORD_COLUMNS}
        settable = [c for c in _RECORD_COLUMNS if c not in _KEY_COLUMNS]
        key = [values[c] for c in _KEY_COLUMNS]

        with self._db.transaction() as conn:
            updated = conn.execute(
                f"""
                UPDATE ilm_partition_access
                SET {', '.join(f'{c} = ?' for c in settable)}
                WHERE table_owner = ? AND table_name = ? AND partition_name = ?
                RETURNING partition_name
                """,
                [values[c] for c in settable] + key,
            ).fetchone()
            if updated is None:
                conn.execute(
                    f"""
                    INSERT INTO ilm_partition_access ({', '.join(_RECORD_COLUMNS)})
                    VALUES ({', '.join('?' * len(_RECORD_COLUMNS))})
                    """,
                    [values[c] for c in _RECORD_COLUMNS],
                )

    def record_access(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        access_type: str | AccessType,
        at: datetime | None = None,
    ) -> bool:
        """
        Record an observed read or write.

        A write makes the partition HOT with an age of zero.

        Args:
            owner: Object owner
            object_name: Object name
            partition_name: Partition name
            access_type: READ or WRITE
            at: Observation time (defaults to now)

        Returns:
            False when access tracking is disabled, True otherwise

        Raises:
            TrackingError: If the partition is not tracked or access_type is unknown
        """
        if not ConfigStore(self._db_path).get_bool("ACCESS_TRACKING_ENABLED", True):
            logger.debug("Access tracking disabled, ignoring access")
            return False

        try:
            access = AccessType(access_type.value if isinstance(access_type, AccessType) else access_type.upper())
        except ValueError:
            raise TrackingError(f"Unknown access type: {access_type}") from None

        at = at or datetime.now()
        with self._db.transaction() as conn:
            if access is AccessType.WRITE:
                updated = conn.execute(
                    """
                    UPDATE ilm_partition_access
                    SET write_count = write_count + 1, last_write_time = ?,
                        days_since_write = 0, temperature = ?, stats_source = ?
                    WHERE table_owner = ? AND table_name = ? AND partition_name = ?
                    RETURNING partition_name
                    """,
                    (at, Temperature.HOT.value, StatsSource.RECORDED.value, owner, object_name, partition_name),
                ).fetchone()
            else:
                updated = conn.execute(
                    """
                    UPDATE ilm_partition_access
                    SET read_count = read_count + 1, last_read_time = ?,
                        stats_source = CASE WHEN stats_source = 'HEAT_MAP'
                                            THEN stats_source ELSE 'RECORDED' END
                    WHERE table_owner = ? AND table_name = ? AND partition_name = ?
                    RETURNING partition_name
                    """,
                    (at, owner, object_name, partition_name),
                ).fetchone()

        if updated is None:
            raise TrackingError(f"Partition {owner}.{object_name}.{partition_name} is not tracked")
        logger.debug(f"Recorded {access.value} on {owner}.{object_name}.{partition_name}")
        return True

    def get_record(
        self, owner: str, object_name: str, partition_name: str
    ) -> PartitionAccessRecord | None:
        row = self._db.fetchone(
            f"{_SELECT_RECORD} WHERE table_owner = ? AND table_name = ? AND partition_name = ?",
            (owner, object_name, partition_name),
        )
        return _to_record(row) if row else None

    def get_records(self, owner: str, object_name: str) -> list[PartitionAccessRecord]:
        """All tracked records of an object, oldest partition first."""
        rows = self._db.fetchall(
            f"""
            {_SELECT_RECORD}
            WHERE table_owner = ? AND table_name = ?
            ORDER BY high_value NULLS LAST, partition_name
            """,
            (owner, object_name),
        )
        return [_to_record(row) for row in rows]

    def update_after_transition(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        location: str | None,
        codec: str | None,
        size_mb: float,
        num_rows: int,
        read_only: bool,
    ) -> bool:
        """
        Update storage fields of an existing record after an executed action.

        Never creates a record.

        Returns:
            True if a record was updated
        """
        row = self._db.fetchone(
            """
            UPDATE ilm_partition_access
            SET location = ?, codec = ?, size_mb = ?, num_rows = ?, read_only = ?
            WHERE table_owner = ? AND table_name = ? AND partition_name = ?
            RETURNING partition_name
            """,
            (location, codec, size_mb, num_rows, read_only, owner, object_name, partition_name),
        )
        return row is not None
