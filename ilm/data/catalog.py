"""
Managed-object catalog.

Describes the partitioned objects under lifecycle management and exposes the
storage operations the engine needs: relocate, recompress, mark read-only,
drop, truncate, rename and merge two adjacent partitions. Partition sizes
follow the compression factor of their codec, so recompressing a partition
changes its size the way the storage engine would.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema


class Codec(Enum):
    """Compression codecs supported by the storage engine."""

    NONE = "NONE"
    BASIC = "BASIC"
    OLTP = "OLTP"
    QUERY_LOW = "QUERY LOW"
    QUERY_HIGH = "QUERY HIGH"
    ARCHIVE_LOW = "ARCHIVE LOW"
    ARCHIVE_HIGH = "ARCHIVE HIGH"

    @classmethod
    def values(cls) -> list[str]:
        return [codec.value for codec in cls]

    @classmethod
    def is_valid(cls, value: str | None) -> bool:
        return value in cls.values()


# Typical compression factor relative to uncompressed storage
COMPRESSION_FACTORS = {
    Codec.NONE.value: 1.0,
    Codec.BASIC.value: 2.0,
    Codec.OLTP.value: 2.5,
    Codec.QUERY_LOW.value: 6.0,
    Codec.QUERY_HIGH.value: 10.0,
    Codec.ARCHIVE_LOW.value: 12.0,
    Codec.ARCHIVE_HIGH.value: 15.0,
}


def estimate_size(size_mb: float, from_codec: str, to_codec: str) -> float:
    """
    Estimate a partition's size after recompression.

    Args:
        size_mb: Current size in MB
        from_codec: Current codec
        to_codec: Target codec

    Returns:
        Estimated size in MB
    """
    raw = size_mb * COMPRESSION_FACTORS.get(from_codec, 1.0)
    return round(raw / COMPRESSION_FACTORS.get(to_codec, 1.0), 4)


class CatalogError(Exception):
    """A storage operation could not be performed."""


@dataclass
class ManagedObject:
    """A named object known to the catalog."""

    owner: str
    object_name: str
    partitioned: bool
    partition_interval: str | None = None


@dataclass
class PartitionInfo:
    """
    One partition of a managed object.

    Attributes:
        high_value: Exclusive upper bound of the partition key (None for MAXVALUE)
    """

    owner: str
    object_name: str
    partition_name: str
    high_value: date | None
    location: str
    codec: str
    num_rows: int
    size_mb: float
    read_only: bool = False


@dataclass
class HeatStats:
    """Native read/write statistics reported by the storage engine."""

    last_read: datetime | None
    last_write: datetime | None
    read_count: int = 0
    write_count: int = 0


@dataclass
class StorageChange:
    """Size and row counts around a storage operation."""

    size_before_mb: float
    size_after_mb: float
    num_rows: int
    location: str | None = None
    codec: str | None = None
    read_only: bool = False


_PARTITION_COLUMNS = """
    owner, object_name, partition_name, high_value, location, codec,
    num_rows, size_mb, read_only
"""


def _to_partition(row: tuple[Any, ...]) -> PartitionInfo:
    return PartitionInfo(
        owner=row[0],
        object_name=row[1],
        partition_name=row[2],
        high_value=row[3],
        location=row[4],
        codec=row[5],
        num_rows=int(row[6]),
        size_mb=float(row[7]),
        read_only=bool(row[8]),
    )


class ObjectCatalog:
    """
    Catalog of managed objects, partitions and storage locations.

    Usage:
        catalog = ObjectCatalog()
        catalog.register_object("DWH", "SALES_FACT", partition_interval="MONTHLY")
        catalog.add_partition("DWH", "SALES_FACT", "P_2024_01", date(2024, 2, 1))
        catalog.relocate("DWH", "SALES_FACT", "P_2024_01", "TBS_WARM", "BASIC")
    """

    def __init__(self, db_path: str | None = None):
        """
        Initialize the catalog.

        Args:
            db_path: Optional database path
        """
        self._db = get_db(db_path)
        self._db_path = db_path
        ensure_schema(self._db)

    # -------------------------------------------------------------------------
    # Objects and locations
    # -------------------------------------------------------------------------

    def register_object(
        self,
        owner: str,
        object_name: str,
        partitioned: bool = True,
        partition_interval: str | None = None,
    ) -> ManagedObject:
        """Register an object, or return it unchanged if it already exists."""
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO ilm_objects (owner, object_name, partitioned, partition_interval)
                VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (owner, object_name, partitioned, partition_interval),
            )
        logger.debug(f"Registered object {owner}.{object_name}")
        return self.get_object(owner, object_name)

    def get_object(self, owner: str, object_name: str) -> ManagedObject | None:
        """Look up an object by owner and name."""
        row = self._db.fetchone(
            """
            SELECT owner, object_name, partitioned, partition_interval
            FROM ilm_objects
            WHERE owner = ? AND object_name = ?
            """,
            (owner, object_name),
        )
        if row is None:
            return None
        return ManagedObject(
            owner=row[0], object_name=row[1], partitioned=bool(row[2]), partition_interval=row[3]
        )

    def list_objects(self, partitioned_only: bool = True) -> list[ManagedObject]:
        """List registered objects."""
        query = "SELECT owner, object_name, partitioned, partition_interval FROM ilm_objects"
        if partitioned_only:
            query += " WHERE partitioned"
        query += " ORDER BY owner, object_name"
        return [
            ManagedObject(owner=r[0], object_name=r[1], partitioned=bool(r[2]), partition_interval=r[3])
            for r in self._db.fetchall(query)
        ]

    def add_location(self, location_name: str, tier: str, description: str | None = None) -> None:
        """Register a storage location."""
        self._db.execute(
            """
            INSERT INTO ilm_locations (location_name, tier, description)
            VALUES (?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (location_name, tier.upper(), description),
        )

    def location_exists(self, location_name: str) -> bool:
        """Check whether a storage location exists."""
        return self.get_location_tier(location_name) is not None

    def get_location_tier(self, location_name: str | None) -> str | None:
        """Return the tier a location belongs to, or None if unknown."""
        if not location_name:
            return None
        row = self._db.fetchone(
            "SELECT tier FROM ilm_locations WHERE location_name = ?", (location_name,)
        )
        return row[0] if row else None

    def list_locations(self) -> dict[str, str]:
        """Map location name to tier."""
        return dict(self._db.fetchall("SELECT location_name, tier FROM ilm_locations"))

    # -------------------------------------------------------------------------
    # Partitions
    # -------------------------------------------------------------------------

    def add_partition(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        high_value: date | None,
        location: str = "TBS_HOT",
        codec: str = "NONE",
        num_rows: int = 0,
        size_mb: float = 0.0,
        read_only: bool = False,
    ) -> PartitionInfo:
        """
        Add a partition to a registered object.

        Raises:
            CatalogError: If the object is unknown or the partition already exists
        """
        if self.get_object(owner, object_name) is None:
            raise CatalogError(f"Object {owner}.{object_name} does not exist")
        if self.get_partition(owner, object_name, partition_name) is not None:
            raise CatalogError(f"Partition {partition_name} already exists in {owner}.{object_name}")

        self._db.execute(
            f"""
            INSERT INTO ilm_partitions ({_PARTITION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (owner, object_name, partition_name, high_value, location, codec, num_rows, size_mb, read_only),
        )
        return self.get_partition(owner, object_name, partition_name)

    def create_object(
        self,
        owner: str,
        object_name: str,
        boundaries: Iterable[Any],
        partition_interval: str | None = None,
    ) -> list[PartitionInfo]:
        """
        Create a partitioned object from a boundary list.

        Each boundary needs name, upper_bound, location and codec attributes.
        Partitions are created empty, already placed in their tier's storage.

        Returns:
            Created partitions in boundary order
        """
        boundaries = list(boundaries)
        with self._db.transaction():
            self.register_object(owner, object_name, True, partition_interval)
            created = [
                self.add_partition(
                    owner,
                    object_name,
                    b.name,
                    b.upper_bound,
                    location=b.location or "TBS_HOT",
                    codec=b.codec or Codec.NONE.value,
                )
                for b in boundaries
            ]
        logger.info(f"Created {owner}.{object_name} with {len(created)} partitions")
        return created

    def get_partition(
        self, owner: str, object_name: str, partition_name: str
    ) -> PartitionInfo | None:
        """Look up one partition."""
        row = self._db.fetchone(
            f"""
            SELECT {_PARTITION_COLUMNS}
            FROM ilm_partitions
            WHERE owner = ? AND object_name = ? AND partition_name = ?
            """,
            (owner, object_name, partition_name),
        )
        return _to_partition(row) if row else None

    def list_partitions(self, owner: str, object_name: str) -> list[PartitionInfo]:
        """List partitions in key order, MAXVALUE last."""
        rows = self._db.fetchall(
            f"""
            SELECT {_PARTITION_COLUMNS}
            FROM ilm_partitions
            WHERE owner = ? AND object_name = ?
            ORDER BY high_value NULLS LAST, partition_name
            """,
            (owner, object_name),
        )
        return [_to_partition(row) for row in rows]

    def heat_stats(self, owner: str, object_name: str) -> dict[str, HeatStats]:
        """Native heat statistics per partition name (empty when unavailable)."""
        rows = self._db.fetchall(
            """
            SELECT partition_name, last_read, last_write, read_count, write_count
            FROM ilm_heat_stats
            WHERE owner = ? AND object_name = ?
            """,
            (owner, object_name),
        )
        return {
            r[0]: HeatStats(last_read=r[1], last_write=r[2], read_count=int(r[3] or 0), write_count=int(r[4] or 0))
            for r in rows
        }

    def record_heat(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        last_write: datetime | None,
        last_read: datetime | None = None,
        read_count: int = 0,
        write_count: int = 0,
    ) -> None:
        """Store native heat statistics for a partition."""
        with self._db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE ilm_heat_stats
                SET last_read = ?, last_write = ?, read_count = ?, write_count = ?
                WHERE owner = ? AND object_name = ? AND partition_name = ?
                RETURNING partition_name
                """,
                (last_read, last_write, read_count, write_count, owner, object_name, partition_name),
            ).fetchone()
            if updated is None:
                conn.execute(
                    """
                    INSERT INTO ilm_heat_stats (
                        owner, object_name, partition_name,
                        last_read, last_write, read_count, write_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (owner, object_name, partition_name, last_read, last_write, read_count, write_count),
                )

    # -------------------------------------------------------------------------
    # Storage operations
    # -------------------------------------------------------------------------

    def _require_partition(self, owner: str, object_name: str, partition_name: str) -> PartitionInfo:
        partition = self.get_partition(owner, object_name, partition_name)
        if partition is None:
            raise CatalogError(f"Partition {partition_name} not found in {owner}.{object_name}")
        return partition

    def _update_storage(
        self,
        partition: PartitionInfo,
        location: str,
        codec: str,
        size_mb: float,
        num_rows: int,
        read_only: bool,
    ) -> None:
        self._db.execute(
            """
            UPDATE ilm_partitions
            SET location = ?, codec = ?, size_mb = ?, num_rows = ?, read_only = ?
            WHERE owner = ? AND object_name = ? AND partition_name = ?
            """,
            (
                location,
                codec,
                size_mb,
                num_rows,
                read_only,
                partition.owner,
                partition.object_name,
                partition.partition_name,
            ),
        )

    def recompress(
        self, owner: str, object_name: str, partition_name: str, codec: str
    ) -> StorageChange:
        """Rewrite a partition with a new codec in its current location."""
        partition = self._require_partition(owner, object_name, partition_name)
        return self.relocate(owner, object_name, partition_name, partition.location, codec)

    def relocate(
        self,
        owner: str,
        object_name: str,
        partition_name: str,
        location: str,
        codec: str | None = None,
    ) -> StorageChange:
        """
        Move a partition to another location, optionally recompressing it.

        Raises:
            CatalogError: If the partition or location does not exist, or the
                partition is read-only
        """
        partition = self._require_partition(owner, object_name, partition_name)
        if not self.location_exists(location):
            raise CatalogError(f"Location {location} does not exist")
        if partition.read_only:
            raise CatalogError(f"Partition {partition_name} is read-only")

        codec = codec or partition.codec
        size_after = estimate_size(partition.size_mb, partition.codec, codec)
        self._update_storage(partition, location, codec, size_after, partition.num_rows, False)

        logger.debug(
            f"Relocated {owner}.{object_name}.{partition_name} "
            f"{partition.location}/{partition.codec} -> {location}/{codec}"
        )
        return StorageChange(
            size_before_mb=partition.size_mb,
            size_after_mb=size_after,
            num_rows=partition.num_rows,
            location=location,
            codec=codec,
        )

    def set_read_only(self, owner: str, object_name: str, partition_name: str) -> StorageChange:
        """Mark a partition read-only."""
        partition = self._require_partition(owner, object_name, partition_name)
        self._update_storage(
            partition, partition.location, partition.codec, partition.size_mb, partition.num_rows, True
        )
        return StorageChange(
            size_before_mb=partition.size_mb,
            size_after_mb=partition.size_mb,
            num_rows=partition.num_rows,
            location=partition.location,
            codec=partition.codec,
            read_only=True,
        )

    def truncate_partition(self, owner: str, object_name: str, partition_name: str) -> StorageChange:
        """Remove all rows from a partition, keeping the partition itself."""
        partition = self._require_partition(owner, object_name, partition_name)
        if partition.read_only:
            raise CatalogError(f"Partition {partition_name} is read-only")
        self._update_storage(partition, partition.location, partition.codec, 0.0, 0, False)
        return StorageChange(
            size_before_mb=partition.size_mb,
            size_after_mb=0.0,
            num_rows=0,
            location=partition.location,
            codec=partition.codec,
        )

    def drop_partition(self, owner: str, object_name: str, partition_name: str) -> StorageChange:
        """Drop a partition and its data."""
        partition = self._require_partition(owner, object_name, partition_name)
        self._db.execute(
            """
            DELETE FROM ilm_partitions
            WHERE owner = ? AND object_name = ? AND partition_name = ?
            """,
            (owner, object_name, partition_name),
        )
        logger.debug(f"Dropped {owner}.{object_name}.{partition_name}")
        return StorageChange(
            size_before_mb=partition.size_mb,
            size_after_mb=0.0,
            num_rows=0,
            location=partition.location,
            codec=partition.codec,
        )

    def rename_partition(
        self, owner: str, object_name: str, partition_name: str, new_name: str
    ) -> PartitionInfo:
        """Rename a partition, keeping its bound, storage and data."""
        partition = self._require_partition(owner, object_name, partition_name)
        if self.get_partition(owner, object_name, new_name) is not None:
            raise CatalogError(f"Partition {new_name} already exists in {owner}.{object_name}")

        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO ilm_partitions ({_PARTITION_COLUMNS})
                SELECT owner, object_name, ?, high_value, location, codec,
                       num_rows, size_mb, read_only
                FROM ilm_partitions
                WHERE owner = ? AND object_name = ? AND partition_name = ?
                """,
                (new_name, owner, object_name, partition_name),
            )
            conn.execute(
                """
                DELETE FROM ilm_partitions
                WHERE owner = ? AND object_name = ? AND partition_name = ?
                """,
                (owner, object_name, partition_name),
            )
        logger.debug(f"Renamed {owner}.{object_name}.{partition.partition_name} to {new_name}")
        return self.get_partition(owner, object_name, new_name)

    def merge_partitions(
        self, owner: str, object_name: str, source_name: str, target_name: str
    ) -> int:
        """
        Merge two adjacent partitions into the target.

        The target keeps its name and storage and takes the higher of the two
        upper bounds. The source ceases to exist.

        Returns:
            Number of rows moved from the source

        Raises:
            CatalogError: If either partition is missing or they are not adjacent
        """
        source = self._require_partition(owner, object_name, source_name)
        target = self._require_partition(owner, object_name, target_name)

        names = [p.partition_name for p in self.list_partitions(owner, object_name)]
        if abs(names.index(source_name) - names.index(target_name)) != 1:
            raise CatalogError(f"Partitions {source_name} and {target_name} are not adjacent")

        bounds = [source.high_value, target.high_value]
        high_value = None if None in bounds else max(bounds)

        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE ilm_partitions
                SET high_value = ?, num_rows = num_rows + ?, size_mb = size_mb + ?
                WHERE owner = ? AND object_name = ? AND partition_name = ?
                """,
                (
                    high_value,
                    source.num_rows,
                    estimate_size(source.size_mb, source.codec, target.codec),
                    owner,
                    object_name,
                    target_name,
                ),
            )
            conn.execute(
                """
                DELETE FROM ilm_partitions
                WHERE owner = ? AND object_name = ? AND partition_name = ?
                """,
                (owner, object_name, source_name),
            )
        logger.debug(f"Merged {owner}.{object_name}.{source_name} into {target_name}")
        return source.num_rows
