"""
Partition boundary generation with per-tier granularity.

Recent data is partitioned finely and older data coarsely. Given a tier
configuration such as

    HOT   age < 24 months   MONTHLY   TBS_HOT   NONE
    WARM  age < 60 months   YEARLY    TBS_WARM  BASIC
    COLD  older             YEARLY    TBS_COLD  OLTP

the date range of an object is split into one section per tier, walking back
from today. Each tier cutoff is snapped down to the period start of the next
(coarser) tier, so sections meet exactly on a boundary that both
granularities share and data younger than a cutoff always stays in the finer
section. Every boundary carries its tier's location and codec, so partitions
are created already in place.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Mapping

from loguru import logger

from ilm.data.catalog import CatalogError, Codec, ObjectCatalog, PartitionInfo
from ilm.lifecycle.errors import InvalidTierConfig
from ilm.lifecycle.policies import DAYS_PER_MONTH

TIER_ORDER = ["HOT", "WARM", "COLD", "FROZEN"]
REQUIRED_TIERS = ["HOT", "WARM", "COLD"]
MAXVALUE_PARTITION = "P_MAXVALUE"


class Interval(Enum):
    """Partition granularity, finest first."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"

    @property
    def rank(self) -> int:
        return list(Interval).index(self)

    @property
    def max_days(self) -> int:
        """Longest possible span of one period."""
        return {"DAILY": 1, "WEEKLY": 7, "MONTHLY": 31, "QUARTERLY": 92, "YEARLY": 366}[self.value]


def add_months(d: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month."""
    years, month_index = divmod(d.month - 1 + months, 12)
    year = d.year + years
    month = month_index + 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def period_start(d: date, interval: Interval) -> date:
    """Start of the period containing d."""
    if interval is Interval.DAILY:
        return d
    if interval is Interval.WEEKLY:
        return d - timedelta(days=d.weekday())
    if interval is Interval.MONTHLY:
        return d.replace(day=1)
    if interval is Interval.QUARTERLY:
        return date(d.year, 3 * ((d.month - 1) // 3) + 1, 1)
    return date(d.year, 1, 1)


def next_period(d: date, interval: Interval) -> date:
    """Start of the period after the one starting at d."""
    if interval is Interval.DAILY:
        return d + timedelta(days=1)
    if interval is Interval.WEEKLY:
        return d + timedelta(days=7)
    if interval is Interval.MONTHLY:
        return add_months(d, 1)
    if interval is Interval.QUARTERLY:
        return add_months(d, 3)
    return add_months(d, 12)


def partition_name(lower_bound: date, interval: Interval) -> str:
    """Name a partition after the start of its range."""
    if interval in (Interval.DAILY, Interval.WEEKLY):
        return f"P_{lower_bound:%Y_%m_%d}"
    if interval is Interval.MONTHLY:
        return f"P_{lower_bound:%Y_%m}"
    if interval is Interval.QUARTERLY:
        return f"P_{lower_bound.year}_Q{(lower_bound.month - 1) // 3 + 1}"
    return f"P_{lower_bound.year}"


@dataclass(frozen=True)
class TierSpec:
    """
    One tier of a tier configuration.

    Attributes:
        name: HOT, WARM, COLD or FROZEN
        interval: Partition granularity within the tier
        age_months: Upper age limit of the tier in months
        age_days: Upper age limit in days (used when age_months is unset)
        location: Storage location new partitions are created in
        codec: Codec new partitions are created with
    """

    name: str
    interval: Interval
    age_months: int | None = None
    age_days: int | None = None
    location: str | None = None
    codec: str | None = None

    @property
    def approx_age_days(self) -> float:
        if self.age_months is not None:
            return self.age_months * DAYS_PER_MONTH
        return float(self.age_days)

    def cutoff(self, as_of: date) -> date:
        """Oldest date still young enough for this tier."""
        if self.age_months is not None:
            return add_months(as_of, -self.age_months)
        return as_of - timedelta(days=self.age_days)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"interval": self.interval.value}
        if self.age_months is not None:
            data["age_months"] = self.age_months
        if self.age_days is not None:
            data["age_days"] = self.age_days
        data["tablespace"] = self.location
        data["compression"] = self.codec
        return data


@dataclass
class TierConfig:
    """Ordered tiers, HOT first."""

    tiers: list[TierSpec]
    enabled: bool = True

    def __post_init__(self):
        self.tiers = sorted(self.tiers, key=lambda t: TIER_ORDER.index(t.name) if t.name in TIER_ORDER else len(TIER_ORDER))
        self.validate()

    def validate(self) -> None:
        """
        Check the tier structure.

        Raises:
            InvalidTierConfig: If a required tier is missing, a tier is
                unknown or duplicated, an age is missing or negative, ages
                are not strictly increasing, or granularity gets finer
                towards COLD
        """
        names = [t.name for t in self.tiers]
        for name in names:
            if name not in TIER_ORDER:
                raise InvalidTierConfig(f"Unknown tier: {name}")
        if len(set(names)) != len(names):
            raise InvalidTierConfig(f"Duplicate tiers in {names}")
        missing = [name for name in REQUIRED_TIERS if name not in names]
        if missing:
            raise InvalidTierConfig(f"Tier config is missing tiers: {', '.join(missing)}")

        for tier in self.tiers:
            if tier.age_months is None and tier.age_days is None:
                raise InvalidTierConfig(f"Tier {tier.name} needs age_months or age_days")
            if (tier.age_months or 0) < 0 or (tier.age_days or 0) < 0:
                raise InvalidTierConfig(f"Tier {tier.name} has a negative age")
            if tier.codec is not None and not Codec.is_valid(tier.codec):
                raise InvalidTierConfig(f"Tier {tier.name} has invalid compression {tier.codec}")

        for younger, older in zip(self.tiers, self.tiers[1:]):
            if older.approx_age_days <= younger.approx_age_days:
                raise InvalidTierConfig(
                    f"Tier ages must be strictly increasing: {younger.name} "
                    f"({younger.approx_age_days:.0f}d) >= {older.name} ({older.approx_age_days:.0f}d)"
                )
            if older.interval.rank < younger.interval.rank:
                raise InvalidTierConfig(
                    f"Tier {older.name} ({older.interval.value}) is finer than "
                    f"{younger.name} ({younger.interval.value})"
                )

    def tier(self, name: str) -> TierSpec | None:
        return next((t for t in self.tiers if t.name == name), None)

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "TierConfig":
        """
        Build from a template's tier_config section.

        Expected shape:
            {"enabled": true,
             "hot":  {"age_months": 12, "interval": "MONTHLY", "tablespace": "TBS_HOT", "compression": "NONE"},
             "warm": {...}, "cold": {...}}
        """
        tiers = []
        for key, value in document.items():
            if key == "enabled":
                continue
            if not isinstance(value, Mapping):
                raise InvalidTierConfig(f"Tier {key} must be an object")
            try:
                interval = Interval(str(value.get("interval", "")).upper())
            except ValueError:
                raise InvalidTierConfig(
                    f"Tier {key} has invalid interval {value.get('interval')!r}"
                ) from None
            tiers.append(
                TierSpec(
                    name=key.upper(),
                    interval=interval,
                    age_months=value.get("age_months"),
                    age_days=value.get("age_days"),
                    location=value.get("tablespace"),
                    codec=value.get("compression"),
                )
            )
        return cls(tiers=tiers, enabled=bool(document.get("enabled", True)))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"enabled": self.enabled}
        for tier in self.tiers:
            data[tier.name.lower()] = tier.to_dict()
        return data


@dataclass
class PartitionBoundary:
    """
    One partition to create.

    The first boundary of a list is open-ended below: it holds every key
    under its upper bound. A MAXVALUE partition has no upper bound.
    """

    name: str
    upper_bound: date | None
    lower_bound: date | None
    interval: Interval
    tier: str | None = None
    location: str | None = None
    codec: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "lower_bound": self.lower_bound.isoformat() if self.lower_bound else None,
            "upper_bound": self.upper_bound.isoformat() if self.upper_bound else None,
            "interval": self.interval.value,
            "tier": self.tier,
            "location": self.location,
            "codec": self.codec,
        }


@dataclass
class _Section:
    tier: TierSpec | None
    interval: Interval
    start: date | None
    end: date | None
    boundaries: list[PartitionBoundary] = field(default_factory=list)


def _sections(tier_config: TierConfig, as_of: date) -> list[_Section]:
    """Date sections per tier, oldest first. start/end of None means unbounded."""
    tiers = tier_config.tiers
    starts: list[date | None] = []
    for younger, older in zip(tiers, tiers[1:]):
        starts.append(period_start(younger.cutoff(as_of), older.interval))

    sections = []
    end: date | None = None
    for index, tier in enumerate(tiers):
        start = starts[index] if index < len(starts) else None
        if start is not None and end is not None and start > end:
            start = end
        sections.append(_Section(tier=tier, interval=tier.interval, start=start, end=end))
        end = start if start is not None else end
    return list(reversed(sections))


def build_boundaries(
    min_date: date,
    max_date: date,
    tier_config: TierConfig | None = None,
    interval: Interval = Interval.MONTHLY,
    as_of: date | None = None,
    include_maxvalue: bool = False,
) -> list[PartitionBoundary]:
    """
    Compute partition boundaries for a date range.

    Args:
        min_date: Oldest date in the object
        max_date: Newest date the partitions must cover
        tier_config: Tiered layout; None or disabled gives uniform partitions
        interval: Granularity of the uniform layout
        as_of: Reference date for tier ages (defaults to today)
        include_maxvalue: Append a MAXVALUE partition

    Returns:
        Boundaries ordered by upper bound

    Raises:
        ValueError: If min_date is after max_date
    """
    if min_date > max_date:
        raise ValueError(f"min_date {min_date} is after max_date {max_date}")
    as_of = as_of or date.today()

    if tier_config is None or not tier_config.enabled:
        sections = [_Section(tier=None, interval=interval, start=None, end=None)]
    else:
        sections = _sections(tier_config, as_of)

    def section_for(d: date) -> _Section:
        for section in sections:
            if (section.start is None or d >= section.start) and (section.end is None or d < section.end):
                return section
        return sections[-1]

    low = period_start(min_date, section_for(min_date).interval)
    high = next_period(period_start(max_date, section_for(max_date).interval), section_for(max_date).interval)

    boundaries: list[PartitionBoundary] = []
    for section in sections:
        lower = max(low, section.start) if section.start else low
        stop = min(high, section.end) if section.end else high
        while lower < stop:
            upper = min(next_period(lower, section.interval), stop)
            boundaries.append(
                PartitionBoundary(
                    name=partition_name(lower, section.interval),
                    upper_bound=upper,
                    lower_bound=lower,
                    interval=section.interval,
                    tier=section.tier.name if section.tier else None,
                    location=section.tier.location if section.tier else None,
                    codec=section.tier.codec if section.tier else None,
                )
            )
            lower = upper

    if include_maxvalue and boundaries:
        last = boundaries[-1]
        boundaries.append(
            PartitionBoundary(
                name=MAXVALUE_PARTITION,
                upper_bound=None,
                lower_bound=last.upper_bound,
                interval=last.interval,
                tier=last.tier,
                location=last.location,
                codec=last.codec,
            )
        )

    logger.debug(
        f"Built {len(boundaries)} boundaries for {min_date}..{max_date} "
        f"({'tiered' if tier_config and tier_config.enabled else interval.value})"
    )
    return boundaries


def check_contiguity(boundaries: list[PartitionBoundary]) -> list[str]:
    """
    Check a boundary list for gaps, overlaps and oversized partitions.

    Returns:
        Problems found, empty when the list is contiguous
    """
    problems = []
    names = [b.name for b in boundaries]
    if len(set(names)) != len(names):
        problems.append("Duplicate partition names")

    previous: PartitionBoundary | None = None
    for boundary in boundaries:
        if boundary.upper_bound is not None and boundary.lower_bound is not None:
            span = (boundary.upper_bound - boundary.lower_bound).days
            if span <= 0:
                problems.append(f"{boundary.name} is empty")
            elif span > boundary.interval.max_days:
                problems.append(f"{boundary.name} spans {span} days, more than one {boundary.interval.value} period")
        if previous is not None:
            if previous.upper_bound is None:
                problems.append(f"{boundary.name} follows MAXVALUE partition {previous.name}")
            elif boundary.lower_bound != previous.upper_bound:
                problems.append(
                    f"Gap or overlap between {previous.name} ({previous.upper_bound}) "
                    f"and {boundary.name} ({boundary.lower_bound})"
                )
        previous = boundary
    return problems


def provision_object(
    owner: str,
    object_name: str,
    min_date: date,
    max_date: date,
    tier_config: TierConfig | None = None,
    interval: Interval = Interval.MONTHLY,
    as_of: date | None = None,
    include_maxvalue: bool = False,
    catalog: ObjectCatalog | None = None,
    db_path: str | None = None,
) -> list[PartitionInfo]:
    """
    Create a partitioned object with boundaries from build_boundaries().

    Raises:
        CatalogError: If the object already exists
        InvalidTierConfig: If a tier names an unknown location
    """
    catalog = catalog or ObjectCatalog(db_path)
    if catalog.get_object(owner, object_name) is not None:
        raise CatalogError(f"Object {owner}.{object_name} already exists")

    if tier_config is not None and tier_config.enabled:
        for tier in tier_config.tiers:
            if tier.location and not catalog.location_exists(tier.location):
                raise InvalidTierConfig(f"Tier {tier.name} location {tier.location} does not exist")

    boundaries = build_boundaries(
        min_date,
        max_date,
        tier_config=tier_config,
        interval=interval,
        as_of=as_of,
        include_maxvalue=include_maxvalue,
    )
    layout = "TIERED" if tier_config is not None and tier_config.enabled else interval.value
    return catalog.create_object(owner, object_name, boundaries, partition_interval=layout)
