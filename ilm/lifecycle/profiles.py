"""
Threshold profiles and temperature classification.

A threshold profile is a named set of HOT/WARM/COLD age cutoffs in days that
policies share. Policies without a profile use the DEFAULT profile, which is
carried in the LifecycleConfig snapshot of the current run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.errors import InvalidThresholdProfile, ProfileInUse, ProfileNotFound
from ilm.lifecycle.settings import DEFAULT_PROFILE_NAME, LifecycleConfig


class Temperature(Enum):
    """Access temperature of a partition, derived from age since last write."""

    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"
    FROZEN = "FROZEN"


@dataclass(frozen=True)
class ThresholdProfile:
    """
    Age cutoffs in days for temperature classification.

    Partitions younger than hot_days are HOT, younger than warm_days WARM,
    and older ones COLD. When the FROZEN split is enabled, partitions at or
    beyond cold_days are FROZEN.
    """

    name: str
    hot_days: int
    warm_days: int
    cold_days: int
    profile_id: int | None = None
    description: str | None = None

    def __post_init__(self):
        """Enforce 0 < hot < warm < cold."""
        if not 0 < self.hot_days < self.warm_days < self.cold_days:
            raise InvalidThresholdProfile(
                f"Profile {self.name}: thresholds must satisfy 0 < hot < warm < cold, "
                f"got {self.hot_days}/{self.warm_days}/{self.cold_days}",
                field="hot_days",
            )

    def classify(self, age_days: int, split_frozen: bool = False) -> Temperature:
        """
        Determine the temperature for data of a given age.

        Args:
            age_days: Days since last write
            split_frozen: Whether to split COLD into COLD and FROZEN

        Returns:
            Temperature for the data
        """
        if age_days < self.hot_days:
            return Temperature.HOT
        elif age_days < self.warm_days:
            return Temperature.WARM
        elif split_frozen and age_days >= self.cold_days:
            return Temperature.FROZEN
        return Temperature.COLD

    def as_tuple(self) -> tuple[int, int, int]:
        return self.hot_days, self.warm_days, self.cold_days

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "profile_id": self.profile_id,
            "name": self.name,
            "hot_days": self.hot_days,
            "warm_days": self.warm_days,
            "cold_days": self.cold_days,
            "description": self.description,
        }


def default_profile(config: LifecycleConfig) -> ThresholdProfile:
    """Build the process-wide default profile from a config snapshot."""
    return ThresholdProfile(
        name=DEFAULT_PROFILE_NAME,
        hot_days=config.default_hot_days,
        warm_days=config.default_warm_days,
        cold_days=config.default_cold_days,
    )


_PROFILE_COLUMNS = "profile_id, profile_name, hot_days, warm_days, cold_days, description"


def _to_profile(row: tuple[Any, ...]) -> ThresholdProfile:
    return ThresholdProfile(
        profile_id=int(row[0]),
        name=row[1],
        hot_days=int(row[2]),
        warm_days=int(row[3]),
        cold_days=int(row[4]),
        description=row[5],
    )


class ProfileStore:
    """Persistence for threshold profiles."""

    def __init__(self, db_path: str | None = None):
        self._db = get_db(db_path)
        ensure_schema(self._db)

    def get(self, profile_id: int) -> ThresholdProfile | None:
        row = self._db.fetchone(
            f"SELECT {_PROFILE_COLUMNS} FROM ilm_threshold_profiles WHERE profile_id = ?",
            (profile_id,),
        )
        return _to_profile(row) if row else None

    def get_by_name(self, name: str) -> ThresholdProfile | None:
        row = self._db.fetchone(
            f"SELECT {_PROFILE_COLUMNS} FROM ilm_threshold_profiles WHERE profile_name = ?",
            (name,),
        )
        return _to_profile(row) if row else None

    def list_profiles(self) -> list[ThresholdProfile]:
        rows = self._db.fetchall(
            f"SELECT {_PROFILE_COLUMNS} FROM ilm_threshold_profiles ORDER BY profile_id"
        )
        return [_to_profile(row) for row in rows]

    def create(
        self,
        name: str,
        hot_days: int,
        warm_days: int,
        cold_days: int,
        description: str | None = None,
    ) -> ThresholdProfile:
        """
        Create a profile.

        Raises:
            InvalidThresholdProfile: If thresholds are not strictly increasing
                or the name is taken
        """
        profile = ThresholdProfile(name, hot_days, warm_days, cold_days, description=description)

        with self._db.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM ilm_threshold_profiles WHERE profile_name = ?", (name,)
            ).fetchone():
                raise InvalidThresholdProfile(f"Profile {name} already exists", field="name")

            profile_id = conn.execute(
                "SELECT COALESCE(MAX(profile_id), 0) + 1 FROM ilm_threshold_profiles"
            ).fetchone()[0]
            conn.execute(
                f"""
                INSERT INTO ilm_threshold_profiles ({_PROFILE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (profile_id, name, hot_days, warm_days, cold_days, description),
            )

        logger.info(f"Created threshold profile {name} ({hot_days}/{warm_days}/{cold_days})")
        return self.get(profile_id)

    def update(
        self,
        name: str,
        hot_days: int | None = None,
        warm_days: int | None = None,
        cold_days: int | None = None,
    ) -> ThresholdProfile:
        """
        Update a profile's thresholds. Unset arguments keep their values.

        Raises:
            ProfileNotFound: If the profile does not exist
            InvalidThresholdProfile: If the result is not strictly increasing
        """
        current = self.get_by_name(name)
        if current is None:
            raise ProfileNotFound(f"Threshold profile {name} does not exist", field="name")

        updated = ThresholdProfile(
            name=name,
            hot_days=current.hot_days if hot_days is None else hot_days,
            warm_days=current.warm_days if warm_days is None else warm_days,
            cold_days=current.cold_days if cold_days is None else cold_days,
            profile_id=current.profile_id,
            description=current.description,
        )
        self._db.execute(
            """
            UPDATE ilm_threshold_profiles
            SET hot_days = ?, warm_days = ?, cold_days = ?, updated_at = ?
            WHERE profile_id = ?
            """,
            (updated.hot_days, updated.warm_days, updated.cold_days, datetime.now(), current.profile_id),
        )
        logger.info(f"Updated threshold profile {name} to {updated.as_tuple()}")
        return updated

    def delete(self, name: str) -> None:
        """
        Delete a profile.

        Deletion is restricted: the DEFAULT profile and any profile still
        referenced by a policy cannot be removed.

        Raises:
            ProfileNotFound: If the profile does not exist
            ProfileInUse: If the profile is DEFAULT or referenced by policies
        """
        profile = self.get_by_name(name)
        if profile is None:
            raise ProfileNotFound(f"Threshold profile {name} does not exist", field="name")
        if name == DEFAULT_PROFILE_NAME:
            raise ProfileInUse(f"Threshold profile {name} is required", field="name")

        with self._db.transaction() as conn:
            refs = conn.execute(
                "SELECT policy_name FROM ilm_policies WHERE threshold_profile_id = ? ORDER BY policy_name",
                (profile.profile_id,),
            ).fetchall()
            if refs:
                names = ", ".join(r[0] for r in refs)
                raise ProfileInUse(
                    f"Threshold profile {name} is referenced by policies: {names}", field="name"
                )
            conn.execute(
                "DELETE FROM ilm_threshold_profiles WHERE profile_id = ?", (profile.profile_id,)
            )
        logger.info(f"Deleted threshold profile {name}")


class ThresholdResolver:
    """
    Resolves the age cutoffs that apply to a policy.

    Profiles are read on every call and never cached, since they may change
    between runs.
    """

    def __init__(self, db_path: str | None = None):
        self._store = ProfileStore(db_path)

    def resolve(self, policy: Any, config: LifecycleConfig) -> ThresholdProfile:
        """
        Resolve thresholds for a policy.

        Args:
            policy: Object with a threshold_profile_id attribute
            config: Config snapshot of the current run

        Returns:
            The referenced profile, or the default profile when none is set.
            A reference to a profile that no longer exists also falls back to
            the default, with a warning.
        """
        profile_id = getattr(policy, "threshold_profile_id", None)
        if profile_id is None:
            return default_profile(config)

        profile = self._store.get(profile_id)
        if profile is None:
            logger.warning(
                f"Threshold profile {profile_id} referenced by "
                f"{getattr(policy, 'policy_name', 'policy')} not found, using defaults"
            )
            return default_profile(config)
        return profile
