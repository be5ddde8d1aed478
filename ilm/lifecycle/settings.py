"""
Lifecycle configuration.

Settings live as key/value rows in ilm_config. Batch operations call
load_config() once at the start of a run and pass the resulting frozen
LifecycleConfig through every step, so a run never sees a half-updated view.

The emergency stop flag is the exception: it is read live through
ConfigStore so that a running batch notices it between actions.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, time
from typing import Any

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import DEFAULT_CONFIG, ensure_schema
from ilm.lifecycle.errors import ConfigurationError

DEFAULT_PROFILE_NAME = "DEFAULT"

_TRUE_VALUES = {"Y", "YES", "TRUE", "1", "ON"}
_FALSE_VALUES = {"N", "NO", "FALSE", "0", "OFF"}


def _parse_bool(key: str, value: str) -> bool:
    normalized = value.strip().upper()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Config {key} must be Y or N, got {value!r}")


def _parse_int(key: str, value: str, minimum: int = 0) -> int:
    try:
        parsed = int(value.strip())
    except ValueError:
        raise ConfigurationError(f"Config {key} must be an integer, got {value!r}") from None
    if parsed < minimum:
        raise ConfigurationError(f"Config {key} must be >= {minimum}, got {parsed}")
    return parsed


def _parse_time(key: str, value: str) -> time:
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError:
        raise ConfigurationError(f"Config {key} must be HH:MM, got {value!r}") from None


@dataclass(frozen=True)
class LifecycleConfig:
    """
    Snapshot of lifecycle settings for one batch run.

    Attributes:
        default_hot_days: HOT/WARM cutoff for policies without a profile
        default_warm_days: WARM/COLD cutoff for policies without a profile
        default_cold_days: COLD/FROZEN cutoff for policies without a profile
        enable_auto_execution: Whether scheduled execution runs may act
        execution_window_start: Start of the scheduled execution window
        execution_window_end: End of the window (may wrap past midnight)
        max_actions_per_run: Default action budget for one execution run
        access_tracking_enabled: Whether record_access() is honoured
        log_retention_days: Age after which audit rows are deleted
        queue_retention_days: Age after which stale queue rows are purged
        auto_merge_partitions: Whether moves into coarser tiers trigger merges
        merge_lock_timeout: Seconds to wait for an object lock when merging
        partition_lock_timeout: Seconds to wait for a partition lock when acting
        frozen_tier_enabled: Whether COLD partitions past cold_days become FROZEN
    """

    default_hot_days: int = 90
    default_warm_days: int = 365
    default_cold_days: int = 1095
    enable_auto_execution: bool = True
    execution_window_start: time = time(22, 0)
    execution_window_end: time = time(6, 0)
    max_actions_per_run: int = 100
    access_tracking_enabled: bool = True
    log_retention_days: int = 365
    queue_retention_days: int = 7
    auto_merge_partitions: bool = True
    merge_lock_timeout: float = 30.0
    partition_lock_timeout: float = 30.0
    frozen_tier_enabled: bool = False
    loaded_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        """Validate threshold ordering and budgets."""
        if not 0 < self.default_hot_days < self.default_warm_days < self.default_cold_days:
            raise ConfigurationError(
                "Default thresholds must satisfy 0 < hot < warm < cold, got "
                f"{self.default_hot_days}/{self.default_warm_days}/{self.default_cold_days}"
            )
        if self.max_actions_per_run < 1:
            raise ConfigurationError("max_actions_per_run must be positive")
        if self.merge_lock_timeout < 0 or self.partition_lock_timeout < 0:
            raise ConfigurationError("Lock timeouts cannot be negative")

    def in_execution_window(self, moment: datetime | None = None) -> bool:
        """
        Check whether a moment falls inside the execution window.

        A window whose end is earlier than its start wraps past midnight,
        e.g. 22:00-06:00 covers 23:30 and 05:00 but not 12:00.

        Args:
            moment: Time to check (defaults to now)

        Returns:
            True if scheduled execution may run at this moment
        """
        current = (moment or datetime.now()).time()
        start, end = self.execution_window_start, self.execution_window_end
        if start == end:
            return True
        if start < end:
            return start <= current < end
        return current >= start or current < end

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["execution_window_start"] = self.execution_window_start.strftime("%H:%M")
        data["execution_window_end"] = self.execution_window_end.strftime("%H:%M")
        data["loaded_at"] = self.loaded_at.isoformat()
        return data


class ConfigStore:
    """Read and write lifecycle settings in ilm_config."""

    def __init__(self, db_path: str | None = None):
        self._db = get_db(db_path)
        ensure_schema(self._db)

    def get(self, key: str, default: str | None = None) -> str | None:
        """Get a raw config value."""
        row = self._db.fetchone(
            "SELECT config_value FROM ilm_config WHERE config_key = ?", (key,)
        )
        return row[0] if row else default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get a Y/N config value as a bool."""
        value = self.get(key)
        return default if value is None else _parse_bool(key, value)

    def set(self, key: str, value: str, description: str | None = None) -> None:
        """
        Set a config value, inserting the key if needed.

        Args:
            key: Config key (upper case)
            value: New value as text
            description: Optional description for new keys
        """
        key = key.upper()
        now = datetime.now()
        with self._db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE ilm_config SET config_value = ?, updated_at = ?
                WHERE config_key = ?
                RETURNING config_key
                """,
                (str(value), now, key),
            ).fetchone()
            if updated is None:
                conn.execute(
                    """
                    INSERT INTO ilm_config (config_key, config_value, description, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (key, str(value), description, now),
                )
        logger.info(f"Config {key} set to {value}")

    def profile_thresholds(self, profile_name: str) -> tuple[int, int, int] | None:
        """Hot, warm and cold days of a threshold profile, or None if it is missing."""
        row = self._db.fetchone(
            """
            SELECT hot_days, warm_days, cold_days
            FROM ilm_threshold_profiles
            WHERE profile_name = ?
            """,
            (profile_name,),
        )
        return (int(row[0]), int(row[1]), int(row[2])) if row else None

    def all(self) -> dict[str, str]:
        """Get all config values."""
        rows = self._db.fetchall("SELECT config_key, config_value FROM ilm_config")
        return {key: value for key, value in rows}

    def is_emergency_stop(self) -> bool:
        """Read the emergency stop flag live."""
        return self.get_bool("EMERGENCY_STOP", False)

    def set_emergency_stop(self, stopped: bool) -> None:
        """Set or clear the emergency stop flag."""
        self.set("EMERGENCY_STOP", "Y" if stopped else "N")
        if stopped:
            logger.warning("Emergency stop requested: no new actions will start")
        else:
            logger.info("Emergency stop cleared")


def load_config(db_path: str | None = None) -> LifecycleConfig:
    """
    Load a lifecycle config snapshot.

    Args:
        db_path: Optional database path

    Returns:
        Frozen LifecycleConfig

    Raises:
        ConfigurationError: If the DEFAULT profile is missing or a value is malformed
    """
    store = ConfigStore(db_path)
    values = {key: value for key, (value, _) in DEFAULT_CONFIG.items()}
    values.update(store.all())

    profile = store.profile_thresholds(DEFAULT_PROFILE_NAME)
    if profile is None:
        raise ConfigurationError(
            f"Threshold profile {DEFAULT_PROFILE_NAME} is required but missing"
        )

    config = LifecycleConfig(
        default_hot_days=int(profile[0]),
        default_warm_days=int(profile[1]),
        default_cold_days=int(profile[2]),
        enable_auto_execution=_parse_bool(
            "ENABLE_AUTO_EXECUTION", values["ENABLE_AUTO_EXECUTION"]
        ),
        execution_window_start=_parse_time(
            "EXECUTION_WINDOW_START", values["EXECUTION_WINDOW_START"]
        ),
        execution_window_end=_parse_time("EXECUTION_WINDOW_END", values["EXECUTION_WINDOW_END"]),
        max_actions_per_run=_parse_int(
            "MAX_ACTIONS_PER_RUN", values["MAX_ACTIONS_PER_RUN"], minimum=1
        ),
        access_tracking_enabled=_parse_bool(
            "ACCESS_TRACKING_ENABLED", values["ACCESS_TRACKING_ENABLED"]
        ),
        log_retention_days=_parse_int("LOG_RETENTION_DAYS", values["LOG_RETENTION_DAYS"]),
        queue_retention_days=_parse_int("QUEUE_RETENTION_DAYS", values["QUEUE_RETENTION_DAYS"]),
        auto_merge_partitions=_parse_bool(
            "AUTO_MERGE_PARTITIONS", values["AUTO_MERGE_PARTITIONS"]
        ),
        merge_lock_timeout=float(_parse_int("MERGE_LOCK_TIMEOUT", values["MERGE_LOCK_TIMEOUT"])),
        partition_lock_timeout=float(
            _parse_int("PARTITION_LOCK_TIMEOUT", values["PARTITION_LOCK_TIMEOUT"])
        ),
        frozen_tier_enabled=_parse_bool("FROZEN_TIER_ENABLED", values["FROZEN_TIER_ENABLED"]),
    )
    logger.debug(f"Loaded lifecycle config snapshot: {config.to_dict()}")
    return config
