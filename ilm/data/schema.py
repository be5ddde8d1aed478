"""
Database schema for the ILM engine.

All tables are created with CREATE TABLE IF NOT EXISTS, so create_tables()
is safe to call repeatedly. Seed rows (storage locations and threshold
profiles) are written once, on first install.
"""

from __future__ import annotations

from loguru import logger

from ilm.data.db import DatabaseManager, get_db

SCHEMA_VERSION = "1"

# Lifecycle configuration defaults: key -> (value, description)
DEFAULT_CONFIG: dict[str, tuple[str, str]] = {
    "ENABLE_AUTO_EXECUTION": ("Y", "Allow scheduled execution runs"),
    "EXECUTION_WINDOW_START": ("22:00", "Start of the scheduled execution window (HH:MM)"),
    "EXECUTION_WINDOW_END": ("06:00", "End of the scheduled execution window (HH:MM)"),
    "MAX_ACTIONS_PER_RUN": ("100", "Default maximum actions per execution run"),
    "ACCESS_TRACKING_ENABLED": ("Y", "Record partition reads and writes"),
    "LOG_RETENTION_DAYS": ("365", "Days to keep execution and merge log rows"),
    "QUEUE_RETENTION_DAYS": ("7", "Days to keep stale evaluation queue entries"),
    "AUTO_MERGE_PARTITIONS": ("Y", "Consolidate partitions after moves into coarser tiers"),
    "MERGE_LOCK_TIMEOUT": ("30", "Seconds to wait for an object lock before a merge fails"),
    "PARTITION_LOCK_TIMEOUT": ("30", "Seconds to wait for a partition lock before an action fails"),
    "FROZEN_TIER_ENABLED": ("N", "Split COLD partitions older than cold_days into FROZEN"),
    "EMERGENCY_STOP": ("N", "Stop starting new actions"),
}

# Storage locations: name -> (tier, description)
DEFAULT_LOCATIONS: dict[str, tuple[str, str]] = {
    "TBS_HOT": ("HOT", "Fast storage for recent partitions"),
    "TBS_WARM": ("WARM", "Standard storage for aging partitions"),
    "TBS_COLD": ("COLD", "Low-cost storage for historical partitions"),
    "USERS": ("HOT", "Default user storage"),
}

# Built-in threshold profiles: name -> (hot_days, warm_days, cold_days, description)
BUILTIN_PROFILES: dict[str, tuple[int, int, int, str]] = {
    "DEFAULT": (90, 365, 1095, "Standard aging: 90d hot, 1y warm, 3y cold"),
    "FAST_AGING": (30, 90, 180, "Short-lived data such as events and staging"),
    "SLOW_AGING": (180, 730, 1825, "Reference data that stays relevant for years"),
    "AGGRESSIVE_ARCHIVE": (14, 30, 90, "Archive almost immediately"),
}

TABLES = {
    "ilm_config": """
        CREATE TABLE IF NOT EXISTS ilm_config (
            config_key VARCHAR PRIMARY KEY,
            config_value VARCHAR NOT NULL,
            description VARCHAR,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "ilm_locations": """
        CREATE TABLE IF NOT EXISTS ilm_locations (
            location_name VARCHAR PRIMARY KEY,
            tier VARCHAR NOT NULL,
            description VARCHAR
        )
    """,
    "ilm_objects": """
        CREATE TABLE IF NOT EXISTS ilm_objects (
            owner VARCHAR NOT NULL,
            object_name VARCHAR NOT NULL,
            partitioned BOOLEAN NOT NULL DEFAULT TRUE,
            partition_interval VARCHAR,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (owner, object_name)
        )
    """,
    "ilm_partitions": """
        CREATE TABLE IF NOT EXISTS ilm_partitions (
            owner VARCHAR NOT NULL,
            object_name VARCHAR NOT NULL,
            partition_name VARCHAR NOT NULL,
            high_value DATE,
            location VARCHAR NOT NULL,
            codec VARCHAR NOT NULL DEFAULT 'NONE',
            num_rows BIGINT NOT NULL DEFAULT 0,
            size_mb DOUBLE NOT NULL DEFAULT 0,
            read_only BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (owner, object_name, partition_name)
        )
    """,
    "ilm_heat_stats": """
        CREATE TABLE IF NOT EXISTS ilm_heat_stats (
            owner VARCHAR NOT NULL,
            object_name VARCHAR NOT NULL,
            partition_name VARCHAR NOT NULL,
            last_read TIMESTAMP,
            last_write TIMESTAMP,
            read_count BIGINT DEFAULT 0,
            write_count BIGINT DEFAULT 0,
            PRIMARY KEY (owner, object_name, partition_name)
        )
    """,
    "ilm_threshold_profiles": """
        CREATE TABLE IF NOT EXISTS ilm_threshold_profiles (
            profile_id INTEGER PRIMARY KEY,
            profile_name VARCHAR NOT NULL UNIQUE,
            hot_days INTEGER NOT NULL,
            warm_days INTEGER NOT NULL,
            cold_days INTEGER NOT NULL,
            description VARCHAR,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CHECK (hot_days > 0 AND hot_days < warm_days AND warm_days < cold_days)
        )
    """,
    "ilm_policies": """
        CREATE TABLE IF NOT EXISTS ilm_policies (
            policy_id INTEGER PRIMARY KEY,
            policy_name VARCHAR NOT NULL UNIQUE,
            table_owner VARCHAR NOT NULL,
            table_name VARCHAR NOT NULL,
            policy_type VARCHAR NOT NULL,
            action_type VARCHAR NOT NULL,
            age_days INTEGER,
            age_months INTEGER,
            access_pattern VARCHAR,
            size_threshold_mb DOUBLE,
            custom_condition VARCHAR,
            target_location VARCHAR,
            compression_type VARCHAR,
            priority INTEGER NOT NULL DEFAULT 100,
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            threshold_profile_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "ilm_partition_access": """
        CREATE TABLE IF NOT EXISTS ilm_partition_access (
            table_owner VARCHAR NOT NULL,
            table_name VARCHAR NOT NULL,
            partition_name VARCHAR NOT NULL,
            high_value DATE,
            last_write_time TIMESTAMP,
            last_read_time TIMESTAMP,
            read_count BIGINT NOT NULL DEFAULT 0,
            write_count BIGINT NOT NULL DEFAULT 0,
            num_rows BIGINT NOT NULL DEFAULT 0,
            size_mb DOUBLE NOT NULL DEFAULT 0,
            location VARCHAR,
            codec VARCHAR,
            read_only BOOLEAN NOT NULL DEFAULT FALSE,
            days_since_write INTEGER,
            temperature VARCHAR,
            stats_source VARCHAR,
            last_refresh TIMESTAMP,
            PRIMARY KEY (table_owner, table_name, partition_name)
        )
    """,
    "ilm_evaluation_queue": """
        CREATE TABLE IF NOT EXISTS ilm_evaluation_queue (
            queue_id INTEGER PRIMARY KEY,
            policy_id INTEGER NOT NULL,
            table_owner VARCHAR NOT NULL,
            table_name VARCHAR NOT NULL,
            partition_name VARCHAR NOT NULL,
            eligible BOOLEAN NOT NULL,
            reason VARCHAR,
            action_type VARCHAR NOT NULL,
            target_location VARCHAR,
            target_codec VARCHAR,
            priority INTEGER NOT NULL,
            status VARCHAR NOT NULL DEFAULT 'PENDING',
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error VARCHAR,
            queued_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (policy_id, table_owner, table_name, partition_name)
        )
    """,
    "ilm_execution_log": """
        CREATE TABLE IF NOT EXISTS ilm_execution_log (
            execution_id INTEGER PRIMARY KEY,
            run_id VARCHAR NOT NULL,
            queue_id INTEGER,
            policy_id INTEGER,
            policy_name VARCHAR,
            table_owner VARCHAR NOT NULL,
            table_name VARCHAR NOT NULL,
            partition_name VARCHAR NOT NULL,
            action_type VARCHAR NOT NULL,
            status VARCHAR NOT NULL,
            start_time TIMESTAMP NOT NULL,
            end_time TIMESTAMP,
            duration_seconds DOUBLE,
            size_before_mb DOUBLE,
            size_after_mb DOUBLE,
            space_saved_mb DOUBLE,
            compression_ratio DOUBLE,
            target_location VARCHAR,
            target_codec VARCHAR,
            error_message VARCHAR
        )
    """,
    "ilm_merge_log": """
        CREATE TABLE IF NOT EXISTS ilm_merge_log (
            merge_id INTEGER PRIMARY KEY,
            table_owner VARCHAR NOT NULL,
            table_name VARCHAR NOT NULL,
            source_partition VARCHAR NOT NULL,
            target_partition VARCHAR,
            status VARCHAR NOT NULL,
            reason VARCHAR,
            start_time TIMESTAMP NOT NULL,
            end_time TIMESTAMP,
            duration_seconds DOUBLE,
            rows_merged BIGINT DEFAULT 0,
            error_message VARCHAR
        )
    """,
    "ilm_locks": """
        CREATE TABLE IF NOT EXISTS ilm_locks (
            lock_key VARCHAR PRIMARY KEY,
            holder VARCHAR NOT NULL,
            acquired_at TIMESTAMP NOT NULL,
            expires_at TIMESTAMP NOT NULL
        )
    """,
    "ilm_templates": """
        CREATE TABLE IF NOT EXISTS ilm_templates (
            template_name VARCHAR PRIMARY KEY,
            description VARCHAR,
            table_type VARCHAR,
            policies_json VARCHAR NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "ilm_job_runs": """
        CREATE TABLE IF NOT EXISTS ilm_job_runs (
            run_id INTEGER PRIMARY KEY,
            job_name VARCHAR NOT NULL,
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP,
            status VARCHAR NOT NULL,
            error_message VARCHAR,
            summary VARCHAR
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_exec_log_start ON ilm_execution_log(start_time)",
    "CREATE INDEX IF NOT EXISTS idx_exec_log_policy ON ilm_execution_log(policy_id)",
    "CREATE INDEX IF NOT EXISTS idx_merge_log_start ON ilm_merge_log(start_time)",
    "CREATE INDEX IF NOT EXISTS idx_job_runs_name ON ilm_job_runs(job_name)",
]


def create_tables(db_path: str | None = None) -> None:
    """
    Create all ILM tables and seed defaults.

    Args:
        db_path: Optional database path
    """
    db = get_db(db_path)

    with db.transaction() as conn:
        for name, ddl in TABLES.items():
            conn.execute(ddl)
            logger.debug(f"Ensured table {name}")

        for ddl in INDEXES:
            conn.execute(ddl)

        for key, (value, description) in DEFAULT_CONFIG.items():
            conn.execute(
                """
                INSERT INTO ilm_config (config_key, config_value, description)
                VALUES (?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (key, value, description),
            )

        installed = conn.execute(
            "SELECT config_value FROM ilm_config WHERE config_key = 'SCHEMA_VERSION'"
        ).fetchone()

        if installed is None:
            _seed_first_install(conn)
            conn.execute(
                """
                INSERT INTO ilm_config (config_key, config_value, description)
                VALUES ('SCHEMA_VERSION', ?, 'Installed schema version')
                """,
                (SCHEMA_VERSION,),
            )
            logger.info(f"Initialized ILM schema version {SCHEMA_VERSION}")

    db.schema_ready = True


def _seed_first_install(conn) -> None:
    """Write storage locations and built-in threshold profiles."""
    for name, (tier, description) in DEFAULT_LOCATIONS.items():
        conn.execute(
            """
            INSERT INTO ilm_locations (location_name, tier, description)
            VALUES (?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (name, tier, description),
        )

    for profile_id, (name, (hot, warm, cold, description)) in enumerate(
        BUILTIN_PROFILES.items(), start=1
    ):
        conn.execute(
            """
            INSERT INTO ilm_threshold_profiles (
                profile_id, profile_name, hot_days, warm_days, cold_days, description
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (profile_id, name, hot, warm, cold, description),
        )


def ensure_schema(db: DatabaseManager) -> None:
    """Create the schema once per open database manager."""
    if not getattr(db, "schema_ready", False):
        create_tables(db.db_path)
