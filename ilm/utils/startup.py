"""Startup validation for ILM.

Provides fail-fast validation that the database is usable before a batch or
server starts.
"""

from __future__ import annotations

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema


def validate_startup(db_path: str | None = None) -> list[str]:
    """
    Validate the database at startup.

    Returns:
        List of error messages. Empty if all valid.
    """
    errors = []

    try:
        db = get_db(db_path)
        ensure_schema(db)
    except Exception as e:
        return [f"Database not reachable: {e}"]

    # load_config() cannot build a snapshot without the DEFAULT profile
    row = db.fetchone(
        "SELECT 1 FROM ilm_threshold_profiles WHERE profile_name = 'DEFAULT'"
    )
    if row is None:
        errors.append("Missing DEFAULT threshold profile")

    return errors


def fail_fast_startup(db_path: str | None = None) -> None:
    """
    Validate startup and raise if invalid.

    Call this at application entry points (CLI, ops server).

    Raises:
        RuntimeError: If the database is unusable.
    """
    errors = validate_startup(db_path)
    if errors:
        error_msg = "Startup validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise RuntimeError(error_msg)

    logger.debug("Startup validation passed")
