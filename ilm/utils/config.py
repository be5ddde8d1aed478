"""
Process-level configuration for ILM.

Settings that belong to the running process (where the database lives, how
loudly to log, where the ops server binds) come from environment variables.
Lifecycle behaviour itself is stored in the database; see
ilm.lifecycle.settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from ilm.data.db import resolve_db_path


class Environment(Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _environment_from_env() -> Environment:
    value = os.getenv("ILM_ENVIRONMENT", Environment.DEVELOPMENT.value).lower()
    try:
        return Environment(value)
    except ValueError:
        logger.warning(f"Invalid ILM_ENVIRONMENT '{value}', defaulting to development")
        return Environment.DEVELOPMENT


@dataclass
class Config:
    """
    Process configuration.

    Attributes:
        environment: Deployment environment (ILM_ENVIRONMENT)
        db_path: DuckDB file (ILM_DB_PATH)
        log_level: Default loguru level (ILM_LOG_LEVEL)
        ops_host: Ops server bind host (ILM_OPS_HOST)
        ops_port: Ops server bind port (ILM_OPS_PORT)
    """

    environment: Environment = Environment.DEVELOPMENT
    db_path: str = field(default_factory=resolve_db_path)
    log_level: str = "INFO"
    ops_host: str = "0.0.0.0"
    ops_port: int = 8080

    @property
    def debug_mode(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            environment=_environment_from_env(),
            db_path=resolve_db_path(),
            log_level=os.getenv("ILM_LOG_LEVEL", "INFO").upper(),
            ops_host=os.getenv("ILM_OPS_HOST", "0.0.0.0"),
            ops_port=int(os.getenv("ILM_OPS_PORT", "8080")),
        )


_config: Config | None = None


def get_config() -> Config:
    """Get the process configuration, loading it from the environment once."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
