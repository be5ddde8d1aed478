"""
Lifecycle policy model and persistence.

A policy targets one partitioned object and describes which partitions to act
on (trigger conditions) and what to do with them (action plus target codec or
location). Every create and update passes through the PolicyValidator before
anything is written.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.errors import DuplicatePolicyName, PolicyNotFound

# Months are compared against partition age using the mean month length
DAYS_PER_MONTH = 30.44


class PolicyType(Enum):
    COMPRESSION = "COMPRESSION"
    TIERING = "TIERING"
    ARCHIVAL = "ARCHIVAL"
    PURGE = "PURGE"


class ActionType(Enum):
    COMPRESS = "COMPRESS"
    MOVE = "MOVE"
    READ_ONLY = "READ_ONLY"
    DROP = "DROP"
    TRUNCATE = "TRUNCATE"


# Actions each policy type may perform
COMPATIBLE_ACTIONS: dict[str, set[str]] = {
    PolicyType.COMPRESSION.value: {ActionType.COMPRESS.value},
    PolicyType.TIERING.value: {ActionType.MOVE.value, ActionType.COMPRESS.value},
    PolicyType.ARCHIVAL.value: {ActionType.READ_ONLY.value, ActionType.MOVE.value},
    PolicyType.PURGE.value: {ActionType.DROP.value, ActionType.TRUNCATE.value},
}

# Policy type implied by an action, used when building policies from templates
POLICY_TYPE_FOR_ACTION: dict[str, str] = {
    ActionType.COMPRESS.value: PolicyType.COMPRESSION.value,
    ActionType.MOVE.value: PolicyType.TIERING.value,
    ActionType.READ_ONLY.value: PolicyType.ARCHIVAL.value,
    ActionType.DROP.value: PolicyType.PURGE.value,
    ActionType.TRUNCATE.value: PolicyType.PURGE.value,
}


@dataclass
class Policy:
    """
    A lifecycle policy.

    Attributes:
        policy_name: Unique name
        table_owner: Owner of the target object
        table_name: Target object name
        policy_type: COMPRESSION, TIERING, ARCHIVAL or PURGE
        action_type: COMPRESS, MOVE, READ_ONLY, DROP or TRUNCATE
        age_days: Trigger when partition age in days reaches this value
        age_months: Trigger when partition age in months reaches this value
        access_pattern: Trigger when partition temperature equals this value
        size_threshold_mb: Trigger when partition size reaches this value
        custom_condition: JSON condition document (see ilm.lifecycle.conditions)
        target_location: Destination storage location for MOVE
        compression_type: Target codec for COMPRESS (optional for MOVE)
        priority: 1-999, lower runs first
        enabled: Disabled policies are never evaluated
        threshold_profile_id: Optional threshold profile for temperature triggers
        policy_id: Assigned on creation
    """

    policy_name: str
    table_owner: str
    table_name: str
    policy_type: str
    action_type: str
    age_days: int | None = None
    age_months: int | None = None
    access_pattern: str | None = None
    size_threshold_mb: float | None = None
    custom_condition: str | None = None
    target_location: str | None = None
    compression_type: str | None = None
    priority: int = 100
    enabled: bool = True
    threshold_profile_id: int | None = None
    policy_id: int | None = None

    def __post_init__(self):
        """Normalize enumerated values and condition documents."""
        self.policy_type = (self.policy_type or "").upper()
        self.action_type = (self.action_type or "").upper()
        if self.access_pattern:
            self.access_pattern = self.access_pattern.upper()
        if isinstance(self.custom_condition, dict):
            self.custom_condition = json.dumps(self.custom_condition, sort_keys=True)

    @property
    def has_trigger(self) -> bool:
        """Check if at least one trigger condition is set."""
        return any(
            value is not None
            for value in (
                self.age_days,
                self.age_months,
                self.access_pattern,
                self.size_threshold_mb,
                self.custom_condition,
            )
        )

    @property
    def age_threshold_days(self) -> float | None:
        """Age trigger expressed in days. age_months takes precedence over age_days."""
        if self.age_months is not None:
            return self.age_months * DAYS_PER_MONTH
        if self.age_days is not None:
            return float(self.age_days)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


_POLICY_COLUMNS = [
    "policy_id",
    "policy_name",
    "table_owner",
    "table_name",
    "policy_type",
    "action_type",
    "age_days",
    "age_months",
    "access_pattern",
    "size_threshold_mb",
    "custom_condition",
    "target_location",
    "compression_type",
    "priority",
    "enabled",
    "threshold_profile_id",
]
_SELECT_POLICY = f"SELECT {', '.join(_POLICY_COLUMNS)} FROM ilm_policies"


def _to_policy(row: tuple[Any, ...]) -> Policy:
    data = dict(zip(_POLICY_COLUMNS, row))
    data["enabled"] = bool(data["enabled"])
    return Policy(**data)


class PolicyStore:
    """
    Create, update and query lifecycle policies.

    Usage:
        store = PolicyStore()
        policy = store.create(Policy(
            policy_name="SALES_COMPRESS_90D",
            table_owner="DWH",
            table_name="SALES_FACT",
            policy_type="COMPRESSION",
            action_type="COMPRESS",
            age_days=90,
            compression_type="QUERY HIGH",
        ))
    """

    def __init__(self, db_path: str | None = None, validator: Any = None):
        """
        Initialize the policy store.

        Args:
            db_path: Optional database path
            validator: Optional PolicyValidator (defaults to one on the same database)
        """
        from ilm.lifecycle.validation import PolicyValidator

        self._db = get_db(db_path)
        self._db_path = db_path
        ensure_schema(self._db)
        self._validator = validator or PolicyValidator(db_path)

    @property
    def validator(self):
        return self._validator

    def create(self, policy: Policy) -> Policy:
        """
        Validate and persist a new policy.

        Args:
            policy: Policy to create (policy_id is ignored)

        Returns:
            The stored policy with its assigned policy_id

        Raises:
            ValidationError: If any check fails; nothing is written
        """
        result = self._validator.validate(policy)
        for warning in result.warnings:
            logger.warning(f"Policy {policy.policy_name}: {warning}")

        with self._db.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM ilm_policies WHERE policy_name = ?", (policy.policy_name,)
            ).fetchone():
                raise DuplicatePolicyName(
                    f"Policy {policy.policy_name} already exists", field="policy_name"
                )

            policy_id = conn.execute(
                "SELECT COALESCE(MAX(policy_id), 0) + 1 FROM ilm_policies"
            ).fetchone()[0]
            stored = replace(policy, policy_id=policy_id)
            now = datetime.now()
            conn.execute(
                f"""
                INSERT INTO ilm_policies ({', '.join(_POLICY_COLUMNS)}, created_at, updated_at)
                VALUES ({', '.join('?' * len(_POLICY_COLUMNS))}, ?, ?)
                """,
                [getattr(stored, column) for column in _POLICY_COLUMNS] + [now, now],
            )

        logger.info(
            f"Created policy {stored.policy_name} (id={policy_id}) on "
            f"{stored.table_owner}.{stored.table_name}: {stored.action_type}"
        )
        return stored

    def update(self, policy_id: int, **changes: Any) -> Policy:
        """
        Validate and apply changes to an existing policy.

        Args:
            policy_id: Policy to update
            **changes: Field values to change

        Returns:
            The updated policy

        Raises:
            PolicyNotFound: If the policy does not exist
            ValidationError: If the updated policy fails validation
        """
        current = self.get(policy_id)
        if current is None:
            raise PolicyNotFound(f"Policy {policy_id} does not exist", field="policy_id")

        changes.pop("policy_id", None)
        updated = replace(current, **changes)
        result = self._validator.validate(updated)
        for warning in result.warnings:
            logger.warning(f"Policy {updated.policy_name}: {warning}")

        # Unique columns are only rewritten when they change
        columns = [
            c
            for c in _POLICY_COLUMNS
            if c != "policy_id" and (c != "policy_name" or updated.policy_name != current.policy_name)
        ]
        with self._db.transaction() as conn:
            if updated.policy_name != current.policy_name and conn.execute(
                "SELECT 1 FROM ilm_policies WHERE policy_name = ?", (updated.policy_name,)
            ).fetchone():
                raise DuplicatePolicyName(
                    f"Policy {updated.policy_name} already exists", field="policy_name"
                )
            conn.execute(
                f"""
                UPDATE ilm_policies
                SET {', '.join(f'{c} = ?' for c in columns)}, updated_at = ?
                WHERE policy_id = ?
                """,
                [getattr(updated, c) for c in columns] + [datetime.now(), policy_id],
            )

        logger.info(f"Updated policy {updated.policy_name} (id={policy_id})")
        return updated

    def get(self, policy_id: int) -> Policy | None:
        row = self._db.fetchone(f"{_SELECT_POLICY} WHERE policy_id = ?", (policy_id,))
        return _to_policy(row) if row else None

    def get_by_name(self, policy_name: str) -> Policy | None:
        row = self._db.fetchone(f"{_SELECT_POLICY} WHERE policy_name = ?", (policy_name,))
        return _to_policy(row) if row else None

    def list_policies(
        self,
        enabled_only: bool = False,
        table_owner: str | None = None,
        table_name: str | None = None,
    ) -> list[Policy]:
        """
        List policies in ascending priority order.

        Args:
            enabled_only: Only return enabled policies
            table_owner: Optional owner filter
            table_name: Optional object filter
        """
        conditions = []
        params: list[Any] = []
        if enabled_only:
            conditions.append("enabled")
        if table_owner:
            conditions.append("table_owner = ?")
            params.append(table_owner)
        if table_name:
            conditions.append("table_name = ?")
            params.append(table_name)

        query = _SELECT_POLICY
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY priority, policy_id"
        return [_to_policy(row) for row in self._db.fetchall(query, params)]

    def set_enabled(self, policy_id: int, enabled: bool) -> None:
        """Enable or disable a policy."""
        if self.get(policy_id) is None:
            raise PolicyNotFound(f"Policy {policy_id} does not exist", field="policy_id")
        self._db.execute(
            "UPDATE ilm_policies SET enabled = ?, updated_at = ? WHERE policy_id = ?",
            (enabled, datetime.now(), policy_id),
        )
        logger.info(f"Policy {policy_id} {'enabled' if enabled else 'disabled'}")

    def delete(self, policy_id: int) -> None:
        """
        Delete a policy and its queue entries that are not executing.

        Execution log rows are kept for audit.
        """
        if self.get(policy_id) is None:
            raise PolicyNotFound(f"Policy {policy_id} does not exist", field="policy_id")
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM ilm_evaluation_queue WHERE policy_id = ? AND status != 'EXECUTING'",
                (policy_id,),
            )
            conn.execute("DELETE FROM ilm_policies WHERE policy_id = ?", (policy_id,))
        logger.info(f"Deleted policy {policy_id}")
