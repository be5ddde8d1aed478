"""
Write-time validation of lifecycle policies.

Checks run in a fixed order and stop at the first failure, so the error a
caller sees is always the most fundamental problem with the definition:

    1. target object exists and is partitioned
    2. target location exists (when set)
    3. compression codec is known (when set)
    4. action is compatible with the policy type
    5. action-specific parameters are present
    6. at least one trigger is set and every trigger value is valid
    7. priority is within 1-999

A referenced threshold profile must exist as well. Name uniqueness is
enforced by PolicyStore inside the insert transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ilm.data.catalog import Codec, ObjectCatalog
from ilm.lifecycle.conditions import parse_condition
from ilm.lifecycle.errors import (
    IncompatibleAction,
    InvalidCodec,
    InvalidLocation,
    InvalidTriggerValue,
    MissingRequiredParameter,
    NoTriggerCondition,
    ObjectNotFound,
    ObjectNotPartitioned,
    PriorityOutOfRange,
    ProfileNotFound,
    ValidationError,
)
from ilm.lifecycle.policies import COMPATIBLE_ACTIONS, ActionType, Policy
from ilm.lifecycle.profiles import ProfileStore, Temperature

MIN_PRIORITY = 1
MAX_PRIORITY = 999


@dataclass
class ValidationResult:
    """Result of validating one policy definition."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "error_type": self.error_type,
        }


class PolicyValidator:
    """
    Validates policy definitions against the catalog and profile store.

    validate() raises the specific ValidationError subclass for the first
    failing check. check() runs the same checks but reports the outcome in a
    ValidationResult instead of raising.
    """

    def __init__(
        self,
        db_path: str | None = None,
        catalog: ObjectCatalog | None = None,
        profiles: ProfileStore | None = None,
    ):
        self._catalog = catalog or ObjectCatalog(db_path)
        self._profiles = profiles or ProfileStore(db_path)

    def validate(self, policy: Policy) -> ValidationResult:
        """
        Validate a policy definition.

        Args:
            policy: Policy to validate

        Returns:
            ValidationResult with advisory warnings

        Raises:
            ValidationError: The subclass matching the first failed check
        """
        if not policy.policy_name or not policy.policy_name.strip():
            raise MissingRequiredParameter("policy_name is required", field="policy_name")

        self._check_target(policy)
        self._check_location(policy)
        self._check_codec(policy)
        self._check_compatibility(policy)
        self._check_required_parameters(policy)
        self._check_triggers(policy)
        self._check_priority(policy)
        self._check_profile(policy)

        warnings = self._advisories(policy)
        logger.debug(f"Policy {policy.policy_name} passed validation")
        return ValidationResult(is_valid=True, warnings=warnings)

    def check(self, policy: Policy) -> ValidationResult:
        """Validate without raising."""
        try:
            return self.validate(policy)
        except ValidationError as e:
            return ValidationResult(is_valid=False, errors=[str(e)], error_type=type(e).__name__)

    def _check_target(self, policy: Policy) -> None:
        obj = self._catalog.get_object(policy.table_owner, policy.table_name)
        if obj is None:
            raise ObjectNotFound(
                f"Object {policy.table_owner}.{policy.table_name} does not exist",
                field="table_name",
            )
        if not obj.partitioned:
            raise ObjectNotPartitioned(
                f"Object {policy.table_owner}.{policy.table_name} is not partitioned",
                field="table_name",
            )

    def _check_location(self, policy: Policy) -> None:
        if policy.target_location and not self._catalog.location_exists(policy.target_location):
            raise InvalidLocation(
                f"Location {policy.target_location} does not exist", field="target_location"
            )

    def _check_codec(self, policy: Policy) -> None:
        if policy.compression_type is not None and not Codec.is_valid(policy.compression_type):
            raise InvalidCodec(
                f"Invalid compression type: {policy.compression_type}. "
                f"Valid types: {', '.join(Codec.values())}",
                field="compression_type",
            )

    def _check_compatibility(self, policy: Policy) -> None:
        allowed = COMPATIBLE_ACTIONS.get(policy.policy_type)
        if allowed is None:
            raise IncompatibleAction(
                f"Unknown policy type: {policy.policy_type}", field="policy_type"
            )
        if policy.action_type not in allowed:
            raise IncompatibleAction(
                f"Action {policy.action_type} is not allowed for {policy.policy_type} "
                f"policies (allowed: {', '.join(sorted(allowed))})",
                field="action_type",
            )

    def _check_required_parameters(self, policy: Policy) -> None:
        if policy.action_type == ActionType.COMPRESS.value and not policy.compression_type:
            raise MissingRequiredParameter(
                "COMPRESS requires compression_type", field="compression_type"
            )
        if policy.action_type == ActionType.MOVE.value and not policy.target_location:
            raise MissingRequiredParameter(
                "MOVE requires target_location", field="target_location"
            )

    def _check_triggers(self, policy: Policy) -> None:
        if not policy.has_trigger:
            raise NoTriggerCondition(
                "At least one of age_days, age_months, access_pattern, "
                "size_threshold_mb or custom_condition is required",
                field="age_days",
            )
        for name in ("age_days", "age_months"):
            value = getattr(policy, name)
            if value is not None and value < 0:
                raise InvalidTriggerValue(f"{name} must be >= 0, got {value}", field=name)
        if policy.size_threshold_mb is not None and policy.size_threshold_mb <= 0:
            raise InvalidTriggerValue(
                f"size_threshold_mb must be > 0, got {policy.size_threshold_mb}",
                field="size_threshold_mb",
            )
        if policy.access_pattern is not None and policy.access_pattern not in {
            t.value for t in Temperature
        }:
            raise InvalidTriggerValue(
                f"Invalid access pattern: {policy.access_pattern}", field="access_pattern"
            )
        if policy.custom_condition is not None:
            parse_condition(policy.custom_condition)

    def _check_priority(self, policy: Policy) -> None:
        if not MIN_PRIORITY <= policy.priority <= MAX_PRIORITY:
            raise PriorityOutOfRange(
                f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, "
                f"got {policy.priority}",
                field="priority",
            )

    def _check_profile(self, policy: Policy) -> None:
        if policy.threshold_profile_id is None:
            return
        if self._profiles.get(policy.threshold_profile_id) is None:
            raise ProfileNotFound(
                f"Threshold profile {policy.threshold_profile_id} does not exist",
                field="threshold_profile_id",
            )

    def _advisories(self, policy: Policy) -> list[str]:
        warnings = []
        if policy.age_days is not None and policy.age_months is not None:
            warnings.append(
                f"Both age_days ({policy.age_days}) and age_months ({policy.age_months}) "
                "are set; age_months takes precedence"
            )
        if policy.compression_type and policy.action_type in (
            ActionType.READ_ONLY.value,
            ActionType.DROP.value,
            ActionType.TRUNCATE.value,
        ):
            warnings.append(f"compression_type is ignored for {policy.action_type}")
        return warnings
