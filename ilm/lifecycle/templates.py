"""
Policy templates.

A template is a named bundle of policy definitions applied to one object at a
time. Two document shapes are stored in ilm_templates.policies_json:

    legacy:  [{"policy_name": "{TABLE}_COMPRESS_90D", "age_days": 90, ...}, ...]
    tiered:  {"tier_config": {"enabled": true, "hot": {...}, ...},
              "policies": [{...}, ...]}

Tiered templates also describe the partition layout used by the boundary
builder (see ilm.lifecycle.boundaries).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.boundaries import TierConfig
from ilm.lifecycle.errors import DuplicatePolicyName, IlmError, InvalidTierConfig, ValidationError
from ilm.lifecycle.policies import POLICY_TYPE_FOR_ACTION, Policy, PolicyStore

TABLE_PLACEHOLDER = "{TABLE}"
TIER_FIELDS = ("interval", "tablespace", "compression")


def _policy(name, action, priority, age_days=None, age_months=None, tablespace=None, compression=None):
    definition: dict[str, Any] = {"policy_name": name}
    if age_days is not None:
        definition["age_days"] = age_days
    if age_months is not None:
        definition["age_months"] = age_months
    definition["action"] = action
    if tablespace:
        definition["tablespace"] = tablespace
    if compression:
        definition["compression"] = compression
    definition["priority"] = priority
    return definition


def _tier(interval, tablespace, compression, age_months=None, age_days=None):
    tier: dict[str, Any] = {}
    if age_months is not None:
        tier["age_months"] = age_months
    if age_days is not None:
        tier["age_days"] = age_days
    tier.update(interval=interval, tablespace=tablespace, compression=compression)
    return tier


# name -> (table_type, description, document)
BUILTIN_TEMPLATES: dict[str, tuple[str, str, Any]] = {
    "FACT_TABLE_STANDARD": (
        "FACT",
        "Standard fact table: compress at 90d, tier at 12m, archive at 36m",
        [
            _policy("{TABLE}_COMPRESS_90D", "COMPRESS", 100, age_days=90, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_WARM_12M", "MOVE", 200, age_months=12, tablespace="TBS_WARM", compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_36M", "MOVE", 300, age_months=36, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_36M", "READ_ONLY", 301, age_months=36),
        ],
    ),
    "DIMENSION_LARGE": (
        "DIMENSION",
        "Large dimension tables",
        [_policy("{TABLE}_COMPRESS_180D", "COMPRESS", 100, age_days=180, compression="QUERY HIGH")],
    ),
    "STAGING_MINIMAL": (
        "STAGING",
        "Minimal retention for staging tables",
        [_policy("{TABLE}_PURGE_30D", "DROP", 900, age_days=30)],
    ),
    "SCD2_EFFECTIVE_DATE": (
        "SCD2",
        "SCD2 tables keyed by effective date: compress old versions, retain history",
        [
            _policy("{TABLE}_COMPRESS_365D", "COMPRESS", 100, age_days=365, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_36M", "MOVE", 200, age_months=36, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_60M", "READ_ONLY", 300, age_months=60),
        ],
    ),
    "SCD2_VALID_FROM_TO": (
        "SCD2",
        "SCD2 tables with valid from/to columns: compress old versions",
        [
            _policy("{TABLE}_COMPRESS_365D", "COMPRESS", 100, age_days=365, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_36M", "MOVE", 200, age_months=36, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_60M", "READ_ONLY", 300, age_months=60),
        ],
    ),
    "EVENTS_SHORT_RETENTION": (
        "EVENTS",
        "Event tables with 90-day retention",
        [
            _policy("{TABLE}_COMPRESS_7D", "COMPRESS", 100, age_days=7, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_30D", "MOVE", 200, age_days=30, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_PURGE_90D", "DROP", 900, age_days=90),
        ],
    ),
    "EVENTS_COMPLIANCE": (
        "EVENTS",
        "Audit and compliance events with 7-year retention",
        [
            _policy("{TABLE}_COMPRESS_90D", "COMPRESS", 100, age_days=90, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_WARM_12M", "MOVE", 200, age_months=12, tablespace="TBS_WARM", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_TIER_COLD_36M", "MOVE", 300, age_months=36, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_60M", "READ_ONLY", 400, age_months=60),
            _policy("{TABLE}_PURGE_84M", "DROP", 900, age_months=84),
        ],
    ),
    "STAGING_7DAY": (
        "STAGING",
        "Staging tables with 7-day retention",
        [_policy("{TABLE}_PURGE_7D", "DROP", 900, age_days=7)],
    ),
    "STAGING_CDC": (
        "STAGING",
        "CDC staging tables with 30-day retention and compression",
        [
            _policy("{TABLE}_COMPRESS_3D", "COMPRESS", 100, age_days=3, compression="QUERY HIGH"),
            _policy("{TABLE}_PURGE_30D", "DROP", 900, age_days=30),
        ],
    ),
    "STAGING_ERROR_QUARANTINE": (
        "STAGING",
        "Error and quarantine tables with 1-year retention",
        [
            _policy("{TABLE}_COMPRESS_30D", "COMPRESS", 100, age_days=30, compression="QUERY LOW"),
            _policy("{TABLE}_TIER_COLD_6M", "MOVE", 200, age_months=6, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_PURGE_12M", "DROP", 900, age_months=12),
        ],
    ),
    "HIST_MONTHLY": (
        "HIST",
        "Monthly snapshot history with 3-year retention",
        [
            _policy("{TABLE}_COMPRESS_3M", "COMPRESS", 100, age_months=3, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_12M", "MOVE", 200, age_months=12, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_24M", "READ_ONLY", 300, age_months=24),
            _policy("{TABLE}_PURGE_36M", "DROP", 900, age_months=36),
        ],
    ),
    "HIST_YEARLY": (
        "HIST",
        "Yearly snapshot history with 7-year retention",
        [
            _policy("{TABLE}_COMPRESS_12M", "COMPRESS", 100, age_months=12, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_36M", "MOVE", 200, age_months=36, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_60M", "READ_ONLY", 300, age_months=60),
            _policy("{TABLE}_PURGE_84M", "DROP", 900, age_months=84),
        ],
    ),
    "HIST_COMPLIANCE": (
        "HIST",
        "Compliance history, kept forever but compressed",
        [
            _policy("{TABLE}_COMPRESS_6M", "COMPRESS", 100, age_months=6, compression="QUERY HIGH"),
            _policy("{TABLE}_TIER_COLD_24M", "MOVE", 200, age_months=24, tablespace="TBS_COLD", compression="ARCHIVE HIGH"),
            _policy("{TABLE}_READONLY_36M", "READ_ONLY", 300, age_months=36),
        ],
    ),
    "FACT_TABLE_STANDARD_TIERED": (
        "FACT",
        "Tiered fact table: monthly for 12m, yearly after, read-only at 84m",
        {
            "tier_config": {
                "enabled": True,
                "hot": _tier("MONTHLY", "TBS_HOT", "NONE", age_months=12),
                "warm": _tier("YEARLY", "TBS_WARM", "BASIC", age_months=36),
                "cold": _tier("YEARLY", "TBS_COLD", "OLTP", age_months=84),
            },
            "policies": [
                _policy("{TABLE}_TIER_WARM", "MOVE", 200, age_months=12, tablespace="TBS_WARM", compression="BASIC"),
                _policy("{TABLE}_TIER_COLD", "MOVE", 300, age_months=36, tablespace="TBS_COLD", compression="OLTP"),
                _policy("{TABLE}_READONLY", "READ_ONLY", 400, age_months=84),
            ],
        },
    ),
    "EVENTS_SHORT_RETENTION_TIERED": (
        "EVENTS",
        "Tiered events: daily for 7d, weekly to 30d, monthly after, purge at 90d",
        {
            "tier_config": {
                "enabled": True,
                "hot": _tier("DAILY", "TBS_HOT", "NONE", age_days=7),
                "warm": _tier("WEEKLY", "TBS_WARM", "BASIC", age_days=30),
                "cold": _tier("MONTHLY", "TBS_COLD", "OLTP", age_days=90),
            },
            "policies": [
                _policy("{TABLE}_TIER_WARM", "MOVE", 200, age_days=7, tablespace="TBS_WARM", compression="BASIC"),
                _policy("{TABLE}_TIER_COLD", "MOVE", 300, age_days=30, tablespace="TBS_COLD", compression="OLTP"),
                _policy("{TABLE}_PURGE", "DROP", 900, age_days=90),
            ],
        },
    ),
    "SCD2_VALID_FROM_TO_TIERED": (
        "SCD2",
        "Tiered SCD2 history: monthly for 12m, yearly after, read-only at 60m",
        {
            "tier_config": {
                "enabled": True,
                "hot": _tier("MONTHLY", "TBS_HOT", "NONE", age_months=12),
                "warm": _tier("YEARLY", "TBS_WARM", "BASIC", age_months=36),
                "cold": _tier("YEARLY", "TBS_COLD", "OLTP", age_months=60),
            },
            "policies": [
                _policy("{TABLE}_TIER_WARM", "MOVE", 200, age_months=12, tablespace="TBS_WARM", compression="BASIC"),
                _policy("{TABLE}_TIER_COLD", "MOVE", 300, age_months=36, tablespace="TBS_COLD", compression="OLTP"),
                _policy("{TABLE}_READONLY", "READ_ONLY", 400, age_months=60),
            ],
        },
    ),
}


def template_policies(document: Any) -> list[dict[str, Any]]:
    """Policy definitions of either document shape."""
    if isinstance(document, list):
        return list(document)
    if isinstance(document, dict):
        return list(document.get("policies") or [])
    return []


def template_tier_config(document: Any) -> dict[str, Any] | None:
    if isinstance(document, dict):
        return document.get("tier_config")
    return None


def validate_template(document: str | Any) -> list[str]:
    """
    Check a template document.

    Args:
        document: JSON text or an already parsed document

    Returns:
        Error messages, empty when the template is usable
    """
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as e:
            return [f"Invalid JSON: {e}"]

    if not isinstance(document, (list, dict)):
        return ["Template must be a list of policies or an object"]

    errors = []
    tier_config = template_tier_config(document)
    if tier_config is not None:
        if not isinstance(tier_config, dict):
            errors.append("tier_config must be an object")
        else:
            for tier in ("hot", "warm", "cold"):
                spec = tier_config.get(tier)
                if spec is None:
                    errors.append(f"tier_config.{tier} is missing")
                    continue
                if not isinstance(spec, dict):
                    errors.append(f"tier_config.{tier} must be an object")
                    continue
                missing = [name for name in TIER_FIELDS if not spec.get(name)]
                if missing:
                    errors.append(f"tier_config.{tier} missing required fields: {', '.join(missing)}")
                if spec.get("age_months") is None and spec.get("age_days") is None:
                    errors.append(f"tier_config.{tier} must have either age_months or age_days")
            if not errors:
                try:
                    TierConfig.from_dict(tier_config)
                except InvalidTierConfig as e:
                    errors.append(str(e))

    for index, definition in enumerate(template_policies(document)):
        if not isinstance(definition, dict):
            errors.append(f"Policy #{index + 1} must be an object")
            continue
        if not definition.get("policy_name"):
            errors.append(f"Policy #{index + 1} is missing policy_name")
        action = definition.get("action")
        if not action:
            errors.append(f"Policy #{index + 1} is missing action")
        elif str(action).upper() not in POLICY_TYPE_FOR_ACTION:
            errors.append(f"Policy #{index + 1} has unknown action {action}")
    return errors


def policy_from_definition(definition: dict[str, Any], owner: str, table: str) -> Policy:
    """Build a Policy from one template definition for a concrete object."""
    action = str(definition["action"]).upper()
    return Policy(
        policy_name=definition["policy_name"].replace(TABLE_PLACEHOLDER, table),
        table_owner=owner,
        table_name=table,
        policy_type=POLICY_TYPE_FOR_ACTION[action],
        action_type=action,
        age_days=definition.get("age_days"),
        age_months=definition.get("age_months"),
        access_pattern=definition.get("access_pattern"),
        size_threshold_mb=definition.get("size_threshold_mb"),
        custom_condition=definition.get("custom_condition"),
        target_location=definition.get("tablespace"),
        compression_type=definition.get("compression"),
        priority=definition.get("priority", 100),
    )


@dataclass
class Template:
    template_name: str
    table_type: str | None
    description: str | None
    document: Any

    @property
    def is_tiered(self) -> bool:
        tier_config = template_tier_config(self.document)
        return bool(tier_config and tier_config.get("enabled", True))

    @property
    def policies(self) -> list[dict[str, Any]]:
        return template_policies(self.document)

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_name": self.template_name,
            "table_type": self.table_type,
            "description": self.description,
            "tiered": self.is_tiered,
            "policies": len(self.policies),
        }


@dataclass
class TemplateApplication:
    """Result of applying a template to one object."""

    template_name: str
    table_owner: str
    table_name: str
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_name": self.template_name,
            "table_owner": self.table_owner,
            "table_name": self.table_name,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class TemplateStore:
    """
    Stored policy templates.

    Usage:
        templates = TemplateStore()
        result = templates.apply_template("FACT_TABLE_STANDARD", "DWH", "SALES_FACT")
        print(result.created)
    """

    def __init__(self, db_path: str | None = None, policies: PolicyStore | None = None):
        self._db = get_db(db_path)
        self._db_path = db_path
        ensure_schema(self._db)
        self._policies = policies
        self.seed_builtin()

    @property
    def policies(self) -> PolicyStore:
        if self._policies is None:
            self._policies = PolicyStore(self._db_path)
        return self._policies

    def seed_builtin(self) -> int:
        """Insert built-in templates that are not stored yet. Returns the number added."""
        added = 0
        with self._db.transaction() as conn:
            for name, (table_type, description, document) in BUILTIN_TEMPLATES.items():
                if conn.execute(
                    "SELECT 1 FROM ilm_templates WHERE template_name = ?", (name,)
                ).fetchone():
                    continue
                conn.execute(
                    """
                    INSERT INTO ilm_templates (template_name, description, table_type, policies_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (name, description, table_type, json.dumps(document)),
                )
                added += 1
        if added:
            logger.debug(f"Seeded {added} built-in templates")
        return added

    def save(self, name: str, document: Any, table_type: str | None = None, description: str | None = None) -> Template:
        """
        Store a custom template, replacing one with the same name.

        Raises:
            ValidationError: If validate_template() reports errors
        """
        errors = validate_template(document)
        if errors:
            raise ValidationError(f"Template {name} is invalid: {'; '.join(errors)}", field="policies_json")
        if isinstance(document, str):
            document = json.loads(document)

        with self._db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE ilm_templates
                SET description = ?, table_type = ?, policies_json = ?
                WHERE template_name = ?
                RETURNING template_name
                """,
                (description, table_type, json.dumps(document), name),
            ).fetchone()
            if updated is None:
                conn.execute(
                    """
                    INSERT INTO ilm_templates (template_name, description, table_type, policies_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (name, description, table_type, json.dumps(document)),
                )
        logger.info(f"Saved template {name}")
        return Template(name, table_type, description, document)

    def get(self, name: str) -> Template | None:
        row = self._db.fetchone(
            """
            SELECT template_name, table_type, description, policies_json
            FROM ilm_templates WHERE template_name = ?
            """,
            (name,),
        )
        if row is None:
            return None
        return Template(row[0], row[1], row[2], json.loads(row[3]))

    def list_templates(self) -> list[Template]:
        rows = self._db.fetchall(
            "SELECT template_name, table_type, description, policies_json FROM ilm_templates ORDER BY template_name"
        )
        return [Template(r[0], r[1], r[2], json.loads(r[3])) for r in rows]

    def _require(self, name: str) -> Template:
        template = self.get(name)
        if template is None:
            raise ValidationError(f"Template {name} not found", field="template_name")
        return template

    def tier_config_from_template(self, name: str) -> TierConfig | None:
        """
        Tier layout of a template.

        Returns:
            TierConfig for tiered templates, None for legacy ones

        Raises:
            ValidationError: If the template does not exist
            InvalidTierConfig: If the stored tier layout is invalid
        """
        tier_config = template_tier_config(self._require(name).document)
        if tier_config is None:
            return None
        return TierConfig.from_dict(tier_config)

    def apply_template(self, name: str, owner: str, table: str) -> TemplateApplication:
        """
        Create a template's policies for one object.

        Policies whose name already exists are skipped, so applying a
        template twice changes nothing. Other validation failures are
        collected and the remaining policies are still created.

        Raises:
            ValidationError: If the template does not exist or is malformed
        """
        template = self._require(name)
        problems = validate_template(template.document)
        if problems:
            raise ValidationError(f"Template {name} is invalid: {'; '.join(problems)}", field="policies_json")

        result = TemplateApplication(template_name=name, table_owner=owner, table_name=table)
        for definition in template.policies:
            policy = policy_from_definition(definition, owner, table)
            try:
                self.policies.create(policy)
                result.created.append(policy.policy_name)
            except DuplicatePolicyName:
                logger.debug(f"Policy {policy.policy_name} already exists, skipping")
                result.skipped.append(policy.policy_name)
            except IlmError as e:
                logger.error(f"Template {name}: policy {policy.policy_name} rejected: {e}")
                result.errors.append(f"{policy.policy_name}: {e}")

        logger.info(
            f"Applied template {name} to {owner}.{table}: {len(result.created)} created, "
            f"{len(result.skipped)} skipped, {len(result.errors)} errors"
        )
        return result
