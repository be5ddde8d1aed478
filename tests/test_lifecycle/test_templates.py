"""Tests for policy templates."""

import json

import pytest

from ilm.lifecycle.boundaries import Interval
from ilm.lifecycle.errors import ValidationError
from ilm.lifecycle.policies import PolicyStore
from ilm.lifecycle.templates import BUILTIN_TEMPLATES, TemplateStore, validate_template


def tier(interval="MONTHLY", tablespace="TBS_HOT", compression="NONE", **ages):
    return {"interval": interval, "tablespace": tablespace, "compression": compression, **ages}


class TestSeeding:
    """Tests for built-in template seeding."""

    def test_builtin_templates_seeded(self, test_db):
        """All built-in templates are stored on first use."""
        store = TemplateStore(test_db)

        assert len(store.list_templates()) == len(BUILTIN_TEMPLATES) == 16
        assert store.seed_builtin() == 0

    def test_builtin_templates_are_valid(self):
        """Every built-in template passes validation."""
        for name, (_, _, document) in BUILTIN_TEMPLATES.items():
            assert validate_template(document) == [], name

    def test_tiered_flag(self, test_db):
        """Tiered templates are recognized by their tier_config."""
        store = TemplateStore(test_db)

        assert store.get("FACT_TABLE_STANDARD_TIERED").is_tiered
        assert not store.get("FACT_TABLE_STANDARD").is_tiered
        assert store.get("FACT_TABLE_STANDARD").to_dict()["policies"] == 4


class TestValidateTemplate:
    """Tests for validate_template."""

    def test_invalid_json(self):
        """Unparseable text is reported."""
        errors = validate_template("[{not json")

        assert errors[0].startswith("Invalid JSON")

    def test_wrong_shape(self):
        """Documents must be a list or an object."""
        assert validate_template(42) == ["Template must be a list of policies or an object"]

    def test_policy_fields(self):
        """Policies need a name and a known action."""
        errors = validate_template([{"action": "COMPRESS"}, {"policy_name": "X", "action": "SHRED"}, "junk"])

        assert errors == [
            "Policy #1 is missing policy_name",
            "Policy #2 has unknown action SHRED",
            "Policy #3 must be an object",
        ]

    def test_missing_tier(self):
        """Tiered templates need hot, warm and cold tiers."""
        document = {
            "tier_config": {"hot": tier(age_months=12), "warm": tier("YEARLY", age_months=36)},
            "policies": [],
        }

        assert validate_template(document) == ["tier_config.cold is missing"]

    def test_tier_fields(self):
        """Tiers need interval, tablespace, compression and an age."""
        document = {
            "tier_config": {
                "hot": {"interval": "MONTHLY", "compression": "NONE", "age_months": 12},
                "warm": tier("YEARLY"),
                "cold": tier("YEARLY", age_months=84),
            }
        }

        assert validate_template(document) == [
            "tier_config.hot missing required fields: tablespace",
            "tier_config.warm must have either age_months or age_days",
        ]

    def test_tier_ordering(self):
        """Tier ages must increase from hot to cold."""
        document = {
            "tier_config": {
                "hot": tier(age_months=36),
                "warm": tier("YEARLY", age_months=12),
                "cold": tier("YEARLY", age_months=84),
            }
        }

        errors = validate_template(json.dumps(document))

        assert len(errors) == 1
        assert "strictly increasing" in errors[0]


class TestApplyTemplate:
    """Tests for TemplateStore.apply_template."""

    def test_apply_creates_policies(self, test_db, catalog):
        """Policies are created with the table name substituted."""
        result = TemplateStore(test_db).apply_template("FACT_TABLE_STANDARD", "DWH", "SALES_FACT")

        assert result.success
        assert result.created == [
            "SALES_FACT_COMPRESS_90D",
            "SALES_FACT_TIER_WARM_12M",
            "SALES_FACT_TIER_COLD_36M",
            "SALES_FACT_READONLY_36M",
        ]
        policy = PolicyStore(test_db).get_by_name("SALES_FACT_TIER_WARM_12M")
        assert (policy.policy_type, policy.action_type) == ("TIERING", "MOVE")
        assert (policy.target_location, policy.compression_type, policy.age_months) == ("TBS_WARM", "QUERY HIGH", 12)

    def test_apply_twice_skips_existing(self, test_db, catalog):
        """Applying a template again creates nothing new."""
        store = TemplateStore(test_db)
        store.apply_template("STAGING_CDC", "DWH", "SALES_FACT")

        result = store.apply_template("STAGING_CDC", "DWH", "SALES_FACT")

        assert result.created == []
        assert result.skipped == ["SALES_FACT_COMPRESS_3D", "SALES_FACT_PURGE_30D"]
        assert PolicyStore(test_db).get_by_name("SALES_FACT_PURGE_30D").policy_type == "PURGE"

    def test_apply_collects_errors(self, test_db, catalog):
        """Policies rejected by validation are reported, not raised."""
        result = TemplateStore(test_db).apply_template("DIMENSION_LARGE", "DWH", "CUSTOMER_DIM")

        assert not result.success
        assert result.created == []
        assert "CUSTOMER_DIM_COMPRESS_180D" in result.errors[0]

    def test_unknown_template(self, test_db):
        """Applying a missing template raises ValidationError."""
        with pytest.raises(ValidationError, match="not found"):
            TemplateStore(test_db).apply_template("NOPE", "DWH", "SALES_FACT")


class TestCustomTemplates:
    """Tests for saving custom templates."""

    def test_save_and_apply(self, test_db, catalog):
        """Saved templates can be applied like built-in ones."""
        store = TemplateStore(test_db)
        store.save(
            "SALES_QUICK",
            [{"policy_name": "{TABLE}_RO_30D", "action": "READ_ONLY", "age_days": 30, "priority": 50}],
            table_type="FACT",
        )

        result = store.apply_template("SALES_QUICK", "DWH", "SALES_FACT")

        assert result.created == ["SALES_FACT_RO_30D"]
        assert PolicyStore(test_db).get_by_name("SALES_FACT_RO_30D").priority == 50

    def test_save_replaces(self, test_db):
        """Saving under an existing name replaces the document."""
        store = TemplateStore(test_db)
        store.save("CUSTOM", [{"policy_name": "A", "action": "DROP", "age_days": 1}])
        store.save("CUSTOM", [{"policy_name": "B", "action": "DROP", "age_days": 2}], description="v2")

        template = store.get("CUSTOM")
        assert template.description == "v2"
        assert template.policies[0]["policy_name"] == "B"

    def test_save_rejects_invalid(self, test_db):
        """Invalid templates are not stored."""
        store = TemplateStore(test_db)

        with pytest.raises(ValidationError, match="missing action"):
            store.save("BROKEN", [{"policy_name": "A"}])
        assert store.get("BROKEN") is None


class TestTierConfigFromTemplate:
    """Tests for TemplateStore.tier_config_from_template."""

    def test_tiered_template(self, test_db):
        """Tiered templates yield a TierConfig."""
        config = TemplateStore(test_db).tier_config_from_template("FACT_TABLE_STANDARD_TIERED")

        hot, warm, cold = config.tier("HOT"), config.tier("WARM"), config.tier("COLD")
        assert (hot.interval, hot.age_months, hot.location) == (Interval.MONTHLY, 12, "TBS_HOT")
        assert (warm.interval, warm.codec) == (Interval.YEARLY, "BASIC")
        assert cold.age_months == 84

    def test_day_based_template(self, test_db):
        """Day-based tiers keep their ages in days."""
        config = TemplateStore(test_db).tier_config_from_template("EVENTS_SHORT_RETENTION_TIERED")

        assert [(t.name, t.interval, t.age_days) for t in config.tiers] == [
            ("HOT", Interval.DAILY, 7),
            ("WARM", Interval.WEEKLY, 30),
            ("COLD", Interval.MONTHLY, 90),
        ]

    def test_legacy_template(self, test_db):
        """Legacy templates have no tier layout."""
        assert TemplateStore(test_db).tier_config_from_template("HIST_MONTHLY") is None

    def test_unknown_template(self, test_db):
        """Unknown templates raise ValidationError."""
        with pytest.raises(ValidationError):
            TemplateStore(test_db).tier_config_from_template("NOPE")
