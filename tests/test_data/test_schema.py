"""Tests for schema creation and seeding."""

from ilm.data.db import get_db
from ilm.data.schema import BUILTIN_PROFILES, DEFAULT_CONFIG, SCHEMA_VERSION, TABLES, create_tables


class TestCreateTables:
    """Tests for create_tables."""

    def test_all_tables_exist(self, test_db):
        """Every table is created."""
        rows = get_db(test_db).fetchall(
            "SELECT table_name FROM information_schema.tables WHERE table_name LIKE 'ilm_%'"
        )
        assert {r[0] for r in rows} == set(TABLES)

    def test_seeds(self, test_db):
        """Locations, profiles and config defaults are seeded on first install."""
        db = get_db(test_db)

        profiles = db.fetchall("SELECT profile_id, profile_name FROM ilm_threshold_profiles ORDER BY profile_id")
        assert [name for _, name in profiles] == list(BUILTIN_PROFILES)
        assert profiles[0] == (1, "DEFAULT")
        assert db.fetchone("SELECT COUNT(*) FROM ilm_locations")[0] == 4
        version = db.fetchone("SELECT config_value FROM ilm_config WHERE config_key = 'SCHEMA_VERSION'")
        assert version == (SCHEMA_VERSION,)

    def test_idempotent(self, test_db):
        """Running twice neither duplicates nor resets seeds."""
        db = get_db(test_db)
        db.execute("UPDATE ilm_config SET config_value = '50' WHERE config_key = 'MAX_ACTIONS_PER_RUN'")

        create_tables(test_db)

        assert db.fetchone("SELECT COUNT(*) FROM ilm_threshold_profiles")[0] == len(BUILTIN_PROFILES)
        assert db.fetchone(
            "SELECT config_value FROM ilm_config WHERE config_key = 'MAX_ACTIONS_PER_RUN'"
        ) == ("50",)

    def test_missing_config_keys_restored(self, test_db):
        """Config keys added in later releases are filled in on upgrade."""
        db = get_db(test_db)
        db.execute("DELETE FROM ilm_config WHERE config_key = 'FROZEN_TIER_ENABLED'")

        create_tables(test_db)

        assert db.fetchone(
            "SELECT config_value FROM ilm_config WHERE config_key = 'FROZEN_TIER_ENABLED'"
        ) == (DEFAULT_CONFIG["FROZEN_TIER_ENABLED"][0],)

    def test_deleted_profiles_not_reseeded(self, test_db):
        """Built-in profiles are only written on first install."""
        db = get_db(test_db)
        db.execute("DELETE FROM ilm_threshold_profiles WHERE profile_name = 'AGGRESSIVE_ARCHIVE'")

        create_tables(test_db)

        assert db.fetchone("SELECT COUNT(*) FROM ilm_threshold_profiles")[0] == len(BUILTIN_PROFILES) - 1
