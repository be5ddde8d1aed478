"""Shared fixtures for ILM tests."""

import os
from datetime import date

import pytest

from ilm.data.catalog import ObjectCatalog
from ilm.data.db import DatabaseManager
from ilm.data.schema import create_tables
from ilm.utils.config import reset_config


@pytest.fixture
def test_db(tmp_path, monkeypatch):
    """Create a temporary DuckDB database with schema for testing."""
    db_path = str(tmp_path / "ilm_test.duckdb")

    # Reset the singleton to ensure fresh state
    DatabaseManager.reset()
    reset_config()
    monkeypatch.setenv("ILM_DB_PATH", db_path)

    create_tables(db_path)

    yield db_path

    DatabaseManager.reset()
    reset_config()
    for ext in ["", ".wal", ".tmp"]:
        if os.path.exists(db_path + ext):
            os.remove(db_path + ext)


@pytest.fixture
def catalog(test_db):
    """
    Catalog with DWH.SALES_FACT partitioned monthly.

    As of 2024-03-06, P_2023_12 is 66 days old, P_2024_01 35 days and P_2024_02
    6 days (estimated from the upper bounds).
    """
    cat = ObjectCatalog(test_db)
    cat.register_object("DWH", "SALES_FACT", partitioned=True, partition_interval="MONTHLY")
    cat.add_partition("DWH", "SALES_FACT", "P_2023_12", date(2024, 1, 1), num_rows=10_000, size_mb=1000.0)
    cat.add_partition("DWH", "SALES_FACT", "P_2024_01", date(2024, 2, 1), num_rows=12_000, size_mb=1200.0)
    cat.add_partition("DWH", "SALES_FACT", "P_2024_02", date(2024, 3, 1), num_rows=8_000, size_mb=800.0)
    cat.register_object("DWH", "CUSTOMER_DIM", partitioned=False)
    return cat
