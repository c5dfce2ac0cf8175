"""Integration test fixtures and configuration."""

import os

import pytest

from dashboard_sync.db.store import open_store


@pytest.fixture(scope="session")
def db_connection_string() -> str:
    """Return database connection string, skipping when no database is configured."""
    url = os.environ.get("DIRECT_DATABASE_URL")
    if not url:
        pytest.skip("DIRECT_DATABASE_URL is not set")
    return url


@pytest.fixture
def sync_store(db_connection_string: str):
    """Open a store on the test database with the sync schema applied."""
    with open_store(db_connection_string) as store:
        store.create_schema()
        yield store
