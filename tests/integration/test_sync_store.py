"""Integration tests for the sync store against a live PostgreSQL database."""

from datetime import datetime, timezone

import psycopg2
import pytest

from dashboard_sync.db.store import SyncStore

# High ids to stay clear of real data
BOARD_ID = 990001
TICKET_ID = 990002
PROJECT_ID = 990003


@pytest.fixture
def cleanup(sync_store: SyncStore):
    yield
    with sync_store.conn.cursor() as cur:
        cur.execute("DELETE FROM project_audits WHERE project_id = %s", (PROJECT_ID,))
        cur.execute("DELETE FROM projects WHERE id = %s", (PROJECT_ID,))
        cur.execute("DELETE FROM tickets WHERE id = %s", (TICKET_ID,))
        cur.execute("DELETE FROM boards WHERE id = %s", (BOARD_ID,))
        cur.execute("DELETE FROM sync_log WHERE entity_type = %s", ("integration-test",))
    sync_store.conn.commit()


@pytest.mark.integration
@pytest.mark.usefixtures("cleanup")
class TestSyncStore:
    """Test SyncStore statements against the real schema."""

    def test_upsert_is_idempotent(self, sync_store: SyncStore) -> None:
        """Test that repeating an upsert leaves a single, updated row."""
        sync_store.upsert("boards", {"id": BOARD_ID, "name": "Board A", "type": "MS"})
        sync_store.upsert("boards", {"id": BOARD_ID, "name": "Board B", "type": "PS"})

        row = sync_store.find_by_id("boards", BOARD_ID)
        assert row == {"id": BOARD_ID, "name": "Board B", "type": "PS"}

    def test_insert_if_absent_keeps_existing(self, sync_store: SyncStore) -> None:
        """Test that a placeholder never overwrites a real row."""
        sync_store.upsert("boards", {"id": BOARD_ID, "name": "Real", "type": "PS"})

        created = sync_store.insert_if_absent(
            "boards", {"id": BOARD_ID, "name": f"Board {BOARD_ID}", "type": "MS"}
        )

        assert created is False
        assert sync_store.find_by_id("boards", BOARD_ID)["name"] == "Real"

    def test_foreign_key_enforced(self, sync_store: SyncStore) -> None:
        """Test that a ticket cannot reference a missing board."""
        with pytest.raises(psycopg2.IntegrityError):
            sync_store.upsert("tickets", {"id": TICKET_ID, "board_id": BOARD_ID})

    def test_append_audit_deduplicates(self, sync_store: SyncStore) -> None:
        """Test that the same status event is only appended once."""
        sync_store.upsert("projects", {"id": PROJECT_ID, "name": "Integration"})
        record = {
            "project_id": PROJECT_ID,
            "status": "Ready to Close",
            "previous_status": "In Progress",
            "changed_by": "eng1",
            "date_entered": datetime(2024, 5, 20, 15, tzinfo=timezone.utc),
            "message": None,
        }

        assert sync_store.append_audit(record) is True
        assert sync_store.append_audit(record) is False

    def test_sync_log_defaults(self, sync_store: SyncStore) -> None:
        """Test that an in-progress ledger row starts with no sync time."""
        sync_store.upsert("sync_log", {"entity_type": "integration-test", "status": "in_progress"})

        row = sync_store.find_by_id("sync_log", "integration-test")
        assert row["last_sync_at"] is None
        assert row["record_count"] == 0
