"""Tests for the legacy scope migration script."""

import json

import pytest

from conftest import AGENT_ID, PROJECT_ID, build_memory
from migrate_scopes import migrate_scopes, plan_migration
from models import Location
from storage import StorageRouter


def _legacy_record(category="learnings"):
    record = build_memory("legacy shared note", scope="team", category=category).to_record()
    record["scope"] = "shared"
    return record


def _legacy_key(record):
    return f"agents/{record['agentId']}/{record['category']}/{record['id']}"


@pytest.fixture
async def legacy_db(tmp_path):
    """A project bucket holding one legacy 'shared' record and one current record."""
    db_uri = str(tmp_path / "lancedb")
    storage = StorageRouter(db_uri)
    location = Location("project", PROJECT_ID)
    bucket = await storage.ensure(location)
    legacy = _legacy_record()
    current = build_memory("current note", category="longterm")
    bucket.put_many(
        [
            (_legacy_key(legacy), json.dumps(legacy)),
            (current.key, json.dumps(current.to_record())),
        ]
    )
    storage.close()
    return db_uri, legacy, current


class TestPlanMigration:
    """Pure planning over raw (key, value) rows."""

    def test_renames_shared_to_team(self):
        """Legacy records get scope 'team' and a shared/ key."""
        legacy = _legacy_record("decisions")
        changes, unchanged = plan_migration([(_legacy_key(legacy), json.dumps(legacy))])
        assert unchanged == 0
        [change] = changes
        assert change.old_scope == "shared"
        assert change.new_key == f"shared/decisions/{legacy['id']}"
        assert change.record["scope"] == "team"
        assert change.record["updatedAt"] >= legacy["updatedAt"]

    def test_current_and_unreadable_rows_unchanged(self):
        """Current scopes and corrupt rows are counted, not changed."""
        current = build_memory(category="longterm")
        changes, unchanged = plan_migration(
            [(current.key, json.dumps(current.to_record())), ("agents/x/recent/1", "{not json")]
        )
        assert changes == []
        assert unchanged == 2


class TestMigrateScopes:
    """End-to-end runs against a LanceDB directory."""

    async def test_dry_run_changes_nothing(self, legacy_db):
        """A dry run only prints the plan."""
        db_uri, legacy, _ = legacy_db
        assert migrate_scopes(db_uri, PROJECT_ID, dry_run=True) == 0

        storage = StorageRouter(db_uri)
        bucket = await storage.ensure(Location("project", PROJECT_ID))
        assert bucket.get(_legacy_key(legacy)) is not None
        storage.close()

    async def test_live_run_moves_records(self, legacy_db, capsys):
        """A live run rewrites the key and scope and leaves current records alone."""
        db_uri, legacy, current = legacy_db
        assert migrate_scopes(db_uri, PROJECT_ID, dry_run=False) == 1
        assert "Migration complete" in capsys.readouterr().out

        storage = StorageRouter(db_uri)
        location = Location("project", PROJECT_ID)
        bucket = await storage.ensure(location)
        assert bucket.get(_legacy_key(legacy)) is None
        migrated = await storage.read(location, f"shared/learnings/{legacy['id']}")
        assert migrated.scope == "team"
        assert migrated.agent_id == AGENT_ID
        assert (await storage.read(location, current.key)).content == "current note"
        storage.close()

    def test_missing_bucket_exits(self, tmp_path):
        """An unknown project is a fatal error."""
        with pytest.raises(SystemExit):
            migrate_scopes(str(tmp_path / "empty"), "no/such/project", dry_run=True)
