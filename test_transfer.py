"""Tests for JSON export and import."""

import json
import logging
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import AGENT_ID, PROJECT_ID, build_memory
from errors import ValidationError
from models import Location, MemoryContext
from storage import StorageRouter
from transfer import EXPORT_FORMAT_VERSION, export_memories, import_memories, parse_record
from utils import to_iso, utc_now


@pytest.fixture
def fresh_ctx(tmp_path):
    """A caller on an empty, separate database."""
    storage = StorageRouter(str(tmp_path / "restore"))
    yield MemoryContext(agent_id=AGENT_ID, project_id=PROJECT_ID, storage=storage)
    storage.close()


def _sample():
    return [
        build_memory("recent note"),
        build_memory("durable", category="longterm"),
        build_memory("identity", scope="personal", category="core"),
        build_memory("team call", scope="team", category="decisions"),
        build_memory("world fact", scope="public", category="learnings"),
    ]


def _write_envelope(path, memories, version=EXPORT_FORMAT_VERSION):
    path.write_text(
        json.dumps(
            {
                "version": version,
                "exportedAt": to_iso(utc_now()),
                "projectId": PROJECT_ID,
                "agentId": AGENT_ID,
                "memories": memories,
            }
        ),
        encoding="utf-8",
    )
    return path


class TestExport:
    """Writing backup files."""

    async def test_envelope(self, ctx, seed, tmp_path):
        """The file holds a pretty-printed versioned envelope."""
        await seed(_sample())
        target = tmp_path / "backup.json"
        result = await export_memories(ctx, output_path=str(target))

        assert result["exported"] == 5
        assert result["filepath"] == str(target)
        text = target.read_text(encoding="utf-8")
        assert result["bytes"] == len(text.encode("utf-8"))
        assert text.startswith("{\n  ")
        data = json.loads(text)
        assert data["version"] == "1.0"
        assert data["projectId"] == PROJECT_ID
        assert data["agentId"] == AGENT_ID
        assert {m["scope"] for m in data["memories"]} == {"private", "personal", "team", "public"}

    async def test_filters(self, ctx, seed, tmp_path):
        """scope, category and since narrow the export."""
        now = utc_now()
        old = build_memory("old", category="longterm", created=now - timedelta(days=2))
        await seed(_sample() + [old])

        result = await export_memories(ctx, output_path=str(tmp_path / "a.json"), scope="private")
        assert result["exported"] == 3
        result = await export_memories(ctx, output_path=str(tmp_path / "b.json"), category="longterm")
        assert result["exported"] == 2
        since = to_iso(now - timedelta(days=1))
        result = await export_memories(
            ctx, output_path=str(tmp_path / "c.json"), scope="private", category="longterm", since=since
        )
        assert result["exported"] == 1

    async def test_expired_excluded_by_default(self, ctx, seed, tmp_path):
        """Expired records are only exported on request."""
        now = utc_now()
        await seed([build_memory(created=now - timedelta(hours=30), expires=now - timedelta(hours=6))])
        assert (await export_memories(ctx, output_path=str(tmp_path / "a.json")))["exported"] == 0
        result = await export_memories(ctx, output_path=str(tmp_path / "b.json"), include_expired=True)
        assert result["exported"] == 1

    async def test_invalid_since(self, ctx, tmp_path):
        """An unparseable since is a validation error."""
        with pytest.raises(ValidationError):
            await export_memories(ctx, output_path=str(tmp_path / "x.json"), since="soon")

    async def test_default_path(self, ctx, seed, tmp_path, monkeypatch):
        """Without a path, a timestamped file lands in the working directory."""
        monkeypatch.chdir(tmp_path)
        await seed([build_memory()])
        result = await export_memories(ctx)
        written = list(tmp_path.glob("memories-backup-*.json"))
        assert [p.name for p in written] == [Path(result["filepath"]).name]
        assert ":" not in written[0].name


class TestImport:
    """Re-ingesting backup files."""

    async def test_round_trip(self, ctx, fresh_ctx, seed, tmp_path):
        """Export then import into an empty store reproduces the records."""
        originals = await seed(_sample())
        backup = tmp_path / "backup.json"
        await export_memories(ctx, output_path=str(backup))

        result = await import_memories(fresh_ctx, str(backup))
        assert result == {"imported": 5, "skipped": 0, "errors": []}
        for memory in originals:
            bucket = await fresh_ctx.storage.ensure(memory.location)
            restored = await fresh_ctx.storage.read(memory.location, memory.key)
            assert restored is not None, bucket.name
            assert (restored.id, restored.content, restored.scope, restored.category) == (
                memory.id,
                memory.content,
                memory.scope,
                memory.category,
            )

    async def test_reimport_reports_conflicts(self, ctx, fresh_ctx, seed, tmp_path):
        """Without overwrite every existing record is a skipped conflict."""
        await seed(_sample())
        backup = tmp_path / "backup.json"
        await export_memories(ctx, output_path=str(backup))
        await import_memories(fresh_ctx, str(backup))

        again = await import_memories(fresh_ctx, str(backup))
        assert again["imported"] == 0
        assert again["skipped"] == 5
        assert all("already exists" in error for error in again["errors"])

        overwritten = await import_memories(fresh_ctx, str(backup), overwrite_existing=True)
        assert overwritten["imported"] == 5

    async def test_uses_records_own_location(self, fresh_ctx, tmp_path):
        """Records land in the location of their own scope and owners."""
        foreign = build_memory("other project", category="longterm", project_id="gitlab.com/x/y", agent_id="z")
        path = _write_envelope(tmp_path / "in.json", [foreign.to_record()])
        await import_memories(fresh_ctx, str(path))
        location = Location("project", "gitlab.com/x/y")
        assert (await fresh_ctx.storage.read(location, foreign.key)).content == "other project"

    async def test_invalid_records_skipped(self, fresh_ctx, tmp_path):
        """Structural and pairing problems are reported per record."""
        good = build_memory(category="longterm").to_record()
        missing = {k: v for k, v in build_memory().to_record().items() if k != "content"}
        mismatched = build_memory(category="longterm").to_record() | {"scope": "team"}
        path = _write_envelope(tmp_path / "in.json", [good, missing, mismatched, "junk"])

        result = await import_memories(fresh_ctx, str(path))
        assert result["imported"] == 1
        assert result["skipped"] == 3
        assert len(result["errors"]) == 3

    async def test_skip_invalid_false_is_fatal(self, fresh_ctx, tmp_path):
        """The first bad record aborts the import."""
        missing = {k: v for k, v in build_memory().to_record().items() if k != "version"}
        path = _write_envelope(tmp_path / "in.json", [missing, build_memory().to_record()])
        with pytest.raises(ValidationError):
            await import_memories(fresh_ctx, str(path), skip_invalid=False)

    async def test_newer_version_accepted_with_warning(self, fresh_ctx, tmp_path, caplog):
        """Forward-compatible: a higher format version only warns."""
        path = _write_envelope(tmp_path / "in.json", [build_memory().to_record()], version="2.0")
        with caplog.at_level(logging.WARNING, logger="transfer"):
            result = await import_memories(fresh_ctx, str(path))
        assert result["imported"] == 1
        assert "version mismatch" in caplog.text

    @pytest.mark.parametrize(
        "payload",
        ["not json at all", json.dumps([1, 2]), json.dumps({"version": "1.0", "memories": []})],
    )
    async def test_bad_envelope(self, fresh_ctx, tmp_path, payload):
        """Unreadable, non-JSON or incomplete envelopes fail the whole import."""
        path = tmp_path / "in.json"
        path.write_text(payload, encoding="utf-8")
        with pytest.raises(ValidationError):
            await import_memories(fresh_ctx, str(path))

    async def test_missing_file(self, fresh_ctx, tmp_path):
        """A missing file is a validation error."""
        with pytest.raises(ValidationError):
            await import_memories(fresh_ctx, str(tmp_path / "nope.json"))

    def test_parse_record_reports_id(self):
        """Structural errors name the offending record."""
        with pytest.raises(ValidationError) as exc_info:
            parse_record({"id": "abc123"})
        assert "abc123" in str(exc_info.value)
