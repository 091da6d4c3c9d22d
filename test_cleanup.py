"""Tests for TTL expiry and quota eviction."""

from datetime import timedelta

from cleanup import cleanup, select_evictions
from conftest import AGENT_ID, OTHER_AGENT_ID, build_memory
from models import Location, agent_prefix
from utils import utc_now


def _aged(count, category="recent", start=None, agent_id=AGENT_ID):
    """count live records, oldest first, one second apart."""
    start = start or utc_now() - timedelta(hours=20)
    return [
        build_memory(
            f"{category} {i}",
            category=category,
            agent_id=agent_id,
            created=start + timedelta(seconds=i),
            expires=utc_now() + timedelta(hours=4) if category in ("recent", "tasks") else None,
        )
        for i in range(count)
    ]


def _expired(count, category="recent"):
    now = utc_now()
    return [
        build_memory(
            f"stale {i}",
            category=category,
            created=now - timedelta(hours=25),
            expires=now - timedelta(seconds=1),
        )
        for i in range(count)
    ]


async def _remaining(ctx, category):
    location = Location("project", ctx.project_id)
    return await ctx.storage.keys_by_prefix(location, agent_prefix(AGENT_ID, category))


class TestSelectEvictions:
    """Victim selection is a pure function of createdAt."""

    def test_oldest_surplus(self):
        """Only the oldest records beyond the limit are chosen."""
        memories = _aged(5)
        victims = select_evictions(list(reversed(memories)), 3)
        assert victims == memories[:2]

    def test_under_limit(self):
        """Nothing is evicted at or below the limit."""
        assert select_evictions(_aged(3), 3) == []


class TestExpiration:
    """Deleting records whose TTL elapsed."""

    async def test_expired_records_are_deleted(self, ctx, seed):
        """Expired records go, live ones stay."""
        live = _aged(3)
        await seed(live + _expired(2, "recent") + _expired(1, "tasks"))

        result = await cleanup(ctx)
        assert result == {"expired": 3, "deleted": 0, "errors": []}
        assert sorted(await _remaining(ctx, "recent")) == sorted(m.key for m in live)
        assert await _remaining(ctx, "tasks") == []

    async def test_durable_records_never_expire(self, ctx, seed):
        """longterm and core have no expiry."""
        await seed([build_memory(category="longterm"), build_memory(category="core")])
        assert (await cleanup(ctx))["expired"] == 0

    async def test_empty_inventory(self, ctx):
        """Cleanup on a fresh project is a no-op."""
        assert await cleanup(ctx) == {"expired": 0, "deleted": 0, "errors": []}


class TestQuota:
    """Evicting the oldest surplus per category."""

    async def test_recent_over_quota(self, ctx, seed):
        """1100 recent records: exactly 100 oldest are evicted."""
        memories = await seed(_aged(1100))
        oldest, newest = memories[0], memories[-1]

        result = await cleanup(ctx)
        assert result["deleted"] == 100
        remaining = set(await _remaining(ctx, "recent"))
        assert len(remaining) == 1000
        assert oldest.key not in remaining
        assert newest.key in remaining
        assert {m.key for m in memories[:100]}.isdisjoint(remaining)

    async def test_tasks_over_quota(self, ctx, seed):
        """tasks are capped at 500."""
        await seed(_aged(502, "tasks"))
        assert (await cleanup(ctx))["deleted"] == 2
        assert len(await _remaining(ctx, "tasks")) == 500

    async def test_expired_do_not_count_toward_quota(self, ctx, seed):
        """1000 live + 5 expired: expire 5, evict none."""
        await seed(_aged(1000) + _expired(5))
        result = await cleanup(ctx)
        assert result["expired"] == 5
        assert result["deleted"] == 0
        assert len(await _remaining(ctx, "recent")) == 1000

    async def test_expire_only_skips_quota(self, ctx, seed):
        """expire_only leaves surplus in place."""
        await seed(_aged(1003) + _expired(1))
        result = await cleanup(ctx, expire_only=True)
        assert result == {"expired": 1, "deleted": 0, "errors": []}
        assert len(await _remaining(ctx, "recent")) == 1003

    async def test_core_over_quota_is_reported_not_deleted(self, ctx, seed):
        """Core surplus is an error string; nothing is evicted."""
        await seed(_aged(101, "core"))
        result = await cleanup(ctx)
        assert result["deleted"] == 0
        assert len(result["errors"]) == 1
        assert "101 memories (limit: 100, excess: 1)" in result["errors"][0]
        assert len(await _remaining(ctx, "core")) == 101

    async def test_core_counted_per_agent(self, ctx, seed):
        """Two agents with 60 core each are both within the ceiling."""
        await seed(_aged(60, "core") + _aged(60, "core", agent_id=OTHER_AGENT_ID))
        assert (await cleanup(ctx))["errors"] == []

    async def test_team_records_are_untouched(self, ctx, seed):
        """Cleanup only walks the private inventory."""
        team = build_memory(scope="team", category="decisions")
        await seed([team])
        await cleanup(ctx)
        location = Location("project", ctx.project_id)
        assert await ctx.storage.read(location, team.key) == team
