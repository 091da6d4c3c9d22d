"""TTL expiry and per-category quota enforcement for a project's private memories."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from errors import ScopedMemoryError
from models import (
    AGENTS_PREFIX,
    CORE_MEMORY_LIMIT,
    QUOTA_LIMITS,
    Location,
    Memory,
    MemoryContext,
)
from utils import parse_iso, utc_now

logger = logging.getLogger(__name__)

# Categories whose surplus is evicted oldest-first. Core is reported, never evicted.
EVICTABLE_CATEGORIES = ("recent", "tasks")


def select_evictions(memories: list[Memory], limit: int) -> list[Memory]:
    """Oldest records (by createdAt) beyond the ceiling."""
    surplus = len(memories) - limit
    if surplus <= 0:
        return []
    ordered = sorted(memories, key=lambda m: parse_iso(m.created_at))
    return ordered[:surplus]


async def _delete_all(ctx: MemoryContext, location: Location, victims: list[Memory]) -> tuple[int, list[str]]:
    deleted = 0
    errors: list[str] = []
    for memory in victims:
        try:
            if await ctx.storage.delete(location, memory.key):
                deleted += 1
        except ScopedMemoryError as exc:
            logger.warning("Failed to delete memory %s during cleanup: %s", memory.key, exc)
            errors.append(f"Failed to delete {memory.key}: {exc}")
    return deleted, errors


async def cleanup(
    ctx: MemoryContext, expire_only: bool = False, now: datetime | None = None
) -> dict[str, Any]:
    """Expire past-TTL records, then evict the oldest surplus per category.

    Returns {expired, deleted, errors}. Expired records never count toward
    the quota population.
    """
    now = now or utc_now()
    location = await ctx.storage.ensure_location("private", ctx.project_id, ctx.agent_id)
    inventory = await ctx.storage.list_by_prefix(location, AGENTS_PREFIX)
    logger.info("Cleanup scanning %d private memories in %s", len(inventory), location.table_name)

    expired_records = [m for m in inventory if m.is_expired(now)]
    live = [m for m in inventory if not m.is_expired(now)]

    expired, errors = await _delete_all(ctx, location, expired_records)
    if expired:
        logger.info("Expired %d memories", expired)

    deleted = 0
    if not expire_only:
        victims: list[Memory] = []
        for category in EVICTABLE_CATEGORIES:
            population = [m for m in live if m.category == category]
            victims.extend(select_evictions(population, QUOTA_LIMITS[category]))

        core_by_agent: dict[str, int] = defaultdict(int)
        for memory in live:
            if memory.category == "core":
                core_by_agent[memory.agent_id] += 1
        for agent_id, count in sorted(core_by_agent.items()):
            if count > CORE_MEMORY_LIMIT:
                message = (
                    f"Core memory limit exceeded for agent {agent_id}: {count} memories "
                    f"(limit: {CORE_MEMORY_LIMIT}, excess: {count - CORE_MEMORY_LIMIT}). "
                    "Core memories cannot be auto-deleted."
                )
                logger.warning(message)
                errors.append(message)

        deleted, eviction_errors = await _delete_all(ctx, location, victims)
        errors.extend(eviction_errors)
        if deleted:
            logger.info("Evicted %d memories over quota", deleted)

    return {"expired": expired, "deleted": deleted, "errors": errors}
