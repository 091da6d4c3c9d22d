"""
Recall Engine - cross-scope context retrieval

Fans out one prefix listing per requested scope, drops expired records
(counting them), applies the optional filters, ranks by category then
recency, truncates to the limit and renders a bounded markdown digest.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from errors import ValidationError
from models import (
    SCOPES,
    VALID_CATEGORIES,
    Memory,
    MemoryContext,
    agent_prefix,
    prefix_for,
    recall_sort_key,
)
from utils import parse_iso, truncate_utf8, utc_now, utf8_len

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
MAX_SUMMARY_BYTES = 4096
TRUNCATION_MARKER = "..."


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return min(max(1, limit), MAX_LIMIT)


def _parse_bound(name: str, value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_iso(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {name} timestamp: {value}", **{name: value}) from exc


def build_summary(memories: Sequence[Memory], max_bytes: int = MAX_SUMMARY_BYTES) -> str:
    """Markdown digest of ranked memories, grouped under category headers.

    Consecutive records of the same category share one header. The result
    never exceeds max_bytes of UTF-8; when cut, it ends with "...".
    """
    parts: list[str] = []
    previous = None
    for memory in memories:
        if memory.category != previous:
            parts.append(f"## {memory.category}\n")
            previous = memory.category
        parts.append(f"{memory.content}\n\n")

    summary = "".join(parts).strip()
    if utf8_len(summary) <= max_bytes:
        return summary
    budget = max_bytes - utf8_len(TRUNCATION_MARKER)
    return truncate_utf8(summary, budget).rstrip() + TRUNCATION_MARKER


async def _fetch(ctx: MemoryContext, scopes: Iterable[str]) -> list[Memory]:
    storage = ctx.storage
    fetched: list[Memory] = []
    for scope in scopes:
        location = await storage.ensure_location(scope, ctx.project_id, ctx.agent_id)
        memories = await storage.list_by_prefix(location, prefix_for(scope, ctx.agent_id))
        # The project bucket multiplexes private and team records.
        memories = [m for m in memories if m.scope == scope]
        logger.debug("Fetched %d %s memories", len(memories), scope)
        fetched.extend(memories)

        if scope == "private" and ctx.parent_agent_id:
            inherited = await storage.list_by_prefix(location, agent_prefix(ctx.parent_agent_id))
            visible = [m for m in inherited if m.scope == "private" and m.category != "core"]
            logger.debug(
                "Sub-agent recall: %d parent memories (%d core hidden)",
                len(visible),
                len(inherited) - len(visible),
            )
            fetched.extend(visible)
    return fetched


async def recall_context(
    ctx: MemoryContext,
    scopes: Sequence[str] | None = None,
    categories: Sequence[str] | None = None,
    tags: Sequence[str] | None = None,
    min_priority: int | None = None,
    max_priority: int | None = None,
    created_after: str | None = None,
    created_before: str | None = None,
    updated_after: str | None = None,
    updated_before: str | None = None,
    search: str | None = None,
    since: str | None = None,
    limit: int | None = DEFAULT_LIMIT,
    now: datetime | None = None,
) -> dict[str, Any]:
    scopes = list(scopes) if scopes else list(SCOPES)
    for scope in scopes:
        if scope not in SCOPES:
            raise ValidationError(f"Invalid scope '{scope}'. Valid: {list(SCOPES)}", scope=scope)
    for category in categories or ():
        if category not in VALID_CATEGORIES:
            raise ValidationError(
                f"Invalid category '{category}'. Valid: {sorted(VALID_CATEGORIES)}", category=category
            )

    bounds = {
        name: _parse_bound(name, value)
        for name, value in (
            ("createdAfter", created_after),
            ("createdBefore", created_before),
            ("updatedAfter", updated_after),
            ("updatedBefore", updated_before),
            ("since", since),
        )
    }
    effective_limit = clamp_limit(limit)
    now = now or utc_now()

    fetched = await _fetch(ctx, scopes)
    active = [m for m in fetched if not m.is_expired(now)]
    expired_count = len(fetched) - len(active)

    low = min_priority if min_priority is not None else 1
    high = max_priority if max_priority is not None else 3
    needle = search.lower() if search else None

    def keep(memory: Memory) -> bool:
        if categories and memory.category not in categories:
            return False
        if tags and not all(tag in memory.tags for tag in tags):
            return False
        if not low <= memory.priority <= high:
            return False
        created = parse_iso(memory.created_at)
        updated = parse_iso(memory.updated_at)
        if bounds["createdAfter"] and created < bounds["createdAfter"]:
            return False
        if bounds["createdBefore"] and created > bounds["createdBefore"]:
            return False
        if bounds["updatedAfter"] and updated < bounds["updatedAfter"]:
            return False
        if bounds["updatedBefore"] and updated > bounds["updatedBefore"]:
            return False
        if bounds["since"] and not updated > bounds["since"]:
            return False
        if needle and needle not in memory.content.lower():
            return False
        return True

    ranked = sorted(filter(keep, active), key=recall_sort_key)[:effective_limit]
    by_scope = {scope: [m.to_record() for m in ranked if m.scope == scope] for scope in SCOPES}
    summary = build_summary(ranked)

    logger.info(
        "Context recalled: %s, expired=%d, summary=%d bytes",
        ", ".join(f"{scope}={len(records)}" for scope, records in by_scope.items()),
        expired_count,
        utf8_len(summary),
    )
    return {
        **by_scope,
        "summary": summary,
        "counts": {**{scope: len(records) for scope, records in by_scope.items()}, "expired": expired_count},
    }
