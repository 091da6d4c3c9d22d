#!/usr/bin/env python3
"""
Scoped Memory MCP Server - hierarchical agent memory on LanceDB

Exposes the memory engine as MCP tools over stdio using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB tables as per-project, per-agent and global key/value buckets
- A periodic TTL cleanup task for recent/tasks memories

Every tool returns pretty-printed JSON on success and
"Error: [KIND] message" on a domain error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

import cleanup
from config import CLEANUP_INTERVAL_HOURS, Config
from errors import ScopedMemoryError
from models import MemoryContext
from scanner import ContentScanner
from storage import StorageRouter
from tools import handle_tool_call

logger = logging.getLogger("scoped-memory")

LOG_FORMAT = "[scoped-memory] %(levelname)s %(name)s: %(message)s"

# =============================================================================
# Context (lazy, thread-safe)
# =============================================================================

_context: MemoryContext | None = None
_context_lock = threading.Lock()
_cleanup_task: asyncio.Task | None = None


def build_context(config: Config) -> MemoryContext:
    config.validate()
    return MemoryContext(
        agent_id=config.agent_id,
        project_id=config.project_id,
        storage=StorageRouter(config.db_uri),
        scanner=ContentScanner(enabled=config.content_scanning),
        parent_agent_id=config.parent_agent_id,
        config=config,
    )


def get_context() -> MemoryContext:
    """Get or create the process-wide memory context (thread-safe)."""
    global _context
    if _context is None:
        with _context_lock:
            if _context is None:  # Double-check after acquiring lock
                _context = build_context(Config())
                logger.info(
                    "Agent %s on project %s (db: %s)",
                    _context.agent_id,
                    _context.project_id,
                    _context.storage.db_uri,
                )
    return _context


def configure_logging(config: Config) -> None:
    """Route all logging to stderr; stdout carries the MCP protocol."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(config.effective_log_level)


async def _run_tool(name: str, args: dict[str, Any]) -> str:
    ctx = get_context()
    try:
        result = await handle_tool_call(name, args, ctx)
    except ScopedMemoryError as exc:
        logger.warning("Tool %s failed: [%s] %s", name, exc.kind, exc)
        return f"Error: [{exc.kind}] {exc}"
    return json.dumps(result, indent=2, ensure_ascii=False)


def _drop_none(**args: Any) -> dict[str, Any]:
    return {key: value for key, value in args.items() if value is not None}


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "scoped-memory",
    instructions=(
        "Hierarchical agent memory: private (agent+project), personal (agent), "
        "team (project) and public (global) scopes with TTL and quota management"
    ),
)

WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False}
DESTRUCTIVE = {"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True}
READ = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True}


@mcp.tool(name="remember", annotations=WRITE)
async def remember(
    content: str,
    scope: str = "private",
    category: str = "recent",
    metadata: dict[str, Any] | None = None,
) -> str:
    """Store a memory. recent/tasks expire after 24h; longterm and core persist.

    Args:
        content: Memory text (max 32KB)
        scope: private, personal, team or public
        category: recent, tasks, longterm, core (private/personal) or decisions,
            architecture, learnings (team/public)
        metadata: Optional {tags, priority (1-3), relatedTo, source}
    """
    return await _run_tool(
        "remember", _drop_none(content=content, scope=scope, category=category, metadata=metadata)
    )


@mcp.tool(name="remember-task", annotations=WRITE)
async def remember_task(content: str, metadata: dict[str, Any] | None = None) -> str:
    """Store a private task memory (expires after 24h)."""
    return await _run_tool("remember-task", _drop_none(content=content, metadata=metadata))


@mcp.tool(name="remember-learning", annotations=WRITE)
async def remember_learning(content: str, metadata: dict[str, Any] | None = None) -> str:
    """Store a private learning in 'recent'. Promote it later with commit-insight."""
    return await _run_tool("remember-learning", _drop_none(content=content, metadata=metadata))


@mcp.tool(name="remember-bulk", annotations=WRITE)
async def remember_bulk(
    memories: list[dict[str, Any]],
    stop_on_error: bool = False,
    validate: bool = True,
) -> str:
    """Store many memories at once.

    Args:
        memories: Items of {content, scope?, category?, metadata?}
        stop_on_error: Stop at the first failure instead of continuing
        validate: Check every item before storing any
    """
    return await _run_tool(
        "remember-bulk", {"memories": memories, "stopOnError": stop_on_error, "validate": validate}
    )


@mcp.tool(name="core-memory", annotations=WRITE)
async def core_memory(
    content: str, metadata: dict[str, Any] | None = None, scope: str = "personal"
) -> str:
    """Store an identity memory. Never expires; limited to 100 per agent."""
    return await _run_tool(
        "core-memory", _drop_none(content=content, metadata=metadata, scope=scope)
    )


@mcp.tool(name="commit-insight", annotations=WRITE)
async def commit_insight(
    memory_id: str, new_content: str | None = None, target_scope: str | None = None
) -> str:
    """Promote a recent/tasks memory to longterm, removing its expiry.

    Args:
        memory_id: ID of the memory to promote
        new_content: Optional replacement content
        target_scope: private (default: unchanged) or personal for cross-project
    """
    return await _run_tool(
        "commit-insight",
        _drop_none(memoryId=memory_id, newContent=new_content, targetScope=target_scope),
    )


@mcp.tool(name="share-learning", annotations=WRITE)
async def share_learning(
    memory_id: str, category: str = "learnings", keep_original: bool = False
) -> str:
    """Share a longterm/core memory with the team under a new ID."""
    return await _run_tool(
        "share-learning",
        {"memoryId": memory_id, "category": category, "keepOriginal": keep_original},
    )


@mcp.tool(name="forget", annotations=DESTRUCTIVE)
async def forget(memory_id: str, force: bool = False) -> str:
    """Delete a memory by ID. Core memories require force=true."""
    return await _run_tool("forget", {"memoryId": memory_id, "force": force})


@mcp.tool(name="forget-bulk", annotations=DESTRUCTIVE)
async def forget_bulk(memory_ids: list[str], stop_on_error: bool = False, force: bool = False) -> str:
    """Delete many memories by ID."""
    return await _run_tool(
        "forget-bulk", {"memoryIds": memory_ids, "stopOnError": stop_on_error, "force": force}
    )


@mcp.tool(name="recall-context", annotations=READ)
async def recall_context(
    scopes: list[str] | None = None,
    categories: list[str] | None = None,
    tags: list[str] | None = None,
    min_priority: int | None = None,
    max_priority: int | None = None,
    created_after: str | None = None,
    created_before: str | None = None,
    updated_after: str | None = None,
    updated_before: str | None = None,
    search: str | None = None,
    since: str | None = None,
    limit: int = 50,
) -> str:
    """Recall memories across scopes, ranked core > longterm > shared > recent > tasks.

    Args:
        scopes: Scopes to search (default: all four)
        categories: Only these categories
        tags: Memory must carry all of these tags
        min_priority: Lowest priority number to include (1=high)
        max_priority: Highest priority number to include (3=low)
        created_after: ISO 8601 lower bound on createdAt
        created_before: ISO 8601 upper bound on createdAt
        updated_after: ISO 8601 lower bound on updatedAt
        updated_before: ISO 8601 upper bound on updatedAt
        search: Case-insensitive substring match on content
        since: Only memories updated after this ISO 8601 time
        limit: Max results (default 50, clamped to 1-200)
    """
    return await _run_tool(
        "recall-context",
        _drop_none(
            scopes=scopes,
            categories=categories,
            tags=tags,
            minPriority=min_priority,
            maxPriority=max_priority,
            createdAfter=created_after,
            createdBefore=created_before,
            updatedAfter=updated_after,
            updatedBefore=updated_before,
            search=search,
            since=since,
            limit=limit,
        ),
    )


@mcp.tool(name="cleanup", annotations=DESTRUCTIVE)
async def cleanup_memories(expire_only: bool = False) -> str:
    """Delete expired memories and enforce per-category limits (recent 1000, tasks 500)."""
    return await _run_tool("cleanup", {"expireOnly": expire_only})


@mcp.tool(name="export-memories", annotations=READ)
async def export_memories(
    output_path: str | None = None,
    scope: str | None = None,
    category: str | None = None,
    since: str | None = None,
    include_expired: bool = False,
) -> str:
    """Export memories to a JSON backup file."""
    return await _run_tool(
        "export-memories",
        _drop_none(
            outputPath=output_path,
            scope=scope,
            category=category,
            since=since,
            includeExpired=include_expired,
        ),
    )


@mcp.tool(name="import-memories", annotations=WRITE)
async def import_memories(
    input_path: str, overwrite_existing: bool = False, skip_invalid: bool = True
) -> str:
    """Import memories from a JSON backup file."""
    return await _run_tool(
        "import-memories",
        {"inputPath": input_path, "overwriteExisting": overwrite_existing, "skipInvalid": skip_invalid},
    )


@mcp.tool(annotations=READ)
async def memory_health() -> str:
    """Get memory system health status - buckets, database size, configuration."""
    ctx = get_context()
    config = ctx.config or Config(agent_id=ctx.agent_id, project_id=ctx.project_id)
    await ctx.storage.ensure_location("private", ctx.project_id, ctx.agent_id)

    lines = [
        "=== Scoped Memory Health Status ===",
        f"\nAgent: {ctx.agent_id}",
        f"Project: {ctx.project_id}",
    ]
    if ctx.parent_agent_id:
        lines.append(f"Parent agent: {ctx.parent_agent_id}")
    for name, rows in (await ctx.storage.entry_counts()).items():
        lines.append(f"Bucket {name}: {rows} entries")

    db_path = Path(ctx.storage.db_uri).expanduser()
    if db_path.exists():
        db_size = sum(f.stat().st_size for f in db_path.rglob("*") if f.is_file()) / 1024
        lines.append(f"Database size: {db_size:.1f} KB")
    lines.append(f"Content scanning: {'enabled' if config.content_scanning else 'disabled'}")

    if _cleanup_task is not None and not _cleanup_task.done():
        lines.append(f"TTL cleanup: active (every {config.cleanup_interval_hours}h)")
    else:
        lines.append("TTL cleanup: not active")

    return "\n".join(lines)


# =============================================================================
# Background TTL Cleanup
# =============================================================================


async def _cleanup_expired_memories(interval_hours: int) -> None:
    """Periodically delete expired memories."""
    while True:
        await asyncio.sleep(interval_hours * 3600)
        try:
            result = await cleanup.cleanup(get_context(), expire_only=True)
            logger.info("Cleaned %d expired memories", result["expired"])
        except Exception as exc:  # noqa: BLE001 - keep the loop alive
            logger.error("Cleanup error: %s", exc)


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server() -> None:
    """Run the MCP server with storage provisioning and background tasks."""
    global _cleanup_task
    ctx = get_context()
    await ctx.storage.ensure_location("private", ctx.project_id, ctx.agent_id)
    await ctx.storage.ensure_location("personal", ctx.project_id, ctx.agent_id)
    interval = ctx.config.cleanup_interval_hours if ctx.config else CLEANUP_INTERVAL_HOURS
    _cleanup_task = asyncio.create_task(_cleanup_expired_memories(interval))
    try:
        await mcp.run_stdio_async()
    finally:
        _cleanup_task.cancel()
        ctx.storage.close()


def main() -> None:
    """Entry point."""
    config = Config()
    configure_logging(config)
    global _context
    _context = build_context(config)
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
