"""
Transfer Engine - JSON export and import of memories

Export writes a versioned envelope:
    {"version": "1.0", "exportedAt", "projectId", "agentId", "memories": [...]}
Import re-ingests it record by record, provisioning each record's own
location and skipping (or failing on) invalid records and key conflicts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from lifecycle import fold_batch
from models import (
    SCOPES,
    VALID_CATEGORIES,
    Memory,
    MemoryContext,
    prefix_for,
    ttl_for,
    validate_scope_category,
)
from utils import now_iso, parse_iso, utc_now, utf8_len

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"
ENVELOPE_FIELDS = ("version", "exportedAt", "projectId", "agentId", "memories")
REQUIRED_MEMORY_FIELDS = (
    "id",
    "agentId",
    "projectId",
    "scope",
    "category",
    "content",
    "createdAt",
    "updatedAt",
    "version",
)


def default_export_path() -> Path:
    timestamp = now_iso().replace(":", "-").replace(".", "-")
    return Path.cwd() / f"memories-backup-{timestamp}.json"


def _resolve(path: str | Path) -> Path:
    path = Path(path).expanduser()
    return path if path.is_absolute() else Path.cwd() / path


# =============================================================================
# Export
# =============================================================================


async def export_memories(
    ctx: MemoryContext,
    output_path: str | Path | None = None,
    scope: str | None = None,
    category: str | None = None,
    since: str | None = None,
    include_expired: bool = False,
) -> dict[str, Any]:
    """Write the caller's visible memories to a JSON backup file."""
    if scope is not None and scope not in SCOPES:
        raise ValidationError(f"Invalid scope '{scope}'. Valid: {list(SCOPES)}", scope=scope)
    if category is not None and category not in VALID_CATEGORIES:
        raise ValidationError(
            f"Invalid category '{category}'. Valid: {sorted(VALID_CATEGORIES)}", category=category
        )
    since_at = None
    if since is not None:
        try:
            since_at = parse_iso(since)
        except ValueError as exc:
            raise ValidationError(f"Invalid since timestamp: {since}", since=since) from exc

    logger.info(
        "Starting memory export (scope=%s, category=%s, since=%s, include_expired=%s)",
        scope,
        category,
        since,
        include_expired,
    )

    memories: list[Memory] = []
    for current in [scope] if scope else SCOPES:
        location = await ctx.storage.ensure_location(current, ctx.project_id, ctx.agent_id)
        listed = await ctx.storage.list_by_prefix(location, prefix_for(current, ctx.agent_id))
        memories.extend(m for m in listed if m.scope == current)

    if category:
        memories = [m for m in memories if m.category == category]
    if since_at:
        memories = [m for m in memories if parse_iso(m.updated_at) > since_at]
    if not include_expired:
        now = utc_now()
        memories = [m for m in memories if not m.is_expired(now)]

    envelope = {
        "version": EXPORT_FORMAT_VERSION,
        "exportedAt": now_iso(),
        "projectId": ctx.project_id,
        "agentId": ctx.agent_id,
        "memories": [m.to_record() for m in memories],
    }
    text = json.dumps(envelope, indent=2, ensure_ascii=False)
    filepath = _resolve(output_path) if output_path else default_export_path()
    await asyncio.to_thread(filepath.write_text, text, encoding="utf-8")

    size = utf8_len(text)
    logger.info("Exported %d memories to %s (%d bytes)", len(memories), filepath, size)
    return {"exported": len(memories), "filepath": str(filepath), "bytes": size}


# =============================================================================
# Import
# =============================================================================


def load_envelope(filepath: Path) -> dict[str, Any]:
    try:
        raw = filepath.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Failed to read import file: {exc}", filepath=str(filepath)) from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON format: {exc}", filepath=str(filepath)) from exc

    if (
        not isinstance(data, dict)
        or any(name not in data for name in ENVELOPE_FIELDS)
        or not isinstance(data["memories"], list)
    ):
        raise ValidationError(
            f"Invalid export format: missing required fields ({', '.join(ENVELOPE_FIELDS)})",
            filepath=str(filepath),
        )
    return data


def parse_record(record: Any) -> Memory:
    """Structurally validate one exported record and return it as a Memory."""
    if not isinstance(record, dict):
        raise ValidationError("Invalid memory structure: unknown")
    label = record.get("id") or "unknown"
    missing = [name for name in REQUIRED_MEMORY_FIELDS if record.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Invalid memory structure: {label}", missing=missing)
    try:
        memory = Memory.model_validate(record)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid memory structure: {label} ({where}: {first.get('msg')})") from exc
    try:
        validate_scope_category(memory.scope, memory.category)
    except ValidationError as exc:
        raise ValidationError(f"Memory {memory.id}: {exc}", memory_id=memory.id) from exc
    return memory


async def import_memories(
    ctx: MemoryContext,
    input_path: str | Path,
    overwrite_existing: bool = False,
    skip_invalid: bool = True,
) -> dict[str, Any]:
    """Load a backup file written by export_memories.

    Returns {imported, skipped, errors}. With skip_invalid=False the first
    invalid or conflicting record aborts the import.
    """
    filepath = _resolve(input_path)
    logger.info(
        "Starting memory import from %s (overwrite=%s, skip_invalid=%s)",
        filepath,
        overwrite_existing,
        skip_invalid,
    )
    envelope = await asyncio.to_thread(load_envelope, filepath)
    if envelope["version"] != EXPORT_FORMAT_VERSION:
        logger.warning(
            "Export format version mismatch: expected %s, got %s",
            EXPORT_FORMAT_VERSION,
            envelope["version"],
        )
    logger.info(
        "Loaded export from project %s / agent %s with %d memories",
        envelope["projectId"],
        envelope["agentId"],
        len(envelope["memories"]),
    )

    async def import_one(record: Any) -> str:
        memory = parse_record(record)
        bucket = await ctx.storage.ensure(memory.location)
        if not overwrite_existing:
            existing = await ctx.storage.read(memory.location, memory.key)
            if existing is not None:
                raise ValidationError(
                    f"Memory {memory.id} already exists (use overwriteExisting to replace)",
                    memory_id=memory.id,
                    bucket=bucket.name,
                )
        await ctx.storage.write(memory, ttl_for(memory.category))
        logger.debug("Imported memory %s (%s/%s)", memory.id, memory.scope, memory.category)
        return memory.id

    records = envelope["memories"]
    refs = (
        (record.get("id") if isinstance(record, dict) else None, record) for record in records
    )
    outcome = await fold_batch(refs, import_one, stop_on_error=not skip_invalid)
    if outcome.stopped:
        raise outcome.failures[-1].error

    errors = [failure.message for failure in outcome.failures]
    logger.info(
        "Import completed: %d imported, %d skipped", len(outcome.successes), len(outcome.failures)
    )
    return {"imported": len(outcome.successes), "skipped": len(outcome.failures), "errors": errors}
