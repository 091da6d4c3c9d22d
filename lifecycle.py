"""
Lifecycle Operations - the write side of the memory engine

remember / remember_task / remember_learning / core_memory create records,
commit_insight promotes temporary memories to longterm, share_learning copies
(or moves) durable memories into team scope, forget deletes. The bulk
variants fold the singular operation over their items.

Promotion and sharing are two independent store operations: write the new
record, then best-effort delete the old one. A failure between the two
leaves a duplicate, never a loss; the delete outcome is reported as
``originalDeleted`` and never raised.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Generic, TypeVar

from pydantic import ValidationError as PydanticValidationError

from errors import (
    CoreProtected,
    Forbidden,
    InvalidCategory,
    MemoryNotFound,
    ScopedMemoryError,
    StorageFull,
    ValidationError,
)
from models import (
    COLLECTIVE_CATEGORIES,
    CORE_MEMORY_LIMIT,
    INDIVIDUAL_CATEGORIES,
    INDIVIDUAL_SCOPES,
    Location,
    Memory,
    MemoryContext,
    MemoryMetadata,
    agent_prefix,
    build_key,
    expires_at_for,
    ttl_for,
    validate_content,
    validate_scope_category,
)
from utils import to_iso, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")
I = TypeVar("I")  # noqa: E741


# =============================================================================
# Batch Fold
# =============================================================================


@dataclass(frozen=True)
class BatchFailure:
    ref: Any  # index or memory id of the failed item
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)

    @property
    def kind(self) -> str:
        return getattr(self.error, "kind", type(self.error).__name__)


@dataclass(frozen=True)
class BatchOutcome(Generic[T]):
    successes: list[T] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)
    stopped: bool = False


def record_success(outcome: BatchOutcome[T], result: T) -> BatchOutcome[T]:
    return replace(outcome, successes=[*outcome.successes, result])


def record_failure(
    outcome: BatchOutcome[T], ref: Any, error: Exception, stop: bool = False
) -> BatchOutcome[T]:
    return replace(outcome, failures=[*outcome.failures, BatchFailure(ref, error)], stopped=stop)


async def fold_batch(
    items: Iterable[tuple[Any, I]],
    apply: Callable[[I], Awaitable[T]],
    *,
    stop_on_error: bool = False,
) -> BatchOutcome[T]:
    """Apply an operation to each (ref, item) pair, collecting per-item outcomes.

    Failures never undo earlier successes. With stop_on_error the fold ends at
    the first failure; otherwise it continues to the last item.
    """
    outcome: BatchOutcome[T] = BatchOutcome()
    for ref, item in items:
        try:
            result = await apply(item)
        except Exception as exc:  # noqa: BLE001 - captured into the batch report
            outcome = record_failure(outcome, ref, exc, stop=stop_on_error)
            logger.warning("Batch item %s failed: %s", ref, exc)
            if stop_on_error:
                logger.info("Stopping batch on error at item %s", ref)
                break
        else:
            outcome = record_success(outcome, result)
    return outcome


# =============================================================================
# Helpers
# =============================================================================


def _coerce_metadata(metadata: MemoryMetadata | Mapping[str, Any] | None) -> MemoryMetadata | None:
    if metadata is None or isinstance(metadata, MemoryMetadata):
        return metadata
    try:
        return MemoryMetadata.model_validate(metadata)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid metadata {where}: {first.get('msg')}", metadata=metadata) from exc


def _require_id(memory_id: str | None) -> str:
    if not memory_id or not str(memory_id).strip():
        raise ValidationError("Memory ID cannot be empty")
    return memory_id


def _scan(ctx: MemoryContext, content: str) -> None:
    if ctx.scanner is None:
        return
    result = ctx.scanner.scan(content)
    if result.has_warnings:
        logger.warning(
            "Sensitive content detected in memory from agent %s (stored anyway):\n%s",
            ctx.agent_id,
            ctx.scanner.format_warnings(result.warnings),
        )


async def _check_core_ceiling(ctx: MemoryContext) -> None:
    """Count the agent's core keys in both individual locations it can write to."""
    prefix = agent_prefix(ctx.agent_id, "core")
    existing = 0
    for scope in ("personal", "private"):
        location = await ctx.storage.ensure_location(scope, ctx.project_id, ctx.agent_id)
        existing += len(await ctx.storage.keys_by_prefix(location, prefix))
    if existing >= CORE_MEMORY_LIMIT:
        raise StorageFull(
            f"Maximum number of core memories ({CORE_MEMORY_LIMIT}) reached for agent {ctx.agent_id}",
            current_count=existing,
            max_count=CORE_MEMORY_LIMIT,
            agent_id=ctx.agent_id,
        )


async def _locate(
    ctx: MemoryContext,
    memory_id: str,
    scopes: Iterable[str],
    categories: Iterable[str],
) -> tuple[Memory, Location, str] | None:
    """Probe every (scope, category) key the caller can reach for memory_id."""
    categories = tuple(categories)
    for scope in scopes:
        location = await ctx.storage.ensure_location(scope, ctx.project_id, ctx.agent_id)
        for category in categories:
            key = build_key(ctx.agent_id, category, memory_id, scope)
            memory = await ctx.storage.read(location, key)
            if memory is not None:
                return memory, location, key
    return None


async def _best_effort_delete(ctx: MemoryContext, location: Location, key: str) -> bool:
    try:
        deleted = await ctx.storage.delete(location, key)
    except ScopedMemoryError as exc:
        logger.warning("Failed to delete original memory %s: %s", key, exc)
        return False
    if not deleted:
        logger.warning("Original memory %s was already gone", key)
    return deleted


async def _store(
    ctx: MemoryContext,
    content: str,
    scope: str,
    category: str,
    metadata: MemoryMetadata | Mapping[str, Any] | None,
) -> Memory:
    content = validate_content(content)
    meta = _coerce_metadata(metadata)
    validate_scope_category(scope, category)
    _scan(ctx, content)

    if category == "core":
        await _check_core_ceiling(ctx)

    created = utc_now()
    timestamp = to_iso(created)
    memory = Memory(
        id=uuid.uuid4().hex,
        agent_id=ctx.agent_id,
        project_id=ctx.project_id,
        scope=scope,
        category=category,
        content=content,
        metadata=meta,
        created_at=timestamp,
        updated_at=timestamp,
        expires_at=expires_at_for(category, created),
        version=1,
    )
    await ctx.storage.write(memory, ttl_for(category))
    return memory


# =============================================================================
# Create
# =============================================================================


async def remember(
    ctx: MemoryContext,
    content: str,
    scope: str = "private",
    category: str = "recent",
    metadata: MemoryMetadata | Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Store a new memory. Returns its id and, for TTL categories, its expiry."""
    memory = await _store(ctx, content, scope, category, metadata)
    logger.info("Remembered %s (%s/%s)", memory.id, scope, category)
    result: dict[str, Any] = {"memoryId": memory.id}
    if memory.expires_at:
        result["expiresAt"] = memory.expires_at
    return result


async def remember_task(
    ctx: MemoryContext, content: str, metadata: MemoryMetadata | Mapping[str, Any] | None = None
) -> dict[str, Any]:
    return await remember(ctx, content, scope="private", category="tasks", metadata=metadata)


async def remember_learning(
    ctx: MemoryContext, content: str, metadata: MemoryMetadata | Mapping[str, Any] | None = None
) -> dict[str, Any]:
    return await remember(ctx, content, scope="private", category="recent", metadata=metadata)


async def core_memory(
    ctx: MemoryContext,
    content: str,
    metadata: MemoryMetadata | Mapping[str, Any] | None = None,
    scope: str = "personal",
) -> dict[str, Any]:
    """Store an identity memory: no TTL, capped at 100 per agent.

    Defaults to personal scope so identity follows the agent across projects.
    """
    if scope not in INDIVIDUAL_SCOPES:
        raise ValidationError(
            f"Core memories must use private or personal scope, got '{scope}'", scope=scope
        )
    memory = await _store(ctx, content, scope, "core", metadata)
    logger.info("Stored core memory %s (%s)", memory.id, scope)
    return {"memoryId": memory.id}


def _validate_draft(draft: Any) -> None:
    if not isinstance(draft, Mapping):
        raise ValidationError(f"Memory must be an object, got {type(draft).__name__}")
    validate_content(draft.get("content"))
    validate_scope_category(draft.get("scope") or "private", draft.get("category") or "recent")
    _coerce_metadata(draft.get("metadata"))


async def remember_bulk(
    ctx: MemoryContext,
    memories: list[Mapping[str, Any]],
    stop_on_error: bool = False,
    validate: bool = True,
) -> dict[str, Any]:
    """Store many memories. With validate, every item is checked before any write."""
    if not memories:
        logger.info("remember-bulk called with empty list")
        return {"stored": 0, "failed": 0, "errors": [], "memoryIds": []}

    if validate:
        problems = []
        for index, draft in enumerate(memories):
            try:
                _validate_draft(draft)
            except ValidationError as exc:
                problems.append({"index": index, "error": str(exc)})
        if problems:
            noun = "memory" if len(problems) == 1 else "memories"
            raise ValidationError(
                f"Validation failed for {len(problems)} {noun}",
                validation_errors=problems,
                total_memories=len(memories),
            )

    async def store_one(draft: Any) -> str:
        if not isinstance(draft, Mapping):
            raise ValidationError(f"Memory must be an object, got {type(draft).__name__}")
        result = await remember(
            ctx,
            draft.get("content"),
            scope=draft.get("scope") or "private",
            category=draft.get("category") or "recent",
            metadata=draft.get("metadata"),
        )
        return result["memoryId"]

    logger.info("remember-bulk: processing %d memories", len(memories))
    outcome = await fold_batch(enumerate(memories), store_one, stop_on_error=stop_on_error)
    return {
        "stored": len(outcome.successes),
        "failed": len(outcome.failures),
        "errors": [{"index": f.ref, "error": f.message} for f in outcome.failures],
        "memoryIds": outcome.successes,
    }


# =============================================================================
# Scope Transitions
# =============================================================================


async def commit_insight(
    ctx: MemoryContext,
    memory_id: str,
    new_content: str | None = None,
    target_scope: str | None = None,
) -> dict[str, Any]:
    """Promote a recent/tasks memory to longterm, dropping its TTL.

    target_scope may move it to personal (cross-project) or keep it private.
    """
    _require_id(memory_id)
    if new_content is not None:
        validate_content(new_content)
    if target_scope is not None and target_scope not in INDIVIDUAL_SCOPES:
        raise ValidationError(
            f"Target scope must be private or personal, got '{target_scope}'", scope=target_scope
        )

    found = await _locate(ctx, memory_id, ("private", "personal"), INDIVIDUAL_CATEGORIES)
    if found is None:
        raise MemoryNotFound(
            f"Memory with ID '{memory_id}' not found in 'recent' or 'tasks' categories",
            memory_id=memory_id,
        )
    memory, old_location, old_key = found
    if memory.category == "longterm":
        raise ValidationError(
            "Memory is already in 'longterm' category", memory_id=memory_id, category=memory.category
        )
    if memory.category == "core":
        raise CoreProtected(
            "Memory is in 'core' category and cannot be modified",
            memory_id=memory_id,
            category=memory.category,
        )

    promoted = memory.model_copy(
        update={
            "category": "longterm",
            "scope": target_scope or memory.scope,
            "content": new_content if new_content is not None else memory.content,
            "updated_at": to_iso(utc_now()),
            "expires_at": None,
        }
    )
    await ctx.storage.write(promoted)
    original_deleted = await _best_effort_delete(ctx, old_location, old_key)

    logger.info(
        "Committed insight %s: %s -> longterm (%s)", memory_id, memory.category, promoted.scope
    )
    return {
        "memoryId": memory_id,
        "previousCategory": memory.category,
        "scope": promoted.scope,
        "originalDeleted": original_deleted,
    }


async def share_learning(
    ctx: MemoryContext,
    memory_id: str,
    category: str = "learnings",
    keep_original: bool = False,
) -> dict[str, Any]:
    """Publish a longterm/core memory to the team under a new id."""
    _require_id(memory_id)
    if category not in COLLECTIVE_CATEGORIES:
        raise InvalidCategory(
            f"Category '{category}' is not a valid team category. "
            f"Use one of: {', '.join(COLLECTIVE_CATEGORIES)}",
            category=category,
        )

    found = await _locate(ctx, memory_id, ("private", "personal"), INDIVIDUAL_CATEGORIES)
    if found is None:
        raise MemoryNotFound(
            f"Memory with ID '{memory_id}' not found in private or personal scope",
            memory_id=memory_id,
            agent_id=ctx.agent_id,
        )
    source, source_location, source_key = found
    if source.category not in ("longterm", "core"):
        raise InvalidCategory(
            f"Only 'longterm' and 'core' memories can be shared. Found category: '{source.category}'",
            memory_id=memory_id,
            category=source.category,
        )

    timestamp = to_iso(utc_now())
    team_memory = Memory(
        id=uuid.uuid4().hex,
        agent_id=source.agent_id,
        project_id=ctx.project_id,
        scope="team",
        category=category,
        content=source.content,
        metadata=source.metadata,
        created_at=timestamp,
        updated_at=timestamp,
        version=1,
    )
    await ctx.storage.write(team_memory)
    logger.debug("Created team memory %s (%s)", team_memory.id, category)

    original_deleted = False
    if not keep_original:
        original_deleted = await _best_effort_delete(ctx, source_location, source_key)

    logger.info(
        "Shared learning %s as team memory %s (original deleted: %s)",
        memory_id,
        team_memory.id,
        original_deleted,
    )
    return {"teamMemoryId": team_memory.id, "originalDeleted": original_deleted}


# =============================================================================
# Delete
# =============================================================================


async def forget(ctx: MemoryContext, memory_id: str, force: bool = False) -> dict[str, Any]:
    """Delete a memory by id. Core memories need force=True."""
    _require_id(memory_id)
    found = await _locate(ctx, memory_id, ("private", "personal"), INDIVIDUAL_CATEGORIES)
    if found is None:
        found = await _locate(ctx, memory_id, ("team", "public"), COLLECTIVE_CATEGORIES)
    if found is None:
        raise MemoryNotFound(f"Memory with ID '{memory_id}' not found", memory_id=memory_id)

    memory, location, key = found
    if memory.scope in ("team", "public") and memory.agent_id != ctx.agent_id:
        raise Forbidden(
            "Cannot delete shared memory created by another agent",
            memory_id=memory_id,
            creator=memory.agent_id,
            current_agent=ctx.agent_id,
        )
    if memory.category == "core" and not force:
        raise CoreProtected(
            "Core memories require force=true to delete",
            memory_id=memory_id,
            category=memory.category,
        )

    deleted = await ctx.storage.delete(location, key)
    logger.info("Forgot memory %s (%s, deleted=%s)", memory_id, memory.category, deleted)
    return {"deleted": deleted, "category": memory.category}


async def forget_bulk(
    ctx: MemoryContext,
    memory_ids: list[str],
    stop_on_error: bool = False,
    force: bool = False,
) -> dict[str, Any]:
    if not memory_ids:
        logger.info("forget-bulk called with empty list")
        return {"deleted": 0, "failed": 0, "errors": [], "results": []}

    async def forget_one(memory_id: str) -> dict[str, Any]:
        result = await forget(ctx, memory_id, force=force)
        return {"memoryId": memory_id, "deleted": result["deleted"]}

    logger.info("forget-bulk: processing %d memories", len(memory_ids))
    outcome = await fold_batch(
        ((memory_id, memory_id) for memory_id in memory_ids), forget_one, stop_on_error=stop_on_error
    )
    return {
        "deleted": sum(1 for r in outcome.successes if r["deleted"]),
        "failed": len(outcome.failures),
        "errors": [{"memoryId": f.ref, "error": f.message} for f in outcome.failures],
        "results": outcome.successes,
    }
