"""
Tool-call boundary: name -> async handler(args, ctx) -> dict

Arguments arrive as plain dicts with camelCase keys (as sent by MCP clients)
and are validated with pydantic input models before reaching the engine.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

import cleanup
import lifecycle
import recall
import transfer
from errors import ValidationError
from models import Category, MemoryContext, MemoryMetadata, Scope

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
ToolHandler = Callable[[dict[str, Any], MemoryContext], Awaitable[dict[str, Any]]]

IndividualScope = Literal["private", "personal"]


# =============================================================================
# Input Models
# =============================================================================


class ToolInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RememberInput(ToolInput):
    content: str
    scope: Scope = "private"
    category: Category = "recent"
    metadata: MemoryMetadata | None = None


class ContentInput(ToolInput):
    content: str
    metadata: MemoryMetadata | None = None


class CoreMemoryInput(ContentInput):
    scope: IndividualScope = "personal"


class RememberBulkInput(ToolInput):
    # Items stay loose so each one is validated (and reported) individually.
    memories: list[dict[str, Any]]
    stop_on_error: bool = False
    validate_first: bool = Field(default=True, alias="validate")


class CommitInsightInput(ToolInput):
    memory_id: str
    new_content: str | None = None
    target_scope: IndividualScope | None = None


class ShareLearningInput(ToolInput):
    memory_id: str
    category: str = "learnings"
    keep_original: bool = False


class ForgetInput(ToolInput):
    memory_id: str
    force: bool = False


class ForgetBulkInput(ToolInput):
    memory_ids: list[str]
    stop_on_error: bool = False
    force: bool = False


class RecallInput(ToolInput):
    scopes: list[Scope] | None = None
    categories: list[Category] | None = None
    tags: list[str] | None = None
    min_priority: Literal[1, 2, 3] | None = None
    max_priority: Literal[1, 2, 3] | None = None
    created_after: str | None = None
    created_before: str | None = None
    updated_after: str | None = None
    updated_before: str | None = None
    search: str | None = None
    since: str | None = None
    limit: int = recall.DEFAULT_LIMIT


class CleanupInput(ToolInput):
    expire_only: bool = False


class ExportInput(ToolInput):
    output_path: str | None = None
    scope: Scope | None = None
    category: Category | None = None
    since: str | None = None
    include_expired: bool = False


class ImportInput(ToolInput):
    input_path: str
    overwrite_existing: bool = False
    skip_invalid: bool = True


def parse_args(model: type[M], args: dict[str, Any] | None) -> M:
    try:
        return model.model_validate(args or {})
    except PydanticValidationError as exc:
        problems = [
            {"field": ".".join(str(part) for part in err.get("loc", ())), "error": err.get("msg")}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{p['field']}: {p['error']}" for p in problems)
        raise ValidationError(f"Invalid arguments: {summary}", errors=problems) from exc


# =============================================================================
# Handlers
# =============================================================================


async def _remember(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(RememberInput, args)
    return await lifecycle.remember(ctx, params.content, params.scope, params.category, params.metadata)


async def _remember_task(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ContentInput, args)
    return await lifecycle.remember_task(ctx, params.content, params.metadata)


async def _remember_learning(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ContentInput, args)
    return await lifecycle.remember_learning(ctx, params.content, params.metadata)


async def _remember_bulk(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(RememberBulkInput, args)
    return await lifecycle.remember_bulk(
        ctx, params.memories, stop_on_error=params.stop_on_error, validate=params.validate_first
    )


async def _core_memory(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(CoreMemoryInput, args)
    return await lifecycle.core_memory(ctx, params.content, params.metadata, scope=params.scope)


async def _commit_insight(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(CommitInsightInput, args)
    return await lifecycle.commit_insight(
        ctx, params.memory_id, new_content=params.new_content, target_scope=params.target_scope
    )


async def _share_learning(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ShareLearningInput, args)
    return await lifecycle.share_learning(
        ctx, params.memory_id, category=params.category, keep_original=params.keep_original
    )


async def _forget(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ForgetInput, args)
    return await lifecycle.forget(ctx, params.memory_id, force=params.force)


async def _forget_bulk(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ForgetBulkInput, args)
    return await lifecycle.forget_bulk(
        ctx, params.memory_ids, stop_on_error=params.stop_on_error, force=params.force
    )


async def _recall_context(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(RecallInput, args)
    return await recall.recall_context(ctx, **params.model_dump())


async def _cleanup(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(CleanupInput, args)
    return await cleanup.cleanup(ctx, expire_only=params.expire_only)


async def _export_memories(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ExportInput, args)
    return await transfer.export_memories(ctx, **params.model_dump())


async def _import_memories(args: dict[str, Any], ctx: MemoryContext) -> dict[str, Any]:
    params = parse_args(ImportInput, args)
    return await transfer.import_memories(ctx, **params.model_dump())


TOOL_HANDLERS: dict[str, ToolHandler] = {
    "remember": _remember,
    "remember-task": _remember_task,
    "remember-learning": _remember_learning,
    "remember-bulk": _remember_bulk,
    "core-memory": _core_memory,
    "commit-insight": _commit_insight,
    "share-learning": _share_learning,
    "forget": _forget,
    "forget-bulk": _forget_bulk,
    "recall-context": _recall_context,
    "cleanup": _cleanup,
    "export-memories": _export_memories,
    "import-memories": _import_memories,
}


async def handle_tool_call(name: str, args: dict[str, Any] | None, ctx: MemoryContext) -> dict[str, Any]:
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        raise ValidationError(f"Unknown tool: {name}", tool=name, available=sorted(TOOL_HANDLERS))
    logger.debug("Tool call %s from agent %s", name, ctx.agent_id)
    return await handler(args or {}, ctx)
