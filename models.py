"""Shared data models for scoped-memory.

Defines the Memory record, its scopes and categories, and the deterministic
mapping from (agent, category, id, scope) to a storage key and a storage
location.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Literal, NamedTuple

from lancedb.pydantic import LanceModel
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from errors import ValidationError
from utils import parse_iso, safe_table_suffix, to_iso, utc_now, utf8_len

if TYPE_CHECKING:
    from config import Config
    from scanner import ContentScanner
    from storage import StorageRouter

Scope = Literal["private", "personal", "team", "public"]
Category = Literal["recent", "tasks", "longterm", "core", "decisions", "architecture", "learnings"]

SCOPES: tuple[str, ...] = ("private", "personal", "team", "public")
INDIVIDUAL_SCOPES = frozenset({"private", "personal"})
COLLECTIVE_SCOPES = frozenset({"team", "public"})
INDIVIDUAL_CATEGORIES: tuple[str, ...] = ("recent", "tasks", "longterm", "core")
COLLECTIVE_CATEGORIES: tuple[str, ...] = ("decisions", "architecture", "learnings")
VALID_CATEGORIES = frozenset(INDIVIDUAL_CATEGORIES + COLLECTIVE_CATEGORIES)
TTL_CATEGORIES = frozenset({"recent", "tasks"})

MAX_CONTENT_BYTES = 32 * 1024
TTL_SECONDS = 86400
MAX_TAGS = 10
MAX_TAG_LENGTH = 50
DEFAULT_PRIORITY = 2
CORE_MEMORY_LIMIT = 100
QUOTA_LIMITS = {"recent": 1000, "tasks": 500, "core": CORE_MEMORY_LIMIT}

# Lower rank sorts first in recall.
CATEGORY_RANK = {
    "core": 1,
    "longterm": 2,
    "decisions": 3,
    "architecture": 3,
    "learnings": 3,
    "recent": 4,
    "tasks": 5,
}

AGENTS_PREFIX = "agents/"
SHARED_PREFIX = "shared/"


# =============================================================================
# Storage Schema
# =============================================================================


class KVEntry(LanceModel):
    """Row schema shared by every bucket table.

    IMPORTANT: Any changes to this schema require migration of existing data.
    """

    key: str  # agents/{agentId}/{category}/{id} or shared/{category}/{id}
    value: str  # Memory serialized as JSON


# =============================================================================
# Memory Record
# =============================================================================


class MemoryMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tags: list[str] | None = Field(default=None, max_length=MAX_TAGS)
    priority: Literal[1, 2, 3] | None = None
    related_to: list[str] | None = None
    source: str | None = None

    @field_validator("tags")
    @classmethod
    def _check_tag_length(cls, tags: list[str] | None) -> list[str] | None:
        for tag in tags or []:
            if len(tag) > MAX_TAG_LENGTH:
                raise ValueError(f"Tag length cannot exceed {MAX_TAG_LENGTH} characters: {tag[:20]}...")
        return tags


class Memory(BaseModel):
    """A single persisted memory. Serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    agent_id: str
    project_id: str
    scope: Scope
    category: Category
    content: str
    metadata: MemoryMetadata | None = None
    created_at: str
    updated_at: str
    expires_at: str | None = None
    version: int = 1

    @field_validator("created_at", "updated_at", "expires_at")
    @classmethod
    def _check_timestamp(cls, value: str | None) -> str | None:
        if value is not None:
            parse_iso(value)
        return value

    @property
    def key(self) -> str:
        return build_key(self.agent_id, self.category, self.id, self.scope)

    @property
    def location(self) -> Location:
        return location_for(self.scope, self.project_id, self.agent_id)

    @property
    def priority(self) -> int:
        if self.metadata and self.metadata.priority is not None:
            return self.metadata.priority
        return DEFAULT_PRIORITY

    @property
    def tags(self) -> list[str]:
        return list(self.metadata.tags or []) if self.metadata else []

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.expires_at:
            return False
        return parse_iso(self.expires_at) < (now or utc_now())

    def to_json(self, indent: int | None = None) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Validation
# =============================================================================


def validate_content(content: str | None) -> str:
    """Reject blank content and content over 32 KiB (measured in UTF-8 bytes)."""
    if content is None or (isinstance(content, str) and not content.strip()):
        raise ValidationError("Content cannot be empty")
    if not isinstance(content, str):
        raise ValidationError(f"Content must be a string, got {type(content).__name__}")
    size = utf8_len(content)
    if size > MAX_CONTENT_BYTES:
        raise ValidationError(
            f"Content size ({size} bytes) exceeds maximum ({MAX_CONTENT_BYTES} bytes)",
            content_size=size,
            max_size=MAX_CONTENT_BYTES,
        )
    return content


def validate_scope_category(scope: str, category: str) -> None:
    if not isinstance(scope, str) or scope not in SCOPES:
        raise ValidationError(f"Invalid scope '{scope}'. Valid: {list(SCOPES)}", scope=scope)
    if not isinstance(category, str) or category not in VALID_CATEGORIES:
        raise ValidationError(
            f"Invalid category '{category}'. Valid: {sorted(VALID_CATEGORIES)}", category=category
        )
    if scope in COLLECTIVE_SCOPES and category not in COLLECTIVE_CATEGORIES:
        raise ValidationError(
            f"Category '{category}' is not valid for {scope} scope. "
            f"Use one of: {', '.join(COLLECTIVE_CATEGORIES)}",
            scope=scope,
            category=category,
        )
    if scope in INDIVIDUAL_SCOPES and category not in INDIVIDUAL_CATEGORIES:
        raise ValidationError(
            f"Category '{category}' is not valid for {scope} scope. "
            f"Use one of: {', '.join(INDIVIDUAL_CATEGORIES)}",
            scope=scope,
            category=category,
        )


def ttl_for(category: str) -> int | None:
    """TTL in seconds for a category, or None for durable categories."""
    return TTL_SECONDS if category in TTL_CATEGORIES else None


def expires_at_for(category: str, created: datetime) -> str | None:
    ttl = ttl_for(category)
    if ttl is None:
        return None
    return to_iso(created + timedelta(seconds=ttl))


# =============================================================================
# Keys & Locations
# =============================================================================


def build_key(agent_id: str, category: str, memory_id: str, scope: str) -> str:
    if scope in COLLECTIVE_SCOPES:
        return f"{SHARED_PREFIX}{category}/{memory_id}"
    return f"{AGENTS_PREFIX}{agent_id}/{category}/{memory_id}"


class ParsedKey(NamedTuple):
    agent_id: str | None
    category: str
    memory_id: str
    collective: bool


def parse_key(key: str) -> ParsedKey:
    parts = key.split("/")
    if parts[0] == "shared" and len(parts) == 3 and all(parts[1:]):
        return ParsedKey(None, parts[1], parts[2], True)
    if parts[0] == "agents" and len(parts) == 4 and all(parts[1:]):
        return ParsedKey(parts[1], parts[2], parts[3], False)
    raise ValidationError(f"Invalid key format: {key}", key=key)


def agent_prefix(agent_id: str, category: str | None = None) -> str:
    prefix = f"{AGENTS_PREFIX}{agent_id}/"
    return f"{prefix}{category}/" if category else prefix


class Location(NamedTuple):
    """A storage container: one per project, one per agent, one global."""

    kind: Literal["project", "agent", "global"]
    owner: str | None = None

    @property
    def table_name(self) -> str:
        if self.kind == "global":
            return "memory-global"
        return f"memory-{self.kind}-{safe_table_suffix(self.owner or '')}"


GLOBAL_LOCATION = Location("global")


def location_for(scope: str, project_id: str, agent_id: str) -> Location:
    if scope in ("private", "team"):
        return Location("project", project_id)
    if scope == "personal":
        return Location("agent", agent_id)
    if scope == "public":
        return GLOBAL_LOCATION
    raise ValidationError(f"Invalid scope '{scope}'. Valid: {list(SCOPES)}", scope=scope)


def prefix_for(scope: str, agent_id: str) -> str:
    """Listing prefix for a scope: agent-namespaced or flat shared."""
    return agent_prefix(agent_id) if scope in INDIVIDUAL_SCOPES else SHARED_PREFIX


def recall_sort_key(memory: Memory) -> tuple[int, float]:
    """Category rank first, then most recently updated first."""
    rank = CATEGORY_RANK.get(memory.category, len(CATEGORY_RANK) + 1)
    return rank, -parse_iso(memory.updated_at).timestamp()


# =============================================================================
# Call Context
# =============================================================================


@dataclass
class MemoryContext:
    """Who is calling and with which storage handle."""

    agent_id: str
    project_id: str
    storage: StorageRouter
    scanner: ContentScanner | None = None
    parent_agent_id: str | None = None
    config: Config | None = None
