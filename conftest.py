"""Shared fixtures: an isolated LanceDB directory per test and caller contexts."""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from models import Memory, MemoryContext, MemoryMetadata
from scanner import ContentScanner
from storage import StorageRouter
from utils import to_iso, utc_now

PROJECT_ID = "github.com/acme/widgets"
AGENT_ID = "agent-alpha"
OTHER_AGENT_ID = "agent-beta"


def build_memory(
    content: str = "remembered fact",
    scope: str = "private",
    category: str = "recent",
    agent_id: str = AGENT_ID,
    project_id: str = PROJECT_ID,
    created: datetime | None = None,
    updated: datetime | None = None,
    expires: datetime | None = None,
    metadata: MemoryMetadata | None = None,
    memory_id: str | None = None,
) -> Memory:
    created = created or utc_now()
    if expires is None and category in ("recent", "tasks"):
        expires = created + timedelta(hours=24)
    return Memory(
        id=memory_id or uuid.uuid4().hex,
        agent_id=agent_id,
        project_id=project_id,
        scope=scope,
        category=category,
        content=content,
        metadata=metadata,
        created_at=to_iso(created),
        updated_at=to_iso(updated or created),
        expires_at=to_iso(expires) if expires else None,
    )


@pytest.fixture
def make_memory():
    return build_memory


@pytest.fixture
def router(tmp_path):
    storage = StorageRouter(str(tmp_path / "lancedb"))
    yield storage
    storage.close()


@pytest.fixture
def ctx(router):
    return MemoryContext(
        agent_id=AGENT_ID,
        project_id=PROJECT_ID,
        storage=router,
        scanner=ContentScanner(),
    )


@pytest.fixture
def other_ctx(router):
    return MemoryContext(agent_id=OTHER_AGENT_ID, project_id=PROJECT_ID, storage=router)


@pytest.fixture
def seed(router):
    """Write many memories in one merge per bucket, bypassing the write path."""

    async def _seed(memories: list[Memory]) -> list[Memory]:
        grouped = defaultdict(list)
        for memory in memories:
            grouped[memory.location].append(memory)
        for location, group in grouped.items():
            bucket = await router.ensure(location)
            bucket.put_many((m.key, m.to_json()) for m in group)
        return memories

    return _seed
