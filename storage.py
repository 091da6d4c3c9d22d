"""
Storage Router - LanceDB tables used as flat key/value buckets

Each location (project, agent, global) is one LanceDB table with the
KVEntry schema. The router resolves a scope to its location, provisions
tables lazily with a race-tolerant open/create/re-open sequence, and exposes
get/put/delete/list-by-prefix per location.

The store has no per-key expiry: TTLs live on the record (expiresAt) and are
enforced by the cleanup engine.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

import lancedb
import pyarrow.compute as pc
from pydantic import ValidationError as PydanticValidationError

from errors import NotInitialized, ScopedMemoryError, StoreError
from models import KVEntry, Location, Memory, location_for
from utils import escape_filter_value

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        listed = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(listed, "tables", listed))


class Bucket:
    """One LanceDB table holding key -> JSON value rows."""

    def __init__(self, name: str, table: Any) -> None:
        self.name = name
        self.table = table

    def get(self, key: str) -> str | None:
        rows = (
            self.table.search()
            .where(f"key = '{escape_filter_value(key)}'")
            .limit(1)
            .to_list()
        )
        return rows[0]["value"] if rows else None

    def put(self, key: str, value: str) -> None:
        self.put_many([(key, value)])

    def put_many(self, items: Iterable[tuple[str, str]]) -> None:
        rows = [KVEntry(key=key, value=value).model_dump() for key, value in items]
        if not rows:
            return
        (
            self.table.merge_insert("key")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(rows)
        )

    def delete(self, key: str) -> bool:
        if self.get(key) is None:
            return False
        self.table.delete(f"key = '{escape_filter_value(key)}'")
        return True

    def scan(self, prefix: str = "") -> list[tuple[str, str]]:
        data = self.table.to_arrow()
        if prefix:
            data = data.filter(pc.starts_with(data["key"], pattern=prefix))
        return list(zip(data["key"].to_pylist(), data["value"].to_pylist()))

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key, _ in self.scan(prefix)]


class StorageRouter:
    """Scope-aware access to the project, agent and global buckets."""

    def __init__(self, db_uri: str) -> None:
        self.db_uri = db_uri
        self._db: lancedb.DBConnection | None = None
        self._lock = threading.Lock()
        self._provision_lock = threading.Lock()
        self._buckets: dict[str, Bucket] = {}

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def _connect(self) -> lancedb.DBConnection:
        """Get or create the LanceDB connection (thread-safe)."""
        if self._db is None:
            with self._lock:
                if self._db is None:  # Double-check after acquiring lock
                    self._db = lancedb.connect(self.db_uri)
                    logger.info("Connected to LanceDB at %s", self.db_uri)
        return self._db

    def _open_or_create(self, name: str) -> Any:
        db = self._connect()
        with self._provision_lock:
            return self._open_or_create_locked(db, name)

    def _open_or_create_locked(self, db: lancedb.DBConnection, name: str) -> Any:
        try:
            table = db.open_table(name)
            logger.debug("Using existing bucket %s", name)
            return table
        except Exception:
            if name in _table_names(db):
                raise
        try:
            table = db.create_table(name, schema=KVEntry)
            logger.info("Created bucket %s", name)
            return table
        except Exception as exc:
            # Another caller won the race; only "already exists" is tolerated.
            if "already exists" not in str(exc).lower() and name not in _table_names(db):
                raise
            logger.debug("Bucket %s created by concurrent caller", name)
            return db.open_table(name)

    async def ensure(self, location: Location) -> Bucket:
        name = location.table_name
        bucket = self._buckets.get(name)
        if bucket is not None:
            return bucket
        try:
            table = await asyncio.to_thread(self._open_or_create, name)
        except Exception as exc:
            logger.error("Failed to provision bucket %s: %s", name, exc)
            raise StoreError(f"Failed to provision bucket {name}: {exc}", bucket=name) from exc
        return self._buckets.setdefault(name, Bucket(name, table))

    async def ensure_location(self, scope: str, project_id: str, agent_id: str) -> Location:
        location = location_for(scope, project_id, agent_id)
        await self.ensure(location)
        return location

    def is_ensured(self, location: Location) -> bool:
        return location.table_name in self._buckets

    @property
    def ensured_buckets(self) -> list[str]:
        return sorted(self._buckets)

    def bucket(self, location: Location) -> Bucket:
        bucket = self._buckets.get(location.table_name)
        if bucket is None:
            raise NotInitialized(
                f"Bucket not initialized: {location.table_name}. Call ensure_location() first.",
                bucket=location.table_name,
            )
        return bucket

    def close(self) -> None:
        self._buckets.clear()
        self._db = None

    # -------------------------------------------------------------------------
    # Record access
    # -------------------------------------------------------------------------

    async def _call(self, action: str, fn: Callable[..., T], *args: Any, **context: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except ScopedMemoryError:
            raise
        except Exception as exc:
            logger.error("Failed to %s: %s %s", action, exc, context)
            raise StoreError(f"Failed to {action}: {exc}", **context) from exc

    async def write(self, memory: Memory, ttl_seconds: int | None = None) -> str:
        """Store a memory under its computed key, provisioning its location first."""
        bucket = await self.ensure(memory.location)
        key = memory.key
        await self._call("write memory", bucket.put, key, memory.to_json(), key=key, bucket=bucket.name)
        if ttl_seconds:
            logger.debug(
                "Stored memory %s in %s (TTL %ss managed by cleanup)", key, bucket.name, ttl_seconds
            )
        else:
            logger.debug("Stored memory %s in %s", key, bucket.name)
        return key

    async def read(self, location: Location, key: str) -> Memory | None:
        bucket = self.bucket(location)
        raw = await self._call("read memory", bucket.get, key, key=key, bucket=bucket.name)
        if raw is None or not raw.strip():
            return None
        try:
            return Memory.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise StoreError(f"Corrupt memory record at {key}", key=key, bucket=bucket.name) from exc

    async def delete(self, location: Location, key: str) -> bool:
        bucket = self.bucket(location)
        existed = await self._call("delete memory", bucket.delete, key, key=key, bucket=bucket.name)
        if existed:
            logger.debug("Deleted memory %s from %s", key, bucket.name)
        else:
            logger.debug("Memory %s not found for deletion in %s", key, bucket.name)
        return existed

    async def keys_by_prefix(self, location: Location, prefix: str) -> list[str]:
        bucket = self.bucket(location)
        return await self._call("list keys", bucket.keys, prefix, prefix=prefix, bucket=bucket.name)

    async def entry_counts(self) -> dict[str, int]:
        """Row count per provisioned bucket."""
        counts: dict[str, int] = {}
        for name, bucket in sorted(self._buckets.items()):
            counts[name] = await self._call("count entries", bucket.table.count_rows, bucket=name)
        return counts

    async def list_by_prefix(self, location: Location, prefix: str) -> list[Memory]:
        """Best-effort listing: entries that fail to decode are skipped."""
        bucket = self.bucket(location)
        entries = await self._call("list memories", bucket.scan, prefix, prefix=prefix, bucket=bucket.name)
        memories: list[Memory] = []
        for key, raw in entries:
            if not raw or not raw.strip():
                continue
            try:
                memories.append(Memory.model_validate_json(raw))
            except PydanticValidationError as exc:
                logger.warning("Skipping unreadable memory %s in %s: %s", key, bucket.name, exc.errors()[:1])
        logger.debug("Listed %d memories under %r in %s", len(memories), prefix, bucket.name)
        return memories
