#!/usr/bin/env python3
"""
Migrate legacy scope values in a project bucket to the current scope model.

Older records used scope "shared" for project-wide memories. This script
renames it to "team" and moves each record to its team key:
- agents/{agentId}/{category}/{id} (scope "shared") -> shared/{category}/{id} (scope "team")

Usage:
    python migrate_scopes.py --project-id github.com/owner/repo --dry-run  # Preview changes
    python migrate_scopes.py --project-id github.com/owner/repo            # Apply migration
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from collections import Counter
from pathlib import Path
from typing import NamedTuple

import lancedb

from models import Location, build_key
from storage import Bucket
from utils import now_iso

LEGACY_SCOPES = {"shared": "team"}


class ScopeChange(NamedTuple):
    old_key: str
    new_key: str
    old_scope: str
    record: dict


def plan_migration(entries: list[tuple[str, str]]) -> tuple[list[ScopeChange], int]:
    """Find records with a legacy scope. Returns (changes, unchanged_count)."""
    changes: list[ScopeChange] = []
    unchanged = 0
    for key, value in entries:
        try:
            record = json.loads(value)
        except json.JSONDecodeError:
            print(f"Warning: unreadable record at {key}, skipping")
            unchanged += 1
            continue
        old_scope = record.get("scope")
        new_scope = LEGACY_SCOPES.get(old_scope)
        if new_scope is None:
            unchanged += 1
            continue
        record = {**record, "scope": new_scope, "updatedAt": now_iso()}
        new_key = build_key(record.get("agentId", ""), record["category"], record["id"], new_scope)
        changes.append(ScopeChange(key, new_key, old_scope, record))
    return changes, unchanged


def migrate_scopes(db_uri: str, project_id: str, dry_run: bool = True) -> int:
    """Migrate legacy scopes in one project bucket. Returns the number of records updated."""
    table_name = Location("project", project_id).table_name

    print("=" * 70)
    print("Scoped Memory Scope Migration")
    print("=" * 70)
    print(f"Database:   {db_uri}")
    print(f"Project ID: {project_id}")
    print(f"Bucket:     {table_name}")
    print(f"Mode:       {'DRY RUN (no changes will be made)' if dry_run else 'LIVE MIGRATION'}")
    print("=" * 70)

    db = lancedb.connect(db_uri)
    try:
        bucket = Bucket(table_name, db.open_table(table_name))
    except Exception as e:
        print(f"Error: Could not open bucket {table_name}: {e}")
        sys.exit(1)

    print("\nFetching all memories...")
    entries = bucket.scan()
    print(f"Found {len(entries)} total memories\n")

    changes, unchanged = plan_migration(entries)

    print("=" * 70)
    print("MIGRATION PLAN")
    print("=" * 70)
    if changes:
        transitions = Counter(f"{c.old_scope} -> {c.record['scope']}" for c in changes)
        for transition, count in sorted(transitions.items()):
            print(f"  {count:3d} memories: {transition}")
        print()
        for change in changes:
            print(f"  {change.old_key}")
            print(f"       -> {change.new_key}")
    else:
        print("\n✓ No legacy scopes found!")
    print(f"\nUnchanged memories: {unchanged}")
    print("\n" + "=" * 70)

    if dry_run:
        print("\n⚠ DRY RUN MODE - No changes applied")
        print("Run without --dry-run to apply migration")
        return 0
    if not changes:
        return 0

    print("\nApplying migration...")
    bucket.put_many((c.new_key, json.dumps(c.record)) for c in changes)
    for change in changes:
        if change.old_key != change.new_key:
            bucket.delete(change.old_key)
    print(f"\n✓ Migration complete! Updated {len(changes)} memories")
    return len(changes)


def main():
    parser = argparse.ArgumentParser(
        description="Migrate legacy memory scopes ('shared' -> 'team')",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python migrate_scopes.py --project-id my-project --dry-run  # Preview changes
  python migrate_scopes.py --project-id my-project            # Apply migration
        """,
    )
    parser.add_argument("--project-id", required=True, help="Project ID whose bucket to migrate")
    parser.add_argument(
        "--db-uri",
        default=os.environ.get("SCOPED_MEMORY_DB_URI", str(Path.home() / ".scoped-memory" / "lancedb")),
        help="LanceDB URI (default: $SCOPED_MEMORY_DB_URI or ~/.scoped-memory/lancedb)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without applying them")

    args = parser.parse_args()

    try:
        migrate_scopes(args.db_uri, args.project_id, dry_run=args.dry_run)
    except KeyboardInterrupt:
        print("\n\nMigration cancelled")
        sys.exit(1)


if __name__ == "__main__":
    main()
