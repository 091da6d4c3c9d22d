"""Shared utility functions for scoped-memory."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

_TABLE_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def normalize_git_url(url: str) -> str:
    """Normalize git URLs to canonical format: provider.com/owner/repo

    Examples:
        git@github.com:wb200/memory-mcp.git -> github.com/wb200/memory-mcp
        https://github.com/wb200/memory-mcp.git -> github.com/wb200/memory-mcp
        git@gitlab.com:owner/project -> gitlab.com/owner/project
    """
    # Remove .git suffix
    url = url.removesuffix(".git")

    # SSH format: git@github.com:owner/repo -> github.com/owner/repo
    ssh_match = re.match(r"git@([^:]+):(.+)", url)
    if ssh_match:
        return f"{ssh_match.group(1)}/{ssh_match.group(2)}"

    # HTTPS format: https://github.com/owner/repo -> github.com/owner/repo
    https_match = re.match(r"https?://(.+)", url)
    if https_match:
        return https_match.group(1)

    return url


def safe_table_suffix(raw: str) -> str:
    """Turn an arbitrary id into a LanceDB-safe table name fragment.

    Ids that need rewriting get a short digest of the raw value appended so
    that e.g. ``a/b`` and ``a-b`` never share a table.
    """
    cleaned = _TABLE_NAME_UNSAFE.sub("-", raw)
    if cleaned == raw:
        return raw
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned}-{digest}"


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string with millisecond precision."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises ValueError for anything that is not a timestamp.
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut text to at most max_bytes encoded bytes without splitting a character."""
    if max_bytes <= 0:
        return ""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")
