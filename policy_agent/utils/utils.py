"""Misc cross-cutting helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return a timezone-aware UTC *datetime* object."""
    return datetime.now(timezone.utc)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return the env var ``name`` or ``default`` when unset or blank."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(int(default))).lower() in {"1", "true", "yes"}


def is_empty(value: str | None) -> bool:
    return value is None or value.strip() == ""


def strip_quotes(value: str, quote: str = '"') -> str:
    """Remove one leading and one trailing quote character, if present.

    Examples:
        >>> strip_quotes('"alice"')
        'alice'
        >>> strip_quotes('bob')
        'bob'
    """
    if value.startswith(quote):
        value = value[1:]
    if value.endswith(quote):
        value = value[:-1]
    return value


def normalize_etag(raw: str | None) -> str | None:
    """Strip the weak prefix and surrounding quotes from an ETag header value."""
    if not raw:
        return None
    value = raw.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"') or None
