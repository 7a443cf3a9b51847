"""IANA time zone helpers."""

from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def is_valid_timezone(name: str | None) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(name: str | None, default: str) -> str:
    """Return ``name`` if it is a valid IANA zone, otherwise ``default``."""
    return name if is_valid_timezone(name) else default


def zone(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    return ZoneInfo(resolve_timezone(name, fallback))
