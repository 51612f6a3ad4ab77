"""Compact date rendering for inbox listings."""

from __future__ import annotations

from datetime import datetime

from issue_triage.storage import utc_now

PLACEHOLDER = "-"


def format_relative_time(value: datetime | None, *, now: datetime | None = None) -> str:
    """Render ``value`` as ``just now``, ``5m ago``, ``2d ago``, ``3mo ago`` and so on."""

    if value is None:
        return PLACEHOLDER
    now = now or utc_now()
    seconds = int((now - value).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if seconds < 60:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    if days // 7 < 5:
        return f"{days // 7}w ago"
    if days // 30 < 12:
        return f"{days // 30}mo ago"
    return f"{days // 365}y ago"


def format_compact_date(value: datetime | None, *, now: datetime | None = None) -> str:
    """``Oct 11`` within the current year, ``Jan 2024`` otherwise."""

    if value is None:
        return PLACEHOLDER
    now = now or utc_now()
    if value.year == now.year:
        return f"{value:%b} {value.day}"
    return f"{value:%b %Y}"
