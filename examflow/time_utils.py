"""Timestamp helpers; documents store UTC instants as ISO 8601 text."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(dt: datetime) -> str:
    """Render ``dt`` in UTC with a trailing ``Z`` and millisecond precision."""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    text = dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


def now_iso() -> str:
    return isoformat_z(utc_now())


__all__ = ["utc_now", "isoformat_z", "now_iso"]
