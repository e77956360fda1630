# services/datetimex.py
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from dateutil import parser as dtparse


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def minutes_ago(minutes: float) -> datetime:
    return now_utc() - timedelta(minutes=minutes)


def to_iso_z(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso_to_utc(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        dt = dtparse.isoparse(s)
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
