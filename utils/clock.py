# utils/clock.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC; the DateTime columns carry no zone on MySQL/SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
