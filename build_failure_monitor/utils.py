"""
Time helpers shared by the pipeline, the store and the API.

The silver store keeps naive UTC datetimes; everything crossing that boundary goes
through these helpers.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_github_timestamp(value) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as sent by GitHub ("2024-01-01T10:00:00Z")."""
    if not value:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a stored datetime the way the dashboard expects (millisecond precision, Z suffix)."""
    if value is None:
        return None
    value = to_naive_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class Window:
    """Half-open time range [start, end) over naive UTC datetimes. None means unbounded."""

    def __init__(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        label: Optional[str] = None,
    ):
        self.start = to_naive_utc(start)
        self.end = to_naive_utc(end)
        # stable name for rolling windows, whose bounds move on every call
        self.label = label

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None):
        now = to_naive_utc(now) or utcnow()
        return cls(now - timedelta(days=days), None, label=f"last_{days}d")

    @classmethod
    def current_month(cls, now: Optional[datetime] = None):
        now = to_naive_utc(now) or utcnow()
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return cls(start, None, label=start.strftime("month_%Y_%m"))

    @classmethod
    def all_time(cls):
        return cls(None, None, label="all")

    def cache_key(self):
        return self.label or (self.start, self.end)

    def __repr__(self):
        return f"<Window(start={self.start}, end={self.end})>"
