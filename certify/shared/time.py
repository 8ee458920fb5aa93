from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def fmt_dt(value: datetime | None) -> str:
    """Format datetimes without seconds for exports and CLI output."""
    if not value:
        return ""
    return value.strftime("%Y-%m-%d %H:%M")


def utcnow_naive() -> datetime:
    """UTC now without tzinfo, matching the naive DateTime columns."""
    return now_utc().replace(tzinfo=None)
