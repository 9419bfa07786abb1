from datetime import datetime, date, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_naive() -> datetime:
    """UTC now without tzinfo, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def period_start(d: date, period_type: str) -> date:
    """Return the first day of the day/week/month/year period containing `d`."""
    if period_type == "day":
        return d
    if period_type == "week":
        return d - timedelta(days=d.weekday())
    if period_type == "month":
        return d.replace(day=1)
    if period_type == "year":
        return d.replace(month=1, day=1)
    raise ValueError(f"Unsupported period type: {period_type}")


def previous_period_start(start: date, period_type: str) -> date:
    if period_type == "day":
        return start - timedelta(days=1)
    if period_type == "week":
        return start - timedelta(days=7)
    if period_type == "month":
        return period_start(start - timedelta(days=1), "month")
    if period_type == "year":
        return start.replace(year=start.year - 1)
    raise ValueError(f"Unsupported period type: {period_type}")


def next_period_start(start: date, period_type: str) -> date:
    if period_type == "day":
        return start + timedelta(days=1)
    if period_type == "week":
        return start + timedelta(days=7)
    if period_type == "month":
        return (start.replace(day=28) + timedelta(days=4)).replace(day=1)
    if period_type == "year":
        return start.replace(year=start.year + 1)
    raise ValueError(f"Unsupported period type: {period_type}")


def iso_or_none(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()
