"""Timestamp helpers shared by the sync services."""

from datetime import UTC, date, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def truncate_to_second(value: datetime) -> datetime:
    return ensure_utc(value).replace(microsecond=0)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string from the catalog API."""
    if not value:
        return None
    normalized = value.replace("Z", "+00:00")
    try:
        return ensure_utc(datetime.fromisoformat(normalized))
    except ValueError:
        pass
    for fmt in [
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%d %H:%M:%S",
    ]:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


def parse_release_date(value: str | None) -> date | None:
    """
    Parse a release date.

    The catalog reports release dates with year, month or day precision
    (``2019``, ``2019-07``, ``2019-07-12``); missing parts default to 1.
    """
    if not value or not value.strip():
        return None
    parts = value.strip().split("-")
    try:
        year = int(parts[0])
        month = int(parts[1]) if len(parts) > 1 else 1
        day = int(parts[2]) if len(parts) > 2 else 1
        return date(year, month, day)
    except (ValueError, IndexError):
        return None
