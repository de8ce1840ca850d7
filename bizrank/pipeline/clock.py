from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
