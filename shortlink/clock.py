"""UTC clock helpers shared by the store, cooldown and resolver layers."""

import datetime
from collections.abc import Callable

__all__ = ["Clock", "as_utc", "utcnow"]

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite hands back naive values; everything we store is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)
