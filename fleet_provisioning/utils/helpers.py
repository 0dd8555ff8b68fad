import datetime
import re

# Timespan in the "[d.]hh:mm:ss" notation, e.g. "02:00:00" or "1.00:30:00"
_TIMESPAN_RE = re.compile(r"^(?:(?P<days>\d+)\.)?(?P<hours>\d+):(?P<minutes>\d+):(?P<seconds>\d+)$")


def utcnow() -> datetime.datetime:
    """Return current time in UTC."""
    return datetime.datetime.now(tz=datetime.UTC)


def to_isoformat(value: datetime.datetime | None) -> str | None:
    """Return ISO-8601 representation of UTC time, or None."""
    if value is None:
        return None
    return value.astimezone(datetime.UTC).isoformat()


def from_isoformat(value: str | None) -> datetime.datetime | None:
    """Parse ISO-8601 time, naive values are considered UTC."""
    if not value:
        return None
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed


def parse_timespan(value: str | int | float) -> datetime.timedelta:
    """Parse timespan given either as number of seconds or in the "[d.]hh:mm:ss" notation.

    >>> parse_timespan("1.02:00:30")
    datetime.timedelta(days=1, seconds=7230)
    >>> parse_timespan(90)
    datetime.timedelta(seconds=90)
    """
    if isinstance(value, bool):
        msg = f"Invalid timespan: {value!r}"
        raise ValueError(msg)

    if isinstance(value, int | float):
        seconds = float(value)
    elif match := _TIMESPAN_RE.match(value.strip()):
        parts = {k: int(v or 0) for k, v in match.groupdict().items()}
        if parts["minutes"] > 59 or parts["seconds"] > 59:
            msg = f"Invalid timespan: {value!r}"
            raise ValueError(msg)
        seconds = datetime.timedelta(**parts).total_seconds()
    else:
        value = value.strip()
        try:
            seconds = float(value)
        except ValueError:
            msg = f"Invalid timespan: {value!r}"
            raise ValueError(msg) from None

    if seconds <= 0:
        msg = f"Timespan must be positive: {value!r}"
        raise ValueError(msg)
    return datetime.timedelta(seconds=seconds)
