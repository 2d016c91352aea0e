"""Monotonic message time ordering.

Message times travel as ISO-8601 UTC strings with millisecond precision
(``2025-01-01T00:00:00.000Z``). Anything that looks like a time on the way
in (an ISO string, a ``datetime``, or an object exposing ``to_date()``) is
normalized here; everything else is treated as missing.
"""

from collections.abc import Iterable, MutableMapping, MutableSequence
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel

M = TypeVar("M")


def utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Serialize an aware or naive (assumed UTC) datetime as ISO UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_time_utc(value: Any) -> datetime | None:
    """Parse a message time into an aware UTC datetime, or None if invalid."""
    if not value or isinstance(value, bool | int | float):
        return None

    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    elif isinstance(value, datetime):
        parsed = value
    elif callable(getattr(value, "to_date", None)):
        parsed = value.to_date()
        if not isinstance(parsed, datetime):
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def normalize_time(value: Any) -> str | None:
    """Return the ISO form of a valid time, or None."""
    parsed = parse_time_utc(value)
    return to_iso(parsed) if parsed else None


def get_time(message: Any) -> Any:
    if isinstance(message, MutableMapping):
        return message.get("time")
    return getattr(message, "time", None)


def _set_time(message: Any, value: str) -> None:
    if isinstance(message, MutableMapping):
        message["time"] = value
    else:
        message.time = value


def _latest(existing: Iterable[Any]) -> datetime | None:
    latest: datetime | None = None
    for message in existing or ():
        parsed = parse_time_utc(get_time(message))
        if parsed and (latest is None or parsed > latest):
            latest = parsed
    return latest


def next_monotonic_iso(
    existing: Iterable[Any],
    proposed_time: Any = None,
    min_step_seconds: float = 1,
) -> str:
    """Compute a time for a new message that sorts after ``existing``.

    The proposed time (or now, when it is invalid) is used unless it falls
    before ``max(existing) + min_step_seconds``, in which case that floor is
    returned instead. Nothing is mutated.
    """
    proposed = parse_time_utc(proposed_time) or utc_now()
    latest = _latest(existing)
    if latest is None:
        return to_iso(proposed)

    floor = latest + timedelta(seconds=min_step_seconds)
    return to_iso(floor if proposed < floor else proposed)


def push_message(
    arr: MutableSequence[M],
    msg: M,
    min_step_seconds: float = 1,
) -> M:
    """Append a shallow copy of ``msg`` with a monotonic time and return it.

    ``msg`` itself is never modified.
    """
    if isinstance(msg, BaseModel):
        safe = msg.model_copy()
    elif isinstance(msg, MutableMapping):
        safe = dict(msg)
    else:
        raise TypeError(f"Unsupported message type: {type(msg).__name__}")

    _set_time(safe, next_monotonic_iso(arr, get_time(safe), min_step_seconds))
    arr.append(safe)
    return safe


def enforce_monotonic_in_place(
    arr: Iterable[Any],
    min_step_seconds: float = 1,
) -> list[int]:
    """Rewrite times so each is ``min_step_seconds`` after the previous one.

    Elements keep their order. Missing or invalid times are seeded from now
    before the floor applies. Returns the indexes whose stored time changed.
    """
    changed: list[int] = []
    last: datetime | None = None
    step = timedelta(seconds=min_step_seconds)

    for index, message in enumerate(arr):
        current = parse_time_utc(get_time(message)) or utc_now()
        if last is not None and current < last + step:
            current = last + step
        last = current

        iso = to_iso(current)
        if get_time(message) != iso:
            _set_time(message, iso)
            changed.append(index)

    return changed
