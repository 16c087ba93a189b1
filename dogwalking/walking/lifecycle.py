"""Walk status machine and duration rules."""

from __future__ import annotations

import datetime as dt
import enum

from .errors import ConflictError, ValidationError


class WalkStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({WalkStatus.COMPLETED, WalkStatus.CANCELLED})

# action -> (states it may be applied from, resulting state)
TRANSITIONS: dict[str, tuple[frozenset[WalkStatus], WalkStatus]] = {
    "start": (frozenset({WalkStatus.SCHEDULED}), WalkStatus.IN_PROGRESS),
    "end": (frozenset({WalkStatus.IN_PROGRESS}), WalkStatus.COMPLETED),
    "cancel": (
        frozenset({WalkStatus.SCHEDULED, WalkStatus.IN_PROGRESS}),
        WalkStatus.CANCELLED,
    ),
}

MILLISECONDS_PER_MINUTE = 60_000


def coerce_status(value: str | WalkStatus) -> WalkStatus:
    try:
        return WalkStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown walk status: {value}") from None


def next_status(current: str | WalkStatus, action: str) -> WalkStatus:
    """Return the status reached by applying ``action`` to a walk in ``current``.

    Raises ``ConflictError`` when the action is not legal from ``current``.
    """

    if action not in TRANSITIONS:
        raise ValidationError(f"Unknown walk action: {action}")
    allowed, target = TRANSITIONS[action]
    status = coerce_status(current)
    if status not in allowed:
        raise ConflictError(f"Cannot {action} a walk that is {status.value}")
    return target


def ensure_roster_editable(current: str | WalkStatus) -> None:
    status = coerce_status(current)
    if status.is_terminal:
        raise ConflictError(f"Walk is {status.value}; its roster can no longer change")


def ensure_attendance_editable(current: str | WalkStatus) -> None:
    status = coerce_status(current)
    if status.is_terminal:
        raise ConflictError(f"Walk is {status.value}; attendance can no longer change")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_instant(value: str | dt.datetime | None) -> dt.datetime | None:
    """Parse a stored ISO-8601 instant; naive values are taken as UTC."""

    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = dt.datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


def format_instant(value: dt.datetime) -> str:
    return parse_instant(value).astimezone(dt.timezone.utc).isoformat(timespec="milliseconds")


def duration_minutes(start: dt.datetime | None, end: dt.datetime) -> int:
    """Whole minutes between ``start`` and ``end``, rounded half up.

    A walk that was never started counts from ``end`` itself, giving zero.
    """

    end = parse_instant(end)
    start = parse_instant(start) if start is not None else end
    elapsed_ms = (end - start) // dt.timedelta(milliseconds=1)
    if elapsed_ms <= 0:
        return 0
    return (elapsed_ms + MILLISECONDS_PER_MINUTE // 2) // MILLISECONDS_PER_MINUTE
