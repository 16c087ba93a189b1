"""Hourly rate history helpers.

A dog's rates form an append-only history of ``(hourly_rate, effective_from)``
entries. The rate applying to a walk is the entry with the latest
``effective_from`` on or before the walk's calendar date; when two entries
share the same ``effective_from`` the most recently created one (highest id)
wins. Dates are compared as plain calendar dates.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Mapping

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO_RATE = Decimal("0.00")


def to_date(value: Any, *, field: str = "date") -> dt.date:
    """Normalise ``value`` to a calendar date.

    Accepts ``date`` and ``datetime`` objects as well as ISO strings. Full
    timestamps keep their own calendar day; no timezone conversion happens.
    """

    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if len(text) == 10:
                return dt.date.fromisoformat(text)
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return dt.datetime.fromisoformat(text).date()
        except ValueError:
            pass
    raise ValidationError(f"Invalid {field}: expected an ISO date (YYYY-MM-DD)")


def parse_hourly_rate(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("Hourly rate must be a number")
    try:
        rate = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("Hourly rate must be a number") from None
    if not rate.is_finite():
        raise ValidationError("Hourly rate must be a number")
    if rate < 0:
        raise ValidationError("Hourly rate cannot be negative")
    # trailing zeros are fine, sub-cent precision is not
    if rate != rate.quantize(CENT, rounding=ROUND_HALF_UP):
        raise ValidationError("Hourly rate cannot have more than two decimal places")
    return rate.quantize(CENT)


def _history_key(entry: Mapping[str, Any]) -> tuple[dt.date, int]:
    return to_date(entry["effective_from"], field="effective_from"), int(entry.get("id") or 0)


def applicable_rate(
    rate_history: Iterable[Mapping[str, Any]], on_date: Any
) -> Mapping[str, Any] | None:
    """Return the history entry in effect on ``on_date``, or ``None``."""

    target = to_date(on_date)
    best: Mapping[str, Any] | None = None
    best_key: tuple[dt.date, int] | None = None
    for entry in rate_history:
        key = _history_key(entry)
        if key[0] > target:
            continue
        if best_key is None or key > best_key:
            best, best_key = entry, key
    return best


def resolve_rate(rate_history: Iterable[Mapping[str, Any]], on_date: Any) -> Decimal:
    """Return the hourly rate in effect on ``on_date``; zero when none applies."""

    entry = applicable_rate(rate_history, on_date)
    if entry is None:
        return ZERO_RATE
    return parse_hourly_rate(entry["hourly_rate"])


def sort_history(rate_history: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Return the history newest-first, in the order resolution considers it."""

    return sorted(rate_history, key=_history_key, reverse=True)
