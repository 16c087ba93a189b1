"""Billing computations for completed walks.

The engine is pure: callers hand it the billable attendance rows (already
filtered to completed walks, attended dogs and recorded durations) plus each
dog's rate history, and get back priced records and summary totals. The CSV
export is rendered from the very same records so both outputs reconcile.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, Sequence

from .errors import ValidationError
from .rates import CENT, resolve_rate, to_date

MINUTES_PER_HOUR = Decimal(60)

CSV_HEADERS = {
    "de": ("Datum", "Hund", "Besitzer", "Dauer (Min)", "Stundensatz (€)", "Betrag (€)"),
    "en": ("Date", "Dog", "Owner", "Duration (min)", "Hourly rate (€)", "Amount (€)"),
}


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return f"{round2(value):.2f}"


def _optional_id(payload: Mapping[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer id")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer id") from None


@dataclass(frozen=True)
class BillingQuery:
    """Inclusive calendar-date range with optional dog and owner filters."""

    start_date: dt.date
    end_date: dt.date
    dog_id: int | None = None
    owner_id: int | None = None

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValidationError("startDate must not be after endDate")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "BillingQuery":
        payload = payload or {}
        for key in ("startDate", "endDate"):
            if not payload.get(key):
                raise ValidationError(f"{key} is required")
        return cls(
            start_date=to_date(payload["startDate"], field="startDate"),
            end_date=to_date(payload["endDate"], field="endDate"),
            dog_id=_optional_id(payload, "dogId"),
            owner_id=_optional_id(payload, "ownerId"),
        )


@dataclass(frozen=True)
class BillingRecord:
    dog_id: int
    dog_name: str
    owner_id: int
    owner_name: str
    date: str
    duration: int
    hourly_rate: Decimal
    amount: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "dogId": self.dog_id,
            "dogName": self.dog_name,
            "ownerId": self.owner_id,
            "ownerName": self.owner_name,
            "date": self.date,
            "duration": self.duration,
            "hourlyRate": format_money(self.hourly_rate),
            "amount": format_money(self.amount),
        }

    def as_csv_row(self) -> list[str]:
        return [
            self.date,
            self.dog_name,
            self.owner_name,
            str(self.duration),
            format_money(self.hourly_rate),
            format_money(self.amount),
        ]


def compute_amount(duration: int, hourly_rate: Decimal) -> Decimal:
    """Price ``duration`` minutes at ``hourly_rate``; only the result is rounded."""

    return round2(Decimal(duration) / MINUTES_PER_HOUR * hourly_rate)


def price_attendance(
    row: Mapping[str, Any], rate_history: Iterable[Mapping[str, Any]]
) -> BillingRecord:
    duration = int(row["duration"])
    hourly_rate = resolve_rate(rate_history, row["walk_date"])
    return BillingRecord(
        dog_id=row["dog_id"],
        dog_name=row["dog_name"],
        owner_id=row["owner_id"],
        owner_name=f"{row['owner_first_name']} {row['owner_last_name']}",
        date=to_date(row["walk_date"]).isoformat(),
        duration=duration,
        hourly_rate=hourly_rate,
        amount=compute_amount(duration, hourly_rate),
    )


def price_attendances(
    rows: Iterable[Mapping[str, Any]],
    rate_histories: Mapping[int, Sequence[Mapping[str, Any]]],
) -> list[BillingRecord]:
    """Price every row, newest walk date first; ties keep retrieval order."""

    records = [price_attendance(row, rate_histories.get(row["dog_id"], ())) for row in rows]
    return sorted(records, key=lambda record: record.date, reverse=True)


def summarize(records: Sequence[BillingRecord], query: BillingQuery) -> dict[str, Any]:
    total_amount = Decimal("0")
    for record in records:
        total_amount += record.amount
    return {
        "totalRecords": len(records),
        "totalDuration": sum(record.duration for record in records),
        "totalAmount": format_money(total_amount),
        "startDate": query.start_date.isoformat(),
        "endDate": query.end_date.isoformat(),
    }


def build_report(
    rows: Iterable[Mapping[str, Any]],
    rate_histories: Mapping[int, Sequence[Mapping[str, Any]]],
    query: BillingQuery,
) -> dict[str, Any]:
    records = price_attendances(rows, rate_histories)
    return {
        "records": [record.as_dict() for record in records],
        "summary": summarize(records, query),
    }


def render_csv(records: Iterable[BillingRecord], locale: str = "de") -> str:
    """Serialise records as CSV with a fixed, localised header row.

    Rows are separated by single newlines and the last row is unterminated.
    """

    try:
        headers = CSV_HEADERS[locale]
    except KeyError:
        raise ValidationError(f"Unsupported CSV locale: {locale}") from None
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for record in records:
        writer.writerow(record.as_csv_row())
    return buffer.getvalue().removesuffix("\n")


def csv_filename(query: BillingQuery) -> str:
    return f"billing-{query.start_date.isoformat()}-{query.end_date.isoformat()}.csv"
