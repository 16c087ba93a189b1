"""Demo data for a fresh installation."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from .system import WalkingSystem

logger = logging.getLogger(__name__)

DEMO_ADMIN = {
    "email": "admin@dogwalking.com",
    "password": "admin123",
    "first_name": "Admin",
    "last_name": "User",
    "phone": "+49 123 456789",
}

DEMO_OWNER = {
    "email": "owner@example.com",
    "password": "owner123",
    "first_name": "Maria",
    "last_name": "Schmidt",
    "phone": "+49 987 654321",
}

DEMO_DOGS = (
    {
        "name": "Max",
        "breed": "Golden Retriever",
        "age": 3,
        "weight": 30,
        "medical_notes": "Keine bekannten Allergien",
        "emergency_contact": "+49 987 654321",
        "photo_url": "https://images.unsplash.com/photo-1633722715463-d30f4f325e24?w=400",
        "hourly_rate": "25.00",
    },
    {
        "name": "Bella",
        "breed": "Labrador",
        "age": 2,
        "weight": 25,
        "medical_notes": "Sehr energetisch",
        "emergency_contact": "+49 987 654321",
        "photo_url": "https://images.unsplash.com/photo-1587300003388-59208cc962cb?w=400",
        "hourly_rate": "22.50",
    },
)

RATES_EFFECTIVE_FROM = "2024-01-01"


def _user_exists(system: WalkingSystem, email: str) -> bool:
    return any(user["email"] == email for user in system.list_users())


def seed_demo_data(system: WalkingSystem, today: dt.date | None = None) -> dict[str, Any] | None:
    """Create the demo admin, an owner with two dogs, their rates and three walks.

    Yesterday's walk is completed (10:00 to 11:30 UTC, both dogs attending),
    today's and tomorrow's are scheduled. Returns ``None`` without touching
    anything when the demo admin already exists.
    """

    if _user_exists(system, DEMO_ADMIN["email"]):
        logger.info("Demo data already present; skipping seed")
        return None

    today = today or dt.date.today()
    yesterday = today - dt.timedelta(days=1)
    tomorrow = today + dt.timedelta(days=1)

    admin = system.create_admin(**DEMO_ADMIN)
    owner = system.create_owner(**DEMO_OWNER)
    dogs = []
    for spec in DEMO_DOGS:
        fields = {key: value for key, value in spec.items() if key != "hourly_rate"}
        dog = system.create_dog(owner_id=owner["id"], **fields)
        system.create_rate(
            dog_id=dog["id"], hourly_rate=spec["hourly_rate"], effective_from=RATES_EFFECTIVE_FROM
        )
        dogs.append(dog)
    max_, bella = dogs

    completed = system.create_walk(
        date=yesterday,
        dog_ids=[max_["id"], bella["id"]],
        admin_id=admin["id"],
        notes="Schöner Walk im Park",
    )
    for dog in dogs:
        system.toggle_attendance(completed["id"], dog["id"], True)
    started = dt.datetime.combine(yesterday, dt.time(10, 0), tzinfo=dt.timezone.utc)
    system.start_walk(completed["id"], now=started)
    system.end_walk(completed["id"], now=started + dt.timedelta(minutes=90))

    walks = [
        completed,
        system.create_walk(
            date=today,
            dog_ids=[max_["id"]],
            admin_id=admin["id"],
            notes="Geplanter Walk heute Nachmittag",
        ),
        system.create_walk(date=tomorrow, dog_ids=[max_["id"], bella["id"]], admin_id=admin["id"]),
    ]
    logger.info("Seeded demo data: %d dogs, %d walks", len(dogs), len(walks))
    return {"admin": admin, "owner": owner, "dogs": dogs, "walks": walks}
