"""Core orchestration logic for the dog walking service."""

from __future__ import annotations

import datetime as dt
import functools
import hashlib
import logging
import math
import secrets
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from . import billing
from .config import Settings
from .database import get_connection, get_metadata, initialize_database, transaction
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import (
    WalkStatus,
    duration_minutes,
    ensure_attendance_editable,
    ensure_roster_editable,
    format_instant,
    next_status,
    parse_instant,
    utcnow,
)
from .rates import applicable_rate, parse_hourly_rate, sort_history, to_date

logger = logging.getLogger(__name__)

ADMIN = "ADMIN"
OWNER = "OWNER"

_UNSET: Any = object()

DOG_FIELDS = (
    "name",
    "breed",
    "age",
    "weight",
    "owner_id",
    "medical_notes",
    "emergency_contact",
    "photo_url",
)


def _serialised(method: Callable[..., Any]) -> Callable[..., Any]:
    """Run ``method`` while holding the system lock.

    Every public entry point takes the lock, so no caller can read or commit
    on the shared connection while another thread's transaction is open.
    """

    @functools.wraps(method)
    def wrapper(self: "WalkingSystem", *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class WalkingSystem:
    """High level façade that exposes application level behaviours."""

    def __init__(self, db_path: str = ":memory:", settings: Settings | None = None) -> None:
        self.settings = settings or Settings(database_path=db_path)
        self.conn = get_connection(db_path)
        self._lock = threading.RLock()
        initialize_database(self.conn)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _atomic(self) -> Iterator[None]:
        # the connection is shared between request threads
        with self._lock, transaction(self.conn):
            yield

    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 390000)
        return f"pbkdf2_sha256${salt}${digest.hex()}"

    def _verify_password(self, stored: str, provided: str) -> bool:
        algorithm, salt, hex_digest = stored.split("$")
        candidate = hashlib.pbkdf2_hmac("sha256", provided.encode(), salt.encode(), 390000)
        return secrets.compare_digest(candidate.hex(), hex_digest)

    @staticmethod
    def _require_text(value: str | None, field: str) -> str:
        text = (value or "").strip()
        if not text:
            raise ValidationError(f"{field} is required")
        return text

    @staticmethod
    def _normalise_email(email: str | None) -> str:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("Valid email required")
        return email

    @staticmethod
    def _normalise_ids(ids: Iterable[Any] | None, field: str = "dogIds") -> list[int]:
        if ids is None or isinstance(ids, (str, bytes)):
            raise ValidationError(f"{field} must be a list of ids")
        result: list[int] = []
        for value in ids:
            try:
                ident = int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"{field} must contain integer ids") from None
            if ident not in result:
                result.append(ident)
        if not result:
            raise ValidationError("At least one dog is required")
        return result

    @staticmethod
    def _optional_age(value: Any) -> int | None:
        if value in (None, ""):
            return None
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ValidationError("Age must be a whole number of years")
        try:
            age = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Age must be a whole number of years") from None
        if age < 0:
            raise ValidationError("Age cannot be negative")
        return age

    @staticmethod
    def _optional_weight(value: Any) -> float | None:
        if value in (None, ""):
            return None
        if isinstance(value, bool):
            raise ValidationError("Weight must be a number")
        try:
            weight = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Weight must be a number") from None
        if not math.isfinite(weight) or weight <= 0:
            raise ValidationError("Weight must be a positive number")
        return weight

    @staticmethod
    def _is_admin(viewer: Mapping[str, Any] | None) -> bool:
        return viewer is None or viewer["role"] == ADMIN

    def _ensure_owner_access(self, viewer: Mapping[str, Any] | None, owner_id: int) -> None:
        if not self._is_admin(viewer) and viewer["id"] != owner_id:
            raise AuthorizationError("Access denied")

    def _ensure_dogs_exist(self, dog_ids: Sequence[int]) -> None:
        placeholders = ",".join("?" for _ in dog_ids)
        found = {
            row["id"]
            for row in self.conn.execute(
                f"SELECT id FROM dogs WHERE id IN ({placeholders})", list(dog_ids)
            ).fetchall()
        }
        missing = [dog_id for dog_id in dog_ids if dog_id not in found]
        if missing:
            raise NotFoundError(f"Dog not found: {', '.join(str(m) for m in missing)}")

    # ------------------------------------------------------------------
    # Authentication & users
    # ------------------------------------------------------------------
    def _insert_user(
        self,
        *,
        email: str,
        password: str,
        role: str,
        first_name: str,
        last_name: str,
        phone: str | None,
    ) -> int:
        email = self._normalise_email(email)
        if not password:
            raise ValidationError("Password is required")
        if self.conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
            raise ConflictError("User with this email already exists")
        cur = self.conn.execute(
            """
            INSERT INTO users(email, password_hash, role, api_key, first_name, last_name, phone)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                email,
                self._hash_password(password),
                role,
                secrets.token_hex(16),
                self._require_text(first_name, "First name"),
                self._require_text(last_name, "Last name"),
                phone or None,
            ),
        )
        return cur.lastrowid

    @_serialised
    def create_user(
        self,
        *,
        email: str,
        password: str,
        role: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
    ) -> dict:
        """Create an account directly, bypassing invitations (seeding, admin setup)."""

        if role not in (ADMIN, OWNER):
            raise ValidationError(f"Unknown role: {role}")
        with self._atomic():
            user_id = self._insert_user(
                email=email,
                password=password,
                role=role,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
        logger.info("Created %s user %s", role.lower(), user_id)
        return self.get_user(user_id)

    @_serialised
    def create_admin(self, **fields: Any) -> dict:
        return self.create_user(role=ADMIN, **fields)

    @_serialised
    def create_owner(self, **fields: Any) -> dict:
        return self.create_user(role=OWNER, **fields)

    def _user_row(self, user_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFoundError("User not found")
        return row

    @staticmethod
    def _public_user(row: dict) -> dict:
        return {
            key: value for key, value in row.items() if key not in ("password_hash", "api_key")
        }

    @_serialised
    def get_user(self, user_id: int, *, viewer: Mapping[str, Any] | None = None) -> dict:
        self._ensure_owner_access(viewer, user_id)
        user = self._public_user(self._user_row(user_id))
        user["dogs"] = self.conn.execute(
            "SELECT * FROM dogs WHERE owner_id = ? ORDER BY name", (user_id,)
        ).fetchall()
        return user

    @_serialised
    def list_users(self) -> list[dict]:
        """Return all users, newest first, with their dog counts."""

        rows = self.conn.execute(
            """
            SELECT users.*, COUNT(dogs.id) AS dog_count
            FROM users
            LEFT JOIN dogs ON dogs.owner_id = users.id
            GROUP BY users.id
            ORDER BY users.created_at DESC, users.id DESC
            """
        ).fetchall()
        return [self._public_user(row) for row in rows]

    @_serialised
    def update_user(
        self,
        user_id: int,
        *,
        viewer: Mapping[str, Any] | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = _UNSET,
    ) -> dict:
        self._ensure_owner_access(viewer, user_id)
        self._user_row(user_id)
        updates: dict[str, Any] = {}
        if first_name:
            updates["first_name"] = first_name.strip()
        if last_name:
            updates["last_name"] = last_name.strip()
        if phone is not _UNSET:
            updates["phone"] = phone or None
        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            with self._atomic():
                self.conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?", [*updates.values(), user_id]
                )
        return self._public_user(self._user_row(user_id))

    @_serialised
    def delete_user(self, user_id: int) -> None:
        self._user_row(user_id)
        with self._atomic():
            self.conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info("Deleted user %s", user_id)

    @_serialised
    def authenticate(self, *, email: str, password: str) -> dict:
        row = self.conn.execute(
            "SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),)
        ).fetchone()
        if not row or not self._verify_password(row["password_hash"], password or ""):
            raise AuthenticationError("Invalid credentials")
        return {"user": self._public_user(row), "api_key": row["api_key"]}

    @_serialised
    def user_for_api_key(self, api_key: str | None) -> dict:
        row = None
        if api_key:
            row = self.conn.execute("SELECT * FROM users WHERE api_key = ?", (api_key,)).fetchone()
        if not row:
            raise AuthenticationError("Invalid or expired token")
        return self._public_user(row)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------
    @_serialised
    def create_invitation(
        self, *, email: str, created_by: int, now: dt.datetime | None = None
    ) -> dict:
        email = self._normalise_email(email)
        now = parse_instant(now) if now else utcnow()
        if self.conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
            raise ConflictError("User with this email already exists")
        for row in self.conn.execute(
            "SELECT expires_at FROM invitations WHERE email = ? AND used_at IS NULL", (email,)
        ).fetchall():
            if parse_instant(row["expires_at"]) > now:
                raise ConflictError("Active invitation already exists for this email")
        expires_at = now + dt.timedelta(days=self.settings.invitation_ttl_days)
        with self._atomic():
            cur = self.conn.execute(
                """
                INSERT INTO invitations(email, token, created_by, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (email, secrets.token_hex(32), created_by, format_instant(expires_at)),
            )
        logger.info("Created invitation %s for %s", cur.lastrowid, email)
        return self.get_invitation(cur.lastrowid)

    @_serialised
    def get_invitation(self, invitation_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM invitations WHERE id = ?", (invitation_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Invitation not found")
        return row

    @_serialised
    def list_invitations(self) -> list[dict]:
        return self.conn.execute(
            """
            SELECT invitations.*, users.first_name || ' ' || users.last_name AS created_by_name
            FROM invitations
            LEFT JOIN users ON users.id = invitations.created_by
            ORDER BY invitations.created_at DESC, invitations.id DESC
            """
        ).fetchall()

    @_serialised
    def delete_invitation(self, invitation_id: int) -> None:
        self.get_invitation(invitation_id)
        with self._atomic():
            self.conn.execute("DELETE FROM invitations WHERE id = ?", (invitation_id,))

    def _usable_invitation(self, token: str, now: dt.datetime | None) -> dict:
        row = self.conn.execute(
            "SELECT * FROM invitations WHERE token = ?", (token or "",)
        ).fetchone()
        if not row:
            raise NotFoundError("Invalid invitation token")
        if row["used_at"]:
            raise ValidationError("Invitation already used")
        now = parse_instant(now) if now else utcnow()
        if now > parse_instant(row["expires_at"]):
            raise ValidationError("Invitation expired")
        return row

    @_serialised
    def validate_invitation(self, token: str, *, now: dt.datetime | None = None) -> dict:
        invitation = self._usable_invitation(token, now)
        return {"valid": True, "email": invitation["email"]}

    @_serialised
    def register_owner(
        self,
        *,
        token: str,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
        now: dt.datetime | None = None,
    ) -> dict:
        """Create an owner account from an invitation and consume the invitation."""

        invitation = self._usable_invitation(token, now)
        if invitation["email"] != self._normalise_email(email):
            raise ValidationError("Email does not match invitation")
        used_at = format_instant(parse_instant(now) if now else utcnow())
        with self._atomic():
            user_id = self._insert_user(
                email=email,
                password=password,
                role=OWNER,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
            cur = self.conn.execute(
                "UPDATE invitations SET used_at = ? WHERE id = ? AND used_at IS NULL",
                (used_at, invitation["id"]),
            )
            if cur.rowcount != 1:
                raise ConflictError("Invitation already used")
        logger.info("Registered owner %s from invitation %s", user_id, invitation["id"])
        return self.authenticate(email=email, password=password)

    # ------------------------------------------------------------------
    # Dogs
    # ------------------------------------------------------------------
    @_serialised
    def create_dog(
        self,
        *,
        owner_id: int,
        name: str,
        breed: str | None = None,
        age: int | None = None,
        weight: float | None = None,
        medical_notes: str | None = None,
        emergency_contact: str | None = None,
        photo_url: str | None = None,
    ) -> dict:
        self._user_row(owner_id)
        values = (
            owner_id,
            self._require_text(name, "Name"),
            breed,
            self._optional_age(age),
            self._optional_weight(weight),
            medical_notes,
            emergency_contact,
            photo_url,
        )
        with self._atomic():
            cur = self.conn.execute(
                """
                INSERT INTO dogs(
                    owner_id, name, breed, age, weight, medical_notes, emergency_contact, photo_url
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
        return self.get_dog(cur.lastrowid)

    def _dog_row(self, dog_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT dogs.*, users.first_name AS owner_first_name,
                   users.last_name AS owner_last_name, users.email AS owner_email,
                   users.phone AS owner_phone
            FROM dogs
            JOIN users ON users.id = dogs.owner_id
            WHERE dogs.id = ?
            """,
            (dog_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("Dog not found")
        return row

    @_serialised
    def get_dog(self, dog_id: int, *, viewer: Mapping[str, Any] | None = None) -> dict:
        dog = self._dog_row(dog_id)
        self._ensure_owner_access(viewer, dog["owner_id"])
        dog["rates"] = sort_history(self._rate_histories([dog_id]).get(dog_id, []))
        return dog

    @_serialised
    def list_dogs(
        self,
        *,
        owner_id: int | None = None,
        viewer: Mapping[str, Any] | None = None,
        on_date: Any = None,
    ) -> list[dict]:
        """Return dogs ordered by name, each with the rate in effect on ``on_date``."""

        if not self._is_admin(viewer):
            owner_id = viewer["id"]
        params: list[Any] = []
        where = ""
        if owner_id is not None:
            where = " WHERE dogs.owner_id = ?"
            params.append(owner_id)
        dogs = self.conn.execute(
            """
            SELECT dogs.*, users.first_name AS owner_first_name,
                   users.last_name AS owner_last_name, users.email AS owner_email
            FROM dogs
            JOIN users ON users.id = dogs.owner_id
            """
            + where
            + " ORDER BY dogs.name, dogs.id",
            params,
        ).fetchall()
        target = to_date(on_date) if on_date else dt.date.today()
        histories = self._rate_histories([dog["id"] for dog in dogs])
        for dog in dogs:
            dog["current_rate"] = applicable_rate(histories.get(dog["id"], []), target)
        return dogs

    @_serialised
    def update_dog(self, dog_id: int, **fields: Any) -> dict:
        self._dog_row(dog_id)
        unknown = set(fields) - set(DOG_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown dog fields: {', '.join(sorted(unknown))}")
        if "name" in fields:
            fields["name"] = self._require_text(fields["name"], "Name")
        if "age" in fields:
            fields["age"] = self._optional_age(fields["age"])
        if "weight" in fields:
            fields["weight"] = self._optional_weight(fields["weight"])
        if "owner_id" in fields:
            self._user_row(fields["owner_id"])
        if fields:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            with self._atomic():
                self.conn.execute(
                    f"UPDATE dogs SET {assignments} WHERE id = ?", [*fields.values(), dog_id]
                )
        return self.get_dog(dog_id)

    @_serialised
    def delete_dog(self, dog_id: int) -> None:
        self._dog_row(dog_id)
        with self._atomic():
            self.conn.execute("DELETE FROM dogs WHERE id = ?", (dog_id,))
        logger.info("Deleted dog %s with its rates and attendances", dog_id)

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------
    @_serialised
    def create_rate(self, *, dog_id: int, hourly_rate: Any, effective_from: Any) -> dict:
        self._dog_row(dog_id)
        rate = parse_hourly_rate(hourly_rate)
        effective = to_date(effective_from, field="effectiveFrom")
        with self._atomic():
            cur = self.conn.execute(
                "INSERT INTO rates(dog_id, hourly_rate, effective_from) VALUES (?, ?, ?)",
                (dog_id, f"{rate:.2f}", effective.isoformat()),
            )
        logger.info("Dog %s billed at %s/h from %s", dog_id, rate, effective)
        return self.get_rate(cur.lastrowid)

    @_serialised
    def get_rate(self, rate_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT rates.*, dogs.name AS dog_name, dogs.owner_id
            FROM rates
            JOIN dogs ON dogs.id = rates.dog_id
            WHERE rates.id = ?
            """,
            (rate_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("Rate not found")
        return row

    @_serialised
    def list_rates(
        self, *, dog_id: int | None = None, viewer: Mapping[str, Any] | None = None
    ) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if dog_id is not None:
            conditions.append("rates.dog_id = ?")
            params.append(dog_id)
        if not self._is_admin(viewer):
            conditions.append("dogs.owner_id = ?")
            params.append(viewer["id"])
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        return self.conn.execute(
            """
            SELECT rates.*, dogs.name AS dog_name, dogs.owner_id,
                   users.first_name || ' ' || users.last_name AS owner_name
            FROM rates
            JOIN dogs ON dogs.id = rates.dog_id
            JOIN users ON users.id = dogs.owner_id
            """
            + where
            + " ORDER BY rates.effective_from DESC, rates.id DESC",
            params,
        ).fetchall()

    @_serialised
    def delete_rate(self, rate_id: int) -> None:
        rate = self.get_rate(rate_id)
        with self._atomic():
            self.conn.execute("DELETE FROM rates WHERE id = ?", (rate_id,))
        logger.info("Deleted rate %s of dog %s", rate_id, rate["dog_id"])

    @_serialised
    def current_rate(self, dog_id: int, on_date: Any = None) -> dict | None:
        """Return the rate entry in effect for ``dog_id`` on ``on_date`` (today by default)."""

        self._dog_row(dog_id)
        target = to_date(on_date) if on_date else dt.date.today()
        return applicable_rate(self._rate_histories([dog_id]).get(dog_id, []), target)

    def _rate_histories(self, dog_ids: Iterable[int]) -> dict[int, list[dict]]:
        dog_ids = list(dict.fromkeys(dog_ids))
        histories: dict[int, list[dict]] = {dog_id: [] for dog_id in dog_ids}
        if not dog_ids:
            return histories
        placeholders = ",".join("?" for _ in dog_ids)
        for row in self.conn.execute(
            f"SELECT * FROM rates WHERE dog_id IN ({placeholders}) ORDER BY id",
            dog_ids,
        ).fetchall():
            histories[row["dog_id"]].append(row)
        return histories

    # ------------------------------------------------------------------
    # Walks
    # ------------------------------------------------------------------
    def _walk_row(self, walk_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM walks WHERE id = ?", (walk_id,)).fetchone()
        if not row:
            raise NotFoundError("Walk not found")
        return row

    def _attendances(self, walk_id: int) -> list[dict]:
        rows = self.conn.execute(
            """
            SELECT attendances.*, dogs.name AS dog_name, dogs.owner_id,
                   users.first_name || ' ' || users.last_name AS owner_name
            FROM attendances
            JOIN dogs ON dogs.id = attendances.dog_id
            JOIN users ON users.id = dogs.owner_id
            WHERE attendances.walk_id = ?
            ORDER BY dogs.name, attendances.id
            """,
            (walk_id,),
        ).fetchall()
        for row in rows:
            row["attended"] = bool(row["attended"])
        return rows

    @_serialised
    def get_walk(self, walk_id: int, *, viewer: Mapping[str, Any] | None = None) -> dict:
        walk = self._walk_row(walk_id)
        walk["attendances"] = self._attendances(walk_id)
        if not self._is_admin(viewer) and not any(
            attendance["owner_id"] == viewer["id"] for attendance in walk["attendances"]
        ):
            raise AuthorizationError("Access denied")
        return walk

    @_serialised
    def list_walks(
        self,
        *,
        start_date: Any = None,
        end_date: Any = None,
        dog_id: int | None = None,
        viewer: Mapping[str, Any] | None = None,
    ) -> list[dict]:
        """Return walks newest first; owners only see walks with their dogs."""

        conditions: list[str] = []
        params: list[Any] = []
        if start_date and end_date:
            conditions.append("walks.date BETWEEN ? AND ?")
            params.extend(
                [
                    to_date(start_date, field="startDate").isoformat(),
                    to_date(end_date, field="endDate").isoformat(),
                ]
            )
        if not self._is_admin(viewer):
            conditions.append(
                """EXISTS (
                    SELECT 1 FROM attendances
                    JOIN dogs ON dogs.id = attendances.dog_id
                    WHERE attendances.walk_id = walks.id AND dogs.owner_id = ?
                )"""
            )
            params.append(viewer["id"])
        elif dog_id is not None:
            conditions.append(
                "EXISTS (SELECT 1 FROM attendances WHERE walk_id = walks.id AND dog_id = ?)"
            )
            params.append(dog_id)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        walks = self.conn.execute(
            "SELECT * FROM walks" + where + " ORDER BY walks.date DESC, walks.id DESC",
            params,
        ).fetchall()
        for walk in walks:
            walk["attendances"] = self._attendances(walk["id"])
        return walks

    def _insert_roster(self, walk_id: int, dog_ids: Sequence[int]) -> None:
        self.conn.executemany(
            "INSERT INTO attendances(walk_id, dog_id, attended) VALUES (?, ?, 0)",
            [(walk_id, dog_id) for dog_id in dog_ids],
        )

    @_serialised
    def create_walk(
        self,
        *,
        date: Any,
        dog_ids: Iterable[Any],
        admin_id: int | None = None,
        notes: str | None = None,
    ) -> dict:
        walk_date = to_date(date).isoformat()
        roster = self._normalise_ids(dog_ids)
        with self._atomic():
            self._ensure_dogs_exist(roster)
            cur = self.conn.execute(
                "INSERT INTO walks(date, status, admin_id, notes) VALUES (?, ?, ?, ?)",
                (walk_date, WalkStatus.SCHEDULED.value, admin_id, notes),
            )
            walk_id = cur.lastrowid
            self._insert_roster(walk_id, roster)
        logger.info("Scheduled walk %s on %s with %d dogs", walk_id, walk_date, len(roster))
        return self.get_walk(walk_id)

    def _replace_roster(self, walk: Mapping[str, Any], roster: Sequence[int]) -> None:
        ensure_roster_editable(walk["status"])
        self._ensure_dogs_exist(roster)
        self.conn.execute("DELETE FROM attendances WHERE walk_id = ?", (walk["id"],))
        self._insert_roster(walk["id"], roster)

    @_serialised
    def replace_roster(self, walk_id: int, dog_ids: Iterable[Any]) -> dict:
        """Discard every attendance of the walk and start over with ``dog_ids``."""

        roster = self._normalise_ids(dog_ids)
        with self._atomic():
            self._replace_roster(self._walk_row(walk_id), roster)
        logger.info("Replaced roster of walk %s with %d dogs", walk_id, len(roster))
        return self.get_walk(walk_id)

    @_serialised
    def update_walk(
        self,
        walk_id: int,
        *,
        date: Any = None,
        notes: str | None = _UNSET,
        dog_ids: Iterable[Any] | None = None,
    ) -> dict:
        roster = self._normalise_ids(dog_ids) if dog_ids is not None else None
        updates: dict[str, Any] = {}
        if date:
            updates["date"] = to_date(date).isoformat()
        if notes is not _UNSET:
            updates["notes"] = notes
        with self._atomic():
            walk = self._walk_row(walk_id)
            if roster is not None:
                self._replace_roster(walk, roster)
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                self.conn.execute(
                    f"UPDATE walks SET {assignments}, version = version + 1 WHERE id = ?",
                    [*updates.values(), walk_id],
                )
        if roster is not None:
            logger.info("Replaced roster of walk %s with %d dogs", walk_id, len(roster))
        return self.get_walk(walk_id)

    def _transition(self, walk: Mapping[str, Any], action: str, **columns: Any) -> WalkStatus:
        try:
            target = next_status(walk["status"], action)
        except ConflictError:
            logger.warning("Rejected %s of walk %s in state %s", action, walk["id"], walk["status"])
            raise
        assignments = "".join(f", {column} = ?" for column in columns)
        cur = self.conn.execute(
            f"""
            UPDATE walks SET status = ?{assignments}, version = version + 1
            WHERE id = ? AND status = ? AND version = ?
            """,
            [target.value, *columns.values(), walk["id"], walk["status"], walk["version"]],
        )
        if cur.rowcount != 1:
            raise ConflictError("Walk was modified concurrently; reload and retry")
        return target

    @_serialised
    def start_walk(self, walk_id: int, *, now: dt.datetime | None = None) -> dict:
        started = parse_instant(now) if now else utcnow()
        with self._atomic():
            walk = self._walk_row(walk_id)
            self._transition(walk, "start", start_time=format_instant(started))
        logger.info("Started walk %s", walk_id)
        return self.get_walk(walk_id)

    @_serialised
    def end_walk(self, walk_id: int, *, now: dt.datetime | None = None) -> dict:
        """Complete the walk and stamp its duration on every attending dog.

        All attending dogs receive the same group duration. The status swap and
        the duration stamps land in one transaction.
        """

        ended = parse_instant(now) if now else utcnow()
        with self._atomic():
            walk = self._walk_row(walk_id)
            minutes = duration_minutes(parse_instant(walk["start_time"]), ended)
            self._transition(walk, "end", end_time=format_instant(ended))
            cur = self.conn.execute(
                "UPDATE attendances SET duration = ? WHERE walk_id = ? AND attended = 1",
                (minutes, walk_id),
            )
        logger.info(
            "Completed walk %s after %d minutes with %d attending dogs",
            walk_id,
            minutes,
            cur.rowcount,
        )
        return self.get_walk(walk_id)

    @_serialised
    def cancel_walk(self, walk_id: int) -> dict:
        with self._atomic():
            self._transition(self._walk_row(walk_id), "cancel")
        logger.info("Cancelled walk %s", walk_id)
        return self.get_walk(walk_id)

    @_serialised
    def toggle_attendance(self, walk_id: int, dog_id: int, attended: bool) -> dict:
        if not isinstance(attended, bool):
            raise ValidationError("attended must be true or false")
        with self._atomic():
            walk = self._walk_row(walk_id)
            ensure_attendance_editable(walk["status"])
            cur = self.conn.execute(
                "UPDATE attendances SET attended = ? WHERE walk_id = ? AND dog_id = ?",
                (int(attended), walk_id, dog_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("Dog is not part of this walk")
        return self.get_walk(walk_id)

    @_serialised
    def delete_walk(self, walk_id: int) -> None:
        self._walk_row(walk_id)
        with self._atomic():
            self.conn.execute("DELETE FROM walks WHERE id = ?", (walk_id,))
        logger.info("Deleted walk %s", walk_id)

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def _billable_attendances(self, query: billing.BillingQuery) -> list[dict]:
        conditions = [
            "walks.status = ?",
            "walks.date BETWEEN ? AND ?",
            "attendances.attended = 1",
            "attendances.duration IS NOT NULL",
        ]
        params: list[Any] = [
            WalkStatus.COMPLETED.value,
            query.start_date.isoformat(),
            query.end_date.isoformat(),
        ]
        if query.dog_id is not None:
            conditions.append("dogs.id = ?")
            params.append(query.dog_id)
        if query.owner_id is not None:
            conditions.append("dogs.owner_id = ?")
            params.append(query.owner_id)
        return self.conn.execute(
            """
            SELECT attendances.id AS attendance_id, attendances.duration,
                   walks.id AS walk_id, walks.date AS walk_date,
                   dogs.id AS dog_id, dogs.name AS dog_name, dogs.owner_id,
                   users.first_name AS owner_first_name, users.last_name AS owner_last_name
            FROM attendances
            JOIN walks ON walks.id = attendances.walk_id
            JOIN dogs ON dogs.id = attendances.dog_id
            JOIN users ON users.id = dogs.owner_id
            WHERE """
            + " AND ".join(conditions)
            + " ORDER BY walks.date DESC, attendances.id",
            params,
        ).fetchall()

    def _billing_records(self, query: billing.BillingQuery) -> list[billing.BillingRecord]:
        # one read transaction so rates and attendances come from the same snapshot
        with self._atomic():
            rows = self._billable_attendances(query)
            histories = self._rate_histories(row["dog_id"] for row in rows)
        return billing.price_attendances(rows, histories)

    @staticmethod
    def _billing_query(query: billing.BillingQuery | Mapping[str, Any]) -> billing.BillingQuery:
        if isinstance(query, billing.BillingQuery):
            return query
        return billing.BillingQuery.from_payload(query)

    @_serialised
    def billing_report(self, query: billing.BillingQuery | Mapping[str, Any]) -> dict:
        query = self._billing_query(query)
        records = self._billing_records(query)
        return {
            "records": [record.as_dict() for record in records],
            "summary": billing.summarize(records, query),
        }

    @_serialised
    def export_billing_csv(
        self,
        query: billing.BillingQuery | Mapping[str, Any],
        *,
        locale: str | None = None,
    ) -> tuple[str, str]:
        """Return ``(filename, csv_text)`` for the same records the report shows."""

        query = self._billing_query(query)
        records = self._billing_records(query)
        text = billing.render_csv(records, locale or self.settings.billing_csv_locale)
        logger.info(
            "Exported %d billing records for %s..%s", len(records), query.start_date, query.end_date
        )
        return billing.csv_filename(query), text

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------
    @_serialised
    def schema_version(self) -> int:
        return int(get_metadata(self.conn, "schema_version", "0"))

    @_serialised
    def close(self) -> None:
        self.conn.close()
