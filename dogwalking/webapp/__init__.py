"""Flask application exposing the dog walking service as a JSON API."""

from __future__ import annotations

import datetime as dt
import functools
import logging
from typing import Any, Callable

import click
from flask import Flask, Response, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from dogwalking.walking.config import Settings
from dogwalking.walking.errors import AuthorizationError, DogWalkingError, ValidationError
from dogwalking.walking.logging_setup import configure_logging
from dogwalking.walking.seed import DEMO_ADMIN, DEMO_OWNER, seed_demo_data
from dogwalking.walking.system import ADMIN, WalkingSystem

logger = logging.getLogger(__name__)

# request body key -> WalkingSystem keyword
DOG_PAYLOAD_FIELDS = {
    "name": "name",
    "breed": "breed",
    "age": "age",
    "weight": "weight",
    "ownerId": "owner_id",
    "medicalNotes": "medical_notes",
    "emergencyContact": "emergency_contact",
    "photoUrl": "photo_url",
}


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int_arg(name: str) -> int | None:
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer id") from None


def create_app(settings: Settings | None = None) -> Flask:
    """Create and configure the Flask application."""

    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key.get_secret_value()
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

    system = WalkingSystem(settings.database_path, settings=settings)
    app.extensions["walking_system"] = system

    def current_user() -> dict:
        if "user" not in g:
            header = request.headers.get("Authorization", "")
            api_key = header[7:].strip() if header.startswith("Bearer ") else session.get("api_key")
            g.user = system.user_for_api_key(api_key)
        return g.user

    def login_required(view: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(view)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            current_user()
            return view(*args, **kwargs)

        return wrapper

    def admin_required(view: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(view)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if current_user()["role"] != ADMIN:
                raise AuthorizationError("Admin access required")
            return view(*args, **kwargs)

        return wrapper

    def start_session(auth: dict) -> None:
        session.clear()
        session["api_key"] = auth["api_key"]

    @app.errorhandler(DogWalkingError)
    def handle_domain_error(exc: DogWalkingError) -> Any:
        return jsonify({"error": str(exc)}), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.get("/api/health")
    def health() -> Any:
        return jsonify(
            {
                "status": "ok",
                "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
                "schemaVersion": system.schema_version(),
            }
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.post("/api/auth/register")
    def register() -> Any:
        data = _payload()
        auth = system.register_owner(
            token=data.get("token", ""),
            email=data.get("email", ""),
            password=data.get("password", ""),
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            phone=data.get("phone"),
        )
        start_session(auth)
        return jsonify({"user": auth["user"], "token": auth["api_key"]}), 201

    @app.post("/api/auth/login")
    def login() -> Any:
        data = _payload()
        auth = system.authenticate(email=data.get("email", ""), password=data.get("password", ""))
        start_session(auth)
        return jsonify({"user": auth["user"], "token": auth["api_key"]})

    @app.get("/api/auth/me")
    @login_required
    def me() -> Any:
        return jsonify({"user": current_user()})

    @app.post("/api/auth/logout")
    def logout() -> Any:
        session.clear()
        return jsonify({"message": "Logged out successfully"})

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @app.get("/api/users")
    @admin_required
    def list_users() -> Any:
        return jsonify(system.list_users())

    @app.get("/api/users/<int:user_id>")
    @login_required
    def get_user(user_id: int) -> Any:
        return jsonify(system.get_user(user_id, viewer=current_user()))

    @app.patch("/api/users/<int:user_id>")
    @login_required
    def update_user(user_id: int) -> Any:
        data = _payload()
        changes: dict[str, Any] = {
            "first_name": data.get("firstName"),
            "last_name": data.get("lastName"),
        }
        if "phone" in data:
            changes["phone"] = data["phone"]
        return jsonify(system.update_user(user_id, viewer=current_user(), **changes))

    @app.delete("/api/users/<int:user_id>")
    @admin_required
    def delete_user(user_id: int) -> Any:
        system.delete_user(user_id)
        return jsonify({"message": "User deleted successfully"})

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------
    @app.get("/api/invitations")
    @admin_required
    def list_invitations() -> Any:
        return jsonify(system.list_invitations())

    @app.post("/api/invitations")
    @admin_required
    def create_invitation() -> Any:
        invitation = system.create_invitation(
            email=_payload().get("email", ""), created_by=current_user()["id"]
        )
        return jsonify(invitation), 201

    @app.delete("/api/invitations/<int:invitation_id>")
    @admin_required
    def delete_invitation(invitation_id: int) -> Any:
        system.delete_invitation(invitation_id)
        return jsonify({"message": "Invitation deleted successfully"})

    @app.get("/api/invitations/validate/<token>")
    def validate_invitation(token: str) -> Any:
        return jsonify(system.validate_invitation(token))

    # ------------------------------------------------------------------
    # Dogs
    # ------------------------------------------------------------------
    @app.get("/api/dogs")
    @login_required
    def list_dogs() -> Any:
        return jsonify(system.list_dogs(owner_id=_int_arg("ownerId"), viewer=current_user()))

    @app.get("/api/dogs/<int:dog_id>")
    @login_required
    def get_dog(dog_id: int) -> Any:
        return jsonify(system.get_dog(dog_id, viewer=current_user()))

    @app.post("/api/dogs")
    @admin_required
    def create_dog() -> Any:
        data = _payload()
        fields = {
            column: data[key] for key, column in DOG_PAYLOAD_FIELDS.items() if key in data
        }
        if "owner_id" not in fields:
            raise ValidationError("ownerId is required")
        return jsonify(system.create_dog(**fields)), 201

    @app.patch("/api/dogs/<int:dog_id>")
    @admin_required
    def update_dog(dog_id: int) -> Any:
        data = _payload()
        fields = {
            column: data[key] for key, column in DOG_PAYLOAD_FIELDS.items() if key in data
        }
        return jsonify(system.update_dog(dog_id, **fields))

    @app.delete("/api/dogs/<int:dog_id>")
    @admin_required
    def delete_dog(dog_id: int) -> Any:
        system.delete_dog(dog_id)
        return jsonify({"message": "Dog deleted successfully"})

    # ------------------------------------------------------------------
    # Rates (append-only: no in-place amend)
    # ------------------------------------------------------------------
    @app.get("/api/rates")
    @login_required
    def list_rates() -> Any:
        return jsonify(system.list_rates(dog_id=_int_arg("dogId"), viewer=current_user()))

    @app.post("/api/rates")
    @admin_required
    def create_rate() -> Any:
        data = _payload()
        if data.get("dogId") is None:
            raise ValidationError("dogId is required")
        rate = system.create_rate(
            dog_id=data["dogId"],
            hourly_rate=data.get("hourlyRate"),
            effective_from=data.get("effectiveFrom"),
        )
        return jsonify(rate), 201

    @app.delete("/api/rates/<int:rate_id>")
    @admin_required
    def delete_rate(rate_id: int) -> Any:
        system.delete_rate(rate_id)
        return jsonify({"message": "Rate deleted successfully"})

    # ------------------------------------------------------------------
    # Walks
    # ------------------------------------------------------------------
    @app.get("/api/walks")
    @login_required
    def list_walks() -> Any:
        return jsonify(
            system.list_walks(
                start_date=request.args.get("startDate"),
                end_date=request.args.get("endDate"),
                dog_id=_int_arg("dogId"),
                viewer=current_user(),
            )
        )

    @app.get("/api/walks/<int:walk_id>")
    @login_required
    def get_walk(walk_id: int) -> Any:
        return jsonify(system.get_walk(walk_id, viewer=current_user()))

    @app.post("/api/walks")
    @admin_required
    def create_walk() -> Any:
        data = _payload()
        walk = system.create_walk(
            date=data.get("date"),
            dog_ids=data.get("dogIds"),
            admin_id=current_user()["id"],
            notes=data.get("notes"),
        )
        return jsonify(walk), 201

    @app.patch("/api/walks/<int:walk_id>")
    @admin_required
    def update_walk(walk_id: int) -> Any:
        data = _payload()
        if any(key in data for key in ("status", "startTime", "endTime")):
            raise ValidationError("Use the start, end and cancel actions to change a walk's status")
        changes: dict[str, Any] = {"date": data.get("date"), "dog_ids": data.get("dogIds")}
        if "notes" in data:
            changes["notes"] = data["notes"]
        return jsonify(system.update_walk(walk_id, **changes))

    @app.post("/api/walks/<int:walk_id>/start")
    @admin_required
    def start_walk(walk_id: int) -> Any:
        return jsonify(system.start_walk(walk_id))

    @app.post("/api/walks/<int:walk_id>/end")
    @admin_required
    def end_walk(walk_id: int) -> Any:
        return jsonify(system.end_walk(walk_id))

    @app.post("/api/walks/<int:walk_id>/cancel")
    @admin_required
    def cancel_walk(walk_id: int) -> Any:
        return jsonify(system.cancel_walk(walk_id))

    @app.patch("/api/walks/<int:walk_id>/attendance/<int:dog_id>")
    @admin_required
    def update_attendance(walk_id: int, dog_id: int) -> Any:
        return jsonify(system.toggle_attendance(walk_id, dog_id, _payload().get("attended")))

    @app.delete("/api/walks/<int:walk_id>")
    @admin_required
    def delete_walk(walk_id: int) -> Any:
        system.delete_walk(walk_id)
        return jsonify({"message": "Walk deleted successfully"})

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    @app.post("/api/billing/report")
    @admin_required
    def billing_report() -> Any:
        return jsonify(system.billing_report(_payload()))

    @app.post("/api/billing/export/csv")
    @admin_required
    def billing_export_csv() -> Any:
        filename, text = system.export_billing_csv(_payload(), locale=request.args.get("locale"))
        return Response(
            text,
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    # ------------------------------------------------------------------
    # Command line
    # ------------------------------------------------------------------
    @app.cli.command("create-admin")
    @click.option("--email", required=True)
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--first-name", default="Admin", show_default=True)
    @click.option("--last-name", default="User", show_default=True)
    @click.option("--phone", default=None)
    def create_admin_command(
        email: str, password: str, first_name: str, last_name: str, phone: str | None
    ) -> None:
        """Create an administrator account."""
        try:
            user = system.create_admin(
                email=email,
                password=password,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
        except DogWalkingError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Created admin {user['email']} (id {user['id']})")

    @app.cli.command("seed")
    def seed_command() -> None:
        """Load the demo admin, owner, dogs, rates and walks."""
        seeded = seed_demo_data(system)
        if seeded is None:
            click.echo("Demo data already present; nothing to do.")
            return
        click.echo(
            f"Seeded {len(seeded['dogs'])} dogs and {len(seeded['walks'])} walks.\n"
            f"Admin: {DEMO_ADMIN['email']} / {DEMO_ADMIN['password']}\n"
            f"Owner: {DEMO_OWNER['email']} / {DEMO_OWNER['password']}"
        )

    return app


__all__ = ["create_app"]
