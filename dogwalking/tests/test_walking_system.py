import csv
import datetime as dt
import io
import unittest
from decimal import Decimal

from dogwalking.walking.billing import BillingQuery
from dogwalking.walking.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from dogwalking.walking.seed import seed_demo_data
from dogwalking.walking.system import WalkingSystem

UTC = dt.timezone.utc


def at(day: str, hour: int, minute: int = 0) -> dt.datetime:
    return dt.datetime.combine(dt.date.fromisoformat(day), dt.time(hour, minute), tzinfo=UTC)


class WalkingSystemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = WalkingSystem()
        self.admin = self.system.create_admin(
            email="admin@dogwalking.com",
            password="admin123",
            first_name="Admin",
            last_name="User",
            phone="+49 123 456789",
        )
        self.maria = self._invite_owner("owner@example.com", "Maria", "Schmidt")
        self.jonas = self._invite_owner("jonas@example.com", "Jonas", "Weber")

        self.max = self.system.create_dog(owner_id=self.maria["id"], name="Max", breed="Golden Retriever")
        self.bella = self.system.create_dog(owner_id=self.maria["id"], name="Bella", breed="Beagle")
        self.rex = self.system.create_dog(owner_id=self.jonas["id"], name="Rex")

        self.system.create_rate(dog_id=self.max["id"], hourly_rate="20", effective_from="2024-01-01")
        self.system.create_rate(dog_id=self.max["id"], hourly_rate=25, effective_from="2024-06-01")
        self.system.create_rate(dog_id=self.bella["id"], hourly_rate="30.00", effective_from="2024-01-01")

        # 2024-05-31: Max and Rex attend for 90 minutes, Bella stays home
        self.walk1 = self._run_walk(
            "2024-05-31",
            roster=[self.max, self.bella, self.rex],
            attending=[self.max, self.rex],
            minutes=90,
        )
        # 2024-06-01: Max and Bella attend for an hour
        self.walk2 = self._run_walk(
            "2024-06-01", roster=[self.max, self.bella], attending=[self.max, self.bella], minutes=60
        )
        # 2024-06-02: still running
        walk3 = self.system.create_walk(date="2024-06-02", dog_ids=[self.max["id"]])
        self.system.toggle_attendance(walk3["id"], self.max["id"], True)
        self.system.start_walk(walk3["id"], now=at("2024-06-02", 9))
        # 2024-06-03: only scheduled
        self.system.create_walk(date="2024-06-03", dog_ids=[self.max["id"]])

        self.range = {"startDate": "2024-05-01", "endDate": "2024-06-30"}

    def tearDown(self) -> None:
        self.system.close()

    def _invite_owner(self, email: str, first_name: str, last_name: str) -> dict:
        invitation = self.system.create_invitation(email=email, created_by=self.admin["id"])
        auth = self.system.register_owner(
            token=invitation["token"],
            email=email,
            password="owner123",
            first_name=first_name,
            last_name=last_name,
        )
        return auth["user"]

    def _run_walk(self, day: str, *, roster: list, attending: list, minutes: int) -> dict:
        walk = self.system.create_walk(
            date=day, dog_ids=[dog["id"] for dog in roster], admin_id=self.admin["id"]
        )
        for dog in attending:
            self.system.toggle_attendance(walk["id"], dog["id"], True)
        start = at(day, 9)
        self.system.start_walk(walk["id"], now=start)
        return self.system.end_walk(walk["id"], now=start + dt.timedelta(minutes=minutes))

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def test_billing_report(self) -> None:
        report = self.system.billing_report(self.range)
        self.assertEqual(
            [(r["date"], r["dogName"], r["duration"], r["hourlyRate"], r["amount"]) for r in report["records"]],
            [
                ("2024-06-01", "Max", 60, "25.00", "25.00"),
                ("2024-06-01", "Bella", 60, "30.00", "30.00"),
                ("2024-05-31", "Max", 90, "20.00", "30.00"),
                ("2024-05-31", "Rex", 90, "0.00", "0.00"),
            ],
        )
        self.assertEqual(report["records"][0]["ownerName"], "Maria Schmidt")
        self.assertEqual(report["records"][3]["ownerName"], "Jonas Weber")
        self.assertEqual(
            report["summary"],
            {
                "totalRecords": 4,
                "totalDuration": 300,
                "totalAmount": "85.00",
                "startDate": "2024-05-01",
                "endDate": "2024-06-30",
            },
        )

    def test_summary_matches_records(self) -> None:
        report = self.system.billing_report(self.range)
        total = sum(Decimal(r["amount"]) for r in report["records"])
        self.assertEqual(Decimal(report["summary"]["totalAmount"]), total.quantize(Decimal("0.01")))
        self.assertEqual(
            report["summary"]["totalDuration"], sum(r["duration"] for r in report["records"])
        )

    def test_date_range_is_inclusive(self) -> None:
        report = self.system.billing_report({"startDate": "2024-06-01", "endDate": "2024-06-01"})
        self.assertEqual({r["date"] for r in report["records"]}, {"2024-06-01"})
        self.assertEqual(report["summary"]["totalRecords"], 2)
        report = self.system.billing_report({"startDate": "2024-06-02", "endDate": "2024-12-31"})
        self.assertEqual(report["records"], [])

    def test_filters(self) -> None:
        by_dog = self.system.billing_report({**self.range, "dogId": self.max["id"]})
        self.assertEqual({r["dogId"] for r in by_dog["records"]}, {self.max["id"]})
        self.assertEqual(by_dog["summary"]["totalAmount"], "55.00")

        by_owner = self.system.billing_report({**self.range, "ownerId": self.jonas["id"]})
        self.assertEqual({r["ownerId"] for r in by_owner["records"]}, {self.jonas["id"]})
        self.assertEqual([r["dogName"] for r in by_owner["records"]], ["Rex"])

        query = BillingQuery(dt.date(2024, 5, 1), dt.date(2024, 6, 30), owner_id=self.maria["id"])
        self.assertEqual(self.system.billing_report(query)["summary"]["totalRecords"], 3)

    def test_incomplete_or_absent_attendance_is_never_billed(self) -> None:
        report = self.system.billing_report({"startDate": "2000-01-01", "endDate": "2100-12-31"})
        dates = [(r["date"], r["dogName"]) for r in report["records"]]
        self.assertNotIn(("2024-05-31", "Bella"), dates)
        self.assertNotIn("2024-06-02", {date for date, _ in dates})
        self.assertNotIn("2024-06-03", {date for date, _ in dates})

    def test_csv_matches_report(self) -> None:
        report = self.system.billing_report(self.range)
        filename, text = self.system.export_billing_csv(self.range)
        self.assertEqual(filename, "billing-2024-05-01-2024-06-30.csv")
        rows = list(csv.reader(io.StringIO(text)))
        self.assertEqual(rows[0], ["Datum", "Hund", "Besitzer", "Dauer (Min)", "Stundensatz (€)", "Betrag (€)"])
        self.assertEqual(
            rows[1:],
            [
                [r["date"], r["dogName"], r["ownerName"], str(r["duration"]), r["hourlyRate"], r["amount"]]
                for r in report["records"]
            ],
        )
        _, english = self.system.export_billing_csv(self.range, locale="en")
        self.assertTrue(english.startswith("Date,Dog,Owner,"))

    def test_invalid_billing_range(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.billing_report({"startDate": "2024-06-30", "endDate": "2024-06-01"})
        with self.assertRaises(ValidationError):
            self.system.export_billing_csv({"endDate": "2024-06-01"})

    def test_rates_added_later_apply_to_past_walks_by_date_only(self) -> None:
        self.system.create_rate(dog_id=self.rex["id"], hourly_rate="12.00", effective_from="2024-05-31")
        report = self.system.billing_report({**self.range, "dogId": self.rex["id"]})
        self.assertEqual(report["records"][0]["hourlyRate"], "12.00")
        self.assertEqual(report["records"][0]["amount"], "18.00")

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------
    def test_rate_history(self) -> None:
        rates = self.system.list_rates(dog_id=self.max["id"])
        self.assertEqual([r["hourly_rate"] for r in rates], ["25.00", "20.00"])
        self.assertEqual(self.system.current_rate(self.max["id"], "2024-05-15")["hourly_rate"], "20.00")
        self.assertIsNone(self.system.current_rate(self.rex["id"], "2024-05-15"))

        newer = self.system.create_rate(dog_id=self.max["id"], hourly_rate="27.50", effective_from="2024-06-01")
        self.assertEqual(self.system.current_rate(self.max["id"], "2024-06-01")["id"], newer["id"])
        self.system.delete_rate(newer["id"])
        self.assertEqual(self.system.current_rate(self.max["id"], "2024-06-01")["hourly_rate"], "25.00")

    def test_rate_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.create_rate(dog_id=self.max["id"], hourly_rate="abc", effective_from="2024-01-01")
        with self.assertRaises(ValidationError):
            self.system.create_rate(dog_id=self.max["id"], hourly_rate="-5", effective_from="2024-01-01")
        with self.assertRaises(ValidationError):
            self.system.create_rate(dog_id=self.max["id"], hourly_rate="12.345", effective_from="2024-01-01")
        with self.assertRaises(ValidationError):
            self.system.create_rate(dog_id=self.max["id"], hourly_rate="5", effective_from="tomorrow")
        self.assertEqual(len(self.system.list_rates(dog_id=self.max["id"])), 2)
        with self.assertRaises(NotFoundError):
            self.system.create_rate(dog_id=999, hourly_rate="5", effective_from="2024-01-01")
        with self.assertRaises(NotFoundError):
            self.system.delete_rate(999)

    def test_owner_only_sees_own_rates(self) -> None:
        rates = self.system.list_rates(viewer=self.jonas)
        self.assertEqual(rates, [])
        rates = self.system.list_rates(viewer=self.maria)
        self.assertEqual({r["dog_id"] for r in rates}, {self.max["id"], self.bella["id"]})

    # ------------------------------------------------------------------
    # Dogs
    # ------------------------------------------------------------------
    def test_dog_access(self) -> None:
        self.assertEqual(
            [dog["name"] for dog in self.system.list_dogs(viewer=self.maria)], ["Bella", "Max"]
        )
        # owners cannot widen their view with an explicit owner filter
        self.assertEqual(
            [dog["name"] for dog in self.system.list_dogs(owner_id=self.maria["id"], viewer=self.jonas)],
            ["Rex"],
        )
        self.assertEqual(len(self.system.list_dogs()), 3)
        dog = self.system.get_dog(self.max["id"], viewer=self.maria)
        self.assertEqual([r["hourly_rate"] for r in dog["rates"]], ["25.00", "20.00"])
        with self.assertRaises(AuthorizationError):
            self.system.get_dog(self.max["id"], viewer=self.jonas)

    def test_list_dogs_includes_rate_in_effect(self) -> None:
        dogs = {dog["name"]: dog for dog in self.system.list_dogs(on_date="2024-05-01")}
        self.assertEqual(dogs["Max"]["current_rate"]["hourly_rate"], "20.00")
        self.assertIsNone(dogs["Rex"]["current_rate"])

    def test_dog_age_and_weight_are_validated(self) -> None:
        dog = self.system.create_dog(owner_id=self.maria["id"], name="Luna", age="4", weight="12.5")
        self.assertEqual(dog["age"], 4)
        self.assertEqual(dog["weight"], 12.5)
        for age in ("abc", -1, 2.5, True):
            with self.subTest(age=age):
                with self.assertRaises(ValidationError):
                    self.system.create_dog(owner_id=self.maria["id"], name="Nala", age=age)
        for weight in ("heavy", 0, -3, "inf", False):
            with self.subTest(weight=weight):
                with self.assertRaises(ValidationError):
                    self.system.update_dog(dog["id"], weight=weight)
        with self.assertRaises(ValidationError):
            self.system.update_dog(dog["id"], age="three")
        unchanged = self.system.get_dog(dog["id"])
        self.assertEqual((unchanged["age"], unchanged["weight"]), (4, 12.5))
        cleared = self.system.update_dog(dog["id"], age=None, weight="")
        self.assertIsNone(cleared["age"])
        self.assertIsNone(cleared["weight"])
        self.assertEqual(len(self.system.list_dogs(owner_id=self.maria["id"])), 3)

    def test_update_and_delete_dog(self) -> None:
        dog = self.system.update_dog(self.rex["id"], breed="Terrier", age=4, owner_id=self.maria["id"])
        self.assertEqual(dog["breed"], "Terrier")
        self.assertEqual(dog["owner_id"], self.maria["id"])
        with self.assertRaises(ValidationError):
            self.system.update_dog(self.rex["id"], name=" ")
        with self.assertRaises(ValidationError):
            self.system.update_dog(self.rex["id"], colour="brown")

        self.system.delete_dog(self.max["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_dog(self.max["id"])
        self.assertEqual(self.system.list_rates(dog_id=self.max["id"]), [])
        report = self.system.billing_report(self.range)
        self.assertNotIn("Max", {r["dogName"] for r in report["records"]})

    # ------------------------------------------------------------------
    # Walk visibility
    # ------------------------------------------------------------------
    def test_owner_walk_visibility(self) -> None:
        jonas_walks = self.system.list_walks(viewer=self.jonas)
        self.assertEqual([walk["id"] for walk in jonas_walks], [self.walk1["id"]])
        self.assertEqual(len(self.system.list_walks(viewer=self.maria)), 4)
        with self.assertRaises(AuthorizationError):
            self.system.get_walk(self.walk2["id"], viewer=self.jonas)
        self.assertEqual(self.system.get_walk(self.walk1["id"], viewer=self.jonas)["id"], self.walk1["id"])

    def test_list_walks_filters(self) -> None:
        walks = self.system.list_walks(start_date="2024-06-01", end_date="2024-06-02")
        self.assertEqual([walk["date"] for walk in walks], ["2024-06-02", "2024-06-01"])
        walks = self.system.list_walks(dog_id=self.rex["id"])
        self.assertEqual([walk["id"] for walk in walks], [self.walk1["id"]])

    # ------------------------------------------------------------------
    # Users & invitations
    # ------------------------------------------------------------------
    def test_authentication(self) -> None:
        auth = self.system.authenticate(email="OWNER@example.com", password="owner123")
        self.assertEqual(auth["user"]["id"], self.maria["id"])
        self.assertEqual(auth["user"]["role"], "OWNER")
        self.assertNotIn("password_hash", auth["user"])
        self.assertEqual(self.system.user_for_api_key(auth["api_key"])["id"], self.maria["id"])
        with self.assertRaises(AuthenticationError):
            self.system.authenticate(email="owner@example.com", password="wrong")
        with self.assertRaises(AuthenticationError):
            self.system.user_for_api_key("nope")

    def test_invitation_rules(self) -> None:
        now = dt.datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        with self.assertRaises(ValidationError):
            self.system.create_invitation(email="not-an-email", created_by=self.admin["id"])
        with self.assertRaises(ConflictError):
            self.system.create_invitation(email="owner@example.com", created_by=self.admin["id"])

        invitation = self.system.create_invitation(
            email="lena@example.com", created_by=self.admin["id"], now=now
        )
        self.assertEqual(len(invitation["token"]), 64)
        with self.assertRaises(ConflictError):
            self.system.create_invitation(email="lena@example.com", created_by=self.admin["id"], now=now)
        self.assertEqual(
            self.system.validate_invitation(invitation["token"], now=now + dt.timedelta(days=6)),
            {"valid": True, "email": "lena@example.com"},
        )
        with self.assertRaises(ValidationError):
            self.system.validate_invitation(invitation["token"], now=now + dt.timedelta(days=8))
        with self.assertRaises(NotFoundError):
            self.system.validate_invitation("0" * 64)

        with self.assertRaises(ValidationError):
            self.system.register_owner(
                token=invitation["token"],
                email="someone-else@example.com",
                password="pw",
                first_name="Lena",
                last_name="Koch",
                now=now,
            )
        auth = self.system.register_owner(
            token=invitation["token"],
            email="lena@example.com",
            password="pw",
            first_name="Lena",
            last_name="Koch",
            now=now,
        )
        self.assertEqual(auth["user"]["role"], "OWNER")
        with self.assertRaises(ValidationError):
            self.system.validate_invitation(invitation["token"], now=now)

    def test_expired_invitation_can_be_reissued(self) -> None:
        now = dt.datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        self.system.create_invitation(email="late@example.com", created_by=self.admin["id"], now=now)
        later = self.system.create_invitation(
            email="late@example.com", created_by=self.admin["id"], now=now + dt.timedelta(days=10)
        )
        self.assertEqual(len(self.system.list_invitations()), 4)
        self.system.delete_invitation(later["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_invitation(later["id"])

    def test_user_management(self) -> None:
        users = {user["email"]: user for user in self.system.list_users()}
        self.assertEqual(users["owner@example.com"]["dog_count"], 2)
        self.assertEqual(users["admin@dogwalking.com"]["dog_count"], 0)

        updated = self.system.update_user(self.maria["id"], viewer=self.maria, phone="+49 987 654321")
        self.assertEqual(updated["phone"], "+49 987 654321")
        self.assertEqual(updated["first_name"], "Maria")
        with self.assertRaises(AuthorizationError):
            self.system.update_user(self.maria["id"], viewer=self.jonas, first_name="Mallory")
        with self.assertRaises(AuthorizationError):
            self.system.get_user(self.maria["id"], viewer=self.jonas)
        self.assertEqual(len(self.system.get_user(self.maria["id"])["dogs"]), 2)

        self.system.delete_user(self.jonas["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_dog(self.rex["id"])
        with self.assertRaises(ConflictError):
            self.system.create_owner(
                email="owner@example.com", password="x", first_name="Dup", last_name="Licate"
            )

    def test_schema_version(self) -> None:
        self.assertEqual(self.system.schema_version(), 1)


class DemoDataTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = WalkingSystem()

    def tearDown(self) -> None:
        self.system.close()

    def test_seed_demo_data(self) -> None:
        seeded = seed_demo_data(self.system, today=dt.date(2024, 6, 10))
        self.assertEqual(seeded["admin"]["role"], "ADMIN")
        self.assertEqual(seeded["owner"]["email"], "owner@example.com")

        walks = self.system.list_walks()
        self.assertEqual(
            [(walk["date"], walk["status"]) for walk in walks],
            [("2024-06-11", "SCHEDULED"), ("2024-06-10", "SCHEDULED"), ("2024-06-09", "COMPLETED")],
        )
        report = self.system.billing_report({"startDate": "2024-06-01", "endDate": "2024-06-30"})
        self.assertEqual(
            [(r["dogName"], r["duration"], r["amount"]) for r in report["records"]],
            [("Max", 90, "37.50"), ("Bella", 90, "33.75")],
        )
        auth = self.system.authenticate(email="owner@example.com", password="owner123")
        self.assertEqual(auth["user"]["first_name"], "Maria")

        self.assertIsNone(seed_demo_data(self.system, today=dt.date(2024, 6, 10)))
        self.assertEqual(len(self.system.list_walks()), 3)


if __name__ == "__main__":
    unittest.main()
