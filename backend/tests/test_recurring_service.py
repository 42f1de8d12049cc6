import os
import tempfile
import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, insert, select

from backend import recurring_service
from backend.categories import ensure_default_categories
from backend.errors import ForbiddenError, NotFoundError
from backend.recurrence import Schedule
from backend.recurring_processor import process_due_rules
from backend.recurring_service import RuleDraft
from backend.schema import (
    categories,
    expenses,
    income_categories,
    metadata,
    users,
)

TODAY = date(2024, 5, 19)


class RecurringServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "recurring.db")
        self.engine = create_engine(
            f"sqlite:///{path}", connect_args={"check_same_thread": False}
        )
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            ensure_default_categories(conn)
            self.owner_id = self._insert_user(conn, "owner@example.com")
            self.other_id = self._insert_user(conn, "other@example.com")
            self.shared_expense_id = conn.execute(
                select(categories.c.id).where(categories.c.name == "Rent")
            ).scalar_one()
            self.private_expense_id = conn.execute(
                insert(categories)
                .values(user_id=self.other_id, name="Boat")
                .returning(categories.c.id)
            ).scalar_one()
            self.income_id = conn.execute(
                insert(income_categories)
                .values(user_id=self.owner_id, name="Consulting")
                .returning(income_categories.c.id)
            ).scalar_one()

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    @staticmethod
    def _insert_user(conn, email: str) -> int:
        return conn.execute(
            insert(users).values(email=email, hashed_password="x").returning(users.c.id)
        ).scalar_one()

    def _draft(self, **overrides) -> RuleDraft:
        values = {
            "kind": "expense",
            "category_id": self.shared_expense_id,
            "amount": Decimal("1200.00"),
            "schedule": Schedule(frequency="monthly"),
            "start_date": date(2024, 1, 31),
            "description": "Rent",
        }
        values.update(overrides)
        return RuleDraft(**values)

    def _create(self, **overrides):
        with self.engine.begin() as conn:
            return recurring_service.create_rule(
                conn, self.owner_id, self._draft(**overrides), TODAY
            )

    def test_create_seeds_cursor_on_or_after_today(self) -> None:
        rule = self._create()

        self.assertTrue(rule.is_active)
        self.assertEqual(rule.kind, "expense")
        self.assertEqual(rule.schedule.day_of_month, 31)
        self.assertEqual(rule.next_occurrence, date(2024, 5, 31))
        self.assertGreaterEqual(rule.next_occurrence, rule.start_date)
        self.assertIsNone(rule.last_processed)

    def test_create_with_future_start_keeps_start_date(self) -> None:
        rule = self._create(
            schedule=Schedule(frequency="weekly", day_of_week=1),
            start_date=date(2024, 7, 4),
        )

        self.assertEqual(rule.next_occurrence, date(2024, 7, 4))

    def test_create_starting_today_is_due_today(self) -> None:
        rule = self._create(schedule=Schedule(frequency="daily"), start_date=TODAY)

        self.assertEqual(rule.next_occurrence, TODAY)

    def test_create_income_rule_with_own_category(self) -> None:
        rule = self._create(kind="income", category_id=self.income_id)

        self.assertEqual(rule.kind, "income")
        self.assertEqual(rule.category_name, "Consulting")

    def test_create_rejects_category_of_wrong_kind_or_owner(self) -> None:
        with self.assertRaises(NotFoundError):
            self._create(category_id=self.private_expense_id)
        with self.assertRaises(NotFoundError):
            self._create(kind="income", category_id=self.shared_expense_id + 1000)
        with self.assertRaises(NotFoundError):
            self._create(category_id=self.income_id + 1000)

    def test_create_rejects_invalid_input(self) -> None:
        invalid = [
            {"amount": Decimal("0")},
            {"schedule": Schedule(frequency="weekly", day_of_month=3)},
            {"schedule": Schedule(frequency="fortnightly")},
            {"end_date": date(2023, 12, 31)},
            {"kind": "transfer"},
        ]
        for overrides in invalid:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValueError):
                    self._create(**overrides)

    def test_get_rule_enforces_ownership(self) -> None:
        rule = self._create()

        with self.engine.begin() as conn:
            with self.assertRaises(ForbiddenError):
                recurring_service.get_rule(conn, self.other_id, rule.id)
            with self.assertRaises(NotFoundError):
                recurring_service.get_rule(conn, self.owner_id, rule.id + 1)

    def test_update_schedule_reseeds_cursor(self) -> None:
        rule = self._create()

        with self.engine.begin() as conn:
            updated = recurring_service.update_rule(
                conn,
                self.owner_id,
                rule.id,
                {"frequency": "weekly", "day_of_week": 5},
                TODAY,
            )

        self.assertEqual(updated.schedule.frequency, "weekly")
        self.assertIsNone(updated.schedule.day_of_month)
        # 2024-05-24 is the first Friday on or after 2024-05-19.
        self.assertEqual(updated.next_occurrence, date(2024, 5, 24))

    def test_update_amount_keeps_cursor(self) -> None:
        rule = self._create()

        with self.engine.begin() as conn:
            updated = recurring_service.update_rule(
                conn, self.owner_id, rule.id, {"amount": Decimal("1300.00")}, TODAY
            )

        self.assertEqual(updated.amount, Decimal("1300.00"))
        self.assertEqual(updated.next_occurrence, rule.next_occurrence)

    def test_update_validates_category_against_rule_kind(self) -> None:
        rule = self._create()

        with self.engine.begin() as conn:
            with self.assertRaises(NotFoundError):
                recurring_service.update_rule(
                    conn, self.owner_id, rule.id, {"category_id": self.private_expense_id}, TODAY
                )
            with self.assertRaises(ForbiddenError):
                recurring_service.update_rule(
                    conn, self.other_id, rule.id, {"amount": Decimal("1")}, TODAY
                )
            with self.assertRaises(ValueError):
                recurring_service.update_rule(
                    conn, self.owner_id, rule.id, {"end_date": date(2023, 1, 1)}, TODAY
                )

    def test_toggle_flips_flag_without_touching_cursor(self) -> None:
        rule = self._create()

        with self.engine.begin() as conn:
            paused = recurring_service.toggle_rule(conn, self.owner_id, rule.id)
            resumed = recurring_service.toggle_rule(conn, self.owner_id, rule.id)

        self.assertFalse(paused.is_active)
        self.assertTrue(resumed.is_active)
        self.assertEqual(paused.next_occurrence, rule.next_occurrence)
        self.assertEqual(resumed.next_occurrence, rule.next_occurrence)

    def test_create_with_end_date_already_passed_is_inactive(self) -> None:
        rule = self._create(start_date=date(2024, 1, 10), end_date=date(2024, 3, 1))

        with self.engine.begin() as conn:
            items = recurring_service.upcoming_rules(conn, self.owner_id, 30, TODAY)

        self.assertEqual(rule.next_occurrence, date(2024, 6, 10))
        self.assertFalse(rule.is_active)
        self.assertEqual(items, [])

    def test_update_end_date_before_cursor_deactivates(self) -> None:
        rule = self._create()
        self.assertEqual(rule.next_occurrence, date(2024, 5, 31))

        with self.engine.begin() as conn:
            updated = recurring_service.update_rule(
                conn,
                self.owner_id,
                rule.id,
                {"end_date": date(2024, 5, 20), "is_active": True},
                TODAY,
            )
            with self.assertRaises(ValueError):
                recurring_service.toggle_rule(conn, self.owner_id, rule.id)
            extended = recurring_service.update_rule(
                conn, self.owner_id, rule.id, {"end_date": date(2024, 12, 31)}, TODAY
            )
            resumed = recurring_service.toggle_rule(conn, self.owner_id, rule.id)

        self.assertFalse(updated.is_active)
        self.assertEqual(updated.next_occurrence, date(2024, 5, 31))
        self.assertFalse(extended.is_active)
        self.assertTrue(resumed.is_active)

    def test_delete_keeps_materialized_records(self) -> None:
        rule = self._create(schedule=Schedule(frequency="daily"), start_date=TODAY)
        process_due_rules(self.engine, TODAY)

        with self.engine.begin() as conn:
            recurring_service.delete_rule(conn, self.owner_id, rule.id)
            remaining = conn.execute(select(expenses)).mappings().all()
            with self.assertRaises(NotFoundError):
                recurring_service.get_rule(conn, self.owner_id, rule.id)

        self.assertEqual(len(remaining), 1)
        self.assertEqual(remaining[0]["recurring_rule_id"], rule.id)

    def test_delete_requires_ownership(self) -> None:
        rule = self._create()

        with self.engine.begin() as conn:
            with self.assertRaises(ForbiddenError):
                recurring_service.delete_rule(conn, self.other_id, rule.id)
            self.assertEqual(len(recurring_service.list_rules(conn, self.owner_id)), 1)

    def test_upcoming_filters_by_horizon_and_active_flag(self) -> None:
        soon = self._create(schedule=Schedule(frequency="daily"), start_date=date(2024, 5, 25))
        self._create(schedule=Schedule(frequency="daily"), start_date=date(2024, 7, 1))
        paused = self._create(schedule=Schedule(frequency="daily"), start_date=TODAY)
        today_rule = self._create(schedule=Schedule(frequency="weekly"), start_date=TODAY)
        with self.engine.begin() as conn:
            recurring_service.toggle_rule(conn, self.owner_id, paused.id)
            items = recurring_service.upcoming_rules(conn, self.owner_id, 30, TODAY)
            nothing = recurring_service.upcoming_rules(conn, self.other_id, 30, TODAY)

        self.assertEqual(
            [(item.rule.id, item.days_until) for item in items],
            [(today_rule.id, 0), (soon.id, 6)],
        )
        self.assertEqual(nothing, [])

    def test_upcoming_reports_overdue_rules_as_due_today(self) -> None:
        rule = self._create(schedule=Schedule(frequency="daily"), start_date=TODAY)

        with self.engine.begin() as conn:
            items = recurring_service.upcoming_rules(conn, self.owner_id, 0, date(2024, 5, 22))

        self.assertEqual([(item.rule.id, item.days_until) for item in items], [(rule.id, 0)])

    def test_upcoming_rejects_negative_horizon(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(ValueError):
                recurring_service.upcoming_rules(conn, self.owner_id, -1, TODAY)


if __name__ == "__main__":
    unittest.main()
