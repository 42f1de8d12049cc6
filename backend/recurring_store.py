from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import and_, func, insert, or_, select, update

from backend.categories import CategoryRef, category_ref
from backend.recurrence import Schedule
from backend.schema import categories, income_categories, recurring_rules

SCHEDULE_FIELDS = (
    "frequency",
    "interval_value",
    "day_of_week",
    "day_of_month",
    "month_of_year",
)


@dataclass(frozen=True)
class RecurringRule:
    id: int
    user_id: int
    category: CategoryRef
    amount: Decimal
    schedule: Schedule
    start_date: date
    next_occurrence: date
    is_active: bool
    description: Optional[str] = None
    end_date: Optional[date] = None
    last_processed: Optional[date] = None
    category_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def kind(self) -> str:
        return self.category.kind


def _rule_select():
    category_name = func.coalesce(categories.c.name, income_categories.c.name)
    joined = recurring_rules.outerjoin(
        categories,
        and_(
            recurring_rules.c.kind == "expense",
            recurring_rules.c.category_id == categories.c.id,
        ),
    ).outerjoin(
        income_categories,
        and_(
            recurring_rules.c.kind == "income",
            recurring_rules.c.category_id == income_categories.c.id,
        ),
    )
    return select(recurring_rules, category_name.label("category_name")).select_from(joined)


def _row_to_rule(row: Mapping[str, Any]) -> RecurringRule:
    return RecurringRule(
        id=row["id"],
        user_id=row["user_id"],
        category=category_ref(row["kind"], row["category_id"]),
        amount=_coerce_amount(row["amount"]),
        schedule=Schedule(
            frequency=row["frequency"],
            interval_value=row["interval_value"],
            day_of_week=row["day_of_week"],
            day_of_month=row["day_of_month"],
            month_of_year=row["month_of_year"],
        ),
        start_date=row["start_date"],
        next_occurrence=row["next_occurrence"],
        is_active=bool(row["is_active"]),
        description=row["description"],
        end_date=row["end_date"],
        last_processed=row["last_processed"],
        category_name=row.get("category_name"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def schedule_values(schedule: Schedule) -> dict:
    return {field: getattr(schedule, field) for field in SCHEDULE_FIELDS}


def insert_rule(conn, values: Mapping[str, Any]) -> RecurringRule:
    rule_id = conn.execute(
        insert(recurring_rules).values(**values).returning(recurring_rules.c.id)
    ).scalar_one()
    return fetch_rule(conn, rule_id)


def fetch_rule(conn, rule_id: int) -> RecurringRule | None:
    row = conn.execute(
        _rule_select().where(recurring_rules.c.id == rule_id)
    ).mappings().first()
    return _row_to_rule(row) if row else None


def list_rules(conn, user_id: int, kind: str | None = None) -> list[RecurringRule]:
    conditions = [recurring_rules.c.user_id == user_id]
    if kind is not None:
        conditions.append(recurring_rules.c.kind == kind)
    result = conn.execute(
        _rule_select()
        .where(*conditions)
        .order_by(recurring_rules.c.next_occurrence.asc(), recurring_rules.c.id.asc())
    )
    return [_row_to_rule(row) for row in result.mappings().all()]


def update_rule(conn, rule_id: int, values: Mapping[str, Any]) -> RecurringRule | None:
    if values:
        conn.execute(
            update(recurring_rules)
            .where(recurring_rules.c.id == rule_id)
            .values(**values, updated_at=func.now())
        )
    return fetch_rule(conn, rule_id)


def delete_rule(conn, rule_id: int) -> bool:
    result = conn.execute(recurring_rules.delete().where(recurring_rules.c.id == rule_id))
    return result.rowcount > 0


def fetch_due_rules(conn, today: date) -> list[RecurringRule]:
    result = conn.execute(
        _rule_select()
        .where(
            recurring_rules.c.is_active.is_(True),
            recurring_rules.c.next_occurrence <= today,
            or_(recurring_rules.c.end_date.is_(None), recurring_rules.c.end_date >= today),
        )
        .order_by(recurring_rules.c.next_occurrence.asc(), recurring_rules.c.id.asc())
    )
    return [_row_to_rule(row) for row in result.mappings().all()]


def advance_rule(
    conn,
    rule: RecurringRule,
    next_occurrence: date,
    is_active: bool,
    processed_on: date,
) -> bool:
    """Move the cursor only if it still holds the value ``rule`` was read with.

    Returns False when another writer advanced, paused, or removed the rule
    since it was selected.
    """
    result = conn.execute(
        update(recurring_rules)
        .where(
            recurring_rules.c.id == rule.id,
            recurring_rules.c.next_occurrence == rule.next_occurrence,
            recurring_rules.c.is_active.is_(True),
        )
        .values(
            next_occurrence=next_occurrence,
            last_processed=processed_on,
            is_active=is_active,
            updated_at=func.now(),
        )
    )
    return result.rowcount == 1


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
