from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from backend import recurring_store
from backend.categories import category_ref, resolve_category
from backend.errors import ForbiddenError, NotFoundError
from backend.recurrence import (
    Schedule,
    default_anchors,
    first_occurrence,
    validate_schedule,
)
from backend.recurring_store import SCHEDULE_FIELDS, RecurringRule

RESEED_FIELDS = set(SCHEDULE_FIELDS) | {"start_date"}


@dataclass(frozen=True)
class RuleDraft:
    kind: str
    category_id: int
    amount: Decimal
    schedule: Schedule
    start_date: date
    end_date: Optional[date] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class UpcomingRule:
    rule: RecurringRule
    days_until: int


def get_rule(conn, user_id: int, rule_id: int) -> RecurringRule:
    rule = recurring_store.fetch_rule(conn, rule_id)
    if rule is None:
        raise NotFoundError("Recurring rule not found.")
    if rule.user_id != user_id:
        raise ForbiddenError("Not authorized to access this recurring rule.")
    return rule


def list_rules(conn, user_id: int, kind: str | None = None) -> list[RecurringRule]:
    return recurring_store.list_rules(conn, user_id, kind)


def create_rule(conn, user_id: int, draft: RuleDraft, today: date) -> RecurringRule:
    if draft.amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    _check_bounds(draft.start_date, draft.end_date)
    schedule = default_anchors(validate_schedule(draft.schedule), draft.start_date)
    category = resolve_category(conn, user_id, category_ref(draft.kind, draft.category_id))

    cursor = first_occurrence(schedule, draft.start_date, today)
    values = {
        "user_id": user_id,
        "kind": category.kind,
        "category_id": category.id,
        "amount": draft.amount,
        "description": draft.description,
        "start_date": draft.start_date,
        "end_date": draft.end_date,
        "next_occurrence": cursor,
        "is_active": _within_end(cursor, draft.end_date),
        **recurring_store.schedule_values(schedule),
    }
    return recurring_store.insert_rule(conn, values)


def update_rule(
    conn,
    user_id: int,
    rule_id: int,
    changes: Mapping[str, Any],
    today: date,
) -> RecurringRule:
    """Apply a partial update; schedule changes re-seed the cursor."""
    rule = get_rule(conn, user_id, rule_id)
    values: dict[str, Any] = {}

    if "category_id" in changes and changes["category_id"] is not None:
        category = resolve_category(
            conn, user_id, category_ref(rule.kind, changes["category_id"])
        )
        values["category_id"] = category.id
    if "amount" in changes and changes["amount"] is not None:
        if changes["amount"] <= 0:
            raise ValueError("Amount must be greater than zero.")
        values["amount"] = changes["amount"]
    if "description" in changes:
        values["description"] = changes["description"]
    if "is_active" in changes and changes["is_active"] is not None:
        values["is_active"] = changes["is_active"]

    start_date = changes.get("start_date") or rule.start_date
    end_date = changes["end_date"] if "end_date" in changes else rule.end_date
    _check_bounds(start_date, end_date)
    values["end_date"] = end_date

    if RESEED_FIELDS & set(changes):
        schedule_changes = {name: changes[name] for name in SCHEDULE_FIELDS if name in changes}
        for required in ("frequency", "interval_value"):
            if schedule_changes.get(required, "") is None:
                del schedule_changes[required]
        base = rule.schedule
        if "frequency" in schedule_changes:
            # Anchors of the old frequency do not carry over to a new one.
            base = Schedule(frequency=base.frequency, interval_value=base.interval_value)
        schedule = default_anchors(
            validate_schedule(replace(base, **schedule_changes)), start_date
        )
        values.update(recurring_store.schedule_values(schedule))
        values["start_date"] = start_date
        values["next_occurrence"] = first_occurrence(schedule, start_date, today)

    cursor = values.get("next_occurrence", rule.next_occurrence)
    if not _within_end(cursor, end_date):
        values["is_active"] = False

    return recurring_store.update_rule(conn, rule.id, values)


def toggle_rule(conn, user_id: int, rule_id: int) -> RecurringRule:
    rule = get_rule(conn, user_id, rule_id)
    if not rule.is_active and not _within_end(rule.next_occurrence, rule.end_date):
        raise ValueError("Rule is past its end date; extend the end date first.")
    return recurring_store.update_rule(conn, rule.id, {"is_active": not rule.is_active})


def delete_rule(conn, user_id: int, rule_id: int) -> None:
    rule = get_rule(conn, user_id, rule_id)
    recurring_store.delete_rule(conn, rule.id)


def upcoming_rules(
    conn, user_id: int, horizon_days: int, today: date
) -> list[UpcomingRule]:
    if horizon_days < 0:
        raise ValueError("Horizon must be zero or more days.")
    horizon = today + timedelta(days=horizon_days)
    return [
        UpcomingRule(rule=rule, days_until=max((rule.next_occurrence - today).days, 0))
        for rule in recurring_store.list_rules(conn, user_id)
        if rule.is_active and rule.next_occurrence <= horizon
    ]


def _check_bounds(start_date: date, end_date: date | None) -> None:
    if end_date is not None and end_date < start_date:
        raise ValueError("End date must be on or after start date.")


def _within_end(cursor: date, end_date: date | None) -> bool:
    return end_date is None or cursor <= end_date
