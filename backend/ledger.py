from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import insert, select

from backend.categories import CategoryRef, ExpenseCategory, IncomeCategory
from backend.schema import expenses, incomes


@dataclass(frozen=True)
class LedgerEntry:
    user_id: int
    category: CategoryRef
    amount: Decimal
    entry_date: date
    description: Optional[str] = None
    recurring_rule_id: Optional[int] = None


class LedgerAppender(Protocol):
    def __call__(self, conn, entry: LedgerEntry) -> int: ...


def append_ledger_record(conn, entry: LedgerEntry) -> int:
    """Create one dated expense or income record and return its id.

    A second record for the same (recurring_rule_id, date) pair violates the
    ledger's unique constraint and raises ``IntegrityError``.
    """
    if isinstance(entry.category, ExpenseCategory):
        stmt = insert(expenses).values(
            user_id=entry.user_id,
            category_id=entry.category.id,
            amount=entry.amount,
            description=entry.description,
            expense_date=entry.entry_date,
            recurring_rule_id=entry.recurring_rule_id,
        ).returning(expenses.c.id)
    elif isinstance(entry.category, IncomeCategory):
        stmt = insert(incomes).values(
            user_id=entry.user_id,
            category_id=entry.category.id,
            amount=entry.amount,
            description=entry.description,
            income_date=entry.entry_date,
            is_recurring=entry.recurring_rule_id is not None,
            recurring_rule_id=entry.recurring_rule_id,
        ).returning(incomes.c.id)
    else:
        raise TypeError(f"Unsupported category reference: {entry.category!r}")
    return conn.execute(stmt).scalar_one()


def list_expenses(
    conn,
    user_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[dict]:
    conditions = [expenses.c.user_id == user_id]
    if start_date is not None:
        conditions.append(expenses.c.expense_date >= start_date)
    if end_date is not None:
        conditions.append(expenses.c.expense_date <= end_date)
    result = conn.execute(
        select(expenses)
        .where(*conditions)
        .order_by(expenses.c.expense_date.desc(), expenses.c.id.desc())
    )
    return [dict(row) for row in result.mappings().all()]


def list_incomes(
    conn,
    user_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[dict]:
    conditions = [incomes.c.user_id == user_id]
    if start_date is not None:
        conditions.append(incomes.c.income_date >= start_date)
    if end_date is not None:
        conditions.append(incomes.c.income_date <= end_date)
    result = conn.execute(
        select(incomes)
        .where(*conditions)
        .order_by(incomes.c.income_date.desc(), incomes.c.id.desc())
    )
    return [dict(row) for row in result.mappings().all()]


def fetch_ledger_record(conn, category: CategoryRef, record_id: int) -> dict:
    table = expenses if isinstance(category, ExpenseCategory) else incomes
    row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
    return dict(row)


def occurrence_recorded(
    conn, category: CategoryRef, recurring_rule_id: int, entry_date: date
) -> bool:
    """Whether the rule already has a ledger record dated ``entry_date``."""
    if isinstance(category, ExpenseCategory):
        table, date_column = expenses, expenses.c.expense_date
    else:
        table, date_column = incomes, incomes.c.income_date
    row = conn.execute(
        select(table.c.id).where(
            table.c.recurring_rule_id == recurring_rule_id,
            date_column == entry_date,
        )
    ).first()
    return row is not None
