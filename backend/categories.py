from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Union

from sqlalchemy import Table, insert, or_, select

from backend.errors import NotFoundError
from backend.schema import categories, income_categories

DEFAULT_EXPENSE_CATEGORIES = [
    "Groceries",
    "Rent",
    "Dining",
    "Utilities",
    "Travel",
    "Subscriptions",
    "Other",
]
DEFAULT_INCOME_CATEGORIES = [
    "Salary",
    "Freelance",
    "Investments",
    "Gifts",
    "Other",
]


@dataclass(frozen=True)
class ExpenseCategory:
    id: int
    kind: ClassVar[str] = "expense"


@dataclass(frozen=True)
class IncomeCategory:
    id: int
    kind: ClassVar[str] = "income"


CategoryRef = Union[ExpenseCategory, IncomeCategory]


class CategoryKind:
    values = {"expense", "income"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Kind must be expense or income.")
        return normalized


def category_ref(kind: str, category_id: int) -> CategoryRef:
    normalized = CategoryKind.validate(kind)
    if normalized == "expense":
        return ExpenseCategory(category_id)
    return IncomeCategory(category_id)


def category_table(ref_or_kind: CategoryRef | str) -> Table:
    kind = ref_or_kind if isinstance(ref_or_kind, str) else ref_or_kind.kind
    return categories if CategoryKind.validate(kind) == "expense" else income_categories


def accessible_condition(table: Table, user_id: int):
    return or_(table.c.user_id == user_id, table.c.user_id.is_(None))


def resolve_category(conn, user_id: int, ref: CategoryRef) -> CategoryRef:
    """Check that the referenced category exists and is usable by the user."""
    table = category_table(ref)
    row = conn.execute(
        select(table.c.id).where(table.c.id == ref.id, accessible_condition(table, user_id))
    ).first()
    if not row:
        label = "Category" if ref.kind == "expense" else "Income category"
        raise NotFoundError(f"{label} not found.")
    return ref


def ensure_default_categories(conn) -> None:
    for table, names in (
        (categories, DEFAULT_EXPENSE_CATEGORIES),
        (income_categories, DEFAULT_INCOME_CATEGORIES),
    ):
        existing = conn.execute(
            select(table.c.id).where(table.c.is_default.is_(True)).limit(1)
        ).first()
        if existing:
            continue
        conn.execute(
            insert(table),
            [{"user_id": None, "name": name, "is_default": True} for name in names],
        )


def list_categories(conn, user_id: int, kind: str) -> list[dict]:
    table = category_table(kind)
    result = conn.execute(
        select(table)
        .where(accessible_condition(table, user_id))
        .order_by(table.c.is_default.desc(), table.c.name.asc(), table.c.id.asc())
    )
    return [dict(row) for row in result.mappings().all()]


def create_category(conn, user_id: int, kind: str, name: str) -> dict:
    table = category_table(kind)
    row = conn.execute(
        insert(table)
        .values(user_id=user_id, name=name, is_default=False)
        .returning(*table.c)
    ).mappings().first()
    return dict(row)
