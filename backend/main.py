import logging
import os
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine, insert, select
from sqlalchemy.exc import IntegrityError

from backend import recurring_service
from backend.categories import (
    CategoryKind,
    category_ref,
    create_category,
    ensure_default_categories,
    list_categories,
    resolve_category,
)
from backend.errors import ForbiddenError, NotFoundError
from backend.ledger import (
    LedgerEntry,
    append_ledger_record,
    fetch_ledger_record,
    list_expenses,
    list_incomes,
)
from backend.recurrence import Schedule
from backend.recurring_processor import process_due_rules
from backend.recurring_service import RuleDraft, UpcomingRule
from backend.recurring_store import RecurringRule
from backend.schema import metadata, users
from backend.settings import get_database_url, get_rule_timeout

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = get_database_url()
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)

RULE_TIMEOUT_SECONDS = get_rule_timeout()


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        ensure_default_categories(conn)


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int | None = None
    name: str
    is_default: bool
    created_at: datetime | None = None


def _clean_description(value: str | None) -> str | None:
    value = value.strip() if value else None
    if value and len(value) > 500:
        raise ValueError("Description cannot exceed 500 characters.")
    return value or None


class LedgerPayload(BaseModel):
    category_id: int
    amount: Decimal
    date: date
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "LedgerPayload") -> "LedgerPayload":
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.description = _clean_description(payload.description)
        return payload


class ExpenseResponse(BaseModel):
    id: int
    user_id: int
    category_id: int
    amount: Decimal
    description: str | None = None
    expense_date: date
    recurring_rule_id: int | None = None
    created_at: datetime | None = None


class IncomeResponse(BaseModel):
    id: int
    user_id: int
    category_id: int | None = None
    amount: Decimal
    description: str | None = None
    income_date: date
    is_recurring: bool
    recurring_rule_id: int | None = None
    created_at: datetime | None = None


class RecurringRulePayload(BaseModel):
    kind: str
    category_id: int
    amount: Decimal
    description: str | None = None
    frequency: str
    interval_value: int | None = 1
    day_of_week: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    start_date: date
    end_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "RecurringRulePayload") -> RuleDraft:
        if payload.amount <= 0:
            raise ValueError("Recurring rule amount must be greater than zero.")
        return RuleDraft(
            kind=CategoryKind.validate(payload.kind),
            category_id=payload.category_id,
            amount=payload.amount,
            schedule=Schedule(
                frequency=payload.frequency,
                interval_value=payload.interval_value or 1,
                day_of_week=payload.day_of_week,
                day_of_month=payload.day_of_month,
                month_of_year=payload.month_of_year,
            ),
            start_date=payload.start_date,
            end_date=payload.end_date,
            description=_clean_description(payload.description),
        )


class RecurringRuleUpdatePayload(BaseModel):
    category_id: int | None = None
    amount: Decimal | None = None
    description: str | None = None
    frequency: str | None = None
    interval_value: int | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_active: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "RecurringRuleUpdatePayload") -> dict:
        changes = payload.model_dump(exclude_unset=True)
        if "description" in changes:
            changes["description"] = _clean_description(changes["description"])
        if changes.get("start_date", "") is None:
            raise ValueError("Start date cannot be cleared.")
        return changes


class RecurringRuleResponse(BaseModel):
    id: int
    user_id: int
    kind: str
    category_id: int
    category_name: str | None = None
    amount: Decimal
    description: str | None = None
    frequency: str
    interval_value: int
    day_of_week: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    start_date: date
    end_date: date | None = None
    next_occurrence: date
    last_processed: date | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UpcomingRecurringResponse(RecurringRuleResponse):
    days_until: int


class ProcessFailureResponse(BaseModel):
    rule_id: int
    kind: str
    reason: str


class ProcessResultResponse(BaseModel):
    scanned: int
    materialized: int
    expenses: int
    incomes: int
    failures: list[ProcessFailureResponse]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def rule_response(rule: RecurringRule) -> RecurringRuleResponse:
    return RecurringRuleResponse(
        id=rule.id,
        user_id=rule.user_id,
        kind=rule.kind,
        category_id=rule.category.id,
        category_name=rule.category_name,
        amount=rule.amount,
        description=rule.description,
        frequency=rule.schedule.frequency,
        interval_value=rule.schedule.interval_value,
        day_of_week=rule.schedule.day_of_week,
        day_of_month=rule.schedule.day_of_month,
        month_of_year=rule.schedule.month_of_year,
        start_date=rule.start_date,
        end_date=rule.end_date,
        next_occurrence=rule.next_occurrence,
        last_processed=rule.last_processed,
        is_active=rule.is_active,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def upcoming_response(item: UpcomingRule) -> UpcomingRecurringResponse:
    return UpcomingRecurringResponse(
        **rule_response(item.rule).model_dump(),
        days_until=item.days_until,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


def _list_categories(kind: str, x_user_id: str | None) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = list_categories(conn, user_id, kind)
    return [CategoryResponse(**row) for row in rows]


def _create_category(
    kind: str, payload: CategoryPayload, x_user_id: str | None
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        with engine.begin() as conn:
            row = create_category(conn, user_id, kind, payload.name)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(**row)


@app.get("/categories", response_model=list[CategoryResponse])
def list_expense_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    return _list_categories("expense", x_user_id)


@app.post("/categories", response_model=CategoryResponse)
def create_expense_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    return _create_category("expense", payload, x_user_id)


@app.get("/income-categories", response_model=list[CategoryResponse])
def list_income_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    return _list_categories("income", x_user_id)


@app.post("/income-categories", response_model=CategoryResponse)
def create_income_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    return _create_category("income", payload, x_user_id)


def _create_ledger_record(kind: str, payload: LedgerPayload, user_id: int) -> dict:
    try:
        payload = LedgerPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        try:
            category = resolve_category(conn, user_id, category_ref(kind, payload.category_id))
        except NotFoundError as exc:
            raise http_error(exc) from exc
        record_id = append_ledger_record(
            conn,
            LedgerEntry(
                user_id=user_id,
                category=category,
                amount=payload.amount,
                entry_date=payload.date,
                description=payload.description,
            ),
        )
        return fetch_ledger_record(conn, category, record_id)


@app.get("/expenses", response_model=list[ExpenseResponse])
def get_expenses(
    start_date: date | None = None,
    end_date: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExpenseResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = list_expenses(conn, user_id, start_date, end_date)
    return [ExpenseResponse(**row) for row in rows]


@app.post("/expenses", response_model=ExpenseResponse)
def create_expense(
    payload: LedgerPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    return ExpenseResponse(**_create_ledger_record("expense", payload, user_id))


@app.get("/incomes", response_model=list[IncomeResponse])
def get_incomes(
    start_date: date | None = None,
    end_date: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[IncomeResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = list_incomes(conn, user_id, start_date, end_date)
    return [IncomeResponse(**row) for row in rows]


@app.post("/incomes", response_model=IncomeResponse)
def create_income(
    payload: LedgerPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> IncomeResponse:
    user_id = get_user_id(x_user_id)
    return IncomeResponse(**_create_ledger_record("income", payload, user_id))


@app.get("/recurring", response_model=list[RecurringRuleResponse])
def list_recurring_rules(
    kind: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringRuleResponse]:
    user_id = get_user_id(x_user_id)
    try:
        normalized_kind = CategoryKind.validate(kind) if kind else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        rules = recurring_service.list_rules(conn, user_id, normalized_kind)
    return [rule_response(rule) for rule in rules]


@app.get("/recurring/upcoming", response_model=list[UpcomingRecurringResponse])
def list_upcoming_recurring(
    days: int = Query(30),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[UpcomingRecurringResponse]:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            items = recurring_service.upcoming_rules(conn, user_id, days, date.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [upcoming_response(item) for item in items]


@app.post("/recurring/process", response_model=ProcessResultResponse)
def process_recurring_rules(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ProcessResultResponse:
    get_user_id(x_user_id)
    result = process_due_rules(engine, date.today(), rule_timeout=RULE_TIMEOUT_SECONDS)
    return ProcessResultResponse(
        scanned=result.scanned,
        materialized=result.materialized,
        expenses=result.expenses,
        incomes=result.incomes,
        failures=[
            ProcessFailureResponse(rule_id=item.rule_id, kind=item.kind, reason=item.reason)
            for item in result.failures
        ],
    )


@app.get("/recurring/{rule_id}", response_model=RecurringRuleResponse)
def get_recurring_rule(
    rule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringRuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            rule = recurring_service.get_rule(conn, user_id, rule_id)
    except (NotFoundError, ForbiddenError) as exc:
        raise http_error(exc) from exc
    return rule_response(rule)


@app.post("/recurring", response_model=RecurringRuleResponse, status_code=201)
def create_recurring_rule(
    payload: RecurringRulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringRuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        draft = RecurringRulePayload.validate_payload(payload)
        with engine.begin() as conn:
            rule = recurring_service.create_rule(conn, user_id, draft, date.today())
    except (NotFoundError, ForbiddenError, ValueError) as exc:
        raise http_error(exc) from exc
    logger.info("Created recurring rule %s for user %s", rule.id, user_id)
    return rule_response(rule)


@app.patch("/recurring/{rule_id}", response_model=RecurringRuleResponse)
def update_recurring_rule(
    rule_id: int,
    payload: RecurringRuleUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringRuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        changes = RecurringRuleUpdatePayload.validate_payload(payload)
        with engine.begin() as conn:
            rule = recurring_service.update_rule(conn, user_id, rule_id, changes, date.today())
    except (NotFoundError, ForbiddenError, ValueError) as exc:
        raise http_error(exc) from exc
    return rule_response(rule)


@app.patch("/recurring/{rule_id}/toggle", response_model=RecurringRuleResponse)
def toggle_recurring_rule(
    rule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringRuleResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            rule = recurring_service.toggle_rule(conn, user_id, rule_id)
    except (NotFoundError, ForbiddenError, ValueError) as exc:
        raise http_error(exc) from exc
    return rule_response(rule)


@app.delete("/recurring/{rule_id}")
def delete_recurring_rule(
    rule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            recurring_service.delete_rule(conn, user_id, rule_id)
    except (NotFoundError, ForbiddenError) as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}
