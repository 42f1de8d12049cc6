from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    false,
    func,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

# Rows with user_id NULL are shared defaults visible to every user.
categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("name", String(255), nullable=False),
    Column("is_default", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

income_categories = Table(
    "income_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("name", String(255), nullable=False),
    Column("is_default", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_income_categories_user_name"),
)

recurring_rules = Table(
    "recurring_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("category_id", Integer, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500)),
    Column("frequency", String(20), nullable=False),
    Column("interval_value", Integer, nullable=False, server_default="1"),
    Column("day_of_week", Integer),
    Column("day_of_month", Integer),
    Column("month_of_year", Integer),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("next_occurrence", Date, nullable=False),
    Column("last_processed", Date),
    Column("is_active", Boolean, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

# recurring_rule_id + date is the idempotency key for materialized occurrences.
# No foreign key: records outlive a deleted rule and keep the link for audit.
expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500)),
    Column("expense_date", Date, nullable=False),
    Column("recurring_rule_id", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "recurring_rule_id", "expense_date", name="uq_expenses_rule_occurrence"
    ),
)

incomes = Table(
    "incomes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("income_categories.id")),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500)),
    Column("income_date", Date, nullable=False),
    Column("is_recurring", Boolean, nullable=False, server_default=false()),
    Column("recurring_rule_id", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "recurring_rule_id", "income_date", name="uq_incomes_rule_occurrence"
    ),
)
