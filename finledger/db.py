from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

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
    create_engine,
    func,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from finledger.errors import PersistenceFailure

metadata = MetaData()

# All timestamps are stored as naive UTC.

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("home_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="custom"),
    Column("deleted_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="checking"),
    Column("currency", String(3), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("target_amount", Numeric(14, 2)),
    Column("target_date", Date),
    Column("savings_completed", Boolean, nullable=False, server_default="0"),
    Column("deleted_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255)),
    Column("description", String(500)),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("type", String(20), nullable=False),
    # Weak references: historical rows survive account deletion.
    Column("from_account_id", Integer),
    Column("to_account_id", Integer),
    Column("schedule_id", Integer),
    Column("created_at", DateTime, nullable=False),
)

transaction_categories = Table(
    "transaction_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("transaction_id", Integer, ForeignKey("transactions.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    UniqueConstraint("transaction_id", "category_id", name="uq_transaction_category"),
)

account_balance_history = Table(
    "account_balance_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("transaction_id", Integer),
    Column("previous_balance", Numeric(14, 2), nullable=False),
    Column("new_balance", Numeric(14, 2), nullable=False),
    Column("amount_changed", Numeric(14, 2), nullable=False),
    Column("change_type", String(30), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("limit_amount", Numeric(14, 2), nullable=False),
    Column("spent", Numeric(14, 2), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False),
    Column("deleted_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    UniqueConstraint("budget_id", "category_id", name="uq_budget_category"),
)

recurring_schedules = Table(
    "recurring_schedules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", String(500)),
    Column("kind", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("cadence", String(20), nullable=False),
    Column("next_execution", DateTime),
    Column("anchor_day", Integer),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("automatic_execution", Boolean, nullable=False, server_default="0"),
    Column("email_notification", Boolean, nullable=False, server_default="0"),
    Column("notification_lead_days", Integer),
    Column("timezone", String(64)),
    Column("deleted_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_schedule_categories = Table(
    "recurring_schedule_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("schedule_id", Integer, ForeignKey("recurring_schedules.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    UniqueConstraint("schedule_id", "category_id", name="uq_schedule_category"),
)

schedule_runs = Table(
    "schedule_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("schedule_id", Integer, nullable=False),
    Column("due_at", DateTime),
    Column("status", String(20), nullable=False),
    Column("transaction_id", Integer),
    Column("error", String(500)),
    Column("created_at", DateTime, nullable=False),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


@contextmanager
def unit_of_work(engine: Engine) -> Iterator[Connection]:
    """Yield a connection whose writes commit together or not at all.

    Domain errors raised inside the block roll the unit back and propagate
    unchanged; driver errors surface as :class:`PersistenceFailure`.
    """
    try:
        with engine.begin() as conn:
            yield conn
    except SQLAlchemyError as exc:
        raise PersistenceFailure(f"Storage unit could not commit: {exc}") from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
