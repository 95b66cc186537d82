from datetime import date
from decimal import Decimal

from sqlalchemy import insert, select

from finledger.currency_conversion import StaticRateProvider
from finledger.db import (
    accounts,
    budget_categories,
    budgets,
    build_engine,
    categories,
    init_db,
    recurring_schedule_categories,
    recurring_schedules,
    users,
)

TEST_RATES = {
    "USD": Decimal("1"),
    "EUR": Decimal("2"),
    "RON": Decimal("0.25"),
}


def make_engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    return engine


def make_rates() -> StaticRateProvider:
    return StaticRateProvider(rates=TEST_RATES)


def add_user(engine, email="ana@example.com", first_name="Ana", last_name="Pop") -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(users)
            .values(
                email=email,
                hashed_password="x",
                first_name=first_name,
                last_name=last_name,
                home_currency="USD",
            )
            .returning(users.c.id)
        ).scalar_one()


def add_account(
    engine,
    user_id,
    name="Checking",
    currency="USD",
    balance="0",
    type="checking",
    target_amount=None,
    target_date: date | None = None,
) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(accounts)
            .values(
                user_id=user_id,
                name=name,
                type=type,
                currency=currency,
                balance=Decimal(balance),
                target_amount=Decimal(target_amount) if target_amount is not None else None,
                target_date=target_date,
            )
            .returning(accounts.c.id)
        ).scalar_one()


def add_category(engine, user_id, name="Groceries", type="custom") -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(categories).values(user_id=user_id, name=name, type=type).returning(categories.c.id)
        ).scalar_one()


def add_budget(engine, user_id, category_ids=(), limit_amount="500", spent="0", currency="USD") -> int:
    with engine.begin() as conn:
        budget_id = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                name="Monthly",
                limit_amount=Decimal(limit_amount),
                spent=Decimal(spent),
                currency=currency,
            )
            .returning(budgets.c.id)
        ).scalar_one()
        for category_id in category_ids:
            conn.execute(insert(budget_categories).values(budget_id=budget_id, category_id=category_id))
    return budget_id


def add_schedule(engine, user_id, account_id, next_execution, category_ids=(), **overrides) -> int:
    values = {
        "user_id": user_id,
        "account_id": account_id,
        "name": "Rent",
        "kind": "expense",
        "amount": Decimal("100"),
        "currency": "USD",
        "cadence": "monthly",
        "next_execution": next_execution,
        "anchor_day": next_execution.day,
        "is_active": True,
        "automatic_execution": True,
        "email_notification": False,
    }
    values.update(overrides)
    with engine.begin() as conn:
        schedule_id = conn.execute(
            insert(recurring_schedules).values(**values).returning(recurring_schedules.c.id)
        ).scalar_one()
        for category_id in category_ids:
            conn.execute(
                insert(recurring_schedule_categories).values(schedule_id=schedule_id, category_id=category_id)
            )
    return schedule_id


def balance_of(engine, account_id) -> Decimal:
    with engine.begin() as conn:
        return Decimal(
            str(conn.execute(select(accounts.c.balance).where(accounts.c.id == account_id)).scalar_one())
        )


def fetch_row(engine, table, row_id) -> dict:
    with engine.begin() as conn:
        return dict(conn.execute(select(table).where(table.c.id == row_id)).mappings().one())
