from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine

from finledger.currency_conversion import RateTable, convert_amount, normalize_currency, round_money
from finledger.db import budget_categories, budgets, unit_of_work, utc_now
from finledger.errors import BudgetNotFound, InvalidAmount, ValidationError
from finledger.ledger import validate_categories

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def reconcile_currency(
    spent: Decimal,
    old_currency: str,
    new_currency: str,
    rates: RateTable,
) -> Decimal:
    """Re-express accumulated spend in a new currency.

    Keeps the real-world spend level: ``spent * rate(old) / rate(new)``.
    Raises ``RateUnavailable`` when either currency is missing.
    """
    return convert_amount(spent, old_currency, new_currency, rates)


def create_budget(
    engine: Engine,
    user_id: int,
    name: str,
    limit_amount: Decimal,
    currency: str,
    category_ids: Optional[Iterable[int]] = None,
) -> dict:
    name, limit_amount, currency = _validate_fields(name, limit_amount, currency)
    with unit_of_work(engine) as conn:
        linked = validate_categories(conn, user_id, category_ids)
        row = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                name=name,
                limit_amount=limit_amount,
                spent=ZERO,
                currency=currency,
                updated_at=utc_now(),
            )
            .returning(budgets.c.id)
        ).first()
        _replace_categories(conn, row.id, linked)
        return _fetch_budget(conn, user_id, row.id)


def update_budget(
    engine: Engine,
    user_id: int,
    budget_id: int,
    name: str,
    limit_amount: Decimal,
    currency: Optional[str],
    category_ids: Optional[Iterable[int]],
    rates: RateTable,
) -> dict:
    """Update a budget's fields and category set as one logical write.

    A currency change re-expresses ``spent`` before anything is written, so
    a missing rate aborts the whole update. Without a ``currency`` the
    budget keeps the one it already has.
    """
    name, limit_amount, currency = _validate_fields(name, limit_amount, currency)
    with unit_of_work(engine) as conn:
        current = conn.execute(
            select(budgets).where(
                budgets.c.id == budget_id,
                budgets.c.user_id == user_id,
                budgets.c.deleted_at.is_(None),
            )
        ).mappings().first()
        if not current:
            raise BudgetNotFound("Budget not found.")
        linked = validate_categories(conn, user_id, category_ids)
        currency = currency or current["currency"]

        spent = Decimal(str(current["spent"]))
        if currency != current["currency"]:
            spent = round_money(reconcile_currency(spent, current["currency"], currency, rates))
            logger.info(
                "budget_currency_reconciled",
                budget_id=budget_id,
                old_currency=current["currency"],
                new_currency=currency,
                spent=str(spent),
            )

        conn.execute(
            update(budgets)
            .where(budgets.c.id == budget_id)
            .values(
                name=name,
                limit_amount=limit_amount,
                currency=currency,
                spent=spent,
                updated_at=utc_now(),
            )
        )
        _replace_categories(conn, budget_id, linked)
        return _fetch_budget(conn, user_id, budget_id)


def delete_budget(engine: Engine, user_id: int, budget_id: int) -> None:
    with unit_of_work(engine) as conn:
        result = conn.execute(
            update(budgets)
            .where(
                budgets.c.id == budget_id,
                budgets.c.user_id == user_id,
                budgets.c.deleted_at.is_(None),
            )
            .values(deleted_at=utc_now())
        )
        if result.rowcount == 0:
            raise BudgetNotFound("Budget not found.")


def list_budgets(engine: Engine, user_id: int) -> list[dict]:
    with engine.begin() as conn:
        ids = conn.execute(
            select(budgets.c.id)
            .where(budgets.c.user_id == user_id, budgets.c.deleted_at.is_(None))
            .order_by(budgets.c.id)
        ).scalars().all()
        return [_fetch_budget(conn, user_id, budget_id) for budget_id in ids]


def _validate_fields(
    name: str, limit_amount: Decimal, currency: Optional[str]
) -> tuple[str, Decimal, Optional[str]]:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Budget name required.")
    limit_amount = Decimal(str(limit_amount))
    if limit_amount <= ZERO:
        raise InvalidAmount("Budget limit must be greater than zero.")
    return name, round_money(limit_amount), normalize_currency(currency) if currency else None


def _replace_categories(conn: Connection, budget_id: int, category_ids: list[int]) -> None:
    conn.execute(delete(budget_categories).where(budget_categories.c.budget_id == budget_id))
    if category_ids:
        conn.execute(
            insert(budget_categories),
            [{"budget_id": budget_id, "category_id": category_id} for category_id in category_ids],
        )


def _fetch_budget(conn: Connection, user_id: int, budget_id: int) -> dict:
    row = conn.execute(
        select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise BudgetNotFound("Budget not found.")
    result = dict(row)
    result["category_ids"] = list(
        conn.execute(
            select(budget_categories.c.category_id)
            .where(budget_categories.c.budget_id == budget_id)
            .order_by(budget_categories.c.category_id)
        ).scalars()
    )
    return result
