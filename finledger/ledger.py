from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

import structlog
from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine

from finledger.currency_conversion import (
    CompositeRateProvider,
    FrankfurterRateProvider,
    RateTable,
    StaticRateProvider,
    convert_amount,
    normalize_currency,
    round_money,
)
from finledger.db import (
    account_balance_history,
    accounts,
    budget_categories,
    budgets,
    categories,
    transaction_categories,
    transactions,
    unit_of_work,
    utc_now,
)
from finledger.errors import (
    AccountNotFound,
    CategoryNotFound,
    InsufficientFunds,
    InvalidAmount,
    SameAccount,
    ValidationError,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
MOVEMENT_KINDS = {"income", "expense", "transfer"}
SAVINGS = "savings"

RateProvider = StaticRateProvider | FrankfurterRateProvider | CompositeRateProvider


def apply_movement(
    conn: Connection,
    *,
    user_id: int,
    kind: str,
    amount: Decimal | int | str,
    currency: str,
    rates: RateTable,
    from_account_id: Optional[int] = None,
    to_account_id: Optional[int] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
    category_ids: Optional[Iterable[int]] = None,
    schedule_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Record one money movement and the balance changes it implies.

    Runs inside ``conn``; the caller owns the unit boundary. Every check
    happens before the first write, so a rejected movement leaves nothing
    behind even if the caller were to commit.
    """
    kind = _validate_kind(kind)
    amount = _coerce_amount(amount)
    if amount <= ZERO:
        raise InvalidAmount("Amount must be greater than zero.")
    currency = normalize_currency(currency)
    _validate_shape(kind, from_account_id, to_account_id)

    source = _load_account(conn, user_id, from_account_id, "Source") if from_account_id is not None else None
    destination = _load_account(conn, user_id, to_account_id, "Destination") if to_account_id is not None else None

    debit = round_money(convert_amount(amount, currency, source["currency"], rates)) if source else None
    credit = round_money(convert_amount(amount, currency, destination["currency"], rates)) if destination else None
    if source is not None and _coerce_amount(source["balance"]) < debit:
        raise InsufficientFunds(
            f"Insufficient funds in account. Available: {source['balance']} {source['currency']}, "
            f"Required: {debit} {source['currency']}"
        )

    linked_categories = validate_categories(conn, user_id, category_ids)
    budget_increments = []
    if kind == "expense" and linked_categories:
        budget_increments = _budget_increments(conn, user_id, linked_categories, amount, currency, rates)

    created_at = now or utc_now()
    stored_amount = round_money(amount)
    row = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            name=name,
            description=description,
            amount=stored_amount,
            currency=currency,
            type=kind,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            schedule_id=schedule_id,
            created_at=created_at,
        )
        .returning(*transactions.c)
    ).mappings().first()
    transaction_id = row["id"]

    label = name or kind.capitalize()
    if source is not None:
        change_type = "transfer_out" if kind == "transfer" else "expense"
        _change_balance(conn, source, -debit, transaction_id, change_type, label, created_at)
    if destination is not None:
        change_type = "transfer_in" if kind == "transfer" else "income"
        new_balance = _change_balance(conn, destination, credit, transaction_id, change_type, label, created_at)
        _complete_savings_goal(conn, destination, new_balance)

    if linked_categories:
        conn.execute(
            insert(transaction_categories),
            [{"transaction_id": transaction_id, "category_id": category_id} for category_id in linked_categories],
        )
    for budget_id, increment in budget_increments:
        conn.execute(
            update(budgets)
            .where(budgets.c.id == budget_id)
            .values(spent=budgets.c.spent + increment, updated_at=created_at)
        )

    logger.info(
        "movement_applied",
        transaction_id=transaction_id,
        user_id=user_id,
        kind=kind,
        amount=str(stored_amount),
        currency=currency,
        from_account_id=from_account_id,
        to_account_id=to_account_id,
        schedule_id=schedule_id,
    )
    result = dict(row)
    result["category_ids"] = linked_categories
    return result


def _validate_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in MOVEMENT_KINDS:
        raise ValidationError("Invalid transaction type.")
    return normalized


def _validate_shape(kind: str, from_account_id: Optional[int], to_account_id: Optional[int]) -> None:
    if kind == "transfer":
        if from_account_id is None or to_account_id is None:
            raise ValidationError("Transfers require a source and a destination account.")
        if from_account_id == to_account_id:
            raise SameAccount("Cannot transfer to the same account.")
    elif kind == "expense":
        if from_account_id is None or to_account_id is not None:
            raise ValidationError("Expenses require only a source account.")
    elif from_account_id is not None or to_account_id is None:
        raise ValidationError("Income requires only a destination account.")


def _load_account(conn: Connection, user_id: int, account_id: int, role: str) -> dict:
    row = conn.execute(
        select(accounts).where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise AccountNotFound(f"{role} account not found or doesn't belong to the user")
    return dict(row)


def validate_categories(conn: Connection, user_id: int, category_ids: Optional[Iterable[int]]) -> list[int]:
    requested = sorted(set(category_ids or []))
    if not requested:
        return []
    found = conn.execute(
        select(categories.c.id).where(
            categories.c.id.in_(requested),
            or_(categories.c.user_id == user_id, categories.c.type == "system"),
            categories.c.deleted_at.is_(None),
        )
    ).scalars().all()
    if len(found) != len(requested):
        raise CategoryNotFound("One or more categories are invalid or don't belong to the user")
    return requested


def _budget_increments(
    conn: Connection,
    user_id: int,
    category_ids: list[int],
    amount: Decimal,
    currency: str,
    rates: RateTable,
) -> list[tuple[int, Decimal]]:
    rows = conn.execute(
        select(budgets.c.id, budgets.c.currency)
        .distinct()
        .select_from(budgets.join(budget_categories, budget_categories.c.budget_id == budgets.c.id))
        .where(
            and_(
                budgets.c.user_id == user_id,
                budgets.c.deleted_at.is_(None),
                budget_categories.c.category_id.in_(category_ids),
            )
        )
        .order_by(budgets.c.id)
    ).mappings().all()
    return [
        (row["id"], round_money(convert_amount(amount, currency, row["currency"], rates)))
        for row in rows
    ]


def _change_balance(
    conn: Connection,
    account: dict,
    delta: Decimal,
    transaction_id: Optional[int],
    change_type: str,
    description: Optional[str],
    created_at: datetime,
) -> Decimal:
    stmt = update(accounts).where(accounts.c.id == account["id"]).values(balance=accounts.c.balance + delta)
    if delta < ZERO:
        # Guards against a concurrent debit landing between the check and the write.
        stmt = stmt.where(accounts.c.balance >= -delta)
    result = conn.execute(stmt)
    if result.rowcount == 0:
        raise InsufficientFunds(f"Insufficient funds in account {account['id']}.")

    new_balance = _coerce_amount(
        conn.execute(select(accounts.c.balance).where(accounts.c.id == account["id"])).scalar_one()
    )
    previous_balance = new_balance - delta
    conn.execute(
        insert(account_balance_history).values(
            account_id=account["id"],
            transaction_id=transaction_id,
            previous_balance=previous_balance,
            new_balance=new_balance,
            amount_changed=delta,
            change_type=change_type,
            currency=account["currency"],
            description=description,
            created_at=created_at,
        )
    )
    return new_balance


def record_adjustment(
    conn: Connection,
    *,
    user_id: int,
    account_id: int,
    delta: Decimal | int | float | str,
    description: Optional[str],
    now: Optional[datetime] = None,
) -> Decimal:
    """Apply a manual correction inside the caller's unit of work.

    No transaction row is written; the balance history carries a
    ``manual_adjustment`` entry instead.
    """
    delta = round_money(_coerce_amount(delta))
    if delta == ZERO:
        raise InvalidAmount("Adjustment must not be zero.")
    account = _load_account(conn, user_id, account_id, "Target")
    new_balance = _change_balance(conn, account, delta, None, "manual_adjustment", description, now or utc_now())
    if delta > ZERO:
        _complete_savings_goal(conn, account, new_balance)
    logger.info("balance_adjusted", account_id=account_id, delta=str(delta))
    return new_balance


def _complete_savings_goal(conn: Connection, account: dict, new_balance: Decimal) -> None:
    if account["type"] != SAVINGS or account["target_amount"] is None or account["savings_completed"]:
        return
    if new_balance >= _coerce_amount(account["target_amount"]):
        conn.execute(update(accounts).where(accounts.c.id == account["id"]).values(savings_completed=True))
        logger.info("savings_goal_completed", account_id=account["id"], balance=str(new_balance))


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


class Ledger:
    """Entry points for user-initiated movements.

    Each call takes one rate snapshot and commits in one unit of work.
    """

    def __init__(self, engine: Engine, rate_provider: RateProvider) -> None:
        self._engine = engine
        self._rate_provider = rate_provider

    def create_transfer(
        self,
        user_id: int,
        amount: Decimal,
        from_account_id: int,
        to_account_id: int,
        currency: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict:
        return self._apply(
            user_id=user_id,
            kind="transfer",
            amount=amount,
            currency=currency,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            name=name,
            description=description,
        )

    def create_expense(
        self,
        user_id: int,
        amount: Decimal,
        from_account_id: int,
        currency: str,
        category_ids: Optional[list[int]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict:
        return self._apply(
            user_id=user_id,
            kind="expense",
            amount=amount,
            currency=currency,
            from_account_id=from_account_id,
            category_ids=category_ids,
            name=name,
            description=description,
        )

    def create_income(
        self,
        user_id: int,
        amount: Decimal,
        to_account_id: int,
        currency: str,
        category_ids: Optional[list[int]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict:
        return self._apply(
            user_id=user_id,
            kind="income",
            amount=amount,
            currency=currency,
            to_account_id=to_account_id,
            category_ids=category_ids,
            name=name,
            description=description,
        )

    def adjust_balance(self, user_id: int, account_id: int, delta: Decimal, description: str) -> Decimal:
        """Apply a manual correction without recording a transaction row."""
        with unit_of_work(self._engine) as conn:
            return record_adjustment(
                conn, user_id=user_id, account_id=account_id, delta=delta, description=description
            )

    def update_account(
        self,
        user_id: int,
        account_id: int,
        name: str,
        currency: Optional[str] = None,
        target_amount: Optional[Decimal] = None,
        target_date: Optional[date] = None,
    ) -> dict:
        """Edit an account's name, currency and savings target.

        A currency change re-expresses the balance (and the savings target
        when no new one is given) in the new currency and records a
        ``currency_change`` history row in the same unit of work.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Account name required.")
        if target_amount is not None:
            target_amount = round_money(_coerce_amount(target_amount))
            if target_amount <= ZERO:
                raise InvalidAmount("Savings target must be greater than zero.")

        with unit_of_work(self._engine) as conn:
            account = _load_account(conn, user_id, account_id, "Target")
            if account["type"] != SAVINGS and (target_amount is not None or target_date is not None):
                raise ValidationError("Only savings accounts can have a target.")
            old_currency = account["currency"]
            new_currency = normalize_currency(currency) if currency else old_currency
            balance = _coerce_amount(account["balance"])
            rates = self._rate_provider.get_rates() if new_currency != old_currency else None
            values = {"name": name, "currency": new_currency}
            if target_date is not None:
                values["target_date"] = target_date
            if target_amount is None and account["target_amount"] is not None:
                target_amount = _coerce_amount(account["target_amount"])
                if rates is not None:
                    target_amount = round_money(convert_amount(target_amount, old_currency, new_currency, rates))

            if rates is not None:
                converted = round_money(convert_amount(balance, old_currency, new_currency, rates))
                conn.execute(update(accounts).where(accounts.c.id == account_id).values(currency=new_currency))
                balance = _change_balance(
                    conn,
                    {**account, "currency": new_currency},
                    converted - balance,
                    None,
                    "currency_change",
                    f"Currency changed from {old_currency} to {new_currency}",
                    utc_now(),
                )
                logger.info(
                    "account_currency_changed",
                    account_id=account_id,
                    old_currency=old_currency,
                    new_currency=new_currency,
                    balance=str(balance),
                )

            if account["type"] == SAVINGS:
                values["target_amount"] = target_amount
                values["savings_completed"] = target_amount is not None and balance >= target_amount
            conn.execute(update(accounts).where(accounts.c.id == account_id).values(**values))
            return dict(conn.execute(select(accounts).where(accounts.c.id == account_id)).mappings().one())

    def list_transactions(self, user_id: int, account_id: Optional[int] = None) -> list[dict]:
        conditions = [transactions.c.user_id == user_id]
        if account_id is not None:
            conditions.append(
                or_(transactions.c.from_account_id == account_id, transactions.c.to_account_id == account_id)
            )
        with self._engine.begin() as conn:
            rows = conn.execute(
                select(transactions).where(*conditions).order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
            ).mappings().all()
        return [dict(row) for row in rows]

    def balance_history(self, user_id: int, account_id: int, limit: Optional[int] = None) -> list[dict]:
        with self._engine.begin() as conn:
            exists = conn.execute(
                select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            ).first()
            if not exists:
                raise AccountNotFound("Account not found or doesn't belong to the user")
            stmt = (
                select(account_balance_history)
                .where(account_balance_history.c.account_id == account_id)
                .order_by(account_balance_history.c.id.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            rows = conn.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    def _apply(self, **kwargs) -> dict:
        rates = self._rate_provider.get_rates()
        with unit_of_work(self._engine) as conn:
            return apply_movement(conn, rates=rates, **kwargs)
