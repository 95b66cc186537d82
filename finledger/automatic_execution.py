from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from finledger.currency_conversion import RateTable
from finledger.db import accounts, recurring_schedules, schedule_runs, unit_of_work, users, utc_now
from finledger.emails import render_confirmation
from finledger.errors import LedgerError
from finledger.ledger import RateProvider, apply_movement
from finledger.mailer import EmailAddress, Mailer, recipient_for
from finledger.schedules import (
    advance_next_execution,
    schedule_categories,
    schedule_zone,
    select_due,
    to_storage_time,
)

logger = structlog.get_logger(__name__)


class OccurrenceAlreadyProcessed(LedgerError):
    """Another tick already consumed this due occurrence."""


@dataclass
class ExecutionDetail:
    schedule_id: int
    name: str
    amount: Decimal
    currency: str
    kind: str
    status: str
    error: Optional[str] = None
    transaction_id: Optional[int] = None


@dataclass
class ExecutionReport:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[ExecutionDetail] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class AutomaticExecutionEngine:
    """Executes every due schedule once per tick.

    Each schedule runs in its own unit of work: the occurrence is claimed by
    advancing ``next_execution`` conditionally on its prior value, then the
    ledger movement is applied. Both commit together or not at all, so a
    repeated tick cannot pay the same occurrence twice.

    Cadence steps follow the schedule's own timezone, or ``timezone_name``
    when it has none.
    """

    def __init__(
        self,
        engine: Engine,
        rate_provider: RateProvider,
        mailer: Mailer,
        sender: EmailAddress,
        timezone_name: str = "UTC",
    ) -> None:
        self._engine = engine
        self._rate_provider = rate_provider
        self._mailer = mailer
        self._sender = sender
        self._timezone_name = timezone_name

    def run(self, now: Optional[datetime] = None) -> ExecutionReport:
        now = to_storage_time(now) if now else utc_now()
        report = ExecutionReport()
        with unit_of_work(self._engine) as conn:
            due = select_due(conn, now)
        logger.info("automatic_payments_found", count=len(due))

        rates: Optional[RateTable] = None
        for schedule in due:
            detail = ExecutionDetail(
                schedule_id=schedule["id"],
                name=schedule["name"],
                amount=schedule["amount"],
                currency=schedule["currency"],
                kind=schedule["kind"],
                status="success",
            )
            try:
                if rates is None:
                    rates = self._rate_provider.get_rates()
                transaction, next_execution = self._execute(schedule, rates, now)
            except OccurrenceAlreadyProcessed:
                detail.status = "skipped"
                report.skipped += 1
                report.details.append(detail)
                logger.info("automatic_payment_already_processed", schedule_id=schedule["id"])
                continue
            except Exception as exc:
                detail.status = "failed"
                detail.error = str(exc) or exc.__class__.__name__
                report.failed += 1
                report.details.append(detail)
                logger.error(
                    "automatic_payment_failed",
                    schedule_id=schedule["id"],
                    kind=schedule["kind"],
                    error=detail.error,
                    error_type=exc.__class__.__name__,
                )
                self._record_failure(schedule, detail.error, now)
                continue

            detail.transaction_id = transaction["id"]
            report.processed += 1
            report.details.append(detail)
            logger.info(
                "automatic_payment_processed",
                schedule_id=schedule["id"],
                kind=schedule["kind"],
                amount=str(schedule["amount"]),
                currency=schedule["currency"],
                transaction_id=transaction["id"],
                next_execution=next_execution.isoformat() if next_execution else None,
            )
            self._send_confirmation(schedule, transaction, next_execution, now)

        logger.info(
            "automatic_payments_completed",
            processed=report.processed,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    def _execute(self, schedule: dict, rates: RateTable, now: datetime) -> tuple[dict, Optional[datetime]]:
        prior = schedule["next_execution"]
        next_execution = advance_next_execution(
            prior,
            schedule["cadence"],
            schedule["anchor_day"],
            schedule_zone(schedule["timezone"], self._timezone_name),
        )
        values = {"next_execution": next_execution}
        if next_execution is None:
            values.update(is_active=False, deleted_at=now)

        with unit_of_work(self._engine) as conn:
            claimed = conn.execute(
                update(recurring_schedules)
                .where(
                    recurring_schedules.c.id == schedule["id"],
                    recurring_schedules.c.next_execution == prior,
                    recurring_schedules.c.is_active.is_(True),
                    recurring_schedules.c.deleted_at.is_(None),
                )
                .values(**values)
            )
            if claimed.rowcount == 0:
                raise OccurrenceAlreadyProcessed(f"Schedule {schedule['id']} already ran for {prior.isoformat()}")

            category_ids = [category["id"] for category in schedule_categories(conn, schedule["id"])]
            is_income = schedule["kind"] == "income"
            transaction = apply_movement(
                conn,
                user_id=schedule["user_id"],
                kind=schedule["kind"],
                amount=schedule["amount"],
                currency=schedule["currency"],
                rates=rates,
                from_account_id=None if is_income else schedule["account_id"],
                to_account_id=schedule["account_id"] if is_income else None,
                name=schedule["name"],
                description=schedule["description"],
                category_ids=category_ids,
                schedule_id=schedule["id"],
                now=now,
            )
            conn.execute(
                insert(schedule_runs).values(
                    schedule_id=schedule["id"],
                    due_at=prior,
                    status="success",
                    transaction_id=transaction["id"],
                    created_at=now,
                )
            )
        return transaction, next_execution

    def _record_failure(self, schedule: dict, error: str, now: datetime) -> None:
        try:
            with unit_of_work(self._engine) as conn:
                conn.execute(
                    insert(schedule_runs).values(
                        schedule_id=schedule["id"],
                        due_at=schedule["next_execution"],
                        status="failed",
                        error=error[:500],
                        created_at=now,
                    )
                )
        except LedgerError as exc:
            logger.error("schedule_run_record_failed", schedule_id=schedule["id"], error=str(exc))

    def _send_confirmation(
        self,
        schedule: dict,
        transaction: dict,
        next_execution: Optional[datetime],
        now: datetime,
    ) -> None:
        try:
            with unit_of_work(self._engine) as conn:
                user = conn.execute(select(users).where(users.c.id == schedule["user_id"])).mappings().first()
                account_name = conn.execute(
                    select(accounts.c.name).where(accounts.c.id == schedule["account_id"])
                ).scalar_one_or_none()
                category_names = [category["name"] for category in schedule_categories(conn, schedule["id"])]
            if not user:
                logger.warning("confirmation_email_skipped", schedule_id=schedule["id"], reason="user not found")
                return
            content = render_confirmation(
                schedule,
                account_name=account_name or "your",
                transaction_id=transaction["id"],
                category_names=category_names,
                executed_at=now,
                next_execution=next_execution,
            )
            self._mailer.send_email(
                self._sender,
                [recipient_for(user)],
                content.subject,
                content.html_body,
                content.text_body,
                tags=content.tags,
            )
            logger.info("confirmation_email_sent", schedule_id=schedule["id"], transaction_id=transaction["id"])
        except LedgerError as exc:
            # The movement has already committed; mail problems never undo it.
            logger.error(
                "confirmation_email_failed",
                schedule_id=schedule["id"],
                transaction_id=transaction["id"],
                error=str(exc),
            )
