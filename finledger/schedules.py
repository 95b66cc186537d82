from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine

from finledger.currency_conversion import normalize_currency, round_money
from finledger.db import (
    accounts,
    categories,
    recurring_schedule_categories,
    recurring_schedules,
    unit_of_work,
    utc_now,
)
from finledger.errors import AccountNotFound, InvalidAmount, ScheduleNotFound, ValidationError
from finledger.ledger import validate_categories

logger = structlog.get_logger(__name__)

SCHEDULE_KINDS = {"income", "expense"}
DAY_STEPS = {"daily": 1, "weekly": 7, "biweekly": 14}
MONTH_STEPS = {"monthly": 1, "quarterly": 3, "yearly": 12, "custom": 1}
CADENCES = set(DAY_STEPS) | set(MONTH_STEPS) | {"once"}

# Days before the due date that a reminder goes out when the schedule sets none.
DEFAULT_LEAD_DAYS = {
    "daily": 1,
    "weekly": 2,
    "biweekly": 3,
    "monthly": 3,
    "quarterly": 7,
    "yearly": 14,
    "once": 3,
    "custom": 3,
}
FALLBACK_LEAD_DAYS = 3


@dataclass(frozen=True)
class ScheduleDraft:
    account_id: int
    name: str
    kind: str
    amount: Decimal
    currency: str
    cadence: str
    next_execution: datetime
    automatic_execution: bool = False
    email_notification: bool = False
    notification_lead_days: Optional[int] = None
    timezone: Optional[str] = None
    description: Optional[str] = None
    category_ids: tuple[int, ...] = field(default_factory=tuple)


def normalize_cadence(value: str) -> str:
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if normalized == "byweekly":
        normalized = "biweekly"
    if normalized not in CADENCES:
        raise ValidationError(
            "Cadence must be one of daily, weekly, biweekly, monthly, quarterly, yearly, once, or custom."
        )
    return normalized


def normalize_kind(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in SCHEDULE_KINDS:
        raise ValidationError("Recurring schedule kind must be income or expense.")
    return normalized


def validate_timezone(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {value}") from exc
    return value


def lead_days_for(schedule: dict) -> int:
    lead_days = schedule.get("notification_lead_days")
    if lead_days is not None:
        return lead_days
    return DEFAULT_LEAD_DAYS.get(schedule.get("cadence"), FALLBACK_LEAD_DAYS)


def schedule_zone(schedule_timezone: Optional[str], default_timezone: str = "UTC") -> ZoneInfo:
    return ZoneInfo(schedule_timezone or default_timezone)


def to_local_time(value: datetime, tz: ZoneInfo) -> datetime:
    """Wall-clock time in ``tz`` of a stored (naive UTC) or aware timestamp."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def advance_next_execution(
    previous: datetime,
    cadence: str,
    anchor_day: Optional[int] = None,
    tz: Optional[ZoneInfo] = None,
) -> Optional[datetime]:
    """Return the due time one cadence period after ``previous``.

    ``once`` schedules have no next occurrence. Month-based cadences keep
    the anchor day and clamp it to the length of the target month.

    With ``tz`` the step is taken on the local wall clock of that zone and
    the result is returned as naive UTC, so a schedule due at local
    midnight on the 1st stays on the 1st across offsets and DST changes.
    """
    cadence = normalize_cadence(cadence)
    if cadence == "once":
        return None
    start = to_local_time(previous, tz) if tz is not None else previous
    if cadence in DAY_STEPS:
        stepped = start + timedelta(days=DAY_STEPS[cadence])
    else:
        stepped = _add_months(start, MONTH_STEPS[cadence], anchor_day or start.day)
    return to_storage_time(stepped) if tz is not None else stepped


def _add_months(start: datetime, months: int, anchor_day: int) -> datetime:
    total_month = start.month - 1 + months
    year = start.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    return start.replace(year=year, month=month, day=min(anchor_day, last_day))


def to_storage_time(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_schedule(
    engine: Engine, user_id: int, draft: ScheduleDraft, default_timezone: str = "UTC"
) -> dict:
    values = _validate_draft(draft, default_timezone)
    with unit_of_work(engine) as conn:
        _ensure_account(conn, user_id, values["account_id"])
        linked = validate_categories(conn, user_id, draft.category_ids)
        row = conn.execute(
            insert(recurring_schedules)
            .values(user_id=user_id, is_active=True, **values)
            .returning(recurring_schedules.c.id)
        ).first()
        _replace_categories(conn, row.id, linked)
        schedule = _fetch_schedule(conn, user_id, row.id)
    logger.info("schedule_created", schedule_id=schedule["id"], user_id=user_id, cadence=schedule["cadence"])
    return schedule


def update_schedule(
    engine: Engine,
    user_id: int,
    schedule_id: int,
    draft: ScheduleDraft,
    default_timezone: str = "UTC",
) -> dict:
    values = _validate_draft(draft, default_timezone)
    with unit_of_work(engine) as conn:
        _ensure_account(conn, user_id, values["account_id"])
        linked = validate_categories(conn, user_id, draft.category_ids)
        result = conn.execute(
            update(recurring_schedules)
            .where(
                recurring_schedules.c.id == schedule_id,
                recurring_schedules.c.user_id == user_id,
                recurring_schedules.c.deleted_at.is_(None),
            )
            .values(**values)
        )
        if result.rowcount == 0:
            raise ScheduleNotFound("Recurring schedule not found.")
        _replace_categories(conn, schedule_id, linked)
        return _fetch_schedule(conn, user_id, schedule_id)


def deactivate_schedule(engine: Engine, user_id: int, schedule_id: int) -> dict:
    with unit_of_work(engine) as conn:
        result = conn.execute(
            update(recurring_schedules)
            .where(
                recurring_schedules.c.id == schedule_id,
                recurring_schedules.c.user_id == user_id,
                recurring_schedules.c.deleted_at.is_(None),
            )
            .values(is_active=False)
        )
        if result.rowcount == 0:
            raise ScheduleNotFound("Recurring schedule not found.")
        return _fetch_schedule(conn, user_id, schedule_id)


def delete_schedule(engine: Engine, user_id: int, schedule_id: int) -> None:
    with unit_of_work(engine) as conn:
        result = conn.execute(
            update(recurring_schedules)
            .where(
                recurring_schedules.c.id == schedule_id,
                recurring_schedules.c.user_id == user_id,
                recurring_schedules.c.deleted_at.is_(None),
            )
            .values(is_active=False, deleted_at=utc_now())
        )
        if result.rowcount == 0:
            raise ScheduleNotFound("Recurring schedule not found.")
    logger.info("schedule_deleted", schedule_id=schedule_id, user_id=user_id)


def get_schedule(engine: Engine, user_id: int, schedule_id: int) -> dict:
    with engine.begin() as conn:
        return _fetch_schedule(conn, user_id, schedule_id)


def list_schedules(engine: Engine, user_id: int) -> list[dict]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(recurring_schedules)
            .where(recurring_schedules.c.user_id == user_id, recurring_schedules.c.deleted_at.is_(None))
            .order_by(recurring_schedules.c.next_execution.asc(), recurring_schedules.c.id.asc())
        ).mappings().all()
        return [_with_categories(conn, row) for row in rows]


def select_due(conn: Connection, now: datetime) -> list[dict]:
    """Schedules whose automatic execution has come due, ordered by id."""
    rows = conn.execute(
        select(recurring_schedules)
        .where(
            recurring_schedules.c.is_active.is_(True),
            recurring_schedules.c.deleted_at.is_(None),
            recurring_schedules.c.automatic_execution.is_(True),
            recurring_schedules.c.next_execution.is_not(None),
            recurring_schedules.c.next_execution <= to_storage_time(now),
        )
        .order_by(recurring_schedules.c.id)
    ).mappings().all()
    return [dict(row) for row in rows]


def select_reminder_candidates(conn: Connection) -> list[dict]:
    rows = conn.execute(
        select(recurring_schedules)
        .where(
            recurring_schedules.c.is_active.is_(True),
            recurring_schedules.c.deleted_at.is_(None),
            recurring_schedules.c.email_notification.is_(True),
            recurring_schedules.c.next_execution.is_not(None),
        )
        .order_by(recurring_schedules.c.id)
    ).mappings().all()
    return [dict(row) for row in rows]


def upcoming_schedules(
    engine: Engine,
    user_id: int,
    now: datetime,
    days_ahead: int = 7,
    kind: Optional[str] = None,
) -> list[dict]:
    start = to_storage_time(now)
    conditions = [
        recurring_schedules.c.user_id == user_id,
        recurring_schedules.c.is_active.is_(True),
        recurring_schedules.c.deleted_at.is_(None),
        recurring_schedules.c.email_notification.is_(True),
        recurring_schedules.c.next_execution >= start,
        recurring_schedules.c.next_execution <= start + timedelta(days=days_ahead),
    ]
    if kind:
        conditions.append(recurring_schedules.c.kind == normalize_kind(kind))
    with engine.begin() as conn:
        rows = conn.execute(
            select(recurring_schedules).where(*conditions).order_by(recurring_schedules.c.next_execution.asc())
        ).mappings().all()
        return [_with_categories(conn, row) for row in rows]


def schedule_categories(conn: Connection, schedule_id: int) -> list[dict]:
    rows = conn.execute(
        select(categories.c.id, categories.c.name)
        .select_from(
            recurring_schedule_categories.join(
                categories, categories.c.id == recurring_schedule_categories.c.category_id
            )
        )
        .where(
            recurring_schedule_categories.c.schedule_id == schedule_id,
            categories.c.deleted_at.is_(None),
        )
        .order_by(categories.c.id)
    ).mappings().all()
    return [dict(row) for row in rows]


def _validate_draft(draft: ScheduleDraft, default_timezone: str) -> dict:
    name = (draft.name or "").strip()
    if not name:
        raise ValidationError("Recurring schedule name required.")
    amount = Decimal(str(draft.amount))
    if amount <= 0:
        raise InvalidAmount("Recurring schedule amount must be greater than zero.")
    if draft.notification_lead_days is not None and draft.notification_lead_days < 0:
        raise ValidationError("Notification lead time cannot be negative.")
    if draft.next_execution is None:
        raise ValidationError("Recurring schedule requires a first execution time.")
    tz_name = validate_timezone(draft.timezone)
    next_execution = to_storage_time(draft.next_execution)
    # Month steps land on this day of the local calendar.
    anchor_day = to_local_time(next_execution, schedule_zone(tz_name, default_timezone)).day
    return {
        "account_id": draft.account_id,
        "name": name,
        "description": draft.description.strip() if draft.description else None,
        "kind": normalize_kind(draft.kind),
        "amount": round_money(amount),
        "currency": normalize_currency(draft.currency),
        "cadence": normalize_cadence(draft.cadence),
        "next_execution": next_execution,
        "anchor_day": anchor_day,
        "automatic_execution": bool(draft.automatic_execution),
        "email_notification": bool(draft.email_notification),
        "notification_lead_days": draft.notification_lead_days,
        "timezone": tz_name,
    }


def _ensure_account(conn: Connection, user_id: int, account_id: int) -> None:
    exists = conn.execute(
        select(accounts.c.id).where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
    ).first()
    if not exists:
        raise AccountNotFound("Account not found.")


def _replace_categories(conn: Connection, schedule_id: int, category_ids: list[int]) -> None:
    conn.execute(
        delete(recurring_schedule_categories).where(recurring_schedule_categories.c.schedule_id == schedule_id)
    )
    if category_ids:
        conn.execute(
            insert(recurring_schedule_categories),
            [{"schedule_id": schedule_id, "category_id": category_id} for category_id in category_ids],
        )


def _fetch_schedule(conn: Connection, user_id: int, schedule_id: int) -> dict:
    row = conn.execute(
        select(recurring_schedules).where(
            recurring_schedules.c.id == schedule_id,
            recurring_schedules.c.user_id == user_id,
        )
    ).mappings().first()
    if not row:
        raise ScheduleNotFound("Recurring schedule not found.")
    return _with_categories(conn, row)


def _with_categories(conn: Connection, row) -> dict:
    schedule = dict(row)
    schedule["category_ids"] = [category["id"] for category in schedule_categories(conn, schedule["id"])]
    return schedule
