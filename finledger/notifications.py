from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
import time
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.engine import Engine

from finledger.db import accounts, unit_of_work, users
from finledger.emails import render_reminder
from finledger.errors import LedgerError
from finledger.mailer import EmailAddress, Mailer, recipient_for
from finledger.schedules import lead_days_for, schedule_categories, select_reminder_candidates, to_local_time

logger = structlog.get_logger(__name__)


def local_date(moment: datetime, tz: ZoneInfo) -> date:
    """Calendar date of a stored (naive UTC) or aware timestamp in ``tz``."""
    return to_local_time(moment, tz).date()


def reminder_date(next_execution: datetime, lead_days: int, tz: ZoneInfo) -> date:
    return local_date(next_execution, tz) - timedelta(days=lead_days)


def is_reminder_due(schedule: dict, today: date, default_tz: ZoneInfo) -> bool:
    if not schedule.get("next_execution"):
        return False
    tz = ZoneInfo(schedule["timezone"]) if schedule.get("timezone") else default_tz
    return reminder_date(schedule["next_execution"], lead_days_for(schedule), tz) == today


@dataclass
class NotificationDetail:
    schedule_id: int
    name: str
    email: Optional[str]
    kind: str
    status: str
    error: Optional[str] = None


@dataclass
class NotificationResult:
    success: int = 0
    failed: int = 0
    details: list[NotificationDetail] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class ReminderService:
    """Sends "payment coming due" reminders; never touches the ledger."""

    def __init__(
        self,
        engine: Engine,
        mailer: Mailer,
        sender: EmailAddress,
        timezone_name: str = "UTC",
        send_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._engine = engine
        self._mailer = mailer
        self._sender = sender
        self._tz = ZoneInfo(timezone_name)
        self._send_delay = send_delay
        self._sleep = sleep
        self._clock = clock

    def send_daily_reminders(self, today: Optional[date] = None) -> NotificationResult:
        """Email every schedule whose reminder day is today.

        Without an explicit ``today`` each schedule is judged against the
        current date in its own timezone.
        """
        now = self._clock()
        result = NotificationResult()
        with unit_of_work(self._engine) as conn:
            candidates = select_reminder_candidates(conn)
        logger.info("reminder_candidates_found", count=len(candidates), today=today.isoformat() if today else None)

        for schedule in candidates:
            local_today = today or now.astimezone(self._zone_for(schedule)).date()
            if not is_reminder_due(schedule, local_today, self._tz):
                continue
            detail = NotificationDetail(
                schedule_id=schedule["id"],
                name=schedule["name"],
                email=None,
                kind=schedule["kind"],
                status="success",
            )
            try:
                detail.email = self._send_reminder(schedule, local_today)
            except LedgerError as exc:
                detail.status = "failed"
                detail.error = str(exc)
                result.failed += 1
                result.details.append(detail)
                logger.error("reminder_failed", schedule_id=schedule["id"], error=detail.error)
                continue
            result.success += 1
            result.details.append(detail)
            logger.info("reminder_sent", schedule_id=schedule["id"], lead_days=lead_days_for(schedule))
            if self._send_delay > 0:
                self._sleep(self._send_delay)

        logger.info("reminders_completed", success=result.success, failed=result.failed)
        return result

    def _zone_for(self, schedule: dict) -> ZoneInfo:
        return ZoneInfo(schedule["timezone"]) if schedule.get("timezone") else self._tz

    def _send_reminder(self, schedule: dict, today: date) -> str:
        with unit_of_work(self._engine) as conn:
            user = conn.execute(select(users).where(users.c.id == schedule["user_id"])).mappings().first()
            account_name = conn.execute(
                select(accounts.c.name).where(accounts.c.id == schedule["account_id"])
            ).scalar_one_or_none()
            category_names = [category["name"] for category in schedule_categories(conn, schedule["id"])]
        if not user:
            raise LedgerError(f"No recipient for schedule {schedule['id']}")

        due_date = local_date(schedule["next_execution"], self._zone_for(schedule))
        content = render_reminder(
            schedule,
            account_name=account_name or "your",
            category_names=category_names,
            due_date=due_date,
            days_until_due=(due_date - today).days,
        )
        self._mailer.send_email(
            self._sender,
            [recipient_for(user)],
            content.subject,
            content.html_body,
            content.text_body,
            tags=content.tags,
        )
        return user["email"]
