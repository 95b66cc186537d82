import unittest
from datetime import date, datetime
from decimal import Decimal
from http.client import RemoteDisconnected
from unittest import mock
from zoneinfo import ZoneInfo

from sqlalchemy import func, select

from finledger.db import recurring_schedules, schedule_runs, transactions
from finledger.emails import reminder_headline
from finledger.errors import NotificationDeliveryFailure
from finledger.mailer import BrevoMailer, EmailAddress, RecordingMailer
from finledger.notifications import ReminderService, is_reminder_due
from finledger.tests.support import add_account, add_schedule, add_user, balance_of, fetch_row, make_engine

SENDER = EmailAddress("noreply@example.com", "Finance")
UTC = ZoneInfo("UTC")


class FlakyMailer(RecordingMailer):
    """Fails for one recipient address."""

    def __init__(self, failing_email: str) -> None:
        super().__init__()
        self.failing_email = failing_email

    def send_email(self, sender, recipients, subject, html_body, text_body, tags=None) -> str:
        if any(recipient.email == self.failing_email for recipient in recipients):
            raise NotificationDeliveryFailure("mailbox unavailable")
        return super().send_email(sender, recipients, subject, html_body, text_body, tags)


class ReminderDateTests(unittest.TestCase):
    def test_monthly_default_lead_fires_three_days_before(self) -> None:
        schedule = {
            "cadence": "monthly",
            "notification_lead_days": None,
            "next_execution": datetime(2024, 3, 1, 10, 0),
            "timezone": None,
        }

        self.assertTrue(is_reminder_due(schedule, date(2024, 2, 27), UTC))
        self.assertFalse(is_reminder_due(schedule, date(2024, 2, 26), UTC))
        self.assertFalse(is_reminder_due(schedule, date(2024, 2, 28), UTC))

    def test_schedule_timezone_decides_the_calendar_day(self) -> None:
        # 22:30 UTC on Feb 29 is already Mar 1 in Bucharest.
        schedule = {
            "cadence": "monthly",
            "notification_lead_days": 1,
            "next_execution": datetime(2024, 2, 29, 22, 30),
            "timezone": "Europe/Bucharest",
        }

        self.assertTrue(is_reminder_due(schedule, date(2024, 2, 29), UTC))
        self.assertFalse(is_reminder_due(schedule, date(2024, 2, 28), UTC))

    def test_headline_depends_on_days_left(self) -> None:
        self.assertEqual(reminder_headline("expense", 1), "Expense Due Soon!")
        self.assertEqual(reminder_headline("expense", 3), "Expense Due This Week")
        self.assertEqual(reminder_headline("income", 7), "Upcoming Income")


class ReminderServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.sleeps = []

    def _service(self, mailer) -> ReminderService:
        return ReminderService(
            self.engine,
            mailer,
            SENDER,
            timezone_name="UTC",
            send_delay=0.2,
            sleep=self.sleeps.append,
        )

    def _schedule_for(self, email: str, **overrides) -> int:
        user_id = add_user(self.engine, email=email)
        account_id = add_account(self.engine, user_id)
        values = {"email_notification": True, "automatic_execution": False}
        values.update(overrides)
        return add_schedule(self.engine, user_id, account_id, datetime(2024, 3, 1, 10, 0), **values)

    def test_sends_only_on_the_reminder_day(self) -> None:
        mailer = RecordingMailer()
        self._schedule_for("ana@example.com")

        early = self._service(mailer).send_daily_reminders(today=date(2024, 2, 26))
        on_time = self._service(mailer).send_daily_reminders(today=date(2024, 2, 27))

        self.assertEqual((early.success, early.failed), (0, 0))
        self.assertEqual((on_time.success, on_time.failed), (1, 0))
        self.assertEqual(mailer.sent[0].recipients[0].email, "ana@example.com")
        self.assertEqual(mailer.sent[0].recipients[0].name, "Ana Pop")
        self.assertTrue(mailer.sent[0].subject.startswith("Expense Due This Week Rent"))
        self.assertEqual(self.sleeps, [0.2])

    def test_failed_send_is_counted_and_batch_continues(self) -> None:
        mailer = FlakyMailer("broken@example.com")
        self._schedule_for("broken@example.com")
        self._schedule_for("ok@example.com")

        result = self._service(mailer).send_daily_reminders(today=date(2024, 2, 27))

        self.assertEqual((result.success, result.failed), (1, 1))
        self.assertEqual([detail.status for detail in result.details], ["failed", "success"])
        self.assertEqual(result.details[0].error, "mailbox unavailable")
        self.assertEqual(len(mailer.sent), 1)

    def test_inactive_and_silent_schedules_are_ignored(self) -> None:
        mailer = RecordingMailer()
        self._schedule_for("a@example.com", is_active=False)
        self._schedule_for("b@example.com", email_notification=False)

        result = self._service(mailer).send_daily_reminders(today=date(2024, 2, 27))

        self.assertEqual((result.success, result.failed), (0, 0))
        self.assertEqual(mailer.sent, [])

    def test_dropped_mail_connection_is_counted_per_schedule(self) -> None:
        self._schedule_for("ana@example.com")
        self._schedule_for("ion@example.com")

        with mock.patch(
            "finledger.mailer.urlopen", side_effect=RemoteDisconnected("Remote end closed connection")
        ):
            result = self._service(BrevoMailer(api_key="key")).send_daily_reminders(today=date(2024, 2, 27))

        self.assertEqual((result.success, result.failed), (0, 2))
        self.assertEqual([detail.status for detail in result.details], ["failed", "failed"])

    def test_reminder_leaves_schedule_and_balance_untouched(self) -> None:
        user_id = add_user(self.engine)
        account_id = add_account(self.engine, user_id, balance="1000")
        schedule_id = add_schedule(
            self.engine,
            user_id,
            account_id,
            datetime(2024, 3, 1, 10, 0),
            automatic_execution=True,
            email_notification=True,
        )

        result = self._service(RecordingMailer()).send_daily_reminders(today=date(2024, 2, 27))

        self.assertEqual(result.success, 1)
        schedule = fetch_row(self.engine, recurring_schedules, schedule_id)
        self.assertEqual(schedule["next_execution"], datetime(2024, 3, 1, 10, 0))
        self.assertTrue(schedule["is_active"])
        self.assertEqual(balance_of(self.engine, account_id), Decimal("1000.00"))
        with self.engine.begin() as conn:
            self.assertEqual(conn.execute(select(func.count()).select_from(transactions)).scalar_one(), 0)
            self.assertEqual(conn.execute(select(func.count()).select_from(schedule_runs)).scalar_one(), 0)

    def test_today_is_taken_in_each_schedule_timezone(self) -> None:
        # Due 09:00 on 1 Mar in Auckland (UTC+13), reminder one local day earlier.
        user_id = add_user(self.engine)
        account_id = add_account(self.engine, user_id)
        add_schedule(
            self.engine,
            user_id,
            account_id,
            datetime(2024, 2, 29, 20, 0),
            email_notification=True,
            notification_lead_days=1,
            timezone="Pacific/Auckland",
        )

        def service_at(moment: datetime) -> ReminderService:
            return ReminderService(
                self.engine,
                mailer,
                SENDER,
                timezone_name="UTC",
                send_delay=0,
                clock=lambda: moment,
            )

        mailer = RecordingMailer()
        before = service_at(datetime(2024, 2, 28, 10, 0, tzinfo=UTC)).send_daily_reminders()
        after = service_at(datetime(2024, 2, 28, 12, 0, tzinfo=UTC)).send_daily_reminders()

        self.assertEqual(before.success, 0)
        self.assertEqual(after.success, 1)
        self.assertTrue(mailer.sent[0].subject.startswith("Expense Due Soon! Rent"))


if __name__ == "__main__":
    unittest.main()
