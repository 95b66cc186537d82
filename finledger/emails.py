from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from html import escape
from typing import Optional, Sequence


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html_body: str
    text_body: str
    tags: tuple[str, ...] = ()


def _signed_amount(schedule: dict) -> str:
    sign = "+" if schedule["kind"] == "income" else "-"
    return f"{sign}{schedule['amount']} {schedule['currency']}"


def _category_label(category_names: Sequence[str]) -> str:
    return ", ".join(category_names) or "Uncategorized"


def _rows_html(rows: Sequence[tuple[str, str]]) -> str:
    return "".join(
        f'<tr><td style="padding: 8px 0; font-weight: bold;">{escape(label)}:</td>'
        f'<td style="padding: 8px 0; text-align: right;">{escape(value)}</td></tr>'
        for label, value in rows
    )


def _wrap_html(color: str, title: str, heading: str, lead: str, rows: Sequence[tuple[str, str]], footer: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<div style="background-color: {color}; padding: 20px; text-align: center;">'
        f'<h1 style="color: white; margin: 0; font-size: 20px;">{escape(title)}</h1></div>'
        f'<div style="padding: 30px;"><h2 style="margin-top: 0;">{escape(heading)}</h2>'
        f'<p style="font-size: 16px;">{escape(lead)}</p>'
        f'<table style="width: 100%; border-collapse: collapse;">{_rows_html(rows)}</table></div>'
        f'<div style="background-color: #f5f5f5; padding: 20px; text-align: center; color: #888; font-size: 12px;">'
        f"{escape(footer)}</div></div>"
    )


def _wrap_text(title: str, heading: str, lead: str, rows: Sequence[tuple[str, str]], footer: str) -> str:
    lines = [title, "", heading]
    lines.extend(f"{label}: {value}" for label, value in rows)
    lines.extend(["", lead, "", footer])
    return "\n".join(lines)


def render_confirmation(
    schedule: dict,
    account_name: str,
    transaction_id: int,
    category_names: Sequence[str],
    executed_at: datetime,
    next_execution: Optional[datetime],
) -> EmailContent:
    """Confirmation sent after an automatic run has committed."""
    is_income = schedule["kind"] == "income"
    type_text = "Income" if is_income else "Expense"
    action_text = "received in" if is_income else "deducted from"
    title = f"Automatic {type_text} Processed"
    lead = f"{_signed_amount(schedule)} has been automatically {action_text} your {account_name} account."
    rows = [
        ("Transaction ID", f"#{transaction_id}"),
        ("Amount", _signed_amount(schedule)),
        ("Date", executed_at.strftime("%a, %b %d, %Y %H:%M")),
        ("Account", account_name),
        ("Type", type_text),
        ("Categories", _category_label(category_names)),
        ("Frequency", schedule["cadence"]),
    ]
    if schedule.get("description"):
        rows.append(("Description", schedule["description"]))
    if next_execution is not None:
        rows.append((f"Next automatic {type_text.lower()}", next_execution.strftime("%A, %B %d, %Y")))
    footer = f"This is an automated confirmation for your recurring {type_text.lower()}."
    color = "#28a745" if is_income else "#dc3545"
    return EmailContent(
        subject=f"{title} - {schedule['name']}",
        html_body=_wrap_html(color, title, schedule["name"], lead, rows, footer),
        text_body=_wrap_text(title, schedule["name"], lead, rows, footer),
        tags=(f"automatic-{schedule['kind']}", f"transaction-{transaction_id}", schedule["cadence"]),
    )


def reminder_headline(kind: str, days_until_due: int) -> str:
    if kind == "income":
        if days_until_due <= 1:
            return "Income Due Soon!"
        return "Income This Week" if days_until_due <= 3 else "Upcoming Income"
    if days_until_due <= 1:
        return "Expense Due Soon!"
    return "Expense Due This Week" if days_until_due <= 3 else "Upcoming Expense"


def render_reminder(
    schedule: dict,
    account_name: str,
    category_names: Sequence[str],
    due_date: date,
    days_until_due: int,
) -> EmailContent:
    is_income = schedule["kind"] == "income"
    headline = reminder_headline(schedule["kind"], days_until_due)
    lead = (
        "You will receive this income in your account"
        if is_income
        else "Ensure sufficient funds are available in your account"
    )
    rows = [
        ("Amount", _signed_amount(schedule)),
        ("Due date", due_date.strftime("%A, %B %d, %Y")),
        ("Days until due", str(days_until_due)),
        ("Account", account_name),
        ("Categories", _category_label(category_names)),
        ("Frequency", schedule["cadence"]),
    ]
    if schedule.get("automatic_execution"):
        rows.append(("Automatic", "Yes, this will be processed automatically"))
    footer = f"You are receiving this because reminders are enabled for {schedule['name']}."
    if is_income:
        color = "#28a745" if days_until_due <= 1 else "#17a2b8"
    else:
        color = "#dc3545" if days_until_due <= 1 else "#fd7e14"
    return EmailContent(
        subject=f"{headline} {schedule['name']} - {schedule['amount']} {schedule['currency']}",
        html_body=_wrap_html(color, headline, schedule["name"], lead, rows, footer),
        text_body=_wrap_text(headline, schedule["name"], lead, rows, footer),
        tags=(f"reminder-{schedule['kind']}", schedule["cadence"]),
    )
