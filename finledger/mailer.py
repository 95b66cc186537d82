from __future__ import annotations

from dataclasses import dataclass, field
from http.client import HTTPException
import json
from typing import Optional, Protocol, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
import uuid

import structlog

from finledger.errors import NotificationDeliveryFailure

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailAddress:
    email: str
    name: Optional[str] = None

    def as_payload(self) -> dict:
        payload = {"email": self.email}
        if self.name:
            payload["name"] = self.name
        return payload


def recipient_for(user: dict) -> EmailAddress:
    name = " ".join(part for part in (user.get("first_name"), user.get("last_name")) if part)
    return EmailAddress(user["email"], name or None)


class Mailer(Protocol):
    def send_email(
        self,
        sender: EmailAddress,
        recipients: Sequence[EmailAddress],
        subject: str,
        html_body: str,
        text_body: str,
        tags: Optional[Sequence[str]] = None,
    ) -> str: ...


@dataclass
class BrevoMailer:
    """Transactional email through the Brevo v3 API.

    Every request carries ``timeout_seconds`` so a stalled provider fails
    fast instead of holding up the rest of a batch.
    """

    api_key: str
    base_url: str = "https://api.brevo.com/v3"
    timeout_seconds: float = 10

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("Brevo API key is required")

    def send_email(
        self,
        sender: EmailAddress,
        recipients: Sequence[EmailAddress],
        subject: str,
        html_body: str,
        text_body: str,
        tags: Optional[Sequence[str]] = None,
    ) -> str:
        payload = {
            "sender": sender.as_payload(),
            "to": [recipient.as_payload() for recipient in recipients],
            "subject": subject,
            "htmlContent": html_body,
            "textContent": text_body,
        }
        if tags:
            payload["tags"] = list(tags)
        body = self._request("POST", "/smtp/email", payload)
        message_id = body.get("messageId") if isinstance(body, dict) else None
        if not message_id:
            raise NotificationDeliveryFailure("Brevo response missing messageId")
        return message_id

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/account")
        except NotificationDeliveryFailure as exc:
            logger.warning("brevo_connection_failed", error=str(exc))
            return False
        return True

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = Request(
            f"{self.base_url}{path}",
            data=data,
            method=method,
            headers={
                "accept": "application/json",
                "api-key": self.api_key,
                "content-type": "application/json",
            },
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = _error_message(exc)
            logger.error("brevo_api_error", status=exc.code, message=detail)
            raise NotificationDeliveryFailure(f"Failed to send email via Brevo: {detail}") from exc
        except (URLError, OSError, HTTPException) as exc:
            raise NotificationDeliveryFailure(f"Failed to reach Brevo: {exc}") from exc
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise NotificationDeliveryFailure("Brevo returned an unreadable response") from exc


def _error_message(exc: HTTPError) -> str:
    try:
        body = json.loads(exc.read() or b"{}")
    except (json.JSONDecodeError, OSError):
        return exc.reason or f"HTTP {exc.code}"
    return body.get("message") or exc.reason or f"HTTP {exc.code}"


@dataclass(frozen=True)
class SentEmail:
    message_id: str
    sender: EmailAddress
    recipients: tuple[EmailAddress, ...]
    subject: str
    html_body: str
    text_body: str
    tags: tuple[str, ...]


@dataclass
class RecordingMailer:
    """Keeps messages in memory; used when no provider key is configured."""

    sent: list[SentEmail] = field(default_factory=list)

    def send_email(
        self,
        sender: EmailAddress,
        recipients: Sequence[EmailAddress],
        subject: str,
        html_body: str,
        text_body: str,
        tags: Optional[Sequence[str]] = None,
    ) -> str:
        message_id = f"<{uuid.uuid4()}@local>"
        self.sent.append(
            SentEmail(
                message_id=message_id,
                sender=sender,
                recipients=tuple(recipients),
                subject=subject,
                html_body=html_body,
                text_body=text_body,
                tags=tuple(tags or ()),
            )
        )
        logger.info("email_recorded", subject=subject, recipients=[r.email for r in recipients])
        return message_id
