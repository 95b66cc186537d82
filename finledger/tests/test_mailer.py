import io
import json
import unittest
from http.client import IncompleteRead, RemoteDisconnected
from unittest import mock
from urllib.error import HTTPError, URLError

from finledger.errors import NotificationDeliveryFailure
from finledger.mailer import BrevoMailer, EmailAddress, recipient_for

SENDER = EmailAddress("noreply@example.com", "Finance")


def fake_response(payload: dict) -> mock.MagicMock:
    response = mock.MagicMock()
    response.read.return_value = json.dumps(payload).encode("utf-8")
    response.__enter__.return_value = response
    return response


class BrevoMailerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.mailer = BrevoMailer(api_key="key-123", timeout_seconds=3)

    def test_requires_api_key(self) -> None:
        with self.assertRaises(ValueError):
            BrevoMailer(api_key="")

    def test_send_posts_payload_with_timeout(self) -> None:
        with mock.patch("finledger.mailer.urlopen", return_value=fake_response({"messageId": "<abc>"})) as urlopen:
            message_id = self.mailer.send_email(
                SENDER,
                [EmailAddress("ana@example.com", "Ana")],
                "Hello",
                "<p>Hi</p>",
                "Hi",
                tags=["reminder-expense"],
            )

        self.assertEqual(message_id, "<abc>")
        request = urlopen.call_args.args[0]
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 3)
        self.assertEqual(request.full_url, "https://api.brevo.com/v3/smtp/email")
        self.assertEqual(request.get_header("Api-key"), "key-123")
        body = json.loads(request.data)
        self.assertEqual(body["to"], [{"email": "ana@example.com", "name": "Ana"}])
        self.assertEqual(body["tags"], ["reminder-expense"])

    def test_http_error_becomes_delivery_failure(self) -> None:
        error = HTTPError(
            "https://api.brevo.com/v3/smtp/email",
            400,
            "Bad Request",
            {},
            io.BytesIO(b'{"message": "invalid sender"}'),
        )
        with mock.patch("finledger.mailer.urlopen", side_effect=error):
            with self.assertRaises(NotificationDeliveryFailure) as ctx:
                self.mailer.send_email(SENDER, [SENDER], "s", "h", "t")

        self.assertIn("invalid sender", str(ctx.exception))

    def test_timeout_becomes_delivery_failure(self) -> None:
        with mock.patch("finledger.mailer.urlopen", side_effect=URLError(TimeoutError("timed out"))):
            with self.assertRaises(NotificationDeliveryFailure):
                self.mailer.send_email(SENDER, [SENDER], "s", "h", "t")

    def test_dropped_connection_becomes_delivery_failure(self) -> None:
        with mock.patch("finledger.mailer.urlopen", side_effect=RemoteDisconnected("Remote end closed connection")):
            with self.assertRaises(NotificationDeliveryFailure):
                self.mailer.send_email(SENDER, [SENDER], "s", "h", "t")

    def test_broken_response_body_becomes_delivery_failure(self) -> None:
        for error in (ConnectionResetError("reset by peer"), IncompleteRead(b"{")):
            response = fake_response({})
            response.read.side_effect = error
            with mock.patch("finledger.mailer.urlopen", return_value=response):
                with self.assertRaises(NotificationDeliveryFailure):
                    self.mailer.send_email(SENDER, [SENDER], "s", "h", "t")

    def test_missing_message_id(self) -> None:
        with mock.patch("finledger.mailer.urlopen", return_value=fake_response({})):
            with self.assertRaises(NotificationDeliveryFailure):
                self.mailer.send_email(SENDER, [SENDER], "s", "h", "t")

    def test_connection_check_reports_failure(self) -> None:
        with mock.patch("finledger.mailer.urlopen", side_effect=URLError("down")):
            self.assertFalse(self.mailer.test_connection())


class RecipientTests(unittest.TestCase):
    def test_recipient_name_from_user(self) -> None:
        self.assertEqual(
            recipient_for({"email": "a@b.c", "first_name": "Ana", "last_name": None}),
            EmailAddress("a@b.c", "Ana"),
        )
        self.assertIsNone(recipient_for({"email": "a@b.c", "first_name": None, "last_name": None}).name)


if __name__ == "__main__":
    unittest.main()
