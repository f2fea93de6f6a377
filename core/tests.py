import smtplib
from datetime import datetime
from unittest import mock

from django.core import mail
from django.core.exceptions import ObjectDoesNotExist, PermissionDenied, ValidationError
from django.http import JsonResponse
from django.test import RequestFactory, SimpleTestCase, override_settings
from django.utils import timezone

from .exceptions import (
    AlreadyProvisionedError,
    ExternalServiceError,
    Forbidden,
    NotFoundError,
    PaymentNotCompletedError,
    Unauthorized,
)
from .http import json_view, parse_json_body
from .mail import send_credentials_email, send_email, send_expiration_reminder_email


class JsonViewTests(SimpleTestCase):
    def setUp(self):
        self.request = RequestFactory().get("/api/test/")

    def _status_for(self, exc):
        @json_view
        def view(request):
            raise exc

        return view(self.request)

    def test_error_taxonomy(self):
        cases = [
            (ValidationError("bad input"), 400),
            (Unauthorized(), 401),
            (Forbidden(), 403),
            (PermissionDenied(), 403),
            (NotFoundError(), 404),
            (ObjectDoesNotExist(), 404),
            (AlreadyProvisionedError(), 409),
            (PaymentNotCompletedError(), 409),
            (ExternalServiceError("gateway down"), 502),
        ]
        for exc, status in cases:
            with self.subTest(exc=type(exc).__name__):
                self.assertEqual(self._status_for(exc).status_code, status)

    def test_validation_message_is_returned(self):
        response = self._status_for(ValidationError("金額が正しくありません"))
        self.assertJSONEqual(response.content, {"error": "金額が正しくありません"})

    def test_unexpected_errors_do_not_leak(self):
        with self.assertLogs("core.http", level="ERROR"):
            response = self._status_for(RuntimeError("db password is hunter2"))
        self.assertEqual(response.status_code, 500)
        self.assertJSONEqual(response.content, {"error": "internal error"})

    def test_success_passes_through(self):
        @json_view
        def view(request):
            return JsonResponse({"ok": True})

        self.assertEqual(view(self.request).status_code, 200)


class RequestHelperTests(SimpleTestCase):
    def test_parse_json_body(self):
        factory = RequestFactory()
        self.assertEqual(parse_json_body(factory.post("/", data='{"a": 1}', content_type="application/json")), {"a": 1})
        self.assertEqual(parse_json_body(factory.post("/", data="", content_type="application/json")), {})
        for raw in ("{", "[1, 2]"):
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationError):
                    parse_json_body(factory.post("/", data=raw, content_type="application/json"))


@override_settings(
    EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend",
    DEFAULT_FROM_EMAIL="noreply@12skins.example",
    SITE_BASE_URL="https://12skins.example",
)
class MailTests(SimpleTestCase):
    def test_send_email_adds_html_alternative(self):
        send_email(to="a@example.com", subject="件名", text="1行目\n<2行目>")

        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.from_email, "noreply@12skins.example")
        html, mimetype = message.alternatives[0]
        self.assertEqual(mimetype, "text/html")
        self.assertIn("&lt;2行目&gt;", html)

    def test_transport_failure(self):
        with mock.patch(
            "django.core.mail.EmailMultiAlternatives.send",
            side_effect=smtplib.SMTPServerDisconnected("gone"),
        ):
            with self.assertRaises(ExternalServiceError):
                send_email(to="a@example.com", subject="s", text="t")

    def test_empty_recipient(self):
        with self.assertRaises(ExternalServiceError):
            send_email(to=" ", subject="s", text="t")

    def test_credentials_email(self):
        expires = timezone.make_aware(datetime(2025, 7, 31, 10, 0))
        send_credentials_email(
            name="山田",
            email="yamada@example.com",
            username="user_1a2b3c4d",
            password="0123456789abcdef",
            expires_at=expires,
        )

        body = mail.outbox[0].body
        self.assertIn("山田様", body)
        self.assertIn("user_1a2b3c4d", body)
        self.assertIn("0123456789abcdef", body)
        self.assertIn("https://12skins.example/login", body)
        self.assertIn("2025年07月31日", body)

    def test_expiration_reminder_email(self):
        expires = timezone.make_aware(datetime(2025, 3, 31, 9, 0))
        send_expiration_reminder_email(name="佐藤", email="sato@example.com", expires_at=expires)

        self.assertEqual(mail.outbox[0].to, ["sato@example.com"])
        self.assertIn("2025年03月31日", mail.outbox[0].body)
