"""Passcode email delivery."""

import smtplib

from sessionward.service.email import EmailService


def _configured(**overrides):
    params = {
        "smtp_host": "smtp.example.com",
        "smtp_user": "mailer@example.com",
        "smtp_password": "pw",
        "from_email": "no-reply@example.com",
    }
    params.update(overrides)
    return EmailService(**params)


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self, monkeypatch):
        service = EmailService()

        def fail(msg, to):
            raise AssertionError("no smtp expected")

        monkeypatch.setattr(service, "_deliver", fail)
        assert service.is_configured is False
        assert service.send_otp("user@example.com", "123456") is True

    def test_delivers_code_in_both_parts(self, monkeypatch):
        service = _configured()
        delivered = []
        monkeypatch.setattr(service, "_deliver", lambda msg, to: delivered.append((msg, to)))

        assert service.send_otp("user@example.com", "654321") is True

        msg, to = delivered[0]
        assert to == "user@example.com"
        assert msg["From"] == "Sessionward <no-reply@example.com>"
        plain, html = msg.get_payload()
        assert "654321" in plain.get_payload()
        assert "654321" in html.get_payload()

    def test_smtp_failures_return_false(self, monkeypatch):
        service = _configured()

        def refuse(msg, to):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

        monkeypatch.setattr(service, "_deliver", refuse)
        assert service.send_otp("user@example.com", "123456") is False

    def test_connection_errors_return_false(self, monkeypatch):
        service = _configured()

        def unreachable(msg, to):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(service, "_deliver", unreachable)
        assert service.send_otp("user@example.com", "123456") is False

    def test_sender_defaults_to_smtp_user(self):
        service = EmailService(smtp_host="smtp.example.com", smtp_user="mailer@example.com")
        assert service.from_email == "mailer@example.com"
        assert service.is_configured

    def test_redact_email(self):
        assert EmailService._redact_email("alice@example.com") == "al***@example.com"
        assert EmailService._redact_email("nonsense") == "redacted"
