import smtplib

import pytest

from fineguard.service.email import EmailService


@pytest.fixture
def captured(monkeypatch):
    service = EmailService(base_url="https://fines.laspinas.gov.ph/")
    outbox = []

    def fake_send(to_email, subject, html_body, text_body):
        outbox.append({"to": to_email, "subject": subject, "html": html_body, "text": text_body})
        return True

    monkeypatch.setattr(service, "_send_email", fake_send)
    return service, outbox


class TestSecurityEmails:
    def test_reset_email_quotes_configured_lifetime(self, captured):
        service, outbox = captured
        assert service.send_password_reset("juan@example.ph", "abc123", expires_minutes=30)

        message = outbox[0]
        assert "https://fines.laspinas.gov.ph/reset-password?token=abc123" in message["text"]
        assert "30 minutes" in message["text"]
        assert "30 minutes" in message["html"]

    def test_reset_email_follows_other_lifetimes(self, captured):
        service, outbox = captured
        service.send_password_reset("juan@example.ph", "abc123", expires_minutes=45)
        assert "45 minutes" in outbox[0]["text"]

    def test_verification_link(self, captured):
        service, outbox = captured
        service.send_email_verification("juan@example.ph", "tok", expires_minutes=24 * 60)
        assert "/verify-email?token=tok" in outbox[0]["text"]
        assert "24 hours" in outbox[0]["text"]

    def test_second_factor_notice(self, captured):
        service, outbox = captured
        service.send_second_factor_changed("juan@example.ph", enabled=False)
        assert outbox[0]["subject"] == "Two-factor authentication disabled"


class TestDevMode:
    def test_unconfigured_service_does_not_send(self):
        service = EmailService()
        assert service.is_configured is False
        assert service.send_password_reset("juan@example.ph", "tok", expires_minutes=30) is True


class FakeSMTP:
    instances = []
    refuse = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.credentials = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.credentials = (user, password)

    def send_message(self, message):
        if FakeSMTP.refuse:
            raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"mailbox unavailable")})
        self.sent.append(message)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.refuse = False
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _configured():
    return EmailService(
        smtp_host="smtp.laspinas.gov.ph",
        smtp_user="noreply@laspinas.gov.ph",
        smtp_password="app-password",
    )


class TestSmtpDelivery:
    def test_starttls_login_and_send(self, smtp):
        assert _configured().send_password_reset("juan@example.ph", "tok", expires_minutes=30)

        server = smtp.instances[0]
        assert server.started_tls is True
        assert server.credentials == ("noreply@laspinas.gov.ph", "app-password")
        message = server.sent[0]
        assert message["To"] == "juan@example.ph"
        assert message["From"] == "Las Pinas Traffic Portal <noreply@laspinas.gov.ph>"
        assert message["Subject"] == "Password reset request"

    def test_refused_recipient_reports_failure(self, smtp):
        smtp.refuse = True
        assert _configured().send_email_verification("juan@example.ph", "tok", expires_minutes=60) is False
