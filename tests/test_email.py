import smtplib

from vendorportal.config import Settings
from vendorportal.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _service(**overrides):
    params = {
        "smtp_host": "smtp.example",
        "smtp_user": "mailer",
        "smtp_password": "pw",
        "from_email": "noreply@elika.example",
        "frontend_url": "https://portal.example/",
    }
    params.update(overrides)
    return EmailService(**params)


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def _no_smtp(*args, **kwargs):
        raise AssertionError("SMTP must not be used without a host")

    monkeypatch.setattr(smtplib, "SMTP", _no_smtp)
    service = EmailService()
    assert service.is_configured is False
    assert service.send_password_reset("someone@example.com", "tok") is True


def test_verification_mail_contains_link(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    assert _service().send_email_verification("vendor@example.com", "abc123") is True

    smtp = FakeSMTP.instances[0]
    assert smtp.host == "smtp.example"
    assert smtp.logged_in == ("mailer", "pw")
    _, to_addr, message = smtp.sent[0]
    assert to_addr == "vendor@example.com"
    assert "https://portal.example/verify-email?token=abc123" in message


def test_reset_mail_link(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    _service().send_password_reset("vendor@example.com", "r3s3t")
    assert "/reset-password?token=r3s3t" in FakeSMTP.instances[0].sent[0][2]


def test_smtp_failure_returns_false(monkeypatch):
    class RefusingSMTP(FakeSMTP):
        def sendmail(self, from_addr, to_addr, message):
            raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})

    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
    assert _service().send_two_factor_enabled("vendor@example.com") is False


def test_connection_error_returns_false(monkeypatch):
    def _refuse(*args, **kwargs):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(smtplib, "SMTP", _refuse)
    assert _service().send_password_changed("vendor@example.com") is False


def test_from_settings():
    settings = Settings(
        jwt_secret="x" * 40,
        smtp_host="mail.example",
        email_from_address="portal@elika.example",
        frontend_url="https://portal.example",
    )
    service = EmailService.from_settings(settings)
    assert service.is_configured is True
    assert service.frontend_url == "https://portal.example"
