import json
import smtplib

import httpx
import pytest

from conftest import make_settings
from mailgate.service import email as email_module
from mailgate.service.email import (
    LogEmailSender,
    MockEmailSender,
    SendGridEmailSender,
    SmtpEmailSender,
    build_email_sender,
    build_login_code_message,
)


def test_login_code_message_contains_code():
    message = build_login_code_message("482913", 10, "Acme")

    assert message.subject == "Your login code"
    assert "482913" in message.html_body
    assert "482913" in message.text_body
    assert "10 minutes" in message.text_body
    assert "Acme" in message.html_body


def test_mock_sender_records_outbox():
    sender = MockEmailSender()
    assert sender.send("a@example.com", "s1", "<p>1</p>", "1")
    assert sender.send("a@example.com", "s2", "<p>2</p>")

    assert len(sender.outbox) == 2
    assert sender.last_to("a@example.com").subject == "s2"
    assert sender.last_to("b@example.com") is None

    sender.fail_next = True
    assert sender.send("a@example.com", "s3", "<p>3</p>") is False
    assert sender.send("a@example.com", "s4", "<p>4</p>") is True

    sender.clear()
    assert sender.outbox == []


def test_log_sender_always_succeeds():
    assert LogEmailSender().send("a@example.com", "subject", "<p>body</p>") is True


def test_sendgrid_posts_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(202)

    sender = SendGridEmailSender(
        api_key="SG.key",
        from_email="noreply@example.com",
        from_name="Acme",
        transport=httpx.MockTransport(handler),
    )
    assert sender.send("a@example.com", "Your login code", "<p>123456</p>", "123456")

    assert captured["url"] == SendGridEmailSender.API_URL
    assert captured["auth"] == "Bearer SG.key"
    body = captured["body"]
    assert body["personalizations"] == [{"to": [{"email": "a@example.com"}]}]
    assert body["from"] == {"email": "noreply@example.com", "name": "Acme"}
    assert [c["type"] for c in body["content"]] == ["text/plain", "text/html"]


def test_sendgrid_rejection_returns_false():
    sender = SendGridEmailSender(
        api_key="SG.key",
        from_email="noreply@example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(401)),
    )
    assert sender.send("a@example.com", "s", "<p>b</p>") is False


def test_sendgrid_network_error_returns_false():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    sender = SendGridEmailSender(
        api_key="SG.key",
        from_email="noreply@example.com",
        transport=httpx.MockTransport(handler),
    )
    assert sender.send("a@example.com", "s", "<p>b</p>") is False


class FakeSMTP:
    instances = []
    fail_login = False

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, user, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")
        self.calls.append(("login", user))

    def sendmail(self, from_addr, to_addr, msg):
        self.calls.append(("sendmail", from_addr, to_addr))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _smtp_sender():
    return SmtpEmailSender(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )


def test_smtp_sender_uses_starttls(fake_smtp):
    assert _smtp_sender().send("a@example.com", "s", "<p>b</p>", "b") is True

    server = fake_smtp.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.calls == [
        "starttls",
        ("login", "mailer"),
        ("sendmail", "noreply@example.com", "a@example.com"),
    ]


def test_smtp_auth_failure_returns_false(fake_smtp):
    fake_smtp.fail_login = True
    assert _smtp_sender().send("a@example.com", "s", "<p>b</p>") is False


def test_build_email_sender_selects_provider():
    assert isinstance(build_email_sender(make_settings(email_provider="mock")), MockEmailSender)
    assert isinstance(build_email_sender(make_settings(email_provider="log")), LogEmailSender)
    assert isinstance(
        build_email_sender(
            make_settings(
                email_provider="sendgrid",
                sendgrid_api_key="SG.key",
                email_from_address="noreply@example.com",
            )
        ),
        SendGridEmailSender,
    )
    assert isinstance(
        build_email_sender(
            make_settings(
                email_provider="smtp",
                smtp_host="smtp.example.com",
                email_from_address="noreply@example.com",
            )
        ),
        SmtpEmailSender,
    )


@pytest.mark.parametrize("provider", ["smtp", "sendgrid"])
def test_build_email_sender_requires_credentials(provider):
    with pytest.raises(ValueError):
        build_email_sender(make_settings(email_provider=provider))
