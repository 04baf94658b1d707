from mailgate.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    mask_email,
    mask_ip,
    mask_key,
    mask_token,
    set_correlation_id,
)


def test_mask_email():
    assert mask_email("johndoe@example.com") == "jo***@example.com"
    assert mask_email("a@example.com") == "a***@example.com"
    assert mask_email("no-at-sign") == "redacted"
    assert mask_email(None) == "redacted"


def test_mask_ip():
    assert mask_ip("203.0.113.7") == "203.0.113.***"
    assert mask_ip("2001:db8:85a3:0:0:8a2e:370:7334") == "2001:db8:85a3:***"
    assert mask_ip("testclient") == "***"
    assert mask_ip(None) == "unknown"


def test_mask_token():
    assert mask_token("abcdefghijklmnopqrstuvwxyz") == "abcdef***wxyz"
    assert mask_token("short") == "***"
    assert mask_token("") == "redacted"


def test_mask_key():
    assert mask_key("otp_request:email:johndoe@example.com") == "otp_request:email:jo***@example.com"
    assert mask_key("otp_verify:origin:203.0.113.7") == "otp_verify:origin:203.0.113.***"
    assert (
        mask_key("otp_request:origin:2001:db8:85a3::8a2e:370:7334")
        == "otp_request:origin:2001:db8:85a3:***"
    )
    assert mask_key(None) == "redacted"


def test_redact_pii_masks_secret_fields():
    event = {
        "event": "login",
        "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.signature",
        "code": "123456",
        "already": "x",
        "api_key": "ab***cd",
        "error_code": "OTP_INVALID",
    }
    redacted = _redact_pii(None, "info", dict(event))

    assert redacted["event"] == "login"
    assert redacted["refresh_token"] == "eyJhbG***ture"
    assert redacted["code"] == "***"
    assert redacted["already"] == "x"
    assert redacted["api_key"] == "ab***cd"
    assert redacted["error_code"] == "OTP_INVALID"


def test_correlation_id_processor():
    cid = set_correlation_id("req-42")
    assert cid == get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"

    generated = set_correlation_id()
    assert generated and generated != "req-42"
