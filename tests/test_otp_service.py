"""Unit tests for one-time code issuance and verification."""

import pytest

from conftest import FixedRandomSource, FrozenClock, make_settings
from mailgate.service.errors import (
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpInvalidError,
    OtpNotFoundError,
)
from mailgate.service.otp import OtpService, SecureRandomSource
from mailgate.storage.memory import MemoryStore

EMAIL = "user@example.com"


@pytest.fixture
def otp_clock():
    return FrozenClock()


@pytest.fixture
def otp_store():
    return MemoryStore()


@pytest.fixture
def otp(otp_store, otp_clock):
    return OtpService(
        otp_store,
        make_settings(),
        clock=otp_clock,
        random_source=FixedRandomSource("123456", "654321"),
    )


def test_secure_random_source_returns_digits():
    digits = SecureRandomSource().secure_digits(8)
    assert len(digits) == 8
    assert digits.isdigit()


def test_issue_stores_only_hash(otp, otp_store):
    code = otp.issue(EMAIL)

    record = otp_store.get_otp(EMAIL)
    assert code == "123456"
    assert record.code_hash != code
    assert record.code_hash.startswith("$argon2id$")
    assert record.attempts == 0
    assert not record.is_used


def test_issue_sets_expiry_from_ttl(otp, otp_store, otp_clock):
    otp.issue(EMAIL)
    record = otp_store.get_otp(EMAIL)
    assert (record.expires_at - otp_clock.now()).total_seconds() == 600


def test_verify_accepts_correct_code_once(otp, otp_store):
    code = otp.issue(EMAIL)

    record = otp.verify(EMAIL, code)
    assert record.email == EMAIL
    assert otp_store.get_otp(EMAIL).is_used

    with pytest.raises(OtpInvalidError):
        otp.verify(EMAIL, code)


def test_verify_without_issued_code():
    service = OtpService(MemoryStore(), make_settings(), clock=FrozenClock())
    with pytest.raises(OtpNotFoundError) as exc:
        service.verify(EMAIL, "123456")
    assert exc.value.error_code == "OTP_NOT_FOUND"


def test_verify_expired_code_is_removed(otp, otp_store, otp_clock):
    code = otp.issue(EMAIL)
    otp_clock.advance(minutes=10, seconds=1)

    with pytest.raises(OtpExpiredError):
        otp.verify(EMAIL, code)
    assert otp_store.get_otp(EMAIL) is None


def test_code_is_still_valid_at_exact_expiry(otp, otp_clock):
    code = otp.issue(EMAIL)
    otp_clock.advance(minutes=10)
    assert otp.verify(EMAIL, code)


def test_wrong_code_reports_remaining_attempts(otp, otp_store):
    otp.issue(EMAIL)

    with pytest.raises(OtpInvalidError) as exc:
        otp.verify(EMAIL, "000000")
    assert exc.value.detail == {"attempts_remaining": 4}
    assert otp_store.get_otp(EMAIL).attempts == 1


def test_attempts_are_exhausted_after_max_failures(otp, otp_store):
    code = otp.issue(EMAIL)
    for _ in range(5):
        with pytest.raises(OtpInvalidError):
            otp.verify(EMAIL, "000000")

    # Even the right code is refused once the budget is spent
    with pytest.raises(OtpAttemptsExceededError):
        otp.verify(EMAIL, code)
    assert otp_store.get_otp(EMAIL) is None

    with pytest.raises(OtpNotFoundError):
        otp.verify(EMAIL, code)


def test_expiry_is_reported_before_exhausted_attempts(otp, otp_store, otp_clock):
    code = otp.issue(EMAIL)
    for _ in range(5):
        with pytest.raises(OtpInvalidError):
            otp.verify(EMAIL, "000000")
    assert otp_store.get_otp(EMAIL).attempts == 5

    otp_clock.advance(minutes=11)
    with pytest.raises(OtpExpiredError):
        otp.verify(EMAIL, code)
    assert otp_store.get_otp(EMAIL) is None


def test_reissue_replaces_code_and_resets_attempts(otp, otp_store):
    first = otp.issue(EMAIL)
    with pytest.raises(OtpInvalidError):
        otp.verify(EMAIL, "000000")

    second = otp.issue(EMAIL)
    assert second != first
    assert otp_store.get_otp(EMAIL).attempts == 0

    with pytest.raises(OtpInvalidError):
        otp.verify(EMAIL, first)
    assert otp.verify(EMAIL, second)


def test_cooldown_remaining(otp, otp_clock):
    assert otp.cooldown_remaining(EMAIL) == 0

    otp.issue(EMAIL)
    assert otp.cooldown_remaining(EMAIL) == 60

    otp_clock.advance(seconds=45)
    assert otp.cooldown_remaining(EMAIL) == 15

    otp_clock.advance(seconds=15)
    assert otp.cooldown_remaining(EMAIL) == 1

    otp_clock.advance(seconds=1)
    assert otp.cooldown_remaining(EMAIL) == 0


def test_used_code_does_not_hold_cooldown(otp):
    code = otp.issue(EMAIL)
    otp.verify(EMAIL, code)
    assert otp.cooldown_remaining(EMAIL) == 0


def test_sweep_removes_only_expired(otp, otp_store, otp_clock):
    otp.issue("old@example.com")
    otp_clock.advance(minutes=5)
    otp.issue("new@example.com")
    otp_clock.advance(minutes=6)

    assert otp.sweep_expired() == 1
    assert otp_store.get_otp("old@example.com") is None
    assert otp_store.get_otp("new@example.com") is not None


def test_corrupt_hash_is_treated_as_mismatch(otp, otp_store):
    otp.issue(EMAIL)
    otp_store.get_otp(EMAIL).code_hash = "not-an-argon2-hash"

    with pytest.raises(OtpInvalidError):
        otp.verify(EMAIL, "123456")
