from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import START
from mailgate.storage.errors import ConstraintViolation
from mailgate.storage.memory import MemoryStore


@pytest.fixture
def mem():
    return MemoryStore()


def test_get_or_create_user_is_idempotent(mem):
    first = mem.get_or_create_user("a@example.com", START)
    second = mem.get_or_create_user("a@example.com", START + timedelta(minutes=1))

    assert first.id == second.id
    assert second.created_at == START
    assert mem.get_user_by_email("a@example.com").id == first.id
    assert mem.get_user(first.id).email == "a@example.com"
    assert mem.get_user_by_email("missing@example.com") is None


def test_touch_last_login(mem):
    user = mem.get_or_create_user("a@example.com", START)
    later = START + timedelta(hours=1)

    assert mem.touch_last_login(user.id, later).last_login_at == later
    assert mem.touch_last_login("missing", later) is None


def test_replace_otp_issues_new_record(mem):
    first = mem.replace_otp("a@example.com", "h1", START + timedelta(minutes=10), START)
    mem.consume_otp_attempt(first.id, 5)

    second = mem.replace_otp("a@example.com", "h2", START + timedelta(minutes=10), START)
    current = mem.get_otp("a@example.com")
    assert current.id == second.id != first.id
    assert current.code_hash == "h2"
    assert current.attempts == 0
    # Updates aimed at the replaced record miss the new one
    assert mem.consume_otp_attempt(first.id, 5) is None
    assert mem.mark_otp_used(first.id) is False


def test_consume_otp_attempt_stops_at_max(mem):
    record = mem.replace_otp("a@example.com", "h", START + timedelta(minutes=10), START)
    assert [mem.consume_otp_attempt(record.id, 3) for _ in range(4)] == [1, 2, 3, None]


def test_consume_otp_attempt_is_atomic_under_threads(mem):
    record = mem.replace_otp("a@example.com", "h", START + timedelta(minutes=10), START)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: mem.consume_otp_attempt(record.id, 5), range(40)))

    assert sorted(r for r in results if r is not None) == [1, 2, 3, 4, 5]
    assert mem.get_otp("a@example.com").attempts == 5


def test_mark_otp_used_only_once(mem):
    record = mem.replace_otp("a@example.com", "h", START + timedelta(minutes=10), START)
    assert mem.mark_otp_used(record.id) is True
    assert mem.mark_otp_used(record.id) is False
    assert mem.consume_otp_attempt(record.id, 5) is None


def test_delete_otp_and_sweep(mem):
    kept = mem.replace_otp("keep@example.com", "h", START + timedelta(minutes=10), START)
    gone = mem.replace_otp("gone@example.com", "h", START + timedelta(minutes=1), START)

    assert mem.delete_expired_otps(START + timedelta(minutes=5)) == 1
    assert mem.get_otp("gone@example.com") is None
    assert mem.delete_otp(gone.id) is False
    assert mem.delete_otp(kept.id) is True
    assert mem.get_otp("keep@example.com") is None


def test_refresh_token_uniqueness(mem):
    mem.create_refresh_token("u1", "tok", START + timedelta(days=7), START)
    with pytest.raises(ConstraintViolation):
        mem.create_refresh_token("u2", "tok", START + timedelta(days=7), START)


def test_rotate_refresh_token(mem):
    mem.create_refresh_token("u1", "old", START + timedelta(days=7), START)

    rotated = mem.rotate_refresh_token("old", "u1", "new", START + timedelta(days=8), START)
    assert rotated.token == "new"
    assert mem.find_refresh_token("old").is_revoked
    assert not mem.find_refresh_token("new").is_revoked

    # The old token cannot be rotated twice
    assert mem.rotate_refresh_token("old", "u1", "newer", START, START) is None
    assert mem.find_refresh_token("newer") is None
    assert mem.rotate_refresh_token("unknown", "u1", "x", START, START) is None


def test_revoke_refresh_tokens(mem):
    for token in ("a", "b", "c"):
        mem.create_refresh_token("u1", token, START + timedelta(days=7), START)
    mem.create_refresh_token("u2", "d", START + timedelta(days=7), START)

    assert mem.revoke_refresh_token("a") is True
    assert mem.revoke_refresh_token("a") is False
    assert mem.revoke_refresh_token("missing") is False
    assert mem.revoke_user_refresh_tokens("u1") == 2
    assert not mem.find_refresh_token("d").is_revoked


def test_delete_expired_refresh_tokens(mem):
    mem.create_refresh_token("u1", "short", START + timedelta(hours=1), START)
    mem.create_refresh_token("u1", "long", START + timedelta(days=7), START)

    assert mem.delete_expired_refresh_tokens(START + timedelta(hours=1)) == 1
    assert mem.find_refresh_token("short") is None
    assert mem.find_refresh_token("long") is not None


def test_increment_rate_limit_windows(mem):
    first = mem.increment_rate_limit("k", 60, START)
    second = mem.increment_rate_limit("k", 60, START + timedelta(seconds=30))

    assert (first.count, second.count) == (1, 2)
    assert second.reset_time == START + timedelta(seconds=60)
    # Returned records are snapshots
    assert first.count == 1

    fresh = mem.increment_rate_limit("k", 60, START + timedelta(seconds=60))
    assert fresh.count == 1
    assert fresh.reset_time == START + timedelta(seconds=120)


def test_rate_limit_delete_and_sweep(mem):
    mem.increment_rate_limit("a", 10, START)
    mem.increment_rate_limit("b", 100, START)

    assert mem.delete_expired_rate_limits(START + timedelta(seconds=10)) == 1
    assert mem.get_rate_limit("a", START) is None
    assert mem.delete_rate_limit("b") is True
    assert mem.delete_rate_limit("b") is False


def test_ended_window_reads_as_absent(mem):
    mem.increment_rate_limit("k", 10, START)

    assert mem.get_rate_limit("k", START + timedelta(seconds=9)).count == 1
    assert mem.get_rate_limit("k", START + timedelta(seconds=10)) is None
    # Still present until swept
    assert "k" in mem.rate_limits
