import importlib.util
from pathlib import Path

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "mailgate_admin.py"
_spec = importlib.util.spec_from_file_location("mailgate_admin", SCRIPT)
mailgate_admin = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(mailgate_admin)

EMAIL = "user@example.com"


async def _login(runtime):
    await runtime.auth.request_code(EMAIL, "203.0.113.7")
    return await runtime.auth.verify_code_and_login(EMAIL, "123456", "203.0.113.7")


async def test_unblock_command(runtime):
    key = f"otp_request:email:{EMAIL}"
    await runtime.auth.request_code(EMAIL, None)

    assert await mailgate_admin.unblock(runtime, key) == {"key": key, "status": "removed"}
    assert await mailgate_admin.unblock(runtime, key) == {"key": key, "status": "not_found"}


async def test_logout_everywhere_command(runtime, store):
    login = await _login(runtime)

    result = await mailgate_admin.logout_everywhere(runtime, EMAIL)
    assert result["status"] == "revoked"
    assert result["revoked"] == 1
    assert store.find_refresh_token(login.tokens.refresh_token).is_revoked


async def test_logout_everywhere_unknown_user(runtime):
    result = await mailgate_admin.logout_everywhere(runtime, "nobody@example.com")
    assert result == {"email": "nobody@example.com", "status": "user_not_found", "revoked": 0}


def test_parser_requires_command():
    parser = mailgate_admin.build_parser()
    args = parser.parse_args(["unblock", "otp_verify:origin:203.0.113.7"])
    assert (args.command, args.key) == ("unblock", "otp_verify:origin:203.0.113.7")

    args = parser.parse_args(["logout-everywhere", EMAIL])
    assert (args.command, args.email) == ("logout-everywhere", EMAIL)
