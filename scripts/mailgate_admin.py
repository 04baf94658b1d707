#!/usr/bin/env python3
"""Administrative operations for the login service.

Usage:
    # Lift a rate-limit block (keys look like otp_request:email:<addr>)
    python scripts/mailgate_admin.py unblock otp_request:email:user@example.com

    # Revoke every refresh token held by a user
    python scripts/mailgate_admin.py logout-everywhere user@example.com

Environment Variables:
    STORE_BACKEND: memory or postgres (admin commands only make sense with postgres)
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL when rate-limit windows live in Redis
    JWT_SECRET: required to wire the token service
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def unblock(runtime, key: str) -> dict:
    removed = await runtime.auth.unblock(key)
    return {"key": key, "status": "removed" if removed else "not_found"}


async def logout_everywhere(runtime, email: str) -> dict:
    user = await runtime.auth.find_user_by_email(email)
    if not user:
        return {"email": email, "status": "user_not_found", "revoked": 0}
    revoked = await runtime.auth.logout_everywhere(user.id)
    return {"email": email, "user_id": user.id, "status": "revoked", "revoked": revoked}


async def run(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from mailgate.config import get_settings
    from mailgate.service.runtime import Runtime

    runtime = Runtime(get_settings())
    try:
        if args.command == "unblock":
            return await unblock(runtime, args.key)
        return await logout_everywhere(runtime, args.email)
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mailgate administrative commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    unblock_cmd = sub.add_parser("unblock", help="Reset a rate-limit window")
    unblock_cmd.add_argument("key", help="Rate-limit key, e.g. otp_verify:origin:203.0.113.7")

    logout_cmd = sub.add_parser("logout-everywhere", help="Revoke all refresh tokens for a user")
    logout_cmd.add_argument("email", help="Email address of the user")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "removed":
        print(f"Rate limit cleared: {result['key']}")
    elif result["status"] == "not_found":
        print(f"No active rate limit for: {result['key']}")
    elif result["status"] == "revoked":
        print(f"Revoked {result['revoked']} refresh token(s) for {result['email']}")
    else:
        print(f"No user found for {result['email']}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
