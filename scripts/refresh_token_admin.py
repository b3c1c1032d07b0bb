#!/usr/bin/env python3
"""Operator commands for refresh tokens.

Usage:
    # Run one cleanup sweep now instead of waiting for the scheduler:
    python scripts/refresh_token_admin.py purge

    # Close every session of a user, e.g. after a password reset done out of band:
    python scripts/refresh_token_admin.py revoke-user USER_ID --reason password_change

    # List a user's live sessions:
    python scripts/refresh_token_admin.py sessions USER_ID

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to "true" to run against the in-memory store
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

REVOKE_REASONS = ("logout_all", "password_change", "suspicious_activity")


async def purge(runtime) -> dict:
    purged = await runtime.cleanup.run_once()
    return {"command": "purge", "tokens_purged": purged}


async def revoke_user(runtime, user_id: str, reason: str) -> dict:
    count = await runtime.refresh_tokens.revoke_all(user_id, reason)
    return {"command": "revoke-user", "user_id": user_id, "reason": reason, "tokens_revoked": count}


async def sessions(runtime, user_id: str) -> dict:
    items = await runtime.refresh_tokens.list_sessions(user_id)
    return {
        "command": "sessions",
        "user_id": user_id,
        "sessions": [
            {
                "id": s.id,
                "created_at": s.created_at.isoformat(),
                "last_used_at": s.last_used_at.isoformat(),
                "expires_at": s.expires_at.isoformat(),
                "user_agent": s.user_agent,
                "ip_address": s.ip_address,
            }
            for s in items
        ],
    }


async def run(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from tokenward.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "purge":
            return await purge(runtime)
        if args.command == "revoke-user":
            return await revoke_user(runtime, args.user_id, args.reason)
        return await sessions(runtime, args.user_id)
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Refresh token maintenance for tokenward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("purge", help="Hard-delete expired, idle and long-revoked tokens")
    revoke = sub.add_parser("revoke-user", help="Revoke every live token of a user")
    revoke.add_argument("user_id")
    revoke.add_argument("--reason", choices=REVOKE_REASONS, default="logout_all")
    listing = sub.add_parser("sessions", help="List a user's live sessions")
    listing.add_argument("user_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
