"""Operator tooling that works directly against the tunnelgate database."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
from typing import Any, Optional, Sequence

from ..common.observability import configure_logging
from ..common.security import hash_password
from ..common.settings import ControlPlaneSettings
from ..control_plane import db
from ..control_plane.tokens import DURATION_MONTHS, TokenService, public_token


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tunnelgate administrative utilities")
    parser.add_argument("--database-url", help="Override TUNNELGATE_DATABASE_URL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    admin_parser = subparsers.add_parser("create-admin", help="Create an administrator account")
    admin_parser.add_argument("--username", required=True)
    admin_parser.add_argument("--password", help="Password (prompted when omitted)")

    issue_parser = subparsers.add_parser("issue-token", help="Issue an onboarding token")
    issue_parser.add_argument("--duration", required=True, choices=sorted(DURATION_MONTHS))
    issue_parser.add_argument("--json", action="store_true", help="Output JSON")

    list_parser = subparsers.add_parser("list-tokens", help="List onboarding tokens, newest first")
    list_parser.add_argument("--json", action="store_true", help="Output JSON")

    return parser.parse_args(argv)


def _settings(args: argparse.Namespace) -> ControlPlaneSettings:
    if args.database_url:
        return ControlPlaneSettings(TUNNELGATE_DATABASE_URL=args.database_url)
    return ControlPlaneSettings()


async def create_admin(database_url: str, username: str, password: str, rounds: int = 12) -> int:
    engine = db.create_engine(database_url)
    try:
        await db.ensure_schema(engine)
        async with db.session_factory(engine)() as session:
            admin_id = await db.create_admin(session, username, hash_password(password, rounds=rounds))
            await session.commit()
        return admin_id
    finally:
        await engine.dispose()


async def issue_token(database_url: str, duration: str) -> dict[str, Any]:
    engine = db.create_engine(database_url)
    try:
        await db.ensure_schema(engine)
        async with db.session_factory(engine)() as session:
            record = await TokenService(session).issue(duration)
        return public_token(record)
    finally:
        await engine.dispose()


async def list_tokens(database_url: str) -> list[dict[str, Any]]:
    engine = db.create_engine(database_url)
    try:
        await db.ensure_schema(engine)
        async with db.session_factory(engine)() as session:
            return await TokenService(session).history()
    finally:
        await engine.dispose()


async def run_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = _settings(args)
    # stdout carries command output only; log events go to stderr.
    configure_logging("tunnelgate.cli", settings.log_level)
    database_url = settings.database_url
    if args.command == "create-admin":
        password = args.password or getpass.getpass("Admin password: ")
        if len(password) < 8:
            print("Password must be at least 8 characters")
            return 1
        admin_id = await create_admin(database_url, args.username, password, rounds=settings.password_hash_rounds)
        print(f"Created admin {args.username} (id {admin_id})")
    elif args.command == "issue-token":
        token = await issue_token(database_url, args.duration)
        if args.json:
            print(json.dumps(token, indent=2))
        else:
            print(f"Token: {token['token']}")
            print(f"Expires at: {token['expiresAt']}")
    elif args.command == "list-tokens":
        tokens = await list_tokens(database_url)
        if args.json:
            print(json.dumps(tokens, indent=2))
        else:
            for token in tokens:
                state = "expired" if token["expired"] else token["status"]
                print(f"{token['id']:>5}  {token['token']}  {token['duration']:<7}  {state:<8}  {token['expiresAt']}")
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(run_async()))


if __name__ == "__main__":
    main()
