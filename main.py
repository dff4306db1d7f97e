#!/usr/bin/env python3
"""
Gatehouse -- maintenance command line.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py create-user alice --email alice@example.com [--admin] [--verified]
  python main.py set-role alice admin
  python main.py purge-sessions

Configuration comes from the same environment variables / .env file as the
API (see core/config.py), so DATABASE_URL and SECRET_KEY must match the
running service.

create-user prompts for the password unless --no-password is given, in
which case the account can only sign in through a linked provider or after
a password reset.
"""

from __future__ import annotations

import argparse
import getpass
import sys
from typing import Optional

from accounts.flows import AccountFlows
from accounts.notifier import LoggingNotifier
from auth.context import AuthContext
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import get_settings


def _build(store: CredentialStore) -> tuple[AccountFlows, SessionManager]:
    settings = get_settings()
    context = AuthContext(store, settings)
    sessions = SessionManager(store, context, settings)
    flows = AccountFlows(store, context, sessions, TokenIssuer(store, settings), LoggingNotifier(), settings)
    return flows, sessions


def _prompt_password() -> str:
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def _report(result) -> int:
    if result.ok:
        return 0
    print(f"  [!] {result.message} ({result.code})", file=sys.stderr)
    return 1


def main(argv: Optional[list[str]] = None, store: Optional[CredentialStore] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Gatehouse account maintenance.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = commands.add_parser("serve", help="Run the API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")

    create = commands.add_parser("create-user", help="Create an account without self-registration")
    create.add_argument("username")
    create.add_argument("--email", help="Primary email address")
    create.add_argument("--verified", action="store_true", help="Mark the email as already verified")
    create.add_argument("--admin", action="store_true", help="Grant the admin role")
    create.add_argument("--no-password", action="store_true", help="Create the account without a password")

    role = commands.add_parser("set-role", help="Change a user's role")
    role.add_argument("username")
    role.add_argument("role", choices=["user", "admin"])

    commands.add_parser("purge-sessions", help="Delete expired sessions now")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    if args.command == "serve":
        import uvicorn

        uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    owned = store is None
    store = store or CredentialStore(get_settings().database_url)
    flows, sessions = _build(store)
    try:
        if args.command == "create-user":
            password = None if args.no_password else _prompt_password()
            result = flows.create_user(
                args.username,
                password,
                email=args.email,
                role="admin" if args.admin else "user",
                email_verified=args.verified,
            )
            if result.ok:
                print(f"  Created {result.payload.role} {result.payload.username} ({result.payload.id})")
            return _report(result)

        if args.command == "set-role":
            result = flows.set_role(args.username, args.role)
            if result.ok:
                print(f"  {result.payload.username} is now {result.payload.role}")
            return _report(result)

        removed = sessions.purge_expired()
        print(f"  Purged {removed} expired session(s)")
        return 0
    finally:
        if owned:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
