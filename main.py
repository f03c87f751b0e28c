#!/usr/bin/env python3
"""
pmo-access -- administrative command line.

Operates directly on the configured database (DATABASE_URL), so it works
while the API is down. Every action goes through AuthService and is audited
exactly as the equivalent admin endpoint would be, with no actor id.

Usage:
  python main.py create-user --email admin@example.com --role SUPER_ADMIN
  python main.py set-status --email user@example.com --status SUSPENDED
  python main.py reset-password --email user@example.com
  python main.py terminate-sessions --email user@example.com
  python main.py cleanup-sessions

Environment variables:
  SECRET_KEY     Required unless DEBUG=true (tokens are never issued here,
                 but Settings validates the key on load).
  DATABASE_URL   SQLAlchemy URL; defaults to sqlite:///pmoaccess.db in the repo root.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from api.main import policy_seed
from auth.audit import AuditLog
from auth.errors import AuthError
from auth.lockout import LoginAttemptStore
from auth.models import AccountStatus, Role
from auth.policy import PolicyStore
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.tokens import TokenCodec
from auth.users import UserStore
from core.config import Settings, get_settings
from core.database import Database

logger = logging.getLogger("pmoaccess.cli")


def build_service(db: Database, settings: Settings) -> AuthService:
    """Wire the stores the same way the API lifespan does, minus the request-path pieces."""
    return AuthService(
        UserStore(db),
        LoginAttemptStore(db),
        SessionStore(db),
        AuditLog(db),
        PolicyStore(db, defaults=policy_seed(settings)),
        TokenCodec(settings.secret_key, settings.token_algorithm),
    )


def _read_password(provided: Optional[str]) -> str:
    if provided:
        return provided
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _cmd_create_user(service: AuthService, args: argparse.Namespace) -> int:
    user = service.create_user(
        email=args.email,
        password=_read_password(args.password),
        first_name=args.first_name,
        last_name=args.last_name,
        role=Role(args.role),
    )
    print(f"  Created user {user.id} <{user.email}> ({user.role.value})")
    return 0


def _lookup_user_id(service: AuthService, email: str) -> Optional[int]:
    user = service.users.get_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'.")
        return None
    return user.id


def _cmd_set_status(service: AuthService, args: argparse.Namespace) -> int:
    user_id = _lookup_user_id(service, args.email)
    if user_id is None:
        return 1
    user = service.set_status(user_id, AccountStatus(args.status))
    print(f"  {user.email} is now {user.status.value}")
    return 0


def _cmd_reset_password(service: AuthService, args: argparse.Namespace) -> int:
    user_id = _lookup_user_id(service, args.email)
    if user_id is None:
        return 1
    count = service.reset_password(user_id, _read_password(args.password))
    print(f"  Password reset for {args.email}; terminated {count} session(s)")
    return 0


def _cmd_terminate_sessions(service: AuthService, args: argparse.Namespace) -> int:
    user_id = _lookup_user_id(service, args.email)
    if user_id is None:
        return 1
    count = service.terminate_user_sessions(user_id)
    print(f"  Terminated {count} session(s) for {args.email}")
    return 0


def _cmd_cleanup_sessions(service: AuthService, args: argparse.Namespace) -> int:
    count = service.cleanup_sessions()
    print(f"  Removed {count} expired session(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pmo-access",
        description="Administer pmo-access accounts and sessions.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account")
    create.add_argument("--email", required=True)
    create.add_argument("--password", help="Password (prompted for when omitted)")
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.TEAM_MEMBER.value)
    create.add_argument("--first-name", default="")
    create.add_argument("--last-name", default="")
    create.set_defaults(func=_cmd_create_user)

    status = sub.add_parser("set-status", help="Activate, deactivate or suspend an account")
    status.add_argument("--email", required=True)
    status.add_argument("--status", required=True, choices=[s.value for s in AccountStatus])
    status.set_defaults(func=_cmd_set_status)

    reset = sub.add_parser("reset-password", help="Set a new password and end every session of an account")
    reset.add_argument("--email", required=True)
    reset.add_argument("--password", help="New password (prompted for when omitted)")
    reset.set_defaults(func=_cmd_reset_password)

    terminate = sub.add_parser("terminate-sessions", help="End every session of an account")
    terminate.add_argument("--email", required=True)
    terminate.set_defaults(func=_cmd_terminate_sessions)

    cleanup = sub.add_parser("cleanup-sessions", help="Delete expired and idle sessions")
    cleanup.set_defaults(func=_cmd_cleanup_sessions)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    db = Database(settings.database_url)
    try:
        return args.func(build_service(db, settings), args)
    except AuthError as exc:
        logger.warning("%s failed: %s", args.command, exc.code)
        print(f"  [!] {exc.message}")
        for violation in exc.extra.get("violations", []):
            print(f"      - {violation}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
