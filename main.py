#!/usr/bin/env python3
"""
Conductor -- administration portal API and operator CLI.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py create-key --type single_use --permission Operator
  python main.py create-key --type expiring --permission User --days 30 --description "Q3 onboarding"
  python main.py refresh-keys
  python main.py list-users
  python main.py list-users --permission Developer
  python main.py list-users --status blocked

Environment variables (or .env):
  SECRET_KEY     Token signing key, at least 32 characters. Required unless DEBUG=true.
  DATABASE_URL   SQLAlchemy URL. Default: sqlite:///conductor.db
  PORT           Listen port for `serve`. Default: 3000
"""

import argparse
import sys
from datetime import timedelta
from typing import Optional

from auth.permissions import parse_permission, parse_status
from auth.store import UserStore
from core.config import get_settings
from core.database import make_engine, utcnow
from core.errors import PortalError
from keys.models import KeyType
from keys.store import AccessKeyStore


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run("asgi:app", host=args.host, port=args.port or settings.port, reload=args.reload)
    return 0


def _create_key(args: argparse.Namespace) -> int:
    store = AccessKeyStore(make_engine(get_settings().database_url))
    expires_at = utcnow() + timedelta(days=args.days) if args.days else None
    key = store.create(
        key_type=KeyType(args.type),
        permission=parse_permission(args.permission),
        code=args.code,
        expires_at=expires_at,
        max_uses=args.max_uses,
        description=args.description,
        created_by="cli",
    )
    print(key.code)
    return 0


def _refresh_keys(args: argparse.Namespace) -> int:
    store = AccessKeyStore(make_engine(get_settings().database_url))
    changed = store.refresh_statuses()
    print(f"  {changed} key(s) updated.")
    return 0


def _list_users(args: argparse.Namespace) -> int:
    store = UserStore(make_engine(get_settings().database_url))
    permission = parse_permission(args.permission) if args.permission else None
    status = parse_status(args.status) if args.status else None
    users = store.list_users(permission=permission, status=status, limit=args.limit)
    if not users:
        print("  No users.")
        return 0
    for user in users:
        print(f"  {user.id:>5}  {user.username:<24} {user.permission.value:<14} {user.status.value:<9} {user.email}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="conductor", description="Conductor administration portal.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=None, help="Defaults to PORT (3000).")
    serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development).")
    serve.set_defaults(func=_serve)

    create_key = subparsers.add_parser("create-key", help="Create an access key and print its code.")
    create_key.add_argument("--type", choices=[t.value for t in KeyType], default=KeyType.SINGLE_USE.value)
    create_key.add_argument("--permission", required=True, help="User, Operator, Administrator or Developer.")
    create_key.add_argument("--code", default=None, help="Explicit key code. Generated when omitted.")
    create_key.add_argument("--days", type=int, default=None, help="Days until expiry (expiring keys).")
    create_key.add_argument("--max-uses", type=int, default=None)
    create_key.add_argument("--description", default=None)
    create_key.set_defaults(func=_create_key)

    refresh = subparsers.add_parser("refresh-keys", help="Mark lapsed keys expired or used.")
    refresh.set_defaults(func=_refresh_keys)

    list_users = subparsers.add_parser("list-users", help="List accounts.")
    list_users.add_argument("--permission", default=None)
    list_users.add_argument("--status", default=None, help="Active, Inactive or Blocked.")
    list_users.add_argument("--limit", type=int, default=100)
    list_users.set_defaults(func=_list_users)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except PortalError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
