#!/usr/bin/env python3
"""
Restwarden -- admin command line for the auth core.

Usage:
  python main.py gen-keys [--bits 2048]
  python main.py create-user alice --role editor --password-stdin
  python main.py create-api-key alice ci-deploy --scope read --scope create
  python main.py revoke-api-key 7
  python main.py deactivate-user alice
  python main.py sweep
  python main.py serve --port 8000

Configuration comes from the environment / .env exactly as for the API
(DATABASE_URL, SECRET_KEY, JWT__PRIVATE_KEY, ...). gen-keys needs none of it.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import ValidationError
from auth.models import User
from auth.service import AuthService
from auth.tokens import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH, hash_password
from core.config import generate_rsa_keypair, get_settings


def _service() -> AuthService:
    return AuthService.from_settings(get_settings())


def cmd_gen_keys(args: argparse.Namespace) -> int:
    """Print a fresh RSA key pair as .env lines."""
    private_pem, public_pem = generate_rsa_keypair(args.bits)
    # One line per key; dotenv expands \n inside double quotes.
    for name, pem in (("JWT__PRIVATE_KEY", private_pem), ("JWT__PUBLIC_KEY", public_pem)):
        escaped = pem.strip().replace("\n", "\\n")
        print(f'{name}="{escaped}"')
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass("Password: ")
    if not MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH:
        print(f"  [!] Password must be {MIN_PASSWORD_LENGTH} to {MAX_PASSWORD_LENGTH} characters.")
        return 1

    service = _service()
    try:
        user = User(username=args.username, roles=args.role or ["subscriber"], hashed_password=hash_password(password))
        uid = service.users.create_user(user, now=service.clock.now_int())
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    finally:
        service.close()
    print(f"Created user '{args.username}' (id={uid}, roles={','.join(user.roles)}).")
    return 0


def cmd_create_api_key(args: argparse.Namespace) -> int:
    service = _service()
    try:
        user = service.users.get_by_username(args.username)
        if user is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        raw_key, key = service.create_api_key(
            user.id,
            args.name,
            args.scope or (),
            expires_at=args.expires_at,
            rate_limit=args.rate_limit,
            rate_limit_window=args.rate_limit_window,
        )
    except ValidationError as exc:
        for field, msg in exc.errors.items():
            print(f"  [!] {field}: {msg}")
        return 1
    finally:
        service.close()
    print(f"API key id={key.id} prefix={key.key_prefix}")
    print("Store this key now. It will not be shown again:")
    print(raw_key)
    return 0


def cmd_revoke_api_key(args: argparse.Namespace) -> int:
    service = _service()
    try:
        found = service.lifecycle.revoke_api_key(args.key_id)
    finally:
        service.close()
    if not found:
        print(f"  [!] No API key with id {args.key_id}.")
        return 1
    print(f"API key {args.key_id} revoked.")
    return 0


def cmd_deactivate_user(args: argparse.Namespace) -> int:
    service = _service()
    try:
        user = service.users.get_by_username(args.username)
        if user is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        service.deactivate_user(user.id)
    finally:
        service.close()
    print(f"User '{args.username}' deactivated; tokens and API keys revoked.")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    service = _service()
    try:
        deleted = service.sweep()
    finally:
        service.close()
    print(f"Deleted {deleted} expired token record(s).")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the API under uvicorn (same app as `uvicorn asgi:app`)."""
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="restwarden",
        description="Administer users, keys and tokens for the Restwarden auth core.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("gen-keys", help="Generate an RSA signing key pair")
    p.add_argument("--bits", type=int, default=2048, choices=[2048, 3072, 4096])
    p.set_defaults(func=cmd_gen_keys)

    p = sub.add_parser("create-user", help="Create a user account")
    p.add_argument("username")
    p.add_argument("--role", action="append", metavar="ROLE", help="Role name; repeat for several roles")
    p.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("create-api-key", help="Create an API key for a user")
    p.add_argument("username")
    p.add_argument("name")
    p.add_argument("--scope", action="append", metavar="ACTION", help="Restrict the key to an action; repeatable")
    p.add_argument("--expires-at", type=int, metavar="EPOCH")
    p.add_argument("--rate-limit", type=int)
    p.add_argument("--rate-limit-window", type=int, metavar="SECONDS")
    p.set_defaults(func=cmd_create_api_key)

    p = sub.add_parser("revoke-api-key", help="Revoke an API key by id")
    p.add_argument("key_id", type=int)
    p.set_defaults(func=cmd_revoke_api_key)

    p = sub.add_parser("deactivate-user", help="Disable an account and revoke its credentials")
    p.add_argument("username")
    p.set_defaults(func=cmd_deactivate_user)

    p = sub.add_parser("sweep", help="Delete token records past their retention period")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
