#!/usr/bin/env python3
"""
Handshake -- admin CLI for the OAuth 1.0a provider.

Registers consumers and users out-of-band and sweeps expired tokens. The
HTTP service itself runs under uvicorn (see api/main.py).

Usage:
  python main.py add-consumer
  python main.py add-consumer --key my-app --mode user-authorized
  python main.py add-consumer --rsa-key consumer_pub.pem
  python main.py add-user alice@example.com
  python main.py deactivate-consumer my-app
  python main.py purge

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the credential store (default: auth/handshake.db)
  TIMEOUT_DELTA  Token lifetime and timestamp window in seconds (default: 86400)
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Consumer, User, VerificationMode
from auth.store import CredentialStore
from auth.tokens import TokenManager, generate_token, password_hash
from core.config import get_settings

logger = logging.getLogger("handshake.cli")


def _read_key_file(path: str) -> Optional[str]:
    """Read a PEM public key. Returns None (after printing why) if the file is unusable."""
    key_path = Path(path).resolve()
    if not key_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return None
    try:
        pem = key_path.read_text()
    except OSError as e:
        print(f"  [!] Could not read key file '{path}': {e}")
        return None
    if "BEGIN PUBLIC KEY" not in pem and "BEGIN RSA PUBLIC KEY" not in pem:
        print(f"  [!] '{path}' does not look like a PEM public key.")
        return None
    return pem


def cmd_add_consumer(store: CredentialStore, args: argparse.Namespace) -> int:
    settings = get_settings()
    rsa_key = None
    if args.rsa_key:
        rsa_key = _read_key_file(args.rsa_key)
        if rsa_key is None:
            return 1
    consumer = Consumer(
        consumer_key=args.key or generate_token(settings.token_bytes),
        consumer_secret=generate_token(settings.secret_bytes),
        verification_mode=VerificationMode(args.mode),
        rsa_public_key=rsa_key,
    )
    try:
        consumer_id = store.create_consumer(consumer)
    except IntegrityError:
        print(f"  [!] Consumer key '{consumer.consumer_key}' already exists.")
        return 1
    print(f"  Consumer {consumer_id} registered.")
    print(f"  consumer_key:    {consumer.consumer_key}")
    print(f"  consumer_secret: {consumer.consumer_secret}")
    print("  The secret is shown once. Store it with the consumer application.")
    return 0


def cmd_set_active(store: CredentialStore, args: argparse.Namespace) -> int:
    active = args.command == "activate-consumer"
    if not store.set_consumer_active(args.key, active):
        print(f"  [!] No consumer with key '{args.key}'.")
        return 1
    status = "activated" if active else "deactivated"
    logger.info("Consumer %s %s", args.key, status)
    print(f"  Consumer {args.key} {status}.")
    return 0


def cmd_add_user(store: CredentialStore, args: argparse.Namespace) -> int:
    email = args.email.strip()
    password = getpass.getpass("  Password: ").strip()
    if not password:
        print("  [!] Password must not be empty.")
        return 1
    if getpass.getpass("  Repeat:   ").strip() != password:
        print("  [!] Passwords do not match.")
        return 1
    try:
        user_id = store.create_user(User(email=email, password_hash=password_hash(email, password)))
    except IntegrityError:
        print(f"  [!] User '{email}' already exists.")
        return 1
    print(f"  User {user_id} ({email}) created.")
    return 0


def cmd_purge(store: CredentialStore, args: argparse.Namespace) -> int:
    request_count, access_count = TokenManager(store).purge_expired()
    print(f"  Purged {request_count} request tokens and {access_count} access tokens.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="handshake",
        description="Administer the Handshake OAuth 1.0a credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py add-consumer
  python main.py add-consumer --key my-app --mode user-authorized
  python main.py add-user alice@example.com
  DATABASE_URL=sqlite:///prod.db python main.py purge
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        help="SQLAlchemy database URL (overrides DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    consumer = sub.add_parser("add-consumer", help="Register a consumer and print its key and secret")
    consumer.add_argument("--key", help="Consumer key to use instead of a generated one")
    consumer.add_argument(
        "--mode",
        choices=[m.value for m in VerificationMode],
        default=VerificationMode.AUTO.value,
        help="auto: verifier issued on login; user-authorized: separate confirmation step",
    )
    consumer.add_argument("--rsa-key", metavar="PATH", help="PEM public key for RSA-SHA1 signatures")
    consumer.set_defaults(handler=cmd_add_consumer)

    for name, help_text in (
        ("deactivate-consumer", "Refuse all calls from a consumer (consumer_key_refused)"),
        ("activate-consumer", "Re-admit a deactivated consumer"),
    ):
        toggle = sub.add_parser(name, help=help_text)
        toggle.add_argument("key")
        toggle.set_defaults(handler=cmd_set_active)

    user = sub.add_parser("add-user", help="Create a user; the password is prompted")
    user.add_argument("email")
    user.set_defaults(handler=cmd_add_user)

    purge = sub.add_parser("purge", help="Delete tokens older than TIMEOUT_DELTA")
    purge.set_defaults(handler=cmd_purge)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=get_settings().log_level, format="%(levelname)-5s %(name)s %(message)s")
    store = CredentialStore(args.db)
    try:
        return args.handler(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
