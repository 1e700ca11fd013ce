"""Command-line interface for the payment server account service."""

from __future__ import annotations
import argparse
import logging
import sys
from getpass import getpass
from typing import Sequence

from payserver.config import Settings, load_settings
from payserver.database import Database

logger = logging.getLogger("payserver.main")

_MIN_PASSWORD_LENGTH = 12


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Payment server account utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the account database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP account service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port for the API (default: 8080)")

    create_parser = subparsers.add_parser("create-user", help="Create a user account")
    create_parser.add_argument("email", help="Unique email address for login")
    create_parser.add_argument("--admin", action="store_true", help="Grant the server admin role")
    create_parser.add_argument("--approved", action="store_true", help="Mark the account as approved")
    create_parser.add_argument("--confirmed", action="store_true", help="Mark the email as confirmed")

    subparsers.add_parser("list-users", help="List user accounts and their roles")

    approve_parser = subparsers.add_parser("approve", help="Approve a user awaiting admin approval")
    approve_parser.add_argument("user_id", help="Identifier of the user")
    approve_parser.add_argument("--revoke", action="store_true", help="Withdraw a previous approval")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-user", "list-users", "approve"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _build_user_service(settings: Settings, database: Database):
    from payserver.events import EventAggregator
    from payserver.storage import FileService, StoredFileRepository
    from payserver.users import UserService

    stored_files = StoredFileRepository(database)
    return UserService(
        database,
        stored_files,
        FileService(stored_files, settings.storage_dir),
        EventAggregator(),
    )


def _prompt_for_password() -> str:
    for _ in range(3):
        password = getpass("Password: ")
        confirm = getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < _MIN_PASSWORD_LENGTH:
            print(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def _create_user(settings: Settings, database: Database, args: argparse.Namespace) -> int:
    password = _prompt_for_password()
    try:
        user = database.create_user(
            args.email,
            password,
            requires_email_confirmation=settings.requires_email_confirmation,
            requires_approval=settings.requires_approval,
            email_confirmed=args.confirmed,
            approved=args.approved,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.admin:
        _build_user_service(settings, database).set_admin_user(user.id, True)
    print(f"Created user {user.id} <{user.email}>{' (admin)' if args.admin else ''}")
    return 0


def _list_users(settings: Settings, database: Database) -> int:
    users = _build_user_service(settings, database).get_users_with_roles()
    if not users:
        print("No users found.")
        return 0
    for data in users:
        flags = []
        if data.disabled:
            flags.append("disabled")
        if data.requires_approval and not data.approved:
            flags.append("pending approval")
        if data.requires_email_confirmation and not data.email_confirmed:
            flags.append("unconfirmed")
        roles = ", ".join(sorted(data.roles)) or "-"
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{data.id}  {data.email}  roles: {roles}{suffix}")
    return 0


def _approve(settings: Settings, database: Database, args: argparse.Namespace) -> int:
    service = _build_user_service(settings, database)
    approved = not args.revoke
    if not service.set_user_approval(args.user_id, approved, "cli://payserver"):
        print("Approval status was not changed.", file=sys.stderr)
        return 1
    print(f"User {args.user_id} is now {'approved' if approved else 'unapproved'}.")
    return 0


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from payserver.api import create_app
    import uvicorn

    for external in settings.external_services:
        logger.info("External service configured: %s", external.display_name)
    logger.info("Starting account API on http://%s:%s", host, port)

    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = load_settings()
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "create-user":
        return _create_user(settings, database, args)
    elif args.command == "list-users":
        return _list_users(settings, database)
    elif args.command == "approve":
        return _approve(settings, database, args)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
