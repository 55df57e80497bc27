#!/usr/bin/env python3
"""
Gatehouse -- identity administration from the command line.

Every command opens the identity database named by DATABASE_URL (or --db),
runs one operation through AuthService, prints the outcome and exits 0 on
success or 1 on failure. Passwords are always read with getpass, never from
argv.

Usage:
  python main.py init-roles
  python main.py init-roles --extra Auditor --extra Billing
  python main.py create-admin --email admin@acme.io --name "Site Admin"
  python main.py reset-password --email user@acme.io
  python main.py grant-role --email user@acme.io --role Editor
  python main.py list-users --limit 20 --offset 40

Environment variables:
  DATABASE_URL    SQLAlchemy URL of the identity database.
  BCRYPT_ROUNDS   Current bcrypt cost factor (default 12).
  ADMIN_ROLE      Role that unlocks administrative operations (default Administrator).
  LOG_LEVEL       Logging level for the gatehouse.* loggers (default INFO).
"""

import argparse
import logging
import sys
from getpass import getpass
from typing import Optional

from core.config import get_settings
from identity.errors import IdentityError
from identity.params import normalize_email
from identity.results import OperationResult
from identity.roles import GLOBAL_SCOPE
from identity.service import AuthService, build_auth_service

logger = logging.getLogger("gatehouse.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _prompt_password() -> tuple[str, str]:
    password = getpass("  Password: ")
    confirmation = getpass("  Confirm password: ")
    return password, confirmation


def _report(result: OperationResult, success_text: str) -> int:
    """Print the outcome of a service call and return the exit code."""
    if not result.ok:
        for message in result.messages:
            print(f"  [!] {message}")
        return 1
    print(f"  {success_text}")
    for soft in result.soft_failures:
        print(f"  [!] Warning ({soft.step}): {soft.message}")
    return 0


def _find_identity_id(service: AuthService, email: str) -> Optional[int]:
    normalized = normalize_email(email)
    identity = service.identities.get_by_email(normalized) if normalized else None
    if identity is None:
        print(f"  [!] No account found for '{email}'.")
        return None
    return identity.id


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init_roles(service: AuthService, args: argparse.Namespace) -> int:
    roles = service.roles.seed_defaults(extra=args.extra)
    for role in roles:
        print(f"  {role.id:>3}  {role.name}")
    print(f"  {len(roles)} role(s) present.")
    return 0


def cmd_create_admin(service: AuthService, args: argparse.Namespace) -> int:
    password, confirmation = _prompt_password()
    result = service.register(
        {
            "email": args.email,
            "display_name": args.name,
            "password": password,
            "password_confirmation": confirmation,
            "email_confirmed": True,
        }
    )
    if not result.ok:
        return _report(result, "")

    admin_role = service.settings.admin_role
    service.roles.create_if_missing(admin_role)
    service.roles.assign(result.data["identity_id"], admin_role, GLOBAL_SCOPE)
    return _report(result, f"Created {admin_role} #{result.data['identity_id']} <{result.data['identity'].email}>.")


def cmd_reset_password(service: AuthService, args: argparse.Namespace) -> int:
    identity_id = _find_identity_id(service, args.email)
    if identity_id is None:
        return 1
    password, confirmation = _prompt_password()
    result = service.reset_credential(
        {"identity_id": identity_id, "new_password": password, "password_confirmation": confirmation}
    )
    return _report(result, f"Password reset for #{identity_id}.")


def cmd_grant_role(service: AuthService, args: argparse.Namespace) -> int:
    identity_id = _find_identity_id(service, args.email)
    if identity_id is None:
        return 1
    assignment = service.roles.assign(identity_id, args.role, args.scope)
    print(f"  Granted {assignment.role_name} to #{identity_id} (scope {assignment.scope}).")
    return 0


def cmd_list_users(service: AuthService, args: argparse.Namespace) -> int:
    identities = service.identities.list_identities(limit=args.limit, offset=args.offset)
    total = service.identities.count()
    for identity in identities:
        roles = ", ".join(a.role_name for a in service.roles.list_assignments(identity.id)) or "-"
        confirmed = "yes" if identity.email_confirmed else "no"
        print(f"  {identity.id:>5}  {identity.display_name:<24} {identity.email:<32} confirmed={confirmed}  roles={roles}")
    print(f"  Showing {len(identities)} of {total} account(s).")
    return 0


_COMMANDS = {
    "init-roles": cmd_init_roles,
    "create-admin": cmd_create_admin,
    "reset-password": cmd_reset_password,
    "grant-role": cmd_grant_role,
    "list-users": cmd_list_users,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Identity administration: roles, administrators, passwords.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-roles
  python main.py create-admin --email admin@acme.io --name "Site Admin"
  python main.py grant-role --email user@acme.io --role Editor
  DATABASE_URL=sqlite:///identity.db python main.py list-users
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (overrides DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    init_roles = sub.add_parser("init-roles", help="Create the well-known roles if missing")
    init_roles.add_argument(
        "--extra",
        action="append",
        default=[],
        metavar="NAME",
        help="Additional role to create (repeatable)",
    )

    create_admin = sub.add_parser("create-admin", help="Register a confirmed account holding the admin role")
    create_admin.add_argument("--email", required=True)
    create_admin.add_argument("--name", required=True, help="Display name")

    reset = sub.add_parser("reset-password", help="Set a new password for an account")
    reset.add_argument("--email", required=True)

    grant = sub.add_parser("grant-role", help="Assign a role to an account")
    grant.add_argument("--email", required=True)
    grant.add_argument("--role", required=True)
    grant.add_argument("--scope", type=int, default=GLOBAL_SCOPE, help="Assignment scope (default: 0, global)")

    list_users = sub.add_parser("list-users", help="Page through registered accounts")
    list_users.add_argument("--limit", type=int, default=None)
    list_users.add_argument("--offset", type=int, default=None)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    _configure_logging(settings.log_level)

    service = build_auth_service(settings=settings, db_url=args.db)
    try:
        return _COMMANDS[args.command](service, args)
    except IdentityError as exc:
        logger.warning("%s failed: %s", args.command, exc.message)
        print(f"  [!] {exc.message}")
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
