#!/usr/bin/env python3
"""
Fleetplane admin CLI -- bootstrap users, projects and roles without the API.

Works directly against the configured database (DATABASE_URL, STATUS_DB_PATH),
so it is the way to create the first user and project on a fresh install.

Usage:
  python main.py create-user admin@example.com --password 's3cret-pass'
  python main.py create-project acme --owner admin@example.com
  python main.py create-role acme viewer --config '{"rules": [{"resources": ["devices"], "actions": ["read"]}]}'
  python main.py bind-role acme viewer --user ops@example.com
  python main.py bind-role acme viewer --service-account ci
  python main.py check acme devices:read --user ops@example.com
  python main.py device-status acme
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from api.stores import Stores
from auth.tokens import hash_password
from core.config import get_settings
from core.db import transaction
from core.errors import FleetplaneError
from iam.models import Principal
from iam.rbac import Decision
from iam.store import bootstrap_project

logger = logging.getLogger("fleetplane.cli")


def _principal(stores: Stores, project_id: str, user: Optional[str], service_account: Optional[str]) -> Principal:
    """Resolve --user EMAIL or --service-account NAME to a Principal."""
    if user:
        return Principal.user(stores.users.get_user_by_email(user).id)
    sa = stores.service_accounts.lookup_service_account(service_account, project_id)
    return Principal.service_account(sa.id, project_id)


# ---------------------------------------------------------------------------
# Commands -- each returns a process exit code
# ---------------------------------------------------------------------------


def cmd_create_user(stores: Stores, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    # Admin-created users skip the registration-token confirmation step.
    with transaction(stores.engine):
        user = stores.users.create_user(args.email, hash_password(password), args.first_name, args.last_name)
        stores.users.mark_registration_completed(user.id)
    print(f"Created user {user.email} ({user.id})")
    return 0


def cmd_create_project(stores: Stores, args: argparse.Namespace) -> int:
    owner = stores.users.get_user_by_email(args.owner)
    project, role = bootstrap_project(stores.engine, args.name, owner.id)
    print(f"Created project {project.name} ({project.id}); {owner.email} bound to role {role.name}")
    return 0


def cmd_create_role(stores: Stores, args: argparse.Namespace) -> int:
    project = stores.projects.lookup_project(args.project)
    role = stores.roles.create_role(project.id, args.name, args.description, args.config)
    print(f"Created role {role.name} ({role.id}) in {project.name}")
    return 0


def cmd_bind_role(stores: Stores, args: argparse.Namespace) -> int:
    project = stores.projects.lookup_project(args.project)
    role = stores.roles.lookup_role(args.role, project.id)
    principal = _principal(stores, project.id, args.user, args.service_account)
    if args.user:
        stores.membership_role_bindings.create_membership_role_binding(principal.id, project.id, role.id)
    else:
        stores.service_account_role_bindings.create_service_account_role_binding(principal.id, role.id, project.id)
    print(f"Bound role {role.name} to {principal.kind.value} {principal.id} in {project.name}")
    return 0


def cmd_check(stores: Stores, args: argparse.Namespace) -> int:
    """Print ALLOW or DENY. Exit code 0 means allowed."""
    project = stores.projects.lookup_project(args.project)
    principal = _principal(stores, project.id, args.user, args.service_account)
    decision = stores.authorizer.authorize(principal, project.id, args.capability)
    print(decision.value.upper())
    return 0 if decision is Decision.ALLOW else 1


def cmd_device_status(stores: Stores, args: argparse.Namespace) -> int:
    project = stores.projects.lookup_project(args.project)
    devices = stores.devices.list_devices(project.id)
    if args.devices:
        wanted = set(args.devices)
        devices = [d for d in devices if d.name in wanted]
    statuses = stores.device_status.get_statuses([d.id for d in devices])
    for device, status in zip(devices, statuses):
        print(f"  {device.name:<32} {status.value}")
    if not devices:
        print("  No devices.")
    return 0


_COMMANDS = {
    "create-user": cmd_create_user,
    "create-project": cmd_create_project,
    "create-role": cmd_create_role,
    "bind-role": cmd_bind_role,
    "check": cmd_check,
    "device-status": cmd_device_status,
}


def _add_principal_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--user", metavar="EMAIL", help="Act on a user, by email")
    group.add_argument("--service-account", metavar="NAME", help="Act on a service account of the project")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetplane",
        description="Fleetplane administration: users, projects, roles and device status.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create a user with a completed registration")
    p.add_argument("email")
    p.add_argument("--password", help="Password (prompted for when omitted)")
    p.add_argument("--first-name", default="")
    p.add_argument("--last-name", default="")

    p = sub.add_parser("create-project", help="Create a project owned by an existing user")
    p.add_argument("name")
    p.add_argument("--owner", required=True, metavar="EMAIL")

    p = sub.add_parser("create-role", help="Create a role from a JSON permission config")
    p.add_argument("project")
    p.add_argument("name")
    p.add_argument("--config", required=True, metavar="JSON")
    p.add_argument("--description", default="")

    p = sub.add_parser("bind-role", help="Bind a role to a member or a service account")
    p.add_argument("project")
    p.add_argument("role")
    _add_principal_args(p)

    p = sub.add_parser("check", help="Print ALLOW or DENY for a capability such as devices:read")
    p.add_argument("project")
    p.add_argument("capability")
    _add_principal_args(p)

    p = sub.add_parser("device-status", help="List devices with their online/offline status")
    p.add_argument("project")
    p.add_argument("devices", nargs="*", metavar="DEVICE", help="Restrict to these device names")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    settings = get_settings()
    stores = Stores.open(settings.database_url, settings.status_db_path)
    try:
        return _COMMANDS[args.command](stores, args)
    except FleetplaneError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {exc}")
        return 1
    finally:
        stores.close()


if __name__ == "__main__":
    sys.exit(main())
