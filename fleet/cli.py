"""CLI entry points for the VPS fleet manager."""

from __future__ import annotations

import argparse
import dataclasses
import getpass
from pathlib import Path
from typing import List, Optional

from fleet.authz import load_admin_set
from fleet.config import load_config
from fleet.coordinator import LifecycleCoordinator
from fleet.credentials import CredentialIssuer
from fleet.exceptions import ManagerError
from fleet.hypervisor import HypervisorDriver
from fleet.inventory import InventoryStore
from fleet.models import FleetConfig, OperationResult
from fleet.sessions import SessionRegistry
from fleet.storage import DocumentStore
from fleet.utils import log


def build_coordinator(cfg: FleetConfig) -> LifecycleCoordinator:
    """Wire the stores, driver and admin set for one process."""
    store = DocumentStore(cfg.data_dir)
    issuer = CredentialIssuer(store, bcrypt_rounds=cfg.bcrypt_rounds, password_length=cfg.password_length)
    return LifecycleCoordinator(
        cfg=cfg,
        inventory=InventoryStore(store),
        issuer=issuer,
        driver=HypervisorDriver.from_config(cfg),
        admins=load_admin_set(store, cfg.root_admin_id),
    )


def show_config(cfg: FleetConfig) -> None:
    """Print the resolved fleet configuration and exit."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")


def print_records(result: OperationResult) -> None:
    for number, record in enumerate(result.records, start=1):
        print(f"  {number:>3}  {record.vm_name}  {record.status.value:<8}  {record.specs.describe()}")


def print_credentials_banner(username: str, secret: str, panel_url: str) -> None:
    """Show a freshly issued panel password; it cannot be retrieved again."""
    lines = [
        f"  Panel: {panel_url}",
        f"  User:  {username}",
        f"  Pass:  {secret}",
        "  This password is shown once and is not stored in plain text.",
    ]
    border_len = max(len(line) for line in lines) + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def report(result: OperationResult, panel_url: str) -> int:
    if result.pending:
        log("WARN", f"Pending: {result.message}")
    elif result.ok:
        log("SUCCESS", result.message)
    else:
        log("ERROR", result.message)
    print_records(result)
    if result.secret:
        print_credentials_banner(result.panel_username or "(unknown)", result.secret, panel_url)
    if result.pending:
        return 2
    return 0 if result.ok else 1


def run_session(coordinator: LifecycleCoordinator, args: argparse.Namespace, panel_url: str) -> int:
    """Log in to the panel and, when asked, run one operation as the session's tenant."""
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    sessions = SessionRegistry(coordinator.issuer)
    try:
        token = sessions.login(args.username, password)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    if token is None:
        log("ERROR", "Invalid credentials")
        return 1
    if not args.operation:
        sessions.logout(token)
        log("SUCCESS", f"Credentials valid for {args.username}")
        return 0
    operation, *operation_args = args.operation
    try:
        result = coordinator.invoke_for_session(sessions, token, operation, operation_args)
    finally:
        sessions.logout(token)
    return report(result, panel_url)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VPS fleet lifecycle manager")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: $FLEET_CONFIG)")
    parser.add_argument("--caller", default=None, help="Identity issuing the command (default: MAIN_ADMIN_ID)")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a VPS for a tenant (admin only)")
    create.add_argument("ram", help="RAM in GiB")
    create.add_argument("cpu", help="vCPU count")
    create.add_argument("disk", help="Disk size in GiB")
    create.add_argument("tenant", help="Tenant that will own the VPS")

    sub.add_parser("list", help="List the caller's VPS")
    for name, text in (("start", "Start a VPS"), ("stop", "Stop a VPS")):
        action = sub.add_parser(name, help=text)
        action.add_argument("number", help="VPS number as shown by 'list'")

    delete = sub.add_parser("delete", help="Delete a VPS (admin only)")
    delete.add_argument("number", help="VPS number as shown by 'list'")
    delete.add_argument("--tenant", default=None, help="Tenant whose list the number refers to")

    sub.add_parser("stats", help="Fleet totals (admin only)")

    login = sub.add_parser("login", help="Verify panel credentials, optionally running one operation as that tenant")
    login.add_argument("username")
    login.add_argument("--password", default=None, help="Password (prompted when omitted)")
    login.add_argument("operation", nargs="*", help="Operation and arguments to run in the session, e.g. 'start 1'")

    sub.add_parser("show-config", help="Show resolved configuration and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "show-config":
        show_config(cfg)
        return 0

    try:
        coordinator = build_coordinator(cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "login":
        return run_session(coordinator, args, cfg.panel_url)

    caller = args.caller or cfg.root_admin_id
    if not caller:
        log("ERROR", "No caller identity: pass --caller or set MAIN_ADMIN_ID")
        return 1

    if args.command == "create":
        result = coordinator.invoke("create", caller, [args.ram, args.cpu, args.disk], args.tenant)
    elif args.command in ("start", "stop"):
        result = coordinator.invoke(args.command, caller, [args.number])
    elif args.command == "delete":
        result = coordinator.invoke("delete", caller, [args.number], args.tenant)
    else:
        result = coordinator.invoke(args.command, caller)
    return report(result, cfg.panel_url)
