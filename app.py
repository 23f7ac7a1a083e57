"""Command line entry point for the CRM Drive sync core."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, Optional

from crmsync import __version__, deps_bootstrap
from crmsync.drive_api import RemoteError
from crmsync.google_auth import AuthError
from crmsync.logging_config import configure_logging, get_log_path
from crmsync.records import ValidationError
from crmsync.service import CrmSyncService
from crmsync.sync_engine import DIRECTION_MERGE, SYNC_DIRECTIONS
from crmsync.token_manager import NotSignedInError
from settings import DriveSyncSettings, SettingsError, load_drive_sync_settings

ServiceFactory = Callable[[DriveSyncSettings], CrmSyncService]

CLI_ERRORS = (AuthError, RemoteError, NotSignedInError, SettingsError, ValidationError)


def _print_notice(message: str) -> None:
    print(message, file=sys.stderr)


def _default_service(settings: DriveSyncSettings) -> CrmSyncService:
    return CrmSyncService(settings, notice_callback=_print_notice)


def _open_service(args: argparse.Namespace) -> CrmSyncService:
    settings = load_drive_sync_settings(args.settings)
    service = args.service_factory(settings)
    service.initialize()
    return service


def _require_signed_in(service: CrmSyncService) -> bool:
    if service.auth.is_signed_in:
        return True
    print("Error: not signed in. Run 'sign-in' first.", file=sys.stderr)
    return False


def command_sign_in(args: argparse.Namespace) -> int:
    service = _open_service(args)
    try:
        service.sign_in()
    finally:
        service.close()
    print("Signed in to Google Drive.")
    return 0


def command_sign_out(args: argparse.Namespace) -> int:
    service = _open_service(args)
    try:
        service.sign_out()
    finally:
        service.close()
    print("Signed out.")
    return 0


def command_sync(args: argparse.Namespace) -> int:
    service = _open_service(args)
    try:
        if not _require_signed_in(service):
            return 1
        customers = service.sync_customers(args.direction)
        if customers is None:
            print("Another sync is already running.", file=sys.stderr)
            return 1
        print(f"Customers: {len(customers)} record(s) after {args.direction}.")
        if args.templates:
            templates = service.sync_templates(args.direction)
            for name, result in templates.items():
                if result is None:
                    print(f"{name.title()} templates: skipped, another sync is running.")
                else:
                    print(f"{name.title()} templates: {len(result)} after {args.direction}.")
    finally:
        service.close()
    return 0


def command_status(args: argparse.Namespace) -> int:
    service = _open_service(args)
    try:
        status = service.status()
    finally:
        service.close()
    print(f"Version       : {__version__}")
    print(f"Session       : {status.auth_state.value}")
    if deps_bootstrap.ensure_google_deps():
        libraries = "ready"
    else:
        libraries = "missing " + ", ".join(deps_bootstrap.missing_dependencies())
    print(f"Google libs   : {libraries}")
    for label, engine_status in (
        ("Customers", status.customers),
        ("Forms", status.forms),
        ("Excel", status.excel),
    ):
        last = engine_status.last_sync_time or "never"
        print(f"{label:<14}: last sync {last}")
    queue = status.queue
    print(f"Queue         : {queue.pending} pending, {queue.failed} failed, {queue.total} total")
    for entry in service.queue.failed_entries():
        print(f"  failed {entry.entity_type} {entry.entity_id} ({entry.operation}): {entry.error}")
    print(f"Log file      : {get_log_path()}")
    return 0


def command_drain(args: argparse.Namespace) -> int:
    service = _open_service(args)
    try:
        if not _require_signed_in(service):
            return 1
        report = service.drain_queue()
    finally:
        service.close()
    print(
        f"Pushed {report.completed} change(s); {report.retrying} will retry, "
        f"{report.failed} failed, {report.deferred} deferred."
    )
    return 0


def command_retry_failed(args: argparse.Namespace) -> int:
    service = _open_service(args)
    try:
        count = service.retry_failed()
    finally:
        service.close()
    print(f"Re-queued {count} failed change(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CRM Google Drive sync tool")
    parser.add_argument("--settings", help="Path to sync_settings.json")
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sign_in_parser = subparsers.add_parser("sign-in", help="Connect a Google Drive account")
    sign_in_parser.set_defaults(func=command_sign_in)

    sign_out_parser = subparsers.add_parser("sign-out", help="Disconnect and revoke the stored token")
    sign_out_parser.set_defaults(func=command_sign_out)

    sync_parser = subparsers.add_parser("sync", help="Synchronise customers with Drive")
    sync_parser.add_argument(
        "--direction",
        choices=SYNC_DIRECTIONS,
        default=DIRECTION_MERGE,
        help="upload local data, download remote data or merge both (default)",
    )
    sync_parser.add_argument("--templates", action="store_true", help="Also synchronise form and Excel templates")
    sync_parser.set_defaults(func=command_sync)

    status_parser = subparsers.add_parser("status", help="Show session, sync and queue state")
    status_parser.set_defaults(func=command_status)

    drain_parser = subparsers.add_parser("drain", help="Push queued local changes now")
    drain_parser.set_defaults(func=command_drain)

    retry_parser = subparsers.add_parser("retry-failed", help="Re-queue changes that exhausted their retries")
    retry_parser.set_defaults(func=command_retry_failed)

    return parser


def main(argv: Optional[list] = None, service_factory: Optional[ServiceFactory] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)
    args.service_factory = service_factory or _default_service
    try:
        return args.func(args)
    except CLI_ERRORS as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
