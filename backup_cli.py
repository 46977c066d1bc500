"""CLI entry-point for running, inspecting and restoring backups."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import uvicorn

from backup import __version__ as ENGINE_VERSION
from backup.api import BackupService, create_app
from backup.codec import EXPORT_FORMATS
from backup.config import DOMAIN_GROUPS
from backup.errors import BackupError
from backup.providers import build_file_providers
from backup.types import BackupStatus
from core.logging_utils import configure_json_logging, redact_secret
from core.paths import resolve_working_dir
from core.settings import load_settings

LOGGER = logging.getLogger("backup_engine.cli")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8757


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Back up and restore application data.")
    parser.add_argument("--working-dir", dest="working_dir", default=None, help="Override the working directory")
    parser.add_argument("--passphrase", default=None, help="Encryption passphrase for this session")
    parser.add_argument("--version", action="version", version=f"%(prog)s {ENGINE_VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run a manual backup now")

    list_parser = sub.add_parser("list", help="List recorded backups")
    list_parser.add_argument("--limit", type=int, default=20)

    restore_parser = sub.add_parser("restore", help="Restore a completed backup")
    restore_parser.add_argument("backup_id")
    restore_parser.add_argument(
        "--domain",
        action="append",
        dest="domains",
        default=None,
        help="Restore only this domain (repeatable).",
    )

    import_parser = sub.add_parser("import", help="Restore a backup file copied from elsewhere")
    import_parser.add_argument("path", help="Path to the .snapshot file; its .manifest.json must sit beside it")
    import_parser.add_argument("--domain", action="append", dest="domains", default=None)

    sub.add_parser("reap", help="Apply the retention policy now")

    export_parser = sub.add_parser("export", help="Write a human readable export")
    export_parser.add_argument("--format", default="csv", choices=list(EXPORT_FORMATS))
    export_parser.add_argument("--domain", action="append", dest="domains", default=None)

    verify_parser = sub.add_parser("verify", help="Verify a stored backup without restoring it")
    verify_parser.add_argument("backup_id")

    serve_parser = sub.add_parser("serve", help="Serve the HTTP API and run the scheduler")
    serve_parser.add_argument("--host", default=None, help="Bind host (default from settings.json)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default from settings.json)")
    return parser.parse_args(argv)


def build_service(args: argparse.Namespace) -> BackupService:
    working_dir = Path(args.working_dir) if args.working_dir else resolve_working_dir()
    configure_json_logging(working_dir=working_dir)
    settings = load_settings(working_dir)
    domains = [domain for group in DOMAIN_GROUPS.values() for domain in group]
    if args.passphrase:
        LOGGER.info("using session passphrase %s", redact_secret(args.passphrase))
    return BackupService(
        working_dir=working_dir,
        settings=settings,
        providers=build_file_providers(working_dir, domains),
        passphrase=args.passphrase,
    )


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _serve(service: BackupService, args: argparse.Namespace) -> int:
    settings = load_settings(service.working_dir)
    api_settings = settings.get("api") if isinstance(settings.get("api"), dict) else {}
    host = args.host or api_settings.get("host") or DEFAULT_HOST
    port = args.port or api_settings.get("port") or DEFAULT_PORT
    try:
        port = int(port)
    except (TypeError, ValueError):
        port = DEFAULT_PORT
    logging.info("Serving backup API on http://%s:%s", host, port)
    uvicorn.run(create_app(service), host=str(host), port=port, log_level="info")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = parse_args(argv)
    service = build_service(args)

    try:
        if args.command == "run":
            entry = service.trigger_manual_backup()
            _print(entry.to_dict())
            return 0 if entry.status is BackupStatus.COMPLETED else 1
        if args.command == "list":
            _print({"backups": [entry.to_dict() for entry in service.list_backups(args.limit)]})
            return 0
        if args.command == "restore":
            result = service.restore(args.backup_id, domains=args.domains)
            _print(result.to_dict())
            return 0 if result.success else 1
        if args.command == "import":
            result = service.import_backup(Path(args.path), domains=args.domains)
            _print(result.to_dict())
            return 0 if result.success else 1
        if args.command == "reap":
            summary = service.apply_retention()
            _print({"removed": summary.removed, "kept": len(summary.kept), "freed_bytes": summary.freed_bytes})
            return 0
        if args.command == "export":
            result = service.export_data(args.format, args.domains)
            _print({"path": result.path, "records": result.records, "domains": result.domains})
            return 0
        if args.command == "verify":
            _print(service.verify_backup(args.backup_id))
            return 0
        if args.command == "serve":
            return _serve(service, args)
    except BackupError as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 2
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
