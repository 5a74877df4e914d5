from __future__ import annotations

import argparse
from dataclasses import replace
from typing import List, Optional

from dotenv import load_dotenv

from .config import Settings, load_settings
from .logger import DeviceLogger
from .observability import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devicelog", description="Inspect and ship the local device log buffer")
    parser.add_argument("--db-path", default=None, help="Path to the SQLite log buffer")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("count", help="Print pending record and batch counts")

    export = sub.add_parser("export", help="Write pending records to a text file")
    export.add_argument("--file-name", default=None, help="Output file name (default: timestamp)")
    export.add_argument("--export-dir", default=None, help="Output directory")
    export.add_argument("--keep", action="store_true", help="Keep records after export")

    push = sub.add_parser("push", help="Upload one batch to the collection endpoint")
    push.add_argument("--url", default=None, help="Collection endpoint URL")
    push.add_argument("--timeout-s", type=float, default=None, help="HTTP timeout for each request")
    push.add_argument("--wait-s", type=float, default=60.0, help="How long to wait for the cycle to finish")

    purge = sub.add_parser("purge", help="Delete records older than a retention window")
    purge.add_argument("--older-than-s", type=int, required=True, help="Retention window in seconds")

    sub.add_parser("clear", help="Delete every pending record")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings()
    if args.db_path:
        settings = replace(settings, db_path=args.db_path)
    if getattr(args, "export_dir", None):
        settings = replace(settings, export_dir=args.export_dir)
    if getattr(args, "url", None):
        settings = replace(settings, url=args.url)
    if getattr(args, "timeout_s", None):
        settings = replace(settings, request_timeout_s=args.timeout_s)
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    args = _build_parser().parse_args(argv)
    settings = _settings_from_args(args)
    configure_logging(level=settings.console_log_level, log_format=settings.console_log_format)

    device_logger = DeviceLogger.create(settings, push=False)
    try:
        if args.command == "count":
            print(
                "[devicelog] db=%s pending=%s batches=%s"
                % (
                    settings.db_path,
                    device_logger.get_device_logs_count(),
                    device_logger.get_device_log_batch_count(),
                )
            )
            return 0

        if args.command == "export":
            pending = device_logger.get_device_logs_count()
            path = device_logger.get_device_logs_in_file(args.file_name, delete_logs=not args.keep)
            print("[devicelog] exported=%s file=%s" % (pending if path else 0, path or "(none)"))
            return 0

        if args.command == "push":
            if not device_logger.get_url():
                raise SystemExit("[devicelog] --url or DEVICELOG_URL is required")
            cycle = device_logger.push_logs()
            if cycle is None:
                print("[devicelog] push skipped (batch unavailable)")
                return 1
            outcome = cycle.wait(args.wait_s)
            if outcome is None:
                print("[devicelog] push timed out records=%s" % cycle.size)
                return 1
            print(
                "[devicelog] push complete records=%s delivered=%s failed=%s pending=%s"
                % (
                    cycle.size,
                    len(outcome.successes),
                    len(outcome.failures),
                    device_logger.get_device_logs_count(),
                )
            )
            return 0 if not outcome.failures else 1

        if args.command == "purge":
            deleted = device_logger.purge_expired(args.older_than_s)
            print("[devicelog] purged=%s pending=%s" % (deleted, device_logger.get_device_logs_count()))
            return 0

        if args.command == "clear":
            pending = device_logger.get_device_logs_count()
            device_logger.delete_logs()
            print("[devicelog] cleared=%s" % pending)
            return 0
    finally:
        device_logger.shutdown()

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
