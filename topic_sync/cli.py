"""
Topic sync CLI.

Usage:
    topic-sync                                  # Sync today (UTC)
    topic-sync --date 2025-11-27                # Sync one day
    topic-sync --days 7                         # Last 7 days, today included
    topic-sync --from 2025-11-01 --to 2025-11-30
    topic-sync --analyze-only --limit 500       # Categorize stored transcripts only
    topic-sync --enrich-missing                 # Re-enrich stored records with gaps
    topic-sync --reset-keep-ids                 # Clear everything but ids/created_at
    topic-sync --wipe --yes                     # Delete every record

Exit codes: 0 completed cleanly, 1 completed with errors or failed,
2 bad arguments or missing configuration, 130 stopped by Ctrl-C.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import psycopg2

from .cancellation import CancellationToken
from .config import ConfigError, SyncSettings, load_env_file
from .db.models import SyncRunSummary
from .logging_utils import configure_logging
from .pipeline import build_store, resolve_window, run_analyze_only, run_enrich_missing, run_sync

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_CONFIG = 2
EXIT_STOPPED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="topic-sync",
        description="Sync Intercom conversations and categorize them with AI",
    )

    window = parser.add_mutually_exclusive_group()
    window.add_argument("--date", help="Sync a single day (YYYY-MM-DD)")
    window.add_argument("--days", type=int, help="Sync the last N days, today included")
    window.add_argument("--from", dest="date_from", help="Start of a date range (YYYY-MM-DD)")
    parser.add_argument("--to", dest="date_to", help="End of a date range (YYYY-MM-DD), needs --from")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--analyze-only", action="store_true",
                      help="Only categorize stored records that have a transcript but no topics")
    mode.add_argument("--enrich-missing", action="store_true",
                      help="Skip the search and enrich every stored record missing fields")
    mode.add_argument("--reset-keep-ids", action="store_true",
                      help="Clear every field except id and created_at")
    mode.add_argument("--wipe", action="store_true", help="Delete every record (needs --yes)")

    parser.add_argument("--limit", type=int, help="Maximum conversations to enrich or analyze")
    parser.add_argument("--batch-size", type=int, help="Concurrent items per batch (overrides ENRICH_BATCH_SIZE)")
    parser.add_argument("--yes", action="store_true", help="Confirm destructive commands")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    return parser


def exit_code_for(report: SyncRunSummary) -> int:
    if report.status == "stopped":
        return EXIT_STOPPED
    if report.status == "failed" or report.errors or report.last_error:
        return EXIT_ERRORS
    return EXIT_OK


def _install_sigint(cancel_token: CancellationToken) -> None:
    """First Ctrl-C asks the run to stop after the current batch; the second aborts."""

    def handler(signum, frame):
        if cancel_token.cancelled:
            raise KeyboardInterrupt
        logger.warning("Stop requested, finishing the current batch (Ctrl-C again to abort)")
        cancel_token.cancel("interrupted")

    signal.signal(signal.SIGINT, handler)


def _run_operator_command(args, settings: SyncSettings) -> int:
    store = build_store(settings)
    if args.reset_keep_ids:
        reset = store.reset_keeping_ids()
        logger.info(f"Reset {reset} records (ids and created_at kept)")
        return EXIT_OK

    if not args.yes:
        logger.error("--wipe deletes every record; re-run with --yes to confirm")
        return EXIT_CONFIG
    deleted = store.wipe_all()
    logger.info(f"Deleted {deleted} records")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_env_file()
    settings = SyncSettings.from_env()
    if args.log_level:
        settings.log_level = args.log_level.upper()
    configure_logging(settings.log_level, settings.log_file)

    if args.batch_size is not None:
        if not 1 <= args.batch_size <= 50:
            parser.error("--batch-size must be between 1 and 50")
        settings.batch_size = args.batch_size
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be at least 1")
    if args.date_to and not args.date_from:
        parser.error("--to needs --from")

    operator_command = args.reset_keep_ids or args.wipe
    try:
        settings.require(
            intercom=not (args.analyze_only or operator_command),
            openai=not operator_command,
        )
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG

    try:
        if operator_command:
            return _run_operator_command(args, settings)

        cancel_token = CancellationToken()
        _install_sigint(cancel_token)

        if args.analyze_only:
            window = None
            if args.date or args.days is not None or args.date_from or args.date_to:
                window = resolve_window(args.date, args.days, args.date_from, args.date_to)
            report = asyncio.run(run_analyze_only(
                settings,
                limit=args.limit,
                cancel_token=cancel_token,
                date_from=window[0] if window else None,
                date_to=window[1] if window else None,
            ))
        elif args.enrich_missing:
            report = asyncio.run(run_enrich_missing(settings, limit=args.limit, cancel_token=cancel_token))
        else:
            date_from, date_to = resolve_window(args.date, args.days, args.date_from, args.date_to)
            report = asyncio.run(run_sync(settings, date_from, date_to, limit=args.limit, cancel_token=cancel_token))
    except ValueError as e:
        parser.error(str(e))
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except psycopg2.Error as e:
        logger.error(f"Database error: {e}")
        return EXIT_ERRORS
    except KeyboardInterrupt:
        logger.warning("Aborted")
        return EXIT_STOPPED

    return exit_code_for(report)


if __name__ == "__main__":
    sys.exit(main())
