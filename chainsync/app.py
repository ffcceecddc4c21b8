import argparse
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from . import __version__
from .balances import BalanceSync, SyncSummary, find_resume_cursor
from .config import Settings, load_settings
from .database import check_connection, get_engine
from .env import load_env
from .errors import FatalJobError, ValidationAbortError
from .logger import get_logger
from .migration import CodeToTextMigration, verify_conversion
from .monitoring import initialize_error_monitoring
from .oracle import NodeClient
from .targets import ALL_BALANCES, recent_balances


@contextmanager
def job_context(args: argparse.Namespace):
    """Settings, logger and engine for one job; torn down in reverse order."""
    load_env(Path(args.env))
    try:
        settings = load_settings()
    except ValueError as e:
        raise SystemExit(f"Configuration error: {e}")

    logger = get_logger(level=settings.log_level, log_dir=settings.log_dir)
    sink = initialize_error_monitoring(settings, logger)
    engine = get_engine(settings.database_url)
    try:
        check_connection(engine)
        logger.info("Connected to database")
        yield settings, logger, engine
    finally:
        logger.log_metrics_summary()
        if sink is not None:
            sink.close()
        engine.dispose()


def _print_sync_summary(summary: SyncSummary) -> None:
    print(
        f"Done. processed={summary.processed} updated={summary.updated} "
        f"skipped_out_of_scope={summary.skipped_out_of_scope} "
        f"skipped_failed={summary.skipped_failed} last_cursor={summary.last_cursor}"
    )


def _node_client(settings: Settings, logger) -> NodeClient:
    return NodeClient(
        settings.node_url,
        network_id=settings.network_id,
        timeout=settings.node_timeout,
        pool_size=settings.concurrency,
        logger=logger,
    )


def cmd_code_to_text(args: argparse.Namespace) -> None:
    with job_context(args) as (settings, logger, engine):
        migration = CodeToTextMigration(
            engine,
            batch_size=args.batch_size or settings.code_batch_size,
            logger=logger,
        )
        summary = migration.run(start_id=args.start_id, end_id=args.end_id)
    if summary.nothing_to_do:
        print("Nothing to do.")
        return
    print(
        f"Done. processed={summary.processed} windows={summary.windows} "
        f"range=[{summary.start_id}, {summary.end_id}]"
    )


def cmd_verify_code_text(args: argparse.Namespace) -> None:
    with job_context(args) as (settings, logger, engine):
        result = verify_conversion(engine, batch_size=settings.code_batch_size, logger=logger)
    print(f"Checked {result.checked} rows")
    if not result.ok:
        print("Mismatched ids:")
        for row_id in result.mismatched:
            print(f" - {row_id}")
        raise SystemExit(2)
    print("Valid")


def cmd_sync_balances(args: argparse.Namespace) -> None:
    with job_context(args) as (settings, logger, engine):
        after = args.after_id
        if args.resume_since:
            after = max(after, find_resume_cursor(engine, args.resume_since, ALL_BALANCES))
            logger.info("Resuming balance sync", after=after, since=args.resume_since)
        client = _node_client(settings, logger)
        try:
            sync = BalanceSync(
                engine,
                client,
                target=ALL_BALANCES,
                batch_size=args.batch_size or settings.balance_batch_size,
                concurrency=args.concurrency or settings.concurrency,
                logger=logger,
            )
            summary = sync.run(after=after)
        finally:
            client.close()
    _print_sync_summary(summary)


def cmd_sync_recent_balances(args: argparse.Namespace) -> None:
    with job_context(args) as (settings, logger, engine):
        lookback = args.lookback_minutes or settings.lookback_minutes
        client = _node_client(settings, logger)
        try:
            sync = BalanceSync(
                engine,
                client,
                target=recent_balances(lookback),
                batch_size=args.batch_size or settings.balance_batch_size,
                concurrency=args.concurrency or settings.concurrency,
                logger=logger,
            )
            summary = sync.run()
        finally:
            client.close()
    _print_sync_summary(summary)


def _timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chainsync", description="Windowed backfill and balance reconciliation jobs")
    parser.add_argument("--version", action="store_true", help="Show version")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env", default=".env", help="Path to the .env file (default: .env)")

    subparsers = parser.add_subparsers(dest="command")

    ctt = subparsers.add_parser("code-to-text", parents=[common], help="Convert TransactionDetails.code to text in descending id windows")
    ctt.add_argument("--start-id", type=int, default=1, help="Lowest id to convert (default: 1)")
    ctt.add_argument("--end-id", type=int, help="Highest id to convert (default: highest unconverted id)")
    ctt.add_argument("--batch-size", type=int, help="Rows per window (default: CODE_BATCH_SIZE or 500)")
    ctt.set_defaults(func=cmd_code_to_text)

    ver = subparsers.add_parser("verify-code-text", parents=[common], help="Check codetext against code for every row")
    ver.set_defaults(func=cmd_verify_code_text)

    sb = subparsers.add_parser("sync-balances", parents=[common], help="Reconcile every balance with the node")
    sb.add_argument("--after-id", type=int, default=0, help="Start after this balance id (default: 0)")
    sb.add_argument("--resume-since", type=_timestamp, help="Resume before the first row not written since this ISO timestamp")
    sb.add_argument("--batch-size", type=int, help="Rows per window (default: BALANCE_BATCH_SIZE or 1000)")
    sb.add_argument("--concurrency", type=int, help="Concurrent node queries (default: SYNC_CONCURRENCY or 50)")
    sb.set_defaults(func=cmd_sync_balances)

    srb = subparsers.add_parser("sync-recent-balances", parents=[common], help="Reconcile fungible balances touched recently")
    srb.add_argument("--lookback-minutes", type=int, help="Lookback window (default: RECENT_LOOKBACK_MINUTES or 10)")
    srb.add_argument("--batch-size", type=int, help="Rows per window (default: BALANCE_BATCH_SIZE or 1000)")
    srb.add_argument("--concurrency", type=int, help="Concurrent node queries (default: SYNC_CONCURRENCY or 50)")
    srb.set_defaults(func=cmd_sync_recent_balances)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    if not hasattr(args, "func"):
        parser.print_help()
        return 2

    try:
        args.func(args)
    except ValidationAbortError as e:
        print(f"FATAL: invalid value at id {e.row_id} in window {e.window}", file=sys.stderr)
        return 1
    except FatalJobError as e:
        where = f" in window {e.window}" if e.window is not None else ""
        print(f"FATAL{where}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
