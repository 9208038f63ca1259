"""
Main entrypoint: runs the database synchronization service or a one-shot
admin command against the primary and secondary databases.

Usage:
    python -m tarl                       # start sync service (scheduler in batch mode)
    python -m tarl migrate               # audit tables + soft-delete functions, both sides
    python -m tarl sync-all              # full sync of every allowlisted table
    python -m tarl sync-table NAME       # full sync of one table
    python -m tarl test-connections      # probe both databases
    python -m tarl compare-schemas       # diff information_schema between databases
"""
import argparse
import asyncio
import logging
import sys

from tarl.config import get_settings

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _build_synchronizer():
    from tarl.db.connections import ConnectionManager
    from tarl.sync.synchronizer import DatabaseSynchronizer

    db = ConnectionManager(settings=get_settings())
    return db, DatabaseSynchronizer(db)


async def _run_service() -> int:
    db, synchronizer = _build_synchronizer()
    if not await synchronizer.start_sync():
        db.close()
        return 1

    logger.info("Sync service is running (mode=%s). Press Ctrl+C to stop.", synchronizer.config.mode)
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        synchronizer.stop_sync()
        db.close()
    return 0


def _run_migrate() -> int:
    from tarl.db.engine import PRIMARY, SECONDARY
    from tarl.db.connections import ConnectionManager
    from tarl.db.migrations import run_migrations

    db = ConnectionManager(settings=get_settings())
    exit_code = 0
    for target in (PRIMARY, SECONDARY):
        try:
            run_migrations(db.engine(target))
            logger.info("Migrations applied on %s database", target)
        except Exception as exc:
            logger.error("Migrations failed on %s database: %s", target, exc)
            exit_code = 1
    db.close()
    return exit_code


async def _run_command(args: argparse.Namespace) -> int:
    db, synchronizer = _build_synchronizer()
    try:
        if args.command == "sync-all":
            result = await synchronizer.sync_all_tables()
            for failure in result.summary.details.failed:
                logger.error("  %s: %s", failure.table, failure.error)
            return 0 if result.success else 1

        if args.command == "sync-table":
            result = await synchronizer.sync_table(args.table)
            logger.info("Synced %s: %d records", result.table_name, result.record_count)
            return 0

        if args.command == "test-connections":
            status = await db.test_connections()
            logger.info("local=%s remote=%s", status.local, status.remote)
            return 0 if status.local and status.remote else 1

        if args.command == "compare-schemas":
            comparison = await synchronizer.compare_schemas()
            logger.info("Matching tables: %s", ", ".join(comparison.matching) or "-")
            logger.info("Missing on secondary: %s", ", ".join(comparison.missing_in_secondary) or "-")
            for diff in comparison.differences:
                logger.info("Differs: %s", diff.table)
            return 0 if not comparison.missing_in_secondary and not comparison.differences else 1

        raise ValueError(f"Unknown command: {args.command}")
    finally:
        db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="python -m tarl", description="TaRL database sync")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("migrate", help="Create audit tables and soft-delete functions")
    sub.add_parser("sync-all", help="Full sync of every allowlisted table")
    table_parser = sub.add_parser("sync-table", help="Full sync of one table")
    table_parser.add_argument("table")
    sub.add_parser("test-connections", help="Probe both databases")
    sub.add_parser("compare-schemas", help="Diff column definitions between databases")
    args = parser.parse_args(argv)

    _configure_logging()

    if args.command is None:
        return asyncio.run(_run_service())
    if args.command == "migrate":
        return _run_migrate()
    return asyncio.run(_run_command(args))


if __name__ == "__main__":
    sys.exit(main())
