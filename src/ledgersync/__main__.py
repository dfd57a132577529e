"""
Main entrypoint.

FastAPI runs separately under uvicorn; this process hosts the scheduler and
the operator commands.

Usage:
    python -m ledgersync connect                      # store a Xero connection
    python -m ledgersync sync contacts invoices --direction from_xero
    python -m ledgersync                              # starts the scheduler
    uvicorn ledgersync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

DIRECTIONS = ("to_xero", "from_xero", "bidirectional")


def _run_connect() -> None:
    from ledgersync.scripts.connect import run_connect
    run_connect()


async def _run_sync(types, direction: str) -> int:
    from ledgersync.api.routes.sync import DIRECTIONS as DIRECTION_MAP
    from ledgersync.config import get_settings
    from ledgersync.db.engine import get_engine
    from ledgersync.ledger.auth import LedgerAuth, NoConnectionError, TokenExpiredError
    from ledgersync.sync.executor import SyncExecutor
    from ledgersync.sync.orchestrator import BulkSyncOrchestrator

    engine = get_engine()
    auth = LedgerAuth(engine)
    try:
        client = auth.build_client()
    except (NoConnectionError, TokenExpiredError) as exc:
        logger.error("%s Run `python -m ledgersync connect` first.", exc)
        return 1

    async with client:
        orchestrator = BulkSyncOrchestrator(SyncExecutor(client, engine))
        bulk = await orchestrator.sync_all(
            types,
            DIRECTION_MAP[direction],
            user_id=get_settings().default_user_id,
            on_progress=lambda outcome, done, total: logger.info(
                "[%d/%d] %s %s: %s", done, total, outcome.entity_type, outcome.status, outcome.message
            ),
        )
    auth.mark_synced()

    for outcome in bulk.results:
        print(f"{outcome.entity_type:<10} {outcome.status:<12} {outcome.message}")
    print(bulk.message)
    return 0 if bulk.success else 2


async def _run_scheduler() -> None:
    from ledgersync.config import get_settings
    from ledgersync.db.engine import get_engine
    from ledgersync.ledger.auth import LedgerAuth
    from ledgersync.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    if settings.scheduled_pull_enabled and not LedgerAuth(engine).has_connection():
        logger.warning(
            "No Xero connection stored; scheduled pulls will fail until "
            "`python -m ledgersync connect` is run."
        )

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (log cleanup at %02d:00 UTC, scheduled pull %s)",
        settings.log_cleanup_hour,
        f"at {settings.scheduled_pull_hour:02d}:00 UTC" if settings.scheduled_pull_enabled else "disabled",
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="ledgersync")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("connect", help="store the Xero connection tokens")
    sync_parser = sub.add_parser("sync", help="sync entity types now")
    sync_parser.add_argument("types", nargs="+", help="clients, vendors, contacts, invoices, bills, payments, all")
    sync_parser.add_argument("--direction", choices=DIRECTIONS, default="bidirectional")
    args = parser.parse_args(argv)

    if args.command == "connect":
        _run_connect()
        return 0
    if args.command == "sync":
        return asyncio.run(_run_sync(args.types, args.direction))
    asyncio.run(_run_scheduler())
    return 0


if __name__ == "__main__":
    sys.exit(main())
