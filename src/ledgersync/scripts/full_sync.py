"""
Full import: pull the ledger's complete history, ignoring watermarks.

Usage:
    python -m ledgersync.scripts.full_sync
    python -m ledgersync.scripts.full_sync --types contacts invoices

Runs once after connecting a new organisation, or to rebuild links after
restoring the database. Types run in dependency order with a pause between
them to stay under the ledger's per-minute rate limit.

Records already linked and unchanged are skipped, so reruns are harmless.
"""
import argparse
import asyncio
import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

DEFAULT_TYPES = ("contacts", "invoices", "bills", "payments")
SLEEP_BETWEEN_TYPES = 5.0


async def _full_sync(types) -> int:
    from ledgersync.config import get_settings
    from ledgersync.db.engine import get_engine
    from ledgersync.ledger.auth import LedgerAuth
    from ledgersync.models.sync import SyncDirection
    from ledgersync.sync.executor import SyncExecutor, SyncOptions
    from ledgersync.sync.orchestrator import plan_entity_types

    engine = get_engine()
    auth = LedgerAuth(engine)
    ordered, unknown = plan_entity_types(types)
    for name in unknown:
        logger.warning("Ignoring unknown entity type %r", name)

    totals = {"processed": 0, "failed": 0, "conflicts": 0}
    logger.info("Connecting to Xero (stored connection)...")
    async with auth.build_client() as client:
        executor = SyncExecutor(client, engine)
        for i, entity_type in enumerate(ordered):
            try:
                result = await executor.sync(
                    entity_type,
                    SyncDirection.PULL,
                    user_id=get_settings().default_user_id,
                    options=SyncOptions(full=True),
                )
            except Exception as exc:
                logger.error("Full import of %s aborted: %s", entity_type, exc)
                totals["failed"] += 1
                continue
            logger.info("%s", result.message)
            totals["processed"] += result.processed
            totals["failed"] += result.failed
            totals["conflicts"] += result.conflicts

            if i < len(ordered) - 1:
                await asyncio.sleep(SLEEP_BETWEEN_TYPES)

    auth.mark_synced()
    logger.info(
        "Full import complete. Processed: %d, Failed: %d, Conflicts: %d",
        totals["processed"],
        totals["failed"],
        totals["conflicts"],
    )
    return 0 if not totals["failed"] else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Pull the complete ledger history")
    parser.add_argument(
        "--types",
        nargs="+",
        default=list(DEFAULT_TYPES),
        help="Entity types to import (default: contacts invoices bills payments)",
    )
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_full_sync(args.types)))


if __name__ == "__main__":
    main()
