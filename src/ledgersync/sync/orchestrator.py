"""
BulkSyncOrchestrator: runs several entity-type syncs in dependency order.

Invoices reference contacts and payments reference invoices, so types
always run as clients → vendors → invoices → bills → payments, one at a
time, whatever order the caller listed them in. Each type is isolated: an
exception in one becomes an ERROR outcome for that type and the rest still
run (unless stop_on_error is set).
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ledgersync.ledger.errors import classify_error
from ledgersync.models.sync import SyncDirection, SyncStatus
from ledgersync.sync.errors import UnknownEntityTypeError
from ledgersync.sync.executor import (
    ENTITY_TYPES,
    PAYMENTS_PUSH_NOTE,
    SyncExecutor,
    SyncResult,
)

logger = logging.getLogger(__name__)

DEPENDENCY_ORDER = ENTITY_TYPES

# Names accepted from callers that stand for several entity types
ALIASES: Dict[str, Tuple[str, ...]] = {
    "contacts": ("clients", "vendors"),
    "customers": ("clients",),
    "suppliers": ("vendors",),
    "all": ENTITY_TYPES,
}

SKIPPED = "SKIPPED"
NOT_STARTED = "NOT_STARTED"


@dataclass
class EntityOutcome:
    entity_type: str
    status: str  # SyncStatus value, SKIPPED or NOT_STARTED
    message: str = ""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    log_id: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: SyncResult) -> "EntityOutcome":
        return cls(
            entity_type=result.entity_type,
            status=result.status.value,
            message=result.message,
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            conflicts=result.conflicts,
            log_id=result.log_id,
            error=result.error_message,
        )


@dataclass
class BulkResult:
    direction: SyncDirection
    results: List[EntityOutcome] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not any(r.status == SyncStatus.ERROR.value for r in self.results)

    @property
    def total_conflicts(self) -> int:
        return sum(r.conflicts for r in self.results)

    @property
    def total_processed(self) -> int:
        return sum(r.processed for r in self.results)

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def message(self) -> str:
        ran = [r for r in self.results if r.status not in (SKIPPED, NOT_STARTED)]
        errors = [r.entity_type for r in self.results if r.status == SyncStatus.ERROR.value]
        text = (
            f"Synced {len(ran)} entity types: {self.total_processed} records processed, "
            f"{self.total_failed} failed, {self.total_conflicts} conflicts"
        )
        if errors:
            text += f". Failed: {', '.join(errors)}"
        return text


def plan_entity_types(types: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Expand aliases and sort requested types into dependency order.

    Returns:
        (ordered known types, unknown names as given)
    """
    requested = set()
    unknown = []
    for raw in types:
        name = raw.strip().lower()
        if name in ALIASES:
            requested.update(ALIASES[name])
        elif name in DEPENDENCY_ORDER:
            requested.add(name)
        elif raw not in unknown:
            unknown.append(raw)
    return [t for t in DEPENDENCY_ORDER if t in requested], unknown


class BulkSyncOrchestrator:
    def __init__(self, executor: SyncExecutor):
        self.executor = executor

    async def sync_all(
        self,
        types: Sequence[str],
        direction: SyncDirection,
        *,
        user_id: str,
        stop_on_error: bool = False,
        deadline_seconds: Optional[float] = None,
        on_progress: Optional[Callable[[EntityOutcome, int, int], None]] = None,
    ) -> BulkResult:
        """
        Sync each requested entity type in dependency order.

        Args:
            types: Entity types or aliases ("contacts", "all").
            direction: PUSH, PULL or BOTH, applied to every type.
            user_id: Recorded on each SyncLog entry.
            stop_on_error: Do not start further types after an ERROR.
            deadline_seconds: Do not start further types once exceeded.
            on_progress: Called after each type with (outcome, done, total).

        Returns:
            BulkResult; types that never ran are reported NOT_STARTED.
        """
        direction = SyncDirection(direction)
        started = time.monotonic()
        ordered, unknown = plan_entity_types(types)
        bulk = BulkResult(direction=direction)

        for name in unknown:
            bulk.results.append(EntityOutcome(
                entity_type=name,
                status=SyncStatus.ERROR.value,
                message=str(UnknownEntityTypeError(name)),
                error=str(UnknownEntityTypeError(name)),
            ))

        logger.info("Bulk %s sync of %s requested by %s", direction.value, ordered, user_id)
        halted: Optional[str] = None
        for done, entity_type in enumerate(ordered, start=1):
            if halted is None and deadline_seconds is not None:
                if time.monotonic() - started >= deadline_seconds:
                    halted = f"Not started: bulk sync deadline of {deadline_seconds}s reached"
            if halted is not None:
                bulk.results.append(EntityOutcome(entity_type=entity_type, status=NOT_STARTED, message=halted))
                continue

            outcome = await self._run_one(entity_type, direction, user_id)
            bulk.results.append(outcome)
            if on_progress is not None:
                on_progress(outcome, done, len(ordered))
            if stop_on_error and outcome.status == SyncStatus.ERROR.value:
                halted = f"Not started: {entity_type} sync failed"

        bulk.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Bulk sync finished: %s", bulk.message)
        return bulk

    async def _run_one(self, entity_type: str, direction: SyncDirection, user_id: str) -> EntityOutcome:
        if entity_type == "payments" and direction == SyncDirection.PUSH:
            return EntityOutcome(entity_type=entity_type, status=SKIPPED, message=PAYMENTS_PUSH_NOTE)
        try:
            result = await self.executor.sync(entity_type, direction, user_id=user_id)
        except Exception as exc:
            # Isolated to this type; the executor has already written the ERROR log
            logger.error("Bulk sync: %s failed: %s", entity_type, exc)
            partial = getattr(exc, "sync_result", None)
            if partial is not None:
                return EntityOutcome.from_result(partial)
            info = classify_error(exc)
            return EntityOutcome(
                entity_type=entity_type,
                status=SyncStatus.ERROR.value,
                message=f"{entity_type} sync failed: {info.user_message}",
                error=str(exc),
            )
        return EntityOutcome.from_result(result)
