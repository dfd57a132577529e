"""Build and run retries of finished sync log entries."""
import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from ledgersync.models.sync import SyncDirection, SyncLog, SyncStatus
from ledgersync.sync.errors import NotRetryableError
from ledgersync.sync.executor import SyncExecutor, SyncOptions, SyncResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryRequest:
    entity_type: str
    direction: SyncDirection
    retry_of: int
    local_ids: Optional[List[int]] = None  # None = whole entity type
    external_ids: Optional[List[str]] = None

    @property
    def scoped(self) -> bool:
        return self.local_ids is not None or self.external_ids is not None

    def to_options(self) -> SyncOptions:
        return SyncOptions(
            local_ids=self.local_ids,
            external_ids=self.external_ids,
            retry_of=self.retry_of,
        )


def retry_request_for(log: SyncLog) -> RetryRequest:
    """
    Work out what a retry of `log` should cover.

    ERROR entries without per-record failures (systemic aborts) retry the
    whole entity type. Otherwise only the failed records are retried: push
    failures by local id, pull failures by ledger id.

    Raises:
        NotRetryableError: entry succeeded, is still running, or has nothing to retry.
    """
    if log.status == SyncStatus.SUCCESS.value:
        raise NotRetryableError(f"Sync log {log.id} succeeded; nothing to retry")
    if log.status == SyncStatus.IN_PROGRESS.value:
        raise NotRetryableError(f"Sync log {log.id} is still in progress")

    details = json.loads(log.details_json) if log.details_json else {}
    entity_type = details.get("entity_type")
    if not entity_type:
        raise NotRetryableError(f"Sync log {log.id} does not record its entity type")
    direction = SyncDirection(log.direction)
    failures = details.get("failures") or []

    if not failures:
        if log.status == SyncStatus.ERROR.value:
            return RetryRequest(entity_type=entity_type, direction=direction, retry_of=log.id)
        raise NotRetryableError(
            f"Sync log {log.id} has no failed records; resolve its conflicts instead"
        )

    local_ids = sorted({f["record_id"] for f in failures if f.get("phase") == "push" and f.get("record_id")})
    external_ids = sorted({f["external_id"] for f in failures if f.get("phase") == "pull" and f.get("external_id")})
    if not local_ids and not external_ids:
        # failures we cannot address one by one
        return RetryRequest(entity_type=entity_type, direction=direction, retry_of=log.id)
    return RetryRequest(
        entity_type=entity_type,
        direction=direction,
        retry_of=log.id,
        local_ids=local_ids,
        external_ids=external_ids,
    )


async def run_retry(executor: SyncExecutor, request: RetryRequest, *, user_id: str) -> List[SyncResult]:
    """Execute a RetryRequest. Single-payment pushes retry one payment at a time."""
    logger.info(
        "Retrying sync log %s: %s %s (local=%s, external=%s)",
        request.retry_of, request.entity_type, request.direction.value,
        request.local_ids, request.external_ids,
    )
    if request.entity_type == "payments" and request.direction == SyncDirection.PUSH:
        if not request.local_ids:
            raise NotRetryableError(f"Sync log {request.retry_of} names no payment to push")
        return [
            await executor.push_payment(payment_id, user_id=user_id, retry_of=request.retry_of)
            for payment_id in request.local_ids
        ]
    result = await executor.sync(
        request.entity_type,
        request.direction,
        user_id=user_id,
        options=request.to_options(),
    )
    return [result]
