from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from talentforge.app.models import WebhookEventStatus, utc_now

if TYPE_CHECKING:
    from talentforge.app.services.ingestion import WebhookProcessor

logger = logging.getLogger("talentforge.retry")

BACKOFF_MINUTES = (5, 15, 60)


@dataclass(frozen=True)
class RetryDecision:
    status: WebhookEventStatus
    next_retry_at: Optional[datetime]


@dataclass
class RetrySweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_letters: int = 0
    reclaimed: int = 0


def compute_next_retry(attempts: int, now: Optional[datetime] = None) -> datetime:
    """Backoff after ``attempts`` earlier failures: 5, 15, then 60 minutes."""
    index = min(max(attempts, 0), len(BACKOFF_MINUTES) - 1)
    return (now or utc_now()) + timedelta(minutes=BACKOFF_MINUTES[index])


def classify(attempts: int, max_attempts: int, now: Optional[datetime] = None) -> RetryDecision:
    """``attempts`` already includes the attempt that just failed."""
    if attempts >= max_attempts:
        return RetryDecision(status=WebhookEventStatus.dead_letter, next_retry_at=None)
    return RetryDecision(
        status=WebhookEventStatus.failed,
        next_retry_at=compute_next_retry(attempts - 1, now=now),
    )


def run_retry_sweep(
    processor: "WebhookProcessor",
    *,
    batch_size: int = 10,
    now: Optional[datetime] = None,
) -> RetrySweepResult:
    current = now or utc_now()
    result = RetrySweepResult()
    ledger = processor.ledger
    for stale in ledger.list_expired_claims(current, limit=batch_size):
        expired = ledger.expire_claim(stale, now=current)
        if expired is None:
            continue
        result.reclaimed += 1
        if expired.status == WebhookEventStatus.dead_letter:
            result.dead_letters += 1
    due = ledger.list_due_retries(current, limit=batch_size)
    for record in due:
        status = processor.replay(record, now=current)
        if status is None:
            # Claimed by a concurrent redelivery.
            continue
        result.processed += 1
        if status == WebhookEventStatus.completed:
            result.succeeded += 1
        elif status == WebhookEventStatus.dead_letter:
            result.dead_letters += 1
        else:
            result.failed += 1
    logger.info(
        "retry_sweep_complete processed=%s succeeded=%s failed=%s dead_letters=%s reclaimed=%s",
        result.processed,
        result.succeeded,
        result.failed,
        result.dead_letters,
        result.reclaimed,
    )
    return result
