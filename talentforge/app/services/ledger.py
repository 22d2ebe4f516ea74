from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.engine import Connection

from talentforge.app.errors import StoreNotFoundError
from talentforge.app.models import (
    WebhookEventRecord,
    WebhookEventStatus,
    WebhookProvider,
    utc_now,
)
from talentforge.app.payloads import InboundEvent
from talentforge.app.persistence import Database
from talentforge.app.services.retry import classify
from talentforge.app.store import new_id

logger = logging.getLogger("talentforge.ledger")

PAYLOAD_MAX_BYTES = 10_000
ERROR_MESSAGE_MAX_CHARS = 2_000
CLAIM_TIMEOUT_SECONDS = 300
CLAIMED_STATUSES = (WebhookEventStatus.received, WebhookEventStatus.processing)


class ClaimLostError(Exception):
    """The attempt no longer owns the ledger row; its writes must be rolled back."""

    def __init__(self, ledger_id: str, attempt: int) -> None:
        super().__init__(f"claim lost on {ledger_id} attempt {attempt}")
        self.ledger_id = ledger_id
        self.attempt = attempt


@dataclass(frozen=True)
class LedgerBegin:
    created: bool
    record: WebhookEventRecord


def truncate_payload(payload: dict[str, Any], limit: int = PAYLOAD_MAX_BYTES) -> dict[str, Any]:
    serialized = json.dumps(payload, separators=(",", ":"), default=str)
    size = len(serialized.encode("utf-8"))
    if size <= limit:
        return payload
    return {"_truncated": True, "_original_size": size, "preview": serialized[:limit]}


class IdempotencyLedger:
    """Durable record of every inbound webhook, keyed by (provider, event_id).

    A row is owned by at most one attempt at a time. The owner is identified by
    the ``attempts`` value it claimed with, and every terminal write checks it.
    ``payload`` is a size-capped audit copy; replays read ``event_json``.
    """

    def __init__(
        self,
        database: Database,
        *,
        max_attempts: int = 3,
        payload_max_bytes: int = PAYLOAD_MAX_BYTES,
        claim_timeout_seconds: int = CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self.database = database
        self.table = database.webhook_events
        self.max_attempts = max_attempts
        self.payload_max_bytes = payload_max_bytes
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def try_begin(
        self,
        event: InboundEvent,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> LedgerBegin:
        """Insert the row already claimed as attempt 1, unless one exists.

        ``created`` means the caller owns attempt 1. Otherwise the existing row
        is returned untouched.
        """
        current = now or utc_now()
        stored = truncate_payload(payload, self.payload_max_bytes)
        with self.database.transaction() as conn:
            created = self.database.insert_or_ignore(
                conn,
                self.table,
                {
                    "id": new_id("whe"),
                    "provider": event.provider.value,
                    "event_type": event.event_type,
                    "event_id": event.event_id,
                    "related_entity_ref": event.related_entity_ref,
                    "payload_json": json.dumps(stored, default=str),
                    "event_json": event.model_dump_json(),
                    "status": WebhookEventStatus.processing.value,
                    "attempts": 1,
                    "max_attempts": self.max_attempts,
                    "last_attempt_at": current,
                    "created_at": current,
                },
            )
            row = conn.execute(
                select(self.table)
                .where(self.table.c.provider == event.provider.value)
                .where(self.table.c.event_id == event.event_id)
            ).first()
        if created and stored is not payload:
            logger.warning(
                "webhook_payload_truncated provider=%s event_id=%s original_size=%s",
                event.provider.value,
                event.event_id,
                stored["_original_size"],
            )
        return LedgerBegin(created=created, record=self._to_record(row))

    def get(self, ledger_id: str, conn: Optional[Connection] = None) -> WebhookEventRecord:
        with self.database.transaction(conn) as active:
            row = active.execute(select(self.table).where(self.table.c.id == ledger_id)).first()
        if not row:
            raise StoreNotFoundError(f"webhook event not found: {ledger_id}")
        return self._to_record(row)

    def mark_processing(
        self,
        ledger_id: str,
        *,
        attempts: int,
        due_before: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Claim a failed row for attempt ``attempts + 1``.

        ``attempts`` is the count the caller last saw. False when another worker
        claimed the row first or the row is not due yet.
        """
        statement = (
            update(self.table)
            .where(self.table.c.id == ledger_id)
            .where(self.table.c.status == WebhookEventStatus.failed.value)
            .where(self.table.c.attempts == attempts)
        )
        if due_before is not None:
            statement = statement.where(
                or_(
                    self.table.c.next_retry_at.is_(None),
                    self.table.c.next_retry_at <= due_before,
                )
            )
        with self.database.transaction() as conn:
            result = conn.execute(
                statement.values(
                    status=WebhookEventStatus.processing.value,
                    attempts=attempts + 1,
                    last_attempt_at=now or utc_now(),
                )
            )
        return result.rowcount == 1

    def mark_completed(
        self,
        ledger_id: str,
        *,
        attempt: int,
        conn: Optional[Connection] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Complete the row inside the caller's transaction. Raises ClaimLostError
        when ``attempt`` no longer owns it, so the handler's writes roll back too."""
        with self.database.transaction(conn) as active:
            result = active.execute(
                update(self.table)
                .where(self.table.c.id == ledger_id)
                .where(self.table.c.status == WebhookEventStatus.processing.value)
                .where(self.table.c.attempts == attempt)
                .values(
                    status=WebhookEventStatus.completed.value,
                    processed_at=now or utc_now(),
                    next_retry_at=None,
                    error_message=None,
                )
            )
            if result.rowcount != 1:
                raise ClaimLostError(ledger_id, attempt)

    def mark_failed_or_dead_letter(
        self,
        ledger_id: str,
        error: str,
        *,
        attempt: int,
        now: Optional[datetime] = None,
    ) -> WebhookEventRecord:
        current = now or utc_now()
        with self.database.transaction() as conn:
            record = self.get(ledger_id, conn=conn)
            decision = classify(attempt, record.max_attempts, now=current)
            result = conn.execute(
                update(self.table)
                .where(self.table.c.id == ledger_id)
                .where(self.table.c.status == WebhookEventStatus.processing.value)
                .where(self.table.c.attempts == attempt)
                .values(
                    status=decision.status.value,
                    next_retry_at=decision.next_retry_at,
                    error_message=error[:ERROR_MESSAGE_MAX_CHARS],
                )
            )
            updated = self.get(ledger_id, conn=conn)
        if result.rowcount != 1:
            logger.warning(
                "webhook_failure_discarded provider=%s event_id=%s attempt=%s current_attempts=%s",
                updated.provider.value,
                updated.event_id,
                attempt,
                updated.attempts,
            )
        elif updated.status == WebhookEventStatus.dead_letter:
            logger.error(
                "webhook_dead_letter provider=%s event_id=%s attempts=%s error=%s",
                updated.provider.value,
                updated.event_id,
                updated.attempts,
                error,
            )
        else:
            logger.warning(
                "webhook_retry_scheduled provider=%s event_id=%s attempts=%s next_retry_at=%s",
                updated.provider.value,
                updated.event_id,
                updated.attempts,
                updated.next_retry_at,
            )
        return updated

    def mark_dead_letter(self, ledger_id: str, error: str) -> WebhookEventRecord:
        with self.database.transaction() as conn:
            conn.execute(
                update(self.table)
                .where(self.table.c.id == ledger_id)
                .values(
                    status=WebhookEventStatus.dead_letter.value,
                    next_retry_at=None,
                    error_message=error[:ERROR_MESSAGE_MAX_CHARS],
                )
            )
            return self.get(ledger_id, conn=conn)

    # Abandoned claims

    def _claim_expired_clause(self, now: datetime):
        cutoff = now - self.claim_timeout
        return and_(
            self.table.c.status.in_([status.value for status in CLAIMED_STATUSES]),
            or_(
                self.table.c.last_attempt_at <= cutoff,
                and_(
                    self.table.c.last_attempt_at.is_(None),
                    self.table.c.created_at <= cutoff,
                ),
            ),
        )

    def claim_expired(self, record: WebhookEventRecord, now: datetime) -> bool:
        if record.status not in CLAIMED_STATUSES:
            return False
        started = record.last_attempt_at or record.created_at
        return started <= now - self.claim_timeout

    def list_expired_claims(self, now: datetime, limit: int = 10) -> list[WebhookEventRecord]:
        with self.database.transaction() as conn:
            rows = conn.execute(
                select(self.table)
                .where(self._claim_expired_clause(now))
                .order_by(self.table.c.created_at)
                .limit(max(1, limit))
            ).all()
        return [self._to_record(row) for row in rows]

    def expire_claim(
        self, record: WebhookEventRecord, now: datetime
    ) -> Optional[WebhookEventRecord]:
        """Count an abandoned attempt as failed and make the row due immediately.

        None when the row moved on since ``record`` was read.
        """
        decision = classify(record.attempts, record.max_attempts, now=now)
        next_retry_at = now if decision.status == WebhookEventStatus.failed else None
        timeout_seconds = int(self.claim_timeout.total_seconds())
        with self.database.transaction() as conn:
            result = conn.execute(
                update(self.table)
                .where(self.table.c.id == record.id)
                .where(self.table.c.attempts == record.attempts)
                .where(self._claim_expired_clause(now))
                .values(
                    status=decision.status.value,
                    next_retry_at=next_retry_at,
                    error_message=f"processing claim expired after {timeout_seconds}s",
                )
            )
            if result.rowcount != 1:
                return None
            updated = self.get(record.id, conn=conn)
        logger.warning(
            "webhook_claim_expired provider=%s event_id=%s attempts=%s status=%s",
            updated.provider.value,
            updated.event_id,
            updated.attempts,
            updated.status.value,
        )
        return updated

    # Listings

    def list_due_retries(self, now: datetime, limit: int = 10) -> list[WebhookEventRecord]:
        with self.database.transaction() as conn:
            rows = conn.execute(
                select(self.table)
                .where(self.table.c.status == WebhookEventStatus.failed.value)
                .where(self.table.c.next_retry_at <= now)
                .where(self.table.c.attempts < self.table.c.max_attempts)
                .order_by(self.table.c.next_retry_at)
                .limit(max(1, limit))
            ).all()
        return [self._to_record(row) for row in rows]

    def list_dead_letters(
        self,
        *,
        provider: Optional[WebhookProvider] = None,
        event_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[WebhookEventRecord], int]:
        safe_limit = max(1, min(limit, 100))
        safe_page = max(1, page)
        conditions = [self.table.c.status == WebhookEventStatus.dead_letter.value]
        if provider is not None:
            conditions.append(self.table.c.provider == provider.value)
        if event_type:
            conditions.append(self.table.c.event_type == event_type)
        with self.database.transaction() as conn:
            total = conn.execute(
                select(func.count()).select_from(self.table).where(*conditions)
            ).scalar_one()
            rows = conn.execute(
                select(self.table)
                .where(*conditions)
                .order_by(self.table.c.created_at.desc())
                .limit(safe_limit)
                .offset((safe_page - 1) * safe_limit)
            ).all()
        return [self._to_record(row) for row in rows], int(total)

    def reset_dead_letter(
        self,
        ledger_id: str,
        delay: timedelta = timedelta(minutes=1),
        now: Optional[datetime] = None,
    ) -> WebhookEventRecord:
        """Give a dead letter a fresh attempt budget and queue it for the next sweep."""
        with self.database.transaction() as conn:
            result = conn.execute(
                update(self.table)
                .where(self.table.c.id == ledger_id)
                .where(self.table.c.status == WebhookEventStatus.dead_letter.value)
                .values(
                    status=WebhookEventStatus.failed.value,
                    attempts=0,
                    next_retry_at=(now or utc_now()) + delay,
                    error_message=None,
                )
            )
            if result.rowcount != 1:
                raise StoreNotFoundError(f"dead letter not found: {ledger_id}")
            record = self.get(ledger_id, conn=conn)
        logger.info(
            "dead_letter_reset provider=%s event_id=%s next_retry_at=%s",
            record.provider.value,
            record.event_id,
            record.next_retry_at,
        )
        return record

    @staticmethod
    def total_pages(total: int, limit: int) -> int:
        return max(1, math.ceil(total / max(1, limit)))

    @staticmethod
    def _to_record(row: Any) -> WebhookEventRecord:
        data = dict(row._mapping)
        data["payload"] = json.loads(data.pop("payload_json") or "{}")
        return WebhookEventRecord.model_validate(data)
