"""Per-delivery control flow: ledger claim, dispatch, commit, then side effects.

The ledger row is inserted already claimed by the first delivery. The
dispatcher's entity writes and the ledger's ``completed`` mark share one
transaction, so a crash between them leaves neither behind. Failures roll the
transaction back and are recorded on the ledger row in a separate transaction.
A claim abandoned by a crashed worker expires and is picked up again.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from talentforge.app.errors import MalformedPayloadError
from talentforge.app.models import (
    HandlerResult,
    WebhookAckResponse,
    WebhookEventRecord,
    WebhookEventStatus,
    WebhookProvider,
    utc_now,
)
from talentforge.app.observability import MetricsRegistry
from talentforge.app.payloads import InboundEvent
from talentforge.app.persistence import Database
from talentforge.app.services.event_dispatch import EventDispatcher
from talentforge.app.services.ledger import ClaimLostError, IdempotencyLedger
from talentforge.app.services.pipeline import PipelineTrigger

logger = logging.getLogger("talentforge.ingestion")

ACK_PROCESSED = "processed"
ACK_DUPLICATE = "duplicate"
ACK_IN_PROGRESS = "in_progress"
ACK_RETRY_SCHEDULED = "retry_scheduled"
ACK_DEAD_LETTER = "dead_letter"


def parse_stored_event(record: WebhookEventRecord) -> InboundEvent:
    """Rebuild the typed event from a ledger row for replay."""
    try:
        return InboundEvent.model_validate_json(record.event_json)
    except ValidationError as exc:
        raise MalformedPayloadError(
            f"stored event cannot be replayed: {exc.error_count()} validation errors",
            provider=record.provider,
        ) from exc


class WebhookProcessor:
    def __init__(
        self,
        *,
        database: Database,
        ledger: IdempotencyLedger,
        dispatcher: EventDispatcher,
        pipeline_trigger: PipelineTrigger,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.pipeline_trigger = pipeline_trigger
        self.metrics = metrics

    def ingest(
        self,
        event: InboundEvent,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> WebhookAckResponse:
        current = now or utc_now()
        begin = self.ledger.try_begin(event, payload, now=current)
        record = begin.record
        if begin.created:
            return self._process(record.id, event, attempt=record.attempts, now=current)

        if self.ledger.claim_expired(record, current):
            record = self.ledger.expire_claim(record, now=current) or self.ledger.get(record.id)

        if record.status == WebhookEventStatus.completed:
            logger.info(
                "webhook_duplicate provider=%s event_id=%s",
                event.provider.value,
                event.event_id,
            )
            return self._ack(event, ACK_DUPLICATE, record, cached=True)
        if record.status == WebhookEventStatus.dead_letter:
            return self._ack(event, ACK_DEAD_LETTER, record)
        if record.status == WebhookEventStatus.failed:
            due = record.next_retry_at is None or record.next_retry_at <= current
            if due and self.ledger.mark_processing(
                record.id, attempts=record.attempts, due_before=current, now=current
            ):
                return self._process(record.id, event, attempt=record.attempts + 1, now=current)
            if not due:
                return self._ack(event, ACK_RETRY_SCHEDULED, record)
        return self._ack(event, ACK_IN_PROGRESS, record)

    def replay(
        self, record: WebhookEventRecord, now: Optional[datetime] = None
    ) -> Optional[WebhookEventStatus]:
        """Re-run a failed ledger row. None when another worker holds the claim."""
        current = now or utc_now()
        claimed = self.ledger.mark_processing(
            record.id, attempts=record.attempts, due_before=current, now=current
        )
        if not claimed:
            return None
        try:
            event = parse_stored_event(record)
        except MalformedPayloadError as exc:
            dead = self.ledger.mark_dead_letter(record.id, exc.message)
            self._count(record.provider, ACK_DEAD_LETTER)
            logger.error(
                "webhook_replay_unparseable provider=%s event_id=%s detail=%s",
                record.provider.value,
                record.event_id,
                exc.message,
            )
            return dead.status
        ack = self._process(record.id, event, attempt=record.attempts + 1, now=current)
        if ack.status == ACK_PROCESSED:
            return WebhookEventStatus.completed
        if ack.status == ACK_DEAD_LETTER:
            return WebhookEventStatus.dead_letter
        if ack.status == ACK_IN_PROGRESS:
            return None
        return WebhookEventStatus.failed

    def _process(
        self, ledger_id: str, event: InboundEvent, *, attempt: int, now: datetime
    ) -> WebhookAckResponse:
        result: Optional[HandlerResult] = None
        try:
            with self.database.transaction() as conn:
                result = self.dispatcher.dispatch(conn, event)
                self.ledger.mark_completed(ledger_id, attempt=attempt, conn=conn, now=now)
        except ClaimLostError:
            # Another attempt owns the row now; this one's writes were rolled back.
            logger.warning(
                "webhook_claim_lost provider=%s event_id=%s attempt=%s",
                event.provider.value,
                event.event_id,
                attempt,
            )
            return self._ack(event, ACK_IN_PROGRESS, self.ledger.get(ledger_id))
        except Exception as exc:
            logger.exception(
                "webhook_handler_failed provider=%s event_type=%s event_id=%s",
                event.provider.value,
                event.event_type,
                event.event_id,
            )
            failed = self.ledger.mark_failed_or_dead_letter(
                ledger_id, str(exc) or exc.__class__.__name__, attempt=attempt, now=now
            )
            if failed.status == WebhookEventStatus.dead_letter:
                status = ACK_DEAD_LETTER
            elif failed.status == WebhookEventStatus.failed:
                status = ACK_RETRY_SCHEDULED
            else:
                status = ACK_IN_PROGRESS
            return self._ack(event, status, failed)

        if result.pipeline_interview_id:
            self.pipeline_trigger.fire(result.pipeline_interview_id)
        logger.info(
            "webhook_processed provider=%s event_type=%s event_id=%s outcome=%s",
            event.provider.value,
            event.event_type,
            event.event_id,
            result.outcome.value,
        )
        record = self.ledger.get(ledger_id)
        return self._ack(event, ACK_PROCESSED, record, result=result)

    def _ack(
        self,
        event: InboundEvent,
        status: str,
        record: WebhookEventRecord,
        *,
        cached: bool = False,
        result: Optional[HandlerResult] = None,
    ) -> WebhookAckResponse:
        self._count(event.provider, status)
        return WebhookAckResponse(
            status=status,
            cached=cached,
            outcome=result.outcome if result else None,
            event_id=event.event_id,
            attempts=record.attempts,
            next_retry_utc=record.next_retry_at,
            detail=result.detail if result else record.error_message,
        )

    def _count(self, provider: WebhookProvider, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_webhook(provider=provider.value, status=status)
