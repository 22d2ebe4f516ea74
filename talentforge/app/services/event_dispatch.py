from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy.engine import Connection

from talentforge.app.errors import TransitionRejected
from talentforge.app.models import (
    HandlerOutcome,
    HandlerResult,
    InterviewRecord,
    InterviewStatus,
    RecordingStatus,
    TranscriptStatus,
)
from talentforge.app.payloads import (
    EMAIL_BOUNCED,
    EMAIL_CLICKED,
    EMAIL_COMPLAINED,
    EMAIL_DELIVERED,
    EMAIL_DELIVERY_DELAYED,
    EMAIL_OPENED,
    EMAIL_SENT,
    MEETING_ENDED,
    MEETING_STARTED,
    RECORDING_COMPLETED,
    RECORDING_PAUSED,
    RECORDING_RESUMED,
    RECORDING_STARTED,
    RECORDING_STOPPED,
    EmailDetails,
    InboundEvent,
    RecordingCompletedDetails,
)
from talentforge.app.services.campaign_metrics import CampaignMetricsUpdater
from talentforge.app.services.workflow import (
    advance_recording,
    check_interview_transition,
    select_primary_recording,
)
from talentforge.app.store import Store

logger = logging.getLogger("talentforge.dispatch")

Handler = Callable[[Connection, InboundEvent], HandlerResult]


def _result(outcome: HandlerOutcome, detail: str, **kwargs: Optional[str]) -> HandlerResult:
    return HandlerResult(outcome=outcome, detail=detail, **kwargs)


class EventDispatcher:
    """Routes a normalized event to its handler inside the caller's transaction."""

    def __init__(self, store: Store, metrics_updater: CampaignMetricsUpdater) -> None:
        self.store = store
        self.metrics_updater = metrics_updater
        self._routes: dict[str, Handler] = {
            RECORDING_STARTED: self._recording_started,
            RECORDING_STOPPED: self._recording_stopped,
            RECORDING_PAUSED: self._recording_paused_or_resumed,
            RECORDING_RESUMED: self._recording_paused_or_resumed,
            RECORDING_COMPLETED: self._recording_completed,
            MEETING_STARTED: self._meeting_started,
            MEETING_ENDED: self._meeting_ended,
            EMAIL_SENT: self._email_logged_only,
            EMAIL_DELIVERY_DELAYED: self._email_logged_only,
            EMAIL_DELIVERED: self._email_counter,
            EMAIL_OPENED: self._email_counter,
            EMAIL_CLICKED: self._email_counter,
            EMAIL_BOUNCED: self._email_counter,
            EMAIL_COMPLAINED: self._email_counter,
        }

    def dispatch(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        handler = self._routes.get(event.event_type)
        if handler is None:
            logger.info(
                "webhook_event_ignored provider=%s event_type=%s event_id=%s",
                event.provider.value,
                event.event_type,
                event.event_id,
            )
            return _result(HandlerOutcome.ignored, f"unhandled event type {event.event_type}")
        try:
            return handler(conn, event)
        except TransitionRejected as exc:
            logger.warning(
                "webhook_transition_rejected provider=%s event_type=%s ref=%s detail=%s",
                event.provider.value,
                event.event_type,
                event.related_entity_ref,
                exc,
            )
            return _result(HandlerOutcome.transition_rejected, str(exc))

    # Video

    def _find_interview(self, conn: Connection, event: InboundEvent) -> Optional[InterviewRecord]:
        interview = self.store.find_interview_by_meeting_ref(conn, event.related_entity_ref)
        if interview is None:
            logger.warning(
                "interview_not_found meeting_ref=%s event_type=%s",
                event.related_entity_ref,
                event.event_type,
            )
        return interview

    def _bookkeeping(self, event: InboundEvent) -> dict[str, object]:
        return {
            "last_webhook_event_type": event.event_type,
            "last_webhook_received_at": event.occurred_at,
        }

    def _advance_recording(
        self, conn: Connection, event: InboundEvent, target: RecordingStatus
    ) -> HandlerResult:
        interview = self._find_interview(conn, event)
        if interview is None:
            return _result(HandlerOutcome.unknown_entity, "interview not found")
        values = self._bookkeeping(event)
        moved = advance_recording(interview.recording_status, target)
        if moved is None:
            self.store.update_interview(conn, interview.id, values)
            return _result(
                HandlerOutcome.no_op,
                f"recording already {interview.recording_status.value}",
            )
        values["recording_status"] = moved
        changed = self.store.update_interview(
            conn,
            interview.id,
            values,
            expected_recording_status=interview.recording_status,
        )
        if not changed:
            return _result(HandlerOutcome.no_op, "recording status changed concurrently")
        logger.info(
            "recording_status_changed interview_id=%s from=%s to=%s",
            interview.id,
            interview.recording_status.value,
            moved.value,
        )
        return _result(HandlerOutcome.applied, f"recording {moved.value}")

    def _recording_started(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        return self._advance_recording(conn, event, RecordingStatus.in_progress)

    def _recording_stopped(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        return self._advance_recording(conn, event, RecordingStatus.processing)

    def _recording_paused_or_resumed(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        interview = self._find_interview(conn, event)
        if interview is None:
            return _result(HandlerOutcome.unknown_entity, "interview not found")
        self.store.update_interview(conn, interview.id, self._bookkeeping(event))
        return _result(HandlerOutcome.no_op, event.event_type)

    def _recording_completed(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        interview = self._find_interview(conn, event)
        if interview is None:
            return _result(HandlerOutcome.unknown_entity, "interview not found")
        files = []
        if isinstance(event.details, RecordingCompletedDetails):
            files = event.details.recording_files
        primary = select_primary_recording(files)

        values = self._bookkeeping(event)
        values.update(
            {
                "recording_status": RecordingStatus.completed,
                "recording_url": primary.download_url if primary else None,
                "recording_duration_seconds": primary.duration_seconds() if primary else None,
                "recording_file_size": primary.file_size if primary else None,
                "recording_processed_at": event.occurred_at,
            }
        )
        first_completion = interview.recording_status != RecordingStatus.completed
        # A pending transcript is only picked up by the pipeline fired below.
        if first_completion and interview.transcript_status in (
            TranscriptStatus.none,
            TranscriptStatus.failed,
        ):
            values["transcript_status"] = TranscriptStatus.pending

        changed = self.store.update_interview(
            conn,
            interview.id,
            values,
            expected_recording_status=interview.recording_status,
        )
        if not changed:
            return _result(HandlerOutcome.no_op, "recording status changed concurrently")
        if not first_completion:
            return _result(HandlerOutcome.no_op, "recording already completed")
        logger.info(
            "recording_completed interview_id=%s files=%s duration_seconds=%s",
            interview.id,
            len(files),
            values["recording_duration_seconds"],
        )
        return _result(
            HandlerOutcome.applied,
            "recording completed",
            pipeline_interview_id=interview.id,
        )

    def _meeting_started(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        interview = self._find_interview(conn, event)
        if interview is None:
            return _result(HandlerOutcome.unknown_entity, "interview not found")
        values = self._bookkeeping(event)
        self.store.update_interview(conn, interview.id, values)
        if not check_interview_transition(interview.status, InterviewStatus.in_progress):
            return _result(HandlerOutcome.no_op, "meeting already in progress")
        changed = self.store.update_interview(
            conn,
            interview.id,
            {"status": InterviewStatus.in_progress},
            expected_status=interview.status,
        )
        if not changed:
            return _result(HandlerOutcome.no_op, "interview status changed concurrently")
        return _result(HandlerOutcome.applied, "interview in_progress")

    def _meeting_ended(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        interview = self._find_interview(conn, event)
        if interview is None:
            return _result(HandlerOutcome.unknown_entity, "interview not found")
        values = self._bookkeeping(event)
        if interview.status != InterviewStatus.in_progress:
            self.store.update_interview(conn, interview.id, values)
            return _result(
                HandlerOutcome.no_op,
                f"meeting ended while interview {interview.status.value}",
            )
        values["status"] = InterviewStatus.completed
        changed = self.store.update_interview(
            conn, interview.id, values, expected_status=InterviewStatus.in_progress
        )
        if not changed:
            return _result(HandlerOutcome.no_op, "interview status changed concurrently")
        return _result(HandlerOutcome.applied, "interview completed")

    # Email

    def _email_logged_only(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        logger.info(
            "email_event_logged event_type=%s message_id=%s",
            event.event_type,
            event.related_entity_ref,
        )
        return _result(HandlerOutcome.no_op, event.event_type)

    def _email_counter(self, conn: Connection, event: InboundEvent) -> HandlerResult:
        send = self.store.find_send_by_message_id(conn, event.related_entity_ref)
        if send is None:
            logger.info(
                "campaign_send_not_found message_id=%s event_type=%s",
                event.related_entity_ref,
                event.event_type,
            )
            return _result(HandlerOutcome.unknown_entity, "campaign send not found")
        details = event.details if isinstance(event.details, EmailDetails) else EmailDetails()
        first = self.metrics_updater.apply(
            conn,
            send,
            event.event_type,
            occurred_at=event.occurred_at,
            error_message=details.bounce_message if event.event_type == EMAIL_BOUNCED else None,
            recipient=details.recipients[0] if details.recipients else None,
        )
        if not first:
            return _result(HandlerOutcome.no_op, f"{event.event_type} already recorded")
        return _result(HandlerOutcome.applied, event.event_type)
