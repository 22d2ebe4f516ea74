from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from talentforge.app.errors import StoreNotFoundError, TransitionRejected
from talentforge.app.models import (
    CampaignRecord,
    CampaignSendRecord,
    CampaignSendStatus,
    CandidateRecord,
    EmailSuppressionRecord,
    InterviewCreateRequest,
    InterviewRecord,
    InterviewStatus,
    RecordingStatus,
    SuppressionReason,
    TranscriptStatus,
    to_naive_utc,
    utc_now,
)
from talentforge.app.persistence import Database
from talentforge.app.services.workflow import (
    check_interview_transition,
    check_transcript_transition,
)

SEND_STATUS_RANK = {
    CampaignSendStatus.pending: 0,
    CampaignSendStatus.sent: 1,
    CampaignSendStatus.delivered: 2,
    CampaignSendStatus.opened: 3,
    CampaignSendStatus.clicked: 4,
    CampaignSendStatus.replied: 5,
    CampaignSendStatus.bounced: 6,
}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class Store:
    """Entity reads and guarded writes. Every write method accepts an open connection."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # Interviews

    def create_interview(self, request: InterviewCreateRequest) -> InterviewRecord:
        now = utc_now()
        values = {
            "id": new_id("int"),
            "company_id": request.company_id.strip(),
            "candidate_id": request.candidate_id,
            "status": InterviewStatus.scheduled.value,
            "recording_status": RecordingStatus.none.value,
            "transcript_status": TranscriptStatus.none.value,
            "external_meeting_ref": request.external_meeting_ref,
            "scheduled_at": to_naive_utc(request.scheduled_at),
            "duration_minutes": request.duration_minutes,
            "created_at": now,
            "updated_at": now,
        }
        with self.database.transaction() as conn:
            conn.execute(self.database.interviews.insert().values(**values))
            return self.get_interview(values["id"], conn=conn)

    def get_interview(self, interview_id: str, conn: Optional[Connection] = None) -> InterviewRecord:
        table = self.database.interviews
        with self.database.transaction(conn) as active:
            row = active.execute(select(table).where(table.c.id == interview_id)).first()
        if not row:
            raise StoreNotFoundError(f"interview not found: {interview_id}")
        return InterviewRecord.model_validate(dict(row._mapping))

    def find_interview_by_meeting_ref(
        self, conn: Connection, meeting_ref: str
    ) -> Optional[InterviewRecord]:
        table = self.database.interviews
        row = conn.execute(
            select(table)
            .where(table.c.external_meeting_ref == meeting_ref)
            .order_by(table.c.created_at.desc())
            .limit(1)
        ).first()
        if not row:
            return None
        return InterviewRecord.model_validate(dict(row._mapping))

    def update_interview(
        self,
        conn: Connection,
        interview_id: str,
        values: dict[str, Any],
        *,
        expected_status: Optional[InterviewStatus] = None,
        expected_recording_status: Optional[RecordingStatus] = None,
    ) -> bool:
        """Apply ``values`` only when the row still holds the expected statuses."""
        table = self.database.interviews
        statement = update(table).where(table.c.id == interview_id)
        if expected_status is not None:
            statement = statement.where(table.c.status == expected_status.value)
        if expected_recording_status is not None:
            statement = statement.where(
                table.c.recording_status == expected_recording_status.value
            )
        payload = {key: getattr(value, "value", value) for key, value in values.items()}
        payload.setdefault("updated_at", utc_now())
        result = conn.execute(statement.values(**payload))
        return result.rowcount == 1

    def transition_interview(
        self, interview_id: str, to_status: InterviewStatus, conn: Optional[Connection] = None
    ) -> InterviewRecord:
        with self.database.transaction(conn) as active:
            interview = self.get_interview(interview_id, conn=active)
            if not check_interview_transition(interview.status, to_status):
                return interview
            changed = self.update_interview(
                active,
                interview_id,
                {"status": to_status},
                expected_status=interview.status,
            )
            latest = self.get_interview(interview_id, conn=active)
            if not changed and latest.status != to_status:
                raise TransitionRejected(
                    entity="interview", current=latest.status.value, attempted=to_status.value
                )
            return latest

    def reschedule_interview(
        self,
        interview_id: str,
        *,
        scheduled_at: datetime,
        duration_minutes: Optional[int] = None,
    ) -> InterviewRecord:
        values: dict[str, Any] = {"scheduled_at": to_naive_utc(scheduled_at)}
        if duration_minutes is not None:
            values["duration_minutes"] = duration_minutes
        with self.database.transaction() as conn:
            interview = self.get_interview(interview_id, conn=conn)
            if interview.status != InterviewStatus.scheduled:
                # Only a meeting that has not started can move.
                raise TransitionRejected(
                    entity="interview",
                    current=interview.status.value,
                    attempted=InterviewStatus.scheduled.value,
                )
            self.update_interview(
                conn, interview_id, values, expected_status=InterviewStatus.scheduled
            )
            return self.get_interview(interview_id, conn=conn)

    def transition_transcript(
        self, interview_id: str, to_status: TranscriptStatus
    ) -> InterviewRecord:
        table = self.database.interviews
        with self.database.transaction() as conn:
            interview = self.get_interview(interview_id, conn=conn)
            if not check_transcript_transition(interview.transcript_status, to_status):
                return interview
            values: dict[str, Any] = {"transcript_status": to_status.value, "updated_at": utc_now()}
            if to_status == TranscriptStatus.completed:
                values["transcript_processed_at"] = utc_now()
            conn.execute(
                update(table)
                .where(table.c.id == interview_id)
                .where(table.c.transcript_status == interview.transcript_status.value)
                .values(**values)
            )
            return self.get_interview(interview_id, conn=conn)

    # Candidates

    def create_candidate(
        self, *, company_id: str, name: str, email: Optional[str] = None
    ) -> CandidateRecord:
        values = {
            "id": new_id("cand"),
            "company_id": company_id,
            "name": name.strip(),
            "email": email,
            "created_at": utc_now(),
        }
        with self.database.transaction() as conn:
            conn.execute(self.database.candidates.insert().values(**values))
        return CandidateRecord.model_validate(values)

    def get_candidate(self, candidate_id: str, conn: Optional[Connection] = None) -> CandidateRecord:
        table = self.database.candidates
        with self.database.transaction(conn) as active:
            row = active.execute(select(table).where(table.c.id == candidate_id)).first()
        if not row:
            raise StoreNotFoundError(f"candidate not found: {candidate_id}")
        return CandidateRecord.model_validate(dict(row._mapping))

    # Campaigns and sends

    def create_campaign(
        self, *, company_id: str, name: str, total_recipients: int = 0
    ) -> CampaignRecord:
        now = utc_now()
        values = {
            "id": new_id("camp"),
            "company_id": company_id,
            "name": name.strip(),
            "status": "active",
            "total_recipients": total_recipients,
            "total_sent": 0,
            "total_opened": 0,
            "total_clicked": 0,
            "total_replied": 0,
            "total_bounced": 0,
            "total_complained": 0,
            "created_at": now,
            "updated_at": now,
        }
        with self.database.transaction() as conn:
            conn.execute(self.database.campaigns.insert().values(**values))
        return CampaignRecord.model_validate(values)

    def get_campaign(self, campaign_id: str, conn: Optional[Connection] = None) -> CampaignRecord:
        table = self.database.campaigns
        with self.database.transaction(conn) as active:
            row = active.execute(select(table).where(table.c.id == campaign_id)).first()
        if not row:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return CampaignRecord.model_validate(dict(row._mapping))

    def create_campaign_send(
        self,
        *,
        campaign_id: str,
        candidate_id: str,
        provider_message_id: Optional[str],
        status: CampaignSendStatus = CampaignSendStatus.sent,
    ) -> CampaignSendRecord:
        now = utc_now()
        values = {
            "id": new_id("send"),
            "campaign_id": campaign_id,
            "candidate_id": candidate_id,
            "provider_message_id": provider_message_id,
            "status": status.value,
            "sent_at": now if status != CampaignSendStatus.pending else None,
            "created_at": now,
            "updated_at": now,
        }
        with self.database.transaction() as conn:
            conn.execute(self.database.campaign_sends.insert().values(**values))
            return self.get_campaign_send(values["id"], conn=conn)

    def get_campaign_send(
        self, send_id: str, conn: Optional[Connection] = None
    ) -> CampaignSendRecord:
        table = self.database.campaign_sends
        with self.database.transaction(conn) as active:
            row = active.execute(select(table).where(table.c.id == send_id)).first()
        if not row:
            raise StoreNotFoundError(f"campaign send not found: {send_id}")
        return CampaignSendRecord.model_validate(dict(row._mapping))

    def find_send_by_message_id(
        self, conn: Connection, provider_message_id: str
    ) -> Optional[CampaignSendRecord]:
        table = self.database.campaign_sends
        row = conn.execute(
            select(table).where(table.c.provider_message_id == provider_message_id).limit(1)
        ).first()
        if not row:
            return None
        return CampaignSendRecord.model_validate(dict(row._mapping))

    def stamp_send_once(
        self,
        conn: Connection,
        send_id: str,
        column: str,
        at: datetime,
        extra_values: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Set ``column`` only while it is still NULL. True when this call set it."""
        table = self.database.campaign_sends
        target = table.c[column]
        values: dict[str, Any] = {column: at, "updated_at": utc_now()}
        values.update(extra_values or {})
        result = conn.execute(
            update(table).where(table.c.id == send_id).where(target.is_(None)).values(**values)
        )
        return result.rowcount == 1

    def advance_send_status(
        self, conn: Connection, send_id: str, to_status: CampaignSendStatus
    ) -> bool:
        table = self.database.campaign_sends
        behind = [
            status.value
            for status, rank in SEND_STATUS_RANK.items()
            if rank < SEND_STATUS_RANK[to_status]
        ]
        result = conn.execute(
            update(table)
            .where(table.c.id == send_id)
            .where(table.c.status.in_(behind))
            .values(status=to_status.value, updated_at=utc_now())
        )
        return result.rowcount == 1

    def coalesce_send_sent_at(self, conn: Connection, send_id: str, at: datetime) -> None:
        table = self.database.campaign_sends
        conn.execute(
            update(table)
            .where(table.c.id == send_id)
            .where(table.c.sent_at.is_(None))
            .values(sent_at=at)
        )

    def increment_campaign_counter(self, conn: Connection, campaign_id: str, counter: str) -> None:
        table = self.database.campaigns
        column = table.c[counter]
        conn.execute(
            update(table)
            .where(table.c.id == campaign_id)
            .values({column: column + 1, table.c.updated_at: utc_now()})
        )

    # Suppressions

    def add_suppression(
        self,
        conn: Connection,
        *,
        company_id: str,
        email: str,
        reason: SuppressionReason,
        source: Optional[str],
    ) -> bool:
        return self.database.insert_or_ignore(
            conn,
            self.database.email_suppressions,
            {
                "id": new_id("sup"),
                "company_id": company_id,
                "email": email.strip().lower(),
                "reason": reason.value,
                "source": source,
                "created_at": utc_now(),
            },
        )

    def list_suppressions(self, company_id: str) -> list[EmailSuppressionRecord]:
        table = self.database.email_suppressions
        with self.database.transaction() as conn:
            rows = conn.execute(
                select(table).where(table.c.company_id == company_id).order_by(table.c.created_at)
            ).all()
        return [EmailSuppressionRecord.model_validate(dict(row._mapping)) for row in rows]
