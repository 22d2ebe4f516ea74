from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class WebhookProvider(str, Enum):
    video = "video"
    email = "email"


class WebhookEventStatus(str, Enum):
    received = "received"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    dead_letter = "dead_letter"


class InterviewStatus(str, Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class RecordingStatus(str, Enum):
    none = "none"
    in_progress = "in_progress"
    processing = "processing"
    completed = "completed"


class TranscriptStatus(str, Enum):
    none = "none"
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class CampaignSendStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    opened = "opened"
    clicked = "clicked"
    replied = "replied"
    bounced = "bounced"


class SuppressionReason(str, Enum):
    bounce = "bounce"
    complaint = "complaint"
    unsubscribe = "unsubscribe"
    manual = "manual"


class HandlerOutcome(str, Enum):
    applied = "applied"
    no_op = "no_op"
    unknown_entity = "unknown_entity"
    transition_rejected = "transition_rejected"
    ignored = "ignored"


class WebhookEventRecord(BaseModel):
    id: str
    provider: WebhookProvider
    event_type: str
    event_id: str
    related_entity_ref: Optional[str]
    payload: dict[str, Any] = Field(default_factory=dict)
    event_json: str
    status: WebhookEventStatus
    attempts: int
    max_attempts: int
    last_attempt_at: Optional[datetime]
    next_retry_at: Optional[datetime]
    error_message: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime

    @property
    def payload_truncated(self) -> bool:
        return bool(self.payload.get("_truncated"))


class CandidateRecord(BaseModel):
    id: str
    company_id: str
    name: str
    email: Optional[str]
    created_at: datetime


class InterviewRecord(BaseModel):
    id: str
    company_id: str
    candidate_id: Optional[str]
    status: InterviewStatus
    recording_status: RecordingStatus
    transcript_status: TranscriptStatus
    external_meeting_ref: Optional[str]
    scheduled_at: datetime
    duration_minutes: int
    recording_url: Optional[str]
    recording_duration_seconds: Optional[int]
    recording_file_size: Optional[int]
    recording_processed_at: Optional[datetime]
    transcript_processed_at: Optional[datetime]
    last_webhook_event_type: Optional[str]
    last_webhook_received_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class CampaignRecord(BaseModel):
    id: str
    company_id: str
    name: str
    status: str
    total_recipients: int
    total_sent: int
    total_opened: int
    total_clicked: int
    total_replied: int
    total_bounced: int
    total_complained: int
    created_at: datetime
    updated_at: datetime


class CampaignSendRecord(BaseModel):
    id: str
    campaign_id: str
    candidate_id: str
    provider_message_id: Optional[str]
    status: CampaignSendStatus
    sent_at: Optional[datetime]
    delivered_at: Optional[datetime]
    opened_at: Optional[datetime]
    clicked_at: Optional[datetime]
    replied_at: Optional[datetime]
    bounced_at: Optional[datetime]
    complained_at: Optional[datetime]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime


class EmailSuppressionRecord(BaseModel):
    id: str
    company_id: str
    email: str
    reason: SuppressionReason
    source: Optional[str]
    created_at: datetime


class HandlerResult(BaseModel):
    outcome: HandlerOutcome
    detail: str
    pipeline_interview_id: Optional[str] = None


class WebhookAckResponse(BaseModel):
    received: bool = True
    status: str
    cached: bool = False
    outcome: Optional[HandlerOutcome] = None
    event_id: Optional[str] = None
    attempts: Optional[int] = None
    next_retry_utc: Optional[datetime] = None
    detail: Optional[str] = None


class UrlValidationResponse(BaseModel):
    plainToken: str
    encryptedToken: str


class InterviewCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    candidate_id: Optional[str] = Field(default=None, max_length=120)
    external_meeting_ref: Optional[str] = Field(default=None, max_length=255)
    scheduled_at: datetime
    duration_minutes: int = Field(default=30, ge=5, le=480)


class InterviewStatusRequest(BaseModel):
    to_status: InterviewStatus
    reason: Optional[str] = Field(default=None, max_length=200)


class InterviewRescheduleRequest(BaseModel):
    scheduled_at: datetime
    duration_minutes: Optional[int] = Field(default=None, ge=5, le=480)


class TranscriptStatusRequest(BaseModel):
    to_status: TranscriptStatus


class InterviewResponse(BaseModel):
    interview_id: str
    company_id: str
    status: InterviewStatus
    recording_status: RecordingStatus
    transcript_status: TranscriptStatus
    external_meeting_ref: Optional[str]
    scheduled_at: datetime
    duration_minutes: int
    recording_url: Optional[str]
    recording_duration_seconds: Optional[int]
    last_webhook_event_type: Optional[str]
    last_webhook_received_at: Optional[datetime]

    @classmethod
    def from_record(cls, record: InterviewRecord) -> "InterviewResponse":
        return cls(
            interview_id=record.id,
            company_id=record.company_id,
            status=record.status,
            recording_status=record.recording_status,
            transcript_status=record.transcript_status,
            external_meeting_ref=record.external_meeting_ref,
            scheduled_at=record.scheduled_at,
            duration_minutes=record.duration_minutes,
            recording_url=record.recording_url,
            recording_duration_seconds=record.recording_duration_seconds,
            last_webhook_event_type=record.last_webhook_event_type,
            last_webhook_received_at=record.last_webhook_received_at,
        )


class CampaignStatsResponse(BaseModel):
    campaign_id: str
    total_recipients: int
    total_sent: int
    total_opened: int
    total_clicked: int
    total_replied: int
    total_bounced: int
    total_complained: int
    open_rate: float
    click_rate: float
    bounce_rate: float


class DeadLetterItem(BaseModel):
    id: str
    provider: WebhookProvider
    event_type: str
    event_id: str
    related_entity_ref: Optional[str]
    attempts: int
    max_attempts: int
    last_attempt_at: Optional[datetime]
    error_message: Optional[str]
    payload: dict[str, Any]
    created_at: datetime


class DeadLetterListResponse(BaseModel):
    dead_letters: list[DeadLetterItem]
    total: int
    page: int
    total_pages: int
    limit: int


class DeadLetterRetryRequest(BaseModel):
    webhook_event_id: str = Field(min_length=1)


class DeadLetterRetryResponse(BaseModel):
    webhook_event_id: str
    status: WebhookEventStatus
    next_retry_utc: datetime


class RetrySweepResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    dead_letters: int
    reclaimed: int
    timestamp: datetime
