"""Provider webhook payloads and the normalized event the dispatcher consumes.

Raw provider JSON is validated here, at the boundary, and turned into an
``InboundEvent`` whose ``details`` field is a tagged union keyed by ``kind``.
Handlers downstream never read the raw dictionaries.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from talentforge.app.errors import MalformedPayloadError
from talentforge.app.models import WebhookProvider, to_naive_utc

URL_VALIDATION_EVENT = "endpoint.url_validation"

RECORDING_STARTED = "recording.started"
RECORDING_STOPPED = "recording.stopped"
RECORDING_PAUSED = "recording.paused"
RECORDING_RESUMED = "recording.resumed"
RECORDING_COMPLETED = "recording.completed"
MEETING_STARTED = "meeting.started"
MEETING_ENDED = "meeting.ended"

EMAIL_SENT = "email.sent"
EMAIL_DELIVERED = "email.delivered"
EMAIL_DELIVERY_DELAYED = "email.delivery_delayed"
EMAIL_OPENED = "email.opened"
EMAIL_CLICKED = "email.clicked"
EMAIL_BOUNCED = "email.bounced"
EMAIL_COMPLAINED = "email.complained"

VIDEO_LIFECYCLE_EVENTS = frozenset(
    {
        RECORDING_STARTED,
        RECORDING_STOPPED,
        RECORDING_PAUSED,
        RECORDING_RESUMED,
        MEETING_STARTED,
        MEETING_ENDED,
    }
)
EMAIL_EVENTS = frozenset(
    {
        EMAIL_SENT,
        EMAIL_DELIVERED,
        EMAIL_DELIVERY_DELAYED,
        EMAIL_OPENED,
        EMAIL_CLICKED,
        EMAIL_BOUNCED,
        EMAIL_COMPLAINED,
    }
)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RecordingFile(_ProviderModel):
    id: Optional[str] = None
    recording_start: Optional[datetime] = None
    recording_end: Optional[datetime] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    download_url: Optional[str] = None
    play_url: Optional[str] = None
    status: Optional[str] = None
    recording_type: Optional[str] = None

    def duration_seconds(self) -> Optional[int]:
        if not self.recording_start or not self.recording_end:
            return None
        start = to_naive_utc(self.recording_start)
        end = to_naive_utc(self.recording_end)
        return max(0, int((end - start).total_seconds()))


class VideoMeetingObject(_ProviderModel):
    id: str
    uuid: Optional[str] = None
    host_id: Optional[str] = None
    topic: Optional[str] = None
    start_time: Optional[str] = None
    duration: Optional[int] = None
    recording_files: list[RecordingFile] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class VideoEventBody(_ProviderModel):
    plain_token: Optional[str] = Field(default=None, alias="plainToken")
    account_id: Optional[str] = None
    meeting: Optional[VideoMeetingObject] = Field(default=None, alias="object")


class VideoWebhookPayload(_ProviderModel):
    event: str = Field(min_length=1)
    event_ts: Optional[int] = None
    payload: VideoEventBody = Field(default_factory=VideoEventBody)


class EmailBounce(_ProviderModel):
    message: Optional[str] = None
    type: Optional[str] = None


class EmailClick(_ProviderModel):
    link: Optional[str] = None


class EmailEventData(_ProviderModel):
    email_id: str = Field(min_length=1)
    sender: Optional[str] = Field(default=None, alias="from")
    to: list[str] = Field(default_factory=list)
    subject: Optional[str] = None
    bounce: Optional[EmailBounce] = None
    click: Optional[EmailClick] = None


class EmailWebhookPayload(_ProviderModel):
    type: str = Field(min_length=1)
    created_at: Optional[datetime] = None
    data: EmailEventData


class LifecycleDetails(BaseModel):
    kind: Literal["lifecycle"] = "lifecycle"


class RecordingCompletedDetails(BaseModel):
    kind: Literal["recording_completed"] = "recording_completed"
    recording_files: list[RecordingFile] = Field(default_factory=list)


class EmailDetails(BaseModel):
    kind: Literal["email"] = "email"
    recipients: list[str] = Field(default_factory=list)
    bounce_message: Optional[str] = None
    bounce_type: Optional[str] = None
    click_link: Optional[str] = None


class UnrecognizedDetails(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"


EventDetails = Annotated[
    Union[LifecycleDetails, RecordingCompletedDetails, EmailDetails, UnrecognizedDetails],
    Field(discriminator="kind"),
]


class InboundEvent(BaseModel):
    provider: WebhookProvider
    event_type: str
    event_id: str
    related_entity_ref: str
    occurred_at: datetime
    details: EventDetails


def derive_event_id(event_type: str, event_timestamp: object, related_entity_ref: str) -> str:
    return f"{event_type}-{event_timestamp}-{related_entity_ref}"


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:3]:
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _video_details(event_type: str, meeting: VideoMeetingObject) -> EventDetails:
    if event_type == RECORDING_COMPLETED:
        return RecordingCompletedDetails(recording_files=meeting.recording_files)
    if event_type in VIDEO_LIFECYCLE_EVENTS:
        return LifecycleDetails()
    return UnrecognizedDetails()


def parse_video_event(
    data: Any,
    *,
    raw_body: bytes,
    received_at: datetime,
    event_id: Optional[str] = None,
) -> InboundEvent:
    if not isinstance(data, dict):
        raise MalformedPayloadError("payload must be a json object", provider=WebhookProvider.video)
    try:
        payload = VideoWebhookPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedPayloadError(
            f"invalid video payload: {_validation_summary(exc)}",
            provider=WebhookProvider.video,
        ) from exc
    meeting = payload.payload.meeting
    if meeting is None or not meeting.id:
        raise MalformedPayloadError(
            "missing event or object.id in payload", provider=WebhookProvider.video
        )

    if payload.event_ts is not None:
        occurred_at = to_naive_utc(
            datetime.fromtimestamp(payload.event_ts / 1000.0, tz=timezone.utc)
        )
        timestamp_part: object = payload.event_ts
    else:
        occurred_at = received_at
        timestamp_part = hashlib.sha256(raw_body).hexdigest()

    return InboundEvent(
        provider=WebhookProvider.video,
        event_type=payload.event,
        event_id=event_id or derive_event_id(payload.event, timestamp_part, meeting.id),
        related_entity_ref=meeting.id,
        occurred_at=occurred_at,
        details=_video_details(payload.event, meeting),
    )


def parse_email_event(
    data: Any,
    *,
    received_at: datetime,
    event_id: Optional[str] = None,
) -> InboundEvent:
    if not isinstance(data, dict):
        raise MalformedPayloadError("payload must be a json object", provider=WebhookProvider.email)
    try:
        payload = EmailWebhookPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedPayloadError(
            f"invalid email payload: {_validation_summary(exc)}",
            provider=WebhookProvider.email,
        ) from exc

    if payload.type in EMAIL_EVENTS:
        details: EventDetails = EmailDetails(
            recipients=payload.data.to,
            bounce_message=payload.data.bounce.message if payload.data.bounce else None,
            bounce_type=payload.data.bounce.type if payload.data.bounce else None,
            click_link=payload.data.click.link if payload.data.click else None,
        )
    else:
        details = UnrecognizedDetails()

    occurred_at = to_naive_utc(payload.created_at) if payload.created_at else received_at
    return InboundEvent(
        provider=WebhookProvider.email,
        event_type=payload.type,
        event_id=event_id
        or derive_event_id(payload.type, data.get("created_at"), payload.data.email_id),
        related_entity_ref=payload.data.email_id,
        occurred_at=occurred_at,
        details=details,
    )
