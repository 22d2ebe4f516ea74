from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from talentforge.app.auth import (
    ROLE_ADMIN,
    ROLE_RECRUITER,
    ROLE_SERVICE,
    AuthContext,
    require_roles,
)
from talentforge.app.errors import MalformedPayloadError, install_error_handlers
from talentforge.app.models import (
    CampaignStatsResponse,
    DeadLetterItem,
    DeadLetterListResponse,
    DeadLetterRetryRequest,
    DeadLetterRetryResponse,
    InterviewCreateRequest,
    InterviewRescheduleRequest,
    InterviewResponse,
    InterviewStatus,
    InterviewStatusRequest,
    RetrySweepResponse,
    TranscriptStatusRequest,
    UrlValidationResponse,
    WebhookAckResponse,
    WebhookProvider,
    utc_now,
)
from talentforge.app.observability import MetricsRegistry, configure_logging, observe_request
from talentforge.app.payloads import URL_VALIDATION_EVENT, parse_email_event, parse_video_event
from talentforge.app.persistence import Database
from talentforge.app.services.campaign_metrics import CampaignMetricsUpdater
from talentforge.app.services.event_dispatch import EventDispatcher
from talentforge.app.services.ingestion import WebhookProcessor
from talentforge.app.services.ledger import IdempotencyLedger
from talentforge.app.services.pipeline import PipelineTrigger, PostInterviewPipeline
from talentforge.app.services.rate_limit import build_rate_limiter, rate_limited
from talentforge.app.services.retry import run_retry_sweep
from talentforge.app.services.webhooks import (
    url_validation_response,
    verify_email_signature,
    verify_video_signature,
)
from talentforge.app.settings import Settings, load_settings
from talentforge.app.store import Store


def create_app(*, post_interview_pipeline: Optional[PostInterviewPipeline] = None) -> FastAPI:
    settings = load_settings()
    database = Database(settings.database_url)
    store = Store(database)
    metrics = MetricsRegistry()
    pipeline_trigger = PipelineTrigger(
        post_interview_pipeline, max_workers=settings.pipeline_max_workers
    )
    ledger = IdempotencyLedger(
        database,
        max_attempts=settings.webhook_max_attempts,
        payload_max_bytes=settings.webhook_payload_max_bytes,
        claim_timeout_seconds=settings.webhook_claim_timeout_seconds,
    )
    processor = WebhookProcessor(
        database=database,
        ledger=ledger,
        dispatcher=EventDispatcher(store, CampaignMetricsUpdater(store)),
        pipeline_trigger=pipeline_trigger,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        pipeline_trigger.shutdown()
        database.dispose()

    app = FastAPI(title="TalentForge Webhook Ingestion API", version="0.1.0", lifespan=lifespan)
    configure_logging()
    app.state.settings = settings
    app.state.database = database
    app.state.store = store
    app.state.metrics = metrics
    app.state.ledger = ledger
    app.state.processor = processor
    app.state.pipeline_trigger = pipeline_trigger
    app.state.rate_limiter = build_rate_limiter(settings)
    install_error_handlers(app)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_processor(request: Request) -> WebhookProcessor:
    return request.app.state.processor


def _decode_json(raw_body: bytes, provider: WebhookProvider) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("invalid json payload", provider=provider) from exc


def _rate(numerator: int, denominator: int) -> float:
    return round((numerator / max(denominator, 1)) * 100, 2)


def build_router() -> APIRouter:
    router = APIRouter()
    recruiter_roles = require_roles(ROLE_RECRUITER, ROLE_ADMIN)
    service_roles = require_roles(ROLE_SERVICE, ROLE_ADMIN)

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not request.app.state.database.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        registry.set_pipeline_failures(request.app.state.pipeline_trigger.failures)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/webhooks/video", dependencies=[Depends(rate_limited("video"))])
    async def video_webhook(
        request: Request,
    ) -> Union[WebhookAckResponse, UrlValidationResponse]:
        settings = get_settings(request)
        raw_body = await request.body()
        data = _decode_json(raw_body, WebhookProvider.video)

        # The ownership challenge is answered before any signature check.
        if isinstance(data, dict) and data.get("event") == URL_VALIDATION_EVENT:
            payload = data.get("payload") or {}
            plain_token = payload.get("plainToken") if isinstance(payload, dict) else None
            return url_validation_response(plain_token, settings.video_webhook_secret)

        verify_video_signature(
            request.headers,
            raw_body,
            settings.video_webhook_secret,
            tolerance_seconds=settings.webhook_signature_tolerance_seconds,
            allow_unsigned=not settings.is_production,
        )
        event = parse_video_event(data, raw_body=raw_body, received_at=utc_now())
        return await run_in_threadpool(get_processor(request).ingest, event, data)

    @router.get("/webhooks/video/validate", response_model=UrlValidationResponse)
    def video_url_validation(
        request: Request,
        plain_token: Optional[str] = Query(default=None, alias="plainToken"),
    ) -> UrlValidationResponse:
        return url_validation_response(plain_token, get_settings(request).video_webhook_secret)

    @router.post(
        "/webhooks/email",
        response_model=WebhookAckResponse,
        dependencies=[Depends(rate_limited("email"))],
    )
    async def email_webhook(request: Request) -> WebhookAckResponse:
        settings = get_settings(request)
        raw_body = await request.body()
        verify_email_signature(
            request.headers,
            raw_body,
            settings.email_webhook_secret,
            tolerance_seconds=settings.webhook_signature_tolerance_seconds,
            allow_unsigned=not settings.is_production,
        )
        data = _decode_json(raw_body, WebhookProvider.email)
        message_id = request.headers.get("svix-id") or request.headers.get("webhook-id")
        event = parse_email_event(data, received_at=utc_now(), event_id=message_id or None)
        return await run_in_threadpool(get_processor(request).ingest, event, data)

    @router.post("/internal/webhook-retries", response_model=RetrySweepResponse)
    def run_webhook_retries(
        request: Request,
        _: AuthContext = Depends(service_roles),
    ) -> RetrySweepResponse:
        now = utc_now()
        result = run_retry_sweep(
            get_processor(request),
            batch_size=get_settings(request).webhook_retry_batch_size,
            now=now,
        )
        return RetrySweepResponse(
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            dead_letters=result.dead_letters,
            reclaimed=result.reclaimed,
            timestamp=now,
        )

    @router.get("/admin/webhook-events/dead-letters", response_model=DeadLetterListResponse)
    def list_dead_letters(
        request: Request,
        provider: Optional[WebhookProvider] = None,
        event_type: Optional[str] = Query(default=None, alias="eventType"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        _: AuthContext = Depends(require_roles(ROLE_ADMIN)),
    ) -> DeadLetterListResponse:
        ledger: IdempotencyLedger = request.app.state.ledger
        records, total = ledger.list_dead_letters(
            provider=provider, event_type=event_type, page=page, limit=limit
        )
        return DeadLetterListResponse(
            dead_letters=[
                DeadLetterItem.model_validate(record.model_dump()) for record in records
            ],
            total=total,
            page=page,
            total_pages=IdempotencyLedger.total_pages(total, limit),
            limit=limit,
        )

    @router.post(
        "/admin/webhook-events/dead-letters/retry", response_model=DeadLetterRetryResponse
    )
    def retry_dead_letter(
        payload: DeadLetterRetryRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(ROLE_ADMIN)),
    ) -> DeadLetterRetryResponse:
        ledger: IdempotencyLedger = request.app.state.ledger
        record = ledger.reset_dead_letter(payload.webhook_event_id)
        return DeadLetterRetryResponse(
            webhook_event_id=record.id,
            status=record.status,
            next_retry_utc=record.next_retry_at,
        )

    @router.post(
        "/interviews", response_model=InterviewResponse, status_code=status.HTTP_201_CREATED
    )
    def create_interview(
        payload: InterviewCreateRequest,
        request: Request,
        _: AuthContext = Depends(recruiter_roles),
    ) -> InterviewResponse:
        return InterviewResponse.from_record(get_store(request).create_interview(payload))

    @router.get("/interviews/{interview_id}", response_model=InterviewResponse)
    def get_interview(
        interview_id: str,
        request: Request,
        _: AuthContext = Depends(recruiter_roles),
    ) -> InterviewResponse:
        return InterviewResponse.from_record(get_store(request).get_interview(interview_id))

    @router.post("/interviews/{interview_id}/status", response_model=InterviewResponse)
    def transition_interview(
        interview_id: str,
        payload: InterviewStatusRequest,
        request: Request,
        _: AuthContext = Depends(recruiter_roles),
    ) -> InterviewResponse:
        updated = get_store(request).transition_interview(interview_id, payload.to_status)
        return InterviewResponse.from_record(updated)

    @router.post("/interviews/{interview_id}/cancel", response_model=InterviewResponse)
    def cancel_interview(
        interview_id: str,
        request: Request,
        _: AuthContext = Depends(recruiter_roles),
    ) -> InterviewResponse:
        updated = get_store(request).transition_interview(interview_id, InterviewStatus.cancelled)
        return InterviewResponse.from_record(updated)

    @router.post("/interviews/{interview_id}/reschedule", response_model=InterviewResponse)
    def reschedule_interview(
        interview_id: str,
        payload: InterviewRescheduleRequest,
        request: Request,
        _: AuthContext = Depends(recruiter_roles),
    ) -> InterviewResponse:
        updated = get_store(request).reschedule_interview(
            interview_id,
            scheduled_at=payload.scheduled_at,
            duration_minutes=payload.duration_minutes,
        )
        return InterviewResponse.from_record(updated)

    @router.post("/interviews/{interview_id}/transcript", response_model=InterviewResponse)
    def report_transcript_status(
        interview_id: str,
        payload: TranscriptStatusRequest,
        request: Request,
        _: AuthContext = Depends(service_roles),
    ) -> InterviewResponse:
        updated = get_store(request).transition_transcript(interview_id, payload.to_status)
        return InterviewResponse.from_record(updated)

    @router.get("/campaigns/{campaign_id}/stats", response_model=CampaignStatsResponse)
    def campaign_stats(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(recruiter_roles),
    ) -> CampaignStatsResponse:
        campaign = get_store(request).get_campaign(campaign_id)
        return CampaignStatsResponse(
            campaign_id=campaign.id,
            total_recipients=campaign.total_recipients,
            total_sent=campaign.total_sent,
            total_opened=campaign.total_opened,
            total_clicked=campaign.total_clicked,
            total_replied=campaign.total_replied,
            total_bounced=campaign.total_bounced,
            total_complained=campaign.total_complained,
            open_rate=_rate(campaign.total_opened, campaign.total_sent),
            click_rate=_rate(campaign.total_clicked, campaign.total_sent),
            bounce_rate=_rate(campaign.total_bounced, campaign.total_sent),
        )

    return router
