from __future__ import annotations

from datetime import timedelta
from typing import Callable, Iterator, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from talentforge.app.main import create_app
from talentforge.app.models import CampaignSendStatus, InterviewCreateRequest, utc_now
from talentforge.app.store import Store


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    db_path = tmp_path / "talentforge.sqlite3"
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("VIDEO_WEBHOOK_SECRET", "")
    monkeypatch.setenv("EMAIL_WEBHOOK_SECRET", "")
    monkeypatch.setenv("WEBHOOK_RATE_LIMIT_PER_MINUTE", "1000")


@pytest.fixture()
def make_app(app_env) -> Iterator[Callable[..., FastAPI]]:
    apps: list[FastAPI] = []

    def factory(pipeline: Optional[Callable[[str], None]] = None) -> FastAPI:
        app = create_app(post_interview_pipeline=pipeline)
        apps.append(app)
        return app

    yield factory
    for app in apps:
        app.state.pipeline_trigger.shutdown()
        app.state.database.dispose()


@pytest.fixture()
def app(make_app) -> FastAPI:
    return make_app()


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def store(app: FastAPI) -> Store:
    return app.state.store


@pytest.fixture()
def seed_interview(store: Store) -> Callable[..., str]:
    def factory(meeting_ref: str = "85012345678", company_id: str = "co_acme") -> str:
        interview = store.create_interview(
            InterviewCreateRequest(
                company_id=company_id,
                external_meeting_ref=meeting_ref,
                scheduled_at=utc_now() + timedelta(days=1),
                duration_minutes=45,
            )
        )
        return interview.id

    return factory


@pytest.fixture()
def seed_send(store: Store) -> Callable[..., dict[str, str]]:
    def factory(
        message_id: str = "msg_0001",
        email: Optional[str] = "Priya.Nair@Example.com ",
        company_id: str = "co_acme",
    ) -> dict[str, str]:
        candidate = store.create_candidate(company_id=company_id, name="Priya Nair", email=email)
        campaign = store.create_campaign(
            company_id=company_id, name="Backend engineers Q4", total_recipients=1
        )
        send = store.create_campaign_send(
            campaign_id=campaign.id,
            candidate_id=candidate.id,
            provider_message_id=message_id,
            status=CampaignSendStatus.sent,
        )
        return {"candidate_id": candidate.id, "campaign_id": campaign.id, "send_id": send.id}

    return factory
