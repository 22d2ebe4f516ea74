from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from concurrent.futures import ThreadPoolExecutor

from fastapi.testclient import TestClient

from talentforge.app.models import CampaignSendStatus, SuppressionReason, utc_now
from talentforge.app.payloads import parse_email_event

SIGNING_KEY = b"resend-test-key"
SECRET = "whsec_" + base64.b64encode(SIGNING_KEY).decode("ascii")


def _email_event(event_type: str, email_id: str = "msg_0001", **data) -> dict:
    body = {
        "email_id": email_id,
        "from": "talent@acme.example",
        "to": ["priya.nair@example.com"],
        "subject": "Backend role at Acme",
    }
    body.update(data)
    return {"type": event_type, "created_at": "2026-03-02T10:15:00.000Z", "data": body}


def _post(client: TestClient, payload: dict, delivery_id: str):
    return client.post("/webhooks/email", json=payload, headers={"svix-id": delivery_id})


def _signed_headers(msg_id: str, body: bytes, ts: int) -> dict[str, str]:
    signed = f"{msg_id}.{ts}.".encode("utf-8") + body
    sig = base64.b64encode(hmac.new(SIGNING_KEY, signed, hashlib.sha256).digest()).decode()
    return {
        "content-type": "application/json",
        "svix-id": msg_id,
        "svix-timestamp": str(ts),
        "svix-signature": f"v1,{sig}",
    }


def test_signed_email_event_is_verified(make_app, monkeypatch) -> None:
    monkeypatch.setenv("EMAIL_WEBHOOK_SECRET", SECRET)
    client = TestClient(make_app())
    body = json.dumps(_email_event("email.sent")).encode("utf-8")
    now = int(time.time())

    good = client.post("/webhooks/email", content=body, headers=_signed_headers("m_1", body, now))
    assert good.status_code == 200
    assert good.json()["event_id"] == "m_1"

    tampered = client.post(
        "/webhooks/email",
        content=body.replace(b"email.sent", b"email.opened"),
        headers=_signed_headers("m_2", body, now),
    )
    assert tampered.status_code == 401

    stale = client.post(
        "/webhooks/email", content=body, headers=_signed_headers("m_3", body, now - 301)
    )
    assert stale.status_code == 401
    assert stale.json()["error"] == "timestamp_stale"


def test_malformed_email_payload_is_rejected(client) -> None:
    response = client.post(
        "/webhooks/email", content=b"[]", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400

    missing_id = client.post("/webhooks/email", json={"type": "email.opened", "data": {}})
    assert missing_id.status_code == 400
    assert missing_id.json()["error"] == "malformed_payload"


def test_open_and_click_counted_once_per_send(client, store, seed_send) -> None:
    ids = seed_send()

    delivered = _post(client, _email_event("email.delivered"), "d_1")
    opened = _post(client, _email_event("email.opened"), "o_1")
    reopened = _post(client, _email_event("email.opened"), "o_2")
    clicked = _post(
        client, _email_event("email.clicked", click={"link": "https://acme.example/jobs"}), "c_1"
    )
    duplicate_click = _post(client, _email_event("email.clicked"), "c_1")

    assert delivered.json()["outcome"] == "applied"
    assert opened.json()["outcome"] == "applied"
    assert reopened.json()["outcome"] == "no_op"
    assert clicked.json()["outcome"] == "applied"
    assert duplicate_click.json()["status"] == "duplicate"

    campaign = store.get_campaign(ids["campaign_id"])
    assert campaign.total_sent == 1
    assert campaign.total_opened == 1
    assert campaign.total_clicked == 1

    send = store.get_campaign_send(ids["send_id"])
    assert send.status == CampaignSendStatus.clicked
    assert send.opened_at is not None
    assert send.delivered_at is not None

    stats = client.get(f"/campaigns/{ids['campaign_id']}/stats")
    assert stats.status_code == 200
    assert stats.json()["open_rate"] == 100.0


def test_late_open_after_click_keeps_forward_status(client, store, seed_send) -> None:
    ids = seed_send()
    _post(client, _email_event("email.clicked"), "c_1")
    _post(client, _email_event("email.opened"), "o_1")

    send = store.get_campaign_send(ids["send_id"])
    assert send.status == CampaignSendStatus.clicked
    assert send.opened_at is not None
    assert store.get_campaign(ids["campaign_id"]).total_opened == 1


def test_bounce_records_suppression_once(client, store, seed_send) -> None:
    ids = seed_send()
    bounce = {"message": "550 mailbox unavailable", "type": "Permanent"}

    first = _post(client, _email_event("email.bounced", bounce=bounce), "b_1")
    second = _post(client, _email_event("email.bounced", bounce=bounce), "b_2")

    assert first.json()["outcome"] == "applied"
    assert second.json()["outcome"] == "no_op"
    send = store.get_campaign_send(ids["send_id"])
    assert send.status == CampaignSendStatus.bounced
    assert send.error_message == "550 mailbox unavailable"
    assert store.get_campaign(ids["campaign_id"]).total_bounced == 1

    suppressions = store.list_suppressions("co_acme")
    assert len(suppressions) == 1
    assert suppressions[0].email == "priya.nair@example.com"
    assert suppressions[0].reason == SuppressionReason.bounce
    assert suppressions[0].source == ids["send_id"]


def test_complaint_counts_and_suppresses(client, store, seed_send) -> None:
    ids = seed_send()
    response = _post(client, _email_event("email.complained"), "x_1")

    assert response.json()["outcome"] == "applied"
    assert store.get_campaign(ids["campaign_id"]).total_complained == 1
    assert store.get_campaign_send(ids["send_id"]).complained_at is not None
    assert [item.reason for item in store.list_suppressions("co_acme")] == [
        SuppressionReason.complaint
    ]


def test_logged_only_and_unknown_events(client, seed_send) -> None:
    seed_send()
    delayed = _post(client, _email_event("email.delivery_delayed"), "dd_1")
    unknown_type = _post(client, _email_event("email.scheduled"), "s_1")
    unknown_send = _post(client, _email_event("email.opened", email_id="msg_missing"), "o_9")

    assert delayed.json()["outcome"] == "no_op"
    assert unknown_type.json()["outcome"] == "ignored"
    assert unknown_send.status_code == 200
    assert unknown_send.json()["outcome"] == "unknown_entity"
    assert _post(client, _email_event("email.opened", email_id="msg_missing"), "o_9").json()[
        "status"
    ] == "duplicate"


def test_event_id_derived_when_delivery_header_missing(client, seed_send) -> None:
    seed_send()
    payload = _email_event("email.opened")
    first = client.post("/webhooks/email", json=payload)
    second = client.post("/webhooks/email", json=payload)

    assert first.json()["event_id"] == "email.opened-2026-03-02T10:15:00.000Z-msg_0001"
    assert second.json()["status"] == "duplicate"


def test_concurrent_opens_for_same_send_count_once(app, store, seed_send) -> None:
    ids = seed_send()
    processor = app.state.processor

    def deliver(index: int) -> str:
        payload = _email_event("email.opened")
        event = parse_email_event(payload, received_at=utc_now(), event_id=f"open_{index}")
        return processor.ingest(event, payload).outcome.value

    with ThreadPoolExecutor(max_workers=6) as executor:
        outcomes = list(executor.map(deliver, range(12)))

    assert outcomes.count("applied") == 1
    assert outcomes.count("no_op") == 11
    assert store.get_campaign(ids["campaign_id"]).total_opened == 1
