from __future__ import annotations


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    client.post("/webhooks/email", json={"type": "email.sent", "data": {"email_id": "m1"}})

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "talentforge_requests_total" in body
    assert "talentforge_requests_5xx_total" in body
    assert 'talentforge_webhooks_total{provider="email",status="processed"} 1' in body
    assert "talentforge_pipeline_failures_total 0" in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_duplicate_deliveries_are_counted_separately(app, client) -> None:
    payload = {"type": "email.sent", "data": {"email_id": "m1"}}
    client.post("/webhooks/email", json=payload, headers={"svix-id": "evt_1"})
    client.post("/webhooks/email", json=payload, headers={"svix-id": "evt_1"})

    registry = app.state.metrics
    assert registry.webhook_count("email", "processed") == 1
    assert registry.webhook_count("email", "duplicate") == 1
