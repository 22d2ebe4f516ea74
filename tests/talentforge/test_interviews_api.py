from __future__ import annotations


def _create(client, **overrides) -> dict:
    payload = {
        "company_id": "co_acme",
        "candidate_id": "cand_123",
        "external_meeting_ref": "85012345678",
        "scheduled_at": "2026-03-02T09:00:00Z",
        "duration_minutes": 45,
    }
    payload.update(overrides)
    response = client.post("/interviews", json=payload)
    assert response.status_code == 201
    return response.json()


def test_create_and_read_interview(client) -> None:
    created = _create(client)
    assert created["status"] == "scheduled"
    assert created["recording_status"] == "none"
    assert created["transcript_status"] == "none"

    fetched = client.get(f"/interviews/{created['interview_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["external_meeting_ref"] == "85012345678"


def test_unknown_interview_is_404(client) -> None:
    assert client.get("/interviews/int_missing").status_code == 404


def test_direct_status_transitions(client) -> None:
    interview_id = _create(client)["interview_id"]

    started = client.post(f"/interviews/{interview_id}/status", json={"to_status": "in_progress"})
    assert started.status_code == 200
    assert started.json()["status"] == "in_progress"

    same = client.post(f"/interviews/{interview_id}/status", json={"to_status": "in_progress"})
    assert same.status_code == 200

    done = client.post(f"/interviews/{interview_id}/status", json={"to_status": "completed"})
    assert done.json()["status"] == "completed"

    rejected = client.post(f"/interviews/{interview_id}/status", json={"to_status": "scheduled"})
    assert rejected.status_code == 422
    detail = rejected.json()["detail"]
    assert detail["error"] == "transition_rejected"
    assert detail["current_status"] == "completed"
    assert detail["attempted_status"] == "scheduled"


def test_cancelled_interview_is_terminal(client) -> None:
    interview_id = _create(client)["interview_id"]
    assert client.post(f"/interviews/{interview_id}/cancel").json()["status"] == "cancelled"

    response = client.post(f"/interviews/{interview_id}/status", json={"to_status": "in_progress"})
    assert response.status_code == 422


def test_reschedule_only_while_scheduled(client) -> None:
    interview_id = _create(client)["interview_id"]
    moved = client.post(
        f"/interviews/{interview_id}/reschedule",
        json={"scheduled_at": "2026-03-05T14:30:00Z", "duration_minutes": 60},
    )
    assert moved.status_code == 200
    assert moved.json()["scheduled_at"].startswith("2026-03-05T14:30:00")
    assert moved.json()["duration_minutes"] == 60

    client.post(f"/interviews/{interview_id}/status", json={"to_status": "in_progress"})
    late = client.post(
        f"/interviews/{interview_id}/reschedule", json={"scheduled_at": "2026-03-06T14:30:00Z"}
    )
    assert late.status_code == 422


def test_transcript_status_reports(client) -> None:
    interview_id = _create(client)["interview_id"]

    for target in ("pending", "processing", "completed"):
        response = client.post(
            f"/interviews/{interview_id}/transcript", json={"to_status": target}
        )
        assert response.status_code == 200
        assert response.json()["transcript_status"] == target

    reopened = client.post(f"/interviews/{interview_id}/transcript", json={"to_status": "pending"})
    assert reopened.status_code == 422
    assert reopened.json()["detail"]["entity"] == "transcript"


def test_campaign_stats_unknown_campaign_is_404(client) -> None:
    assert client.get("/campaigns/camp_missing/stats").status_code == 404
