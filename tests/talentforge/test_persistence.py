from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from talentforge.app.main import create_app
from talentforge.app.models import SuppressionReason
from talentforge.app.persistence import Database
from talentforge.app.store import Store


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("VIDEO_WEBHOOK_SECRET", "")
    monkeypatch.setenv("EMAIL_WEBHOOK_SECRET", "")
    monkeypatch.setenv("APP_ENV", "test")
    return TestClient(create_app())


def test_ledger_survives_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "talentforge.sqlite3"
    payload = {"type": "email.sent", "data": {"email_id": "msg_restart"}}

    first_client = _new_client(monkeypatch, db_path)
    first = first_client.post("/webhooks/email", json=payload, headers={"svix-id": "evt_r1"})
    assert first.json()["status"] == "processed"

    restarted_client = _new_client(monkeypatch, db_path)
    second = restarted_client.post("/webhooks/email", json=payload, headers={"svix-id": "evt_r1"})
    assert second.json()["status"] == "duplicate"
    assert second.json()["attempts"] == 1


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "talentforge.sqlite3"
    database = Database(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert database.ping()


def test_suppression_insert_is_idempotent_per_company(tmp_path) -> None:
    database = Database(f"sqlite:///{(tmp_path / 'sup.sqlite3').as_posix()}")
    store = Store(database)

    with database.transaction() as conn:
        first = store.add_suppression(
            conn, company_id="co_1", email=" Dev@Example.com", reason=SuppressionReason.bounce,
            source="send_1",
        )
        second = store.add_suppression(
            conn, company_id="co_1", email="dev@example.com", reason=SuppressionReason.complaint,
            source="send_2",
        )
        other_company = store.add_suppression(
            conn, company_id="co_2", email="dev@example.com", reason=SuppressionReason.bounce,
            source="send_3",
        )

    assert (first, second, other_company) == (True, False, True)
    suppressions = store.list_suppressions("co_1")
    assert [(item.email, item.reason) for item in suppressions] == [
        ("dev@example.com", SuppressionReason.bounce)
    ]
