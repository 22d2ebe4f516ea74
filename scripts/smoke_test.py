from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def request_json(
    *, url: str, token: str | None = None
) -> tuple[int, dict | None, str]:
    request = urllib.request.Request(url, method="GET")
    request.add_header("Accept", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            body = response.read().decode("utf-8")
            data = json.loads(body) if body.startswith("{") or body.startswith("[") else None
            return response.status, data, body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = None
        return exc.code, data, body


def request_text(*, url: str, token: str | None = None) -> tuple[int, str]:
    request = urllib.request.Request(url, method="GET")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)



def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for TalentForge webhook API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--auth-mode", choices=["enabled", "disabled"], default="enabled")
    parser.add_argument("--token", default="", help="Admin token for dead-letter listing.")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    token = args.token.strip() or None

    status, data, _ = request_json(url=f"{base_url}/health")
    assert_true(status == 200, f"/health expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ok", "/health invalid payload")
    print("OK /health")

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    assert_true(
        isinstance(data, dict) and data.get("status") == "ready",
        "/health/ready invalid payload",
    )
    print("OK /health/ready")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("talentforge_requests_total" in body, "/metrics missing requests counter")
    assert_true("talentforge_webhooks_total" in body, "/metrics missing webhook counter")
    print("OK /metrics")

    dead_letters = f"{base_url}/admin/webhook-events/dead-letters?limit=1"
    protected_status, data, _ = request_json(url=dead_letters, token=token)
    if args.auth_mode == "enabled" and not token:
        assert_true(
            protected_status in {401, 403},
            f"dead-letter listing without token expected 401/403, got {protected_status}",
        )
        print("OK dead-letter listing unauthorized")
    else:
        assert_true(
            protected_status == 200,
            f"dead-letter listing expected 200, got {protected_status}",
        )
        assert_true(isinstance(data, dict) and "total" in data, "dead-letter listing invalid payload")
        print(f"OK dead-letter listing total={data['total']}")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
