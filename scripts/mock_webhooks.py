from __future__ import annotations

import argparse
import base64
import binascii
import hashlib
import hmac
import json
import sys
import time
import urllib.error
import urllib.request


def sign_video(secret: str, body: bytes, timestamp: int) -> str:
    message = f"v0:{timestamp}:".encode("utf-8") + body
    return "v0=" + hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_email(secret: str, message_id: str, body: bytes, timestamp: int) -> str:
    key = secret[len("whsec_") :] if secret.startswith("whsec_") else secret
    signed = f"{message_id}.{timestamp}.".encode("utf-8") + body
    try:
        key_bytes = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError):
        key_bytes = key.encode("utf-8")
    digest = hmac.new(key_bytes, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def video_payload(event_type: str, meeting_id: str, index: int) -> dict:
    obj: dict = {"id": meeting_id, "topic": "Mock interview"}
    if event_type == "recording.completed":
        obj["recording_files"] = [
            {
                "id": f"file_{index}",
                "recording_type": "shared_screen_with_speaker_view",
                "recording_start": "2026-03-02T09:00:00Z",
                "recording_end": "2026-03-02T09:40:00Z",
                "download_url": f"https://video.example.com/rec/{meeting_id}",
                "file_size": 52_428_800,
            }
        ]
    return {
        "event": event_type,
        "event_ts": int(time.time() * 1000) + index,
        "payload": {"account_id": "acct_mock", "object": obj},
    }


def email_payload(event_type: str, message_id: str) -> dict:
    return {
        "type": event_type,
        "created_at": time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime()),
        "data": {
            "email_id": message_id,
            "from": "talent@acme.example",
            "to": ["candidate@example.com"],
            "subject": "Mock outreach",
        },
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send signed mock provider webhooks to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--provider", choices=["video", "email"], default="video")
    parser.add_argument("--event-type", default=None)
    parser.add_argument("--ref", required=True, help="Meeting id or provider message id.")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/{args.provider}"
    for index in range(args.count):
        timestamp = int(time.time())
        headers: dict[str, str] = {}
        if args.provider == "video":
            payload = video_payload(args.event_type or "meeting.started", args.ref, index)
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            if args.secret:
                headers["x-zm-request-timestamp"] = str(timestamp)
                headers["x-zm-signature"] = sign_video(args.secret, body, timestamp)
            label = f"{payload['event']}:{args.ref}"
        else:
            delivery_id = f"msg_mock_{timestamp}_{index}"
            payload = email_payload(args.event_type or "email.delivered", args.ref)
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            headers["svix-id"] = delivery_id
            if args.secret:
                headers["svix-timestamp"] = str(timestamp)
                headers["svix-signature"] = sign_email(args.secret, delivery_id, body, timestamp)
            label = delivery_id
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {label} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
