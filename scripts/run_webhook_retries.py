from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def post(url: str, token: str | None) -> tuple[int, str]:
    request = urllib.request.Request(url, data=b"", method="POST")
    request.add_header("Accept", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Trigger one webhook retry sweep. Intended for cron every 5 minutes."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--token", default=None, help="Bearer token with service or admin role.")
    args = parser.parse_args()

    status_code, body = post(f"{args.base_url.rstrip('/')}/internal/webhook-retries", args.token)
    if status_code != 200:
        print(f"retry sweep failed status={status_code} body={body}", file=sys.stderr)
        return 1
    result = json.loads(body)
    print(
        "retry sweep processed={processed} succeeded={succeeded} "
        "failed={failed} dead_letters={dead_letters} reclaimed={reclaimed}".format(**result)
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
