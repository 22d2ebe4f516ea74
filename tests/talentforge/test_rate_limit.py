from __future__ import annotations

import redis
from fastapi.testclient import TestClient

from talentforge.app.services.rate_limit import (
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
    build_rate_limiter,
)
from talentforge.app.settings import load_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_sliding_window_allows_limit_then_blocks() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, window_seconds=60, clock=clock)

    assert [limiter.check("video:10.0.0.1") for _ in range(3)] == [None, None, None]
    assert limiter.check("video:10.0.0.1") == 60
    assert limiter.check("video:10.0.0.2") is None

    clock.now += 30
    assert limiter.check("video:10.0.0.1") == 30

    clock.now += 31
    assert limiter.check("video:10.0.0.1") is None


def test_webhook_endpoint_returns_429_with_retry_after(make_app, monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_RATE_LIMIT_PER_MINUTE", "2")
    client = TestClient(make_app())
    payload = {"type": "email.sent", "data": {"email_id": "msg_1"}}

    responses = [
        client.post("/webhooks/email", json=payload, headers={"svix-id": f"m_{i}"})
        for i in range(3)
    ]

    assert [response.status_code for response in responses] == [200, 200, 429]
    assert int(responses[2].headers["retry-after"]) >= 1

    other_endpoint = client.post("/webhooks/video", json={"event": "meeting.started"})
    assert other_endpoint.status_code == 200


def test_idle_keys_are_pruned() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, window_seconds=60, clock=clock, prune_every=1)
    limiter.check("video:10.0.0.1")
    limiter.check("email:10.0.0.2")
    assert limiter.tracked_keys == 2

    clock.now += 61
    assert limiter.check("video:10.0.0.3") is None
    assert limiter.tracked_keys == 1


class FakeRedisPipeline:
    def __init__(self, client: "FakeRedis") -> None:
        self.client = client
        self.commands: list = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return queue

    def execute(self) -> list:
        if self.client.down:
            raise redis.ConnectionError("connection refused")
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.commands]


class FakeRedis:
    """Just enough of the sorted-set API for the limiter."""

    def __init__(self) -> None:
        self.sets: dict[str, dict[str, float]] = {}
        self.expiries: dict[str, int] = {}
        self.down = False

    def pipeline(self) -> FakeRedisPipeline:
        return FakeRedisPipeline(self)

    def zremrangebyscore(self, key: str, low: float, high: float) -> int:
        members = self.sets.setdefault(key, {})
        stale = [member for member, score in members.items() if low <= score <= high]
        for member in stale:
            del members[member]
        return len(stale)

    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self.sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zcard(self, key: str) -> int:
        return len(self.sets.get(key, {}))

    def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list:
        ordered = sorted(self.sets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start : end + 1]

    def zrem(self, key: str, member: str) -> int:
        return 1 if self.sets.get(key, {}).pop(member, None) is not None else 0

    def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True


def test_redis_window_is_shared_and_rejections_do_not_count() -> None:
    clock = FakeClock()
    client = FakeRedis()
    first = RedisSlidingWindowRateLimiter(client, 2, window_seconds=60, clock=clock)
    second = RedisSlidingWindowRateLimiter(client, 2, window_seconds=60, clock=clock)

    assert first.check("email:10.0.0.1") is None
    clock.now += 10
    assert second.check("email:10.0.0.1") is None
    assert first.check("email:10.0.0.1") == 50
    assert client.zcard("talentforge:ratelimit:email:10.0.0.1") == 2
    assert client.expiries["talentforge:ratelimit:email:10.0.0.1"] == 61

    clock.now += 51
    assert second.check("email:10.0.0.1") is None


def test_redis_outage_fails_open(caplog) -> None:
    client = FakeRedis()
    client.down = True
    limiter = RedisSlidingWindowRateLimiter(client, 1, clock=FakeClock())

    with caplog.at_level("WARNING", logger="talentforge.rate_limit"):
        assert limiter.check("video:10.0.0.1") is None
        assert limiter.check("video:10.0.0.1") is None

    assert "rate_limit_backend_error" in caplog.text


def test_redis_url_selects_shared_limiter(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    assert isinstance(build_rate_limiter(load_settings()), RedisSlidingWindowRateLimiter)

    monkeypatch.delenv("REDIS_URL")
    assert isinstance(build_rate_limiter(load_settings()), SlidingWindowRateLimiter)
