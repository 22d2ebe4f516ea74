from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_db_path: str
    database_url: str
    video_webhook_secret: str
    email_webhook_secret: str
    webhook_signature_tolerance_seconds: int
    webhook_max_attempts: int
    webhook_payload_max_bytes: int
    webhook_retry_batch_size: int
    webhook_rate_limit_per_minute: int
    webhook_claim_timeout_seconds: int
    redis_url: str
    pipeline_max_workers: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/talentforge.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        video_webhook_secret=os.getenv("VIDEO_WEBHOOK_SECRET", "").strip(),
        email_webhook_secret=os.getenv("EMAIL_WEBHOOK_SECRET", "").strip(),
        webhook_signature_tolerance_seconds=max(
            30, _int_env("WEBHOOK_SIGNATURE_TOLERANCE_SECONDS", 300)
        ),
        webhook_max_attempts=max(1, _int_env("WEBHOOK_MAX_ATTEMPTS", 3)),
        webhook_payload_max_bytes=max(1024, _int_env("WEBHOOK_PAYLOAD_MAX_BYTES", 10_000)),
        webhook_retry_batch_size=max(1, min(100, _int_env("WEBHOOK_RETRY_BATCH_SIZE", 10))),
        webhook_rate_limit_per_minute=max(1, _int_env("WEBHOOK_RATE_LIMIT_PER_MINUTE", 60)),
        webhook_claim_timeout_seconds=max(
            30, _int_env("WEBHOOK_CLAIM_TIMEOUT_SECONDS", 300)
        ),
        redis_url=os.getenv("REDIS_URL", "").strip(),
        pipeline_max_workers=max(1, _int_env("PIPELINE_MAX_WORKERS", 2)),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
