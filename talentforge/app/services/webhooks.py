from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi.datastructures import Headers

from talentforge.app.errors import HandshakeError, SignatureVerificationError, StaleTimestampError
from talentforge.app.models import UrlValidationResponse, WebhookProvider

logger = logging.getLogger("talentforge.webhooks")

SIGNATURE_TOLERANCE_SECONDS = 300
EMAIL_SECRET_PREFIX = "whsec_"


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def _hmac_sha256(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def _check_timestamp(
    raw_timestamp: str,
    provider: WebhookProvider,
    tolerance_seconds: int,
    now: Optional[float],
) -> None:
    try:
        timestamp = int(raw_timestamp)
    except ValueError as exc:
        raise SignatureVerificationError(
            f"invalid {provider.value} signature timestamp", provider=provider
        ) from exc
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise StaleTimestampError(
            f"{provider.value} signature timestamp outside tolerance", provider=provider
        )


def _unsigned_allowed(provider: WebhookProvider, secret: str, allow_unsigned: bool) -> bool:
    if secret:
        return False
    if not allow_unsigned:
        raise SignatureVerificationError(
            f"{provider.value} webhook secret not configured", provider=provider
        )
    logger.warning("webhook_signature_skipped provider=%s reason=no_secret", provider.value)
    return True


def _email_signing_key(secret: str) -> bytes:
    value = secret[len(EMAIL_SECRET_PREFIX) :] if secret.startswith(EMAIL_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        logger.warning(
            "email_webhook_secret_not_base64 prefixed=%s using_raw_bytes=true",
            secret.startswith(EMAIL_SECRET_PREFIX),
        )
        return value.encode("utf-8")


def verify_email_signature(
    headers: Headers,
    raw_body: bytes,
    secret: str,
    *,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
    allow_unsigned: bool = False,
    now: Optional[float] = None,
) -> None:
    provider = WebhookProvider.email
    if _unsigned_allowed(provider, secret, allow_unsigned):
        return
    message_id = _header_value(headers, ["svix-id", "webhook-id"])
    timestamp = _header_value(headers, ["svix-timestamp", "webhook-timestamp"])
    signature = _header_value(headers, ["svix-signature", "webhook-signature"])
    if not message_id or not timestamp or not signature:
        raise SignatureVerificationError("missing email signature headers", provider=provider)
    _check_timestamp(timestamp, provider, tolerance_seconds, now)

    signed = f"{message_id}.{timestamp}.".encode("utf-8") + raw_body
    expected = base64.b64encode(_hmac_sha256(_email_signing_key(secret), signed)).decode("ascii")
    for entry in signature.split():
        version, _, value = entry.partition(",")
        if version == "v1" and hmac.compare_digest(expected, value):
            return
    raise SignatureVerificationError("invalid email signature", provider=provider)


def verify_video_signature(
    headers: Headers,
    raw_body: bytes,
    secret: str,
    *,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
    allow_unsigned: bool = False,
    now: Optional[float] = None,
) -> None:
    provider = WebhookProvider.video
    if _unsigned_allowed(provider, secret, allow_unsigned):
        return
    timestamp = _header_value(headers, ["x-zm-request-timestamp"])
    signature = _header_value(headers, ["x-zm-signature"])
    if not timestamp or not signature:
        raise SignatureVerificationError("missing video signature headers", provider=provider)
    _check_timestamp(timestamp, provider, tolerance_seconds, now)

    message = f"v0:{timestamp}:".encode("utf-8") + raw_body
    expected = "v0=" + _hmac_sha256(secret.encode("utf-8"), message).hex()
    if not hmac.compare_digest(expected, signature):
        raise SignatureVerificationError("invalid video signature", provider=provider)


def url_validation_response(plain_token: Optional[str], secret: str) -> UrlValidationResponse:
    """Answer the video provider's endpoint ownership challenge."""
    if not secret:
        raise HandshakeError(
            "video webhook secret not configured",
            provider=WebhookProvider.video,
            misconfigured=True,
        )
    if not plain_token:
        raise HandshakeError("missing plainToken", provider=WebhookProvider.video)
    encrypted = hmac.new(
        secret.encode("utf-8"), plain_token.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return UrlValidationResponse(plainToken=plain_token, encryptedToken=encrypted)
