from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from talentforge.app.models import WebhookProvider

logger = logging.getLogger("talentforge.errors")


class WebhookRejected(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "webhook_rejected"

    def __init__(self, message: str, *, provider: Optional[WebhookProvider] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider


class SignatureVerificationError(WebhookRejected):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "signature_invalid"


class StaleTimestampError(SignatureVerificationError):
    code = "timestamp_stale"


class MalformedPayloadError(WebhookRejected):
    code = "malformed_payload"


class HandshakeError(WebhookRejected):
    code = "handshake_failed"

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[WebhookProvider] = None,
        misconfigured: bool = False,
    ) -> None:
        super().__init__(message, provider=provider)
        if misconfigured:
            self.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class TransitionRejected(Exception):
    """An entity status change that the transition table does not allow."""

    def __init__(self, *, entity: str, current: str, attempted: str) -> None:
        super().__init__(f"{entity} cannot move from {current} to {attempted}")
        self.entity = entity
        self.current = current
        self.attempted = attempted


class StoreNotFoundError(Exception):
    pass


class RateLimitExceeded(Exception):
    def __init__(self, *, scope: str, retry_after: int) -> None:
        super().__init__(f"rate limit exceeded for {scope}")
        self.scope = scope
        self.retry_after = retry_after


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(WebhookRejected)
    async def webhook_rejected_handler(request: Request, exc: WebhookRejected) -> JSONResponse:
        if isinstance(exc, MalformedPayloadError) and exc.provider == WebhookProvider.video:
            # The video provider retries any non-2xx answer; malformed bodies are dropped.
            logger.warning(
                "webhook_malformed provider=%s path=%s detail=%s",
                exc.provider.value,
                request.url.path,
                exc.message,
            )
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"received": True, "status": "malformed", "detail": exc.message},
            )
        logger.warning(
            "webhook_rejected code=%s provider=%s path=%s detail=%s",
            exc.code,
            exc.provider.value if exc.provider else None,
            request.url.path,
            exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message},
        )

    @app.exception_handler(TransitionRejected)
    async def transition_rejected_handler(
        request: Request, exc: TransitionRejected
    ) -> JSONResponse:
        logger.info(
            "transition_rejected entity=%s current=%s attempted=%s path=%s",
            exc.entity,
            exc.current,
            exc.attempted,
            request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "error": "transition_rejected",
                    "entity": exc.entity,
                    "current_status": exc.current,
                    "attempted_status": exc.attempted,
                    "message": str(exc),
                }
            },
        )

    @app.exception_handler(StoreNotFoundError)
    async def not_found_handler(request: Request, exc: StoreNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "too many requests", "retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )
