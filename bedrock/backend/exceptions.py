"""Bedrock — Error taxonomy and FastAPI exception handlers."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("bedrock.errors")


class BedrockError(Exception):
    """Base exception for the Bedrock backend.

    Carries an HTTP status and a machine-readable code so request handlers can
    raise it directly and let the registered handler render the JSON body.
    """

    status_code: int = 500
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        self.message = message or self.__class__.__name__
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Short failure tag sent to clients in the `error` field."""
        return self.__class__.__name__


# ── Upstream failures (vessel provider, price API, feeds) ──────────


class UpstreamFailure(BedrockError):
    status_code = 502
    default_code = "upstream_failure"


class NetworkError(UpstreamFailure):
    status_code = 503
    default_code = "network_error"


class RateLimited(UpstreamFailure):
    status_code = 429
    default_code = "rate_limited"


class AuthError(UpstreamFailure):
    default_code = "upstream_auth_error"


class MalformedResponse(UpstreamFailure):
    default_code = "malformed_response"


class UpstreamStatusError(UpstreamFailure):
    """Non-2xx upstream status that is not a rate limit or auth rejection."""

    default_code = "upstream_status"

    def __init__(self, message: str = "", *, upstream_status: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


# ── Local failures ─────────────────────────────────────────────────


class CacheFailure(BedrockError):
    """Cache backend failure. Always handled inside the cache layer."""

    default_code = "cache_failure"


class InvalidRequest(BedrockError):
    status_code = 400
    default_code = "invalid_request"


class InvalidSubscription(InvalidRequest):
    default_code = "invalid_subscription"


def error_body(exc: BedrockError) -> dict:
    body = {"error": exc.message, "code": exc.code, "type": exc.kind}
    if exc.details is not None:
        body["details"] = exc.details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """Render BedrockError subclasses as JSON responses."""

    @app.exception_handler(BedrockError)
    async def _bedrock_exception_handler(_request: Request, exc: BedrockError) -> JSONResponse:
        if isinstance(exc, UpstreamFailure):
            logger.warning("Upstream failure (%s): %s", exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))
