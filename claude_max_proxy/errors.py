"""OpenAI-style error handling."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Normalized API error that renders as OpenAI-style payload."""

    def __init__(
        self,
        message: str,
        status_code: int,
        *,
        error_type: str = "invalid_request_error",
        param: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.param = param
        self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": self.param,
                "code": self.code,
            }
        }


class CredentialUnavailable(APIError):
    """No credential source yielded a usable access token."""

    def __init__(self, message: str = "No OAuth tokens found.") -> None:
        super().__init__(
            message,
            401,
            error_type="authentication_error",
            code="credential_unavailable",
        )


class CredentialExpired(APIError):
    """Refresh failed and the cached credential is past its hard expiry."""

    def __init__(self, message: str = "OAuth token expired and could not be refreshed.") -> None:
        super().__init__(
            message,
            401,
            error_type="authentication_error",
            code="credential_expired",
        )


class UpstreamError(APIError):
    """Non-success upstream status, forwarded with its original status and body."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(
            body or "Upstream request failed.",
            status_code,
            error_type="upstream_error",
            code=None,
        )
        self.body = body


class MalformedRequest(APIError):
    def __init__(self, message: str, *, param: Optional[str] = None, code: str = "invalid_type") -> None:
        super().__init__(
            message,
            400,
            error_type="invalid_request_error",
            param=param,
            code=code,
        )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def handle_api_error(_: Request, exc: APIError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        message = "; ".join(err.get("msg", "Validation error") for err in exc.errors())
        api_error = MalformedRequest(message or "Request validation failed.", code="validation_error")
        return JSONResponse(status_code=api_error.status_code, content=api_error.to_payload())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        status = exc.status_code if 400 <= exc.status_code < 600 else 500
        if status == 404:
            api_error = APIError(
                "Not found",
                404,
                error_type="not_found_error",
                code="not_found",
            )
        else:
            api_error = APIError(
                str(exc.detail) if exc.detail else "HTTP error.",
                status,
                error_type="invalid_request_error" if status < 500 else "server_error",
                code="http_error",
            )
        return JSONResponse(status_code=api_error.status_code, content=api_error.to_payload())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception("Unhandled exception. request_id=%s", request_id, exc_info=exc)
        api_error = APIError(
            "Internal server error.",
            500,
            error_type="server_error",
            code="internal_error",
        )
        return JSONResponse(status_code=api_error.status_code, content=api_error.to_payload())
