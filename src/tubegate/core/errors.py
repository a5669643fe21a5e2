import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class TubegateError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(TubegateError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"


class AuthenticationError(TubegateError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Unauthorized"


class RateLimitError(TubegateError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, limit: int, retry_after: int | None = None):
        super().__init__(f"Rate limit exceeded: {limit} requests per hour")
        self.limit = limit
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        headers = {"X-RateLimit-Limit": str(self.limit), "X-RateLimit-Remaining": "0"}
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class ConfigurationError(TubegateError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Server misconfiguration"


class PersistenceError(TubegateError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Storage unavailable"


class NotFoundError(TubegateError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Not found"


def envelope_error(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
        headers=headers or None,
    )


async def _tubegate_error_handler(request: Request, exc: TubegateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "path": request.url.path,
                "error_type": type(exc).__name__,
                "error": exc.message,
            },
        )
    return envelope_error(exc.status_code, exc.message, exc.headers)


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return envelope_error(exc.status_code, message, getattr(exc, "headers", None))


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request body"
    return envelope_error(status.HTTP_400_BAD_REQUEST, message)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
    )
    return envelope_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TubegateError, _tubegate_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
