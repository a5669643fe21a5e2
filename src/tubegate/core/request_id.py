import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from tubegate.logging import request_id_ctx

REQUEST_ID_HEADER = "X-Request-ID"

logger = logging.getLogger("tubegate.request")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Reuse or mint a request id, echo it back, and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = (request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex)[:64]
        request.state.request_id = request_id
        # copied into the task that runs the app, so handler logs carry the id too
        token = request_id_ctx.set(request_id)

        try:
            start = time.perf_counter()
            response = await call_next(request)
            latency_ms = int((time.perf_counter() - start) * 1000)

            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                },
            )
            return response
        finally:
            request_id_ctx.reset(token)
