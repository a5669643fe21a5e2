import logging
import time
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Callable

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tubegate.core.store import KeyStore, NewUsage

logger = logging.getLogger(__name__)

StoreOpener = Callable[[], AbstractAsyncContextManager[KeyStore]]


class UsageLogger:
    """Best-effort writer for usage rows; a failed write is logged and dropped."""

    def __init__(self, open_store: StoreOpener):
        self.open_store = open_store

    async def record(
        self,
        api_key_id: int,
        endpoint: str,
        status: int,
        processing_time_ms: int | None = None,
        error_message: str | None = None,
    ) -> None:
        usage = NewUsage(
            api_key_id=api_key_id,
            endpoint=endpoint,
            response_status=status,
            request_timestamp=datetime.now(timezone.utc),
            processing_time_ms=processing_time_ms,
            error_message=error_message,
        )
        try:
            async with self.open_store() as store:
                await store.insert_usage(usage)
        except Exception:
            logger.warning(
                "usage_record_failed",
                exc_info=True,
                extra={"api_key_id": api_key_id, "endpoint": endpoint, "status": status},
            )


class UsageLoggingMiddleware:
    """
    Logs usage for requests that have an authorized API key attached
    (set by the client auth dependencies).

    The row is written after the response has been sent, so a slow or broken
    database never holds up the caller.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # shared with request.state downstream
        state = scope.setdefault("state", {})
        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            api_key_id = state.get("api_key_id")
            usage_logger: UsageLogger | None = getattr(scope["app"].state, "usage_logger", None)

            if api_key_id is not None and usage_logger is not None:
                await usage_logger.record(
                    api_key_id,
                    scope.get("path", ""),
                    status_code,
                    processing_time_ms=int((time.perf_counter() - start) * 1000),
                    error_message=state.get("usage_error"),
                )
