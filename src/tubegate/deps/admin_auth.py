import logging

from fastapi import Request, status

from tubegate.core.errors import AuthenticationError, ConfigurationError
from tubegate.core.keys import constant_time_equals

logger = logging.getLogger(__name__)


def extract_admin_token(x_admin_token: str | None, authorization: str | None) -> str:
    token = (x_admin_token or "").strip()

    if not token and authorization:
        parts = authorization.split(" ")
        if len(parts) == 2 and parts[0].lower() == "bearer":
            token = parts[1]
        else:
            token = authorization

    token = token.strip()
    if token.lower() == "bearer":
        return ""
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token


class AdminGuard:
    """
    Checks the operator token on management routes.

    The expected token is fixed when the guard is built. A guard built without
    one rejects every request with 500 rather than leaving the surface open.
    """

    def __init__(self, expected_token: str | None):
        expected = (expected_token or "").strip()
        self._expected = expected or None

    @property
    def configured(self) -> bool:
        return self._expected is not None

    def check(self, x_admin_token: str | None, authorization: str | None) -> None:
        if self._expected is None:
            logger.error("admin_token_not_configured")
            raise ConfigurationError("Admin authentication is not configured")

        token = extract_admin_token(x_admin_token, authorization)
        if not token:
            raise AuthenticationError("Admin token required")

        if not constant_time_equals(token, self._expected):
            logger.warning("admin_token_rejected")
            raise AuthenticationError("Invalid admin token", status_code=status.HTTP_403_FORBIDDEN)

    async def __call__(self, request: Request) -> None:
        self.check(request.headers.get("X-Admin-Token"), request.headers.get("Authorization"))


async def require_admin(request: Request) -> None:
    guard: AdminGuard | None = getattr(request.app.state, "admin_guard", None)
    if guard is None:
        logger.error("admin_guard_missing")
        raise ConfigurationError("Admin authentication is not configured")
    await guard(request)
