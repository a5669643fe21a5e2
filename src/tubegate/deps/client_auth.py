import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import Depends, Request, Response, Security
from fastapi.security import APIKeyHeader

from tubegate.core.errors import AuthenticationError, PersistenceError, RateLimitError
from tubegate.core.keys import parse_api_key
from tubegate.core.rate_limit import rolling_window_limit
from tubegate.core.store import KeyStore
from tubegate.core.verifier import verify_api_key
from tubegate.deps.db import get_key_store
from tubegate.models.api_key import ApiKey

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MISSING_KEY_MESSAGE = "API key required. Send header X-API-Key: yt_<key_id>_<secret>"
MALFORMED_KEY_MESSAGE = "Invalid API key format. Expected yt_<key_id>_<secret>"
INVALID_KEY_MESSAGE = "Invalid or inactive API key"


class AuthState(str, enum.Enum):
    NO_CREDENTIAL = "no_credential"
    MALFORMED = "malformed"
    UNVERIFIED = "unverified"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTHORIZED = "authorized"


@dataclass
class AuthOutcome:
    state: AuthState
    api_key: ApiKey | None = None
    limit: int | None = None
    retry_after: int | None = None


async def evaluate_api_key(
    raw_key: str | None,
    store: KeyStore,
    response: Response | None = None,
) -> AuthOutcome:
    """
    Walk header -> parse -> verify -> quota, stopping at the first failure.
    """
    if not raw_key or not raw_key.strip():
        return AuthOutcome(AuthState.NO_CREDENTIAL)

    parsed = parse_api_key(raw_key)
    if parsed is None:
        return AuthOutcome(AuthState.MALFORMED)

    api_key = await verify_api_key(store, parsed.key_id, parsed.key_secret)
    if api_key is None:
        return AuthOutcome(AuthState.UNVERIFIED)

    now = datetime.now(timezone.utc)
    try:
        rl = await rolling_window_limit(store, api_key.id, api_key.rate_limit_per_hour, now=now)
    except PersistenceError:
        # cannot prove capacity, so deny
        logger.exception("rate_limit_check_failed", extra={"key_id": api_key.key_id})
        return AuthOutcome(AuthState.UNVERIFIED)

    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(rl.limit)
        response.headers["X-RateLimit-Remaining"] = str(rl.remaining)
        response.headers["X-RateLimit-Reset"] = str(rl.reset_epoch)

    if not rl.allowed:
        return AuthOutcome(
            AuthState.QUOTA_EXCEEDED,
            api_key=api_key,
            limit=rl.limit,
            retry_after=rl.retry_after(now),
        )

    return AuthOutcome(AuthState.AUTHORIZED, api_key=api_key)


def _attach_identity(request: Request, api_key: ApiKey) -> None:
    request.state.api_key = api_key
    request.state.api_key_id = api_key.id


def _raise_quota_exceeded(outcome: AuthOutcome) -> None:
    logger.info(
        "rate_limit_exceeded",
        extra={"key_id": outcome.api_key.key_id, "limit": outcome.limit},
    )
    raise RateLimitError(outcome.limit, retry_after=outcome.retry_after)


async def require_client_key(
    request: Request,
    response: Response,
    raw_key: str | None = Security(API_KEY_HEADER),
    store: KeyStore = Depends(get_key_store),
) -> ApiKey:
    outcome = await evaluate_api_key(raw_key, store, response)

    if outcome.state is AuthState.NO_CREDENTIAL:
        raise AuthenticationError(MISSING_KEY_MESSAGE)
    if outcome.state is AuthState.MALFORMED:
        raise AuthenticationError(MALFORMED_KEY_MESSAGE)
    if outcome.state is AuthState.UNVERIFIED:
        raise AuthenticationError(INVALID_KEY_MESSAGE)
    if outcome.state is AuthState.QUOTA_EXCEEDED:
        _raise_quota_exceeded(outcome)

    _attach_identity(request, outcome.api_key)
    return outcome.api_key


async def optional_client_key(
    request: Request,
    response: Response,
    raw_key: str | None = Security(API_KEY_HEADER),
    store: KeyStore = Depends(get_key_store),
) -> ApiKey | None:
    """
    Same pipeline as require_client_key, but anonymous callers are let through.

    A key that identifies itself and is out of quota is still rejected with
    429; it never falls back to anonymous access.
    """
    outcome = await evaluate_api_key(raw_key, store, response)

    if outcome.state is AuthState.QUOTA_EXCEEDED:
        _raise_quota_exceeded(outcome)
    if outcome.state is not AuthState.AUTHORIZED:
        return None

    _attach_identity(request, outcome.api_key)
    return outcome.api_key
