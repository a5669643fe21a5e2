import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, StrictBool

from tubegate.core.errors import NotFoundError, TubegateError, ValidationError
from tubegate.core.keys import generate_api_key
from tubegate.core.store import KeyStore
from tubegate.deps.admin_auth import require_admin
from tubegate.deps.db import get_key_store
from tubegate.models.api_key import ApiKey

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["admin"])

MAX_RATE_LIMIT_PER_HOUR = 10_000


class ApiKeyCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    rate_limit_per_hour: int | None = Field(default=None, ge=1, le=MAX_RATE_LIMIT_PER_HOUR)


class ApiKeyUpdateIn(BaseModel):
    is_active: StrictBool | None = None
    rate_limit_per_hour: int | None = Field(default=None, ge=1, le=MAX_RATE_LIMIT_PER_HOUR)


def _key_out(k: ApiKey) -> dict:
    return {
        "id": k.id,
        "key_id": k.key_id,
        "name": k.name,
        "is_active": k.is_active,
        "rate_limit_per_hour": k.rate_limit_per_hour,
        "created_at": k.created_at,
        "updated_at": k.updated_at,
    }


@router.post("/admin/verify", dependencies=[Depends(require_admin)])
async def verify_admin_token():
    return {"success": True}


@router.post(
    "/keys",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_api_key(
    payload: ApiKeyCreateIn,
    request: Request,
    store: KeyStore = Depends(get_key_store),
):
    rate_limit = payload.rate_limit_per_hour or request.app.state.settings.default_rate_limit_per_hour
    generated = generate_api_key()

    existing = await store.get_by_key_id(generated.key_id)
    if existing is not None:
        logger.error("api_key_id_collision", extra={"key_id": generated.key_id})
        raise TubegateError("Key generation collision, retry")

    api_key = await store.insert_credential(
        key_id=generated.key_id,
        key_hash=generated.key_hash,
        name=payload.name,
        rate_limit_per_hour=rate_limit,
    )
    logger.info("api_key_created", extra={"key_id": api_key.key_id, "rate_limit_per_hour": rate_limit})

    # the only time the full key leaves the server
    return {"success": True, "data": {**_key_out(api_key), "api_key": generated.plaintext}}


@router.get("/keys", dependencies=[Depends(require_admin)])
async def list_api_keys(store: KeyStore = Depends(get_key_store)):
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    keys = await store.list_credentials()
    usage_by_key = await store.count_usage_by_key_since(since)

    data = [{**_key_out(k), "usage_today": usage_by_key.get(k.id, 0)} for k in keys]
    return {"success": True, "data": data}


@router.patch("/keys/{key_id}", dependencies=[Depends(require_admin)])
async def update_api_key(
    key_id: str,
    payload: ApiKeyUpdateIn,
    store: KeyStore = Depends(get_key_store),
):
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("Nothing to update: send is_active and/or rate_limit_per_hour")

    api_key = await store.update_credential(key_id, **changes)
    if api_key is None:
        raise NotFoundError("API key not found")

    logger.info("api_key_updated", extra={"key_id": key_id, "changes": changes})
    return {"success": True, "data": _key_out(api_key)}


@router.delete("/keys/{key_id}", dependencies=[Depends(require_admin)])
async def delete_api_key(key_id: str, store: KeyStore = Depends(get_key_store)):
    deleted = await store.delete_credential(key_id)
    if not deleted:
        raise NotFoundError("API key not found")

    logger.info("api_key_deleted", extra={"key_id": key_id})
    return {"success": True, "data": {"key_id": key_id, "deleted": True}}


@router.get("/keys/{key_id}/usage", dependencies=[Depends(require_admin)])
async def api_key_usage(
    key_id: str,
    limit: int = 50,
    store: KeyStore = Depends(get_key_store),
):
    limit = min(max(limit, 1), 200)

    api_key = await store.get_by_key_id(key_id)
    if api_key is None:
        raise NotFoundError("API key not found")

    now = datetime.now(timezone.utc)
    last_hour = await store.count_usage_since(api_key.id, now - timedelta(hours=1))
    last_24h = await store.count_usage_since(api_key.id, now - timedelta(hours=24))
    events = await store.list_usage(api_key.id, limit=limit)

    return {
        "success": True,
        "data": {
            "key_id": api_key.key_id,
            "rate_limit_per_hour": api_key.rate_limit_per_hour,
            "usage_last_hour": last_hour,
            "usage_last_24h": last_24h,
            "events": [
                {
                    "endpoint": e.endpoint,
                    "request_timestamp": e.request_timestamp,
                    "response_status": e.response_status,
                    "processing_time_ms": e.processing_time_ms,
                    "error_message": e.error_message,
                }
                for e in events
            ],
        },
    }
