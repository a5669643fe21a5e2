"""
Persistence capability for API keys and their usage rows.

Handlers and the auth pipeline only talk to ``KeyStore``; ``SqlKeyStore`` is the
SQLAlchemy-backed implementation used in production. SQLAlchemy failures are
re-raised as ``PersistenceError`` so callers decide whether to fail open or
closed without knowing about the ORM.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tubegate.core.errors import PersistenceError
from tubegate.models.api_key import ApiKey
from tubegate.models.api_usage import ApiUsage


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NewUsage:
    api_key_id: int
    endpoint: str
    response_status: int
    request_timestamp: datetime
    processing_time_ms: int | None = None
    error_message: str | None = None


class KeyStore(abc.ABC):
    @abc.abstractmethod
    async def find_active_by_key_id(self, key_id: str) -> ApiKey | None:
        ...

    @abc.abstractmethod
    async def get_by_key_id(self, key_id: str) -> ApiKey | None:
        ...

    @abc.abstractmethod
    async def list_credentials(self) -> list[ApiKey]:
        """All keys, newest first."""

    @abc.abstractmethod
    async def insert_credential(
        self,
        *,
        key_id: str,
        key_hash: str,
        name: str,
        rate_limit_per_hour: int,
    ) -> ApiKey:
        ...

    @abc.abstractmethod
    async def update_credential(self, key_id: str, **changes: Any) -> ApiKey | None:
        """Apply ``is_active`` / ``rate_limit_per_hour`` changes; None if unknown."""

    @abc.abstractmethod
    async def delete_credential(self, key_id: str) -> bool:
        """Delete the key and, by cascade, all of its usage rows."""

    @abc.abstractmethod
    async def count_usage_since(self, api_key_id: int, since: datetime) -> int:
        ...

    @abc.abstractmethod
    async def count_usage_by_key_since(self, since: datetime) -> dict[int, int]:
        """Usage counts per ``api_key_id``; keys with no rows are absent."""

    @abc.abstractmethod
    async def oldest_usage_since(self, api_key_id: int, since: datetime) -> datetime | None:
        ...

    @abc.abstractmethod
    async def insert_usage(self, usage: NewUsage) -> None:
        ...

    @abc.abstractmethod
    async def list_usage(self, api_key_id: int, limit: int = 50) -> list[ApiUsage]:
        """Most recent usage rows for one key."""


# connection drops and timeouts from the driver surface as OSError
STORE_ERRORS = (SQLAlchemyError, OSError)

UPDATABLE_FIELDS = frozenset({"is_active", "rate_limit_per_hour"})


class SqlKeyStore(KeyStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _scalar_key(self, stmt) -> ApiKey | None:
        try:
            res = await self.session.execute(stmt)
        except STORE_ERRORS as exc:
            raise PersistenceError() from exc
        return res.scalar_one_or_none()

    async def find_active_by_key_id(self, key_id: str) -> ApiKey | None:
        return await self._scalar_key(
            select(ApiKey).where(ApiKey.key_id == key_id, ApiKey.is_active.is_(True))
        )

    async def get_by_key_id(self, key_id: str) -> ApiKey | None:
        return await self._scalar_key(select(ApiKey).where(ApiKey.key_id == key_id))

    async def list_credentials(self) -> list[ApiKey]:
        try:
            res = await self.session.execute(
                select(ApiKey).order_by(desc(ApiKey.created_at), desc(ApiKey.id))
            )
        except STORE_ERRORS as exc:
            raise PersistenceError() from exc
        return list(res.scalars().all())

    async def insert_credential(
        self,
        *,
        key_id: str,
        key_hash: str,
        name: str,
        rate_limit_per_hour: int,
    ) -> ApiKey:
        now = utcnow()
        api_key = ApiKey(
            key_id=key_id,
            key_hash=key_hash,
            name=name,
            is_active=True,
            rate_limit_per_hour=rate_limit_per_hour,
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(api_key)
            await self.session.commit()
            await self.session.refresh(api_key)
        except STORE_ERRORS as exc:
            await self.session.rollback()
            raise PersistenceError() from exc
        return api_key

    async def update_credential(self, key_id: str, **changes: Any) -> ApiKey | None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        api_key = await self.get_by_key_id(key_id)
        if api_key is None:
            return None

        for field, value in changes.items():
            setattr(api_key, field, value)
        api_key.updated_at = utcnow()

        try:
            await self.session.commit()
            await self.session.refresh(api_key)
        except STORE_ERRORS as exc:
            await self.session.rollback()
            raise PersistenceError() from exc
        return api_key

    async def delete_credential(self, key_id: str) -> bool:
        try:
            res = await self.session.execute(
                delete(ApiKey).where(ApiKey.key_id == key_id).returning(ApiKey.id)
            )
            deleted_id = res.scalar_one_or_none()
            await self.session.commit()
        except STORE_ERRORS as exc:
            await self.session.rollback()
            raise PersistenceError() from exc
        return deleted_id is not None

    async def count_usage_since(self, api_key_id: int, since: datetime) -> int:
        try:
            count = await self.session.scalar(
                select(func.count()).where(
                    ApiUsage.api_key_id == api_key_id,
                    ApiUsage.request_timestamp >= since,
                )
            )
        except STORE_ERRORS as exc:
            raise PersistenceError() from exc
        return int(count or 0)

    async def count_usage_by_key_since(self, since: datetime) -> dict[int, int]:
        try:
            res = await self.session.execute(
                select(ApiUsage.api_key_id, func.count().label("count"))
                .where(ApiUsage.request_timestamp >= since)
                .group_by(ApiUsage.api_key_id)
            )
        except STORE_ERRORS as exc:
            raise PersistenceError() from exc
        return {r.api_key_id: r.count for r in res.all()}

    async def oldest_usage_since(self, api_key_id: int, since: datetime) -> datetime | None:
        try:
            oldest = await self.session.scalar(
                select(func.min(ApiUsage.request_timestamp)).where(
                    ApiUsage.api_key_id == api_key_id,
                    ApiUsage.request_timestamp >= since,
                )
            )
        except STORE_ERRORS as exc:
            raise PersistenceError() from exc
        if oldest is not None and oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=timezone.utc)
        return oldest

    async def insert_usage(self, usage: NewUsage) -> None:
        event = ApiUsage(
            api_key_id=usage.api_key_id,
            endpoint=usage.endpoint[:255],
            request_timestamp=usage.request_timestamp,
            response_status=usage.response_status,
            processing_time_ms=usage.processing_time_ms,
            error_message=usage.error_message,
        )
        try:
            self.session.add(event)
            await self.session.commit()
        except STORE_ERRORS as exc:
            await self.session.rollback()
            raise PersistenceError() from exc

    async def list_usage(self, api_key_id: int, limit: int = 50) -> list[ApiUsage]:
        try:
            res = await self.session.execute(
                select(ApiUsage)
                .where(ApiUsage.api_key_id == api_key_id)
                .order_by(desc(ApiUsage.request_timestamp), desc(ApiUsage.id))
                .limit(limit)
            )
        except STORE_ERRORS as exc:
            raise PersistenceError() from exc
        return list(res.scalars().all())
