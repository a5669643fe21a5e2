import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tubegate.config import Settings
from tubegate.core.errors import PersistenceError
from tubegate.core.keys import generate_api_key
from tubegate.core.metadata import MetadataError, PlaylistMetadata, VideoMetadata
from tubegate.core.store import UPDATABLE_FIELDS, KeyStore, NewUsage, utcnow
from tubegate.main import create_app
from tubegate.models.api_key import ApiKey
from tubegate.models.api_usage import ApiUsage
from tubegate.models.base import Base

ADMIN_TOKEN = "test-admin-token"


class InMemoryKeyStore(KeyStore):
    """Dict-backed KeyStore with the same cascade semantics as the SQL schema."""

    def __init__(self):
        self.keys: dict[int, ApiKey] = {}
        self.usage: list[ApiUsage] = []
        self._key_ids = itertools.count(1)
        self._usage_ids = itertools.count(1)
        self.lookups = 0
        self.usage_queries = 0

    def _by_key_id(self, key_id: str) -> ApiKey | None:
        return next((k for k in self.keys.values() if k.key_id == key_id), None)

    async def find_active_by_key_id(self, key_id):
        self.lookups += 1
        k = self._by_key_id(key_id)
        return k if k is not None and k.is_active else None

    async def get_by_key_id(self, key_id):
        return self._by_key_id(key_id)

    async def list_credentials(self):
        return sorted(self.keys.values(), key=lambda k: (k.created_at, k.id), reverse=True)

    async def insert_credential(self, *, key_id, key_hash, name, rate_limit_per_hour):
        if self._by_key_id(key_id) is not None:
            raise PersistenceError("duplicate key_id")
        now = utcnow()
        k = ApiKey(
            id=next(self._key_ids),
            key_id=key_id,
            key_hash=key_hash,
            name=name,
            is_active=True,
            rate_limit_per_hour=rate_limit_per_hour,
            created_at=now,
            updated_at=now,
        )
        self.keys[k.id] = k
        return k

    async def update_credential(self, key_id, **changes):
        assert set(changes) <= UPDATABLE_FIELDS
        k = self._by_key_id(key_id)
        if k is None:
            return None
        for field, value in changes.items():
            setattr(k, field, value)
        k.updated_at = utcnow()
        return k

    async def delete_credential(self, key_id):
        k = self._by_key_id(key_id)
        if k is None:
            return False
        del self.keys[k.id]
        self.usage = [u for u in self.usage if u.api_key_id != k.id]
        return True

    async def count_usage_since(self, api_key_id, since):
        self.usage_queries += 1
        return sum(1 for u in self.usage if u.api_key_id == api_key_id and u.request_timestamp >= since)

    async def count_usage_by_key_since(self, since):
        self.usage_queries += 1
        counts: dict[int, int] = {}
        for u in self.usage:
            if u.request_timestamp >= since:
                counts[u.api_key_id] = counts.get(u.api_key_id, 0) + 1
        return counts

    async def oldest_usage_since(self, api_key_id, since):
        stamps = [
            u.request_timestamp
            for u in self.usage
            if u.api_key_id == api_key_id and u.request_timestamp >= since
        ]
        return min(stamps) if stamps else None

    async def insert_usage(self, usage: NewUsage):
        if usage.api_key_id not in self.keys:
            raise PersistenceError("foreign key violation")
        self.usage.append(
            ApiUsage(
                id=next(self._usage_ids),
                api_key_id=usage.api_key_id,
                endpoint=usage.endpoint,
                request_timestamp=usage.request_timestamp,
                response_status=usage.response_status,
                processing_time_ms=usage.processing_time_ms,
                error_message=usage.error_message,
            )
        )

    async def list_usage(self, api_key_id, limit=50):
        rows = [u for u in self.usage if u.api_key_id == api_key_id]
        rows.sort(key=lambda u: (u.request_timestamp, u.id), reverse=True)
        return rows[:limit]

    # test helpers

    def issue(self, *, name="test key", rate_limit_per_hour=100, is_active=True):
        """Create a key directly and return (record, plaintext)."""
        generated = generate_api_key()
        now = utcnow()
        k = ApiKey(
            id=next(self._key_ids),
            key_id=generated.key_id,
            key_hash=generated.key_hash,
            name=name,
            is_active=is_active,
            rate_limit_per_hour=rate_limit_per_hour,
            created_at=now,
            updated_at=now,
        )
        self.keys[k.id] = k
        return k, generated.plaintext

    def add_usage(self, api_key_id, *, count=1, ago=timedelta(minutes=1), status=200):
        at = datetime.now(timezone.utc) - ago
        for _ in range(count):
            self.usage.append(
                ApiUsage(
                    id=next(self._usage_ids),
                    api_key_id=api_key_id,
                    endpoint="/api/analyze",
                    request_timestamp=at,
                    response_status=status,
                )
            )


class BrokenKeyStore(InMemoryKeyStore):
    """Every read and write fails, as if the database were down."""

    async def find_active_by_key_id(self, key_id):
        raise PersistenceError()

    async def count_usage_since(self, api_key_id, since):
        raise PersistenceError()

    async def oldest_usage_since(self, api_key_id, since):
        raise PersistenceError()

    async def insert_usage(self, usage):
        raise PersistenceError()


class FakeFetcher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []

    async def fetch_video(self, url, include_thumbnails=True):
        self.calls.append(url)
        if self.fail:
            raise MetadataError("Video unavailable or could not be analyzed")
        return VideoMetadata(
            title="Test video",
            description="desc",
            duration="3:33",
            author="Test channel",
            views="1,234 views",
            upload_date="2024-01-02",
            thumbnail="https://i.ytimg.com/vi/abc123/hq.jpg",
            download_urls={"360p": "https://example.invalid/360"},
            thumbnails={},
            video_id="abc123",
        )

    async def fetch_playlist(self, playlist_id, max_videos=10, include_thumbnails=True):
        self.calls.append(playlist_id)
        if self.fail:
            raise MetadataError("Video unavailable or could not be analyzed")
        video = await self.fetch_video("https://youtu.be/abc123", include_thumbnails)
        return PlaylistMetadata(
            title="Test playlist",
            description="",
            author="Test channel",
            video_count=1,
            thumbnail="",
            playlist_id=playlist_id,
            videos=[video][:max_videos],
        )


def store_opener(store: KeyStore):
    @asynccontextmanager
    async def open_store():
        yield store

    return open_store


def make_settings(**overrides) -> Settings:
    values = {"admin_token": ADMIN_TOKEN, "database_url": "sqlite+aiosqlite://", "log_level": "WARNING"}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store() -> InMemoryKeyStore:
    return InMemoryKeyStore()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def app(store, fetcher):
    return create_app(make_settings(), open_store=store_opener(store), metadata_fetcher=fetcher)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
async def sql_session_factory():
    """In-memory SQLite with foreign keys enforced, so ON DELETE CASCADE works."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_fks(dbapi_conn, _):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()
