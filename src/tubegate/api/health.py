from datetime import datetime, timezone

from fastapi import APIRouter, Request
from sqlalchemy import text

from tubegate.deps.db import get_engine

router = APIRouter()


@router.get("/api/health")
async def health():
    return {"success": True, "data": {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}}


@router.get("/health")
async def health_deep(request: Request):
    # Check the database; failures surface through the 500 handler
    async with get_engine(request.app.state.settings.postgres_dsn).connect() as conn:
        await conn.execute(text("SELECT 1"))

    return {"success": True, "data": {"status": "ok", "database": "ok"}}
