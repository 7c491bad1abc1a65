from datetime import datetime, timezone
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db

router = APIRouter()


@router.get("")
async def health_check(db: Annotated[AsyncSession, Depends(get_db)]):
    db_ok = False
    try:
        await db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        db_ok = False

    redis_ok = False
    client = aioredis.from_url(settings.redis_url)
    try:
        redis_ok = bool(await client.ping())
    except aioredis.RedisError:
        redis_ok = False
    finally:
        await client.aclose()

    healthy = db_ok and redis_ok
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "screening-api",
        "checks": {
            "database": "ok" if db_ok else "error",
            "ingestion_queue": "ok" if redis_ok else "error",
        },
    }
