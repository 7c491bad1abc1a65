"""
FastAPI dependencies wiring the screening services to the request's session.

Tests override get_screening_repository / get_ingestion_queue through
app.dependency_overrides.
"""
from __future__ import annotations

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.services.ingestion_queue import IngestionQueue, RedisIngestionQueue
from app.services.screening_events import ActivityLogEventPublisher
from app.services.screening_repository import ScreeningRepository, SqlAlchemyScreeningRepository
from app.services.screening_service import ScreeningService


async def get_screening_repository(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ScreeningRepository:
    return SqlAlchemyScreeningRepository(db)


async def get_ingestion_queue() -> AsyncGenerator[IngestionQueue, None]:
    queue = RedisIngestionQueue.from_settings()
    try:
        yield queue
    finally:
        await queue.close()


async def get_screening_service(
    repository: Annotated[ScreeningRepository, Depends(get_screening_repository)],
    queue: Annotated[IngestionQueue, Depends(get_ingestion_queue)],
) -> ScreeningService:
    return ScreeningService(repository, ActivityLogEventPublisher(repository), queue)
