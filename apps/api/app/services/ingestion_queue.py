"""
Enqueue full-text ingestion jobs on Redis.

The ingestion worker pops JSON jobs from the left of `ingestion_queue_name`.
Enqueue is idempotent per PDF version: the job id embeds the PDF upload
timestamp, so a re-upload queues a fresh job while retries of the same
version are dropped.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import redis.asyncio as aioredis

from app.core.config import settings
from app.services.screening_types import IngestionSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionJob:
    project_work_id: uuid.UUID
    work_id: uuid.UUID
    source: IngestionSource
    pdf_version: int = 0

    @property
    def job_id(self) -> str:
        return f"ingest-{self.project_work_id}-{self.pdf_version}"


def pdf_version(uploaded_at: Optional[datetime]) -> int:
    """Milliseconds since epoch of the PDF upload, 0 when nothing was uploaded."""
    if uploaded_at is None:
        return 0
    return int(uploaded_at.timestamp() * 1000)


class IngestionQueue(Protocol):
    async def enqueue_ingestion(self, job: IngestionJob) -> bool: ...


class RedisIngestionQueue:
    def __init__(
        self,
        client: aioredis.Redis,
        queue_name: str = settings.ingestion_queue_name,
        dedup_ttl_seconds: int = settings.ingestion_dedup_ttl_seconds,
    ) -> None:
        self.client = client
        self.queue_name = queue_name
        self.dedup_ttl_seconds = dedup_ttl_seconds

    @classmethod
    def from_settings(cls) -> "RedisIngestionQueue":
        return cls(aioredis.from_url(settings.redis_url))

    async def enqueue_ingestion(self, job: IngestionJob) -> bool:
        """Push the job unless the same study+PDF version is already queued. Returns True if queued."""
        dedup_key = f"{self.queue_name}:job:{job.job_id}"
        claimed = await self.client.set(dedup_key, "1", nx=True, ex=self.dedup_ttl_seconds)
        if not claimed:
            logger.info("Ingestion job %s already queued; skipping", job.job_id)
            return False

        payload = {
            "id": job.job_id,
            "type": "ingest",
            "project_work_id": str(job.project_work_id),
            "work_id": str(job.work_id),
            "source": job.source.value,
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.client.rpush(self.queue_name, json.dumps(payload))
        except aioredis.RedisError:
            # Release the claim so a retry of the same version can still queue
            await self.client.delete(dedup_key)
            raise
        logger.info("Queued ingestion job %s (source=%s)", job.job_id, job.source.value)
        return True

    async def close(self) -> None:
        await self.client.aclose()
