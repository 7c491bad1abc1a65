"""
Tests for RedisIngestionQueue with a mocked redis.asyncio client.

Covers:
- Job payload and dedup key format
- Enqueuing the same study+PDF version twice queues one job
- A new PDF version queues a fresh job
- Claim released when the push fails
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as aioredis

from app.services.ingestion_queue import IngestionJob, RedisIngestionQueue, pdf_version
from app.services.screening_types import IngestionSource

pytestmark = pytest.mark.asyncio(loop_scope="session")


def _fake_redis() -> AsyncMock:
    """SET NX semantics backed by a dict; RPUSH appends to a list."""
    client = AsyncMock()
    keys: dict = {}
    lists: dict = {}

    async def _set(key, value, nx=False, ex=None):
        if nx and key in keys:
            return None
        keys[key] = value
        return True

    async def _rpush(name, value):
        lists.setdefault(name, []).append(value)
        return len(lists[name])

    async def _delete(key):
        return 1 if keys.pop(key, None) is not None else 0

    client.set.side_effect = _set
    client.rpush.side_effect = _rpush
    client.delete.side_effect = _delete
    client.keys_store = keys
    client.lists_store = lists
    return client


def _job(study_id: uuid.UUID, version: int = 0) -> IngestionJob:
    return IngestionJob(
        project_work_id=study_id,
        work_id=uuid.uuid4(),
        source=IngestionSource.SCREENING_DECISION,
        pdf_version=version,
    )


async def test_pdf_version():
    assert pdf_version(None) == 0
    assert pdf_version(datetime(2026, 1, 1, tzinfo=timezone.utc)) == 1767225600000


async def test_enqueue_pushes_json_payload():
    client = _fake_redis()
    queue = RedisIngestionQueue(client, queue_name="rag-ingestion", dedup_ttl_seconds=60)
    study_id = uuid.uuid4()
    job = _job(study_id, version=42)

    assert await queue.enqueue_ingestion(job) is True

    client.set.assert_awaited_once_with(f"rag-ingestion:job:ingest-{study_id}-42", "1", nx=True, ex=60)
    [raw] = client.lists_store["rag-ingestion"]
    payload = json.loads(raw)
    assert payload["id"] == f"ingest-{study_id}-42"
    assert payload["type"] == "ingest"
    assert payload["project_work_id"] == str(study_id)
    assert payload["work_id"] == str(job.work_id)
    assert payload["source"] == "screening_decision"
    assert "enqueued_at" in payload


async def test_same_pdf_version_is_queued_once():
    client = _fake_redis()
    queue = RedisIngestionQueue(client, queue_name="q", dedup_ttl_seconds=60)
    study_id = uuid.uuid4()

    first = await queue.enqueue_ingestion(_job(study_id, version=7))
    second = await queue.enqueue_ingestion(_job(study_id, version=7))

    assert first is True
    assert second is False
    assert len(client.lists_store["q"]) == 1


async def test_new_pdf_version_queues_again():
    client = _fake_redis()
    queue = RedisIngestionQueue(client, queue_name="q", dedup_ttl_seconds=60)
    study_id = uuid.uuid4()

    await queue.enqueue_ingestion(_job(study_id, version=7))
    await queue.enqueue_ingestion(_job(study_id, version=8))

    assert len(client.lists_store["q"]) == 2


async def test_failed_push_releases_claim():
    client = _fake_redis()
    client.rpush.side_effect = aioredis.ConnectionError("connection refused")
    queue = RedisIngestionQueue(client, queue_name="q", dedup_ttl_seconds=60)
    study_id = uuid.uuid4()

    with pytest.raises(aioredis.ConnectionError):
        await queue.enqueue_ingestion(_job(study_id))

    assert client.keys_store == {}
    client.rpush.side_effect = None
    client.rpush.return_value = 1
    assert await queue.enqueue_ingestion(_job(study_id)) is True


async def test_close_closes_client():
    client = _fake_redis()
    queue = RedisIngestionQueue(client)
    await queue.close()
    client.aclose.assert_awaited_once()
