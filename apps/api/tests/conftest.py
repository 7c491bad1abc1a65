"""
Shared pytest fixtures.

The screening core talks to storage and Redis through small ports, so the
tests run against an in-memory repository and queue instead of Postgres.
The in-memory repository keeps the guarantees the service relies on: the
unique vote and conflict keys, row locks on get_study(for_update=True) and
all-or-nothing transactions. The SQLAlchemy adapter itself is covered by
test_repository_postgres.py against a live database.

All async fixtures and tests share a single session-scoped event loop.
"""
from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.deps import get_ingestion_queue, get_screening_repository
from app.core.errors import AlreadyResolvedError, ConflictingWriteError, NotFoundError
from app.main import app
from app.services.ingestion_queue import IngestionJob
from app.services.screening_events import (
    ConflictCreatedEvent,
    DecisionMadeEvent,
    PhaseAdvancedEvent,
)
from app.services.screening_service import ScreeningService
from app.services.screening_types import (
    ConflictData,
    ConflictRecord,
    ConflictStatus,
    ConsensusPolicy,
    DecisionRecord,
    IngestionStatus,
    NewDecision,
    ProjectWorkData,
    ProjectWorkStatus,
    ScreeningConfig,
    ScreeningDecision,
    ScreeningPhase,
)

# ---------------------------------------------------------------------------
# Single shared event loop for the whole test session
# ---------------------------------------------------------------------------

pytestmark = pytest.mark.asyncio(loop_scope="session")


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------

@dataclass
class _Tx:
    undo: List[Callable[[], None]] = field(default_factory=list)
    locks: List[asyncio.Lock] = field(default_factory=list)


_current_tx: ContextVar[Optional[_Tx]] = ContextVar("current_tx", default=None)

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class InMemoryScreeningRepository:
    def __init__(self) -> None:
        self.projects: Dict[uuid.UUID, ScreeningConfig] = {}
        self.studies: Dict[uuid.UUID, ProjectWorkData] = {}
        self.decisions: List[Tuple[uuid.UUID, ScreeningPhase, DecisionRecord, NewDecision]] = []
        self.conflicts: Dict[uuid.UUID, ConflictRecord] = {}
        self.activities: List[Dict[str, Any]] = []
        self.commits = 0
        self.rollbacks = 0
        self._row_locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._clock = 0

    # ── Seeding helpers ────────────────────────────────────────────────────

    def add_project(
        self,
        require_dual_screening: bool = True,
        blind_screening: bool = False,
        consensus_policy: ConsensusPolicy = ConsensusPolicy.UNANIMOUS,
    ) -> uuid.UUID:
        project_id = uuid.uuid4()
        self.projects[project_id] = ScreeningConfig(
            require_dual_screening=require_dual_screening,
            blind_screening=blind_screening,
            consensus_policy=consensus_policy,
        )
        return project_id

    def add_study(
        self,
        project_id: uuid.UUID,
        phase: ScreeningPhase = ScreeningPhase.TITLE_ABSTRACT,
        status: ProjectWorkStatus = ProjectWorkStatus.PENDING,
        pdf_key: Optional[str] = "pdfs/study.pdf",
        url: Optional[str] = None,
        ingestion_status: Optional[IngestionStatus] = None,
        final_decision: Optional[ScreeningDecision] = None,
    ) -> ProjectWorkData:
        study = ProjectWorkData(
            id=uuid.uuid4(),
            project_id=project_id,
            work_id=uuid.uuid4(),
            phase=phase,
            status=status,
            final_decision=final_decision,
            pdf_key=pdf_key,
            pdf_uploaded_at=_EPOCH if pdf_key else None,
            ingestion_status=ingestion_status,
            url=url,
        )
        self.studies[study.id] = study
        return study

    def seed_decision(
        self, study_id: uuid.UUID, reviewer_id: str, decision: ScreeningDecision, phase: Optional[ScreeningPhase] = None
    ) -> DecisionRecord:
        """Store a vote directly, bypassing the service (legacy data, stuck studies)."""
        phase = phase or self.studies[study_id].phase
        data = NewDecision(project_work_id=study_id, reviewer_id=reviewer_id, phase=phase, decision=decision)
        record = self._new_record(data)
        self.decisions.append((study_id, phase, record, data))
        return record

    def study(self, study_id: uuid.UUID) -> ProjectWorkData:
        return self.studies[study_id]

    def conflict_for(self, study_id: uuid.UUID, phase: ScreeningPhase) -> Optional[ConflictRecord]:
        for conflict in self.conflicts.values():
            if conflict.project_work_id == study_id and conflict.phase == phase:
                return conflict
        return None

    def stored_decisions(self, study_id: uuid.UUID) -> List[NewDecision]:
        return [data for sid, _, _, data in self.decisions if sid == study_id]

    def activity_types(self) -> List[str]:
        return [a["type"] for a in self.activities]

    # ── Internals ──────────────────────────────────────────────────────────

    def _new_record(self, data: NewDecision) -> DecisionRecord:
        self._clock += 1
        return DecisionRecord(
            id=str(uuid.uuid4()),
            reviewer_id=data.reviewer_id,
            decision=ScreeningDecision(data.decision),
            created_at=_EPOCH + timedelta(seconds=self._clock),
            reasoning=data.reasoning,
        )

    def _on_undo(self, fn: Callable[[], None]) -> None:
        tx = _current_tx.get()
        if tx is not None:
            tx.undo.append(fn)

    def _set_study(self, study: ProjectWorkData) -> None:
        previous = self.studies[study.id]
        self.studies[study.id] = study
        self._on_undo(lambda: self.studies.__setitem__(previous.id, previous))

    def _set_conflict(self, conflict: ConflictRecord) -> None:
        previous = self.conflicts.get(conflict.id)
        self.conflicts[conflict.id] = conflict
        if previous is None:
            self._on_undo(lambda: self.conflicts.pop(conflict.id, None))
        else:
            self._on_undo(lambda: self.conflicts.__setitem__(previous.id, previous))

    def _phase_studies(self, project_id: uuid.UUID, phase: ScreeningPhase) -> List[ProjectWorkData]:
        return [s for s in self.studies.values() if s.project_id == project_id and s.phase == phase]

    def _grouped(self, study_ids: List[uuid.UUID], phase: ScreeningPhase) -> Dict[uuid.UUID, List[DecisionRecord]]:
        grouped: Dict[uuid.UUID, List[DecisionRecord]] = {}
        for sid, p, record, _ in self.decisions:
            if sid in study_ids and p == phase:
                grouped.setdefault(sid, []).append(record)
        return grouped

    # ── ScreeningRepository ────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self):
        tx = _Tx()
        token = _current_tx.set(tx)
        try:
            yield
            self.commits += 1
        except Exception:
            self.rollbacks += 1
            for undo in reversed(tx.undo):
                undo()
            raise
        finally:
            _current_tx.reset(token)
            for lock in tx.locks:
                lock.release()

    async def get_study(self, study_id: uuid.UUID, for_update: bool = False) -> Optional[ProjectWorkData]:
        tx = _current_tx.get()
        if for_update and tx is not None and study_id in self.studies:
            lock = self._row_locks.setdefault(study_id, asyncio.Lock())
            if lock not in tx.locks:
                await lock.acquire()
                tx.locks.append(lock)
        return self.studies.get(study_id)

    async def get_decisions(self, study_id: uuid.UUID, phase: ScreeningPhase) -> List[DecisionRecord]:
        # Yield so concurrent submissions interleave like real I/O
        await asyncio.sleep(0)
        return self._grouped([study_id], ScreeningPhase(phase)).get(study_id, [])

    async def create_decision(self, data: NewDecision) -> DecisionRecord:
        phase = ScreeningPhase(data.phase)
        for sid, p, record, _ in self.decisions:
            if sid == data.project_work_id and p == phase and record.reviewer_id == data.reviewer_id:
                raise ConflictingWriteError("duplicate key value violates unique constraint")
        record = self._new_record(data)
        entry = (data.project_work_id, phase, record, data)
        self.decisions.append(entry)
        self._on_undo(lambda: self.decisions.remove(entry))
        return record

    async def update_study_status(
        self,
        study_id: uuid.UUID,
        status: ProjectWorkStatus,
        phase: ScreeningPhase,
        final_decision: Optional[ScreeningDecision],
    ) -> None:
        self._set_study(
            replace(self.studies[study_id], status=status, phase=phase, final_decision=final_decision)
        )

    async def set_ingestion_status(self, study_id: uuid.UUID, status: IngestionStatus) -> None:
        self._set_study(replace(self.studies[study_id], ingestion_status=status))

    async def upsert_conflict(self, data: ConflictData) -> uuid.UUID:
        existing = self.conflict_for(data.project_work_id, ScreeningPhase(data.phase))
        if existing is not None:
            if existing.status == ConflictStatus.RESOLVED:
                return existing.id
            self._set_conflict(
                replace(existing, status=ConflictStatus.PENDING, decisions=data.decisions, resolved_at=None)
            )
            return existing.id
        self._clock += 1
        conflict = ConflictRecord(
            id=uuid.uuid4(),
            project_id=data.project_id,
            project_work_id=data.project_work_id,
            phase=ScreeningPhase(data.phase),
            status=ConflictStatus.PENDING,
            decisions=list(data.decisions),
            created_at=_EPOCH + timedelta(seconds=self._clock),
        )
        self._set_conflict(conflict)
        return conflict.id

    async def get_project_config(self, project_id: uuid.UUID) -> ScreeningConfig:
        if project_id not in self.projects:
            raise NotFoundError("Project", project_id)
        return self.projects[project_id]

    async def get_conflict(self, conflict_id: uuid.UUID) -> Optional[ConflictRecord]:
        return self.conflicts.get(conflict_id)

    async def get_study_conflict(self, study_id: uuid.UUID, phase: ScreeningPhase) -> Optional[ConflictRecord]:
        return self.conflict_for(study_id, ScreeningPhase(phase))

    async def create_conflict_resolution(
        self,
        conflict_id: uuid.UUID,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str] = None,
    ) -> None:
        conflict = self.conflicts[conflict_id]
        if conflict.status != ConflictStatus.PENDING:
            raise AlreadyResolvedError(conflict_id)
        resolved_at = datetime.now(timezone.utc)
        self._set_conflict(
            replace(
                conflict,
                status=ConflictStatus.RESOLVED,
                resolved_at=resolved_at,
                resolution={
                    "resolver_id": resolver_id,
                    "final_decision": ScreeningDecision(final_decision).value,
                    "reasoning": reasoning,
                    "resolved_at": resolved_at,
                },
            )
        )

    async def get_unfinalized_with_decisions(
        self, project_id: uuid.UUID, phase: ScreeningPhase
    ) -> List[Tuple[ProjectWorkData, List[DecisionRecord]]]:
        phase = ScreeningPhase(phase)
        studies = {
            s.id: s
            for s in self._phase_studies(project_id, phase)
            if s.status in (ProjectWorkStatus.PENDING, ProjectWorkStatus.SCREENING)
        }
        grouped = self._grouped(list(studies), phase)
        return [(studies[sid], decisions) for sid, decisions in grouped.items()]

    async def count_included_missing_source(self, project_id: uuid.UUID, phase: ScreeningPhase) -> int:
        return sum(
            1
            for s in self._phase_studies(project_id, ScreeningPhase(phase))
            if s.status == ProjectWorkStatus.INCLUDED and not s.has_source_document
        )

    async def advance_included(
        self, project_id: uuid.UUID, from_phase: ScreeningPhase, to_phase: ScreeningPhase
    ) -> int:
        moved = 0
        for study in self._phase_studies(project_id, ScreeningPhase(from_phase)):
            if study.status == ProjectWorkStatus.INCLUDED:
                self._set_study(
                    replace(study, phase=to_phase, status=ProjectWorkStatus.PENDING, final_decision=None)
                )
                moved += 1
        return moved

    async def record_activity(
        self,
        project_id: uuid.UUID,
        activity_type: str,
        description: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = {
            "project_id": project_id,
            "type": activity_type,
            "description": description,
            "user_id": user_id,
            "details": details,
        }
        self.activities.append(entry)
        self._on_undo(lambda: self.activities.remove(entry))

    async def phase_status_counts(self, project_id: uuid.UUID, phase: ScreeningPhase) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for study in self._phase_studies(project_id, ScreeningPhase(phase)):
            counts[study.status.value] = counts.get(study.status.value, 0) + 1
        return counts

    async def count_open_conflicts(self, project_id: uuid.UUID, phase: ScreeningPhase) -> int:
        return sum(
            1
            for c in self.conflicts.values()
            if c.project_id == project_id and c.phase == phase and c.status == ConflictStatus.PENDING
        )

    async def decisions_by_study(
        self, project_id: uuid.UUID, phase: ScreeningPhase, current_only: bool = False
    ) -> Dict[uuid.UUID, List[DecisionRecord]]:
        phase = ScreeningPhase(phase)
        ids = [
            s.id
            for s in self.studies.values()
            if s.project_id == project_id and (not current_only or s.phase == phase)
        ]
        return self._grouped(ids, phase)

    async def list_conflicts(
        self,
        project_id: uuid.UUID,
        status: Optional[ConflictStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ConflictRecord], int]:
        matching = [
            c
            for c in self.conflicts.values()
            if c.project_id == project_id and (status is None or c.status == status)
        ]
        matching.sort(key=lambda c: c.created_at, reverse=True)
        return matching[skip: skip + limit], len(matching)


# ---------------------------------------------------------------------------
# Queue and event doubles
# ---------------------------------------------------------------------------

class FakeIngestionQueue:
    """Dedups on job id like the Redis queue; set fail=True to simulate an outage."""

    def __init__(self) -> None:
        self.jobs: List[IngestionJob] = []
        self.fail = False
        self._seen: set = set()

    async def enqueue_ingestion(self, job: IngestionJob) -> bool:
        if self.fail:
            raise ConnectionError("redis unavailable")
        if job.job_id in self._seen:
            return False
        self._seen.add(job.job_id)
        self.jobs.append(job)
        return True


class RecordingEventPublisher:
    def __init__(self) -> None:
        self.events: List[Any] = []

    async def publish_decision_made(self, event: DecisionMadeEvent) -> None:
        self.events.append(event)

    async def publish_conflict_created(self, event: ConflictCreatedEvent) -> None:
        self.events.append(event)

    async def publish_phase_advanced(self, event: PhaseAdvancedEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[Any]:
        return [e for e in self.events if isinstance(e, event_type)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def repo() -> InMemoryScreeningRepository:
    return InMemoryScreeningRepository()


@pytest.fixture
def queue() -> FakeIngestionQueue:
    return FakeIngestionQueue()


@pytest.fixture
def publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture
def service(repo, publisher, queue) -> ScreeningService:
    return ScreeningService(repo, publisher, queue)


@pytest_asyncio.fixture
async def client(repo, queue) -> AsyncGenerator[AsyncClient, None]:
    async def _queue():
        yield queue

    app.dependency_overrides[get_screening_repository] = lambda: repo
    app.dependency_overrides[get_ingestion_queue] = _queue
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
