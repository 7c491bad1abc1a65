"""
Repository port for the screening workflow and its SQLAlchemy adapter.

The port is what the orchestration service depends on; the adapter maps it
onto the async ORM session used by the rest of the API. Decisions are always
returned ordered by (created_at, seq) so "first" and "latest" are stable.
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import AlreadyResolvedError, ConflictingWriteError, NotFoundError
from app.models.activity import Activity
from app.models.conflict import CONFLICT_UNIQUE_CONSTRAINT, Conflict
from app.models.conflict_resolution import ConflictResolution
from app.models.project import Project
from app.models.project_work import ProjectWork
from app.models.screening_decision import ScreeningDecisionRecord
from app.models.work import Work
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


class ScreeningRepository(Protocol):
    def transaction(self) -> Any: ...

    async def get_study(self, study_id: uuid.UUID, for_update: bool = False) -> Optional[ProjectWorkData]: ...

    async def get_decisions(self, study_id: uuid.UUID, phase: ScreeningPhase) -> List[DecisionRecord]: ...

    async def create_decision(self, data: NewDecision) -> DecisionRecord: ...

    async def update_study_status(
        self,
        study_id: uuid.UUID,
        status: ProjectWorkStatus,
        phase: ScreeningPhase,
        final_decision: Optional[ScreeningDecision],
    ) -> None: ...

    async def set_ingestion_status(self, study_id: uuid.UUID, status: IngestionStatus) -> None: ...

    async def upsert_conflict(self, data: ConflictData) -> uuid.UUID: ...

    async def get_project_config(self, project_id: uuid.UUID) -> ScreeningConfig: ...

    async def get_conflict(self, conflict_id: uuid.UUID) -> Optional[ConflictRecord]: ...

    async def get_study_conflict(
        self, study_id: uuid.UUID, phase: ScreeningPhase
    ) -> Optional[ConflictRecord]: ...

    async def create_conflict_resolution(
        self,
        conflict_id: uuid.UUID,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str] = None,
    ) -> None: ...

    async def get_unfinalized_with_decisions(
        self, project_id: uuid.UUID, phase: ScreeningPhase
    ) -> List[Tuple[ProjectWorkData, List[DecisionRecord]]]: ...

    async def count_included_missing_source(self, project_id: uuid.UUID, phase: ScreeningPhase) -> int: ...

    async def advance_included(
        self, project_id: uuid.UUID, from_phase: ScreeningPhase, to_phase: ScreeningPhase
    ) -> int: ...

    async def record_activity(
        self,
        project_id: uuid.UUID,
        activity_type: str,
        description: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def phase_status_counts(self, project_id: uuid.UUID, phase: ScreeningPhase) -> Dict[str, int]: ...

    async def count_open_conflicts(self, project_id: uuid.UUID, phase: ScreeningPhase) -> int: ...

    async def decisions_by_study(
        self, project_id: uuid.UUID, phase: ScreeningPhase, current_only: bool = False
    ) -> Dict[uuid.UUID, List[DecisionRecord]]: ...

    async def list_conflicts(
        self,
        project_id: uuid.UUID,
        status: Optional[ConflictStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ConflictRecord], int]: ...


def _study_data(pw: ProjectWork, url: Optional[str]) -> ProjectWorkData:
    return ProjectWorkData(
        id=pw.id,
        project_id=pw.project_id,
        work_id=pw.work_id,
        phase=ScreeningPhase(pw.phase),
        status=ProjectWorkStatus(pw.status),
        final_decision=ScreeningDecision(pw.final_decision) if pw.final_decision else None,
        pdf_key=pw.pdf_key,
        pdf_uploaded_at=pw.pdf_uploaded_at,
        ingestion_status=IngestionStatus(pw.ingestion_status) if pw.ingestion_status else None,
        url=url,
    )


def _decision_record(row: ScreeningDecisionRecord) -> DecisionRecord:
    return DecisionRecord(
        id=str(row.id),
        reviewer_id=row.reviewer_id,
        decision=ScreeningDecision(row.decision),
        reasoning=row.reasoning,
        created_at=row.created_at,
    )


def _conflict_record(conflict: Conflict) -> ConflictRecord:
    resolution = None
    if conflict.resolution is not None:
        resolution = {
            "resolver_id": conflict.resolution.resolver_id,
            "final_decision": conflict.resolution.final_decision,
            "reasoning": conflict.resolution.reasoning,
            "resolved_at": conflict.resolution.created_at,
        }
    return ConflictRecord(
        id=conflict.id,
        project_id=conflict.project_id,
        project_work_id=conflict.project_work_id,
        phase=ScreeningPhase(conflict.phase),
        status=ConflictStatus(conflict.status),
        decisions=list(conflict.decisions or []),
        created_at=conflict.created_at,
        resolved_at=conflict.resolved_at,
        resolution=resolution,
    )


def screening_config_for(project: Project) -> ScreeningConfig:
    policy = project.consensus_policy or settings.default_consensus_policy
    return ScreeningConfig(
        require_dual_screening=project.require_dual_screening,
        blind_screening=project.blind_screening,
        consensus_policy=ConsensusPolicy(policy),
    )


class SqlAlchemyScreeningRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        try:
            yield
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictingWriteError(str(exc.orig)) from exc
        except Exception:
            await self.session.rollback()
            raise

    async def get_study(self, study_id: uuid.UUID, for_update: bool = False) -> Optional[ProjectWorkData]:
        stmt = (
            select(ProjectWork, Work.url)
            .join(Work, Work.id == ProjectWork.work_id)
            .where(ProjectWork.id == study_id)
        )
        if for_update:
            # Serialises concurrent transitions of the same study
            stmt = stmt.with_for_update(of=ProjectWork)
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        pw, url = row
        return _study_data(pw, url)

    async def get_decisions(self, study_id: uuid.UUID, phase: ScreeningPhase) -> List[DecisionRecord]:
        result = await self.session.execute(
            select(ScreeningDecisionRecord)
            .where(
                ScreeningDecisionRecord.project_work_id == study_id,
                ScreeningDecisionRecord.phase == ScreeningPhase(phase).value,
            )
            .order_by(ScreeningDecisionRecord.created_at.asc(), ScreeningDecisionRecord.seq.asc())
        )
        return [_decision_record(r) for r in result.scalars().all()]

    async def create_decision(self, data: NewDecision) -> DecisionRecord:
        row = ScreeningDecisionRecord(
            project_work_id=data.project_work_id,
            reviewer_id=data.reviewer_id,
            phase=ScreeningPhase(data.phase).value,
            decision=ScreeningDecision(data.decision).value,
            reasoning=data.reasoning,
            exclusion_reason=data.exclusion_reason,
            confidence=data.confidence,
            time_spent_ms=data.time_spent_ms,
            followed_ai=data.followed_ai,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictingWriteError(
                f"Reviewer {data.reviewer_id} already has a decision for this study and phase"
            ) from exc
        await self.session.refresh(row)
        return _decision_record(row)

    async def update_study_status(
        self,
        study_id: uuid.UUID,
        status: ProjectWorkStatus,
        phase: ScreeningPhase,
        final_decision: Optional[ScreeningDecision],
    ) -> None:
        await self.session.execute(
            update(ProjectWork)
            .where(ProjectWork.id == study_id)
            .values(
                status=ProjectWorkStatus(status).value,
                phase=ScreeningPhase(phase).value,
                final_decision=ScreeningDecision(final_decision).value if final_decision else None,
            )
        )

    async def set_ingestion_status(self, study_id: uuid.UUID, status: IngestionStatus) -> None:
        await self.session.execute(
            update(ProjectWork)
            .where(ProjectWork.id == study_id)
            .values(ingestion_status=IngestionStatus(status).value)
        )

    async def upsert_conflict(self, data: ConflictData) -> uuid.UUID:
        stmt = (
            pg_insert(Conflict)
            .values(
                project_id=data.project_id,
                project_work_id=data.project_work_id,
                phase=ScreeningPhase(data.phase).value,
                status=ConflictStatus.PENDING.value,
                decisions=data.decisions,
            )
            .on_conflict_do_update(
                constraint=CONFLICT_UNIQUE_CONSTRAINT,
                set_={
                    "status": ConflictStatus.PENDING.value,
                    "decisions": data.decisions,
                    "resolved_at": None,
                },
                where=Conflict.status == ConflictStatus.PENDING.value,
            )
            .returning(Conflict.id)
        )
        result = await self.session.execute(stmt)
        conflict_id = result.scalar_one_or_none()
        if conflict_id is not None:
            return conflict_id
        # A resolved conflict keeps its resolution; it is never reopened
        existing = await self.session.execute(
            select(Conflict.id).where(
                Conflict.project_work_id == data.project_work_id,
                Conflict.phase == ScreeningPhase(data.phase).value,
            )
        )
        return existing.scalar_one()

    async def get_project_config(self, project_id: uuid.UUID) -> ScreeningConfig:
        project = await self.session.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return screening_config_for(project)

    async def get_conflict(self, conflict_id: uuid.UUID) -> Optional[ConflictRecord]:
        result = await self.session.execute(
            select(Conflict).options(selectinload(Conflict.resolution)).where(Conflict.id == conflict_id)
        )
        conflict = result.scalar_one_or_none()
        if conflict is None:
            return None
        return _conflict_record(conflict)

    async def get_study_conflict(
        self, study_id: uuid.UUID, phase: ScreeningPhase
    ) -> Optional[ConflictRecord]:
        result = await self.session.execute(
            select(Conflict)
            .options(selectinload(Conflict.resolution))
            .where(Conflict.project_work_id == study_id, Conflict.phase == ScreeningPhase(phase).value)
        )
        conflict = result.scalar_one_or_none()
        if conflict is None:
            return None
        return _conflict_record(conflict)

    async def create_conflict_resolution(
        self,
        conflict_id: uuid.UUID,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str] = None,
    ) -> None:
        # Conditional flip: a concurrent resolver sees rowcount == 0
        result = await self.session.execute(
            update(Conflict)
            .where(Conflict.id == conflict_id, Conflict.status == ConflictStatus.PENDING.value)
            .values(status=ConflictStatus.RESOLVED.value, resolved_at=datetime.now(timezone.utc))
        )
        if result.rowcount == 0:
            raise AlreadyResolvedError(conflict_id)
        self.session.add(
            ConflictResolution(
                conflict_id=conflict_id,
                resolver_id=resolver_id,
                final_decision=ScreeningDecision(final_decision).value,
                reasoning=reasoning,
            )
        )
        await self.session.flush()

    async def get_unfinalized_with_decisions(
        self, project_id: uuid.UUID, phase: ScreeningPhase
    ) -> List[Tuple[ProjectWorkData, List[DecisionRecord]]]:
        phase_value = ScreeningPhase(phase).value
        result = await self.session.execute(
            select(ProjectWork, Work.url)
            .join(Work, Work.id == ProjectWork.work_id)
            .where(
                ProjectWork.project_id == project_id,
                ProjectWork.phase == phase_value,
                ProjectWork.status.in_([ProjectWorkStatus.PENDING.value, ProjectWorkStatus.SCREENING.value]),
            )
        )
        studies = {pw.id: _study_data(pw, url) for pw, url in result.all()}
        if not studies:
            return []

        result = await self.session.execute(
            select(ScreeningDecisionRecord)
            .where(
                ScreeningDecisionRecord.project_work_id.in_(list(studies)),
                ScreeningDecisionRecord.phase == phase_value,
            )
            .order_by(ScreeningDecisionRecord.created_at.asc(), ScreeningDecisionRecord.seq.asc())
        )
        grouped: Dict[uuid.UUID, List[DecisionRecord]] = {}
        for row in result.scalars().all():
            grouped.setdefault(row.project_work_id, []).append(_decision_record(row))

        return [(studies[sid], decisions) for sid, decisions in grouped.items()]

    async def count_included_missing_source(self, project_id: uuid.UUID, phase: ScreeningPhase) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(ProjectWork)
            .join(Work, Work.id == ProjectWork.work_id)
            .where(
                ProjectWork.project_id == project_id,
                ProjectWork.phase == ScreeningPhase(phase).value,
                ProjectWork.status == ProjectWorkStatus.INCLUDED.value,
                or_(ProjectWork.pdf_key.is_(None), ProjectWork.pdf_key == ""),
                or_(Work.url.is_(None), Work.url == ""),
            )
        )
        return count or 0

    async def advance_included(
        self, project_id: uuid.UUID, from_phase: ScreeningPhase, to_phase: ScreeningPhase
    ) -> int:
        result = await self.session.execute(
            update(ProjectWork)
            .where(
                and_(
                    ProjectWork.project_id == project_id,
                    ProjectWork.phase == ScreeningPhase(from_phase).value,
                    ProjectWork.status == ProjectWorkStatus.INCLUDED.value,
                )
            )
            .values(
                phase=ScreeningPhase(to_phase).value,
                status=ProjectWorkStatus.PENDING.value,
                final_decision=None,
            )
        )
        return result.rowcount or 0

    async def record_activity(
        self,
        project_id: uuid.UUID,
        activity_type: str,
        description: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session.add(
            Activity(
                project_id=project_id,
                user_id=user_id,
                type=activity_type,
                description=description,
                details=details,
            )
        )
        await self.session.flush()

    # ── Read models for the API ───────────────────────────────────────────

    async def phase_status_counts(self, project_id: uuid.UUID, phase: ScreeningPhase) -> Dict[str, int]:
        result = await self.session.execute(
            select(ProjectWork.status, func.count())
            .where(ProjectWork.project_id == project_id, ProjectWork.phase == ScreeningPhase(phase).value)
            .group_by(ProjectWork.status)
        )
        return {status: count for status, count in result.all()}

    async def count_open_conflicts(self, project_id: uuid.UUID, phase: ScreeningPhase) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(Conflict)
            .where(
                Conflict.project_id == project_id,
                Conflict.phase == ScreeningPhase(phase).value,
                Conflict.status == ConflictStatus.PENDING.value,
            )
        )
        return count or 0

    async def decisions_by_study(
        self, project_id: uuid.UUID, phase: ScreeningPhase, current_only: bool = False
    ) -> Dict[uuid.UUID, List[DecisionRecord]]:
        """Decisions cast in phase, grouped per study. current_only limits to studies still in phase."""
        phase_value = ScreeningPhase(phase).value
        stmt = (
            select(ScreeningDecisionRecord)
            .join(ProjectWork, ProjectWork.id == ScreeningDecisionRecord.project_work_id)
            .where(
                ProjectWork.project_id == project_id,
                ScreeningDecisionRecord.phase == phase_value,
            )
            .order_by(ScreeningDecisionRecord.created_at.asc(), ScreeningDecisionRecord.seq.asc())
        )
        if current_only:
            stmt = stmt.where(ProjectWork.phase == phase_value)
        result = await self.session.execute(stmt)
        grouped: Dict[uuid.UUID, List[DecisionRecord]] = {}
        for row in result.scalars().all():
            grouped.setdefault(row.project_work_id, []).append(_decision_record(row))
        return grouped

    async def list_conflicts(
        self,
        project_id: uuid.UUID,
        status: Optional[ConflictStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ConflictRecord], int]:
        conditions = [Conflict.project_id == project_id]
        if status is not None:
            conditions.append(Conflict.status == ConflictStatus(status).value)
        total = await self.session.scalar(select(func.count()).select_from(Conflict).where(*conditions))
        result = await self.session.execute(
            select(Conflict)
            .options(selectinload(Conflict.resolution))
            .where(*conditions)
            .order_by(Conflict.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return [_conflict_record(c) for c in result.scalars().all()], total or 0

