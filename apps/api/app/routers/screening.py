"""
Reviewer decisions and project-level phase operations.

POST /api/v1/projects/{project_id}/screening/decisions
POST /api/v1/projects/{project_id}/screening/decisions/batch
GET  /api/v1/projects/{project_id}/screening/studies/{study_id}/decisions
POST /api/v1/projects/{project_id}/screening/advance
POST /api/v1/projects/{project_id}/screening/repair
GET  /api/v1/projects/{project_id}/screening/progress
GET  /api/v1/projects/{project_id}/screening/agreement
"""
from __future__ import annotations

import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.deps import get_screening_repository, get_screening_service
from app.schemas.screening import (
    AdvancePhaseRequest,
    AdvancePhaseResponse,
    AgreementOut,
    BatchDecisionRequest,
    BatchDecisionResponse,
    DecisionOut,
    DecisionSubmit,
    PhaseProgressOut,
    RepairRequest,
    RepairResponse,
    StudyDecisionsOut,
    TransitionOut,
)
from app.services import kappa as kappa_svc
from app.services import phase_advancement
from app.services.screening_repository import ScreeningRepository
from app.services.screening_service import ScreeningService
from app.services.screening_types import NewDecision, ScreeningPhase
from app.services.state_machine import visible_decisions

router = APIRouter()

Service = Annotated[ScreeningService, Depends(get_screening_service)]
Repository = Annotated[ScreeningRepository, Depends(get_screening_repository)]


@router.post("/{project_id}/screening/decisions", response_model=TransitionOut, status_code=201)
async def submit_decision(project_id: uuid.UUID, body: DecisionSubmit, service: Service):
    result = await service.process_decision(
        NewDecision(**body.model_dump()),
        project_id=project_id,
    )
    return TransitionOut.model_validate(result)


@router.post("/{project_id}/screening/decisions/batch", response_model=BatchDecisionResponse)
async def submit_batch(project_id: uuid.UUID, body: BatchDecisionRequest, service: Service):
    # Duplicates in one request would only fail as duplicate votes
    study_ids = list(dict.fromkeys(body.project_work_ids))
    result = await service.process_batch(
        project_id=project_id,
        study_ids=study_ids,
        reviewer_id=body.reviewer_id,
        phase=body.phase,
        decision=body.decision,
        reasoning=body.reasoning,
    )
    return BatchDecisionResponse(processed=result.processed, failed=result.failed, errors=result.errors)


@router.get(
    "/{project_id}/screening/studies/{study_id}/decisions",
    response_model=StudyDecisionsOut,
)
async def list_study_decisions(
    project_id: uuid.UUID,
    study_id: uuid.UUID,
    repository: Repository,
    viewer_id: str = Query(..., min_length=1),
    phase: Optional[ScreeningPhase] = None,
):
    study = await repository.get_study(study_id)
    if study is None or study.project_id != project_id:
        raise HTTPException(status_code=404, detail="Study not found")
    phase = phase or study.phase
    config = await repository.get_project_config(project_id)
    decisions = await repository.get_decisions(study_id, phase)
    shown = visible_decisions(decisions, viewer_id, config)
    return StudyDecisionsOut(
        project_work_id=study_id,
        phase=phase,
        total=len(decisions),
        hidden=len(decisions) - len(shown),
        decisions=[DecisionOut.model_validate(d) for d in shown],
    )


@router.post("/{project_id}/screening/advance", response_model=AdvancePhaseResponse)
async def advance_phase(project_id: uuid.UUID, body: AdvancePhaseRequest, repository: Repository):
    result = await phase_advancement.advance_phase(
        repository, project_id, body.current_phase, user_id=body.user_id
    )
    return AdvancePhaseResponse.model_validate(result)


@router.post("/{project_id}/screening/repair", response_model=RepairResponse)
async def repair_phase(project_id: uuid.UUID, body: RepairRequest, repository: Repository):
    outcome = await phase_advancement.repair_phase(repository, project_id, body.phase, user_id=body.user_id)
    return RepairResponse.model_validate(outcome)


@router.get("/{project_id}/screening/progress", response_model=PhaseProgressOut)
async def phase_progress(
    project_id: uuid.UUID,
    repository: Repository,
    phase: ScreeningPhase = ScreeningPhase.TITLE_ABSTRACT,
):
    return await phase_advancement.phase_progress(repository, project_id, phase)


@router.get("/{project_id}/screening/agreement", response_model=AgreementOut)
async def reviewer_agreement(
    project_id: uuid.UUID,
    repository: Repository,
    phase: ScreeningPhase = ScreeningPhase.TITLE_ABSTRACT,
):
    # Raises NotFoundError for an unknown project
    await repository.get_project_config(project_id)
    by_study = await repository.decisions_by_study(project_id, phase)
    return AgreementOut(phase=phase, **kappa_svc.agreement_summary(by_study))
