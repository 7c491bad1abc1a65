from __future__ import annotations

import uuid
from dataclasses import asdict
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.deps import get_screening_repository, get_screening_service
from app.schemas.conflict import ConflictList, ConflictOut, ResolveConflictRequest
from app.schemas.screening import TransitionOut
from app.services.screening_repository import ScreeningRepository
from app.services.screening_service import ScreeningService
from app.services.screening_types import ConflictStatus

router = APIRouter()


@router.get("/{project_id}/conflicts", response_model=ConflictList)
async def list_conflicts(
    project_id: uuid.UUID,
    repository: Annotated[ScreeningRepository, Depends(get_screening_repository)],
    status: Optional[ConflictStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    conflicts, total = await repository.list_conflicts(project_id, status=status, skip=skip, limit=limit)
    return ConflictList(
        conflicts=[ConflictOut.model_validate(asdict(c)) for c in conflicts],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{project_id}/conflicts/{conflict_id}", response_model=ConflictOut)
async def get_conflict(
    project_id: uuid.UUID,
    conflict_id: uuid.UUID,
    repository: Annotated[ScreeningRepository, Depends(get_screening_repository)],
):
    conflict = await repository.get_conflict(conflict_id)
    if conflict is None or conflict.project_id != project_id:
        raise HTTPException(status_code=404, detail="Conflict not found")
    return ConflictOut.model_validate(asdict(conflict))


@router.post("/{project_id}/conflicts/{conflict_id}/resolve", response_model=TransitionOut)
async def resolve_conflict(
    project_id: uuid.UUID,
    conflict_id: uuid.UUID,
    body: ResolveConflictRequest,
    service: Annotated[ScreeningService, Depends(get_screening_service)],
):
    result = await service.resolve_conflict(
        conflict_id=conflict_id,
        resolver_id=body.resolver_id,
        final_decision=body.final_decision,
        reasoning=body.reasoning,
        project_id=project_id,
    )
    return TransitionOut.model_validate(result)
