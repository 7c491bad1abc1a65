from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.core.config import settings
from app.services.screening_types import (
    ProjectWorkStatus,
    ScreeningDecision,
    ScreeningPhase,
)


class DecisionSubmit(BaseModel):
    project_work_id: uuid.UUID
    reviewer_id: str = Field(min_length=1, max_length=255)
    phase: ScreeningPhase
    decision: ScreeningDecision
    reasoning: Optional[str] = Field(default=None, max_length=2000)
    exclusion_reason: Optional[str] = Field(default=None, max_length=500)
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    time_spent_ms: Optional[int] = Field(default=None, gt=0)
    followed_ai: Optional[bool] = None

    @model_validator(mode="after")
    def _exclusion_reason_required(self) -> "DecisionSubmit":
        if self.decision == ScreeningDecision.EXCLUDE and not (self.exclusion_reason or "").strip():
            raise ValueError("exclusion_reason is required when excluding a study")
        return self


class BatchDecisionRequest(BaseModel):
    project_work_ids: List[uuid.UUID] = Field(min_length=1, max_length=settings.batch_decision_limit)
    reviewer_id: str = Field(min_length=1, max_length=255)
    phase: ScreeningPhase
    decision: ScreeningDecision
    reasoning: Optional[str] = Field(default=None, max_length=2000)


class TransitionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    new_status: ProjectWorkStatus
    new_phase: ScreeningPhase
    final_decision: Optional[ScreeningDecision] = None
    conflict_created: bool
    should_advance_phase: bool
    should_trigger_ingestion: bool
    metadata: Dict[str, Any] = {}


class BatchDecisionResponse(BaseModel):
    processed: int
    failed: int
    errors: List[Dict[str, Any]]


class DecisionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reviewer_id: str
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    created_at: datetime


class StudyDecisionsOut(BaseModel):
    project_work_id: uuid.UUID
    phase: ScreeningPhase
    total: int                             # votes cast, including hidden ones
    hidden: int
    decisions: List[DecisionOut]


class AdvancePhaseRequest(BaseModel):
    current_phase: ScreeningPhase
    user_id: Optional[str] = None


class AdvancePhaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    advanced_count: int
    from_phase: ScreeningPhase
    to_phase: ScreeningPhase
    repaired: int
    conflicts: int


class RepairRequest(BaseModel):
    phase: ScreeningPhase
    user_id: Optional[str] = None


class RepairResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    repaired: int
    conflicts: int
    total_checked: int


class PhaseCompletion(BaseModel):
    complete: bool
    percentage: float
    blockers: List[str]


class PhaseProgressOut(BaseModel):
    phase: ScreeningPhase
    total: int
    status_counts: Dict[str, int]
    unresolved_conflicts: int
    awaiting_repair: int = 0
    completion: PhaseCompletion
    can_advance: bool
    advance_blockers: List[str]


class KappaInterpretation(BaseModel):
    level: str
    description: str


class AgreementOut(BaseModel):
    phase: ScreeningPhase
    pairs: int
    agreement_rate: Optional[float] = None
    cohen_kappa: Optional[float] = None
    interpretation: KappaInterpretation
