from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.services.screening_types import ConflictStatus, ScreeningDecision, ScreeningPhase


class ConflictResolutionOut(BaseModel):
    resolver_id: str
    final_decision: ScreeningDecision
    reasoning: Optional[str] = None
    resolved_at: Optional[datetime] = None


class ConflictOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    project_work_id: uuid.UUID
    phase: ScreeningPhase
    status: ConflictStatus
    decisions: List[Dict[str, Any]]
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[ConflictResolutionOut] = None


class ConflictList(BaseModel):
    conflicts: List[ConflictOut]
    total: int
    skip: int
    limit: int


class ResolveConflictRequest(BaseModel):
    resolver_id: str = Field(min_length=1, max_length=255)
    final_decision: ScreeningDecision
    reasoning: Optional[str] = Field(default=None, max_length=2000)
