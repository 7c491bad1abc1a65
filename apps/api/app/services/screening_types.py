"""
Value types for the screening workflow.

Pure data contracts shared by the state machine, the orchestration service
and the repository adapters. No I/O, no behaviour beyond lookups.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ScreeningPhase(str, Enum):
    TITLE_ABSTRACT = "TITLE_ABSTRACT"
    FULL_TEXT = "FULL_TEXT"
    FINAL = "FINAL"


class ScreeningDecision(str, Enum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"
    MAYBE = "MAYBE"


class ProjectWorkStatus(str, Enum):
    PENDING = "PENDING"
    SCREENING = "SCREENING"
    CONFLICT = "CONFLICT"
    INCLUDED = "INCLUDED"
    EXCLUDED = "EXCLUDED"
    MAYBE = "MAYBE"


class ConflictStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class IngestionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConsensusPolicy(str, Enum):
    # Any disagreement among the required reviewers is a conflict
    UNANIMOUS = "unanimous"
    # A decision held by more than half of the votes wins outright
    MAJORITY = "majority"


class DecisionSource(str, Enum):
    USER_DECISION = "user_decision"
    BATCH_OPERATION = "batch_operation"
    CONFLICT_RESOLUTION = "conflict_resolution"
    AI_SUGGESTION = "ai_suggestion"
    MANUAL_OVERRIDE = "manual_override"


class IngestionSource(str, Enum):
    SCREENING_DECISION = "screening_decision"
    CONFLICT_RESOLUTION = "conflict_resolution"
    MISSING_PDF_AUTOADVANCE = "missing_pdf_autoadvance"


class PhaseTrigger(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    CONFLICT_RESOLUTION = "conflict_resolution"


PHASE_ORDER: Tuple[ScreeningPhase, ...] = (
    ScreeningPhase.TITLE_ABSTRACT,
    ScreeningPhase.FULL_TEXT,
    ScreeningPhase.FINAL,
)

PHASE_TRANSITIONS: Dict[ScreeningPhase, Optional[ScreeningPhase]] = {
    ScreeningPhase.TITLE_ABSTRACT: ScreeningPhase.FULL_TEXT,
    ScreeningPhase.FULL_TEXT: ScreeningPhase.FINAL,
    ScreeningPhase.FINAL: None,
}

DECISION_STATUS_MAP: Dict[ScreeningDecision, ProjectWorkStatus] = {
    ScreeningDecision.INCLUDE: ProjectWorkStatus.INCLUDED,
    ScreeningDecision.EXCLUDE: ProjectWorkStatus.EXCLUDED,
    ScreeningDecision.MAYBE: ProjectWorkStatus.MAYBE,
}

TERMINAL_STATUSES = frozenset(DECISION_STATUS_MAP.values())


def next_phase(phase: ScreeningPhase) -> Optional[ScreeningPhase]:
    return PHASE_TRANSITIONS[ScreeningPhase(phase)]


def status_for_decision(decision: ScreeningDecision) -> ProjectWorkStatus:
    return DECISION_STATUS_MAP[ScreeningDecision(decision)]


@dataclass(frozen=True)
class ScreeningConfig:
    require_dual_screening: bool
    blind_screening: bool = False
    consensus_policy: ConsensusPolicy = ConsensusPolicy.UNANIMOUS

    @property
    def reviewers_needed(self) -> int:
        return 2 if self.require_dual_screening else 1


@dataclass(frozen=True)
class DecisionRecord:
    id: str
    reviewer_id: str
    decision: ScreeningDecision
    created_at: datetime
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class DecisionContext:
    project_work_id: uuid.UUID
    project_id: uuid.UUID
    work_id: uuid.UUID
    phase: ScreeningPhase
    decision: ScreeningDecision
    config: ScreeningConfig
    existing_decisions: Tuple[DecisionRecord, ...]
    source: DecisionSource = DecisionSource.USER_DECISION


@dataclass(frozen=True)
class ConflictData:
    project_id: uuid.UUID
    project_work_id: uuid.UUID
    phase: ScreeningPhase
    decisions: List[Dict[str, Any]]


@dataclass(frozen=True)
class StateTransitionResult:
    new_status: ProjectWorkStatus
    new_phase: ScreeningPhase
    final_decision: Optional[ScreeningDecision]
    conflict_created: bool
    should_advance_phase: bool
    should_trigger_ingestion: bool
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProjectWorkData:
    """Snapshot of a study-under-review as loaded by the repository."""

    id: uuid.UUID
    project_id: uuid.UUID
    work_id: uuid.UUID
    phase: ScreeningPhase
    status: ProjectWorkStatus
    final_decision: Optional[ScreeningDecision] = None
    pdf_key: Optional[str] = None
    pdf_uploaded_at: Optional[datetime] = None
    ingestion_status: Optional[IngestionStatus] = None
    url: Optional[str] = None

    @property
    def pdf_available(self) -> bool:
        return bool(self.pdf_key)

    @property
    def has_source_document(self) -> bool:
        return self.pdf_available or bool(self.url)


@dataclass(frozen=True)
class ConflictRecord:
    id: uuid.UUID
    project_id: uuid.UUID
    project_work_id: uuid.UUID
    phase: ScreeningPhase
    status: ConflictStatus
    decisions: List[Dict[str, Any]]
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class NewDecision:
    project_work_id: uuid.UUID
    reviewer_id: str
    phase: ScreeningPhase
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    exclusion_reason: Optional[str] = None
    confidence: Optional[int] = None
    time_spent_ms: Optional[int] = None
    followed_ai: Optional[bool] = None
