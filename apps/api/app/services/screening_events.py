"""
Domain events raised by the screening workflow.

The default publisher appends each event to the project's activity log;
real-time fan-out (SSE, webhooks) subscribes to that log elsewhere.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

from app.services.screening_repository import ScreeningRepository
from app.services.screening_types import (
    PhaseTrigger,
    ScreeningDecision,
    ScreeningPhase,
    StateTransitionResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionMadeEvent:
    study_id: uuid.UUID
    project_id: uuid.UUID
    reviewer_id: str
    phase: ScreeningPhase
    decision: ScreeningDecision
    result: StateTransitionResult


@dataclass(frozen=True)
class ConflictCreatedEvent:
    study_id: uuid.UUID
    project_id: uuid.UUID
    phase: ScreeningPhase
    decisions: List[Dict[str, Any]]


@dataclass(frozen=True)
class PhaseAdvancedEvent:
    study_id: uuid.UUID
    project_id: uuid.UUID
    from_phase: ScreeningPhase
    to_phase: ScreeningPhase
    triggered_by: PhaseTrigger


class ScreeningEventPublisher(Protocol):
    async def publish_decision_made(self, event: DecisionMadeEvent) -> None: ...

    async def publish_conflict_created(self, event: ConflictCreatedEvent) -> None: ...

    async def publish_phase_advanced(self, event: PhaseAdvancedEvent) -> None: ...


class ActivityLogEventPublisher:
    def __init__(self, repository: ScreeningRepository) -> None:
        self.repository = repository

    async def publish_decision_made(self, event: DecisionMadeEvent) -> None:
        async with self.repository.transaction():
            await self.repository.record_activity(
                project_id=event.project_id,
                user_id=event.reviewer_id,
                activity_type="SCREENING_DECISION",
                description=f"Made {event.decision.value} decision",
                details={
                    "project_work_id": str(event.study_id),
                    "phase": event.phase.value,
                    "decision": event.decision.value,
                    "new_status": event.result.new_status.value,
                },
            )

    async def publish_conflict_created(self, event: ConflictCreatedEvent) -> None:
        logger.info(
            "Conflict created for study %s in %s (%d decisions)",
            event.study_id, event.phase.value, len(event.decisions),
        )
        async with self.repository.transaction():
            await self.repository.record_activity(
                project_id=event.project_id,
                activity_type="CONFLICT_CREATED",
                description=f"Reviewers disagreed during {event.phase.value} screening",
                details={
                    "project_work_id": str(event.study_id),
                    "phase": event.phase.value,
                    "decisions": event.decisions,
                },
            )

    async def publish_phase_advanced(self, event: PhaseAdvancedEvent) -> None:
        logger.info(
            "Study %s advanced %s -> %s (%s)",
            event.study_id, event.from_phase.value, event.to_phase.value, event.triggered_by.value,
        )
        async with self.repository.transaction():
            await self.repository.record_activity(
                project_id=event.project_id,
                activity_type="PHASE_ADVANCED",
                description=f"Study advanced from {event.from_phase.value} to {event.to_phase.value}",
                details={
                    "project_work_id": str(event.study_id),
                    "from_phase": event.from_phase.value,
                    "to_phase": event.to_phase.value,
                    "triggered_by": event.triggered_by.value,
                },
            )
