"""
Project-level phase operations: repair pass, bulk advancement, progress.

Advancement is all-or-nothing. The repair pass, the prerequisite checks and
the bulk move run in one transaction, so a blocking prerequisite leaves the
project exactly as it was.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.core.errors import PrerequisiteError, ValidationError
from app.services.screening_repository import ScreeningRepository
from app.services.screening_types import (
    ConflictData,
    ConflictStatus,
    PhaseTrigger,
    ProjectWorkStatus,
    ScreeningConfig,
    ScreeningDecision,
    ScreeningPhase,
    status_for_decision,
)
from app.services.state_machine import (
    calculate_phase_completion,
    decision_snapshot,
    find_consensus,
    require_next_phase,
    validate_phase_advancement,
)

logger = logging.getLogger(__name__)


@dataclass
class RepairOutcome:
    repaired: int = 0
    conflicts: int = 0
    total_checked: int = 0


@dataclass
class AdvancePhaseResult:
    advanced_count: int
    from_phase: ScreeningPhase
    to_phase: ScreeningPhase
    repaired: int
    conflicts: int


async def _resolved_decision(
    repository: ScreeningRepository, study_id: uuid.UUID, phase: ScreeningPhase
) -> Optional[ScreeningDecision]:
    """A tie-break already recorded for this study and phase overrides the votes."""
    conflict = await repository.get_study_conflict(study_id, phase)
    if conflict is None or conflict.status != ConflictStatus.RESOLVED or not conflict.resolution:
        return None
    return ScreeningDecision(conflict.resolution["final_decision"])


async def _repair_studies(
    repository: ScreeningRepository,
    project_id: uuid.UUID,
    phase: ScreeningPhase,
    config: ScreeningConfig,
) -> RepairOutcome:
    """
    Materialise terminal statuses the decision history already implies.

    Studies in PENDING/SCREENING holding at least the required number of
    votes are finalised with the project's consensus policy, or with the
    tie-break already recorded for them. Those without either become
    conflicts and stay out of this advancement.
    """
    outcome = RepairOutcome()
    for study, decisions in await repository.get_unfinalized_with_decisions(project_id, phase):
        outcome.total_checked += 1
        if len(decisions) < config.reviewers_needed:
            continue

        consensus = find_consensus(decisions, config)
        if consensus is None:
            consensus = await _resolved_decision(repository, study.id, phase)
        if consensus is None:
            logger.warning("Study %s has no consensus in %s; marking as conflict", study.id, phase.value)
            await repository.update_study_status(study.id, ProjectWorkStatus.CONFLICT, phase, None)
            await repository.upsert_conflict(
                ConflictData(
                    project_id=project_id,
                    project_work_id=study.id,
                    phase=phase,
                    decisions=decision_snapshot(decisions, with_reasoning=True),
                )
            )
            outcome.conflicts += 1
            continue

        await repository.update_study_status(study.id, status_for_decision(consensus), phase, consensus)
        outcome.repaired += 1

    return outcome


async def repair_phase(
    repository: ScreeningRepository,
    project_id: uuid.UUID,
    phase: ScreeningPhase,
    user_id: Optional[str] = None,
) -> RepairOutcome:
    """Run the repair pass on its own, without advancing anything."""
    phase = ScreeningPhase(phase)
    config = await repository.get_project_config(project_id)
    async with repository.transaction():
        outcome = await _repair_studies(repository, project_id, phase, config)
        if outcome.repaired or outcome.conflicts:
            await repository.record_activity(
                project_id=project_id,
                user_id=user_id,
                activity_type="SCREENING_REPAIRED",
                description=f"Repaired {outcome.repaired} stuck studies in {phase.value}",
                details={
                    "phase": phase.value,
                    "repaired": outcome.repaired,
                    "conflicts": outcome.conflicts,
                    "total_checked": outcome.total_checked,
                },
            )
    return outcome


async def advance_phase(
    repository: ScreeningRepository,
    project_id: uuid.UUID,
    current_phase: ScreeningPhase,
    user_id: Optional[str] = None,
) -> AdvancePhaseResult:
    """
    Move every INCLUDED study of current_phase into the next phase.

    Raises ValidationError when there is no next phase or nothing to
    advance, and PrerequisiteError when studies entering FULL_TEXT lack
    both a PDF and a source URL.
    """
    current_phase = ScreeningPhase(current_phase)
    target = require_next_phase(current_phase)
    config = await repository.get_project_config(project_id)

    async with repository.transaction():
        outcome = await _repair_studies(repository, project_id, current_phase, config)

        if target == ScreeningPhase.FULL_TEXT:
            missing = await repository.count_included_missing_source(project_id, current_phase)
            if missing > 0:
                raise PrerequisiteError(
                    missing,
                    f"Cannot advance phase: {missing} included studies are missing PDFs or URLs. "
                    "Retrieve PDFs for these studies before advancing to Full Text.",
                )

        count = await repository.advance_included(project_id, current_phase, target)
        if count == 0:
            raise ValidationError(
                "No included studies found to advance. Ensure studies are marked as INCLUDED."
            )

        await repository.record_activity(
            project_id=project_id,
            user_id=user_id,
            activity_type="PHASE_ADVANCED",
            description=f"Advanced {count} studies from {current_phase.value} to {target.value}",
            details={
                "from_phase": current_phase.value,
                "to_phase": target.value,
                "count": count,
                "triggered_by": PhaseTrigger.MANUAL.value,
                "repaired": outcome.repaired,
            },
        )

    logger.info("Project %s: advanced %d studies %s -> %s", project_id, count, current_phase.value, target.value)
    return AdvancePhaseResult(
        advanced_count=count,
        from_phase=current_phase,
        to_phase=target,
        repaired=outcome.repaired,
        conflicts=outcome.conflicts,
    )


async def phase_progress(
    repository: ScreeningRepository,
    project_id: uuid.UUID,
    phase: ScreeningPhase,
) -> Dict[str, Any]:
    """
    Status counts for one phase plus completion and advancement readiness.

    Studies that already hold the required votes but still sit in PENDING or
    SCREENING (a held PDF gate, an interrupted write) are finalised by the
    repair pass at advancement time, so they are reported as awaiting repair
    rather than as blockers.
    """
    phase = ScreeningPhase(phase)
    config = await repository.get_project_config(project_id)
    counts = await repository.phase_status_counts(project_id, phase)
    open_conflicts = await repository.count_open_conflicts(project_id, phase)
    by_study = await repository.decisions_by_study(project_id, phase, current_only=True)

    repairable = {ProjectWorkStatus.PENDING: 0, ProjectWorkStatus.SCREENING: 0}
    for study, decisions in await repository.get_unfinalized_with_decisions(project_id, phase):
        if len(decisions) >= config.reviewers_needed:
            repairable[ProjectWorkStatus(study.status)] += 1

    total = sum(counts.values())
    with_required = sum(1 for d in by_study.values() if len(d) >= config.reviewers_needed)
    can_advance, errors = validate_phase_advancement(
        current_phase=phase,
        pending_count=counts.get(ProjectWorkStatus.PENDING.value, 0) - repairable[ProjectWorkStatus.PENDING],
        unresolved_conflicts=open_conflicts,
        screening_count=counts.get(ProjectWorkStatus.SCREENING.value, 0) - repairable[ProjectWorkStatus.SCREENING],
    )
    return {
        "phase": phase.value,
        "total": total,
        "status_counts": {s.value: counts.get(s.value, 0) for s in ProjectWorkStatus},
        "unresolved_conflicts": open_conflicts,
        "awaiting_repair": sum(repairable.values()),
        "completion": calculate_phase_completion(total, with_required, open_conflicts),
        "can_advance": can_advance,
        "advance_blockers": errors,
    }
