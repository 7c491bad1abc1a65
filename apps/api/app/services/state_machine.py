"""
Screening state machine and decision validator.

Pure rule-based logic: no DB, no queue, no clock. Given the ordered decision
history of a study in one phase plus the project's screening config, decide
whether the study is still being screened, in conflict, finalised, or
promoted to the next phase.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.core.errors import ValidationError
from app.services.screening_types import (
    ConsensusPolicy,
    DecisionContext,
    DecisionRecord,
    ProjectWorkStatus,
    ScreeningConfig,
    ScreeningDecision,
    ScreeningPhase,
    StateTransitionResult,
    next_phase,
    status_for_decision,
)


def require_next_phase(phase: ScreeningPhase) -> ScreeningPhase:
    target = next_phase(phase)
    if target is None:
        raise ValidationError(f"No next phase available after {ScreeningPhase(phase).value}")
    return target


def should_auto_advance(phase: ScreeningPhase, decision: ScreeningDecision) -> bool:
    """Only an INCLUDE at title/abstract promotes a study automatically."""
    return phase == ScreeningPhase.TITLE_ABSTRACT and decision == ScreeningDecision.INCLUDE


def decision_snapshot(decisions: Sequence[DecisionRecord], with_reasoning: bool = False) -> List[Dict[str, Any]]:
    snapshot = []
    for d in decisions:
        item: Dict[str, Any] = {"reviewer_id": d.reviewer_id, "decision": ScreeningDecision(d.decision).value}
        if with_reasoning:
            item["reasoning"] = d.reasoning
        snapshot.append(item)
    return snapshot


def find_consensus(
    decisions: Sequence[DecisionRecord],
    config: ScreeningConfig,
) -> Optional[ScreeningDecision]:
    """
    Return the agreed decision, or None when the votes conflict.

    Decisions must be ordered by created_at. Single screening never
    conflicts: the latest decision stands.
    """
    if not decisions:
        return None
    if not config.require_dual_screening:
        return ScreeningDecision(decisions[-1].decision)

    values = [ScreeningDecision(d.decision) for d in decisions]
    if config.consensus_policy == ConsensusPolicy.MAJORITY:
        for value, count in Counter(values).items():
            if count > len(values) / 2:
                return value
        return None

    if len(set(values)) == 1:
        return values[0]
    return None


def calculate_next_state(context: DecisionContext) -> StateTransitionResult:
    decisions = list(context.existing_decisions)
    config = context.config

    # 1. Waiting for reviewers
    if len(decisions) < config.reviewers_needed:
        return StateTransitionResult(
            new_status=ProjectWorkStatus.SCREENING,
            new_phase=context.phase,
            final_decision=None,
            conflict_created=False,
            should_advance_phase=False,
            should_trigger_ingestion=False,
            metadata={
                "reason": "waiting_for_reviewers",
                "current_decisions": len(decisions),
                "required": config.reviewers_needed,
            },
        )

    # 2. Conflict
    consensus = find_consensus(decisions, config)
    if consensus is None:
        return StateTransitionResult(
            new_status=ProjectWorkStatus.CONFLICT,
            new_phase=context.phase,
            final_decision=None,
            conflict_created=True,
            should_advance_phase=False,
            should_trigger_ingestion=False,
            metadata={
                "reason": "conflict_detected",
                "policy": config.consensus_policy.value,
                "decisions": decision_snapshot(decisions),
            },
        )

    # 3. Consensus
    advance = should_auto_advance(context.phase, consensus)
    if advance:
        new_phase = require_next_phase(context.phase)
        new_status = ProjectWorkStatus.PENDING
        final_decision = None
    else:
        new_phase = context.phase
        new_status = status_for_decision(consensus)
        final_decision = consensus

    return StateTransitionResult(
        new_status=new_status,
        new_phase=new_phase,
        final_decision=final_decision,
        conflict_created=False,
        should_advance_phase=advance,
        # A phase promotion never ingests; the later phase's INCLUDE does
        should_trigger_ingestion=consensus == ScreeningDecision.INCLUDE and not advance,
        metadata={
            "reason": "consensus_reached",
            "consensus_decision": consensus.value,
            "auto_advanced": advance,
        },
    )


def validate_decision(
    reviewer_id: str,
    existing_decisions: Sequence[DecisionRecord],
    config: ScreeningConfig,
) -> Tuple[bool, Optional[str]]:
    """
    Fast-path check before a vote is stored.

    The unique index on (project_work_id, reviewer_id, phase) is what
    actually stops concurrent duplicates.
    """
    if any(d.reviewer_id == reviewer_id for d in existing_decisions):
        return False, "You have already screened this study for this phase"
    if len(existing_decisions) >= config.reviewers_needed:
        return False, "This study has already received the required number of reviews"
    return True, None


def visible_decisions(
    decisions: Sequence[DecisionRecord],
    viewer_id: str,
    config: ScreeningConfig,
) -> List[DecisionRecord]:
    """Under blind screening a reviewer only sees their own vote until the quota is met."""
    if not config.blind_screening or len(decisions) >= config.reviewers_needed:
        return list(decisions)
    return [d for d in decisions if d.reviewer_id == viewer_id]


def validate_phase_advancement(
    current_phase: ScreeningPhase,
    pending_count: int,
    unresolved_conflicts: int,
    screening_count: int,
) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    if next_phase(current_phase) is None:
        errors.append("Cannot advance: already at final phase")
    if pending_count > 0:
        errors.append(f"Cannot advance: {pending_count} studies still pending")
    if unresolved_conflicts > 0:
        errors.append(f"Cannot advance: {unresolved_conflicts} unresolved conflicts")
    if screening_count > 0:
        errors.append(f"Cannot advance: {screening_count} studies awaiting second reviewer")
    return not errors, errors


def calculate_phase_completion(
    total_studies: int,
    studies_with_required_decisions: int,
    unresolved_conflicts: int,
) -> Dict[str, Any]:
    blockers: List[str] = []
    if unresolved_conflicts > 0:
        blockers.append(f"{unresolved_conflicts} unresolved conflicts")
    incomplete = total_studies - studies_with_required_decisions
    if incomplete > 0:
        blockers.append(f"{incomplete} studies need more reviews")

    percentage = (
        round(studies_with_required_decisions / total_studies * 100)
        if total_studies > 0
        else 100
    )
    return {
        "complete": not blockers and total_studies > 0,
        "percentage": percentage,
        "blockers": blockers,
    }
