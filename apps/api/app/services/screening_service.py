"""
Screening orchestration service.

Runs one reviewer decision (or one conflict tie-break) end to end:

1. Load the study, its project's screening config and the phase's decisions
2. Validate the vote (fast path; the unique index is the real guard)
3. Persist the decision
4. Run the pure state machine on the updated history
5. Apply the transition in the same transaction (status, phase, conflict)
6. After commit: request ingestion (best effort) and publish domain events

A decision is the durable fact; everything else is a projection of it that
the phase-advancement repair pass can rebuild.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.core.errors import (
    AlreadyResolvedError,
    ConflictingWriteError,
    NotFoundError,
    ValidationError,
)
from app.services.ingestion_queue import IngestionJob, IngestionQueue, pdf_version
from app.services.screening_events import (
    ConflictCreatedEvent,
    DecisionMadeEvent,
    PhaseAdvancedEvent,
    ScreeningEventPublisher,
)
from app.services.screening_repository import ScreeningRepository
from app.services.screening_types import (
    ConflictData,
    ConflictStatus,
    DecisionContext,
    DecisionRecord,
    DecisionSource,
    IngestionSource,
    IngestionStatus,
    NewDecision,
    PhaseTrigger,
    ProjectWorkData,
    ProjectWorkStatus,
    ScreeningDecision,
    ScreeningPhase,
    StateTransitionResult,
    status_for_decision,
)
from app.services.state_machine import (
    calculate_next_state,
    decision_snapshot,
    require_next_phase,
    should_auto_advance,
    validate_decision,
)

logger = logging.getLogger(__name__)

DUPLICATE_VOTE_MESSAGE = "You have already screened this study for this phase"

# Ingestion already running or done for this study; never queue again
_INGESTION_SETTLED = {IngestionStatus.PROCESSING, IngestionStatus.COMPLETED}

# Where a tie-break at these phases is a final include worth ingesting
_INGESTIBLE_PHASES = {ScreeningPhase.FULL_TEXT, ScreeningPhase.FINAL}

_DECISION_INGESTION_SOURCE = {
    DecisionSource.CONFLICT_RESOLUTION: IngestionSource.CONFLICT_RESOLUTION,
}


@dataclass
class BatchDecisionResult:
    processed: int
    failed: int
    errors: List[Dict[str, Any]]


class ScreeningService:
    def __init__(
        self,
        repository: ScreeningRepository,
        event_publisher: ScreeningEventPublisher,
        ingestion_queue: IngestionQueue,
    ) -> None:
        self.repository = repository
        self.event_publisher = event_publisher
        self.ingestion_queue = ingestion_queue

    # ── Decisions ────────────────────────────────────────────────────────

    async def process_decision(
        self,
        data: NewDecision,
        source: DecisionSource = DecisionSource.USER_DECISION,
        project_id: Optional[uuid.UUID] = None,
    ) -> StateTransitionResult:
        """
        Record one reviewer's vote and derive the study's next state.

        Raises NotFoundError for an unknown study (or one outside project_id)
        and ValidationError for a duplicate vote, a met quota, or a phase the
        study is not in.
        """
        phase = ScreeningPhase(data.phase)
        decision = ScreeningDecision(data.decision)

        try:
            async with self.repository.transaction():
                study = await self._load_study(data.project_work_id, project_id)
                if study.phase != phase:
                    raise ValidationError(
                        f"Study is in {study.phase.value} screening, not {phase.value}"
                    )
                config = await self.repository.get_project_config(study.project_id)
                existing = await self.repository.get_decisions(study.id, phase)

                valid, error = validate_decision(data.reviewer_id, existing, config)
                if not valid:
                    raise ValidationError(error)

                record = await self.repository.create_decision(data)
                decisions: Tuple[DecisionRecord, ...] = (*existing, record)
                context = DecisionContext(
                    project_work_id=study.id,
                    project_id=study.project_id,
                    work_id=study.work_id,
                    phase=phase,
                    decision=decision,
                    config=config,
                    existing_decisions=decisions,
                    source=source,
                )
                result = calculate_next_state(context)
                result, ingestion_source = await self._apply_transition(
                    study,
                    result,
                    decisions,
                    _DECISION_INGESTION_SOURCE.get(source, IngestionSource.SCREENING_DECISION),
                )
        except ConflictingWriteError as exc:
            # Lost a race against the same reviewer's concurrent submission
            logger.info("Duplicate decision rejected by storage for study %s: %s", data.project_work_id, exc)
            raise ValidationError(DUPLICATE_VOTE_MESSAGE) from exc

        if ingestion_source is not None:
            queued = await self._request_ingestion(study, ingestion_source)
            result = replace(result, metadata={**result.metadata, "ingestion_queued": queued})

        await self.event_publisher.publish_decision_made(
            DecisionMadeEvent(
                study_id=study.id,
                project_id=study.project_id,
                reviewer_id=data.reviewer_id,
                phase=phase,
                decision=decision,
                result=result,
            )
        )
        if result.conflict_created:
            await self.event_publisher.publish_conflict_created(
                ConflictCreatedEvent(
                    study_id=study.id,
                    project_id=study.project_id,
                    phase=phase,
                    decisions=decision_snapshot(decisions),
                )
            )
        if result.should_advance_phase:
            await self.event_publisher.publish_phase_advanced(
                PhaseAdvancedEvent(
                    study_id=study.id,
                    project_id=study.project_id,
                    from_phase=phase,
                    to_phase=result.new_phase,
                    triggered_by=PhaseTrigger.AUTO,
                )
            )
        return result

    async def process_batch(
        self,
        project_id: uuid.UUID,
        study_ids: Sequence[uuid.UUID],
        reviewer_id: str,
        phase: ScreeningPhase,
        decision: ScreeningDecision,
        reasoning: Optional[str] = None,
    ) -> BatchDecisionResult:
        """Apply one lead decision to many studies; each study commits on its own."""
        processed = 0
        errors: List[Dict[str, Any]] = []
        for study_id in study_ids:
            try:
                await self.process_decision(
                    NewDecision(
                        project_work_id=study_id,
                        reviewer_id=reviewer_id,
                        phase=phase,
                        decision=decision,
                        reasoning=reasoning,
                    ),
                    source=DecisionSource.BATCH_OPERATION,
                    project_id=project_id,
                )
                processed += 1
            except (NotFoundError, ValidationError) as exc:
                errors.append({"project_work_id": str(study_id), "error": str(exc)})

        return BatchDecisionResult(processed=processed, failed=len(errors), errors=errors)

    # ── Conflicts ────────────────────────────────────────────────────────

    async def resolve_conflict(
        self,
        conflict_id: uuid.UUID,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str] = None,
        project_id: Optional[uuid.UUID] = None,
    ) -> StateTransitionResult:
        """
        Break a tie with a human decision.

        Re-derives status, phase and ingestion from the resolver's decision
        rather than replaying reviewer consensus.
        """
        final_decision = ScreeningDecision(final_decision)

        async with self.repository.transaction():
            conflict = await self.repository.get_conflict(conflict_id)
            if conflict is None or (project_id is not None and conflict.project_id != project_id):
                raise NotFoundError("Conflict", conflict_id)
            if conflict.status == ConflictStatus.RESOLVED:
                raise AlreadyResolvedError(conflict_id)

            study = await self._load_study(conflict.project_work_id)
            await self.repository.create_conflict_resolution(
                conflict_id=conflict.id,
                resolver_id=resolver_id,
                final_decision=final_decision,
                reasoning=reasoning,
            )

            advance = should_auto_advance(conflict.phase, final_decision)
            if advance:
                new_phase = require_next_phase(conflict.phase)
                new_status = ProjectWorkStatus.PENDING
                resolved_decision: Optional[ScreeningDecision] = None
            else:
                new_phase = conflict.phase
                new_status = status_for_decision(final_decision)
                resolved_decision = final_decision

            result = StateTransitionResult(
                new_status=new_status,
                new_phase=new_phase,
                final_decision=resolved_decision,
                conflict_created=False,
                should_advance_phase=advance,
                should_trigger_ingestion=(
                    final_decision == ScreeningDecision.INCLUDE
                    and conflict.phase in _INGESTIBLE_PHASES
                    and not advance
                ),
                metadata={
                    "reason": "conflict_resolved",
                    "conflict_id": str(conflict.id),
                    "resolver_id": resolver_id,
                },
            )
            result, ingestion_source = await self._apply_transition(
                study, result, (), IngestionSource.CONFLICT_RESOLUTION
            )
            await self.repository.record_activity(
                project_id=conflict.project_id,
                user_id=resolver_id,
                activity_type="CONFLICT_RESOLVED",
                description=f"Resolved conflict with {final_decision.value} decision",
                details={
                    "conflict_id": str(conflict.id),
                    "project_work_id": str(conflict.project_work_id),
                    "phase": conflict.phase.value,
                    "final_decision": final_decision.value,
                    "new_status": result.new_status.value,
                },
            )

        if ingestion_source is not None:
            queued = await self._request_ingestion(study, ingestion_source)
            result = replace(result, metadata={**result.metadata, "ingestion_queued": queued})

        if result.should_advance_phase:
            await self.event_publisher.publish_phase_advanced(
                PhaseAdvancedEvent(
                    study_id=study.id,
                    project_id=study.project_id,
                    from_phase=conflict.phase,
                    to_phase=result.new_phase,
                    triggered_by=PhaseTrigger.CONFLICT_RESOLUTION,
                )
            )
        return result

    # ── Internals ────────────────────────────────────────────────────────

    async def _load_study(
        self, study_id: uuid.UUID, project_id: Optional[uuid.UUID] = None
    ) -> ProjectWorkData:
        study = await self.repository.get_study(study_id, for_update=True)
        if study is None or (project_id is not None and study.project_id != project_id):
            raise NotFoundError("Study", study_id)
        return study

    async def _apply_transition(
        self,
        study: ProjectWorkData,
        result: StateTransitionResult,
        decisions: Sequence[DecisionRecord],
        ingestion_source: IngestionSource,
    ) -> Tuple[StateTransitionResult, Optional[IngestionSource]]:
        """
        Persist the transition inside the caller's transaction.

        Returns the (possibly overridden) result and the ingestion source to
        request once the transaction has committed, if any.
        """
        requested: Optional[IngestionSource] = None

        if (
            result.should_advance_phase
            and result.new_phase == ScreeningPhase.FULL_TEXT
            and not study.pdf_available
        ):
            # Never hand reviewers a full-text task without a document
            logger.info("Study %s has no PDF; holding it in %s until one is ingested", study.id, study.phase.value)
            result = replace(
                result,
                new_status=ProjectWorkStatus.PENDING,
                new_phase=study.phase,
                final_decision=None,
                should_advance_phase=False,
                should_trigger_ingestion=False,
                metadata={**result.metadata, "auto_advanced": False, "advance_blocked": "missing_pdf"},
            )
            requested = IngestionSource.MISSING_PDF_AUTOADVANCE

        await self.repository.update_study_status(
            study.id, result.new_status, result.new_phase, result.final_decision
        )

        if result.conflict_created:
            await self.repository.upsert_conflict(
                ConflictData(
                    project_id=study.project_id,
                    project_work_id=study.id,
                    phase=study.phase,
                    decisions=decision_snapshot(decisions, with_reasoning=True),
                )
            )

        if result.should_trigger_ingestion:
            requested = ingestion_source
        return result, requested

    async def _request_ingestion(self, study: ProjectWorkData, source: IngestionSource) -> bool:
        """Best effort: a failed enqueue never undoes the screening record."""
        if study.ingestion_status in _INGESTION_SETTLED:
            logger.debug("Ingestion for study %s already %s", study.id, study.ingestion_status.value)
            return False
        if not study.has_source_document:
            logger.warning("Study %s has neither a PDF nor a source URL; ingestion skipped", study.id)
            return False

        job = IngestionJob(
            project_work_id=study.id,
            work_id=study.work_id,
            source=source,
            pdf_version=pdf_version(study.pdf_uploaded_at),
        )
        try:
            queued = await self.ingestion_queue.enqueue_ingestion(job)
        except Exception:
            logger.exception("Failed to enqueue ingestion for study %s (source=%s)", study.id, source.value)
            return False

        if queued:
            try:
                async with self.repository.transaction():
                    await self.repository.set_ingestion_status(study.id, IngestionStatus.PENDING)
            except Exception:
                logger.exception("Queued ingestion job %s but could not record PENDING status", job.job_id)
        return queued
