"""
Tests for project-level phase operations.

Covers:
- Manual advancement of INCLUDED studies, with audit activity
- Missing-document prerequisite blocks the whole batch (nothing moves)
- Repair pass finalises stuck studies and flags hidden conflicts
- Repair honours an existing tie-break
- Progress read model
"""
from __future__ import annotations

import uuid

import pytest

from app.core.errors import NotFoundError, PrerequisiteError, ValidationError
from app.services.phase_advancement import advance_phase, phase_progress, repair_phase
from app.services.screening_types import (
    ConflictStatus,
    ProjectWorkStatus,
    ScreeningDecision,
    ScreeningPhase,
)

pytestmark = pytest.mark.asyncio(loop_scope="session")

INCLUDE = ScreeningDecision.INCLUDE
EXCLUDE = ScreeningDecision.EXCLUDE
TA = ScreeningPhase.TITLE_ABSTRACT
FT = ScreeningPhase.FULL_TEXT
FINAL = ScreeningPhase.FINAL


async def test_advance_moves_included_studies(repo):
    project_id = repo.add_project()
    included = repo.add_study(project_id, phase=FT, status=ProjectWorkStatus.INCLUDED, final_decision=INCLUDE)
    excluded = repo.add_study(project_id, phase=FT, status=ProjectWorkStatus.EXCLUDED, final_decision=EXCLUDE)

    result = await advance_phase(repo, project_id, FT, user_id="lead")

    assert result.advanced_count == 1
    assert result.from_phase == FT
    assert result.to_phase == FINAL
    moved = repo.study(included.id)
    assert moved.phase == FINAL
    assert moved.status == ProjectWorkStatus.PENDING
    assert moved.final_decision is None
    assert repo.study(excluded.id).phase == FT

    [activity] = [a for a in repo.activities if a["type"] == "PHASE_ADVANCED"]
    assert activity["user_id"] == "lead"
    assert activity["details"]["count"] == 1
    assert activity["details"]["triggered_by"] == "manual"


async def test_advance_to_full_text_blocked_by_missing_pdf(repo):
    project_id = repo.add_project()
    repo.add_study(project_id, status=ProjectWorkStatus.INCLUDED, pdf_key="pdfs/ok.pdf")
    repo.add_study(project_id, status=ProjectWorkStatus.INCLUDED, pdf_key=None, url=None)

    with pytest.raises(PrerequisiteError) as exc_info:
        await advance_phase(repo, project_id, TA)

    assert exc_info.value.blocking_count == 1
    assert "1 included studies" in str(exc_info.value)
    assert all(s.phase == TA for s in repo.studies.values())
    assert repo.activities == []


async def test_advance_to_full_text_accepts_url_as_source(repo):
    project_id = repo.add_project()
    repo.add_study(project_id, status=ProjectWorkStatus.INCLUDED, pdf_key=None, url="https://example.org/a")

    result = await advance_phase(repo, project_id, TA)

    assert result.advanced_count == 1


async def test_advance_with_nothing_included_fails(repo):
    project_id = repo.add_project()
    repo.add_study(project_id, status=ProjectWorkStatus.EXCLUDED)

    with pytest.raises(ValidationError, match="No included studies"):
        await advance_phase(repo, project_id, TA)


async def test_advance_from_final_fails(repo):
    project_id = repo.add_project()
    with pytest.raises(ValidationError, match="No next phase"):
        await advance_phase(repo, project_id, FINAL)


async def test_advance_unknown_project(repo):
    with pytest.raises(NotFoundError):
        await advance_phase(repo, uuid.uuid4(), TA)


async def test_advance_repairs_stuck_studies_first(repo):
    project_id = repo.add_project()
    # Two agreeing votes but the status update never landed
    stuck = repo.add_study(project_id, phase=FT, status=ProjectWorkStatus.SCREENING)
    repo.seed_decision(stuck.id, "alice", INCLUDE)
    repo.seed_decision(stuck.id, "bob", INCLUDE)

    result = await advance_phase(repo, project_id, FT)

    assert result.repaired == 1
    assert result.advanced_count == 1
    assert repo.study(stuck.id).phase == FINAL


async def test_failed_advance_rolls_back_repairs(repo):
    project_id = repo.add_project()
    stuck = repo.add_study(project_id, status=ProjectWorkStatus.SCREENING, pdf_key=None, url=None)
    repo.seed_decision(stuck.id, "alice", INCLUDE)
    repo.seed_decision(stuck.id, "bob", INCLUDE)

    with pytest.raises(PrerequisiteError):
        await advance_phase(repo, project_id, TA)

    assert repo.study(stuck.id).status == ProjectWorkStatus.SCREENING


async def test_repair_flags_hidden_conflicts(repo):
    project_id = repo.add_project()
    stuck = repo.add_study(project_id, status=ProjectWorkStatus.SCREENING)
    repo.seed_decision(stuck.id, "alice", INCLUDE)
    repo.seed_decision(stuck.id, "bob", EXCLUDE)
    waiting = repo.add_study(project_id, status=ProjectWorkStatus.SCREENING)
    repo.seed_decision(waiting.id, "alice", INCLUDE)

    outcome = await repair_phase(repo, project_id, TA, user_id="lead")

    assert outcome.conflicts == 1
    assert outcome.repaired == 0
    assert outcome.total_checked == 2
    assert repo.study(stuck.id).status == ProjectWorkStatus.CONFLICT
    assert repo.conflict_for(stuck.id, TA).status == ConflictStatus.PENDING
    assert repo.study(waiting.id).status == ProjectWorkStatus.SCREENING
    assert "SCREENING_REPAIRED" in repo.activity_types()


async def test_repair_uses_existing_tie_break(repo, service):
    project_id = repo.add_project()
    study = repo.add_study(project_id, pdf_key=None, url="https://example.org/a")
    repo.seed_decision(study.id, "alice", INCLUDE)
    repo.seed_decision(study.id, "bob", EXCLUDE)
    await repair_phase(repo, project_id, TA)
    conflict = repo.conflict_for(study.id, TA)

    # Missing PDF keeps the resolved study PENDING in title/abstract
    await service.resolve_conflict(conflict.id, "lead", INCLUDE)
    assert repo.study(study.id).status == ProjectWorkStatus.PENDING

    outcome = await repair_phase(repo, project_id, TA)

    assert outcome.repaired == 1
    assert outcome.conflicts == 0
    assert repo.study(study.id).status == ProjectWorkStatus.INCLUDED
    assert repo.conflicts[conflict.id].status == ConflictStatus.RESOLVED


async def test_repair_without_stuck_studies_records_nothing(repo):
    project_id = repo.add_project()
    repo.add_study(project_id)

    outcome = await repair_phase(repo, project_id, TA)

    assert outcome.repaired == 0
    assert repo.activities == []


async def test_phase_progress(repo):
    project_id = repo.add_project()
    done = repo.add_study(project_id, status=ProjectWorkStatus.EXCLUDED, final_decision=EXCLUDE)
    repo.seed_decision(done.id, "alice", EXCLUDE)
    repo.seed_decision(done.id, "bob", EXCLUDE)
    half = repo.add_study(project_id, status=ProjectWorkStatus.SCREENING)
    repo.seed_decision(half.id, "alice", INCLUDE)
    repo.add_study(project_id)

    progress = await phase_progress(repo, project_id, TA)

    assert progress["total"] == 3
    assert progress["status_counts"]["EXCLUDED"] == 1
    assert progress["status_counts"]["SCREENING"] == 1
    assert progress["status_counts"]["PENDING"] == 1
    assert progress["completion"]["percentage"] == 33
    assert progress["can_advance"] is False
    assert len(progress["advance_blockers"]) == 2


async def test_phase_progress_counts_held_studies_as_awaiting_repair(repo):
    project_id = repo.add_project()
    held = repo.add_study(project_id, pdf_key=None, url="https://example.org/paper")
    repo.seed_decision(held.id, "alice", INCLUDE)
    repo.seed_decision(held.id, "bob", INCLUDE)
    stuck = repo.add_study(project_id, status=ProjectWorkStatus.SCREENING)
    repo.seed_decision(stuck.id, "alice", EXCLUDE)
    repo.seed_decision(stuck.id, "bob", EXCLUDE)
    waiting = repo.add_study(project_id, status=ProjectWorkStatus.SCREENING)
    repo.seed_decision(waiting.id, "alice", INCLUDE)

    progress = await phase_progress(repo, project_id, TA)

    assert progress["status_counts"]["PENDING"] == 1
    assert progress["status_counts"]["SCREENING"] == 2
    assert progress["awaiting_repair"] == 2
    assert progress["advance_blockers"] == ["Cannot advance: 1 studies awaiting second reviewer"]


async def test_phase_progress_ready_once_only_repairable_studies_remain(repo):
    project_id = repo.add_project()
    held = repo.add_study(project_id, pdf_key=None, url="https://example.org/paper")
    repo.seed_decision(held.id, "alice", INCLUDE)
    repo.seed_decision(held.id, "bob", INCLUDE)

    progress = await phase_progress(repo, project_id, TA)

    assert progress["can_advance"] is True
    assert progress["advance_blockers"] == []

    result = await advance_phase(repo, project_id, TA)

    assert result.repaired == 1
    assert result.advanced_count == 1
    assert repo.study(held.id).phase == FT
