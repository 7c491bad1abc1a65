"""create_screening_tables

Revision ID: 0001a2b3c4d5
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001a2b3c4d5"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text("gen_random_uuid()"), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True),
                     server_default=sa.text("now()"), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True),
                     server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "projects",
        _uuid_pk(),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("require_dual_screening", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("blind_screening", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("consensus_policy", sa.String(20), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_projects_created_at", "projects", ["created_at"])

    op.create_table(
        "works",
        _uuid_pk(),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("abstract", sa.Text(), nullable=True),
        sa.Column("authors", postgresql.JSONB(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("doi", sa.String(255), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_works_doi", "works", ["doi"])
    op.create_index("ix_works_created_at", "works", ["created_at"])

    op.create_table(
        "project_works",
        _uuid_pk(),
        sa.Column("project_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("work_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("works.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phase", sa.String(20), nullable=False, server_default="TITLE_ABSTRACT"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("final_decision", sa.String(20), nullable=True),
        sa.Column("pdf_key", sa.Text(), nullable=True),
        sa.Column("pdf_uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ingestion_status", sa.String(20), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("project_id", "work_id", name="uq_project_works_project_id_work_id"),
    )
    op.create_index("ix_project_works_project_id", "project_works", ["project_id"])
    op.create_index("ix_project_works_work_id", "project_works", ["work_id"])
    op.create_index("ix_project_works_created_at", "project_works", ["created_at"])
    op.create_index("ix_project_works_project_phase_status", "project_works",
                    ["project_id", "phase", "status"])

    op.create_table(
        "screening_decisions",
        _uuid_pk(),
        sa.Column("project_work_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("project_works.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reviewer_id", sa.String(255), nullable=False),
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("decision", sa.String(20), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("exclusion_reason", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=True),
        sa.Column("time_spent_ms", sa.Integer(), nullable=True),
        sa.Column("followed_ai", sa.Boolean(), nullable=True),
        sa.Column("seq", sa.BigInteger(), sa.Identity(always=True), nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("project_work_id", "reviewer_id", "phase",
                            name="uq_screening_decisions_work_reviewer_phase"),
    )
    op.create_index("ix_screening_decisions_project_work_id", "screening_decisions", ["project_work_id"])
    op.create_index("ix_screening_decisions_reviewer_id", "screening_decisions", ["reviewer_id"])
    op.create_index("ix_screening_decisions_phase", "screening_decisions", ["phase"])
    op.create_index("ix_screening_decisions_created_at", "screening_decisions", ["created_at"])

    op.create_table(
        "conflicts",
        _uuid_pk(),
        sa.Column("project_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_work_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("project_works.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("decisions", postgresql.JSONB(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("project_work_id", "phase", name="uq_conflicts_project_work_id_phase"),
    )
    op.create_index("ix_conflicts_project_id", "conflicts", ["project_id"])
    op.create_index("ix_conflicts_status", "conflicts", ["status"])
    op.create_index("ix_conflicts_created_at", "conflicts", ["created_at"])

    op.create_table(
        "conflict_resolutions",
        _uuid_pk(),
        sa.Column("conflict_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("conflicts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resolver_id", sa.String(255), nullable=False),
        sa.Column("final_decision", sa.String(20), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("conflict_id", name="uq_conflict_resolutions_conflict_id"),
    )
    op.create_index("ix_conflict_resolutions_created_at", "conflict_resolutions", ["created_at"])

    op.create_table(
        "activities",
        _uuid_pk(),
        sa.Column("project_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_activities_project_id", "activities", ["project_id"])
    op.create_index("ix_activities_type", "activities", ["type"])
    op.create_index("ix_activities_created_at", "activities", ["created_at"])


def downgrade() -> None:
    op.drop_table("activities")
    op.drop_table("conflict_resolutions")
    op.drop_table("conflicts")
    op.drop_table("screening_decisions")
    op.drop_table("project_works")
    op.drop_table("works")
    op.drop_table("projects")
