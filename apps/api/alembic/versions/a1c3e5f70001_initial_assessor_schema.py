"""initial_assessor_schema

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18

Creates the report-generation schema:
- competency dictionaries, projects and per-project prompt overrides
- simulation methods and global settings
- reports with their source documents
- evidence, competency analyses and executive summaries
- ai_log (one row per completion call)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


revision = "a1c3e5f70001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "competency_dictionary",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("content", JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "project",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("dictionary_id", UUID(as_uuid=True), nullable=True),
        sa.Column("context_guide", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.ForeignKeyConstraint(["dictionary_id"], ["competency_dictionary.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "project_prompts",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", UUID(as_uuid=True), nullable=False),
        sa.Column("persona_prompt", sa.Text(), nullable=True),
        sa.Column("general_context", sa.Text(), nullable=True),
        sa.Column("evidence_prompt", sa.Text(), nullable=True),
        sa.Column("kb_fulfillment_prompt", sa.Text(), nullable=True),
        sa.Column("competency_level_prompt", sa.Text(), nullable=True),
        sa.Column("development_prompt", sa.Text(), nullable=True),
        sa.Column("summary_prompt", sa.Text(), nullable=True),
        sa.Column("summary_critique_prompt", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id"),
    )

    op.create_table(
        "simulation_method",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("context_guide", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "system_setting",
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "report",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("project_id", UUID(as_uuid=True), nullable=False),
        sa.Column("creator_id", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), server_default=sa.text("'CREATED'"), nullable=False),
        sa.Column("target_levels", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("specific_context", sa.Text(), nullable=True),
        sa.Column("active_job_id", sa.Text(), nullable=True),
        sa.Column("active_phase", sa.Integer(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_report_status", "report", ["status"], unique=False)

    op.create_table(
        "source_document",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("report_id", UUID(as_uuid=True), nullable=False),
        sa.Column("filename", sa.Text(), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=True),
        sa.Column("simulation_method", sa.Text(), nullable=False),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["report_id"], ["report.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_source_document_report_id", "source_document", ["report_id"], unique=False)

    op.create_table(
        "evidence",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("report_id", UUID(as_uuid=True), nullable=False),
        sa.Column("competency", sa.Text(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("kb", sa.Text(), nullable=False),
        sa.Column("quote", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("is_ai_generated", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["report_id"], ["report.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_evidence_unit", "evidence", ["report_id", "competency", "level", "source"], unique=False)

    op.create_table(
        "competency_analysis",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("report_id", UUID(as_uuid=True), nullable=False),
        sa.Column("competency", sa.Text(), nullable=False),
        sa.Column("level_achieved", sa.Integer(), nullable=False),
        sa.Column("target_level", sa.Integer(), nullable=True),
        sa.Column("explanation", sa.Text(), nullable=False),
        sa.Column("development_recommendations", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("key_behaviors_status", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("has_anomaly", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["report_id"], ["report.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("report_id", "competency", name="uq_competency_analysis_report_competency"),
    )
    op.create_index("ix_competency_analysis_report_id", "competency_analysis", ["report_id"], unique=False)

    op.create_table(
        "executive_summary",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("report_id", UUID(as_uuid=True), nullable=False),
        sa.Column("overview", sa.Text(), nullable=False),
        sa.Column("strengths", sa.Text(), nullable=False),
        sa.Column("weaknesses", sa.Text(), nullable=False),
        sa.Column("recommendations", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["report_id"], ["report.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("report_id"),
    )

    op.create_table(
        "ai_log",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("project_id", UUID(as_uuid=True), nullable=True),
        sa.Column("report_id", UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("prompt_snapshot", sa.Text(), nullable=True),
        sa.Column("response_snapshot", sa.Text(), nullable=True),
        sa.Column("input_tokens", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("output_tokens", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cost_usd", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("duration_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ai_log_report_id", "ai_log", ["report_id"], unique=False)
    op.create_index("ix_ai_log_created_at", "ai_log", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_ai_log_created_at", table_name="ai_log")
    op.drop_index("ix_ai_log_report_id", table_name="ai_log")
    op.drop_table("ai_log")
    op.drop_table("executive_summary")
    op.drop_index("ix_competency_analysis_report_id", table_name="competency_analysis")
    op.drop_table("competency_analysis")
    op.drop_index("ix_evidence_unit", table_name="evidence")
    op.drop_table("evidence")
    op.drop_index("ix_source_document_report_id", table_name="source_document")
    op.drop_table("source_document")
    op.drop_index("ix_report_status", table_name="report")
    op.drop_table("report")
    op.drop_table("system_setting")
    op.drop_table("simulation_method")
    op.drop_table("project_prompts")
    op.drop_table("project")
    op.drop_table("competency_dictionary")
