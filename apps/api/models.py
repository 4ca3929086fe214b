from sqlalchemy import Column, Integer, Boolean, Float, DateTime, ForeignKey, Text, String, Index, JSON, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ReportStatus:
    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    ALL = (CREATED, PROCESSING, COMPLETED, FAILED)


class CompetencyDictionary(Base):
    """
    Versioned competency tree stored as one JSON document.

    Shape: {"competencies": [{"id", "name", "definition",
             "levels": [{"level", "definition", "key_behaviors": [...]}]}]}
    Parsed by schemas.CompetencyDictionaryContent, which also accepts the
    legacy Indonesian keys.
    """
    __tablename__ = "competency_dictionary"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    content = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Project(Base):
    __tablename__ = "project"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    dictionary_id = Column(Uuid, ForeignKey("competency_dictionary.id"), nullable=True)
    # Synthesized "assessor guide" for this project (knowledge-base context)
    context_guide = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)

    dictionary = relationship("CompetencyDictionary")
    prompts = relationship("ProjectPrompts", uselist=False, back_populates="project")


class ProjectPrompts(Base):
    """Per-project prompt overrides. Empty columns fall back to built-in defaults."""
    __tablename__ = "project_prompts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("project.id", ondelete="CASCADE"), nullable=False, unique=True)
    persona_prompt = Column(Text, nullable=True)
    general_context = Column(Text, nullable=True)
    evidence_prompt = Column(Text, nullable=True)
    kb_fulfillment_prompt = Column(Text, nullable=True)
    competency_level_prompt = Column(Text, nullable=True)
    development_prompt = Column(Text, nullable=True)
    summary_prompt = Column(Text, nullable=True)
    summary_critique_prompt = Column(Text, nullable=True)

    project = relationship("Project", back_populates="prompts")


class SimulationMethod(Base):
    """
    Assessment simulation (e.g. "Case Study", "Roleplay").

    The name doubles as the source tag of uploaded documents and evidence.
    """
    __tablename__ = "simulation_method"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    context_guide = Column(Text, nullable=True)


class SystemSetting(Base):
    """Key/value store for global settings such as the global context guide."""
    __tablename__ = "system_setting"

    key = Column(String(100), primary_key=True)
    value = Column(JSONType, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Report(Base):
    __tablename__ = "report"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(Text, nullable=False)
    project_id = Column(Uuid, ForeignKey("project.id", ondelete="CASCADE"), nullable=False)
    creator_id = Column(Text, nullable=True)
    status = Column(String(20), default=ReportStatus.CREATED, nullable=False)
    # competency id or name -> desired level
    target_levels = Column(JSONType, nullable=False, default=dict)
    specific_context = Column(Text, nullable=True)
    # Owning job id; a running job whose id differs has been superseded
    active_job_id = Column(Text, nullable=True)
    active_phase = Column(Integer, nullable=True)
    is_archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    project = relationship("Project")
    documents = relationship("SourceDocument", back_populates="report", order_by="SourceDocument.created_at")


class SourceDocument(Base):
    """Uploaded candidate output (transcript, written answer) for one simulation."""
    __tablename__ = "source_document"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id = Column(Uuid, ForeignKey("report.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(Text, nullable=False)
    storage_path = Column(Text, nullable=True)
    simulation_method = Column(Text, nullable=False)
    extracted_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    report = relationship("Report", back_populates="documents")


class Evidence(Base):
    __tablename__ = "evidence"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id = Column(Uuid, ForeignKey("report.id", ondelete="CASCADE"), nullable=False)
    competency = Column(Text, nullable=False)
    level = Column(Integer, nullable=False)
    kb = Column(Text, nullable=False)
    quote = Column(Text, nullable=False)
    source = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=True)
    is_ai_generated = Column(Boolean, default=True, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_evidence_unit", "report_id", "competency", "level", "source"),
    )


class CompetencyAnalysis(Base):
    __tablename__ = "competency_analysis"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id = Column(Uuid, ForeignKey("report.id", ondelete="CASCADE"), nullable=False, index=True)
    competency = Column(Text, nullable=False)
    level_achieved = Column(Integer, nullable=False)
    target_level = Column(Integer, nullable=True)
    explanation = Column(Text, nullable=False)
    # {"personal_development": ..., "assignment": ..., "training": ...}
    development_recommendations = Column(JSONType, nullable=False, default=dict)
    # [{"level", "kb", "fulfilled", "explanation", "evidence_ids"}]
    key_behaviors_status = Column(JSONType, nullable=False, default=list)
    has_anomaly = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("report_id", "competency", name="uq_competency_analysis_report_competency"),
    )


class ExecutiveSummary(Base):
    __tablename__ = "executive_summary"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id = Column(Uuid, ForeignKey("report.id", ondelete="CASCADE"), nullable=False, unique=True)
    overview = Column(Text, nullable=False)
    strengths = Column(Text, nullable=False)
    weaknesses = Column(Text, nullable=False)
    recommendations = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AILog(Base):
    """One row per completion call, successful or not."""
    __tablename__ = "ai_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=True)
    project_id = Column(Uuid, nullable=True)
    report_id = Column(Uuid, nullable=True, index=True)
    action = Column(String(50), nullable=False)
    model = Column(Text, nullable=False)
    prompt_snapshot = Column(Text, nullable=True)
    response_snapshot = Column(Text, nullable=True)
    input_tokens = Column(Integer, default=0, nullable=False)
    output_tokens = Column(Integer, default=0, nullable=False)
    cost_usd = Column(Float, default=0.0, nullable=False)
    duration_ms = Column(Integer, default=0, nullable=False)
    status = Column(String(20), nullable=False)  # SUCCESS | FAILED
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
