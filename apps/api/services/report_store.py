"""
ReportStore: the pipeline's data-access seam.

Every method opens its own short-lived session and commits before it
returns, so a crash mid-phase loses at most the unit in flight. Writes that
end a phase (analyses, summary) are conditional on the job still owning the
report and happen in the same transaction as the status change.
"""
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, sessionmaker

from core.exceptions import DataIntegrityError, GenerationCancelled
from models import (
    CompetencyAnalysis,
    CompetencyDictionary,
    Evidence,
    ExecutiveSummary,
    Project,
    ProjectPrompts,
    Report,
    ReportStatus,
    SimulationMethod,
    SourceDocument,
    SystemSetting,
)
from schemas import CompetencyDictionaryContent, ExecutiveSummaryOutput
from services.prompt_builder import resolve_prompts

logger = logging.getLogger(__name__)

GLOBAL_GUIDE_KEY = "global_context_guide"

# ProjectPrompts column -> prompt_builder key
PROMPT_COLUMNS = {
    "persona_prompt": "persona",
    "general_context": "general_context",
    "evidence_prompt": "evidence",
    "kb_fulfillment_prompt": "kb_fulfillment",
    "competency_level_prompt": "competency_level",
    "development_prompt": "development",
    "summary_prompt": "summary",
    "summary_critique_prompt": "summary_critique",
}


def as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"Invalid id: {value}") from e


@dataclass(frozen=True)
class ReportState:
    status: str
    active_job_id: Optional[str]
    active_phase: Optional[int]


@dataclass(frozen=True)
class UnitKey:
    """One Phase 1 unit of work: a competency level against one source document."""
    competency: str
    level: int
    source: str

    @property
    def signature(self) -> str:
        return f"{self.competency}|{self.level}|{self.source}"


@dataclass
class SourceDocumentData:
    id: uuid.UUID
    filename: str
    source: str
    text: str


@dataclass
class GenerationContext:
    report_id: uuid.UUID
    project_id: uuid.UUID
    title: str
    creator_id: Optional[str]
    target_levels: Dict[str, Any]
    specific_context: Optional[str]
    dictionary: CompetencyDictionaryContent
    prompts: Dict[str, str]
    documents: List[SourceDocumentData] = field(default_factory=list)
    global_guide: Optional[str] = None
    project_guide: Optional[str] = None
    simulation_guides: Dict[str, str] = field(default_factory=dict)

    def target_for(self, competency) -> Optional[int]:
        """Configured target level by competency id, falling back to name."""
        for key in (competency.id, competency.name):
            if key is None or key not in self.target_levels:
                continue
            value = self.target_levels[key]
            try:
                return int(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric target level {value!r} for {competency.name}")
                return None
        return None


@dataclass
class EvidenceRecord:
    competency: str
    level: int
    kb: str
    quote: str
    source: str
    reasoning: str = ""


@dataclass
class AnalysisRecord:
    competency: str
    level_achieved: int
    target_level: Optional[int]
    explanation: str
    development_recommendations: Dict[str, str]
    key_behaviors_status: List[Dict[str, Any]]
    has_anomaly: bool = False


class ReportStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session_scope(self):
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _owned(query, job_id: Optional[str]):
        """Restrict a Report query to rows still PROCESSING under ``job_id``."""
        query = query.filter(Report.status == ReportStatus.PROCESSING)
        if job_id is not None:
            query = query.filter(or_(Report.active_job_id == str(job_id), Report.active_job_id.is_(None)))
        return query

    def _finish_in(self, session: Session, report_id, job_id: Optional[str], status: str) -> bool:
        updated = self._owned(session.query(Report).filter(Report.id == as_uuid(report_id)), job_id).update(
            {
                Report.status: status,
                Report.active_job_id: None,
                Report.active_phase: None,
                Report.updated_at: func.now(),
            },
            synchronize_session=False,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_state(self, report_id) -> Optional[ReportState]:
        with self.session_scope() as session:
            row = (
                session.query(Report.status, Report.active_job_id, Report.active_phase)
                .filter(Report.id == as_uuid(report_id))
                .first()
            )
            if row is None:
                return None
            return ReportState(status=row.status, active_job_id=row.active_job_id, active_phase=row.active_phase)

    def mark_processing(self, report_id, job_id: str, phase: int) -> None:
        """Claim the report for a new job. Any older job for it becomes a zombie."""
        with self.session_scope() as session:
            updated = session.query(Report).filter(Report.id == as_uuid(report_id)).update(
                {
                    Report.status: ReportStatus.PROCESSING,
                    Report.active_job_id: str(job_id),
                    Report.active_phase: phase,
                    Report.updated_at: func.now(),
                },
                synchronize_session=False,
            )
            if updated == 0:
                raise DataIntegrityError(f"Report {report_id} not found")

    def request_stop(self, report_id) -> bool:
        """User stop. The partial result becomes the accepted stopping point."""
        with self.session_scope() as session:
            updated = (
                session.query(Report)
                .filter(Report.id == as_uuid(report_id), Report.status == ReportStatus.PROCESSING)
                .update(
                    {
                        Report.status: ReportStatus.COMPLETED,
                        Report.active_job_id: None,
                        Report.active_phase: None,
                        Report.updated_at: func.now(),
                    },
                    synchronize_session=False,
                )
            )
            return updated == 1

    def finish(self, report_id, job_id: Optional[str], status: str) -> bool:
        """
        Terminal status for the owning job.

        Returns False when the report already left PROCESSING or belongs to a
        newer job; the caller treats that as a cancellation.
        """
        with self.session_scope() as session:
            return self._finish_in(session, report_id, job_id, status)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def load_context(self, report_id) -> GenerationContext:
        with self.session_scope() as session:
            report = session.get(Report, as_uuid(report_id))
            if report is None:
                raise DataIntegrityError(f"Report {report_id} not found")

            project = session.get(Project, report.project_id)
            if project is None:
                raise DataIntegrityError(f"Project {report.project_id} not found for report {report_id}")
            if project.dictionary_id is None:
                raise DataIntegrityError(f"Project {project.id} has no competency dictionary")

            dictionary_row = session.get(CompetencyDictionary, project.dictionary_id)
            if dictionary_row is None:
                raise DataIntegrityError(f"Competency dictionary {project.dictionary_id} not found")
            try:
                dictionary = CompetencyDictionaryContent.model_validate(dictionary_row.content or {})
            except PydanticValidationError as e:
                raise DataIntegrityError(f"Competency dictionary {dictionary_row.id} is malformed: {e}") from e
            if not dictionary.competencies:
                raise DataIntegrityError(f"Competency dictionary {dictionary_row.id} has no competencies")

            prompt_row = session.query(ProjectPrompts).filter(ProjectPrompts.project_id == project.id).first()
            overrides = {}
            if prompt_row is not None:
                overrides = {key: getattr(prompt_row, column) for column, key in PROMPT_COLUMNS.items()}

            documents = (
                session.query(SourceDocument)
                .filter(SourceDocument.report_id == report.id)
                .order_by(SourceDocument.created_at, SourceDocument.filename)
                .all()
            )

            global_setting = session.get(SystemSetting, GLOBAL_GUIDE_KEY)
            global_guide = None
            if global_setting is not None:
                value = global_setting.value
                global_guide = value.get("text") if isinstance(value, dict) else value

            simulation_guides = {
                m.name: m.context_guide
                for m in session.query(SimulationMethod).filter(SimulationMethod.context_guide.isnot(None)).all()
            }

            return GenerationContext(
                report_id=report.id,
                project_id=project.id,
                title=report.title,
                creator_id=report.creator_id,
                target_levels=dict(report.target_levels or {}),
                specific_context=report.specific_context,
                dictionary=dictionary,
                prompts=resolve_prompts(overrides),
                documents=[
                    SourceDocumentData(
                        id=doc.id,
                        filename=doc.filename,
                        source=doc.simulation_method,
                        text=doc.extracted_text or "",
                    )
                    for doc in documents
                ],
                global_guide=global_guide,
                project_guide=project.context_guide,
                simulation_guides=simulation_guides,
            )

    def get_system_setting(self, key: str) -> Optional[Any]:
        with self.session_scope() as session:
            row = session.get(SystemSetting, key)
            return None if row is None else row.value

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def completed_evidence_units(self, report_id) -> Set[UnitKey]:
        with self.session_scope() as session:
            rows = (
                session.query(Evidence.competency, Evidence.level, Evidence.source)
                .filter(
                    Evidence.report_id == as_uuid(report_id),
                    Evidence.is_ai_generated.is_(True),
                    Evidence.is_archived.is_(False),
                )
                .distinct()
                .all()
            )
            return {UnitKey(competency=r.competency, level=int(r.level), source=r.source) for r in rows}

    def replace_unit_evidence(
        self,
        report_id,
        unit: UnitKey,
        rows: List[EvidenceRecord],
        job_id: Optional[str] = None,
    ) -> int:
        """
        Swap the AI rows of exactly one unit in one transaction.

        Manual evidence and sibling units are never touched. With ``job_id``
        the write is refused (GenerationCancelled) unless the job still owns
        the report.
        """
        rid = as_uuid(report_id)
        with self.session_scope() as session:
            if job_id is not None:
                owner = self._owned(session.query(Report.id).filter(Report.id == rid), job_id).first()
                if owner is None:
                    raise GenerationCancelled("superseded", f"Job {job_id} no longer owns report {report_id}")

            session.query(Evidence).filter(
                Evidence.report_id == rid,
                Evidence.competency == unit.competency,
                Evidence.level == unit.level,
                Evidence.source == unit.source,
                Evidence.is_ai_generated.is_(True),
            ).delete(synchronize_session=False)

            for row in rows:
                session.add(Evidence(
                    report_id=rid,
                    competency=row.competency,
                    level=row.level,
                    kb=row.kb,
                    quote=row.quote,
                    source=row.source,
                    reasoning=row.reasoning,
                    is_ai_generated=True,
                    is_archived=False,
                ))
            return len(rows)

    def list_evidence(self, report_id, competency: Optional[str] = None) -> List[Evidence]:
        with self.session_scope() as session:
            query = session.query(Evidence).filter(
                Evidence.report_id == as_uuid(report_id),
                Evidence.is_archived.is_(False),
            )
            if competency is not None:
                query = query.filter(Evidence.competency == competency)
            return query.order_by(Evidence.level, Evidence.source, Evidence.created_at).all()

    def count_evidence(self, report_id) -> int:
        with self.session_scope() as session:
            return (
                session.query(func.count(Evidence.id))
                .filter(Evidence.report_id == as_uuid(report_id), Evidence.is_archived.is_(False))
                .scalar()
            ) or 0

    # ------------------------------------------------------------------
    # Analyses and summary
    # ------------------------------------------------------------------

    def replace_analyses(self, report_id, job_id: Optional[str], analyses: List[AnalysisRecord]) -> bool:
        """Complete the phase and swap every analysis row of the report, atomically."""
        rid = as_uuid(report_id)
        with self.session_scope() as session:
            if not self._finish_in(session, rid, job_id, ReportStatus.COMPLETED):
                return False
            session.query(CompetencyAnalysis).filter(CompetencyAnalysis.report_id == rid).delete(
                synchronize_session=False
            )
            for a in analyses:
                session.add(CompetencyAnalysis(
                    report_id=rid,
                    competency=a.competency,
                    level_achieved=a.level_achieved,
                    target_level=a.target_level,
                    explanation=a.explanation,
                    development_recommendations=a.development_recommendations,
                    key_behaviors_status=a.key_behaviors_status,
                    has_anomaly=a.has_anomaly,
                ))
            return True

    def list_analyses(self, report_id) -> List[CompetencyAnalysis]:
        with self.session_scope() as session:
            return (
                session.query(CompetencyAnalysis)
                .filter(CompetencyAnalysis.report_id == as_uuid(report_id))
                .order_by(CompetencyAnalysis.created_at, CompetencyAnalysis.competency)
                .all()
            )

    def replace_summary(self, report_id, job_id: Optional[str], summary: ExecutiveSummaryOutput) -> bool:
        rid = as_uuid(report_id)
        with self.session_scope() as session:
            if not self._finish_in(session, rid, job_id, ReportStatus.COMPLETED):
                return False
            session.query(ExecutiveSummary).filter(ExecutiveSummary.report_id == rid).delete(
                synchronize_session=False
            )
            session.add(ExecutiveSummary(
                report_id=rid,
                overview=summary.overview,
                strengths=summary.strengths,
                weaknesses=summary.weaknesses,
                recommendations=summary.recommendations,
            ))
            return True

    def get_summary(self, report_id) -> Optional[ExecutiveSummary]:
        with self.session_scope() as session:
            return session.query(ExecutiveSummary).filter(ExecutiveSummary.report_id == as_uuid(report_id)).first()
