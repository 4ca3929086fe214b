"""
Report generation API Router

Producer side of the generation pipeline: start a phase, stop a running
phase, read the pipeline status of a report. Ask AI rewrites a generated
section synchronously. Authentication is handled upstream; the acting user
arrives in the X-User-Id header and is only used to address live events
(and to attribute AI log rows).
"""

from functools import lru_cache
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.database import SessionLocal, get_db
from core.exceptions import ConflictError, DataIntegrityError, NotFoundError, ValidationError
from models import CompetencyAnalysis, Evidence, Report, ReportStatus
from schemas import (
    AskAiRequest,
    AskAiResponse,
    GenerationStartedResponse,
    ReportStatusResponse,
    StopGenerationResponse,
)
from services.ai_log_service import AILogService
from services.ask_ai import AskAiConfig, AskAiService
from services.completion_service import CompletionService, build_completion_service
from services.job_queue import JobOptions, JobQueue, job_name_for_phase
from services.pipeline_config import PipelineConfig
from services.report_store import ReportStore

router = APIRouter(prefix="/v1/reports", tags=["Reports"])

PHASE_NAMES = {1: "evidence", 2: "competency analysis", 3: "executive summary"}


def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    if not x_user_id.strip():
        raise ValidationError("X-User-Id header must not be empty", field="user_id")
    return x_user_id.strip()


def get_report_store() -> ReportStore:
    return ReportStore(SessionLocal)


def get_job_queue(store: ReportStore = Depends(get_report_store)) -> JobQueue:
    from tasks import celery_app

    return JobQueue(celery_app, store, JobOptions.from_config(PipelineConfig.from_settings(settings)))


@lru_cache
def get_completion_service() -> CompletionService:
    return build_completion_service(settings)


def get_ask_ai_service(
    store: ReportStore = Depends(get_report_store),
    completion: CompletionService = Depends(get_completion_service),
) -> AskAiService:
    return AskAiService(store, completion, AskAiConfig.from_settings(settings), ai_log=AILogService(SessionLocal))


def _get_report(db: Session, report_id: UUID) -> Report:
    report = db.query(Report).filter(Report.id == report_id).first()
    if report is None:
        raise NotFoundError("Report", str(report_id))
    return report


@router.post(
    "/{report_id}/generate/{phase}",
    response_model=GenerationStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def start_generation(
    report_id: UUID,
    phase: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    """
    Enqueue a generation phase.

    Phase 2 needs evidence and phase 3 needs competency analyses. A report
    that is already PROCESSING must be stopped first.
    """
    if phase not in PHASE_NAMES:
        raise ValidationError("phase must be 1, 2 or 3", field="phase")

    report = _get_report(db, report_id)
    if report.status == ReportStatus.PROCESSING:
        raise ConflictError("A generation job is already running for this report")

    if phase == 2:
        evidence_count = (
            db.query(func.count(Evidence.id))
            .filter(Evidence.report_id == report_id, Evidence.is_archived.is_(False))
            .scalar()
        )
        if not evidence_count:
            raise ConflictError("Competency analysis requires evidence; run phase 1 first")
    elif phase == 3:
        analysis_count = (
            db.query(func.count(CompetencyAnalysis.id))
            .filter(CompetencyAnalysis.report_id == report_id)
            .scalar()
        )
        if not analysis_count:
            raise ConflictError("The executive summary requires competency analyses; run phase 2 first")

    job_id = queue.enqueue(job_name_for_phase(phase), {"report_id": str(report_id), "user_id": user_id})
    return GenerationStartedResponse(
        report_id=report_id,
        phase=phase,
        job_id=job_id,
        message=f"{PHASE_NAMES[phase].capitalize()} generation started",
    )


@router.post("/{report_id}/stop", response_model=StopGenerationResponse)
def stop_generation(
    report_id: UUID,
    user_id: str = Depends(get_current_user_id),
    store: ReportStore = Depends(get_report_store),
):
    """Stop the running phase; whatever it saved so far is kept."""
    if store.get_state(report_id) is None:
        raise NotFoundError("Report", str(report_id))

    stopped = store.request_stop(report_id)
    return StopGenerationResponse(
        report_id=report_id,
        stopped=stopped,
        message="Generation stopped" if stopped else "No generation was running",
    )


@router.get("/{report_id}/status", response_model=ReportStatusResponse)
def get_generation_status(
    report_id: UUID,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    report = _get_report(db, report_id)
    return ReportStatusResponse(
        report_id=report.id,
        status=report.status,
        active_phase=report.active_phase,
        active_job_id=report.active_job_id,
        updated_at=report.updated_at,
    )


@router.post("/{report_id}/ask-ai", response_model=AskAiResponse)
def ask_ai(
    report_id: UUID,
    body: AskAiRequest,
    user_id: str = Depends(get_current_user_id),
    store: ReportStore = Depends(get_report_store),
    service: AskAiService = Depends(get_ask_ai_service),
):
    """Rewrite a competency analysis (PHASE_2) or the summary (PHASE_3). Nothing is saved."""
    if store.get_state(report_id) is None:
        raise NotFoundError("Report", str(report_id))

    try:
        result = service.refine(report_id, user_id, body)
    except DataIntegrityError as e:
        raise ConflictError(str(e)) from e
    return AskAiResponse(
        report_id=report_id,
        refined_content=result.refined_content,
        reasoning=result.reasoning,
        model=result.model,
        structured=result.structured,
    )
