"""
Generation job handlers: generate-phase-1, generate-phase-2, generate-phase-3.

Task contract:
- kwargs: report_id, user_id, max_attempts, backoff_delay_s, backoff_max_s
- job id = Celery task id; it stays the same across retries, so a retry is
  never mistaken for a zombie of itself
- attempt = request.retries (zero-based), which drives main/backup model routing
- retryable errors with attempts left: self.retry(countdown=exponential backoff)
- cancellation: returns normally with status CANCELLED
- data-integrity errors and exhausted attempts: raised, recorded as failed
"""
import logging
from typing import Optional

from core.exceptions import is_retryable
from core.logging import job_logger
from services.job_queue import JOB_GENERATE_PHASE_1, JOB_GENERATE_PHASE_2, JOB_GENERATE_PHASE_3, BackoffPolicy
from services.orchestrator_base import JobContext
from tasks import celery_app, get_pipeline_services

logger = logging.getLogger(__name__)


def run_generation_task(
    task,
    phase: int,
    report_id: str,
    user_id: str,
    max_attempts: Optional[int] = None,
    backoff_delay_s: Optional[float] = None,
    backoff_max_s: Optional[float] = None,
) -> dict:
    services = get_pipeline_services()
    config = services.config
    job = JobContext(
        job_id=task.request.id,
        attempt=task.request.retries or 0,
        max_attempts=max_attempts or config.max_attempts,
    )
    backoff = BackoffPolicy(
        base_delay_s=backoff_delay_s or config.backoff_delay_s,
        max_delay_s=backoff_max_s or config.backoff_max_s,
    )
    log = job_logger(logger, report_id=str(report_id), job_id=job.job_id, phase=phase, attempt=job.attempt_number)

    try:
        outcome = services.orchestrator_for(phase).run(report_id, user_id, job)
    except Exception as exc:
        if is_retryable(exc) and job.has_attempts_remaining:
            countdown = backoff.delay_for(job.attempt)
            log.warning(
                f"Phase {phase} job {job.job_id} for report {report_id} retrying in {countdown:.1f}s "
                f"(attempt {job.attempt_number}/{job.max_attempts}): {exc}"
            )
            raise task.retry(exc=exc, countdown=countdown, max_retries=job.max_attempts - 1)
        log.error(f"Phase {phase} job {job.job_id} for report {report_id} failed permanently: {exc}")
        raise

    return {
        "report_id": str(report_id),
        "phase": phase,
        "status": outcome.status,
        "message": outcome.message,
    }


@celery_app.task(name=JOB_GENERATE_PHASE_1, bind=True)
def generate_phase_1(self, report_id: str, user_id: str, max_attempts: Optional[int] = None,
                     backoff_delay_s: Optional[float] = None, backoff_max_s: Optional[float] = None):
    """Evidence extraction."""
    return run_generation_task(self, 1, report_id, user_id, max_attempts, backoff_delay_s, backoff_max_s)


@celery_app.task(name=JOB_GENERATE_PHASE_2, bind=True)
def generate_phase_2(self, report_id: str, user_id: str, max_attempts: Optional[int] = None,
                     backoff_delay_s: Optional[float] = None, backoff_max_s: Optional[float] = None):
    """Competency-level judgment."""
    return run_generation_task(self, 2, report_id, user_id, max_attempts, backoff_delay_s, backoff_max_s)


@celery_app.task(name=JOB_GENERATE_PHASE_3, bind=True)
def generate_phase_3(self, report_id: str, user_id: str, max_attempts: Optional[int] = None,
                     backoff_delay_s: Optional[float] = None, backoff_max_s: Optional[float] = None):
    """Executive summary."""
    return run_generation_task(self, 3, report_id, user_id, max_attempts, backoff_delay_s, backoff_max_s)
