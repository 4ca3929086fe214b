"""
Producer side of the job queue.

Generation jobs are claimed on the report row (status PROCESSING, new
active_job_id) before the Celery message is sent, so a still-running older
job for the same report sees the takeover at its next check and stops.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from models import ReportStatus
from schemas import FileIngestionPayload, GenerationJobPayload

logger = logging.getLogger(__name__)

QUEUE_AI_GENERATION = "ai-generation"
QUEUE_FILE_INGESTION = "file-ingestion"

JOB_GENERATE_PHASE_1 = "generate-phase-1"
JOB_GENERATE_PHASE_2 = "generate-phase-2"
JOB_GENERATE_PHASE_3 = "generate-phase-3"
JOB_INGEST_FILE = "ingest-file"

GENERATION_JOBS = {
    JOB_GENERATE_PHASE_1: 1,
    JOB_GENERATE_PHASE_2: 2,
    JOB_GENERATE_PHASE_3: 3,
}


def job_name_for_phase(phase: int) -> str:
    for name, number in GENERATION_JOBS.items():
        if number == phase:
            return name
    raise ValueError(f"Unknown phase: {phase}")


@dataclass(frozen=True)
class BackoffPolicy:
    type: str = "exponential"
    base_delay_s: float = 2.0
    max_delay_s: float = 300.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before redelivery number ``retry_number`` (zero-based)."""
        if self.type == "fixed":
            return min(self.base_delay_s, self.max_delay_s)
        return min(self.base_delay_s * (2 ** max(retry_number, 0)), self.max_delay_s)


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 6
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: bool = True
    keep_failed: bool = True

    @classmethod
    def from_config(cls, config) -> "JobOptions":
        return cls(
            attempts=config.max_attempts,
            backoff=BackoffPolicy(base_delay_s=config.backoff_delay_s, max_delay_s=config.backoff_max_s),
        )


class JobQueue:
    def __init__(self, celery_app, store, default_options: Optional[JobOptions] = None):
        self.celery_app = celery_app
        self.store = store
        self.default_options = default_options or JobOptions()

    def enqueue(self, job_type: str, payload: Dict[str, Any], options: Optional[JobOptions] = None) -> str:
        """Schedule a generation job and return its id."""
        if job_type not in GENERATION_JOBS:
            raise ValueError(f"Unknown generation job type: {job_type}")
        options = options or self.default_options
        job = GenerationJobPayload.model_validate(payload)
        job_id = str(uuid.uuid4())

        self.store.mark_processing(job.report_id, job_id, GENERATION_JOBS[job_type])

        try:
            self.celery_app.send_task(
                job_type,
                kwargs={
                    "report_id": job.report_id,
                    "user_id": job.user_id,
                    "max_attempts": options.attempts,
                    "backoff_delay_s": options.backoff.base_delay_s,
                    "backoff_max_s": options.backoff.max_delay_s,
                },
                task_id=job_id,
                queue=QUEUE_AI_GENERATION,
                ignore_result=options.remove_on_complete,
            )
        except Exception as e:
            # Nothing will ever pick the claim up; release the report
            logger.error(f"Failed to enqueue {job_type} for report {job.report_id}: {e}")
            self.store.finish(job.report_id, job_id, ReportStatus.FAILED)
            raise
        logger.info(f"Enqueued {job_type} for report {job.report_id} as job {job_id}")
        return job_id

    def submit_file_ingestion(self, file_id: str, path: str, user_id: str, options: Optional[JobOptions] = None) -> str:
        options = options or self.default_options
        job = FileIngestionPayload(file_id=str(file_id), path=path, user_id=str(user_id))
        job_id = str(uuid.uuid4())
        self.celery_app.send_task(
            JOB_INGEST_FILE,
            kwargs={
                "file_id": job.file_id,
                "path": job.path,
                "user_id": job.user_id,
                "max_attempts": options.attempts,
                "backoff_delay_s": options.backoff.base_delay_s,
            },
            task_id=job_id,
            queue=QUEUE_FILE_INGESTION,
            ignore_result=options.remove_on_complete,
        )
        logger.info(f"Enqueued file ingestion for {job.file_id} as job {job_id}")
        return job_id
