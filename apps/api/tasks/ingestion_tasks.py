"""
ingest-file: extract text from an uploaded source document.

Runs on the file-ingestion queue with the same exponential backoff as the
generation jobs. A missing document row is not retried.
"""
import logging
from typing import Optional

from core.config import settings
from core.exceptions import is_retryable
from core.logging import job_logger
from services.job_queue import JOB_INGEST_FILE, BackoffPolicy
from tasks import celery_app, get_pipeline_services

logger = logging.getLogger(__name__)


@celery_app.task(name=JOB_INGEST_FILE, bind=True)
def ingest_file(self, file_id: str, path: str, user_id: str, max_attempts: Optional[int] = None,
                backoff_delay_s: Optional[float] = None):
    services = get_pipeline_services()
    attempts = max_attempts or settings.INGESTION_MAX_ATTEMPTS
    retries = self.request.retries or 0
    log = job_logger(logger, file_id=str(file_id), job_id=self.request.id, attempt=retries + 1)

    try:
        characters = services.file_ingestion().ingest(file_id, path, user_id)
    except Exception as exc:
        if is_retryable(exc) and retries + 1 < attempts:
            countdown = BackoffPolicy(
                base_delay_s=backoff_delay_s or services.config.backoff_delay_s,
                max_delay_s=services.config.backoff_max_s,
            ).delay_for(retries)
            log.warning(f"Ingestion of {file_id} failed (attempt {retries + 1}/{attempts}), retrying: {exc}")
            raise self.retry(exc=exc, countdown=countdown, max_retries=attempts - 1)
        log.error(f"Ingestion of {file_id} failed permanently: {exc}")
        raise

    return {"file_id": str(file_id), "characters": characters}
