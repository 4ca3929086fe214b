"""
Celery tasks for background processing.

Tasks are defined here and imported by both the API (to enqueue) and
the worker (to execute). Each worker process builds its PipelineServices
once, in worker_process_init.
"""
import logging
from typing import Optional

from celery import Celery
from celery.signals import worker_process_init
from core.config import settings

logger = logging.getLogger(__name__)

# Create Celery app instance
celery_app = Celery(
    "assessor",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # At-least-once: ack after the handler returns, one job per worker slot
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="ai-generation",
    task_routes={
        "generate-phase-1": {"queue": "ai-generation"},
        "generate-phase-2": {"queue": "ai-generation"},
        "generate-phase-3": {"queue": "ai-generation"},
        "ingest-file": {"queue": "file-ingestion"},
    },
    task_time_limit=settings.AI_TASK_TIME_LIMIT_S,
    task_soft_time_limit=max(settings.AI_TASK_TIME_LIMIT_S - 60, 60),
    result_expires=24 * 60 * 60,
)

_pipeline_services = None


@worker_process_init.connect
def init_pipeline_services(**kwargs):
    """Build the per-process service container when a worker process starts."""
    from core.logging import setup_logging
    from services.container import build_pipeline_services

    global _pipeline_services
    setup_logging(service="worker")
    _pipeline_services = build_pipeline_services(settings)


def get_pipeline_services():
    global _pipeline_services
    if _pipeline_services is None:
        # solo pool / eager mode never fires worker_process_init
        from services.container import build_pipeline_services

        logger.info("Pipeline services not initialised by worker start-up; building now")
        _pipeline_services = build_pipeline_services(settings)
    return _pipeline_services


def set_pipeline_services(services: Optional[object]) -> None:
    global _pipeline_services
    _pipeline_services = services


# Import tasks to register them
from . import generation_tasks  # noqa: E402
from . import ingestion_tasks  # noqa: E402

__all__ = ["celery_app", "get_pipeline_services", "set_pipeline_services"]
