"""
Celery worker entry point.

This imports the Celery app and tasks from the API module and starts a
worker that consumes both pipeline queues:

    python main.py            # ai-generation + file-ingestion
    python main.py ai-generation
"""
import sys
import os

# Add API directory to path so we can import tasks
sys.path.insert(0, os.environ.get("API_PATH", "/api"))

from tasks import celery_app  # noqa: E402
from services.job_queue import QUEUE_AI_GENERATION, QUEUE_FILE_INGESTION  # noqa: E402


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}


def worker_argv(queues=None):
    queues = queues or [QUEUE_AI_GENERATION, QUEUE_FILE_INGESTION]
    return [
        "worker",
        "--loglevel=INFO",
        f"--queues={','.join(queues)}",
        # Long LLM calls: one job per child process at a time
        "--prefetch-multiplier=1",
    ]


if __name__ == "__main__":
    celery_app.worker_main(worker_argv(sys.argv[1:]))
