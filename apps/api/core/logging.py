"""
Structured logging for the API process and the generation workers.

Every record goes through one handler on the root logger. In JSON mode the
formatter lifts ``extra_fields`` into the top-level object, which is how a
generation job is traced across processes: the orchestrators log through a
JobLogAdapter carrying report_id, job_id, phase and attempt.

Text mode (local development) appends the same context in brackets.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings

# Context keys rendered by the text formatter, in this order
CONTEXT_KEYS = ("report_id", "job_id", "phase", "attempt", "file_id")

NOISY_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.WARNING,
    "anthropic": logging.WARNING,
    "google_genai": logging.WARNING,
    "celery": logging.INFO,
}


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    fields = getattr(record, "extra_fields", None)
    return dict(fields) if isinstance(fields, dict) else {}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service: Optional[str] = None):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if self.service:
            log_data["service"] = self.service
        if settings.ENVIRONMENT:
            log_data["environment"] = settings.ENVIRONMENT

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(_record_context(record))
        return json.dumps(log_data, default=str)


class ContextTextFormatter(logging.Formatter):
    """Human-readable format with the job context appended."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        parts = [f"{key}={context[key]}" for key in CONTEXT_KEYS if context.get(key) is not None]
        return f"{line} [{' '.join(parts)}]" if parts else line


class JobLogAdapter(logging.LoggerAdapter):
    """
    Logger bound to one generation job.

    Call-site ``extra={"extra_fields": {...}}`` is merged over the bound
    context, so a single call can add fields (a unit signature, a level)
    without losing the job identity.
    """

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        fields = dict(self.extra)
        fields.update(extra.get("extra_fields") or {})
        extra["extra_fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context) -> "JobLogAdapter":
        merged = dict(self.extra)
        merged.update({k: v for k, v in context.items() if v is not None})
        return JobLogAdapter(self.logger, merged)


def job_logger(logger: logging.Logger, **context) -> JobLogAdapter:
    """Bind ``logger`` to a job context; None values are left out."""
    return JobLogAdapter(logger, {k: v for k, v in context.items() if v is not None})


def setup_logging(service: Optional[str] = None):
    """
    Configure application-wide logging.

    JSON in production or when LOG_FORMAT=json, text otherwise.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter(service=service)
    else:
        formatter = ContextTextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    return root_logger
