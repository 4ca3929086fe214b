"""
AI interaction log.

One ai_log row per completion call with prompt/response snapshots, token
counts and an approximate USD cost. Writing the log must never break a
generation job, so every failure here is logged and dropped.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from models import AILog
from services.report_store import as_uuid

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"

# USD per 1M tokens (input, output). Approximate, for display only.
PRICING = {
    "google/gemini-2.5-pro": (1.25, 10.00),
    "google/gemini-2.5-flash-lite-preview-09-2025": (0.10, 0.40),
    "google/gemini-3-pro-preview": (2.00, 12.00),
    "openai/gpt-5.1": (1.25, 10.00),
    "default": (1.00, 2.00),
}

# Snapshots are for debugging; cap them so one huge transcript can't bloat the table
SNAPSHOT_LIMIT = 50_000


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Longest price-table key contained in ``model`` wins; ``default`` otherwise."""
    matches = [key for key in PRICING if key != "default" and key in (model or "")]
    rate_in, rate_out = PRICING[max(matches, key=len)] if matches else PRICING["default"]
    return ((input_tokens or 0) * rate_in + (output_tokens or 0) * rate_out) / 1_000_000


@dataclass
class AILogEntry:
    user_id: Optional[str]
    project_id: Optional[object]
    report_id: Optional[object]
    action: str
    model: str
    prompt: str
    response: Optional[str]
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    status: str = STATUS_SUCCESS
    error_message: Optional[str] = None


class AILogService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record(self, entry: AILogEntry) -> None:
        db = None
        try:
            db = self.session_factory()
            db.add(AILog(
                user_id=entry.user_id,
                project_id=as_uuid(entry.project_id) if entry.project_id else None,
                report_id=as_uuid(entry.report_id) if entry.report_id else None,
                action=entry.action,
                model=entry.model,
                prompt_snapshot=(entry.prompt or "")[:SNAPSHOT_LIMIT],
                response_snapshot=(entry.response or "")[:SNAPSHOT_LIMIT] or None,
                input_tokens=entry.input_tokens or 0,
                output_tokens=entry.output_tokens or 0,
                cost_usd=estimate_cost(entry.model, entry.input_tokens, entry.output_tokens),
                duration_ms=entry.duration_ms or 0,
                status=entry.status,
                error_message=entry.error_message,
            ))
            db.commit()
        except SQLAlchemyError as e:
            if db is not None:
                db.rollback()
            logger.error(f"Failed to save AI log for {entry.action}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error saving AI log for {entry.action}: {e}")
        finally:
            if db is not None:
                db.close()
