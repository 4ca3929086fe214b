"""
Shared control flow for the three generation phases.

A phase run ends in exactly one of three ways:
- COMPLETED: the phase persisted its result and published generation-complete.
- CANCELLED: the report was stopped or taken over; generation-cancelled is
  published and the report is left as the stopper left it.
- an exception: retryable errors with attempts left publish generation-retry
  and propagate so the job queue redelivers; anything else marks the report
  FAILED (only if this job still owns it) and publishes generation-failed.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.exceptions import DataIntegrityError, GenerationCancelled, is_retryable
from core.logging import JobLogAdapter, job_logger
from models import ReportStatus
from services.ai_log_service import STATUS_FAILED, STATUS_SUCCESS, AILogEntry, AILogService
from services.cancellation import CancellationMonitor, CancellationWatcher
from services.completion_service import CompletionRequest, CompletionResult, CompletionService
from services.event_channel import (
    EVENT_AI_STREAM,
    EVENT_GENERATION_CANCELLED,
    EVENT_GENERATION_COMPLETE,
    EVENT_GENERATION_FAILED,
    EVENT_GENERATION_RETRY,
)
from services.pipeline_config import ModelSelection, PipelineConfig, select_models
from services.prompt_builder import Prompt
from services.report_store import ReportStore


class PhaseStatus:
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


@dataclass
class JobContext:
    """What an orchestrator needs to know about the queue job running it."""
    job_id: Optional[str]
    attempt: int = 0
    max_attempts: int = 1

    @property
    def attempt_number(self) -> int:
        return self.attempt + 1

    @property
    def has_attempts_remaining(self) -> bool:
        return self.attempt + 1 < self.max_attempts


@dataclass
class PhaseOutcome:
    status: str
    phase: int
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunScope:
    report_id: str
    user_id: str
    job: JobContext
    models: ModelSelection
    log: JobLogAdapter
    project_id: Optional[object] = None


class PhaseOrchestrator:
    phase = 0
    complete_message = ""

    def __init__(
        self,
        store: ReportStore,
        events,
        completion: CompletionService,
        config: PipelineConfig,
        ai_log: Optional[AILogService] = None,
        monitor: Optional[CancellationMonitor] = None,
    ):
        self.store = store
        self.events = events
        self.completion = completion
        self.config = config
        self.ai_log = ai_log
        self.monitor = monitor or CancellationMonitor(store, events)

    # ------------------------------------------------------------------
    # Template
    # ------------------------------------------------------------------

    def run(self, report_id, user_id: str, job: JobContext) -> PhaseOutcome:
        models = select_models(self.config, job.attempt)
        log = job_logger(
            logging.getLogger(type(self).__module__),
            report_id=str(report_id),
            job_id=job.job_id,
            phase=self.phase,
            attempt=job.attempt_number,
        )
        scope = RunScope(report_id=str(report_id), user_id=str(user_id), job=job, models=models, log=log)

        log.info(
            f"Phase {self.phase} starting for report {scope.report_id} "
            f"(attempt {job.attempt_number}/{job.max_attempts}, {models.label} models)",
            extra={"extra_fields": {"models": models.label}},
        )
        self.stream_text(scope, f"\n--- Phase {self.phase}: attempt {job.attempt_number}/{job.max_attempts} ---\n")
        if models.announce_switch:
            self.stream_text(scope, f"\nMain model failed {job.attempt} times. Switching to backup model.\n")

        try:
            self.check_cancelled(scope)
            payload = self._execute(scope) or {}
        except GenerationCancelled as e:
            log.info(f"Phase {self.phase} cancelled for report {scope.report_id}: {e.reason}")
            self.emit(scope, EVENT_GENERATION_CANCELLED, {
                "phase": self.phase,
                "status": PhaseStatus.CANCELLED,
                "message": "Generation stopped.",
                "reason": e.reason,
            })
            return PhaseOutcome(status=PhaseStatus.CANCELLED, phase=self.phase, message=str(e), payload={"reason": e.reason})
        except DataIntegrityError as e:
            log.error(f"Phase {self.phase} cannot run for report {scope.report_id}: {e}")
            self._fail(scope, e)
            raise
        except Exception as e:
            if is_retryable(e) and job.has_attempts_remaining:
                log.warning(
                    f"Phase {self.phase} attempt {job.attempt_number}/{job.max_attempts} failed "
                    f"for report {scope.report_id}, will retry: {e}"
                )
                self.emit(scope, EVENT_GENERATION_RETRY, {
                    "phase": self.phase,
                    "attempt": job.attempt_number,
                    "maxAttempts": job.max_attempts,
                    "message": str(e),
                })
                raise
            log.error(f"Phase {self.phase} failed for report {scope.report_id}: {e}", exc_info=True)
            self._fail(scope, e)
            raise

        log.info(f"Phase {self.phase} completed for report {scope.report_id}")
        self.emit(scope, EVENT_GENERATION_COMPLETE, {
            "phase": self.phase,
            "status": ReportStatus.COMPLETED,
            "message": self.complete_message,
            **payload,
        })
        return PhaseOutcome(status=PhaseStatus.COMPLETED, phase=self.phase, message=self.complete_message, payload=payload)

    def _execute(self, scope: RunScope) -> Dict[str, Any]:
        """Do the phase's work and persist its terminal state. Returns extra completion payload."""
        raise NotImplementedError

    def _fail(self, scope: RunScope, error: BaseException) -> None:
        if not self.store.finish(scope.report_id, scope.job.job_id, ReportStatus.FAILED):
            scope.log.info(f"Report {scope.report_id} no longer owned by job {scope.job.job_id}; not marking FAILED")
            return
        self.emit(scope, EVENT_GENERATION_FAILED, {
            "phase": self.phase,
            "status": ReportStatus.FAILED,
            "message": str(error),
        })

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def emit(self, scope: RunScope, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.publish(scope.user_id, event_type, {"reportId": scope.report_id, **payload})

    def stream_text(self, scope: RunScope, chunk: str) -> None:
        self.emit(scope, EVENT_AI_STREAM, {"chunk": chunk})

    def check_cancelled(self, scope: RunScope) -> None:
        self.monitor.check(scope.report_id, scope.user_id, scope.job.job_id)

    def check_between_units(self, scope: RunScope) -> None:
        if self.config.check_between_units:
            self.check_cancelled(scope)

    def _call_model(
        self,
        scope: RunScope,
        action: str,
        model: str,
        temperature: float,
        prompt: Prompt,
        stream_to_client: bool = False,
    ) -> CompletionResult:
        """One completion call under a cancellation watcher, logged to ai_log."""
        request = CompletionRequest(
            model=model,
            system_prompt=prompt.system,
            user_prompt=prompt.user,
            temperature=temperature,
            max_tokens=self.config.max_output_tokens,
            json_mode=True,
        )
        on_chunk = (lambda chunk: self.stream_text(scope, chunk)) if stream_to_client else None
        start = time.monotonic()
        try:
            with CancellationWatcher(
                self.monitor, scope.report_id, scope.user_id, scope.job.job_id, self.config.poll_interval_s
            ) as token:
                result = self.completion.complete(request, cancel_token=token, on_chunk=on_chunk)
        except GenerationCancelled:
            raise
        except Exception as e:
            self._log_call(scope, action, request, None, STATUS_FAILED, int((time.monotonic() - start) * 1000), str(e))
            raise
        self._log_call(scope, action, request, result, STATUS_SUCCESS, result.duration_ms)
        return result

    def _log_call(self, scope, action, request, result, status, duration_ms, error=None) -> None:
        if self.ai_log is None:
            return
        self.ai_log.record(AILogEntry(
            user_id=scope.user_id,
            project_id=scope.project_id,
            report_id=scope.report_id,
            action=action,
            model=request.model,
            prompt=f"{request.system_prompt}\n\n{request.user_prompt}",
            response=result.text if result else None,
            input_tokens=result.input_tokens if result else 0,
            output_tokens=result.output_tokens if result else 0,
            duration_ms=duration_ms,
            status=status,
            error_message=error,
        ))
