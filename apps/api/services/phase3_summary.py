"""
Phase 3: executive summary, drafted then critiqued.

Neither call is streamed token by token, but both run under the
cancellation watcher so a stop request aborts a long two-pass call.
"""

from core.exceptions import CompletionParseError, DataIntegrityError, GenerationCancelled
from schemas import ExecutiveSummaryOutput
from services.llm_output import coerce_summary, parse_json, parse_json_object
from services.orchestrator_base import PhaseOrchestrator, RunScope
from services.prompt_builder import build_summary_critique_prompt, build_summary_draft_prompt

ACTION_DRAFT = "PHASE_3_DRAFT"
ACTION_CRITIQUE = "PHASE_3_CRITIQUE"


class ExecutiveSummaryOrchestrator(PhaseOrchestrator):
    phase = 3
    complete_message = "Executive summary has finished generating."

    def _execute(self, scope: RunScope):
        ctx = self.store.load_context(scope.report_id)
        scope.project_id = ctx.project_id

        analyses = self.store.list_analyses(scope.report_id)
        if not analyses:
            raise DataIntegrityError(f"Report {scope.report_id} has no competency analyses to summarise")

        self.stream_text(scope, "\nStep 1: drafting summary content...\n")
        draft_prompt = build_summary_draft_prompt(ctx, analyses)
        draft_result = self._call_model(
            scope, ACTION_DRAFT, scope.models.narrative_model, scope.models.narrative_temperature, draft_prompt
        )
        draft = coerce_summary(parse_json_object(draft_result.text))

        self.check_between_units(scope)
        self.stream_text(scope, "\nStep 2: reviewing for consistency and flow...\n")
        critique_prompt = build_summary_critique_prompt(ctx, draft.model_dump())
        final_result = self._call_model(
            scope, ACTION_CRITIQUE, scope.models.narrative_model, scope.models.critique_temperature, critique_prompt
        )
        summary = self._final_summary(scope, final_result.text, draft)

        if not self.store.replace_summary(scope.report_id, scope.job.job_id, summary):
            raise GenerationCancelled("status_changed", "Report left PROCESSING before the summary was saved")
        return {}

    @staticmethod
    def _final_summary(scope: RunScope, text: str, draft: ExecutiveSummaryOutput) -> ExecutiveSummaryOutput:
        try:
            return coerce_summary(parse_json(text))
        except CompletionParseError as e:
            # The draft already passed validation; a broken critique should not discard it
            scope.log.warning(f"Critique for report {scope.report_id} unreadable, keeping the draft: {e}")
            return draft
