"""
Ask AI: rewrite one generated section of a report on the user's instruction.

Synchronous and outside the job queue. The caller sends the text as it
currently stands (it may hold unsaved edits); nothing is written back to
the report. The admin "ai_config" system setting decides whether the
feature is on and which model answers; environment settings are the
fallback.
"""
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Optional

from core.exceptions import CompletionParseError, FeatureDisabledError, NotFoundError, ProviderError, UpstreamError
from core.logging import job_logger
from schemas import AskAiRequest, Competency
from services.ai_log_service import STATUS_FAILED, STATUS_SUCCESS, AILogEntry, AILogService
from services.completion_service import CompletionRequest, CompletionResult, CompletionService
from services.llm_output import coerce_refinement, parse_json
from services.prompt_builder import DEFAULT_PROMPTS, build_ask_ai_prompt
from services.report_store import GenerationContext, ReportStore

logger = logging.getLogger(__name__)

AI_CONFIG_KEY = "ai_config"
DEFAULT_PROMPTS_KEY = "default_prompts"
ACTION_ASK_AI = "ASK_AI_REFINE"
UNSTRUCTURED_REASONING = "Unable to parse structured response."


@dataclass(frozen=True)
class AskAiConfig:
    enabled: bool
    model: str
    temperature: float
    max_output_tokens: int = 8192

    @classmethod
    def from_settings(cls, config) -> "AskAiConfig":
        return cls(
            enabled=config.ASK_AI_ENABLED,
            model=config.AI_ASK_MODEL,
            temperature=config.AI_ASK_TEMPERATURE,
            max_output_tokens=config.LLM_MAX_OUTPUT_TOKENS,
        )

    def with_overrides(self, ai_config: Any) -> "AskAiConfig":
        """Apply askAiEnabled / askAiLLM / askAiTemp from the admin setting."""
        if not isinstance(ai_config, dict):
            return self
        changes = {}
        if isinstance(ai_config.get("askAiEnabled"), bool):
            changes["enabled"] = ai_config["askAiEnabled"]
        model = ai_config.get("askAiLLM")
        if isinstance(model, str) and model.strip():
            changes["model"] = model.strip()
        temp = ai_config.get("askAiTemp")
        if temp is not None:
            try:
                changes["temperature"] = float(temp)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric askAiTemp {temp!r}")
        return replace(self, **changes)


@dataclass
class RefinementResult:
    refined_content: str
    reasoning: str
    model: str
    structured: bool


def find_competency(ctx: GenerationContext, name: str) -> Optional[Competency]:
    wanted = name.strip().lower()
    for competency in ctx.dictionary.competencies:
        if wanted in {(competency.id or "").lower(), competency.name.strip().lower()}:
            return competency
    return None


class AskAiService:
    def __init__(
        self,
        store: ReportStore,
        completion: CompletionService,
        config: AskAiConfig,
        ai_log: Optional[AILogService] = None,
    ):
        self.store = store
        self.completion = completion
        self.config = config
        self.ai_log = ai_log

    def current_config(self) -> AskAiConfig:
        return self.config.with_overrides(self.store.get_system_setting(AI_CONFIG_KEY))

    def system_prompt(self) -> str:
        defaults = self.store.get_system_setting(DEFAULT_PROMPTS_KEY)
        custom = defaults.get("askAiSystem") if isinstance(defaults, dict) else None
        if isinstance(custom, str) and custom.strip():
            return custom
        return DEFAULT_PROMPTS["ask_ai"]

    def refine(self, report_id, user_id: str, request: AskAiRequest) -> RefinementResult:
        config = self.current_config()
        if not config.enabled:
            raise FeatureDisabledError("Ask AI is disabled")

        log = job_logger(logger, report_id=str(report_id))
        ctx = self.store.load_context(report_id)
        if request.context_type == "PHASE_2":
            context = self._competency_context(ctx, request.competency)
        else:
            context = self._summary_context(ctx)

        prompt = build_ask_ai_prompt(self.system_prompt(), context, request.current_content, request.instruction)
        completion_request = CompletionRequest(
            model=config.model,
            system_prompt=prompt.system,
            user_prompt=prompt.user,
            temperature=config.temperature,
            max_tokens=config.max_output_tokens,
            json_mode=True,
        )

        start = time.monotonic()
        try:
            result = self.completion.complete(completion_request)
        except ProviderError as e:
            self._log_call(ctx, user_id, completion_request, None, STATUS_FAILED, start, str(e))
            log.error(f"Ask AI failed on {config.model}: {e}")
            raise UpstreamError(f"AI provider error: {e}") from e
        except Exception as e:
            self._log_call(ctx, user_id, completion_request, None, STATUS_FAILED, start, str(e))
            raise
        self._log_call(ctx, user_id, completion_request, result, STATUS_SUCCESS, start)

        log.info(f"Ask AI refined {request.context_type} content with {result.model}")
        return self._parse(result, log)

    def _competency_context(self, ctx: GenerationContext, name: Optional[str]) -> str:
        competency = find_competency(ctx, name or "")
        if competency is None:
            raise NotFoundError("Competency", name or "")

        analysis = next(
            (a for a in self.store.list_analyses(ctx.report_id) if a.competency == competency.name),
            None,
        )
        lines = [f"Competency: {competency.name}"]
        if competency.definition:
            lines.append(f"Definition: {competency.definition}")
        if analysis is not None:
            lines.append(f"Achieved level: {analysis.level_achieved} (target {analysis.target_level})")
        elif ctx.target_for(competency) is not None:
            lines.append(f"Target level: {ctx.target_for(competency)}")
        lines.append("Level descriptions:")
        lines.extend(f"Level {lvl.level}: {lvl.definition}" for lvl in competency.levels)
        return "\n".join(lines)

    @staticmethod
    def _summary_context(ctx: GenerationContext) -> str:
        general = ctx.prompts.get("general_context") or "N/A"
        specific = ctx.specific_context or "N/A"
        return f"General context: {general}\nReport specific context: {specific}"

    @staticmethod
    def _parse(result: CompletionResult, log) -> RefinementResult:
        try:
            refinement = coerce_refinement(parse_json(result.text))
        except CompletionParseError as e:
            log.warning(f"Ask AI response was not structured, returning raw text: {e}")
            return RefinementResult(
                refined_content=result.text.strip(),
                reasoning=UNSTRUCTURED_REASONING,
                model=result.model,
                structured=False,
            )
        return RefinementResult(
            refined_content=refinement.refined_content,
            reasoning=refinement.reasoning,
            model=result.model,
            structured=True,
        )

    def _log_call(self, ctx, user_id, request, result, status, start, error=None) -> None:
        if self.ai_log is None:
            return
        self.ai_log.record(AILogEntry(
            user_id=user_id,
            project_id=ctx.project_id,
            report_id=ctx.report_id,
            action=ACTION_ASK_AI,
            model=request.model,
            prompt=f"{request.system_prompt}\n\n{request.user_prompt}",
            response=result.text if result else None,
            input_tokens=result.input_tokens if result else 0,
            output_tokens=result.output_tokens if result else 0,
            duration_ms=result.duration_ms if result else int((time.monotonic() - start) * 1000),
            status=status,
            error_message=error,
        ))
