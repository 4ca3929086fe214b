"""
Phase 2: competency-level judgment.

For each competency with a target level, LevelSearch walks the ladder
(target, foundation down to 1, growth upward while passing), one
key-behavior judgment call per level. A narrative call then explains the
result and splits recommendations into three fixed categories.

Persistence is report-scoped: nothing is written until every competency is
done, then the whole analysis set replaces the old one in the same
transaction that completes the phase. There is no partial resume: the
achieved level depends on every evaluated level.
"""
from typing import Dict, List, Optional, Sequence

from core.exceptions import CompletionParseError, DataIntegrityError, GenerationCancelled
from schemas import Competency, CompetencyLevel, KeyBehaviorJudgment, NarrativeOutput
from services.event_channel import EVENT_GENERATION_PROGRESS
from services.kb_matching import canonicalize_kb
from services.level_search import KBJudgment, LevelResult, LevelSearch, SearchResult
from services.llm_output import coerce_kb_judgments, coerce_narrative, parse_json
from services.orchestrator_base import PhaseOrchestrator, RunScope
from services.prompt_builder import build_kb_judgment_prompt, build_narrative_prompt
from services.report_store import AnalysisRecord, GenerationContext

ACTION_JUDGMENT = "PHASE_2_JUDGMENT"
ACTION_NARRATIVE = "PHASE_2_NARRATIVE"

NO_EVIDENCE_REASON = "No evidence found for this key behavior."
UNREADABLE_REASON = "The judgment for this key behavior could not be read; treated as not observed."


def match_judgments(
    level: CompetencyLevel,
    judgments: Sequence[KeyBehaviorJudgment],
    evidence_ids: Optional[set] = None,
) -> List[KBJudgment]:
    """
    One KBJudgment per official key behavior, in dictionary order.

    A model judgment is matched by its KB text first; failing that, the
    judgment at the same position is used if its text does not name a
    different key behavior. Unmatched key behaviors are not fulfilled.
    Evidence ids the model invented are dropped.
    """
    official = level.key_behaviors
    by_kb: Dict[str, KeyBehaviorJudgment] = {}
    resolved: List[Optional[str]] = []
    for judgment in judgments:
        kb = canonicalize_kb(judgment.kb_text_fragment, official)
        resolved.append(kb)
        if kb is not None and kb not in by_kb:
            by_kb[kb] = judgment

    matched: List[KBJudgment] = []
    for index, kb in enumerate(official):
        judgment = by_kb.get(kb)
        if judgment is None and index < len(judgments) and resolved[index] in (None, kb):
            judgment = judgments[index]

        if judgment is None:
            matched.append(KBJudgment(level=level.level, kb=kb, fulfilled=False, reasoning=NO_EVIDENCE_REASON))
            continue

        ids = [i for i in judgment.evidence_quote_ids if evidence_ids is None or i in evidence_ids]
        matched.append(KBJudgment(
            level=level.level,
            kb=kb,
            fulfilled=judgment.fulfilled,
            reasoning=judgment.reasoning or NO_EVIDENCE_REASON,
            evidence_ids=ids,
        ))
    return matched


def default_judgments(level: CompetencyLevel, reasoning: str = NO_EVIDENCE_REASON) -> List[KBJudgment]:
    return [KBJudgment(level=level.level, kb=kb, fulfilled=False, reasoning=reasoning) for kb in level.key_behaviors]


def anomaly_note(search: SearchResult) -> str:
    details = "; ".join(a.describe() for a in search.anomalies)
    return (
        f"\n\n**Scoring anomaly:** {details}. The achieved level is capped at "
        f"{search.final_level}, the highest level with every lower level met."
    )


def flatten_judgments(search: SearchResult) -> List[dict]:
    return [j.to_dict() for level in sorted(search.results) for j in search.results[level].judgments]


class CompetencyAnalysisOrchestrator(PhaseOrchestrator):
    phase = 2
    complete_message = "Competency analysis has finished generating."

    def _execute(self, scope: RunScope):
        ctx = self.store.load_context(scope.report_id)
        scope.project_id = ctx.project_id

        targeted = []
        for competency in ctx.dictionary.competencies:
            target = ctx.target_for(competency)
            if target is None:
                scope.log.info(f"Report {scope.report_id}: no target level for {competency.name}, skipping")
                continue
            if competency.max_level < 1:
                raise DataIntegrityError(f"Competency {competency.name} has no levels defined")
            targeted.append((competency, target))

        if not targeted:
            raise DataIntegrityError(f"Report {scope.report_id} has no target levels for any competency")

        analyses: List[AnalysisRecord] = []
        for index, (competency, target) in enumerate(targeted, start=1):
            self.check_between_units(scope)
            self.emit(scope, EVENT_GENERATION_PROGRESS, {
                "phase": self.phase,
                "competency": competency.name,
                "current": index,
                "total": len(targeted),
            })
            self.stream_text(scope, f"\n[{index}/{len(targeted)}] Analysing {competency.name} (target level {target})\n")
            analyses.append(self._analyse_competency(scope, ctx, competency, target))

        if not self.store.replace_analyses(scope.report_id, scope.job.job_id, analyses):
            raise GenerationCancelled("status_changed", "Report left PROCESSING before analyses were saved")

        return {
            "competencyCount": len(analyses),
            "anomalies": [a.competency for a in analyses if a.has_anomaly],
        }

    def _analyse_competency(self, scope: RunScope, ctx: GenerationContext, competency: Competency, target: int) -> AnalysisRecord:
        evidence = self.store.list_evidence(scope.report_id, competency=competency.name)
        evidence_ids = {str(e.id) for e in evidence}
        threshold = self.config.pass_threshold

        def evaluate(level_number: int) -> LevelResult:
            level = competency.get_level(level_number)
            if level is None:
                return LevelResult(level=level_number, judgments=[], threshold=threshold)
            judgments = self._judge_level(scope, ctx, competency, level, evidence, evidence_ids)
            result = LevelResult(level=level_number, judgments=judgments, threshold=threshold)
            verdict = "passed" if result.passed else "not passed"
            self.stream_text(scope, f"  Level {level_number}: {result.fulfilled_count}/{result.total} key behaviors ({verdict})\n")
            return result

        def on_level(level_number: int, stage: str) -> None:
            self.check_between_units(scope)
            scope.log.debug(f"{competency.name}: evaluating level {level_number} ({stage})")

        search = LevelSearch(competency.max_level, evaluate, on_level=on_level).run(target)
        scope.log.info(
            f"Report {scope.report_id}: {competency.name} target {search.target_level}, "
            f"achieved {search.final_level}, order {search.evaluation_order}, anomaly={search.has_anomaly}"
        )

        narrative = self._narrate(scope, ctx, competency, search)
        explanation = narrative.explanation
        if search.has_anomaly:
            explanation += anomaly_note(search)

        return AnalysisRecord(
            competency=competency.name,
            level_achieved=search.final_level,
            target_level=search.target_level,
            explanation=explanation,
            development_recommendations=narrative.recommendations.model_dump(),
            key_behaviors_status=flatten_judgments(search),
            has_anomaly=search.has_anomaly,
        )

    def _judge_level(self, scope, ctx, competency, level, evidence, evidence_ids) -> List[KBJudgment]:
        if not level.key_behaviors:
            return []
        # Nothing to weigh; skip the model call
        if not evidence:
            return default_judgments(level)

        prompt = build_kb_judgment_prompt(ctx, competency, level, evidence)
        result = self._call_model(
            scope, ACTION_JUDGMENT, scope.models.judgment_model, scope.models.judgment_temperature, prompt
        )
        try:
            raw = coerce_kb_judgments(parse_json(result.text))
        except CompletionParseError as e:
            scope.log.warning(
                f"Judgment for {competency.name} level {level.level} unreadable, treating as not observed: {e}"
            )
            return default_judgments(level, UNREADABLE_REASON)
        return match_judgments(level, raw, evidence_ids)

    def _narrate(self, scope, ctx, competency, search: SearchResult) -> NarrativeOutput:
        prompt = build_narrative_prompt(ctx, competency, search)
        result = self._call_model(
            scope, ACTION_NARRATIVE, scope.models.narrative_model, scope.models.narrative_temperature, prompt
        )
        return coerce_narrative(parse_json(result.text))
