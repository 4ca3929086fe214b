"""
Phase 1: evidence extraction.

Work is split into units of (competency, level, source). Units are
processed in dictionary order (competency, then source document, then
level) and each unit's evidence is committed on its own, so a retry skips
every unit that already has AI evidence persisted.

A unit whose completion cannot be parsed is logged and reported as
incomplete; it never aborts the phase. Units that legitimately produced no
evidence leave no signature behind and are asked again on resume.
"""
from dataclasses import dataclass
from typing import Dict, List

from core.exceptions import CompletionParseError, DataIntegrityError, GenerationCancelled
from models import ReportStatus
from schemas import Competency, CompetencyLevel
from services.event_channel import EVENT_EVIDENCE_BATCH_SAVED, EVENT_GENERATION_PROGRESS
from services.kb_matching import canonicalize_kb
from services.llm_output import coerce_evidence_items, parse_json
from services.orchestrator_base import PhaseOrchestrator, RunScope
from services.prompt_builder import build_evidence_prompt
from services.report_store import EvidenceRecord, GenerationContext, SourceDocumentData, UnitKey

ACTION = "PHASE_1_EVIDENCE"
RAW_LOG_LIMIT = 500


@dataclass
class EvidenceUnit:
    competency: Competency
    level: CompetencyLevel
    document: SourceDocumentData

    @property
    def key(self) -> UnitKey:
        return UnitKey(competency=self.competency.name, level=self.level.level, source=self.document.source)


def group_documents_by_source(documents: List[SourceDocumentData]) -> List[SourceDocumentData]:
    """
    One entry per source tag, in first-seen order.

    Evidence rows are keyed by source, so two uploads for the same
    simulation method must be read as one document.
    """
    grouped: Dict[str, SourceDocumentData] = {}
    for doc in documents:
        if doc.source not in grouped:
            grouped[doc.source] = SourceDocumentData(id=doc.id, filename=doc.filename, source=doc.source, text=doc.text)
            continue
        merged = grouped[doc.source]
        merged.text = f"{merged.text}\n\n--- {doc.filename} ---\n{doc.text}"
        merged.filename = f"{merged.filename}, {doc.filename}"
    return list(grouped.values())


def plan_units(ctx: GenerationContext) -> List[EvidenceUnit]:
    """Every unit of the report in processing order. Levels without key behaviors are skipped."""
    documents = [doc for doc in group_documents_by_source(ctx.documents) if doc.text.strip()]
    units = []
    for competency in ctx.dictionary.competencies:
        for document in documents:
            for level in competency.levels:
                if level.key_behaviors:
                    units.append(EvidenceUnit(competency=competency, level=level, document=document))
    return units


class EvidenceExtractionOrchestrator(PhaseOrchestrator):
    phase = 1
    complete_message = "Evidence list has finished generating."

    def _execute(self, scope: RunScope):
        ctx = self.store.load_context(scope.report_id)
        scope.project_id = ctx.project_id

        units = plan_units(ctx)
        if not units:
            raise DataIntegrityError(f"Report {scope.report_id} has no readable source documents to analyse")

        done = self.store.completed_evidence_units(scope.report_id)
        pending = [unit for unit in units if unit.key not in done]
        skipped = len(units) - len(pending)
        if skipped:
            scope.log.info(f"Report {scope.report_id}: resuming, {skipped}/{len(units)} units already complete")
            self.stream_text(scope, f"\nResuming: {skipped} of {len(units)} units already done.\n")

        incomplete: List[str] = []
        for index, unit in enumerate(pending, start=1):
            self.check_between_units(scope)
            self.emit(scope, EVENT_GENERATION_PROGRESS, {
                "phase": self.phase,
                "competency": unit.competency.name,
                "level": unit.level.level,
                "source": unit.document.source,
                "current": index,
                "total": len(pending),
            })
            self.stream_text(
                scope,
                f"\n[{index}/{len(pending)}] {unit.competency.name} / level {unit.level.level} / {unit.document.source}\n",
            )

            try:
                saved = self._process_unit(scope, ctx, unit)
            except CompletionParseError as e:
                raw = (e.raw_text or "")[:RAW_LOG_LIMIT]
                scope.log.warning(
                    f"Unit {unit.key.signature} of report {scope.report_id} skipped: {e}. Raw: {raw!r}",
                    extra={"extra_fields": {"unit": unit.key.signature}},
                )
                self.stream_text(scope, "\nCould not read the answer for this unit; skipping it.\n")
                incomplete.append(unit.key.signature)
                continue

            scope.log.info(
                f"Unit {unit.key.signature} of report {scope.report_id}: {saved} evidence rows",
                extra={"extra_fields": {"unit": unit.key.signature, "evidence_count": saved}},
            )
            self.emit(scope, EVENT_EVIDENCE_BATCH_SAVED, {
                "competency": unit.competency.name,
                "level": unit.level.level,
                "source": unit.document.source,
                "count": saved,
            })

        if not self.store.finish(scope.report_id, scope.job.job_id, ReportStatus.COMPLETED):
            raise GenerationCancelled("status_changed", "Report left PROCESSING before evidence completed")

        return {
            "evidenceCount": self.store.count_evidence(scope.report_id),
            "incompleteUnits": incomplete,
            "skippedUnits": skipped,
        }

    def _process_unit(self, scope: RunScope, ctx: GenerationContext, unit: EvidenceUnit) -> int:
        prompt = build_evidence_prompt(ctx, unit.competency, unit.level, unit.document)
        result = self._call_model(
            scope,
            ACTION,
            scope.models.evidence_model,
            scope.models.evidence_temperature,
            prompt,
            stream_to_client=True,
        )
        items = coerce_evidence_items(parse_json(result.text))

        rows: List[EvidenceRecord] = []
        seen = set()
        for item in items:
            kb = canonicalize_kb(item.kb, unit.level.key_behaviors) or item.kb.strip()
            quote = item.quote.strip()
            if (kb, quote) in seen:
                continue
            seen.add((kb, quote))
            rows.append(EvidenceRecord(
                competency=unit.competency.name,
                level=unit.level.level,
                kb=kb,
                quote=quote,
                source=unit.document.source,
                reasoning=item.reasoning,
            ))

        return self.store.replace_unit_evidence(scope.report_id, unit.key, rows, job_id=scope.job.job_id)
