"""
Prompt assembly for every model call in the pipeline.

Each builder is a pure function of the generation context and returns a
Prompt (system + user text). Project-level overrides come from
ProjectPrompts; anything left empty falls back to DEFAULT_PROMPTS.
"""
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from schemas import Competency, CompetencyLevel

if TYPE_CHECKING:
    from services.level_search import SearchResult
    from services.report_store import GenerationContext, SourceDocumentData

NOT_AVAILABLE = "N/A"

DEFAULT_PROMPTS: Dict[str, str] = {
    "persona": (
        "You are a senior assessment-center assessor. You write in a formal, "
        "analytical register and base every statement on observable behavior."
    ),
    "general_context": "",
    "evidence": (
        "Scan the assessee's output below. Extract verbatim quotes that demonstrate "
        "the listed key behaviors. Only quote text that actually appears in the "
        "document, and explain for each quote why it matches the key behavior."
    ),
    "kb_fulfillment": (
        "Decide, for every key behavior listed, whether the evidence pool shows the "
        "behavior. A key behavior is fulfilled only when at least one quote clearly "
        "demonstrates it."
    ),
    "competency_level": (
        "Write a cohesive explanation of the level the assessee achieved for this "
        "competency, grounded in the key-behavior results."
    ),
    "development": (
        "Recommend development actions that close the gaps identified in the "
        "key-behavior results."
    ),
    "summary": (
        "Write an executive summary of the assessee. The overview must weave "
        "strengths and weaknesses into one narrative instead of listing them."
    ),
    "summary_critique": (
        "Review the draft summary. Remove any contradiction between the overview "
        "and the strengths or weaknesses sections and tighten the narrative."
    ),
    "ask_ai": (
        "You are an expert assessment report editor. Rewrite the given section of an "
        "assessment report following the user's instruction. Keep every statement "
        "consistent with the context provided and do not invent new observations."
    ),
}

EVIDENCE_SCHEMA = {
    "evidence": [
        {"kb": "exact key behavior text", "quote": "verbatim quote", "reasoning": "why the quote matches"}
    ]
}

JUDGMENT_SCHEMA = {
    "key_behaviors": [
        {
            "kb_text_fragment": "the key behavior text",
            "fulfilled": True,
            "reasoning": "why; do not put evidence ids here",
            "evidence_quote_ids": ["ID1", "ID2"],
        }
    ]
}

NARRATIVE_SCHEMA = {
    "explanation": "markdown narrative",
    "recommendations": {
        "personal_development": "markdown",
        "assignment": "markdown",
        "training": "markdown",
    },
}

SUMMARY_SCHEMA = {
    "overview": "narrative blending strengths and weaknesses",
    "strengths": "overall strengths",
    "weaknesses": "overall weaknesses",
    "recommendations": "overall recommendations",
}

REFINEMENT_SCHEMA = {
    "refined_content": "the full rewritten text",
    "reasoning": "one or two sentences on what was changed",
}


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str


def resolve_prompts(overrides: Optional[Dict[str, Optional[str]]]) -> Dict[str, str]:
    """Merge project overrides onto the defaults; blank overrides are ignored."""
    resolved = dict(DEFAULT_PROMPTS)
    for key, value in (overrides or {}).items():
        if key in resolved and value and value.strip():
            resolved[key] = value
    return resolved


def _section(title: str, body: Optional[str]) -> str:
    return f"=== {title} ===\n{body.strip() if body and body.strip() else NOT_AVAILABLE}"


def _output_requirement(schema: dict) -> str:
    return (
        "*** OUTPUT REQUIREMENT ***\n"
        "Return ONLY a JSON object with exactly this structure and lowercase keys:\n"
        f"{json.dumps(schema, indent=2)}"
    )


def _system_prompt(ctx: "GenerationContext") -> str:
    parts = [ctx.prompts["persona"]]
    if ctx.prompts.get("general_context"):
        parts.append(ctx.prompts["general_context"])
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def _guidelines(ctx: "GenerationContext", sources: Iterable[str]) -> List[str]:
    sim_lines = [
        f"[{source}]: {ctx.simulation_guides[source]}"
        for source in sources
        if ctx.simulation_guides.get(source)
    ]
    return [
        _section("GLOBAL GUIDELINES", ctx.global_guide),
        _section("PROJECT GUIDELINES", ctx.project_guide),
        _section("SIMULATION METHOD GUIDELINES", "\n\n".join(sim_lines)),
        _section("REPORT SPECIFIC CONTEXT", ctx.specific_context),
    ]


def _numbered(items: Iterable[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


def build_evidence_prompt(
    ctx: "GenerationContext",
    competency: Competency,
    level: CompetencyLevel,
    document: "SourceDocumentData",
) -> Prompt:
    """One Phase 1 unit: a single competency level against a single document."""
    user = "\n\n".join([
        ctx.prompts["evidence"],
        *_guidelines(ctx, [document.source]),
        _section("COMPETENCY", f"{competency.name}\n{competency.definition}"),
        _section(f"LEVEL {level.level}", level.definition),
        _section("KEY BEHAVIORS TO MATCH", _numbered(level.key_behaviors)),
        _section(f"ASSESSEE OUTPUT (source: {document.source})", document.text),
        "Match only the key behaviors listed above, only for this level and this source. "
        "Copy the key behavior text exactly as listed. Return an empty list when nothing matches.",
        _output_requirement(EVIDENCE_SCHEMA),
    ])
    return Prompt(system=_system_prompt(ctx), user=user)


def format_evidence_pool(evidence: Iterable) -> str:
    lines = [
        f"[Level: {e.level}] SOURCE [{e.source}] (ID:{e.id}): \"{e.quote}\"\n   Context: {e.reasoning or ''}"
        for e in evidence
    ]
    return "\n\n".join(lines)


def build_kb_judgment_prompt(
    ctx: "GenerationContext",
    competency: Competency,
    level: CompetencyLevel,
    evidence: List,
) -> Prompt:
    sources = sorted({e.source for e in evidence})
    user = "\n\n".join([
        ctx.prompts["kb_fulfillment"],
        *_guidelines(ctx, sources),
        _section("COMPETENCY", competency.name),
        _section(f"LEVEL {level.level}", level.definition),
        _section("KEY BEHAVIORS TO EVALUATE", _numbered(level.key_behaviors)),
        _section("EVIDENCE POOL", format_evidence_pool(evidence)),
        "Return one entry per key behavior, in the order listed.",
        _output_requirement(JUDGMENT_SCHEMA),
    ])
    return Prompt(system=_system_prompt(ctx), user=user)


def format_judgment_trail(search: "SearchResult") -> str:
    blocks = []
    for level in sorted(search.results):
        result = search.results[level]
        verdict = "PASSED" if result.passed else "NOT PASSED"
        lines = [f"--- LEVEL {level} ({result.fulfilled_count}/{result.total} fulfilled, {verdict}) ---"]
        for j in result.judgments:
            mark = "FULFILLED" if j.fulfilled else "NOT_OBSERVED"
            lines.append(f"- [{mark}] {j.kb}: {j.reasoning}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_narrative_prompt(
    ctx: "GenerationContext",
    competency: Competency,
    search: "SearchResult",
) -> Prompt:
    level_defs = "\n".join(f"Level {lvl.level}: {lvl.definition}" for lvl in competency.levels)
    anomaly_text = (
        "\n".join(f"- {a.describe()}" for a in search.anomalies)
        if search.anomalies else "None"
    )
    user = "\n\n".join([
        ctx.prompts["competency_level"],
        ctx.prompts["development"],
        *_guidelines(ctx, []),
        _section("COMPETENCY", competency.name),
        _section("TARGET LEVEL", str(search.target_level)),
        _section("ACHIEVED LEVEL", str(search.final_level)),
        _section("DICTIONARY LEVELS", level_defs),
        _section("KEY BEHAVIOR RESULTS", format_judgment_trail(search)),
        _section("SCORING ANOMALIES", anomaly_text),
        "Explain the achieved level. If anomalies are listed, address them explicitly. "
        "Split recommendations into exactly the three categories shown.",
        _output_requirement(NARRATIVE_SCHEMA),
    ])
    return Prompt(system=_system_prompt(ctx), user=user)


def format_analyses(analyses: Iterable) -> str:
    blocks = []
    for a in analyses:
        recs = a.development_recommendations or {}
        recs_text = "\n".join(f"- {k}: {v}" for k, v in recs.items() if v)
        blocks.append(
            f"## {a.competency} (Level {a.level_achieved}, target {a.target_level})\n"
            f"{a.explanation}\nDevelopment recommendations:\n{recs_text or NOT_AVAILABLE}"
        )
    return "\n\n".join(blocks)


def build_summary_draft_prompt(ctx: "GenerationContext", analyses: List) -> Prompt:
    user = "\n\n".join([
        ctx.prompts["summary"],
        *_guidelines(ctx, []),
        _section("COMPETENCY ANALYSIS DATA", format_analyses(analyses)),
        _output_requirement(SUMMARY_SCHEMA),
    ])
    return Prompt(system=_system_prompt(ctx), user=user)


def build_summary_critique_prompt(ctx: "GenerationContext", draft: Dict[str, str]) -> Prompt:
    draft_text = "\n".join(
        f"{field.capitalize()}: {draft.get(field, '')}" for field in SUMMARY_SCHEMA
    )
    user = "\n\n".join([
        ctx.prompts["summary_critique"],
        _section("DRAFT CONTENT", draft_text),
        "*** TASK ***\n"
        "1. Check whether the overview contradicts the strengths or weaknesses.\n"
        "2. Make the overview read as one narrative about how the traits interact.\n"
        "3. Output the final refined JSON in the same structure.",
        _output_requirement(SUMMARY_SCHEMA),
    ])
    return Prompt(system=_system_prompt(ctx), user=user)


def build_ask_ai_prompt(system: str, context: str, current_content: str, instruction: str) -> Prompt:
    """Ask AI: rewrite ``current_content`` following ``instruction`` within ``context``."""
    user = "\n\n".join([
        _section("CONTEXT FOR REFINEMENT", context),
        _section("CURRENT CONTENT", current_content),
        _section("USER INSTRUCTION", instruction),
        _output_requirement(REFINEMENT_SCHEMA),
    ])
    return Prompt(system=system.strip(), user=user)
