"""
Tolerant parsing of model output.

Models are asked for strict JSON but do not always comply: code fences,
prose around the object, capitalized keys, a bare list where an object was
requested. Each coercion below tries a fixed fallback order and raises
CompletionParseError when none applies, so callers decide whether a bad
response is contained (Phase 1 units) or retried (Phase 2/3).
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.exceptions import CompletionParseError
from schemas import EvidenceItem, KeyBehaviorJudgment, NarrativeOutput, ExecutiveSummaryOutput, RefinementOutput

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json|JSON)?")

EVIDENCE_KEYS = ("evidence", "Evidence", "evidences", "EVIDENCE")
JUDGMENT_KEYS = ("key_behaviors", "keyBehaviors", "Key_Behaviors", "KeyBehaviors", "judgments")
SUMMARY_FIELDS = ("overview", "strengths", "weaknesses", "recommendations")


def _outer_spans(clean: str) -> List[str]:
    spans = []
    for opener, closer in (("[", "]"), ("{", "}")):
        start, end = clean.find(opener), clean.rfind(closer)
        if start != -1 and end > start:
            spans.append((start, clean[start:end + 1]))
    return [span for _, span in sorted(spans)]


def _largest_decodable(clean: str) -> Optional[str]:
    decoder = json.JSONDecoder()
    best = None
    for i, ch in enumerate(clean):
        if ch not in "{[":
            continue
        try:
            _, end = decoder.raw_decode(clean, i)
        except json.JSONDecodeError:
            continue
        if best is None or end - i > len(best):
            best = clean[i:end]
    return best


def extract_json_text(text: Optional[str]) -> str:
    """
    Remove code fences and trim to the JSON value embedded in the text.

    Outermost spans are tried first, earliest opener first, so a bare array
    still wins over the objects inside it. Prose that carries its own
    brackets ("[Case Study]") breaks those spans; then the largest value
    that decodes from any opening brace or bracket is used.
    """
    if not text:
        return ""
    clean = _FENCE.sub("", text).strip()

    spans = _outer_spans(clean)
    for span in spans:
        try:
            json.loads(span)
        except json.JSONDecodeError:
            continue
        return span

    embedded = _largest_decodable(clean)
    if embedded is not None:
        return embedded
    return spans[0] if spans else clean


def parse_json(text: Optional[str]) -> Any:
    """Parse model output into a JSON value or raise CompletionParseError."""
    candidate = extract_json_text(text)
    if not candidate:
        raise CompletionParseError("Empty model response", raw_text=text)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise CompletionParseError(f"Model response is not valid JSON: {e}", raw_text=text) from e


def parse_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Like parse_json, but the top-level value must be an object."""
    value = parse_json(text)
    if not isinstance(value, dict):
        raise CompletionParseError("Expected a JSON object", raw_text=text)
    return value


def _first_present(obj: Dict[str, Any], keys) -> Optional[Any]:
    for key in keys:
        if key in obj and obj[key] is not None:
            return obj[key]
    return None


def coerce_evidence_items(value: Any) -> List[EvidenceItem]:
    """
    Evidence list from a parsed response.

    Fallback order: ``evidence`` key (any known casing) -> bare list ->
    a single evidence-shaped object. Malformed items are dropped; a
    container that holds no list at all is a parse error.
    """
    items: Any = None
    if isinstance(value, dict):
        items = _first_present(value, EVIDENCE_KEYS)
        if items is None and "quote" in value:
            items = [value]
        elif isinstance(items, dict):
            items = [items]
    elif isinstance(value, list):
        items = value

    if not isinstance(items, list):
        raise CompletionParseError("Response does not contain an evidence list", raw_text=json.dumps(value, default=str))

    evidence: List[EvidenceItem] = []
    for raw in items:
        if not isinstance(raw, dict):
            continue
        try:
            evidence.append(EvidenceItem.model_validate(raw))
        except ValidationError as e:
            logger.debug(f"Dropping malformed evidence item: {e}")
    return evidence


def coerce_kb_judgments(value: Any) -> List[KeyBehaviorJudgment]:
    """
    Key-behavior judgments from a parsed response.

    Fallback order: ``key_behaviors`` key (any known casing) -> bare list.
    """
    items: Any = None
    if isinstance(value, dict):
        items = _first_present(value, JUDGMENT_KEYS)
    elif isinstance(value, list):
        items = value

    if not isinstance(items, list):
        raise CompletionParseError("Response does not contain key_behaviors", raw_text=json.dumps(value, default=str))

    judgments: List[KeyBehaviorJudgment] = []
    for raw in items:
        if not isinstance(raw, dict):
            continue
        try:
            judgments.append(KeyBehaviorJudgment.model_validate(raw))
        except ValidationError as e:
            logger.debug(f"Dropping malformed judgment: {e}")
    return judgments


def coerce_narrative(value: Any) -> NarrativeOutput:
    """
    Narrative + categorized recommendations.

    Accepts recommendations nested under ``recommendations`` /
    ``development_recommendations`` or flattened into the top-level object.
    """
    if not isinstance(value, dict):
        raise CompletionParseError("Narrative response is not an object")

    explanation = _first_present(value, ("explanation", "Explanation", "narrative"))
    recs = _first_present(value, ("recommendations", "development_recommendations", "Recommendations"))
    if not isinstance(recs, dict):
        recs = value
    try:
        return NarrativeOutput.model_validate({"explanation": explanation or "", "recommendations": recs})
    except ValidationError as e:
        raise CompletionParseError(f"Narrative response failed validation: {e}") from e


def _normalize_summary_keys(obj: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for field in SUMMARY_FIELDS:
        value = _first_present(obj, (field, field.capitalize(), field.upper()))
        if value is None and field == "weaknesses":
            value = _first_present(obj, ("areas_for_improvement", "Areas_for_improvement"))
        if isinstance(value, list):
            value = "\n".join(f"- {item}" for item in value)
        normalized[field] = value if isinstance(value, str) else ""
    return normalized


def coerce_summary(value: Any) -> ExecutiveSummaryOutput:
    """
    Executive summary from a parsed response.

    Fallback order: lowercase keys -> capitalized/upper keys -> the same
    lookups one level down when the model wrapped the object
    (e.g. ``{"summary": {...}}``).
    """
    if not isinstance(value, dict):
        raise CompletionParseError("Summary response is not an object")

    candidates = [value]
    candidates.extend(v for v in value.values() if isinstance(v, dict))

    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            return ExecutiveSummaryOutput.model_validate(_normalize_summary_keys(candidate))
        except ValidationError as e:
            last_error = e
    raise CompletionParseError(f"Summary response failed validation: {last_error}")


def coerce_refinement(value: Any) -> RefinementOutput:
    """Ask AI answer. A list-valued refined_content is joined into paragraphs."""
    if not isinstance(value, dict):
        raise CompletionParseError("Refinement response is not an object")
    data = dict(value)
    for key in ("refined_content", "refinedContent", "content"):
        if isinstance(data.get(key), list):
            data[key] = "\n\n".join(str(item) for item in data[key])
    try:
        return RefinementOutput.model_validate(data)
    except ValidationError as e:
        raise CompletionParseError(f"Refinement response failed validation: {e}") from e
