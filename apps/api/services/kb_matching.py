"""
Key Behavior canonicalization.

Models paraphrase, renumber or truncate key-behavior text when they echo it
back. Evidence is stored against the dictionary's official wording whenever
the echoed text can be matched to it.

Match rules, in order:
1. Exact match after normalization wins.
2. Containment in either direction. Among several containment matches the
   longest official text wins; equal lengths fall back to dictionary order.
3. No match returns None (the caller keeps the model's text).
"""
import re
from typing import Iterable, Optional

# "1.", "1)", "(2)", "a.", "b)", "-", "*", "•" and combinations like "1. -"
_LEADING_MARKER = re.compile(r"^\s*(?:(?:\(?\d+[\.\)]|\(?[a-zA-Z][\.\)]|[-*•–])\s*)+")
_WHITESPACE = re.compile(r"\s+")


def normalize_kb(text: Optional[str]) -> str:
    """Strip leading numbering/bullets, collapse whitespace, case-fold."""
    if not text:
        return ""
    stripped = _LEADING_MARKER.sub("", text)
    return _WHITESPACE.sub(" ", stripped).strip().casefold()


def canonicalize_kb(candidate: Optional[str], official: Iterable[str]) -> Optional[str]:
    """Return the official key-behavior text ``candidate`` refers to, or None."""
    needle = normalize_kb(candidate)
    if not needle:
        return None

    best: Optional[str] = None
    best_length = -1
    for text in official:
        normalized = normalize_kb(text)
        if not normalized:
            continue
        if normalized == needle:
            return text
        if needle in normalized or normalized in needle:
            if len(normalized) > best_length:
                best = text
                best_length = len(normalized)
    return best
