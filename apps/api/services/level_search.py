"""
Competency level search.

Walk order for one competency:
1. The target level.
2. Foundation: every level below the target, down to level 1, whatever the
   target's outcome.
3. Growth: only if the target passed, target+1, target+2, ... while each
   new level passes. The first failure caps the ceiling.

The achieved level is prefix-closed: the largest N such that levels 1..N
all passed. A failed level below a passed one is an anomaly; it lowers the
result instead of being skipped, and is reported to the narrative step.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional


@dataclass
class KBJudgment:
    level: int
    kb: str
    fulfilled: bool
    reasoning: str = ""
    evidence_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "kb": self.kb,
            "fulfilled": self.fulfilled,
            "explanation": self.reasoning,
            "evidence_ids": list(self.evidence_ids),
        }


@dataclass
class LevelResult:
    level: int
    judgments: List[KBJudgment]
    threshold: float

    @property
    def total(self) -> int:
        return len(self.judgments)

    @property
    def fulfilled_count(self) -> int:
        return sum(1 for j in self.judgments if j.fulfilled)

    @property
    def ratio(self) -> float:
        return self.fulfilled_count / self.total if self.total else 0.0

    @property
    def passed(self) -> bool:
        return level_passes(self.judgments, self.threshold)


@dataclass
class LevelAnomaly:
    failed_level: int
    passed_levels: List[int]

    def describe(self) -> str:
        above = ", ".join(str(lvl) for lvl in self.passed_levels)
        return f"level {self.failed_level} was not met while higher level(s) {above} were met"


@dataclass
class SearchResult:
    target_level: int
    results: Dict[int, LevelResult]
    evaluation_order: List[int]
    final_level: int
    anomalies: List[LevelAnomaly]

    @property
    def has_anomaly(self) -> bool:
        return bool(self.anomalies)

    @property
    def passes(self) -> Dict[int, bool]:
        return {lvl: res.passed for lvl, res in self.results.items()}


def level_passes(judgments: List[KBJudgment], threshold: float) -> bool:
    """A level with no key behaviors cannot be demonstrated and never passes."""
    if not judgments:
        return False
    fulfilled = sum(1 for j in judgments if j.fulfilled)
    return fulfilled / len(judgments) >= threshold


def compute_final_level(passes: Mapping[int, bool]) -> int:
    """Largest N such that levels 1..N all passed; 0 when level 1 failed."""
    achieved = 0
    level = 1
    while passes.get(level, False):
        achieved = level
        level += 1
    return achieved


def find_anomalies(passes: Mapping[int, bool]) -> List[LevelAnomaly]:
    """Every failed level that sits below at least one passed level."""
    anomalies = []
    for level in sorted(passes):
        if passes[level]:
            continue
        higher = [lvl for lvl in sorted(passes) if lvl > level and passes[lvl]]
        if higher:
            anomalies.append(LevelAnomaly(failed_level=level, passed_levels=higher))
    return anomalies


class LevelSearch:
    """Runs the walk for one competency; ``evaluate`` does the model call."""

    def __init__(self, max_level: int, evaluate: Callable[[int], LevelResult],
                 on_level: Optional[Callable[[int, str], None]] = None):
        self.max_level = max_level
        self.evaluate = evaluate
        self.on_level = on_level

    def _run_level(self, level: int, stage: str, results: Dict[int, LevelResult], order: List[int]) -> LevelResult:
        if self.on_level:
            self.on_level(level, stage)
        result = self.evaluate(level)
        results[level] = result
        order.append(level)
        return result

    def run(self, target_level: int) -> SearchResult:
        target = max(1, min(target_level, self.max_level))
        results: Dict[int, LevelResult] = {}
        order: List[int] = []

        target_result = self._run_level(target, "target", results, order)

        for level in range(target - 1, 0, -1):
            self._run_level(level, "foundation", results, order)

        if target_result.passed:
            level = target + 1
            while level <= self.max_level:
                if not self._run_level(level, "growth", results, order).passed:
                    break
                level += 1

        passes = {lvl: res.passed for lvl, res in results.items()}
        return SearchResult(
            target_level=target,
            results=results,
            evaluation_order=order,
            final_level=compute_final_level(passes),
            anomalies=find_anomalies(passes),
        )
