"""
Competency level search: walk order, prefix-closed final level, anomalies.
"""
import pytest

from services.level_search import (
    KBJudgment,
    LevelResult,
    LevelSearch,
    compute_final_level,
    find_anomalies,
    level_passes,
)


def _result(level, fulfilled, total=2, threshold=0.5):
    judgments = [
        KBJudgment(level=level, kb=f"kb{level}.{i}", fulfilled=i < fulfilled)
        for i in range(total)
    ]
    return LevelResult(level=level, judgments=judgments, threshold=threshold)


def _search(outcomes, max_level=None):
    """outcomes: {level: passed}"""
    calls = []

    def evaluate(level):
        calls.append(level)
        return _result(level, 2 if outcomes.get(level) else 0)

    search = LevelSearch(max_level or max(outcomes), evaluate)
    return search, calls


class TestLevelPasses:
    def test_threshold_is_inclusive(self):
        assert level_passes(_result(1, 1).judgments, 0.5)
        assert not level_passes(_result(1, 1, total=3).judgments, 0.5)

    def test_empty_level_never_passes(self):
        assert not level_passes([], 0.5)


class TestFinalLevel:
    def test_prefix_closure(self):
        passes = {1: True, 2: True, 3: False, 4: True, 5: True}
        assert compute_final_level(passes) == 2

    def test_level_one_failed(self):
        assert compute_final_level({1: False, 2: True}) == 0

    def test_anomaly_detection(self):
        anomalies = find_anomalies({1: False, 2: True})
        assert len(anomalies) == 1
        assert anomalies[0].failed_level == 1
        assert anomalies[0].passed_levels == [2]
        assert "level 1 was not met" in anomalies[0].describe()

    def test_growth_ceiling_is_not_an_anomaly(self):
        assert find_anomalies({1: True, 2: True, 3: False}) == []


class TestLevelSearch:
    def test_walk_order_target_foundation_growth(self):
        search, calls = _search({1: True, 2: True, 3: True, 4: False, 5: True})
        result = search.run(2)
        # target, foundation down, growth until first failure
        assert calls == [2, 1, 3, 4]
        assert result.evaluation_order == [2, 1, 3, 4]
        assert result.final_level == 3
        assert not result.has_anomaly

    def test_failed_target_skips_growth(self):
        search, calls = _search({1: True, 2: False, 3: True})
        result = search.run(2)
        assert calls == [2, 1]
        assert result.final_level == 1

    def test_passed_target_over_failed_foundation(self):
        search, _ = _search({1: False, 2: True, 3: False})
        result = search.run(2)
        assert result.final_level == 0
        assert result.has_anomaly
        assert result.anomalies[0].failed_level == 1

    def test_target_is_clamped(self):
        search, calls = _search({1: True, 2: True, 3: True})
        result = search.run(9)
        assert result.target_level == 3
        assert calls == [3, 2, 1]
        assert result.final_level == 3

        search, calls = _search({1: True, 2: False})
        assert search.run(0).target_level == 1

    def test_on_level_receives_stages(self):
        stages = []
        search = LevelSearch(
            3,
            lambda level: _result(level, 2),
            on_level=lambda level, stage: stages.append((level, stage)),
        )
        search.run(2)
        assert stages == [(2, "target"), (1, "foundation"), (3, "growth")]

    @pytest.mark.parametrize("target,expected", [(1, 2), (2, 2), (3, 2), (5, 2)])
    def test_final_level_independent_of_target(self, target, expected):
        search, _ = _search({1: True, 2: True, 3: False, 4: True, 5: True})
        assert search.run(target).final_level == expected
