"""
Phase 2 competency analysis: level walk over key-behavior judgments,
narrative, anomaly handling and report-scoped persistence.
"""
import json

import pytest

from conftest import COMPETENCY, JOB_ID, LEVEL_KBS, SOURCE, USER_ID, level_of
from core.exceptions import CompletionParseError, DataIntegrityError
from models import Report, ReportStatus
from schemas import CompetencyLevel, KeyBehaviorJudgment
from services.cancellation import REASON_STATUS_CHANGED, REASON_SUPERSEDED
from services.orchestrator_base import JobContext, PhaseStatus
from services.phase2_analysis import (
    NO_EVIDENCE_REASON,
    UNREADABLE_REASON,
    CompetencyAnalysisOrchestrator,
    match_judgments,
)
from services.report_store import AnalysisRecord, EvidenceRecord, UnitKey

NARRATIVE = {
    "explanation": "The assessee analyses problems methodically.",
    "recommendations": {
        "personal_development": "Reflect on decisions weekly.",
        "assignment": "Lead a cross-team improvement project.",
        "training": "Systems thinking workshop.",
    },
}


def scripted_analysis(passing_levels):
    """Judgment calls fulfil every KB of a passing level and none of the others."""

    def respond(request):
        if "ACHIEVED LEVEL" in request.user_prompt:
            return json.dumps(NARRATIVE)
        level = level_of(request)
        fulfilled = level in passing_levels
        return json.dumps({"key_behaviors": [
            {"kb_text_fragment": kb, "fulfilled": fulfilled, "reasoning": f"level {level} reasoning"}
            for kb in LEVEL_KBS[level]
        ]})

    return respond


@pytest.fixture
def with_evidence(store, report_id):
    for level in (1, 2):
        store.replace_unit_evidence(report_id, UnitKey(COMPETENCY, level, SOURCE), [
            EvidenceRecord(competency=COMPETENCY, level=level, kb=LEVEL_KBS[level][0], quote=f"quote {level}", source=SOURCE),
        ])
    return report_id


def _status(session_factory, report_id):
    db = session_factory()
    try:
        return db.get(Report, report_id).status
    finally:
        db.close()


def test_walk_reaches_target_and_stops_at_ceiling(make_orchestrator, store, events, with_evidence):
    orchestrator, completion = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis({1, 2}))

    outcome = orchestrator.run(with_evidence, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.COMPLETED
    assert outcome.payload == {"competencyCount": 1, "anomalies": []}

    judged = [level_of(r) for r in completion.requests if "ACHIEVED LEVEL" not in r.user_prompt]
    assert judged == [2, 1, 3]
    assert {r.model for r in completion.requests[:3]} == {"main/judge"}
    assert completion.requests[-1].model == "main/narrative"
    assert completion.requests[-1].temperature == 0.5

    [analysis] = store.list_analyses(with_evidence)
    assert analysis.competency == COMPETENCY
    assert analysis.level_achieved == 2
    assert analysis.target_level == 2
    assert not analysis.has_anomaly
    assert analysis.explanation == NARRATIVE["explanation"]
    assert analysis.development_recommendations["training"] == "Systems thinking workshop."
    assert [(kb["level"], kb["fulfilled"]) for kb in analysis.key_behaviors_status] == [
        (1, True), (1, True), (2, True), (2, True), (3, False), (3, False),
    ]
    assert store.get_state(with_evidence).status == ReportStatus.COMPLETED
    assert events.types()[-1] == "generation-complete"


def test_anomaly_caps_level_and_is_explained(make_orchestrator, store, with_evidence):
    # Level 2 met while level 1 is not
    orchestrator, completion = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis({2}))

    outcome = orchestrator.run(with_evidence, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.payload["anomalies"] == [COMPETENCY]
    [analysis] = store.list_analyses(with_evidence)
    assert analysis.level_achieved == 0
    assert analysis.has_anomaly
    assert "**Scoring anomaly:**" in analysis.explanation
    narrative_prompt = completion.requests[-1].user_prompt
    assert "level 1 was not met while higher level(s) 2 were met" in narrative_prompt


def test_no_evidence_means_no_judgment_calls(make_orchestrator, store, report_id):
    orchestrator, completion = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis({1, 2, 3}))

    orchestrator.run(report_id, USER_ID, JobContext(job_id=JOB_ID))

    # Only the narrative call
    assert len(completion.requests) == 1
    [analysis] = store.list_analyses(report_id)
    assert analysis.level_achieved == 0
    assert all(not kb["fulfilled"] for kb in analysis.key_behaviors_status)
    assert {kb["explanation"] for kb in analysis.key_behaviors_status} == {NO_EVIDENCE_REASON}


def test_unreadable_judgment_counts_as_not_observed(make_orchestrator, store, with_evidence):
    passing = scripted_analysis({1, 2, 3})

    def respond(request):
        if level_of(request) == 1:
            return "no idea"
        return passing(request)

    orchestrator, _ = make_orchestrator(CompetencyAnalysisOrchestrator, respond)
    outcome = orchestrator.run(with_evidence, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.COMPLETED
    [analysis] = store.list_analyses(with_evidence)
    assert analysis.level_achieved == 0
    level_one = [kb for kb in analysis.key_behaviors_status if kb["level"] == 1]
    assert {kb["explanation"] for kb in level_one} == {UNREADABLE_REASON}


def test_unreadable_narrative_is_retried(make_orchestrator, store, events, session_factory, with_evidence):
    passing = scripted_analysis({1, 2})

    def respond(request):
        if "ACHIEVED LEVEL" in request.user_prompt:
            return '{"explanation": ""}'
        return passing(request)

    orchestrator, _ = make_orchestrator(CompetencyAnalysisOrchestrator, respond)
    with pytest.raises(CompletionParseError):
        orchestrator.run(with_evidence, USER_ID, JobContext(job_id=JOB_ID, attempt=0, max_attempts=3))

    assert store.list_analyses(with_evidence) == []
    assert _status(session_factory, with_evidence) == ReportStatus.PROCESSING
    assert "generation-retry" in events.types()


def test_rerun_replaces_previous_analyses(make_orchestrator, store, with_evidence):
    orchestrator, _ = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis({1}))
    orchestrator.run(with_evidence, USER_ID, JobContext(job_id=JOB_ID))

    store.mark_processing(with_evidence, "job-2", 2)
    orchestrator, _ = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis({1, 2}))
    orchestrator.run(with_evidence, USER_ID, JobContext(job_id="job-2"))

    analyses = store.list_analyses(with_evidence)
    assert [a.level_achieved for a in analyses] == [2]


@pytest.fixture
def previously_analysed(store, with_evidence):
    store.replace_analyses(with_evidence, JOB_ID, [AnalysisRecord(
        competency=COMPETENCY,
        level_achieved=1,
        target_level=2,
        explanation="Earlier run.",
        development_recommendations={"personal_development": "", "assignment": "", "training": ""},
        key_behaviors_status=[],
    )])
    store.mark_processing(with_evidence, JOB_ID, 2)
    return with_evidence


def test_stop_mid_walk_cancels_before_next_level(make_orchestrator, store, events, previously_analysed):
    answer = scripted_analysis({1, 2})

    def respond(request):
        store.request_stop(previously_analysed)
        return answer(request)

    orchestrator, completion = make_orchestrator(CompetencyAnalysisOrchestrator, respond)
    outcome = orchestrator.run(previously_analysed, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.CANCELLED
    assert outcome.payload["reason"] == REASON_STATUS_CHANGED
    # Only the target level was judged
    assert [level_of(r) for r in completion.requests] == [2]
    assert [a.explanation for a in store.list_analyses(previously_analysed)] == ["Earlier run."]
    assert store.get_state(previously_analysed).status == ReportStatus.COMPLETED
    assert "generation-cancelled" in events.types()
    assert "generation-failed" not in events.types()


@pytest.mark.parametrize("takeover_on", ["judgment", "narrative"])
def test_superseded_job_leaves_analyses_untouched(make_orchestrator, store, events, previously_analysed, takeover_on):
    answer = scripted_analysis({1, 2})

    def respond(request):
        is_narrative = "ACHIEVED LEVEL" in request.user_prompt
        if is_narrative == (takeover_on == "narrative"):
            store.mark_processing(previously_analysed, "job-2", 2)
        return answer(request)

    orchestrator, _ = make_orchestrator(CompetencyAnalysisOrchestrator, respond)
    outcome = orchestrator.run(previously_analysed, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.CANCELLED
    if takeover_on == "judgment":
        assert outcome.payload["reason"] == REASON_SUPERSEDED
    assert [a.explanation for a in store.list_analyses(previously_analysed)] == ["Earlier run."]
    state = store.get_state(previously_analysed)
    assert state.status == ReportStatus.PROCESSING
    assert state.active_job_id == "job-2"
    assert "generation-failed" not in events.types()


def test_missing_targets_fail_fast(make_orchestrator, session_factory, make_report):
    rid = make_report(target_levels={"Unknown": 3})
    orchestrator, completion = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis({1}))

    with pytest.raises(DataIntegrityError):
        orchestrator.run(rid, USER_ID, JobContext(job_id=JOB_ID, max_attempts=3))

    assert completion.requests == []
    assert _status(session_factory, rid) == ReportStatus.FAILED


def test_target_matched_by_competency_id(make_orchestrator, store, make_report):
    rid = make_report(target_levels={"ps": "1"})
    orchestrator, _ = make_orchestrator(CompetencyAnalysisOrchestrator, scripted_analysis(set()))
    orchestrator.run(rid, USER_ID, JobContext(job_id=JOB_ID))
    [analysis] = store.list_analyses(rid)
    assert analysis.target_level == 1


class TestMatchJudgments:
    level = CompetencyLevel(level=2, key_behaviors=LEVEL_KBS[2])

    def test_match_by_text_in_any_order(self):
        judgments = [
            KeyBehaviorJudgment(kb_text_fragment="2. proposes practical solutions", fulfilled=True, evidence_quote_ids=["e1", "made-up"]),
            KeyBehaviorJudgment(kb_text_fragment="Analyses root causes", fulfilled=False),
        ]
        matched = match_judgments(self.level, judgments, evidence_ids={"e1"})
        assert [(m.kb, m.fulfilled) for m in matched] == [
            ("Analyses root causes", False),
            ("Proposes practical solutions", True),
        ]
        # Invented ids are dropped
        assert matched[1].evidence_ids == ["e1"]

    def test_positional_fallback(self):
        judgments = [
            KeyBehaviorJudgment(kb_text_fragment="KB one", fulfilled=True),
            KeyBehaviorJudgment(kb_text_fragment="KB two", fulfilled=True),
        ]
        matched = match_judgments(self.level, judgments)
        assert [m.fulfilled for m in matched] == [True, True]

    def test_missing_judgment_is_not_fulfilled(self):
        matched = match_judgments(self.level, [KeyBehaviorJudgment(kb_text_fragment="Analyses root causes", fulfilled=True)])
        assert [m.fulfilled for m in matched] == [True, False]
        assert matched[1].reasoning == NO_EVIDENCE_REASON
