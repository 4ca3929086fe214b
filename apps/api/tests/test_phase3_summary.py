"""Phase 3 executive summary: draft, critique, fallback to the draft."""
import json

import pytest

from conftest import COMPETENCY, JOB_ID, USER_ID
from core.exceptions import DataIntegrityError
from models import ReportStatus
from schemas import ExecutiveSummaryOutput
from services.cancellation import REASON_SUPERSEDED
from services.orchestrator_base import JobContext, PhaseStatus
from services.phase3_summary import ExecutiveSummaryOrchestrator
from services.report_store import AnalysisRecord

DRAFT = {
    "Overview": "Draft overview.",
    "Strengths": ["Structured thinking", "Calm under pressure"],
    "Weaknesses": "Delegation",
    "Recommendations": "Stretch assignments",
}

FINAL = {
    "overview": "A structured thinker whose calm supports the team, though delegation lags.",
    "strengths": "Structured thinking",
    "weaknesses": "Delegation",
    "recommendations": "Lead a project with a larger team.",
}


@pytest.fixture
def analysed_report(store, report_id):
    store.replace_analyses(report_id, JOB_ID, [AnalysisRecord(
        competency=COMPETENCY,
        level_achieved=2,
        target_level=2,
        explanation="Meets the target level.",
        development_recommendations={"personal_development": "", "assignment": "Lead", "training": ""},
        key_behaviors_status=[],
    )])
    store.mark_processing(report_id, JOB_ID, 3)
    return report_id


def scripted_summary(critique_text=None):
    def respond(request):
        if "DRAFT CONTENT" in request.user_prompt:
            return critique_text if critique_text is not None else json.dumps(FINAL)
        return json.dumps(DRAFT)

    return respond


def test_critique_refines_the_draft(make_orchestrator, store, events, analysed_report):
    orchestrator, completion = make_orchestrator(ExecutiveSummaryOrchestrator, scripted_summary())

    outcome = orchestrator.run(analysed_report, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.COMPLETED
    draft_request, critique_request = completion.requests
    assert COMPETENCY in draft_request.user_prompt
    assert "Structured thinking" in critique_request.user_prompt
    assert draft_request.temperature == 0.5
    assert critique_request.temperature == 0.4

    summary = store.get_summary(analysed_report)
    assert summary.overview == FINAL["overview"]
    assert summary.recommendations == FINAL["recommendations"]
    assert store.get_state(analysed_report).status == ReportStatus.COMPLETED
    assert events.types()[-1] == "generation-complete"


def test_unreadable_critique_keeps_the_draft(make_orchestrator, store, analysed_report):
    orchestrator, _ = make_orchestrator(ExecutiveSummaryOrchestrator, scripted_summary("I think it reads well."))

    outcome = orchestrator.run(analysed_report, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.COMPLETED
    summary = store.get_summary(analysed_report)
    assert summary.overview == "Draft overview."
    assert summary.strengths == "- Structured thinking\n- Calm under pressure"


def test_stop_between_draft_and_critique(make_orchestrator, store, analysed_report):
    def respond(request):
        store.request_stop(analysed_report)
        return json.dumps(DRAFT)

    orchestrator, completion = make_orchestrator(ExecutiveSummaryOrchestrator, respond)
    outcome = orchestrator.run(analysed_report, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.CANCELLED
    assert len(completion.requests) == 1
    assert store.get_summary(analysed_report) is None


def test_requires_competency_analyses(make_orchestrator, store, report_id):
    orchestrator, completion = make_orchestrator(ExecutiveSummaryOrchestrator, scripted_summary())

    with pytest.raises(DataIntegrityError):
        orchestrator.run(report_id, USER_ID, JobContext(job_id=JOB_ID, max_attempts=3))

    assert completion.requests == []
    assert store.get_state(report_id).status == ReportStatus.FAILED


@pytest.mark.parametrize("takeover_step", ["draft", "critique"])
def test_superseded_job_leaves_summary_untouched(make_orchestrator, store, events, analysed_report, takeover_step):
    store.replace_summary(analysed_report, JOB_ID, ExecutiveSummaryOutput(
        overview="Earlier summary.", strengths="S", weaknesses="W", recommendations="R",
    ))
    store.mark_processing(analysed_report, JOB_ID, 3)
    answer = scripted_summary()

    def respond(request):
        step = "critique" if "DRAFT CONTENT" in request.user_prompt else "draft"
        if step == takeover_step:
            store.mark_processing(analysed_report, "job-2", 3)
        return answer(request)

    orchestrator, completion = make_orchestrator(ExecutiveSummaryOrchestrator, respond)
    outcome = orchestrator.run(analysed_report, USER_ID, JobContext(job_id=JOB_ID))

    assert outcome.status == PhaseStatus.CANCELLED
    if takeover_step == "draft":
        assert outcome.payload["reason"] == REASON_SUPERSEDED
        assert len(completion.requests) == 1
    assert store.get_summary(analysed_report).overview == "Earlier summary."
    state = store.get_state(analysed_report)
    assert state.status == ReportStatus.PROCESSING
    assert state.active_job_id == "job-2"
    assert "generation-failed" not in events.types()
