"""
Reports API: start, stop and status of generation phases, plus /health.
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from conftest import USER_ID, FakeCelery
from core.database import SessionLocal
from main import app
from models import ReportStatus
from routers.reports import get_job_queue
from services.job_queue import JOB_GENERATE_PHASE_1, JobQueue
from services.report_store import EvidenceRecord, ReportStore, UnitKey

HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def celery():
    fake = FakeCelery()
    app.dependency_overrides[get_job_queue] = lambda: JobQueue(fake, ReportStore(SessionLocal))
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client(celery):
    return TestClient(app)


@pytest.fixture
def idle_report(make_report):
    return make_report(status=ReportStatus.CREATED, active_job_id=None)


def test_start_phase_one(client, celery, store, idle_report):
    response = client.post(f"/v1/reports/{idle_report}/generate/1", headers=HEADERS)

    assert response.status_code == 202
    body = response.json()
    assert body["phase"] == 1
    assert body["report_id"] == str(idle_report)

    [(name, kwargs, options)] = celery.sent
    assert name == JOB_GENERATE_PHASE_1
    assert kwargs["user_id"] == USER_ID
    assert options["task_id"] == body["job_id"]
    state = store.get_state(idle_report)
    assert state.status == ReportStatus.PROCESSING
    assert state.active_job_id == body["job_id"]


def test_running_report_conflicts(client, celery, report_id):
    response = client.post(f"/v1/reports/{report_id}/generate/1", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["error_code"] == "CONFLICT"
    assert celery.sent == []


def test_phase_prerequisites(client, store, idle_report):
    assert client.post(f"/v1/reports/{idle_report}/generate/2", headers=HEADERS).status_code == 409
    assert client.post(f"/v1/reports/{idle_report}/generate/3", headers=HEADERS).status_code == 409

    store.replace_unit_evidence(idle_report, UnitKey("Problem Solving", 1, "Case Study"), [
        EvidenceRecord(competency="Problem Solving", level=1, kb="kb", quote="q", source="Case Study"),
    ])
    assert client.post(f"/v1/reports/{idle_report}/generate/2", headers=HEADERS).status_code == 202


def test_invalid_phase_and_unknown_report(client, idle_report):
    assert client.post(f"/v1/reports/{idle_report}/generate/4", headers=HEADERS).status_code == 422
    response = client.post(f"/v1/reports/{uuid.uuid4()}/generate/1", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"


def test_user_header_is_required(client, idle_report):
    assert client.post(f"/v1/reports/{idle_report}/generate/1").status_code == 422


def test_stop_accepts_partial_result(client, store, report_id):
    response = client.post(f"/v1/reports/{report_id}/stop", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["stopped"] is True
    state = store.get_state(report_id)
    assert state.status == ReportStatus.COMPLETED
    assert state.active_job_id is None

    again = client.post(f"/v1/reports/{report_id}/stop", headers=HEADERS)
    assert again.json()["stopped"] is False


def test_status(client, report_id):
    response = client.get(f"/v1/reports/{report_id}/status", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == ReportStatus.PROCESSING
    assert body["active_job_id"] == "job-1"
    assert body["active_phase"] == 1


def test_health_without_redis_is_degraded(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["database"] is True
