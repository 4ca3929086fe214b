"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database (one shared connection, see
core.database.create_db_engine). Every table is emptied after each test, so
nothing leaks between tests.
"""
import os
import re
import sys
import uuid
from typing import Callable, List

import pytest

# Must be set before anything imports core.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENT_RELAY_ENABLED"] = "false"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import (  # noqa: E402
    CompetencyDictionary,
    Project,
    Report,
    ReportStatus,
    SourceDocument,
)
from services.ai_log_service import AILogService  # noqa: E402
from services.completion_service import CompletionService  # noqa: E402
from services.pipeline_config import PipelineConfig  # noqa: E402
from services.report_store import ReportStore  # noqa: E402

COMPETENCY = "Problem Solving"
SOURCE = "Case Study"
USER_ID = "user-1"
JOB_ID = "job-1"

LEVEL_KBS = {
    1: ["Identifies the core problem", "Gathers relevant information"],
    2: ["Analyses root causes", "Proposes practical solutions"],
    3: ["Anticipates second-order effects", "Builds contingency plans"],
}

DICTIONARY_CONTENT = {
    "competencies": [
        {
            "id": "ps",
            "name": COMPETENCY,
            "definition": "Finds workable answers to unclear business problems.",
            "levels": [
                {"level": n, "definition": f"Level {n} definition", "key_behaviors": kbs}
                for n, kbs in LEVEL_KBS.items()
            ],
        }
    ]
}

CASE_STUDY_TEXT = (
    "I started by defining the problem with the regional manager. "
    "I asked the finance team for the last two quarters of data. "
    "The root cause was the approval delay in procurement. "
    "I proposed a weekly sync between procurement and sales."
)

_LEVEL_SECTION = re.compile(r"=== LEVEL (\d+) ===")


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def store(session_factory):
    return ReportStore(session_factory)


@pytest.fixture
def make_report(session_factory):
    """Factory: seeded dictionary + project + report (+ one Case Study document)."""

    def _make(
        status: str = ReportStatus.PROCESSING,
        active_job_id=JOB_ID,
        target_levels=None,
        documents=((SOURCE, CASE_STUDY_TEXT),),
        content=None,
    ) -> uuid.UUID:
        db = session_factory()
        try:
            dictionary = CompetencyDictionary(name="Leadership 2026", content=content or DICTIONARY_CONTENT)
            db.add(dictionary)
            db.flush()
            project = Project(name="Graduate Program", dictionary_id=dictionary.id)
            db.add(project)
            db.flush()
            report = Report(
                title="Assessee A",
                project_id=project.id,
                creator_id=USER_ID,
                status=status,
                target_levels={COMPETENCY: 2} if target_levels is None else target_levels,
                active_job_id=active_job_id,
                active_phase=1 if status == ReportStatus.PROCESSING else None,
            )
            db.add(report)
            db.flush()
            for index, (source, text) in enumerate(documents):
                db.add(SourceDocument(
                    report_id=report.id,
                    filename=f"upload-{index}.txt",
                    simulation_method=source,
                    extracted_text=text,
                ))
            db.commit()
            return report.id
        finally:
            db.close()

    return _make


@pytest.fixture
def report_id(make_report):
    return make_report()


class FakeEventChannel:
    """Records published events instead of sending them to Redis."""

    def __init__(self):
        self.events: List[tuple] = []

    def publish(self, user_id, event_type, payload):
        self.events.append((user_id, event_type, payload))

    def types(self) -> List[str]:
        return [event_type for _, event_type, _ in self.events]

    def of_type(self, event_type: str) -> List[dict]:
        return [payload for _, t, payload in self.events if t == event_type]

    def streamed_text(self) -> str:
        return "".join(p.get("chunk", "") for p in self.of_type("ai-stream"))


class ScriptedCompletionService(CompletionService):
    """
    Completion service driven by a responder(request) -> str.

    The responder may raise to simulate provider failures. Every request is
    recorded so tests can assert on models, temperatures and prompts.
    """

    provider = "scripted"

    def __init__(self, responder: Callable):
        self.responder = responder
        self.requests = []

    def _iter_fragments(self, request, cancel_token, usage):
        self.requests.append(request)
        text = self.responder(request)
        usage["input_tokens"] = 100
        usage["output_tokens"] = 50
        # Two fragments, so streaming paths see more than one chunk
        middle = len(text) // 2
        yield text[:middle]
        yield text[middle:]


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self, fail_publish: bool = False):
        self.published: List[tuple] = []
        self.fail_publish = fail_publish

    def publish(self, channel, message):
        if self.fail_publish:
            from redis.exceptions import ConnectionError

            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1

    def ping(self):
        return True


class FakeCelery:
    """Stands in for celery_app.send_task."""

    def __init__(self, on_send: Callable = None, fail: bool = False):
        self.sent = []
        self.on_send = on_send
        self.fail = fail

    def send_task(self, name, kwargs=None, **options):
        if self.on_send is not None:
            self.on_send(name, kwargs, options)
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append((name, kwargs, options))


def level_of(request) -> int:
    """Level number of a per-level prompt (evidence or judgment)."""
    match = _LEVEL_SECTION.search(request.user_prompt)
    return int(match.group(1)) if match else 0


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        evidence_model="main/evidence",
        judgment_model="main/judge",
        narrative_model="main/narrative",
        backup_model="backup/model",
        evidence_temperature=0.2,
        judgment_temperature=0.1,
        narrative_temperature=0.5,
        critique_temperature=0.4,
        backup_temperature=0.6,
        max_attempts=3,
        main_attempts=2,
        backoff_delay_s=2.0,
        backoff_max_s=30.0,
        # The watcher thread never polls during a test
        poll_interval_s=60.0,
        check_between_units=True,
        pass_threshold=0.5,
        max_output_tokens=1024,
    )


@pytest.fixture
def events():
    return FakeEventChannel()


@pytest.fixture
def make_orchestrator(store, events, pipeline_config, session_factory):
    """Factory: orchestrator_cls + responder -> (orchestrator, completion)."""

    def _make(orchestrator_cls, responder):
        completion = ScriptedCompletionService(responder)
        orchestrator = orchestrator_cls(
            store=store,
            events=events,
            completion=completion,
            config=pipeline_config,
            ai_log=AILogService(session_factory),
        )
        return orchestrator, completion

    return _make

