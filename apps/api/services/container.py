"""
Per-process service container.

Worker processes build one PipelineServices at start-up and every task
reads its collaborators from it; nothing in the pipeline reaches for a
module-level client.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from core.config import Settings
from core.database import build_database_url, create_db_engine, create_session_factory
from core.redis_client import create_redis_client
from services.ai_log_service import AILogService
from services.completion_service import CompletionService, build_completion_service
from services.event_channel import RedisEventChannel
from services.file_ingestion import FileIngestionService
from services.phase1_evidence import EvidenceExtractionOrchestrator
from services.phase2_analysis import CompetencyAnalysisOrchestrator
from services.phase3_summary import ExecutiveSummaryOrchestrator
from services.pipeline_config import PipelineConfig
from services.report_store import ReportStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    session_factory: sessionmaker
    store: ReportStore
    events: object
    completion: CompletionService
    ai_log: AILogService
    config: PipelineConfig
    storage_root: str = "/data/uploads"

    def orchestrator_for(self, phase: int):
        classes = {
            1: EvidenceExtractionOrchestrator,
            2: CompetencyAnalysisOrchestrator,
            3: ExecutiveSummaryOrchestrator,
        }
        if phase not in classes:
            raise ValueError(f"Unknown phase: {phase}")
        return classes[phase](
            store=self.store,
            events=self.events,
            completion=self.completion,
            config=self.config,
            ai_log=self.ai_log,
        )

    def file_ingestion(self) -> FileIngestionService:
        return FileIngestionService(self.session_factory, self.events, self.storage_root)


def build_pipeline_services(config: Settings, completion: Optional[CompletionService] = None) -> PipelineServices:
    engine = create_db_engine(build_database_url(config), config)
    session_factory = create_session_factory(engine)
    events = RedisEventChannel(create_redis_client(config.REDIS_URL), config.EVENT_CHANNEL_NAME)
    services = PipelineServices(
        session_factory=session_factory,
        store=ReportStore(session_factory),
        events=events,
        completion=completion or build_completion_service(config),
        ai_log=AILogService(session_factory),
        config=PipelineConfig.from_settings(config),
        storage_root=config.STORAGE_ROOT,
    )
    logger.info("Pipeline services initialised")
    return services
