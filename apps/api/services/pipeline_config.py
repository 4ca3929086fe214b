"""
Pipeline configuration and model routing.

PipelineConfig is derived from Settings once per process and handed to the
orchestrators, which never read module-level settings themselves.
"""
from dataclasses import dataclass

from core.config import Settings


@dataclass(frozen=True)
class PipelineConfig:
    evidence_model: str
    judgment_model: str
    narrative_model: str
    backup_model: str
    evidence_temperature: float = 0.2
    judgment_temperature: float = 0.2
    narrative_temperature: float = 0.5
    critique_temperature: float = 0.4
    backup_temperature: float = 0.5
    max_attempts: int = 6
    main_attempts: int = 3
    backoff_delay_s: float = 2.0
    backoff_max_s: float = 300.0
    poll_interval_s: float = 1.5
    check_between_units: bool = True
    pass_threshold: float = 0.5
    max_output_tokens: int = 8192

    @classmethod
    def from_settings(cls, config: Settings) -> "PipelineConfig":
        return cls(
            evidence_model=config.AI_EVIDENCE_MODEL,
            judgment_model=config.AI_JUDGMENT_MODEL,
            narrative_model=config.AI_NARRATIVE_MODEL,
            backup_model=config.AI_BACKUP_MODEL,
            evidence_temperature=config.AI_EVIDENCE_TEMPERATURE,
            judgment_temperature=config.AI_JUDGMENT_TEMPERATURE,
            narrative_temperature=config.AI_NARRATIVE_TEMPERATURE,
            critique_temperature=config.AI_CRITIQUE_TEMPERATURE,
            backup_temperature=config.AI_BACKUP_TEMPERATURE,
            max_attempts=config.AI_JOB_MAX_ATTEMPTS,
            main_attempts=config.AI_JOB_MAIN_ATTEMPTS,
            backoff_delay_s=config.AI_JOB_BACKOFF_DELAY_S,
            backoff_max_s=config.AI_JOB_BACKOFF_MAX_S,
            poll_interval_s=config.CANCELLATION_POLL_INTERVAL_S,
            check_between_units=config.CANCELLATION_CHECK_BETWEEN_UNITS,
            pass_threshold=config.LEVEL_PASS_THRESHOLD,
            max_output_tokens=config.LLM_MAX_OUTPUT_TOKENS,
        )


@dataclass(frozen=True)
class ModelSelection:
    evidence_model: str
    evidence_temperature: float
    judgment_model: str
    judgment_temperature: float
    narrative_model: str
    narrative_temperature: float
    critique_temperature: float
    is_backup: bool
    announce_switch: bool

    @property
    def label(self) -> str:
        return "backup" if self.is_backup else "main"


def select_models(config: PipelineConfig, attempt: int) -> ModelSelection:
    """
    Models for a zero-based job attempt.

    The first ``main_attempts`` tries use the main models; later tries are
    routed to the backup model for every role, on the assumption that
    repeated failures mean the main provider is down.
    """
    if attempt < config.main_attempts:
        return ModelSelection(
            evidence_model=config.evidence_model,
            evidence_temperature=config.evidence_temperature,
            judgment_model=config.judgment_model,
            judgment_temperature=config.judgment_temperature,
            narrative_model=config.narrative_model,
            narrative_temperature=config.narrative_temperature,
            critique_temperature=config.critique_temperature,
            is_backup=False,
            announce_switch=False,
        )
    return ModelSelection(
        evidence_model=config.backup_model,
        evidence_temperature=config.backup_temperature,
        judgment_model=config.backup_model,
        judgment_temperature=config.backup_temperature,
        narrative_model=config.backup_model,
        narrative_temperature=config.backup_temperature,
        critique_temperature=config.backup_temperature,
        is_backup=True,
        announce_switch=attempt == config.main_attempts,
    )
