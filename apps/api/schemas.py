from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator, model_validator
from datetime import datetime
from uuid import UUID
from typing import Literal, Optional, List, Dict


# ---------------------------------------------------------------------------
# Competency dictionary
# ---------------------------------------------------------------------------

class CompetencyLevel(BaseModel):
    """One rung of a competency ladder."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    level: int = Field(validation_alias=AliasChoices("level", "nomor", "number"))
    definition: str = Field(default="", validation_alias=AliasChoices("definition", "penjelasan", "description"))
    key_behaviors: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("key_behaviors", "keyBehavior", "keyBehaviors"),
    )

    @field_validator("level", mode="before")
    @classmethod
    def _coerce_level(cls, value):
        # Legacy dictionaries store "1", "2", ...
        if isinstance(value, str):
            return int(value.strip())
        return value


class Competency(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: str = Field(validation_alias=AliasChoices("name", "namaKompetensi"))
    definition: str = Field(default="", validation_alias=AliasChoices("definition", "definisiKompetensi"))
    levels: List[CompetencyLevel] = Field(default_factory=list, validation_alias=AliasChoices("levels", "level"))

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return None if value is None else str(value)

    @property
    def key(self) -> str:
        """Identifier used by report.target_levels."""
        return self.id or self.name

    @property
    def max_level(self) -> int:
        return max((lvl.level for lvl in self.levels), default=0)

    def get_level(self, number: int) -> Optional[CompetencyLevel]:
        for lvl in self.levels:
            if lvl.level == number:
                return lvl
        return None


class CompetencyDictionaryContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    competencies: List[Competency] = Field(
        default_factory=list,
        validation_alias=AliasChoices("competencies", "kompetensi"),
    )


# ---------------------------------------------------------------------------
# Model output contracts
# ---------------------------------------------------------------------------

class EvidenceItem(BaseModel):
    """One quote the model matched to a key behavior."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kb: str = Field(validation_alias=AliasChoices("kb", "key_behavior", "keyBehavior", "kb_text"))
    quote: str
    reasoning: str = ""
    competency: Optional[str] = None
    level: Optional[str] = None
    source: Optional[str] = None

    @field_validator("level", mode="before")
    @classmethod
    def _stringify_level(cls, value):
        return None if value is None else str(value)

    @field_validator("quote")
    @classmethod
    def _quote_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("quote must not be empty")
        return value


class KeyBehaviorJudgment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kb_text_fragment: str = Field(
        default="",
        validation_alias=AliasChoices("kb_text_fragment", "kb", "key_behavior", "kb_text"),
    )
    fulfilled: bool = False
    status: Optional[str] = None
    reasoning: str = ""
    evidence_quote_ids: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("evidence_quote_ids", "evidence_ids", "evidenceIds"),
    )

    @field_validator("evidence_quote_ids", mode="before")
    @classmethod
    def _coerce_ids(cls, value):
        if value is None:
            return []
        if isinstance(value, (str, int)):
            return [str(value)]
        return [str(v) for v in value]

    @model_validator(mode="before")
    @classmethod
    def _derive_fulfilled(cls, data):
        # Older prompts answer with a status enum instead of a boolean
        if isinstance(data, dict) and "fulfilled" not in data and data.get("status") is not None:
            data = dict(data)
            data["fulfilled"] = str(data["status"]).strip().upper() == "FULFILLED"
        return data


class DevelopmentRecommendations(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personal_development: str = Field(
        default="",
        validation_alias=AliasChoices("personal_development", "individual", "Personal Development"),
    )
    assignment: str = Field(default="", validation_alias=AliasChoices("assignment", "Assignment"))
    training: str = Field(default="", validation_alias=AliasChoices("training", "Training"))


class NarrativeOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    explanation: str
    recommendations: DevelopmentRecommendations

    @field_validator("explanation")
    @classmethod
    def _explanation_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("explanation must not be empty")
        return value


class ExecutiveSummaryOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    overview: str
    strengths: str
    weaknesses: str
    recommendations: str

    @field_validator("overview")
    @classmethod
    def _overview_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("overview must not be empty")
        return value


class RefinementOutput(BaseModel):
    """Ask AI answer: the rewritten text and a short note on what changed."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    refined_content: str = Field(
        validation_alias=AliasChoices("refined_content", "refinedContent", "content", "Refined_Content"),
    )
    reasoning: str = Field(default="", validation_alias=AliasChoices("reasoning", "Reasoning", "explanation"))

    @field_validator("refined_content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("refined_content must not be empty")
        return value


# ---------------------------------------------------------------------------
# Job queue payloads and API responses
# ---------------------------------------------------------------------------

class GenerationJobPayload(BaseModel):
    """Producer -> queue -> worker contract for generate-phase-N jobs."""
    model_config = ConfigDict(populate_by_name=True)

    report_id: str = Field(validation_alias=AliasChoices("report_id", "reportId"), serialization_alias="reportId")
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"), serialization_alias="userId")


class FileIngestionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: str = Field(validation_alias=AliasChoices("file_id", "fileId"))
    path: str
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"))


class GenerationStartedResponse(BaseModel):
    report_id: UUID
    phase: int
    job_id: str
    message: str


class ReportStatusResponse(BaseModel):
    report_id: UUID
    status: str
    active_phase: Optional[int] = None
    active_job_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class StopGenerationResponse(BaseModel):
    report_id: UUID
    stopped: bool
    message: str


class HealthResponse(BaseModel):
    status: str
    database: bool
    redis: bool
    checks: Dict[str, str] = Field(default_factory=dict)


class AskAiRequest(BaseModel):
    """
    Rewrite one generated section following a user instruction.

    PHASE_2 targets a competency analysis and needs ``competency``;
    PHASE_3 targets the executive summary.
    """
    context_type: Literal["PHASE_2", "PHASE_3"]
    instruction: str = Field(min_length=1, max_length=4000)
    current_content: str = Field(max_length=100_000)
    competency: Optional[str] = None

    @model_validator(mode="after")
    def _competency_for_phase_2(self):
        if self.context_type == "PHASE_2" and not (self.competency or "").strip():
            raise ValueError("competency is required for PHASE_2 refinements")
        return self


class AskAiResponse(BaseModel):
    report_id: UUID
    refined_content: str
    reasoning: str
    model: str
    structured: bool
