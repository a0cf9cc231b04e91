"""
schemas.py — Pydantic v2 models for the drafting pipeline.

Two kinds of models live here:
  - records we persist or hand back to callers (Tender, TenderResponse,
    PipelineEnvelope), and
  - contracts for AI payloads (ChunkClassification, GeneratedAnswer). Those
    are validated before anything downstream touches them; a payload that
    fails validation is a per-chunk or per-batch failure, never a crash.

Missing company facts are the string "N/A", never None and never omitted.
The generator is told that N/A means "we don't know", which is what stops
it inventing an ISO certificate the company doesn't hold.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

NOT_AVAILABLE = "N/A"

SegmentSource = Literal["heuristic", "rule", "ai", "fallback"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenderStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    SEGMENTED = "segmented"
    ENRICHED = "enriched"
    DRAFT = "draft"
    FAILED = "failed"


class ProcessingStage(str, Enum):
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    SEGMENTING = "segmenting"
    ENRICHING = "enriching"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    COMPLETE = "complete"


# ── Segments ──────────────────────────────────────────────────────────────

class Question(BaseModel):
    """A question the company has to answer."""
    text: str
    index: int = Field(..., ge=1)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    source: SegmentSource = "heuristic"

    @field_validator("text")
    @classmethod
    def text_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("question text cannot be empty or whitespace")
        return v


class TextItem(BaseModel):
    text: str
    source: SegmentSource = "rule"
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class ContextItem(TextItem):
    """Background the answers should be consistent with."""


class InstructionItem(TextItem):
    """Compliance/submission rule that must be quoted, not paraphrased."""


class Segments(BaseModel):
    questions: List[Question] = Field(default_factory=list)
    context: List[ContextItem] = Field(default_factory=list)
    instructions: List[InstructionItem] = Field(default_factory=list)
    other: List[str] = Field(default_factory=list)


# ── AI payload contracts ──────────────────────────────────────────────────

def _coerce_text_list(value: Any) -> List[str]:
    """Accept ["..."] or [{"text": "..."}]; drop blanks. Anything else is
    a schema violation."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {type(value).__name__}")
    out: List[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("text")
        if not isinstance(item, str):
            raise ValueError(f"expected string items, got {type(item).__name__}")
        if item.strip():
            out.append(item.strip())
    return out


class ChunkClassification(BaseModel):
    """What the classifier must return for every chunk."""
    model_config = ConfigDict(extra="ignore")

    questions: List[str] = Field(default_factory=list)
    context: List[str] = Field(default_factory=list)
    instructions: List[str] = Field(default_factory=list)

    @field_validator("questions", "context", "instructions", mode="before")
    @classmethod
    def coerce_items(cls, v: Any) -> List[str]:
        return _coerce_text_list(v)


class GeneratedAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question: str = ""
    answer: str

    @field_validator("answer")
    @classmethod
    def answer_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("answer cannot be empty")
        return v.strip()


# ── Enrichment inputs ─────────────────────────────────────────────────────

class CompanyProfile(BaseModel):
    """
    Static facts about the bidding company. Immutable during a run.

    Use `unknown()` for every failure path instead of building ad hoc
    dicts. The generator treats an all-N/A profile as "say nothing
    specific", which is the safe behaviour.
    """
    model_config = ConfigDict(frozen=True)

    id: str = NOT_AVAILABLE
    company_name: str = NOT_AVAILABLE
    industry: str = NOT_AVAILABLE
    services_offered: List[str] = Field(default_factory=list)
    specializations: str = NOT_AVAILABLE
    mission: str = NOT_AVAILABLE
    values: str = NOT_AVAILABLE
    past_projects: str = NOT_AVAILABLE
    team_size: str = NOT_AVAILABLE
    years_in_business: str = NOT_AVAILABLE
    accreditations: str = NOT_AVAILABLE
    policies: str = NOT_AVAILABLE

    @classmethod
    def unknown(cls, company_id: Optional[str] = None) -> "CompanyProfile":
        return cls(id=company_id or NOT_AVAILABLE)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CompanyProfile":
        """Normalise a datastore row: None/blank/missing → N/A."""
        data: Dict[str, Any] = {}
        for name in cls.model_fields:
            value = record.get(name)
            if name == "services_offered":
                if isinstance(value, str):
                    value = [s.strip() for s in value.split(",")]
                data[name] = [str(s).strip() for s in (value or []) if str(s).strip()]
                continue
            if value is None or (isinstance(value, str) and not value.strip()):
                data[name] = NOT_AVAILABLE
            else:
                data[name] = str(value).strip()
        return cls(**data)

    @property
    def display_name(self) -> str:
        if self.company_name == NOT_AVAILABLE:
            return "the company"
        return self.company_name

    def prompt_lines(self) -> List[str]:
        services = ", ".join(self.services_offered) if self.services_offered else NOT_AVAILABLE
        return [
            f"Company name: {self.company_name}",
            f"Industry: {self.industry}",
            f"Services offered: {services}",
            f"Specializations: {self.specializations}",
            f"Mission: {self.mission}",
            f"Values: {self.values}",
            f"Past projects: {self.past_projects}",
            f"Team size: {self.team_size}",
            f"Years in business: {self.years_in_business}",
            f"Accreditations: {self.accreditations}",
            f"Policies: {self.policies}",
        ]


class RetrievedSnippet(BaseModel):
    """A previously approved answer surfaced by similarity search."""
    model_config = ConfigDict(frozen=True)

    question_index: int
    question: str
    answer: str
    similarity: float
    confidence: float = 0.0
    usage_count: int = 0


class EnrichmentBundle(BaseModel):
    company_profile: CompanyProfile = Field(default_factory=CompanyProfile.unknown)
    snippets: List[RetrievedSnippet] = Field(default_factory=list)
    context: List[ContextItem] = Field(default_factory=list)
    instructions: List[InstructionItem] = Field(default_factory=list)
    degraded: bool = False

    def snippets_for(self, question_index: int) -> List[RetrievedSnippet]:
        return [s for s in self.snippets if s.question_index == question_index]


# ── Persisted records ─────────────────────────────────────────────────────

class TenderResponse(BaseModel):
    """One drafted answer. Upsert key: (tender_id, question_index)."""
    tender_id: str
    company_profile_id: str = NOT_AVAILABLE
    question: str
    question_index: int = Field(..., ge=1)
    ai_generated_answer: str
    is_approved: bool = False
    model_used: str
    question_type: Literal["open", "closed"] = "open"
    response_length: int = 0
    is_fallback: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple:
        return (self.tender_id, self.question_index)


class Tender(BaseModel):
    id: str
    company_id: str
    file_path: Optional[str] = None
    title: str = ""
    status: TenderStatus = TenderStatus.UPLOADED
    progress: int = Field(default=0, ge=0, le=100)
    processing_stage: Optional[ProcessingStage] = None
    total_questions: int = 0
    processed_questions: int = 0
    segments: Optional[Segments] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class GenerationResult(BaseModel):
    total_answers: int = 0
    batches: int = 0
    failed_batches: int = 0
    fallback_answers: int = 0
    persistence_failures: int = 0
    answers: List[TenderResponse] = Field(default_factory=list)


# ── Entry point contract ──────────────────────────────────────────────────

class ProcessTenderRequest(BaseModel):
    """Accepts both snake_case and the web client's camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    tender_id: Optional[str] = Field(default=None, alias="tenderId")
    file_path: Optional[str] = Field(default=None, alias="filePath")
    extracted_text: Optional[str] = Field(default=None, alias="extractedText")


class PipelineEnvelope(BaseModel):
    """Always returned, whatever happened inside the run."""
    success: bool = False
    tender_id: Optional[str] = None
    status: str = TenderStatus.FAILED.value
    stage: str = ProcessingStage.VALIDATING.value
    questions_found: int = 0
    context_found: int = 0
    instructions_found: int = 0
    answers_generated: int = 0
    fallback_answers: int = 0
    segments: Segments = Field(default_factory=Segments)
    raw_text_chars: int = 0
    message: str = ""
    error: Optional[str] = None
    partial_errors: List[Dict[str, Any]] = Field(default_factory=list)
    elapsed_seconds: float = 0.0
