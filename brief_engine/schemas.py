"""
Pydantic Schemas for Brief Engine
=================================

Typed intermediate representation shared by every pipeline stage:
- Case seed data (LegalIssue, CaseDocument, parties, metadata)
- Strategy output (Claim, StrategySection, ArgumentationFrame)
- Authorities (FoundLaw)
- Drafting output (DraftSection, TextSegment, Citation)
- Review output (PreCheckIssue, ReviewIssue, ReviewResult)
- Progress events

Model-produced payloads are parsed leniently: missing optional fields get
defaults and blank ids become None, so the validation layer can report
structural problems instead of pydantic rejecting the whole payload.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================

class Side(str, Enum):
    """Which party asserts a claim"""
    OURS = "ours"
    THEIRS = "theirs"


class ClaimType(str, Enum):
    """
    Role of a claim in the argument graph.

    - PRIMARY: stands on its own, never responds to another claim
    - REBUTTAL: answers a claim of the other side
    - SUPPORTING: reinforces another claim of the same side
    """
    PRIMARY = "primary"
    REBUTTAL = "rebuttal"
    SUPPORTING = "supporting"


class LawSource(str, Enum):
    """Provenance of an authority"""
    MENTIONED = "mentioned"          # referenced in the case material
    USER_MANUAL = "user_manual"      # added by the user
    SEARCH = "search"                # found by planned search during research
    SUPPLEMENTED = "supplemented"    # pulled in by the reasoning loop


class SourceKind(str, Enum):
    """Kind of document a citation points at"""
    FILE = "file"
    LAW = "law"


class CitationStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"


class PipelineStage(str, Enum):
    """Pipeline stages in execution order"""
    CASE_ANALYSIS = "case_analysis"
    LEGAL_RESEARCH = "legal_research"
    STRATEGY = "strategy"
    DRAFTING = "drafting"
    REVIEW = "review"


class ProgressEventKind(str, Enum):
    """Closed set of progress events emitted by a run"""
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    SECTION_WRITTEN = "section_written"
    AUTHORITY_FOUND = "authority_found"
    VALIDATION_FAILED = "validation_failed"
    ERROR = "error"
    DONE = "done"


class PreCheckSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class PreCheckType(str, Enum):
    UNASSIGNED_CLAIM = "unassigned_claim"
    UNCOVERED_OPPONENT_CLAIM = "uncovered_opponent_claim"
    UNCOVERED_DISPUTE = "uncovered_dispute"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# =============================================================================
# Case Seed Data
# =============================================================================

class StructuredFact(BaseModel):
    """A fact attached to a legal issue"""
    id: str
    description: str
    assertion_type: Optional[str] = None
    source_side: Optional[str] = None


class LegalIssue(BaseModel):
    """An identified point of contention between the parties"""
    id: str = Field(..., description="Issue (dispute) ID")
    title: str = Field(..., description="Short issue title")
    our_position: str = Field("", description="Our side's position")
    their_position: str = Field("", description="Opponent's position")
    key_evidence: List[str] = Field(default_factory=list, description="Supporting document IDs")
    mentioned_laws: List[str] = Field(default_factory=list, description="Raw law references, e.g. 民法第184條")
    facts: List[StructuredFact] = Field(default_factory=list)


class CaseDocument(BaseModel):
    """File metadata supplied by case intake; full text comes from the document store"""
    id: str
    filename: str
    summary: Optional[str] = None
    category: Optional[str] = None


class CaseMetadata(BaseModel):
    case_number: str = ""
    court: str = ""
    case_type: str = ""
    client_role: str = ""
    case_instructions: str = ""


class InformationGap(BaseModel):
    id: str
    description: str
    severity: str = "warning"


# =============================================================================
# Strategy Output
# =============================================================================

class Claim(BaseModel):
    """An atomic assertion by one side"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    side: Side
    claim_type: ClaimType = ClaimType.PRIMARY
    statement: str = ""
    assigned_section: Optional[str] = None
    dispute_id: Optional[str] = None
    responds_to: Optional[str] = None

    @field_validator("claim_type", mode="before")
    @classmethod
    def default_claim_type(cls, value: Any) -> Any:
        return value or ClaimType.PRIMARY

    @field_validator("assigned_section", "dispute_id", "responds_to", mode="before")
    @classmethod
    def blank_ids_are_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ArgumentationFrame(BaseModel):
    """Fact-to-rule reasoning of a section"""
    legal_basis: List[str] = Field(default_factory=list, description="Authority IDs")
    fact_application: str = ""
    conclusion: str = ""


class StrategySection(BaseModel):
    """A planned output unit of the brief; list order is document order"""
    id: str
    section: str = Field(..., description="Heading")
    subsection: Optional[str] = None
    dispute_id: Optional[str] = None
    argumentation: ArgumentationFrame = Field(default_factory=ArgumentationFrame)
    claims: List[str] = Field(default_factory=list, description="Ordered claim IDs to cover")
    relevant_file_ids: List[str] = Field(default_factory=list)
    relevant_law_ids: List[str] = Field(default_factory=list)
    facts_to_use: List[str] = Field(default_factory=list)
    legal_reasoning: str = ""

    @field_validator("subsection", "dispute_id", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("argumentation", mode="before")
    @classmethod
    def default_argumentation(cls, value: Any) -> Any:
        return value or {}

    @property
    def heading(self) -> str:
        if self.subsection:
            return f"{self.section} > {self.subsection}"
        return self.section


class StrategyOutput(BaseModel):
    """Parsed result of the strategy JSON phase"""
    claims: List[Claim]
    sections: List[StrategySection]


# =============================================================================
# Authorities
# =============================================================================

class FoundLaw(BaseModel):
    """A citable legal-text excerpt keyed by canonical ID. Immutable once fetched."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Canonical ID, e.g. B0000001-第 184 條")
    law_name: str
    article_no: str
    content: str
    source: LawSource = LawSource.SEARCH

    @property
    def label(self) -> str:
        return f"{self.law_name}{self.article_no}"


# =============================================================================
# Drafting Output
# =============================================================================

class CitationLocation(BaseModel):
    """Chunk index and/or character range inside the supplied document"""
    block_index: Optional[int] = None
    char_start: Optional[int] = None
    char_end: Optional[int] = None


class Citation(BaseModel):
    """Binds a quoted span to a supplied document"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    label: str
    kind: SourceKind
    source_id: str
    location: CitationLocation = Field(default_factory=CitationLocation)
    quoted_text: str = ""
    status: CitationStatus = CitationStatus.CONFIRMED


class TextSegment(BaseModel):
    """A contiguous output span and the citations anchored in it"""
    text: str
    citations: List[Citation] = Field(default_factory=list)


class DraftSection(BaseModel):
    """Generated text for one StrategySection"""
    paragraph_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    section_id: str
    section: str
    subsection: Optional[str] = None
    dispute_id: Optional[str] = None
    content: str
    segments: List[TextSegment] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)


# =============================================================================
# Review Output
# =============================================================================

class PreCheckIssue(BaseModel):
    severity: PreCheckSeverity
    type: PreCheckType
    description: str


class ReviewIssue(BaseModel):
    paragraph_id: Optional[str] = None
    severity: str = "warning"
    type: str = "general"
    description: str
    suggestion: str = ""


class ReviewResult(BaseModel):
    passed: bool
    structural_issues_from_precheck: List[PreCheckIssue] = Field(default_factory=list)
    issues: List[ReviewIssue] = Field(default_factory=list)


# =============================================================================
# Progress Events / API
# =============================================================================

class ProgressEvent(BaseModel):
    """One state transition of a run, rendered live by clients"""
    kind: ProgressEventKind
    stage: Optional[PipelineStage] = None
    message: str = ""
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    backends_configured: bool = Field(..., description="All backend keys/URLs present")
    timestamp: datetime = Field(..., description="Current timestamp")
