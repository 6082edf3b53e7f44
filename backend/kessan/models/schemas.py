"""Pydantic schemas for pipeline records."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ReleaseKind(str, Enum):
    QUARTERLY_EARNINGS = "quarterly_earnings"
    GROWTH_POTENTIAL = "growth_potential"
    MID_TERM_PLAN = "mid_term_plan"

    @property
    def is_periodic(self) -> bool:
        """Periodic releases are keyed by fiscal quarter; plan releases are not."""
        return _PERIODIC_KINDS[self]


_PERIODIC_KINDS: Dict[ReleaseKind, bool] = {
    ReleaseKind.QUARTERLY_EARNINGS: True,
    ReleaseKind.GROWTH_POTENTIAL: False,
    ReleaseKind.MID_TERM_PLAN: False,
}


class DocumentType(str, Enum):
    SUMMARY = "summary"
    PRESENTATION = "presentation"
    GROWTH_POTENTIAL = "growth_potential"
    MID_TERM_PLAN = "mid_term_plan"
    OTHER = "other"

    @property
    def release_kind(self) -> Optional[ReleaseKind]:
        """Release kind a document of this type is grouped into (None for ``other``)."""
        return _RELEASE_KIND_BY_TYPE[self]

    @property
    def analysis_priority(self) -> Optional[int]:
        """Rank used when choosing PDFs for the model; lower goes first."""
        return _ANALYSIS_PRIORITY[self]


_RELEASE_KIND_BY_TYPE: Dict[DocumentType, Optional[ReleaseKind]] = {
    DocumentType.SUMMARY: ReleaseKind.QUARTERLY_EARNINGS,
    DocumentType.PRESENTATION: ReleaseKind.QUARTERLY_EARNINGS,
    DocumentType.GROWTH_POTENTIAL: ReleaseKind.GROWTH_POTENTIAL,
    DocumentType.MID_TERM_PLAN: ReleaseKind.MID_TERM_PLAN,
    DocumentType.OTHER: None,
}

_ANALYSIS_PRIORITY: Dict[DocumentType, Optional[int]] = {
    DocumentType.SUMMARY: 0,
    DocumentType.PRESENTATION: 1,
    DocumentType.GROWTH_POTENTIAL: 2,
    DocumentType.MID_TERM_PLAN: 3,
    DocumentType.OTHER: None,
}


# Source listing schemas
class SourceDocument(BaseModel):
    """One row of a disclosure feed listing, normalized across sources."""

    id: str
    title: str
    published_at: date
    doc_url: str
    company_code: Optional[str] = None

    def to_candidate(self, source_name: str) -> "DocumentCandidate":
        return DocumentCandidate(
            pdf_url=self.doc_url,
            title=self.title,
            published_at=self.published_at,
            source_name=source_name,
        )


class DocumentCandidate(BaseModel):
    pdf_url: str
    title: str
    published_at: date
    source_name: str


class ClassifiedDocument(DocumentCandidate):
    document_type: DocumentType
    fiscal_year: Optional[str] = None
    fiscal_quarter: Optional[int] = Field(default=None, ge=1, le=4)
    confidence: float = 0.0
    reasoning: str = ""


# Stored document schemas
class StoredDocumentCreate(BaseModel):
    release_id: str
    document_type: DocumentType
    ticker: str
    fiscal_year: str
    fiscal_quarter: Optional[int] = None
    announcement_date: Optional[date] = None
    content_hash: str
    blob_key: str
    title: str
    file_size: Optional[int] = None


class StoredDocument(StoredDocumentCreate):
    id: str


# Analysis payloads
class KeyMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    revenue: str = ""
    operating_income: str = Field(default="", alias="operatingIncome")
    net_income: str = Field(default="", alias="netIncome")
    yoy_growth: str = Field(default="", alias="yoyGrowth")


class EarningsSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    overview: str
    highlights: List[str] = Field(default_factory=list)
    lowlights: List[str] = Field(default_factory=list)
    key_metrics: KeyMetrics = Field(default_factory=KeyMetrics, alias="keyMetrics")


class CustomAnalysis(BaseModel):
    overview: str
    highlights: List[str] = Field(default_factory=list)
    lowlights: List[str] = Field(default_factory=list)
    analysis: str


# Release schemas
class Release(BaseModel):
    id: str
    release_kind: ReleaseKind
    ticker: str
    fiscal_year: str
    fiscal_quarter: Optional[int] = None
    summary: Optional[EarningsSummary] = None
    highlights: Optional[List[str]] = None
    lowlights: Optional[List[str]] = None
    announcement_date: Optional[date] = None


# Subscriber schemas
class Subscriber(BaseModel):
    """A watchlist row: one user tracking one ticker."""

    id: str
    user_id: str
    ticker: str
    stock_name: Optional[str] = None
    custom_prompt: Optional[str] = None

    @property
    def prompt(self) -> Optional[str]:
        if self.custom_prompt and self.custom_prompt.strip():
            return self.custom_prompt.strip()
        return None


class UserAnalysis(BaseModel):
    id: str
    user_id: str
    release_id: str
    custom_analysis: Optional[CustomAnalysis] = None
    custom_prompt_used: Optional[str] = None
    notified_at: Optional[datetime] = None


class AnalysisHistoryEntry(BaseModel):
    user_id: str
    release_id: str
    custom_prompt: str
    analysis: CustomAnalysis
    created_at: Optional[datetime] = None


# Pipeline outcomes
class FetchStatus(str, Enum):
    STORED = "stored"
    EXISTING = "existing"
    FAILED = "failed"


class FetchOutcome(BaseModel):
    status: FetchStatus
    content_hash: Optional[str] = None
    blob_key: Optional[str] = None
    file_size: Optional[int] = None
    existing_document_id: Optional[str] = None
    error: Optional[str] = None


class RegenerateOutcome(str, Enum):
    REGENERATED = "regenerated"
    CACHED = "cached"
    SKIPPED = "skipped"


class RegenerateResult(BaseModel):
    total: int = 0
    regenerated: int = 0
    cached: int = 0
    skipped: int = 0

    def record(self, outcome: RegenerateOutcome) -> None:
        self.total += 1
        if outcome is RegenerateOutcome.REGENERATED:
            self.regenerated += 1
        elif outcome is RegenerateOutcome.CACHED:
            self.cached += 1
        else:
            self.skipped += 1


class CustomizeResult(BaseModel):
    created: int = 0
    customized: int = 0
    failed: int = 0
    user_ids: List[str] = Field(default_factory=list)


class ImportResult(BaseModel):
    imported: int = 0
    existing: int = 0
    skipped: int = 0
    failed: int = 0
    analyzed: int = 0

    def merge(self, other: "ImportResult") -> "ImportResult":
        return ImportResult(
            imported=self.imported + other.imported,
            existing=self.existing + other.existing,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
            analyzed=self.analyzed + other.analyzed,
        )


# Queue messages
class HistoricalImportMessage(BaseModel):
    """Backfill work item; continuations carry the candidate list and running totals."""

    ticker: str
    offset: int = 0
    candidates: Optional[List[DocumentCandidate]] = None
    totals: ImportResult = Field(default_factory=ImportResult)
    user_id: Optional[str] = None
    run_id: str = Field(default_factory=lambda: uuid4().hex)


class RegenerateMessage(BaseModel):
    watchlist_id: str
    user_id: Optional[str] = None

