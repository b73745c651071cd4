"""
Retrieval Models

Transient, per-turn data structures of the Corrective-RAG pipeline.
None of these are persisted - only the resulting data sources and
confidence score end up on the stored assistant message.
"""

from datetime import date
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from prismo.models.settings import DataSource


class QueryIntent(str, Enum):
    """What the user is asking about."""
    SPENDING_ANALYSIS = "spending_analysis"
    BUDGET_STATUS = "budget_status"
    GOAL_PROGRESS = "goal_progress"
    SUBSCRIPTION_REVIEW = "subscription_review"
    CREDIT_CARD = "credit_card"
    TAX_OPTIMIZATION = "tax_optimization"
    INCOME_ANALYSIS = "income_analysis"
    FORECAST = "forecast"
    COMPARISON = "comparison"
    ANOMALY = "anomaly"
    GENERAL = "general"


class RetrievalWindow(BaseModel):
    """Inclusive date range a question refers to."""

    start: date
    end: date
    label: str = Field(description="Human label, e.g. 'this month'")

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class IntentClassification(BaseModel):
    """Deterministic reading of a question: intent, time window, categories."""

    intent: QueryIntent
    confidence: float = Field(ge=0.0, le=1.0)
    window: RetrievalWindow
    time_explicit: bool = Field(
        default=False,
        description="Whether the question named a time period itself"
    )
    categories: list[str] = Field(default_factory=list)
    suggested_sources: list[DataSource] = Field(default_factory=list)


class RetrievedDocument(BaseModel):
    """
    One retrievable slice of a user's financial records.

    content is what the model reads; fields carries the structured
    values the grader matches against (category, vendor, amounts).
    """

    source: DataSource
    title: str
    content: str
    fields: dict[str, Any] = Field(default_factory=dict)
    score: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def has_data(self) -> bool:
        return bool(self.content.strip()) and bool(self.fields)


class RetrievalResult(BaseModel):
    """Unscored documents from one retrieval pass."""

    query: str
    classification: IntentClassification
    documents: list[RetrievedDocument] = Field(default_factory=list)
    sources_queried: list[DataSource] = Field(default_factory=list)
    failed_sources: list[DataSource] = Field(default_factory=list)

    @property
    def no_data(self) -> bool:
        return not self.documents


class DocumentGrade(BaseModel):
    """Grade of a single document, kept for message provenance."""

    source: DataSource
    title: str
    score: float
    relevant: bool


class GradingResult(BaseModel):
    """Final, graded document set of a turn."""

    query: str
    classification: IntentClassification
    documents: list[RetrievedDocument] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    grades: list[DocumentGrade] = Field(default_factory=list)
    sources_queried: list[DataSource] = Field(default_factory=list)
    failed_sources: list[DataSource] = Field(default_factory=list)

    # Correction bookkeeping
    correction_attempted: bool = False
    query_rewritten: bool = False
    rewritten_query: Optional[str] = None
    needs_external_fallback: bool = False


class AssembledContext(BaseModel):
    """Bounded context block handed to the model."""

    text: str
    data_sources: list[DataSource] = Field(default_factory=list)
    documents_used: int = 0
    truncated: bool = False
    estimated_tokens: int = 0
