"""
Relevance Grader and Corrector (the "corrective" half of CRAG)

DESIGN DECISION: Grading is a DETERMINISTIC heuristic, not a model call.
Same query + same document always gives the same score, the score only
grows with term overlap, and a turn never pays for an extra LLM round
trip just to decide whether its own retrieval was good enough.

Document score (clamped to [0, 1]):
    0.4  the question names the document's source (SOURCE_KEYWORDS)
  + 0.1  per question term found in the content, at most 0.3
  + 0.2  a question term matches a structured field (category, vendor, name)
  + 0.1  the document carries data

Turn confidence = mean of the top-k document scores (0.0 with no documents).

Correction cycle:
- runs when confidence < relevance_threshold and CRAG is enabled
- rewrites the question and re-retrieves ONCE with every enabled source
- NEVER runs twice in one turn, even if the corrected retrieval is
  still weak; the better-scoring of the two attempts is kept
"""

import re
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from prismo.models.chat import TurnState
from prismo.models.retrieval import (
    DocumentGrade,
    GradingResult,
    IntentClassification,
    QueryIntent,
    RetrievalResult,
    RetrievedDocument,
)
from prismo.models.settings import AISettings
from prismo.retrieval.accessors import AccessOptions
from prismo.retrieval.intent import SOURCE_KEYWORDS, contains_term
from prismo.retrieval.retriever import Retriever


logger = structlog.get_logger(__name__)

SOURCE_MATCH_SCORE = 0.4
TERM_MATCH_SCORE = 0.1
TERM_MATCH_CAP = 0.3
FIELD_MATCH_SCORE = 0.2
HAS_DATA_SCORE = 0.1

# Kept when no document reaches the minimum score
FALLBACK_TOP_N = 3

STOPWORDS = frozenset({
    "about", "after", "also", "been", "before", "could", "does", "doing",
    "from", "have", "into", "many", "more", "much", "should",
    "show", "tell", "than", "that", "their", "them", "then", "there",
    "these", "they", "this", "what", "when", "where", "which", "while",
    "will", "with", "would", "your", "give", "want", "need", "please",
})


def query_terms(query: str) -> list[str]:
    """Significant lowercase terms of a question, in order, without duplicates."""
    terms: list[str] = []
    for word in re.findall(r"[a-z0-9&']+", query.lower()):
        word = word.strip("'")
        if len(word) > 3 and word not in STOPWORDS and word not in terms:
            terms.append(word)
    return terms


def _field_values(value) -> list[str]:
    if value is None or isinstance(value, bool):
        return []
    if isinstance(value, str):
        return [value.lower()]
    if isinstance(value, dict):
        return [v for item in value.values() for v in _field_values(item)]
    if isinstance(value, (list, tuple, set)):
        return [v for item in value for v in _field_values(item)]
    return []


# ============================================================================
# GRADER
# ============================================================================

class RelevanceGrader:
    """Scores documents against a question and picks the final set."""

    def __init__(self, min_document_score: float = 0.6, top_k: int = 3):
        self.min_document_score = min_document_score
        self.top_k = top_k

    def score(self, query: str, document: RetrievedDocument) -> float:
        text = query.lower()
        terms = query_terms(query)
        total = 0.0

        if any(contains_term(text, kw) for kw in SOURCE_KEYWORDS[document.source]):
            total += SOURCE_MATCH_SCORE

        content = document.content.lower()
        hits = sum(1 for term in terms if term in content)
        total += min(TERM_MATCH_CAP, TERM_MATCH_SCORE * hits)

        values = [v for field in document.fields.values() for v in _field_values(field)]
        if any(term in value for term in terms for value in values):
            total += FIELD_MATCH_SCORE

        if document.has_data:
            total += HAS_DATA_SCORE

        return round(min(max(total, 0.0), 1.0), 4)

    def confidence(self, scores: list[float]) -> float:
        if not scores:
            return 0.0
        best = sorted(scores, reverse=True)[: self.top_k]
        return round(sum(best) / len(best), 4)

    def grade(self, query: str, retrieval: RetrievalResult) -> GradingResult:
        """
        Score every document and select the final set.

        Ranking is a stable sort on score, so equal scores keep the
        retriever's source order.
        """
        scored = [
            doc.model_copy(update={"score": self.score(query, doc)})
            for doc in retrieval.documents
        ]
        ranked = sorted(scored, key=lambda d: d.score, reverse=True)
        selected = [d for d in ranked if d.score >= self.min_document_score]
        if not selected:
            selected = ranked[:FALLBACK_TOP_N]

        return GradingResult(
            query=query,
            classification=retrieval.classification,
            documents=selected,
            confidence=self.confidence([d.score for d in scored]),
            grades=[
                DocumentGrade(
                    source=d.source,
                    title=d.title,
                    score=d.score,
                    relevant=d.score >= self.min_document_score,
                )
                for d in scored
            ],
            sources_queried=list(retrieval.sources_queried),
            failed_sources=list(retrieval.failed_sources),
        )

    def needs_correction(self, result: GradingResult, settings: AISettings) -> bool:
        return (
            settings.enable_crag
            and not result.correction_attempted
            and result.confidence < settings.relevance_threshold
        )


# ============================================================================
# QUERY REWRITER
# ============================================================================

ABBREVIATIONS = {
    "pcb": "Potongan Cukai Bulanan (monthly tax deduction)",
    "epf": "Employees Provident Fund (KWSP)",
    "kwsp": "KWSP (EPF)",
    "socso": "SOCSO (PERKESO)",
    "lhdn": "LHDN (Inland Revenue Board)",
    "ya": "year of assessment",
}

INTENT_EXPANSIONS: dict[QueryIntent, tuple[str, ...]] = {
    QueryIntent.SPENDING_ANALYSIS: ("spending", "expenses", "category"),
    QueryIntent.BUDGET_STATUS: ("budget", "limit", "utilization"),
    QueryIntent.GOAL_PROGRESS: ("savings", "goal", "progress"),
    QueryIntent.SUBSCRIPTION_REVIEW: ("recurring", "subscription", "payments"),
    QueryIntent.CREDIT_CARD: ("credit card", "balance", "utilization"),
    QueryIntent.TAX_OPTIMIZATION: ("tax", "relief", "deduction"),
    QueryIntent.INCOME_ANALYSIS: ("income", "salary", "earnings"),
    QueryIntent.FORECAST: ("forecast", "projection", "next month"),
    QueryIntent.COMPARISON: ("spending", "income", "budget"),
    QueryIntent.ANOMALY: ("unusual", "transactions", "spending"),
    QueryIntent.GENERAL: ("spending", "budget", "savings", "income"),
}


class RewriteResult(BaseModel):
    original_query: str
    rewritten_query: str
    rewritten: bool = False
    expansions: list[str] = Field(default_factory=list)


class QueryRewriter:
    """
    Heuristic query broadening for the correction cycle.

    Expands local abbreviations, pins the resolved time period when the
    question gave none, and appends the vocabulary of the classified
    intent. Only terms not already present are added.
    """

    def rewrite(self, query: str, classification: IntentClassification) -> RewriteResult:
        original = " ".join(query.split())
        lowered = original.lower()
        expansions: list[str] = []

        for abbreviation, expanded in ABBREVIATIONS.items():
            if re.search(rf"\b{abbreviation}\b", lowered) and expanded.lower() not in lowered:
                expansions.append(expanded)

        if not classification.time_explicit:
            expansions.append(classification.window.label)

        for term in INTENT_EXPANSIONS.get(classification.intent, ()):
            if not contains_term(lowered, term) and term not in expansions:
                expansions.append(term)

        if not expansions:
            return RewriteResult(original_query=query, rewritten_query=query)

        rewritten = " ".join(f"{original} {' '.join(expansions)}".split())
        return RewriteResult(
            original_query=query,
            rewritten_query=rewritten,
            rewritten=rewritten != original,
            expansions=expansions,
        )


# ============================================================================
# CORRECTIVE RETRIEVAL
# ============================================================================

StateCallback = Callable[[TurnState], None]


class CorrectiveRetrieval:
    """
    Retrieve, grade and (at most once) correct.

    on_state is told about every stage change so the caller's turn
    state machine stays in step:
        RETRIEVING -> GRADING [-> CORRECTION_RETRIEVING -> GRADING]
    """

    def __init__(
        self,
        retriever: Retriever,
        grader: RelevanceGrader,
        rewriter: Optional[QueryRewriter] = None,
    ):
        self._retriever = retriever
        self._grader = grader
        self._rewriter = rewriter or QueryRewriter()

    async def run(
        self,
        user_id: str,
        query: str,
        settings: AISettings,
        on_state: Optional[StateCallback] = None,
    ) -> GradingResult:
        notify = on_state or (lambda state: None)
        options = AccessOptions.from_settings(settings)

        notify(TurnState.RETRIEVING)
        retrieval = await self._retriever.retrieve(user_id, query, settings, options=options)

        notify(TurnState.GRADING)
        result = self._grader.grade(query, retrieval)

        if self._grader.needs_correction(result, settings):
            notify(TurnState.CORRECTION_RETRIEVING)
            rewrite = self._rewriter.rewrite(query, retrieval.classification)
            corrected_retrieval = await self._retriever.retrieve(
                user_id,
                rewrite.rewritten_query,
                settings,
                broaden=True,
                classification=retrieval.classification,
                options=options,
            )

            notify(TurnState.GRADING)
            corrected = self._grader.grade(rewrite.rewritten_query, corrected_retrieval)
            logger.info(
                "correction_cycle",
                confidence_before=result.confidence,
                confidence_after=corrected.confidence,
                rewritten=rewrite.rewritten,
            )

            kept = corrected if corrected.confidence > result.confidence else result
            result = kept.model_copy(update={
                "query": query,
                "correction_attempted": True,
                "query_rewritten": rewrite.rewritten,
                "rewritten_query": rewrite.rewritten_query if rewrite.rewritten else None,
                "sources_queried": _union(result.sources_queried, corrected.sources_queried),
                "failed_sources": _union(result.failed_sources, corrected.failed_sources),
            })

        if settings.enable_web_search_fallback and result.confidence < settings.relevance_threshold:
            result = result.model_copy(update={"needs_external_fallback": True})

        return result


def _union(first: list, second: list) -> list:
    merged = list(first)
    merged.extend(item for item in second if item not in merged)
    return merged
