"""
Retriever

Decides which data sources a question needs, reads them concurrently,
and returns the unscored candidate documents.

CRITICAL: The routed source list is ALWAYS intersected with the user's
data-access permissions. A disabled source is never queried, whatever
the question, the intent or the correction cycle asks for.

Routing:
1. Sources suggested by the classified intent (most relevant first)
2. Plus any source whose keywords appear in the question
3. broaden=True (correction cycle): every enabled source
"""

import asyncio
from datetime import date
from typing import Callable, Optional

import structlog

from prismo.models.retrieval import IntentClassification, RetrievalResult, RetrievedDocument
from prismo.models.settings import AISettings, DataSource
from prismo.retrieval.accessors import AccessOptions, FinancialDataAccessor, RetrievalError
from prismo.retrieval.intent import classify_intent, keyword_sources


logger = structlog.get_logger(__name__)

MIN_DOCS_PER_SOURCE = 2


def route_sources(
    query: str,
    classification: IntentClassification,
    settings: AISettings,
    broaden: bool = False,
) -> list[DataSource]:
    """Ordered, permission-filtered list of sources to query."""
    enabled = settings.data_access.enabled_sources()
    if broaden:
        return enabled

    routed: list[DataSource] = []
    for source in list(classification.suggested_sources) + keyword_sources(query):
        if source not in routed:
            routed.append(source)
    return [source for source in routed if source in enabled]


def interleave(batches: list[list[RetrievedDocument]], max_docs: int) -> list[RetrievedDocument]:
    """
    Merge per-source batches, round robin in routed order, capped at max_docs.

    Each source first gets max(2, max_docs // n) slots; leftover capacity
    is then filled from the remaining documents in source order.
    """
    if not batches or max_docs <= 0:
        return []
    per_source = max(MIN_DOCS_PER_SOURCE, max_docs // len(batches))
    heads = [batch[:per_source] for batch in batches]
    tails = [batch[per_source:] for batch in batches]

    merged: list[RetrievedDocument] = []
    depth = max((len(h) for h in heads), default=0)
    for i in range(depth):
        for head in heads:
            if i < len(head):
                merged.append(head[i])
    for tail in tails:
        merged.extend(tail)
    return merged[:max_docs]


class Retriever:
    """Fans a question out to the enabled data accessors."""

    def __init__(
        self,
        accessors: dict[DataSource, FinancialDataAccessor],
        clock: Callable[[], date] = date.today,
    ):
        self._accessors = accessors
        self._clock = clock

    def classify(self, query: str) -> IntentClassification:
        return classify_intent(query, self._clock())

    async def retrieve(
        self,
        user_id: str,
        query: str,
        settings: AISettings,
        *,
        broaden: bool = False,
        classification: Optional[IntentClassification] = None,
        options: Optional[AccessOptions] = None,
    ) -> RetrievalResult:
        """
        Fetch candidate documents for a question.

        Never raises for a failing source: it is reported in
        failed_sources and the remaining sources still answer.
        """
        classification = classification or self.classify(query)
        options = options or AccessOptions.from_settings(settings)
        sources = [
            s for s in route_sources(query, classification, settings, broaden)
            if s in self._accessors
        ]
        if not sources:
            return RetrievalResult(query=query, classification=classification)

        max_docs = settings.max_retrieval_docs
        outcomes = await asyncio.gather(
            *(
                self._accessors[source].fetch(
                    user_id, classification.window, max_docs, options
                )
                for source in sources
            ),
            return_exceptions=True,
        )

        batches: list[list[RetrievedDocument]] = []
        failed: list[DataSource] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, RetrievalError):
                logger.warning("source_failed", source=source.value, error=str(outcome))
                failed.append(source)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            batches.append(outcome)

        documents = interleave(batches, max_docs)
        logger.debug(
            "retrieval_done",
            intent=classification.intent.value,
            sources=[s.value for s in sources],
            documents=len(documents),
            broaden=broaden,
        )
        return RetrievalResult(
            query=query,
            classification=classification,
            documents=documents,
            sources_queried=sources,
            failed_sources=failed,
        )
