"""
Retrieval Package

The Corrective-RAG half of a chat turn:
intent routing -> data accessors -> retriever -> grader/corrector -> context
"""

from prismo.retrieval.accessors import (
    ACCESSOR_CLASSES,
    AccessOptions,
    FinancialDataAccessor,
    RetrievalError,
    create_accessors,
)
from prismo.retrieval.context import (
    LIMITED_DATA_NOTICE,
    NO_DATA_MARKER,
    ContextAssembler,
    build_system_prompt,
)
from prismo.retrieval.grader import (
    CorrectiveRetrieval,
    QueryRewriter,
    RelevanceGrader,
    RewriteResult,
)
from prismo.retrieval.intent import classify_intent, resolve_time_window
from prismo.retrieval.retriever import Retriever, route_sources

__all__ = [
    # Accessors
    "ACCESSOR_CLASSES",
    "AccessOptions",
    "FinancialDataAccessor",
    "RetrievalError",
    "create_accessors",
    # Routing
    "Retriever",
    "classify_intent",
    "resolve_time_window",
    "route_sources",
    # Grading
    "CorrectiveRetrieval",
    "QueryRewriter",
    "RelevanceGrader",
    "RewriteResult",
    # Context
    "ContextAssembler",
    "LIMITED_DATA_NOTICE",
    "NO_DATA_MARKER",
    "build_system_prompt",
]
