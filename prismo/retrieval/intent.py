"""
Intent Routing

Deterministic reading of a user question: what it is about, which period
it refers to, and which spending categories it names.

DESIGN DECISION: No LLM involvement. Routing runs before every turn, so
it must be cheap, repeatable and testable. Weighted keyword and phrase
tables decide the intent; regular expressions resolve the time window.

Scoring:
- every keyword hit adds 1 x intent weight
- every phrase hit adds 2 x intent weight
- confidence = best score / total score, capped at 0.95
- no hit at all -> GENERAL with confidence 0.5
"""

import calendar
import re
from datetime import date, timedelta
from typing import Optional

from prismo.models.retrieval import IntentClassification, QueryIntent, RetrievalWindow
from prismo.models.settings import DataSource


MAX_INTENT_CONFIDENCE = 0.95
DEFAULT_INTENT_CONFIDENCE = 0.5


# ============================================================================
# PATTERN TABLES
# ============================================================================

# Declaration order is the tie-break order for equal scores.
INTENT_PATTERNS: dict[QueryIntent, dict] = {
    QueryIntent.TAX_OPTIMIZATION: {
        "keywords": (
            "tax", "lhdn", "relief", "deduction", "pcb", "claim", "filing",
            "refund", "assessment", "ya", "cukai", "pelepasan", "rebate",
            "epf", "kwsp", "socso", "perkeso", "eis", "zakat",
        ),
        "phrases": (
            "save on tax", "tax savings", "maximize deductions", "tax return",
            "how much tax", "reduce tax", "tax-deductible", "claim relief",
            "tax bracket", "income tax", "annual assessment",
        ),
        "weight": 1.5,
    },
    QueryIntent.SPENDING_ANALYSIS: {
        "keywords": (
            "spend", "spending", "spent", "expense", "where", "money",
            "category", "breakdown", "pattern", "overspend",
            "perbelanjaan", "belanja", "habis", "duit",
        ),
        "phrases": (
            "where did", "how much did i spend", "spending too much",
            "top expenses", "biggest expense", "money going", "spending habits",
            "spending pattern", "analyze spending", "review expenses",
        ),
        "weight": 1.2,
    },
    QueryIntent.BUDGET_STATUS: {
        "keywords": (
            "budget", "limit", "allocation", "within", "bajet",
            "allocate", "allowance", "cap", "threshold",
        ),
        "phrases": (
            "on track", "over budget", "under budget", "budget status",
            "how is my budget", "budget utilization", "set budget",
            "budget vs actual", "staying within budget",
        ),
        "weight": 1.2,
    },
    QueryIntent.GOAL_PROGRESS: {
        "keywords": (
            "goal", "target", "saving", "progress", "matlamat",
            "simpanan", "achieve", "reach", "milestone",
        ),
        "phrases": (
            "on track", "how am i doing", "goal progress", "reach my goal",
            "savings goal", "achieve my", "when will i", "how long until",
            "target amount", "save for",
        ),
        "weight": 1.3,
    },
    QueryIntent.SUBSCRIPTION_REVIEW: {
        "keywords": (
            "subscription", "recurring", "monthly", "cancel", "langganan",
            "netflix", "spotify", "gym", "membership",
        ),
        "phrases": (
            "cancel subscription", "unused subscription", "too many subscriptions",
            "subscription audit", "how much on subscriptions", "recurring payments",
            "wasting money on", "not using",
        ),
        "weight": 1.3,
    },
    QueryIntent.CREDIT_CARD: {
        "keywords": (
            "credit", "card", "utilization", "due", "balance", "cashback",
            "rewards", "points", "miles", "visa", "mastercard", "amex",
        ),
        "phrases": (
            "credit card", "best card", "card to use", "credit utilization",
            "pay off card", "credit limit", "which card", "card rewards",
            "card payment due", "credit score",
        ),
        "weight": 1.4,
    },
    QueryIntent.INCOME_ANALYSIS: {
        "keywords": (
            "income", "salary", "earning", "earned", "bonus", "freelance",
            "pendapatan", "gaji", "commission", "revenue", "paycheck",
        ),
        "phrases": (
            "how much am i earning", "income trend", "salary increase",
            "total income", "income sources", "making enough", "income vs expense",
            "net income", "gross income",
        ),
        "weight": 1.2,
    },
    QueryIntent.FORECAST: {
        "keywords": (
            "forecast", "predict", "prediction", "future", "projection",
            "expect", "estimate", "anticipate",
        ),
        "phrases": (
            "what will i spend", "next month", "projected expenses",
            "how much will", "spending forecast", "predict my", "future spending",
            "end of month", "expecting to spend",
        ),
        "weight": 1.3,
    },
    QueryIntent.COMPARISON: {
        "keywords": (
            "compare", "comparison", "versus", "vs", "difference", "between",
            "higher", "lower", "increase", "decrease",
        ),
        "phrases": (
            "compared to", "this month vs", "year over year",
            "month over month", "better or worse", "change from",
        ),
        "weight": 1.1,
    },
    QueryIntent.ANOMALY: {
        "keywords": (
            "unusual", "strange", "unexpected", "suspicious", "fraud", "wrong",
            "mistake", "duplicate", "weird", "odd",
        ),
        "phrases": (
            "something wrong", "doesn't look right", "unusual spending",
            "strange transaction", "didn't recognize", "unexpected charge",
            "suspicious activity",
        ),
        "weight": 1.4,
    },
    QueryIntent.GENERAL: {
        "keywords": (
            "advice", "help", "suggest", "recommend", "improve",
            "tips", "strategy", "plan", "optimize", "should",
        ),
        "phrases": (
            "what should i", "how can i", "any suggestions", "help me",
            "give me advice", "what do you recommend", "best way to",
            "how to improve", "financial advice",
        ),
        "weight": 1.0,
    },
}

# Most relevant source first
SUGGESTED_SOURCES: dict[QueryIntent, list[DataSource]] = {
    QueryIntent.SPENDING_ANALYSIS: [DataSource.TRANSACTIONS, DataSource.BUDGETS],
    QueryIntent.BUDGET_STATUS: [DataSource.BUDGETS, DataSource.TRANSACTIONS],
    QueryIntent.GOAL_PROGRESS: [DataSource.GOALS, DataSource.TRANSACTIONS, DataSource.INCOME],
    QueryIntent.SUBSCRIPTION_REVIEW: [DataSource.SUBSCRIPTIONS, DataSource.TRANSACTIONS],
    QueryIntent.CREDIT_CARD: [DataSource.CREDIT_CARDS, DataSource.TRANSACTIONS],
    QueryIntent.TAX_OPTIMIZATION: [DataSource.TAX, DataSource.TRANSACTIONS, DataSource.INCOME],
    QueryIntent.INCOME_ANALYSIS: [DataSource.INCOME, DataSource.TRANSACTIONS, DataSource.TAX],
    QueryIntent.FORECAST: [DataSource.FORECASTS, DataSource.TRANSACTIONS, DataSource.BUDGETS],
    QueryIntent.COMPARISON: [DataSource.TRANSACTIONS, DataSource.BUDGETS, DataSource.INCOME],
    QueryIntent.ANOMALY: [DataSource.TRANSACTIONS, DataSource.FORECASTS],
    QueryIntent.GENERAL: [
        DataSource.TRANSACTIONS, DataSource.BUDGETS, DataSource.GOALS, DataSource.INCOME,
    ],
}

# Query words that point straight at a source, independent of intent.
# Shared by the retriever (routing) and the grader (scoring).
SOURCE_KEYWORDS: dict[DataSource, tuple[str, ...]] = {
    DataSource.TRANSACTIONS: (
        "spend", "spending", "spent", "expense", "bought", "purchase", "money", "payment",
    ),
    DataSource.BUDGETS: ("budget", "limit", "allocation"),
    DataSource.GOALS: ("goal", "target", "saving", "savings", "save for"),
    DataSource.SUBSCRIPTIONS: ("subscription", "recurring", "cancel"),
    DataSource.CREDIT_CARDS: ("credit card", "card", "credit", "utilization", "payment due"),
    DataSource.TAX: ("tax", "deduction", "relief", "lhdn", "pcb", "claim"),
    DataSource.INCOME: ("income", "salary", "earning", "earned", "paycheck"),
    DataSource.FORECASTS: ("forecast", "predict", "projection", "next month", "future"),
}

CATEGORY_PATTERNS: list[tuple[str, str]] = [
    (r"food|makan|f&b|restaurants?|groceries|grocery|dining", "Food & Dining"),
    (r"transport|transportation|petrol|fuel|grab|mrt|lrt|bus", "Transport"),
    (r"shopping|retail|clothes|clothing", "Shopping"),
    (r"entertainment|movies?|gaming", "Entertainment"),
    (r"utilities|electricity|water|internet|phone|telco", "Utilities"),
    (r"health|medical|doctor|hospital|pharmacy|medicine", "Healthcare"),
    (r"education|course|tuition|books|school|university", "Education"),
    (r"insurance", "Insurance"),
    (r"rent|rental|housing|mortgage", "Housing"),
    (r"travel|vacation|holiday|hotel|flights?", "Travel"),
]

MONTHS: list[tuple[str, int]] = [
    (r"january|jan|januari", 1),
    (r"february|feb|februari", 2),
    (r"march|mar|mac", 3),
    (r"april|apr", 4),
    # "may" is also a verb; only accept it next to a preposition or a year
    (r"(?:in|during|for|since|of)\s+may|may\s+20\d{2}|mei", 5),
    (r"june|jun", 6),
    (r"july|jul|julai", 7),
    (r"august|aug|ogos", 8),
    (r"september|sept|sep", 9),
    (r"october|oct|oktober", 10),
    (r"november|nov", 11),
    (r"december|dec|disember", 12),
]


# ============================================================================
# MATCHING HELPERS
# ============================================================================

def contains_term(text: str, term: str) -> bool:
    """Whole-word (plural tolerant) match of term inside lowercased text."""
    return re.search(rf"\b{re.escape(term)}(?:s|es)?\b", text) is not None


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def current_month_window(today: date) -> RetrievalWindow:
    start, end = _month_bounds(today.year, today.month)
    return RetrievalWindow(start=start, end=end, label="this month")


# ============================================================================
# TIME WINDOW
# ============================================================================

def resolve_time_window(query: str, today: Optional[date] = None) -> tuple[RetrievalWindow, bool]:
    """
    Convert the time reference in a question to a date range.

    Returns (window, explicit). When the question names no period the
    current month is used and explicit is False.
    """
    today = today or date.today()
    text = query.lower()

    if re.search(r"\b(this month|current month|bulan ini)\b", text):
        return current_month_window(today), True

    if re.search(r"\b(last month|previous month|bulan lepas)\b", text):
        year, month = _shift_month(today.year, today.month, -1)
        start, end = _month_bounds(year, month)
        return RetrievalWindow(start=start, end=end, label="last month"), True

    if re.search(r"\b(ytd|year to date|year-to-date)\b", text):
        return RetrievalWindow(
            start=date(today.year, 1, 1), end=today, label="year to date"
        ), True

    if re.search(r"\b(this year|current year|tahun ini)\b", text):
        return RetrievalWindow(
            start=date(today.year, 1, 1), end=date(today.year, 12, 31), label="this year"
        ), True

    if re.search(r"\b(last year|previous year|tahun lepas)\b", text):
        year = today.year - 1
        return RetrievalWindow(
            start=date(year, 1, 1), end=date(year, 12, 31), label="last year"
        ), True

    if re.search(r"\b(this week|minggu ini)\b", text):
        start = today - timedelta(days=today.weekday())
        return RetrievalWindow(
            start=start, end=start + timedelta(days=6), label="this week"
        ), True

    if re.search(r"\b(last week|minggu lepas)\b", text):
        start = today - timedelta(days=today.weekday() + 7)
        return RetrievalWindow(
            start=start, end=start + timedelta(days=6), label="last week"
        ), True

    if re.search(r"\b(today|hari ini)\b", text):
        return RetrievalWindow(start=today, end=today, label="today"), True

    if re.search(r"\b(yesterday|semalam)\b", text):
        day = today - timedelta(days=1)
        return RetrievalWindow(start=day, end=day, label="yesterday"), True

    year_match = re.search(r"\b(20\d{2})\b", text)

    # Specific months
    for pattern, month in MONTHS:
        if re.search(rf"\b(?:{pattern})\b", text):
            if year_match:
                year = int(year_match.group(1))
            else:
                # Assume the most recent occurrence of that month
                year = today.year if month <= today.month else today.year - 1
            start, end = _month_bounds(year, month)
            label = f"{calendar.month_name[month]} {year}"
            return RetrievalWindow(start=start, end=end, label=label), True

    last_n = re.search(r"\b(?:last|past)\s+(\d{1,3})\s+(day|week|month)s?\b", text)
    if last_n:
        count = int(last_n.group(1))
        unit = last_n.group(2)
        if unit == "day":
            start = today - timedelta(days=count - 1)
        elif unit == "week":
            start = today - timedelta(weeks=count)
        else:
            year, month = _shift_month(today.year, today.month, -(count - 1))
            start = date(year, month, 1)
        label = f"last {count} {unit}{'s' if count != 1 else ''}"
        return RetrievalWindow(start=start, end=today, label=label), True

    if year_match:
        year = int(year_match.group(1))
        return RetrievalWindow(
            start=date(year, 1, 1), end=date(year, 12, 31), label=str(year)
        ), True

    return current_month_window(today), False


# ============================================================================
# CLASSIFICATION
# ============================================================================

def extract_categories(query: str) -> list[str]:
    """Spending categories named in the question, in table order."""
    text = query.lower()
    return [
        category
        for pattern, category in CATEGORY_PATTERNS
        if re.search(rf"\b(?:{pattern})\b", text)
    ]


def score_intents(query: str) -> dict[QueryIntent, float]:
    text = query.lower().strip()
    scores: dict[QueryIntent, float] = {}
    for intent, patterns in INTENT_PATTERNS.items():
        score = 0.0
        for keyword in patterns["keywords"]:
            if contains_term(text, keyword):
                score += patterns["weight"]
        for phrase in patterns["phrases"]:
            if phrase in text:
                score += 2 * patterns["weight"]
        scores[intent] = score
    return scores


def classify_intent(query: str, today: Optional[date] = None) -> IntentClassification:
    """
    Classify a question into an intent with its time window and categories.

    Same query and same day always give the same classification.
    """
    scores = score_intents(query)

    best_intent = QueryIntent.GENERAL
    best_score = 0.0
    for intent, score in scores.items():
        if score > best_score:
            best_intent, best_score = intent, score

    total = sum(scores.values())
    confidence = best_score / total if total > 0 else DEFAULT_INTENT_CONFIDENCE

    window, explicit = resolve_time_window(query, today)

    return IntentClassification(
        intent=best_intent,
        confidence=round(min(confidence, MAX_INTENT_CONFIDENCE), 4),
        window=window,
        time_explicit=explicit,
        categories=extract_categories(query),
        suggested_sources=list(SUGGESTED_SOURCES[best_intent]),
    )


def keyword_sources(query: str) -> list[DataSource]:
    """Sources whose keyword table matches the question, in canonical order."""
    text = query.lower()
    return [
        source
        for source in DataSource
        if any(contains_term(text, kw) for kw in SOURCE_KEYWORDS[source])
    ]
