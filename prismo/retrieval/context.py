"""
Context Assembly and System Prompt

Turns the graded documents into ONE bounded block of text for the model
and records which sources actually made it in.

DESIGN DECISION: assemble() is a pure function of (grading result,
max_tokens). No clock, no I/O, no randomness: the same input always
gives byte-identical context, which keeps answers reproducible and the
assembler testable without a database.

Budget:
    min(max_context_tokens, max(1000, max_tokens * 2)) - buffer
Tokens are estimated as ceil(characters / 4).
"""

from prismo.models.chat import estimate_tokens
from prismo.models.retrieval import AssembledContext, GradingResult, QueryIntent, RetrievedDocument
from prismo.models.settings import DataSource


NO_DATA_MARKER = "NO FINANCIAL DATA AVAILABLE FOR THIS QUESTION."
LIMITED_DATA_NOTICE = (
    "Limited data available. Consider adding more transactions for better insights."
)
MIN_CONTEXT_TOKENS = 1000

SOURCE_HEADINGS = {
    DataSource.TRANSACTIONS: "Transactions",
    DataSource.BUDGETS: "Budgets",
    DataSource.GOALS: "Savings goals",
    DataSource.SUBSCRIPTIONS: "Subscriptions",
    DataSource.CREDIT_CARDS: "Credit cards",
    DataSource.TAX: "Tax reliefs",
    DataSource.INCOME: "Income",
    DataSource.FORECASTS: "Forecasts",
}


def _block(document: RetrievedDocument) -> str:
    return f"[{document.title}]\n{document.content}"


class ContextAssembler:
    """Builds the context block handed to the model."""

    def __init__(self, max_context_tokens: int = 8000, token_buffer: int = 500):
        self.max_context_tokens = max_context_tokens
        self.token_buffer = token_buffer

    def budget(self, max_tokens: int) -> int:
        ceiling = min(self.max_context_tokens, max(MIN_CONTEXT_TOKENS, max_tokens * 2))
        return max(ceiling - self.token_buffer, 0)

    def assemble(self, grading: GradingResult, max_tokens: int) -> AssembledContext:
        """
        Pack documents by score (ties keep input order) until the budget
        is spent. A document that does not fit is skipped, smaller ones
        after it may still go in.
        """
        window = grading.classification.window
        header = f"Period: {window.label} ({window.start.isoformat()} to {window.end.isoformat()})"
        budget = self.budget(max_tokens) - estimate_tokens(header)

        ordered = [
            doc for _, doc in sorted(
                enumerate(grading.documents),
                key=lambda pair: (-(pair[1].score or 0.0), pair[0]),
            )
        ]

        included: list[RetrievedDocument] = []
        sources: list[DataSource] = []
        truncated = False
        for doc in ordered:
            cost = estimate_tokens(_block(doc)) + 1
            if doc.source not in sources:
                cost += estimate_tokens(f"## {SOURCE_HEADINGS[doc.source]}") + 1
            if cost > budget:
                truncated = True
                continue
            budget -= cost
            included.append(doc)
            if doc.source not in sources:
                sources.append(doc.source)

        if included:
            sections = [header]
            for source in sources:
                sections.append(f"## {SOURCE_HEADINGS[source]}")
                sections.extend(_block(doc) for doc in included if doc.source == source)
            text = "\n\n".join(sections)
        else:
            text = NO_DATA_MARKER

        if grading.needs_external_fallback:
            text = f"{text}\n\nNOTE: {LIMITED_DATA_NOTICE}"

        return AssembledContext(
            text=text,
            data_sources=sources,
            documents_used=len(included),
            truncated=truncated,
            estimated_tokens=estimate_tokens(text),
        )


# ============================================================================
# SYSTEM PROMPT
# ============================================================================

BASE_PROMPT = """You are Prismo AI, a personal finance assistant for Malaysian users. \
You help people understand and improve their finances using their own records.

Rules:
1. ONLY cite numbers that appear in the financial data below. NEVER invent figures.
2. Amounts are in RM (Malaysian Ringgit).
3. Never ask for passwords, card numbers or IC numbers.
4. For complex tax or legal matters, suggest consulting a professional.
5. If the data does not answer the question, say so plainly.

Answer format:
- Start with the direct answer
- Use **bold** for key numbers
- Use bullet points for lists
- End with one or two concrete recommendations
- Keep it short"""

SPENDING_GUIDANCE = """Spending analysis:
- Lead with the largest categories and the most impactful change
- Compare against budgets when budget data is present
- Flag unusual transactions
- Mention wins as well as concerns"""

TAX_GUIDANCE = """Tax planning (LHDN):
- Compare claimed reliefs against their limits and point out unused relief
- Mention tax-deductible spending that could still be claimed
- Reliefs and limits change per year of assessment; say which year you used"""

COACHING_GUIDANCE = """Financial coaching:
- Relate progress to the user's goals and income
- Suggest specific monthly amounts, not vague advice
- Keep an encouraging, non-judgmental tone"""

CREDIT_CARD_GUIDANCE = """Credit cards:
- Keep utilization under 30% of the limit
- Flag upcoming payment due dates
- Recommend paying the full balance to avoid interest"""

SUBSCRIPTION_GUIDANCE = """Subscriptions:
- Total the monthly cost and the yearly cost
- Point out overlapping or rarely used services"""

FORECAST_GUIDANCE = """Forecasts:
- Projections are averages of recent months, present them as estimates
- Name the categories that drive the projected total"""

INTENT_GUIDANCE = {
    QueryIntent.SPENDING_ANALYSIS: SPENDING_GUIDANCE,
    QueryIntent.BUDGET_STATUS: SPENDING_GUIDANCE,
    QueryIntent.ANOMALY: SPENDING_GUIDANCE,
    QueryIntent.COMPARISON: SPENDING_GUIDANCE,
    QueryIntent.TAX_OPTIMIZATION: TAX_GUIDANCE,
    QueryIntent.GOAL_PROGRESS: COACHING_GUIDANCE,
    QueryIntent.INCOME_ANALYSIS: COACHING_GUIDANCE,
    QueryIntent.GENERAL: COACHING_GUIDANCE,
    QueryIntent.CREDIT_CARD: CREDIT_CARD_GUIDANCE,
    QueryIntent.SUBSCRIPTION_REVIEW: SUBSCRIPTION_GUIDANCE,
    QueryIntent.FORECAST: FORECAST_GUIDANCE,
}

TRANSPARENCY_NOTE = """When you use the data, say briefly what you looked at, for example \
"Based on your transactions this month..."."""


def build_system_prompt(context: AssembledContext, intent: QueryIntent) -> str:
    """Persona + intent guidance + the assembled financial data."""
    parts = [BASE_PROMPT]
    guidance = INTENT_GUIDANCE.get(intent)
    if guidance:
        parts.append(guidance)
    parts.append(TRANSPARENCY_NOTE)
    parts.append(f"FINANCIAL DATA:\n{context.text}")
    if not context.data_sources:
        parts.append(
            "There is no financial data for this question. Tell the user which "
            "records would help, and do not guess numbers."
        )
    return "\n\n".join(parts)
