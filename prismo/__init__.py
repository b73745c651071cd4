"""
Prismo - AI Financial Assistant

Answers questions about a user's own money (spending, budgets, goals,
subscriptions, credit cards, tax reliefs, income, forecasts) with a
Corrective-RAG pipeline over their financial records.

DESIGN PRINCIPLES:
1. Answers come from the user's data, never from the model's imagination
2. A data source the user switched off is never read
3. Fail early, fail visibly - a failed turn never leaves half a transcript
4. Every turn is auditable through one correlation id
5. Providers and storage are swappable behind interfaces
"""

__version__ = "1.0.0"
__author__ = "Prismo Team"
