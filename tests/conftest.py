"""
Shared fixtures.

Test strategy:
1. Every test gets its own SQLite file database, seeded with a small
   set of financial records for USER_ID
2. Provider calls go to FakeLLMClient, which follows a script
   (chunks to stream, an error to raise) - no network, ever
3. The clock is fixed so time windows are deterministic
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from prismo.api import create_app
from prismo.config import Settings
from prismo.models.chat import TokenUsage
from prismo.models.settings import AIProvider, AISettingsUpdate, ProviderConfig
from prismo.orchestrator import create_app_components
from prismo.services.llm import GenerationError, LLMClient
from prismo.services.storage import Database
from prismo.services.storage.tables import (
    Base,
    BudgetRow,
    CreditCardRow,
    GoalRow,
    MessageRow,
    SubscriptionRow,
    TaxDeductionRow,
    TransactionRow,
)


TODAY = date(2026, 3, 15)
USER_ID = "user-1"
OTHER_USER_ID = "user-2"
TEST_API_KEY = "sk-test-abcdefghijklmnopqrstuvwxyz123456"
TEST_SECRET = "test-master-secret-for-prismo"


def fixed_clock() -> date:
    return TODAY


# ============================================================================
# FAKE PROVIDER
# ============================================================================

@dataclass
class LLMScript:
    """What the fake provider does on its next calls."""

    chunks: list[str] = field(default_factory=lambda: [
        "You spent **RM 85.50** on food this month. ",
        "Consider setting a weekly food limit.",
    ])
    # Raised after this many chunks have been streamed (None = no error)
    error: Optional[GenerationError] = None
    error_after: int = 0
    usage: Optional[TokenUsage] = field(
        default_factory=lambda: TokenUsage(prompt_tokens=900, completion_tokens=40, total_tokens=940)
    )
    calls: list[dict] = field(default_factory=list)
    configs: list[ProviderConfig] = field(default_factory=list)
    clients: list["FakeLLMClient"] = field(default_factory=list)
    # Seconds to wait before each chunk
    delay: float = 0.0


class FakeLLMClient(LLMClient):
    """Scripted provider client behind the real LLMClient base class."""

    provider = AIProvider.OPENAI

    def __init__(self, config: ProviderConfig, script: LLMScript):
        super().__init__(config)
        self._script = script
        self.closed = False
        script.clients.append(self)

    async def aclose(self):
        self.closed = True

    def _record(self, system_prompt, messages):
        self._script.calls.append({
            "system_prompt": system_prompt,
            "messages": [(m.role, m.content) for m in messages],
        })

    async def _complete(self, system_prompt, messages, temperature, max_tokens):
        self._record(system_prompt, messages)
        if self._script.error is not None:
            raise self._script.error
        return "".join(self._script.chunks), self._script.usage

    async def _stream_tokens(self, system_prompt, messages, temperature, max_tokens):
        self._record(system_prompt, messages)
        for i, chunk in enumerate(self._script.chunks):
            if self._script.delay:
                await asyncio.sleep(self._script.delay)
            if self._script.error is not None and i >= self._script.error_after:
                raise self._script.error
            yield chunk
        if self._script.error is not None:
            raise self._script.error
        if self._script.usage is not None:
            yield self._script.usage

    def _translate_error(self, error):
        return GenerationError(str(error), provider=self.provider.value)


# ============================================================================
# DATABASE
# ============================================================================

def seed_financial_data(path) -> None:
    """Write the financial fixture rows with a plain synchronous engine."""
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        session.add_all([
            # March 2026 (this month)
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 3, 2),
                           description="Nasi lemak breakfast", amount=Decimal("12.50"),
                           type="expense", category="Food", vendor="Village Park"),
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 3, 9),
                           description="Groceries", amount=Decimal("73.00"),
                           type="expense", category="Food", vendor="Jaya Grocer"),
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 3, 5),
                           description="Grab ride", amount=Decimal("18.00"),
                           type="expense", category="Transport", vendor="Grab"),
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 3, 1),
                           description="Salary March", amount=Decimal("6500.00"),
                           type="income", category="Salary"),
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 3, 10),
                           description="Clinic visit", amount=Decimal("120.00"),
                           type="expense", category="Healthcare", vendor="Klinik Mediviron",
                           is_tax_deductible=True, tax_category="Medical"),
            # February 2026
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 2, 14),
                           description="Dinner", amount=Decimal("150.00"),
                           type="expense", category="Food", vendor="Marini's"),
            TransactionRow(user_id=USER_ID, transaction_date=date(2026, 2, 1),
                           description="Salary February", amount=Decimal("6500.00"),
                           type="income", category="Salary"),
            # Another user's records must never show up
            TransactionRow(user_id=OTHER_USER_ID, transaction_date=date(2026, 3, 3),
                           description="Secret caviar", amount=Decimal("999.00"),
                           type="expense", category="Food", vendor="Caviar House"),

            BudgetRow(user_id=USER_ID, category="Food", amount=Decimal("800.00")),
            BudgetRow(user_id=USER_ID, category="Transport", amount=Decimal("300.00")),
            GoalRow(user_id=USER_ID, name="Emergency fund", target_amount=Decimal("20000.00"),
                    current_amount=Decimal("8000.00"), target_date=date(2026, 12, 31)),
            SubscriptionRow(user_id=USER_ID, name="Netflix", amount=Decimal("55.00"),
                            frequency="monthly", category="Entertainment",
                            next_billing_date=date(2026, 3, 20)),
            SubscriptionRow(user_id=USER_ID, name="Spotify", amount=Decimal("179.88"),
                            frequency="yearly", category="Entertainment",
                            next_billing_date=date(2026, 9, 1)),
            CreditCardRow(user_id=USER_ID, card_name="Maybank Visa", bank="Maybank",
                          credit_limit=Decimal("10000.00"), current_balance=Decimal("2500.00"),
                          payment_due_day=25),
            TaxDeductionRow(user_id=USER_ID, year=2026, relief_category="Medical",
                            description="Clinic", amount=Decimal("120.00"),
                            relief_limit=Decimal("10000.00")),
            TaxDeductionRow(user_id=USER_ID, year=2026, relief_category="Lifestyle",
                            description="Books", amount=Decimal("300.00"),
                            relief_limit=Decimal("2500.00")),
        ])
        session.commit()
    engine.dispose()


def count_message_rows(path, conversation_id: str) -> int:
    """Raw message rows for a conversation, whoever owns it."""
    engine = create_engine(f"sqlite:///{path}")
    with Session(engine) as session:
        count = session.scalar(
            select(func.count()).select_from(MessageRow).where(
                MessageRow.conversation_id == conversation_id
            )
        )
    engine.dispose()
    return count


@pytest.fixture(autouse=True)
def environment(monkeypatch):
    """Isolated configuration for every test."""
    monkeypatch.setenv("PRISMO_ENCRYPTION_SECRET", TEST_SECRET)
    monkeypatch.setenv("PRISMO_SCRYPT_N", "1024")
    monkeypatch.setenv("CHAT_RATE_LIMIT_PER_MINUTE", "100")


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "prismo-test.db"
    seed_financial_data(path)
    return path


@pytest.fixture
async def database(db_path):
    db = Database(f"sqlite+aiosqlite:///{db_path}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def script() -> LLMScript:
    return LLMScript()


@pytest.fixture
def client_factory(script):
    def factory(config: ProviderConfig) -> FakeLLMClient:
        script.configs.append(config)
        return FakeLLMClient(config, script)
    return factory


@pytest.fixture
async def components(database, client_factory):
    return create_app_components(
        settings=Settings(),
        database=database,
        client_factory=client_factory,
        clock=fixed_clock,
    )


async def enable_ai(components, user_id: str = USER_ID, **overrides):
    """Turn the assistant on for a user with a working (fake) provider."""
    values = {
        "ai_enabled": True,
        "provider": AIProvider.OPENAI,
        "model_name": "gpt-4o-mini",
        "api_key": TEST_API_KEY,
    }
    values.update(overrides)
    return await components.settings_service.update_settings(
        user_id, AISettingsUpdate(**values)
    )


@pytest.fixture
async def ai_enabled(components):
    await enable_ai(components)
    return components


# ============================================================================
# HTTP
# ============================================================================

@pytest.fixture
def api_client(db_path, client_factory):
    """TestClient; the database is opened inside the app's own event loop."""
    components = create_app_components(
        settings=Settings(),
        database=Database(f"sqlite+aiosqlite:///{db_path}"),
        client_factory=client_factory,
        clock=fixed_clock,
    )
    with TestClient(create_app(components)) as client:
        yield client


def user_headers(user_id: str = USER_ID) -> dict:
    return {"X-User-Id": user_id}


def enable_ai_over_http(client: TestClient, user_id: str = USER_ID, **overrides) -> dict:
    body = {
        "aiEnabled": True,
        "provider": "openai",
        "modelName": "gpt-4o-mini",
        "apiKey": TEST_API_KEY,
    }
    body.update(overrides)
    response = client.post("/api/ai/settings", json=body, headers=user_headers(user_id))
    assert response.status_code == 200, response.text
    return response.json()


def read_sse(response) -> list[dict]:
    """Decode an SSE body into event dicts."""
    events = []
    for frame in response.text.split("\n\n"):
        frame = frame.strip()
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events

