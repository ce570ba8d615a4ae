"""
Pytest Configuration and Fixtures

Shared fixtures for all tests:
- Fixed reference time and a manual clock
- Deterministic customer population in an in-memory repository
- Fake completion service
- FastAPI test client
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

import pytest
from fastapi.testclient import TestClient

from crm_intelligence.api.dependencies import build_engine
from crm_intelligence.core.config import Settings
from crm_intelligence.core.models import CustomerView, LineItem, Order
from crm_intelligence.main import create_app
from crm_intelligence.repository.memory import InMemoryRepository
from crm_intelligence.scoring.health import HealthScorer
from crm_intelligence.services.completion import CompletionClient, CompletionResponse
from crm_intelligence.services.context_builder import ContextBuilder
from crm_intelligence.services.orchestrator import InsightOrchestrator
from crm_intelligence.services.rate_limiter import FixedWindowRateLimiter

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

ADMIN_KEY = "test-admin-key-0123456789"


# ==================== Helpers ====================

class ManualClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = NOW.timestamp()):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletionService:
    """
    Scripted completion service.

    Each call pops the next scripted reply: a string is returned as text,
    an exception instance is raised, a float sleeps that many seconds.
    The last reply repeats once the script runs out.
    """

    model = "fake-model"

    def __init__(self, *replies: Union[str, Exception, float]):
        self.replies = list(replies) or ["{}"]
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt: str, max_tokens: int) -> CompletionResponse:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, float):
            await asyncio.sleep(reply)
            return CompletionResponse(text="{}")
        return CompletionResponse(text=reply, input_tokens=len(prompt) // 4, output_tokens=len(reply) // 4)


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def make_orders(customer_id: str, days: List[float], total: float, items=()) -> List[Order]:
    return [
        Order(
            id=f"{customer_id}-o{i}",
            customer_id=customer_id,
            created_at=days_ago(d),
            total=total,
            items=tuple(items),
            order_number=f"{customer_id.upper()}-{1000 + i}",
        )
        for i, d in enumerate(days)
    ]


def build_population() -> InMemoryRepository:
    """
    Five customers scored at NOW (population average spend 363.75):

    alice  12 x $100, every 10 days from 5 to 115 days ago   -> 100 Champion
    bob     3 x $50 at 20, 50, 80 days ago                  ->  45 Promising
    carol   2 x $40 at 100, 130 days ago (wholesale)        ->  13 Lost
    dan     1 x $25 400 days ago, plus a cancelled order     ->   8 Lost
    erin    no orders, signed up 5 days ago                  ->   0 Lost
    """
    customers = [
        CustomerView(id="alice", name="Alice Abebe", email="alice@example.com", created_at=days_ago(200),
                     tags=("newsletter",)),
        CustomerView(id="bob", name="Bob Bekele", email="bob@example.com", created_at=days_ago(90)),
        CustomerView(id="carol", name="Carol Chala", email="carol@example.com", created_at=days_ago(150),
                     tags=("wholesale",)),
        CustomerView(id="dan", name="Dan Desta", email="dan@example.com", created_at=days_ago(500),
                     status="inactive"),
        CustomerView(id="erin", name="Erin Eshete", email="erin@example.com", created_at=days_ago(5)),
    ]

    orders = []
    orders += make_orders("alice", [5 + 10 * i for i in range(12)], 100.0,
                          items=[LineItem("Berbere Spice", 2, 50.0)])
    orders += make_orders("bob", [20, 50, 80], 50.0, items=[LineItem("Ethiopian Coffee", 1, 50.0)])
    orders += make_orders("carol", [100, 130], 40.0, items=[LineItem("Injera Basket", 1, 40.0)])
    orders += make_orders("dan", [400], 25.0)
    orders.append(Order(id="dan-cancelled", customer_id="dan", created_at=days_ago(10), total=999.0,
                        status="cancelled", items=(LineItem("Coffee Set", 1, 999.0),)))

    return InMemoryRepository(customers, orders)


# ==================== Fixtures ====================

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def repository():
    return build_population()


@pytest.fixture
def scorer():
    return HealthScorer()


@pytest.fixture
def context_builder(repository, scorer):
    return ContextBuilder(repository, segment_store=repository, scorer=scorer)


@pytest.fixture
def make_orchestrator(context_builder, clock) -> Callable[..., InsightOrchestrator]:
    """Build an orchestrator around a scripted service (None = unconfigured)."""

    def factory(service: Optional[FakeCompletionService] = None, quota: int = 20,
                timeout_seconds: float = 5.0) -> InsightOrchestrator:
        completion = CompletionClient(service, timeout_seconds=timeout_seconds)
        limiter = FixedWindowRateLimiter(quota=quota, window_seconds=3600, clock=clock)
        return InsightOrchestrator(context_builder, completion, limiter, max_alerts=4, clock=lambda: NOW)

    return factory


@pytest.fixture
def settings():
    return Settings(_env_file=None, admin_key=ADMIN_KEY, anthropic_api_key=None, database_url=None,
                    redis_url=None, json_logs=False)


@pytest.fixture
def make_client(settings, repository, clock):
    """TestClient over the population with an optional scripted completion service."""

    def factory(service: Optional[FakeCompletionService] = None, quota: int = 20,
                admin_key: Optional[str] = ADMIN_KEY) -> TestClient:
        app_settings = settings.model_copy(update={"admin_key": admin_key})
        engine = build_engine(
            app_settings,
            repository,
            completion=CompletionClient(service, timeout_seconds=5.0),
            rate_limiter=FixedWindowRateLimiter(quota=quota, window_seconds=3600, clock=clock),
            clock=lambda: NOW,
        )
        return TestClient(create_app(app_settings, engine=engine))

    return factory


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}


INSIGHT_REPLY = """Here is the analysis:
```json
{
  "summary": "Alice is a frequent, high-value buyer.",
  "purchasePattern": "Orders every ten days.",
  "churnAnalysis": "Very low churn risk.",
  "recommendations": ["Offer VIP early access", "Ask for a review"]
}
```"""

QUERY_REPLY = '{"answer": "Alice Abebe is your top customer.", "type": "list", "data": [{"label": "Alice Abebe", "value": "$1,200.00"}]}'

ALERTS_REPLY = """[
  {"title": "Revenue steady", "description": "Revenue is flat month over month.", "type": "success"},
  {"title": "Churn spike", "description": "Several customers lapsed.", "type": "urgent", "action": "View At-Risk"}
]"""
