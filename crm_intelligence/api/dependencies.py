"""
API Dependencies

Shared dependencies for FastAPI endpoints: admin authentication and the
engine components wired up at startup.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from crm_intelligence.cache.health_cache import HealthScoreCache
from crm_intelligence.core.config import Settings, get_settings
from crm_intelligence.core.exceptions import AuthenticationError, AuthorizationError, NotFoundError
from crm_intelligence.core.models import utcnow
from crm_intelligence.middleware.logging_config import get_logger
from crm_intelligence.repository.base import CustomerRepository, SegmentStore
from crm_intelligence.scoring.health import HealthReport, HealthScorer
from crm_intelligence.segmentation.segments import CustomerSnapshot
from crm_intelligence.services.completion import CompletionClient
from crm_intelligence.services.context_builder import ContextBuilder
from crm_intelligence.services.orchestrator import InsightOrchestrator
from crm_intelligence.services.rate_limiter import FixedWindowRateLimiter

logger = get_logger(__name__)

# API Key header scheme
api_key_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)

ANONYMOUS_CALLER = "default"


@dataclass
class Engine:
    """Long-lived components shared by every request."""
    settings: Settings
    repository: CustomerRepository
    segment_store: SegmentStore
    scorer: HealthScorer
    rate_limiter: FixedWindowRateLimiter
    completion: CompletionClient
    context_builder: ContextBuilder
    orchestrator: InsightOrchestrator
    health_cache: HealthScoreCache
    clock: Callable[[], datetime] = utcnow

    async def health_report(self, customer_id: str) -> HealthReport:
        """Score one customer, served from the TTL cache when it is enabled."""
        cached = await self.health_cache.get(customer_id)
        if cached is not None:
            return cached

        customer = await self.repository.get_customer(customer_id)
        if customer is None:
            raise NotFoundError("Customer", customer_id)

        orders = await self.repository.list_orders(customer_id)
        population = await self.repository.get_population_stats()
        report = self.scorer.report(orders, reference_time=self.clock(), population=population)

        await self.health_cache.set(customer_id, report)
        return report

    async def customer_snapshots(self, now: datetime) -> List[CustomerSnapshot]:
        """Every customer with a health score computed at ``now``."""
        customers = await self.repository.list_customers()
        population = await self.repository.get_population_stats()
        histories = await self.repository.orders_by_customer([c.id for c in customers])
        return [
            CustomerSnapshot(
                c,
                self.scorer.score(histories.get(c.id, ()), reference_time=now, population=population),
                now,
            )
            for c in customers
        ]


def build_engine(
    settings: Settings,
    repository: CustomerRepository,
    segment_store: Optional[SegmentStore] = None,
    completion: Optional[CompletionClient] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    health_cache: Optional[HealthScoreCache] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Engine:
    """Assemble the engine from settings; explicit arguments override the defaults."""
    segment_store = segment_store or repository
    scorer = HealthScorer(
        benchmark_monthly_orders=settings.benchmark_monthly_orders,
        fallback_average_spend=settings.fallback_average_spend,
    )
    rate_limiter = rate_limiter or FixedWindowRateLimiter(
        quota=settings.ai_rate_limit_quota,
        window_seconds=settings.ai_rate_limit_window_seconds,
    )
    completion = completion or CompletionClient.from_settings(settings)
    context_builder = ContextBuilder(
        repository,
        segment_store=segment_store,
        scorer=scorer,
        max_recent_orders=settings.context_max_recent_orders,
        char_budget=settings.context_char_budget,
    )
    orchestrator = InsightOrchestrator(
        context_builder,
        completion,
        rate_limiter,
        max_alerts=settings.alerts_max,
        clock=clock,
    )
    return Engine(
        settings=settings,
        repository=repository,
        segment_store=segment_store,
        scorer=scorer,
        rate_limiter=rate_limiter,
        completion=completion,
        context_builder=context_builder,
        orchestrator=orchestrator,
        health_cache=health_cache or HealthScoreCache(),
        clock=clock,
    )


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_app_settings(request: Request) -> Settings:
    engine = getattr(request.app.state, "engine", None)
    return engine.settings if engine else get_settings()


async def require_admin(
    api_key: Optional[str] = Depends(api_key_header_scheme),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """
    Admin predicate for every /api/admin route.

    Checks the X-API-Key header against the configured ADMIN_KEY and returns
    a stable caller id used for rate-limit keys.

    Raises:
        AuthenticationError: 401 if the header is missing
        AuthorizationError: 403 if the key does not match
    """
    expected_key = settings.admin_key

    if not expected_key:
        # No admin key configured - log warning but allow (development mode)
        logger.warning("no_admin_key_configured",
                       message="ADMIN_KEY not set - authentication disabled")
        return ANONYMOUS_CALLER

    if not api_key:
        raise AuthenticationError("Missing API key. Provide X-API-Key header.")

    if api_key != expected_key:
        logger.warning("invalid_api_key_attempted",
                       key_prefix=api_key[:4])
        raise AuthorizationError("Invalid API key")

    logger.debug("api_key_validated")
    return hashlib.sha256(api_key.encode()).hexdigest()[:12]
