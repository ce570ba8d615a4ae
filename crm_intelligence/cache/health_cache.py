"""
Redis cache for customer health reports.

Health scores are never a source of truth; they are recomputed from
order history. Callers may cache them for an explicit TTL. When Redis is
not configured or unreachable the cache is disabled and every lookup is
a miss.

Configuration:
- REDIS_URL: Redis connection string (cache disabled when unset)
- HEALTH_CACHE_TTL_SECONDS: TTL for cached reports (default: 900)
"""

import json
from datetime import timedelta
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from crm_intelligence.core.models import HealthLabel, HealthScore
from crm_intelligence.middleware.logging_config import get_logger
from crm_intelligence.scoring.health import HealthReport

logger = get_logger(__name__)

PREFIX_HEALTH = "health:"


def report_from_dict(data: dict) -> HealthReport:
    score = data["score"]
    return HealthReport(
        score=HealthScore(
            recency=int(score["recency"]),
            frequency=int(score["frequency"]),
            monetary=int(score["monetary"]),
            composite=int(score["composite"]),
            label=HealthLabel(score["label"]),
        ),
        churn_risk=float(data["churnRisk"]),
        recommended_actions=list(data.get("recommendedActions", [])),
        order_count=int(data.get("orderCount", 0)),
        lifetime_spend=float(data.get("lifetimeSpend", 0.0)),
        days_since_last_order=data.get("daysSinceLastOrder"),
    )


class HealthScoreCache:
    """TTL cache of HealthReport by customer id."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: int = 900):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @classmethod
    async def connect(cls, url: Optional[str], ttl_seconds: int = 900) -> "HealthScoreCache":
        """Connect to Redis, or return a disabled cache."""
        if not url:
            logger.info("cache_disabled", reason="REDIS_URL not set")
            return cls(None, ttl_seconds)

        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning("cache_connection_failed", error=str(e))
            await client.aclose()
            return cls(None, ttl_seconds)

        logger.info("cache_connected", ttl_seconds=ttl_seconds)
        return cls(client, ttl_seconds)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def get(self, customer_id: str) -> Optional[HealthReport]:
        if not self.enabled:
            return None

        key = PREFIX_HEALTH + customer_id
        try:
            value = await self.client.get(key)
        except RedisError as e:
            logger.error("cache_get_failed", key=key, error=str(e))
            return None

        if not value:
            return None

        logger.debug("cache_hit", key=key)
        try:
            return report_from_dict(json.loads(value))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("cache_entry_unreadable", key=key, error=str(e))
            return None

    async def set(self, customer_id: str, report: HealthReport) -> bool:
        if not self.enabled:
            return False

        key = PREFIX_HEALTH + customer_id
        try:
            await self.client.setex(key, timedelta(seconds=self.ttl_seconds), json.dumps(report.to_dict()))
        except RedisError as e:
            logger.error("cache_set_failed", key=key, error=str(e))
            return False

        logger.debug("cache_set", key=key, ttl=self.ttl_seconds)
        return True
