"""
Customer Health Scoring: RFM-based algorithm

Recency   (0-33 pts): days since last order
Frequency (0-33 pts): orders per month over the active lifetime
Monetary  (0-34 pts): lifetime spend relative to the population average

Composite: 0-100
Labels: Champion (80-100), Loyal (60-79), Promising (40-59),
        At Risk (20-39), Lost (0-19)

Scores are always recomputed from order history and never raise:
empty or malformed histories degrade to 0/0/0 "Lost" so dashboards keep
rendering on bad data.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from crm_intelligence.core.models import (
    HealthLabel,
    HealthScore,
    Order,
    PopulationStats,
    ensure_utc,
    utcnow,
)
from crm_intelligence.middleware.logging_config import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400
DAYS_PER_MONTH = 30

# (max days since last order, points); anything older scores 0
RECENCY_BANDS = ((7, 33), (14, 28), (30, 25), (60, 15), (90, 8))

# (min ratio to benchmark orders/month, points)
FREQUENCY_BANDS = ((2.0, 33), (1.5, 28), (1.0, 22), (0.5, 15), (0.25, 8))
FREQUENCY_FLOOR_POINTS = 3

# (min ratio to average spend, points)
MONETARY_BANDS = ((3.0, 34), (2.0, 28), (1.5, 22), (1.0, 17), (0.5, 10))
MONETARY_FLOOR_POINTS = 5

# (min composite, label), inclusive lower bounds
LABEL_THRESHOLDS = (
    (80, HealthLabel.CHAMPION),
    (60, HealthLabel.LOYAL),
    (40, HealthLabel.PROMISING),
    (20, HealthLabel.AT_RISK),
)

# (max gap ratio, churn probability)
CHURN_BANDS = ((1.0, 0.05), (1.5, 0.15), (2.0, 0.35), (3.0, 0.55), (5.0, 0.75))
CHURN_CEILING = 0.9

DEFAULT_BENCHMARK_MONTHLY_ORDERS = 1.5
DEFAULT_FALLBACK_AVERAGE_SPEND = 300.0


def label_for(composite: int) -> HealthLabel:
    """Map a composite score to its label. Every integer 0-100 has exactly one."""
    for threshold, label in LABEL_THRESHOLDS:
        if composite >= threshold:
            return label
    return HealthLabel.LOST


def recency_points(days_since_last_order: Optional[int]) -> int:
    if days_since_last_order is None:
        return 0  # Never ordered
    for max_days, points in RECENCY_BANDS:
        if days_since_last_order <= max_days:
            return points
    return 0


def health_distribution(scores: Iterable[HealthScore]) -> Dict[HealthLabel, int]:
    """Count scores per label, every label present."""
    distribution = {label: 0 for label in HealthLabel}
    for score in scores:
        distribution[score.label] += 1
    return distribution


@dataclass(frozen=True)
class HealthReport:
    """Score plus the derived retention signals shown on a customer page."""
    score: HealthScore
    churn_risk: float
    recommended_actions: List[str] = field(default_factory=list)
    order_count: int = 0
    lifetime_spend: float = 0.0
    days_since_last_order: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "score": self.score.to_dict(),
            "churnRisk": self.churn_risk,
            "recommendedActions": list(self.recommended_actions),
            "orderCount": self.order_count,
            "lifetimeSpend": round(self.lifetime_spend, 2),
            "daysSinceLastOrder": self.days_since_last_order,
        }


@dataclass(frozen=True)
class _History:
    order_count: int
    lifetime_spend: float
    days_since_last_order: Optional[int]
    months_active: float


class HealthScorer:
    """
    Calculate RFM health scores from order history.

    Higher composite = healthier customer relationship.
    """

    def __init__(
        self,
        benchmark_monthly_orders: float = DEFAULT_BENCHMARK_MONTHLY_ORDERS,
        fallback_average_spend: float = DEFAULT_FALLBACK_AVERAGE_SPEND,
    ):
        self.benchmark_monthly_orders = benchmark_monthly_orders
        self.fallback_average_spend = fallback_average_spend

    def score(
        self,
        orders: Optional[Sequence[Order]],
        reference_time: Optional[datetime] = None,
        population: Optional[PopulationStats] = None,
    ) -> HealthScore:
        """
        Score a customer's order history as of ``reference_time``.

        Args:
            orders: Full (or recent-window) order list, any order
            reference_time: Defaults to now; orders placed after it are ignored
            population: Population averages for relative monetary scoring

        Returns:
            HealthScore, 0/0/0 "Lost" when there is nothing valid to score
        """
        history = self._summarize(orders, reference_time)
        if history is None:
            return HealthScore.lowest()

        return HealthScore.from_components(
            recency=recency_points(history.days_since_last_order),
            frequency=self._frequency_component(history.order_count, history.months_active),
            monetary=self._monetary_component(history.lifetime_spend, population),
        )

    def report(
        self,
        orders: Optional[Sequence[Order]],
        reference_time: Optional[datetime] = None,
        population: Optional[PopulationStats] = None,
    ) -> HealthReport:
        """Score plus churn risk and recommended actions."""
        history = self._summarize(orders, reference_time)
        if history is None:
            return HealthReport(
                score=HealthScore.lowest(),
                churn_risk=CHURN_CEILING,
                recommended_actions=recommended_actions(HealthLabel.LOST, None, 0),
            )

        score = HealthScore.from_components(
            recency=recency_points(history.days_since_last_order),
            frequency=self._frequency_component(history.order_count, history.months_active),
            monetary=self._monetary_component(history.lifetime_spend, population),
        )
        return HealthReport(
            score=score,
            churn_risk=churn_risk(
                history.days_since_last_order, history.order_count, history.months_active
            ),
            recommended_actions=recommended_actions(
                score.label, history.days_since_last_order, history.order_count
            ),
            order_count=history.order_count,
            lifetime_spend=history.lifetime_spend,
            days_since_last_order=history.days_since_last_order,
        )

    def _summarize(
        self,
        orders: Optional[Sequence[Order]],
        reference_time: Optional[datetime],
    ) -> Optional[_History]:
        if not orders:
            return None

        now = ensure_utc(reference_time) if reference_time else utcnow()

        try:
            timestamps = []
            spend = 0.0
            for order in orders:
                if not _is_scorable(order):
                    continue
                placed = ensure_utc(order.created_at)
                if placed > now:
                    continue
                timestamps.append(placed)
                spend += float(order.total)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("health_score_malformed_history", error=str(e))
            return None

        if not timestamps:
            return None

        days_since_last = int((now - max(timestamps)).total_seconds() // SECONDS_PER_DAY)
        lifetime_days = (now - min(timestamps)).total_seconds() / SECONDS_PER_DAY
        return _History(
            order_count=len(timestamps),
            lifetime_spend=spend,
            days_since_last_order=max(0, days_since_last),
            # Floor of one month so a brand-new customer is not penalized
            months_active=max(1.0, lifetime_days / DAYS_PER_MONTH),
        )

    def _frequency_component(self, order_count: int, months_active: float) -> int:
        """Orders/month against the benchmark, banded to 0-33."""
        if order_count <= 0:
            return 0
        orders_per_month = order_count / max(1.0, months_active)
        ratio = orders_per_month / self.benchmark_monthly_orders
        for min_ratio, points in FREQUENCY_BANDS:
            if ratio >= min_ratio:
                return points
        return FREQUENCY_FLOOR_POINTS

    def _monetary_component(self, spend: float, population: Optional[PopulationStats]) -> int:
        """
        Spend relative to the population average, banded to 0-34.

        Falls back to the fixed absolute scale when the population
        average is unavailable or zero.
        """
        if spend <= 0:
            return 0
        average = population.average_spend if population else None
        if not average or not math.isfinite(average) or average <= 0:
            average = self.fallback_average_spend
        ratio = spend / average
        for min_ratio, points in MONETARY_BANDS:
            if ratio >= min_ratio:
                return points
        return MONETARY_FLOOR_POINTS


def _is_scorable(order: Order) -> bool:
    if not isinstance(order, Order):
        return False
    if not isinstance(order.created_at, datetime):
        return False
    if isinstance(order.total, bool) or not isinstance(order.total, (int, float)):
        return False
    if not math.isfinite(order.total) or order.total < 0:
        return False
    return order.counts_toward_value


def churn_risk(days_since_last_order: Optional[int], order_count: int, months_active: float) -> float:
    """
    Churn probability from how many expected order gaps have elapsed.

    No orders ever = high churn.
    """
    if order_count <= 0 or days_since_last_order is None:
        return CHURN_CEILING

    expected_gap_days = (months_active * DAYS_PER_MONTH) / order_count if months_active > 0 else DAYS_PER_MONTH
    gap_ratio = days_since_last_order / expected_gap_days

    for max_ratio, probability in CHURN_BANDS:
        if gap_ratio <= max_ratio:
            return probability
    return CHURN_CEILING


def recommended_actions(label: HealthLabel, days_since_last_order: Optional[int], order_count: int) -> List[str]:
    if label == HealthLabel.CHAMPION:
        return [
            "Send exclusive VIP offers or early access to new products",
            "Request a product review or testimonial",
            "Offer a loyalty reward or referral bonus",
        ]
    if label == HealthLabel.LOYAL:
        return [
            "Send personalized product recommendations",
            "Offer a small discount on their next order",
            "Invite to loyalty or rewards program",
        ]
    if label == HealthLabel.PROMISING:
        return [
            "Send a curated collection based on past purchases",
            "Offer free shipping on next order",
            "Share new arrivals that match their interests",
        ]
    if label == HealthLabel.AT_RISK:
        elapsed = days_since_last_order if days_since_last_order is not None else "unknown"
        return [
            f"Send a win-back email: last order was {elapsed} days ago",
            "Offer a time-limited discount to re-engage",
            "Ask for feedback on their experience",
        ]
    if order_count > 0:
        return [
            "Send a re-engagement campaign with a strong offer",
            "Survey to understand why they stopped ordering",
            "Consider a phone call for high-value lost customers",
        ]
    return [
        "Send a welcome series with best-selling products",
        "Offer a first-order discount",
        "Showcase customer reviews and social proof",
    ]
