"""
Context Builder

Assembles the grounding context handed to the completion service:
aggregate counts, recent order summaries, health scores and segment
membership, pulled from the repository and the scoring/segment engines.

Bundles are size-bounded and reproducible for a fixed data snapshot:
recent orders are kept most-recent-first and the oldest are dropped first
until the rendered text fits the character budget.
"""

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from crm_intelligence.core.exceptions import NotFoundError, ValidationError
from crm_intelligence.core.models import (
    CustomerView,
    HealthLabel,
    HealthScore,
    Order,
    PopulationStats,
    ensure_utc,
    utcnow,
)
from crm_intelligence.middleware.logging_config import get_logger
from crm_intelligence.repository.base import CustomerRepository, SegmentStore
from crm_intelligence.scoring.health import HealthReport, HealthScorer, health_distribution
from crm_intelligence.segmentation.segments import (
    PRESET_SEGMENTS,
    CustomerSnapshot,
    Segment,
    evaluate,
    matching_segment_names,
)
from crm_intelligence.services.alerts import AlertSignals, ProductSales

logger = get_logger(__name__)

PERIOD_DAYS = 30
AT_RISK_LOOKBACK_DAYS = 7
TOP_PRODUCTS_LIMIT = 5
TRUNCATION_MARKER = "\n[context truncated]"

MONEY_KEYS = frozenset({
    "total_spent",
    "total_revenue",
    "average_spend",
    "average_order_value",
    "revenue_last_30_days",
})

# Caller-supplied query context keys (camelCase as sent by the dashboard)
QUERY_OVERRIDE_KEYS = {
    "totalOrders": "total_orders",
    "totalRevenue": "total_revenue",
    "totalCustomers": "total_customers",
    "totalProducts": "total_products",
    "averageSpend": "average_spend",
}


class RequestKind(str, Enum):
    QUERY = "query"
    INSIGHT = "insight"
    ALERTS = "alerts"


@dataclass(frozen=True)
class OrderSummary:
    order_number: str
    total: float
    status: str
    created_at: datetime
    customer_name: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order, customer_name: Optional[str] = None) -> "OrderSummary":
        return cls(
            order_number=order.order_number or order.id,
            total=round(float(order.total), 2),
            status=order.status,
            created_at=ensure_utc(order.created_at),
            customer_name=customer_name,
        )

    def render(self) -> str:
        who = f"{self.customer_name}: " if self.customer_name else ""
        return f"{who}#{self.order_number} ${self.total:.2f} ({self.status}) on {self.created_at.date().isoformat()}"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "orderNumber": self.order_number,
            "total": self.total,
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
        }
        if self.customer_name:
            data["customerName"] = self.customer_name
        return data


@dataclass(frozen=True)
class ContextBundle:
    kind: RequestKind
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    aggregates: Dict[str, Any] = field(default_factory=dict)
    health: Optional[HealthReport] = None
    segments: Tuple[str, ...] = ()
    top_products: Tuple[ProductSales, ...] = ()
    recent_orders: Tuple[OrderSummary, ...] = ()
    signals: Optional[AlertSignals] = None
    truncated: bool = False

    def render(self, char_budget: Optional[int] = None) -> str:
        lines: List[str] = []
        if self.subject_name:
            lines.append(f"Customer: {self.subject_name}")

        for key, value in self.aggregates.items():
            lines.append(f"- {_label(key)}: {_format_value(key, value)}")

        if self.health:
            score = self.health.score
            lines.append(
                f"- Health Score: {score.composite}/100 ({score.label.value}) "
                f"[recency {score.recency}/33, frequency {score.frequency}/33, monetary {score.monetary}/34]"
            )
            lines.append(f"- Churn Risk: {round(self.health.churn_risk * 100)}%")

        if self.segments:
            lines.append(f"- Segments: {', '.join(self.segments)}")

        if self.top_products:
            products = ", ".join(f"{p.name} ({p.units} sold, ${p.revenue:.2f})" for p in self.top_products)
            lines.append(f"- Top Products: {products}")

        if self.recent_orders:
            lines.append("- Recent Orders (newest first):")
            lines.extend(f"  - {order.render()}" for order in self.recent_orders)
        elif self.kind is RequestKind.INSIGHT:
            lines.append("- Recent Orders: None")

        text = "\n".join(lines)
        if char_budget is not None and len(text) > char_budget:
            cut = max(0, char_budget - len(TRUNCATION_MARKER))
            text = text[:cut] + TRUNCATION_MARKER
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "subjectId": self.subject_id,
            "aggregates": dict(self.aggregates),
            "health": self.health.to_dict() if self.health else None,
            "segments": list(self.segments),
            "topProducts": [{"name": p.name, "units": p.units, "revenue": p.revenue} for p in self.top_products],
            "recentOrders": [order.to_dict() for order in self.recent_orders],
            "truncated": self.truncated,
        }


def _label(key: str) -> str:
    return key.replace("_", " ").title()


def _format_value(key: str, value: Any) -> str:
    if isinstance(value, float) and key in MONEY_KEYS:
        return f"${value:,.2f}"
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, Mapping):
        return ", ".join(f"{k}: {v}" for k, v in value.items())
    return str(value)


def top_products(orders: Sequence[Order], limit: int = TOP_PRODUCTS_LIMIT) -> Tuple[ProductSales, ...]:
    """Units and revenue per line-item name; ties broken by name."""
    units: Counter = Counter()
    revenue: Dict[str, float] = {}
    for order in orders:
        if not order.counts_toward_value:
            continue
        for item in order.items:
            units[item.name] += item.quantity
            revenue[item.name] = revenue.get(item.name, 0.0) + item.quantity * item.unit_price
    ranked = sorted(units.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
    return tuple(ProductSales(name, count, round(revenue[name], 2)) for name, count in ranked)


class ContextBuilder:
    """Builds ContextBundles for insight, query and alert requests."""

    def __init__(
        self,
        repository: CustomerRepository,
        segment_store: Optional[SegmentStore] = None,
        scorer: Optional[HealthScorer] = None,
        max_recent_orders: int = 10,
        char_budget: int = 6000,
    ):
        self.repository = repository
        self.segment_store = segment_store
        self.scorer = scorer or HealthScorer()
        self.max_recent_orders = max_recent_orders
        self.char_budget = char_budget

    async def build(
        self,
        kind: RequestKind,
        subject_ref: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ContextBundle:
        now = ensure_utc(now) if now else utcnow()

        if kind is RequestKind.INSIGHT:
            if not subject_ref:
                raise ValidationError('Missing "customerId" field', field="customerId")
            customer = await self.repository.get_customer(subject_ref)
            if customer is None:
                raise NotFoundError("Customer", subject_ref)
            return await self.customer_context(customer, now)

        if kind is RequestKind.QUERY:
            return await self.query_context(now, overrides)

        return await self.alert_context(now)

    # ==================== Insight ====================

    async def customer_context(self, customer: CustomerView, now: datetime) -> ContextBundle:
        orders = await self.repository.list_orders(customer.id)
        population = await self.repository.get_population_stats()
        report = self.scorer.report(orders, reference_time=now, population=population)

        snapshot = CustomerSnapshot(customer, report.score, now)
        segment_names = matching_segment_names(snapshot, await self._segments())

        signup = customer.created_at or customer.first_order_at
        aggregates = {
            "total_orders": customer.order_count,
            "total_spent": round(customer.lifetime_spend, 2),
            "average_order_value": round(customer.average_order_value, 2),
            "days_since_last_order": report.days_since_last_order if report.days_since_last_order is not None else "Never ordered",
            "customer_since": signup.date().isoformat() if signup else "unknown",
        }

        bundle = ContextBundle(
            kind=RequestKind.INSIGHT,
            subject_id=customer.id,
            subject_name=customer.name,
            aggregates=aggregates,
            health=report,
            segments=tuple(segment_names),
            recent_orders=tuple(OrderSummary.from_order(o) for o in orders[:self.max_recent_orders]),
        )
        return self._fit(bundle)

    # ==================== Natural-language query ====================

    async def query_context(self, now: datetime, overrides: Optional[Mapping[str, Any]] = None) -> ContextBundle:
        customers = await self.repository.list_customers()
        population = await self.repository.get_population_stats()
        histories = await self.repository.orders_by_customer([c.id for c in customers])
        scores = self._score_all(customers, histories, now, population)

        counted = [o for history in histories.values() for o in history if o.counts_toward_value]
        aggregates: Dict[str, Any] = {
            "total_customers": len(customers),
            "total_orders": len(counted),
            "total_revenue": round(sum(float(o.total) for o in counted), 2),
            "average_spend": round(population.average_spend or 0.0, 2),
        }
        aggregates.update(self._parse_overrides(overrides))
        aggregates["customer_health"] = {
            label.value: count for label, count in health_distribution(scores.values()).items()
        }

        segment_sizes = self._segment_sizes(customers, scores, now, await self._segments())
        if segment_sizes:
            aggregates["segment_sizes"] = segment_sizes

        names = {c.id: c.name for c in customers}
        recent = await self.repository.list_recent_orders(limit=self.max_recent_orders, counted_only=True)
        period = await self.repository.list_recent_orders(since=now - timedelta(days=PERIOD_DAYS))

        bundle = ContextBundle(
            kind=RequestKind.QUERY,
            aggregates=aggregates,
            top_products=top_products(period),
            recent_orders=tuple(OrderSummary.from_order(o, names.get(o.customer_id)) for o in recent),
        )
        return self._fit(bundle)

    def _parse_overrides(self, overrides: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not overrides:
            return {}
        if not isinstance(overrides, Mapping):
            raise ValidationError('"context" must be an object', field="context")

        parsed = {}
        for key, name in QUERY_OVERRIDE_KEYS.items():
            if key not in overrides:
                continue
            value = overrides[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f'"context.{key}" must be a number', field=f"context.{key}")
            parsed[name] = value
        return parsed

    # ==================== Alerts ====================

    async def alert_context(self, now: datetime) -> ContextBundle:
        customers = await self.repository.list_customers()
        population = await self.repository.get_population_stats()
        histories = await self.repository.orders_by_customer([c.id for c in customers])

        scores_now = self._score_all(customers, histories, now, population)
        week_ago = now - timedelta(days=AT_RISK_LOOKBACK_DAYS)
        scores_week_ago = self._score_all(customers, histories, week_ago, population)

        current_start = now - timedelta(days=PERIOD_DAYS)
        previous_start = now - timedelta(days=2 * PERIOD_DAYS)
        current, previous = [], []
        for history in histories.values():
            for order in history:
                if not order.counts_toward_value:
                    continue
                placed = ensure_utc(order.created_at)
                if current_start <= placed <= now:
                    current.append(order)
                elif previous_start <= placed < current_start:
                    previous.append(order)

        distribution = health_distribution(scores_now.values())
        signals = AlertSignals(
            generated_at=now,
            total_customers=len(customers),
            orders_current=len(current),
            orders_previous=len(previous),
            revenue_current=round(sum(float(o.total) for o in current), 2),
            revenue_previous=round(sum(float(o.total) for o in previous), 2),
            at_risk_now=distribution[HealthLabel.AT_RISK],
            at_risk_week_ago=sum(1 for s in scores_week_ago.values() if s.label is HealthLabel.AT_RISK),
            label_distribution=distribution,
            top_products=top_products(current),
        )

        aggregates = {
            "total_customers": signals.total_customers,
            "orders_last_30_days": signals.orders_current,
            "orders_change_pct": _format_change(signals.orders_change_pct),
            "revenue_last_30_days": signals.revenue_current,
            "revenue_change_pct": _format_change(signals.revenue_change_pct),
            "at_risk_customers": signals.at_risk_now,
            "at_risk_customers_week_ago": signals.at_risk_week_ago,
            "customer_health": {label.value: count for label, count in distribution.items()},
        }

        names = {c.id: c.name for c in customers}
        recent = sorted(current, key=lambda o: (ensure_utc(o.created_at), o.id), reverse=True)

        bundle = ContextBundle(
            kind=RequestKind.ALERTS,
            aggregates=aggregates,
            top_products=signals.top_products,
            recent_orders=tuple(
                OrderSummary.from_order(o, names.get(o.customer_id)) for o in recent[:self.max_recent_orders]
            ),
            signals=signals,
        )
        return self._fit(bundle)

    # ==================== Helpers ====================

    async def _segments(self) -> List[Segment]:
        saved = await self.segment_store.list_segments() if self.segment_store else []
        return list(PRESET_SEGMENTS) + list(saved)

    def _score_all(
        self,
        customers: Sequence[CustomerView],
        histories: Mapping[str, Sequence[Order]],
        reference_time: datetime,
        population: PopulationStats,
    ) -> Dict[str, HealthScore]:
        return {
            c.id: self.scorer.score(histories.get(c.id, ()), reference_time=reference_time, population=population)
            for c in customers
        }

    def _segment_sizes(
        self,
        customers: Sequence[CustomerView],
        scores: Mapping[str, HealthScore],
        now: datetime,
        segments: Sequence[Segment],
    ) -> Dict[str, int]:
        snapshots = [CustomerSnapshot(c, scores[c.id], now) for c in customers]
        return {segment.name: len(evaluate(snapshots, segment.rule)) for segment in segments}

    def _fit(self, bundle: ContextBundle) -> ContextBundle:
        """Drop oldest orders, then segment names, until the rendered bundle fits."""
        truncated = False
        while len(bundle.render()) > self.char_budget and bundle.recent_orders:
            bundle = replace(bundle, recent_orders=bundle.recent_orders[:-1])
            truncated = True
        while len(bundle.render()) > self.char_budget and bundle.segments:
            bundle = replace(bundle, segments=bundle.segments[:-1])
            truncated = True
        if len(bundle.render()) > self.char_budget:
            truncated = True

        if truncated:
            logger.info("context_truncated", kind=bundle.kind.value, char_budget=self.char_budget)
        return replace(bundle, truncated=truncated)


def _format_change(change: Optional[float]) -> str:
    if change is None:
        return "n/a"
    return f"{change:+.1f}%"
