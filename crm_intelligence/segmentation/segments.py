"""
Segment definitions and materialization.

A Segment is a named rule tree. Its member set is never stored: it is
computed from the current customer snapshot every time it is asked for,
so re-evaluating an old segment naturally tracks changing data.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from crm_intelligence.core.models import CustomerView, HealthScore, ensure_utc, utcnow
from crm_intelligence.segmentation.rules import (
    And,
    Comparison,
    Operator,
    RuleField,
    RuleNode,
    dump_rule,
    matches,
)

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Segment:
    id: str
    name: str
    rule: RuleNode
    created_at: datetime = field(default_factory=utcnow)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "definition": dump_rule(self.rule),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CustomerSnapshot:
    """A customer, its freshly computed health score, and the evaluation time."""
    customer: CustomerView
    health: HealthScore
    reference_time: datetime

    def attributes(self) -> Dict[RuleField, Any]:
        customer = self.customer
        now = ensure_utc(self.reference_time)
        signup = customer.created_at or customer.first_order_at
        return {
            RuleField.HEALTH_LABEL: self.health.label.value,
            RuleField.HEALTH_SCORE: self.health.composite,
            RuleField.TOTAL_SPENT: customer.lifetime_spend,
            RuleField.TOTAL_ORDERS: customer.order_count,
            RuleField.AVERAGE_ORDER_VALUE: round(customer.average_order_value, 2),
            RuleField.DAYS_SINCE_LAST_ORDER: _days_between(customer.last_order_at, now),
            RuleField.DAYS_SINCE_SIGNUP: _days_between(signup, now),
            RuleField.STATUS: customer.status,
            RuleField.TAGS: tuple(customer.tags),
        }


def _days_between(earlier: Optional[datetime], now: datetime) -> Optional[int]:
    if earlier is None:
        return None
    return max(0, int((now - ensure_utc(earlier)).total_seconds() // SECONDS_PER_DAY))


def customer_matches(snapshot: CustomerSnapshot, rule: RuleNode) -> bool:
    return matches(snapshot.attributes(), rule)


def evaluate(snapshots: Iterable[CustomerSnapshot], rule: RuleNode) -> Set[str]:
    """Materialize a rule: ids of every customer currently matching it."""
    return {s.customer.id for s in snapshots if customer_matches(s, rule)}


def matching_segment_names(snapshot: CustomerSnapshot, segments: Iterable[Segment]) -> List[str]:
    """Names of the segments this customer falls into, in segment order."""
    attributes = snapshot.attributes()
    return [segment.name for segment in segments if matches(attributes, segment.rule)]


def _preset(segment_id: str, name: str, description: str, rule_field: RuleField, op: Operator, value) -> Segment:
    return Segment(
        id=segment_id,
        name=name,
        description=description,
        rule=And((Comparison(rule_field, op, value),)),
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


PRESET_SEGMENTS = (
    _preset("preset_vip", "VIP Customers", "High-value customers who spent over $500",
            RuleField.TOTAL_SPENT, Operator.GTE, 500),
    _preset("preset_champions", "Champions", "Top-performing customers with health score 80+",
            RuleField.HEALTH_SCORE, Operator.GTE, 80),
    _preset("preset_at_risk", "At Risk", "Customers who haven't ordered in 90+ days",
            RuleField.DAYS_SINCE_LAST_ORDER, Operator.GTE, 90),
    _preset("preset_repeat", "Repeat Buyers", "Customers with 3 or more orders",
            RuleField.TOTAL_ORDERS, Operator.GTE, 3),
    _preset("preset_new", "New Customers", "Customers who joined in the last 30 days",
            RuleField.DAYS_SINCE_SIGNUP, Operator.LTE, 30),
    _preset("preset_high_aov", "High Value", "Avg order value over $100",
            RuleField.AVERAGE_ORDER_VALUE, Operator.GTE, 100),
)
