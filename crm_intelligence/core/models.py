"""
Domain value objects shared by the scoring, segmentation and analytics layers.

Orders and customers are owned by the repository collaborator; the engine
only reads them. Health scores and alerts are computed per request and
never persisted here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# Orders in these states never count toward spend, frequency or recency
EXCLUDED_ORDER_STATUSES = frozenset({"cancelled", "refunded"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix the two kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HealthLabel(str, Enum):
    CHAMPION = "Champion"
    LOYAL = "Loyal"
    PROMISING = "Promising"
    AT_RISK = "At Risk"
    LOST = "Lost"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class LineItem:
    name: str
    quantity: int = 1
    unit_price: float = 0.0


@dataclass(frozen=True)
class Order:
    id: str
    customer_id: str
    created_at: datetime
    total: float
    status: str = "completed"
    items: Tuple[LineItem, ...] = ()
    order_number: Optional[str] = None

    @property
    def counts_toward_value(self) -> bool:
        return (self.status or "").lower() not in EXCLUDED_ORDER_STATUSES


@dataclass(frozen=True)
class CustomerView:
    """Read-only customer record as returned by the repository."""
    id: str
    name: str
    email: Optional[str] = None
    status: str = "active"
    order_count: int = 0
    lifetime_spend: float = 0.0
    first_order_at: Optional[datetime] = None
    last_order_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    tags: Tuple[str, ...] = ()

    @property
    def average_order_value(self) -> float:
        if self.order_count <= 0:
            return 0.0
        return self.lifetime_spend / self.order_count


@dataclass(frozen=True)
class PopulationStats:
    average_spend: Optional[float] = None
    average_order_count: Optional[float] = None
    customer_count: int = 0


@dataclass(frozen=True)
class HealthScore:
    """
    RFM health score.

    composite is always recency + frequency + monetary, an integer in
    [0, 100]; label is derived from composite. Build through
    ``from_components`` so the invariant holds.
    """
    recency: int
    frequency: int
    monetary: int
    composite: int
    label: HealthLabel

    @classmethod
    def from_components(cls, recency: int, frequency: int, monetary: int) -> "HealthScore":
        from crm_intelligence.scoring.health import label_for

        recency = max(0, min(33, int(recency)))
        frequency = max(0, min(33, int(frequency)))
        monetary = max(0, min(34, int(monetary)))
        composite = max(0, min(100, recency + frequency + monetary))
        return cls(recency, frequency, monetary, composite, label_for(composite))

    @classmethod
    def lowest(cls) -> "HealthScore":
        return cls(0, 0, 0, 0, HealthLabel.LOST)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recency": self.recency,
            "frequency": self.frequency,
            "monetary": self.monetary,
            "composite": self.composite,
            "label": self.label.value,
        }


@dataclass(frozen=True)
class Alert:
    severity: AlertSeverity
    title: str
    body: str
    generated_at: datetime = field(default_factory=utcnow)
    action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "severity": self.severity.value,
            "title": self.title,
            "body": self.body,
            "generatedAt": self.generated_at.isoformat(),
        }
        if self.action:
            data["action"] = self.action
        return data
