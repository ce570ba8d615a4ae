"""
Deterministic dashboard alerts.

These threshold checks run whenever the completion service cannot
(unconfigured, failed, timed out, rate limited, or unparseable output),
so the alerts panel is never empty.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from crm_intelligence.core.models import Alert, AlertSeverity, HealthLabel

REVENUE_CHANGE_THRESHOLD_PCT = 10.0
ORDER_SURGE_THRESHOLD_PCT = 15.0
AT_RISK_SHARE_CRITICAL_PCT = 25.0

SEVERITY_ORDER = {AlertSeverity.CRITICAL: 0, AlertSeverity.WARNING: 1, AlertSeverity.INFO: 2}


def percent_change(current: float, previous: float) -> Optional[float]:
    """Relative change in percent; None when there is no baseline."""
    if previous <= 0:
        return None
    return round((current - previous) / previous * 100.0, 1)


@dataclass(frozen=True)
class ProductSales:
    name: str
    units: int
    revenue: float = 0.0


@dataclass(frozen=True)
class AlertSignals:
    """Store-wide metrics for the current and previous period."""
    generated_at: datetime
    total_customers: int = 0
    orders_current: int = 0
    orders_previous: int = 0
    revenue_current: float = 0.0
    revenue_previous: float = 0.0
    at_risk_now: int = 0
    at_risk_week_ago: int = 0
    label_distribution: Dict[HealthLabel, int] = field(default_factory=dict)
    top_products: Tuple[ProductSales, ...] = ()

    @property
    def orders_change_pct(self) -> Optional[float]:
        return percent_change(self.orders_current, self.orders_previous)

    @property
    def revenue_change_pct(self) -> Optional[float]:
        return percent_change(self.revenue_current, self.revenue_previous)

    @property
    def at_risk_growth_pct(self) -> Optional[float]:
        return percent_change(self.at_risk_now, self.at_risk_week_ago)

    @property
    def at_risk_share_pct(self) -> float:
        return round(self.at_risk_now / max(1, self.total_customers) * 100.0, 1)


def threshold_alerts(signals: AlertSignals, max_alerts: int = 4) -> List[Alert]:
    """Rule-based alerts, most severe first, never empty."""
    now = signals.generated_at
    alerts: List[Alert] = []

    revenue_change = signals.revenue_change_pct
    if revenue_change is not None and revenue_change > REVENUE_CHANGE_THRESHOLD_PCT:
        alerts.append(Alert(
            severity=AlertSeverity.INFO,
            title="Revenue is trending up",
            body=f"Revenue increased {revenue_change:.1f}% compared to the previous 30 days. Keep the momentum going.",
            generated_at=now,
        ))
    elif revenue_change is not None and revenue_change < -REVENUE_CHANGE_THRESHOLD_PCT:
        alerts.append(Alert(
            severity=AlertSeverity.WARNING,
            title="Revenue decline detected",
            body=f"Revenue dropped {abs(revenue_change):.1f}% compared to the previous 30 days. Consider running a promotion.",
            generated_at=now,
            action="View Analytics",
        ))

    if signals.at_risk_now > signals.at_risk_week_ago:
        growth = signals.at_risk_growth_pct
        if growth is None:
            body = (f"{signals.at_risk_now} customers moved into 'At Risk' this week "
                    f"(none a week ago).")
        else:
            body = (f"{signals.at_risk_now} customers in 'At Risk' grew by {growth:.1f}% this week "
                    f"(from {signals.at_risk_week_ago}).")
        alerts.append(Alert(
            severity=AlertSeverity.WARNING,
            title="At-risk customers increasing",
            body=body + " Consider a win-back campaign.",
            generated_at=now,
            action="View At-Risk",
        ))
    elif signals.at_risk_now > 0:
        share = signals.at_risk_share_pct
        alerts.append(Alert(
            severity=AlertSeverity.CRITICAL if share >= AT_RISK_SHARE_CRITICAL_PCT else AlertSeverity.WARNING,
            title=f"{signals.at_risk_now} customers at risk",
            body=f"{share:.0f}% of your customers are in the 'At Risk' band. Consider a win-back campaign.",
            generated_at=now,
            action="View At-Risk",
        ))

    if signals.top_products:
        top = signals.top_products[0]
        alerts.append(Alert(
            severity=AlertSeverity.INFO,
            title=f"{top.name} is your top seller",
            body=f"{top.units} units sold in the last 30 days. Consider featuring it more prominently.",
            generated_at=now,
        ))

    orders_change = signals.orders_change_pct
    if orders_change is not None and orders_change > ORDER_SURGE_THRESHOLD_PCT:
        alerts.append(Alert(
            severity=AlertSeverity.INFO,
            title="Order volume surging",
            body=f"Orders are up {orders_change:.1f}% on the previous 30 days. Ensure inventory is stocked.",
            generated_at=now,
        ))

    if not alerts:
        alerts.append(Alert(
            severity=AlertSeverity.INFO,
            title="All key metrics are stable",
            body=(f"{signals.orders_current} orders and ${signals.revenue_current:,.2f} revenue in the last "
                  f"30 days with no threshold breaches."),
            generated_at=now,
        ))

    alerts.sort(key=lambda alert: SEVERITY_ORDER[alert.severity])
    return alerts[:max(1, max_alerts)]
