"""
In-process repository.

Used when no DATABASE_URL is configured and throughout the test suite.
Customer aggregates (order count, spend, first/last order) are derived
from the stored orders so they can never disagree with order history.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from crm_intelligence.core.models import CustomerView, Order, PopulationStats, ensure_utc
from crm_intelligence.segmentation.segments import Segment


def _newest_first(orders: Iterable[Order]) -> List[Order]:
    return sorted(orders, key=lambda o: (ensure_utc(o.created_at), o.id), reverse=True)


class InMemoryRepository:
    """Customer, order and segment storage held in dictionaries."""

    def __init__(
        self,
        customers: Iterable[CustomerView] = (),
        orders: Iterable[Order] = (),
        segments: Iterable[Segment] = (),
    ):
        self._customers: Dict[str, CustomerView] = {}
        self._orders: Dict[str, List[Order]] = {}
        self._segments: Dict[str, Segment] = {}

        for customer in customers:
            self.add_customer(customer)
        for order in orders:
            self.add_order(order)
        for segment in segments:
            self._segments[segment.id] = segment

    def add_customer(self, customer: CustomerView) -> None:
        self._customers[customer.id] = customer
        self._orders.setdefault(customer.id, [])

    def add_order(self, order: Order) -> None:
        self._orders.setdefault(order.customer_id, []).append(order)

    def _view(self, customer: CustomerView) -> CustomerView:
        counted = [o for o in self._orders.get(customer.id, []) if o.counts_toward_value]
        if not counted:
            return replace(customer, order_count=0, lifetime_spend=0.0,
                           first_order_at=None, last_order_at=None)
        placed = [ensure_utc(o.created_at) for o in counted]
        return replace(
            customer,
            order_count=len(counted),
            lifetime_spend=round(sum(float(o.total) for o in counted), 2),
            first_order_at=min(placed),
            last_order_at=max(placed),
        )

    # ==================== CustomerRepository ====================

    async def get_customer(self, customer_id: str) -> Optional[CustomerView]:
        customer = self._customers.get(customer_id)
        return self._view(customer) if customer else None

    async def list_orders(self, customer_id: str, limit: Optional[int] = None) -> List[Order]:
        orders = _newest_first(self._orders.get(customer_id, []))
        return orders[:limit] if limit is not None else orders

    async def list_customers(self, status: Optional[str] = None) -> List[CustomerView]:
        views = [self._view(c) for c in self._customers.values()]
        if status is not None:
            views = [v for v in views if v.status == status]
        return sorted(views, key=lambda v: v.id)

    async def get_population_stats(self) -> PopulationStats:
        views = [self._view(c) for c in self._customers.values()]
        buyers = [v for v in views if v.order_count > 0]
        if not buyers:
            return PopulationStats(customer_count=len(views))
        return PopulationStats(
            average_spend=sum(v.lifetime_spend for v in buyers) / len(buyers),
            average_order_count=sum(v.order_count for v in buyers) / len(buyers),
            customer_count=len(views),
        )

    async def list_recent_orders(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
        counted_only: bool = False,
    ) -> List[Order]:
        orders = [o for history in self._orders.values() for o in history]
        if since is not None:
            cutoff = ensure_utc(since)
            orders = [o for o in orders if ensure_utc(o.created_at) >= cutoff]
        if counted_only:
            orders = [o for o in orders if o.counts_toward_value]
        orders = _newest_first(orders)
        return orders[:limit] if limit is not None else orders

    async def orders_by_customer(self, customer_ids: Sequence[str]) -> Dict[str, List[Order]]:
        return {cid: _newest_first(self._orders.get(cid, [])) for cid in customer_ids}

    # ==================== SegmentStore ====================

    async def list_segments(self) -> List[Segment]:
        return sorted(self._segments.values(), key=lambda s: (s.created_at, s.id))

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        return self._segments.get(segment_id)

    async def save_segment(self, segment: Segment) -> Segment:
        self._segments[segment.id] = segment
        return segment
