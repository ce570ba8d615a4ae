"""
Repository collaborator contracts.

The engine only reads customers and orders. Implementations raise
DataError on read failures; "not found" is a None return, not an error.
Order lists are always most-recent-first.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from crm_intelligence.core.models import CustomerView, Order, PopulationStats
from crm_intelligence.segmentation.segments import Segment


class CustomerRepository(Protocol):
    async def get_customer(self, customer_id: str) -> Optional[CustomerView]:
        ...

    async def list_orders(self, customer_id: str, limit: Optional[int] = None) -> List[Order]:
        ...

    async def list_customers(self, status: Optional[str] = None) -> List[CustomerView]:
        ...

    async def get_population_stats(self) -> PopulationStats:
        ...

    async def list_recent_orders(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
        counted_only: bool = False,
    ) -> List[Order]:
        """
        Store-wide orders, newest first.

        ``since`` keeps orders placed at or after it; ``counted_only`` drops
        cancelled and refunded orders.
        """
        ...

    async def orders_by_customer(self, customer_ids: Sequence[str]) -> Dict[str, List[Order]]:
        """Full order history for many customers in one read."""
        ...


class SegmentStore(Protocol):
    async def list_segments(self) -> List[Segment]:
        ...

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        ...

    async def save_segment(self, segment: Segment) -> Segment:
        ...
