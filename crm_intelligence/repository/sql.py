"""
SQLAlchemy repository.

Reads the store's ``customers``, ``orders`` and ``order_items`` tables
and persists segment definitions in ``segments``. Customer aggregates are
computed in SQL from non-cancelled, non-refunded orders. Any driver
failure is surfaced as DataError; partial data is never returned.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from crm_intelligence.core.database import session_scope
from crm_intelligence.core.exceptions import DataError, ValidationError
from crm_intelligence.core.models import CustomerView, LineItem, Order, PopulationStats
from crm_intelligence.middleware.logging_config import get_logger
from crm_intelligence.segmentation.rules import dump_rule, load_rule
from crm_intelligence.segmentation.segments import Segment

logger = get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS customers (
        id VARCHAR(64) PRIMARY KEY,
        first_name VARCHAR(255) NOT NULL DEFAULT '',
        last_name VARCHAR(255) NOT NULL DEFAULT '',
        email VARCHAR(255),
        status VARCHAR(32) NOT NULL DEFAULT 'active',
        tags TEXT NOT NULL DEFAULT '[]',
        created_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        customer_id VARCHAR(64) NOT NULL REFERENCES customers(id),
        order_number VARCHAR(64),
        total NUMERIC(12, 2) NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'completed',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
        name VARCHAR(255) NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        unit_price NUMERIC(12, 2) NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS segments (
        id VARCHAR(64) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        definition TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
]

COUNTED_ORDER = "COALESCE(LOWER(o.status), '') NOT IN ('cancelled', 'refunded')"

CUSTOMER_SELECT = f"""
    SELECT
        c.id, c.first_name, c.last_name, c.email, c.status, c.tags, c.created_at,
        COUNT(o.id) AS order_count,
        COALESCE(SUM(o.total), 0) AS lifetime_spend,
        MIN(o.created_at) AS first_order_at,
        MAX(o.created_at) AS last_order_at
    FROM customers c
    LEFT JOIN orders o ON o.customer_id = c.id AND {COUNTED_ORDER}
"""

CUSTOMER_GROUP_BY = """
    GROUP BY c.id, c.first_name, c.last_name, c.email, c.status, c.tags, c.created_at
"""

ORDER_COLUMNS = "o.id, o.customer_id, o.order_number, o.total, o.status, o.created_at"

# Ids bound per IN list; asyncpg allows at most 32767 parameters per statement
IN_BATCH_SIZE = 1000


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_tags(value: Any) -> tuple:
    if not value:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(tag) for tag in value)
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return tuple(tag.strip() for tag in str(value).split(",") if tag.strip())
    return tuple(str(tag) for tag in parsed) if isinstance(parsed, list) else ()


def _batches(ids: Sequence[str], size: int) -> List[List[str]]:
    ids = list(ids)
    return [ids[i:i + size] for i in range(0, len(ids), size)]


def _customer_from_row(row) -> CustomerView:
    name = f"{row.first_name or ''} {row.last_name or ''}".strip()
    return CustomerView(
        id=str(row.id),
        name=name or str(row.id),
        email=row.email,
        status=row.status or "active",
        order_count=int(row.order_count or 0),
        lifetime_spend=float(row.lifetime_spend or 0),
        first_order_at=_to_datetime(row.first_order_at),
        last_order_at=_to_datetime(row.last_order_at),
        created_at=_to_datetime(row.created_at),
        tags=_to_tags(row.tags),
    )


class SqlRepository:
    """Repository and segment store over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker, batch_size: int = IN_BATCH_SIZE):
        self._session_factory = session_factory
        self.batch_size = batch_size

    async def create_schema(self) -> None:
        async with session_scope(self._session_factory) as session:
            for statement in SCHEMA:
                await session.execute(text(statement))

    async def _fetch(self, operation: str, query, params: Optional[Dict[str, Any]] = None):
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(query, params or {})
                return result.fetchall()
        except SQLAlchemyError as e:
            logger.error("repository_read_failed", operation=operation, error=str(e))
            raise DataError(operation, reason=type(e).__name__) from e

    # ==================== CustomerRepository ====================

    async def get_customer(self, customer_id: str) -> Optional[CustomerView]:
        rows = await self._fetch(
            "get_customer",
            text(CUSTOMER_SELECT + " WHERE c.id = :customer_id " + CUSTOMER_GROUP_BY),
            {"customer_id": customer_id},
        )
        return _customer_from_row(rows[0]) if rows else None

    async def list_customers(self, status: Optional[str] = None) -> List[CustomerView]:
        where = " WHERE c.status = :status " if status is not None else ""
        params = {"status": status} if status is not None else {}
        rows = await self._fetch(
            "list_customers",
            text(CUSTOMER_SELECT + where + CUSTOMER_GROUP_BY + " ORDER BY c.id"),
            params,
        )
        return [_customer_from_row(row) for row in rows]

    async def get_population_stats(self) -> PopulationStats:
        rows = await self._fetch(
            "get_population_stats",
            text(f"""
                SELECT
                    COUNT(*) AS customer_count,
                    AVG(CASE WHEN t.order_count > 0 THEN t.spend END) AS average_spend,
                    AVG(CASE WHEN t.order_count > 0 THEN t.order_count END) AS average_order_count
                FROM (
                    SELECT c.id, COUNT(o.id) AS order_count, COALESCE(SUM(o.total), 0) AS spend
                    FROM customers c
                    LEFT JOIN orders o ON o.customer_id = c.id AND {COUNTED_ORDER}
                    GROUP BY c.id
                ) t
            """),
        )
        row = rows[0]
        return PopulationStats(
            average_spend=float(row.average_spend) if row.average_spend is not None else None,
            average_order_count=float(row.average_order_count) if row.average_order_count is not None else None,
            customer_count=int(row.customer_count or 0),
        )

    async def list_orders(self, customer_id: str, limit: Optional[int] = None) -> List[Order]:
        query = f"SELECT {ORDER_COLUMNS} FROM orders o WHERE o.customer_id = :customer_id ORDER BY o.created_at DESC, o.id DESC"
        params: Dict[str, Any] = {"customer_id": customer_id}
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = limit
        rows = await self._fetch("list_orders", text(query), params)
        return await self._with_items(rows)

    async def list_recent_orders(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
        counted_only: bool = False,
    ) -> List[Order]:
        query = f"SELECT {ORDER_COLUMNS} FROM orders o"
        params: Dict[str, Any] = {}
        conditions = []
        if since is not None:
            conditions.append("o.created_at >= :since")
            params["since"] = since
        if counted_only:
            conditions.append(COUNTED_ORDER)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY o.created_at DESC, o.id DESC"
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = limit
        rows = await self._fetch("list_recent_orders", text(query), params)
        return await self._with_items(rows)

    async def orders_by_customer(self, customer_ids: Sequence[str]) -> Dict[str, List[Order]]:
        grouped: Dict[str, List[Order]] = {cid: [] for cid in customer_ids}
        if not customer_ids:
            return grouped
        query = text(
            f"SELECT {ORDER_COLUMNS} FROM orders o WHERE o.customer_id IN :customer_ids "
            "ORDER BY o.created_at DESC, o.id DESC"
        ).bindparams(bindparam("customer_ids", expanding=True))
        for batch in _batches(customer_ids, self.batch_size):
            rows = await self._fetch("orders_by_customer", query, {"customer_ids": batch})
            for order in await self._with_items(rows):
                grouped.setdefault(order.customer_id, []).append(order)
        return grouped

    async def _with_items(self, rows) -> List[Order]:
        if not rows:
            return []
        order_ids = [str(row.id) for row in rows]
        query = text(
            "SELECT order_id, name, quantity, unit_price FROM order_items WHERE order_id IN :order_ids"
        ).bindparams(bindparam("order_ids", expanding=True))
        items: Dict[str, List[LineItem]] = {}
        for batch in _batches(order_ids, self.batch_size):
            item_rows = await self._fetch("list_order_items", query, {"order_ids": batch})
            for item in item_rows:
                items.setdefault(str(item.order_id), []).append(
                    LineItem(name=item.name, quantity=int(item.quantity or 0), unit_price=float(item.unit_price or 0))
                )

        return [
            Order(
                id=str(row.id),
                customer_id=str(row.customer_id),
                order_number=row.order_number,
                total=float(row.total),
                status=row.status,
                created_at=_to_datetime(row.created_at),
                items=tuple(items.get(str(row.id), ())),
            )
            for row in rows
        ]

    # ==================== SegmentStore ====================

    async def list_segments(self) -> List[Segment]:
        rows = await self._fetch(
            "list_segments",
            text("SELECT id, name, description, definition, created_at FROM segments ORDER BY created_at, id"),
        )
        return [self._segment_from_row(row) for row in rows]

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        rows = await self._fetch(
            "get_segment",
            text("SELECT id, name, description, definition, created_at FROM segments WHERE id = :segment_id"),
            {"segment_id": segment_id},
        )
        return self._segment_from_row(rows[0]) if rows else None

    async def save_segment(self, segment: Segment) -> Segment:
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    text("""
                        INSERT INTO segments (id, name, description, definition, created_at)
                        VALUES (:id, :name, :description, :definition, :created_at)
                    """),
                    {
                        "id": segment.id,
                        "name": segment.name,
                        "description": segment.description,
                        "definition": json.dumps(dump_rule(segment.rule)),
                        "created_at": segment.created_at,
                    },
                )
        except SQLAlchemyError as e:
            logger.error("segment_save_failed", segment_id=segment.id, error=str(e))
            raise DataError("save_segment", reason=type(e).__name__) from e

        logger.info("segment_saved", segment_id=segment.id, name=segment.name)
        return segment

    def _segment_from_row(self, row) -> Segment:
        try:
            rule = load_rule(json.loads(row.definition))
        except (ValueError, ValidationError) as e:
            logger.error("segment_definition_unreadable", segment_id=row.id, error=str(e))
            raise DataError("load_segment", reason="stored definition unreadable", segment_id=row.id) from e
        return Segment(
            id=str(row.id),
            name=row.name,
            description=row.description or "",
            rule=rule,
            created_at=_to_datetime(row.created_at),
        )
