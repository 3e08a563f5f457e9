"""
Order Service — Event store

Append-only history of every committed change to an order. Rows are keyed
by (order_id, version); the UNIQUE constraint turns a racing second writer
into a ConflictError, the same optimistic check the orders table does.
The log is kept after a purge.
"""

from typing import Any

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError
from .events import OrderEvent
from .store import order_events


async def append_event(session: AsyncSession, event: OrderEvent) -> None:
    try:
        await session.execute(
            insert(order_events).values(
                order_id=event.order_id,
                event_type=event.event_type,
                from_status=event.from_status,
                to_status=event.to_status,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                event_data=event.model_dump(mode="json")["data"],
                version=event.version,
                created_at=event.timestamp,
            )
        )
    except IntegrityError as exc:
        raise ConflictError(
            f"Order {event.order_id} already has version {event.version}"
        ) from exc


async def load_events(session: AsyncSession, order_id: int) -> list[dict[str, Any]]:
    """All events of one order in version order."""
    result = await session.execute(
        select(order_events)
        .where(order_events.c.order_id == order_id)
        .order_by(order_events.c.version.asc(), order_events.c.id.asc())
    )
    return [
        {
            "order_id": row.order_id,
            "event_type": row.event_type,
            "from_status": row.from_status,
            "to_status": row.to_status,
            "actor_id": row.actor_id,
            "actor_role": row.actor_role,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
