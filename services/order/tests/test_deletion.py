from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from order_lifecycle import events, queries, states
from order_lifecycle.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
    WindowExpiredError,
)
from order_lifecycle.event_store import load_events
from order_lifecycle.scheduler import sweep_expired_orders
from order_lifecycle.store import order_items, order_requests

BUSINESS_FIELDS = (
    "status",
    "total_amount",
    "processing_at",
    "shipped_at",
    "tracking_number",
    "courier_name",
    "created_at",
)

RESTORE_REASON = "Need invoice for tax filing"


class TestSoftDelete:
    @pytest.mark.asyncio
    async def test_delete_restore_round_trip(
        self, store, engine, queue, decisions, customer, admin, place_order, advance_to, clock
    ):
        """Deleted, listed as deleted, restored, back in the active list unchanged."""
        order = await place_order()
        await advance_to(order.id, states.SHIPPED)
        before = await engine.load(order.id)

        clock.advance(days=1)
        deleted = await engine.soft_delete(order.id, customer)
        assert deleted["deletion_expires_at"] - deleted["deleted_at"] == timedelta(days=30)
        assert deleted["status_before_deletion"] == states.SHIPPED

        async with store.session() as session:
            active = await queries.list_orders(session, customer, clock())
            hidden = await queries.list_deleted_orders(session, customer, clock())
        assert active["orders"] == []
        assert [o["id"] for o in hidden] == [order.id]
        assert hidden[0]["days_until_purge"] == 30

        request = await queue.submit_restoration(order.id, customer, RESTORE_REASON)
        assert (await engine.load(order.id))["restoration_status"] == "pending"
        await decisions.decide_restoration(order.id, admin, "approve")

        restored = await engine.load(order.id)
        assert not restored.is_deleted
        for field in ("deleted_at", "deleted_by", "deletion_expires_at", "status_before_deletion"):
            assert restored.get(field) is None
        for field in BUSINESS_FIELDS:
            assert restored[field] == before[field]
        assert restored["restoration_status"] == "approved"
        assert restored["restoration_reason"] == RESTORE_REASON

        async with store.session() as session:
            active = await queries.list_orders(session, customer, clock())
            latest = await queries.get_latest_request(session, order.id, customer, "restoration")
        assert [o["id"] for o in active["orders"]] == [order.id]
        assert active["orders"][0]["status"] == states.SHIPPED
        assert latest["id"] == request["id"]
        assert latest["status"] == "approved"

    @pytest.mark.asyncio
    async def test_delete_twice_is_a_conflict(self, engine, customer, place_order):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        with pytest.raises(ConflictError):
            await engine.soft_delete(order.id, customer)

    @pytest.mark.asyncio
    async def test_only_owner_or_admin_deletes(
        self, engine, other_customer, admin, place_order
    ):
        order = await place_order()
        with pytest.raises(ForbiddenError):
            await engine.soft_delete(order.id, other_customer)
        deleted = await engine.soft_delete(order.id, admin)
        assert deleted["deleted_by"] == admin.user_id

    @pytest.mark.asyncio
    async def test_deleted_list_drops_expired_rows(self, store, engine, customer, place_order, clock):
        order = await place_order()
        await engine.soft_delete(order.id, customer)

        clock.advance(days=30, seconds=1)
        async with store.session() as session:
            assert await queries.list_deleted_orders(session, customer, clock()) == []

    @pytest.mark.asyncio
    async def test_requests_on_deleted_order_are_not_found(self, engine, queue, customer, place_order):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        with pytest.raises(NotFoundError):
            await queue.submit(order.id, customer, "cancel", "Changed my mind")

    @pytest.mark.asyncio
    async def test_deleting_a_restored_order_starts_a_fresh_cycle(
        self, engine, queue, decisions, customer, admin, place_order, clock
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)
        await decisions.decide_restoration(order.id, admin, "approve")

        clock.advance(days=2)
        deleted = await engine.soft_delete(order.id, customer)

        assert deleted["restoration_status"] == "none"
        assert deleted["restoration_requested"] is False
        for field in (
            "restoration_reason",
            "restoration_requested_at",
            "restoration_requested_by",
            "restoration_approved_by",
            "restoration_approved_at",
            "restoration_rejected_by",
            "restoration_rejected_at",
            "restoration_rejection_reason",
        ):
            assert deleted.get(field) is None
        stored = await engine.load(order.id)
        assert stored["restoration_status"] == "none"
        assert stored.get("restoration_approved_by") is None

        request = await queue.submit_restoration(order.id, customer, "Deleted it by accident again")
        assert request["status"] == "pending"
        assert (await engine.load(order.id))["restoration_status"] == "pending"


class TestRestoration:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", [None, "", "too short", "   short   "])
    async def test_reason_needs_ten_characters(self, engine, queue, customer, place_order, reason):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        with pytest.raises(ValidationFailedError):
            await queue.submit_restoration(order.id, customer, reason)

    @pytest.mark.asyncio
    async def test_window_is_inclusive_of_expiry(self, engine, queue, customer, place_order, clock):
        order = await place_order()
        await engine.soft_delete(order.id, customer)

        clock.advance(days=30)
        request = await queue.submit_restoration(order.id, customer, RESTORE_REASON)
        assert request["kind"] == "restoration"

    @pytest.mark.asyncio
    async def test_request_after_expiry(self, engine, queue, customer, place_order, clock):
        order = await place_order()
        await engine.soft_delete(order.id, customer)

        clock.advance(days=30, seconds=1)
        with pytest.raises(WindowExpiredError):
            await queue.submit_restoration(order.id, customer, RESTORE_REASON)

    @pytest.mark.asyncio
    async def test_approval_after_expiry(
        self, engine, queue, decisions, customer, admin, place_order, clock
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        clock.advance(days=29)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)

        clock.advance(days=2)
        with pytest.raises(WindowExpiredError):
            await decisions.decide_restoration(order.id, admin, "approve")
        assert (await engine.load(order.id)).is_deleted

    @pytest.mark.asyncio
    async def test_not_deleted(self, queue, customer, place_order):
        order = await place_order()
        with pytest.raises(NotFoundError):
            await queue.submit_restoration(order.id, customer, RESTORE_REASON)

    @pytest.mark.asyncio
    async def test_only_the_owner(self, engine, queue, customer, other_customer, place_order):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        with pytest.raises(ForbiddenError):
            await queue.submit_restoration(order.id, other_customer, RESTORE_REASON)

    @pytest.mark.asyncio
    async def test_one_open_request(self, engine, queue, customer, place_order):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)
        with pytest.raises(ConflictError):
            await queue.submit_restoration(order.id, customer, "Another reason entirely")

    @pytest.mark.asyncio
    async def test_rejection_allows_a_new_request(
        self, engine, queue, decisions, customer, admin, place_order
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)

        with pytest.raises(ValidationFailedError):
            await decisions.decide_restoration(order.id, admin, "reject")
        await decisions.decide_restoration(order.id, admin, "reject", "Order was fraudulent")

        rejected = await engine.load(order.id)
        assert rejected.is_deleted
        assert rejected["restoration_status"] == "rejected"
        assert rejected["restoration_requested"] is False
        assert rejected["restoration_rejection_reason"] == "Order was fraudulent"

        again = await queue.submit_restoration(order.id, customer, "Please reconsider, it was mine")
        assert again["status"] == "pending"

    @pytest.mark.asyncio
    async def test_no_restoration_request(self, engine, decisions, customer, admin, place_order):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        with pytest.raises(NotFoundError):
            await decisions.decide_restoration(order.id, admin, "approve")

    @pytest.mark.asyncio
    async def test_repeated_approval_is_a_conflict(
        self, engine, queue, decisions, customer, admin, place_order
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)
        await decisions.decide_restoration(order.id, admin, "approve")

        with pytest.raises(ConflictError):
            await decisions.decide_restoration(order.id, admin, "approve")
        with pytest.raises(ConflictError):
            await decisions.decide_restoration(order.id, admin, "reject", "Changed our mind")
        assert not (await engine.load(order.id)).is_deleted

    @pytest.mark.asyncio
    async def test_repeated_rejection_is_a_conflict(
        self, engine, queue, decisions, customer, admin, place_order
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)
        await decisions.decide_restoration(order.id, admin, "reject", "Order was fraudulent")

        with pytest.raises(ConflictError):
            await decisions.decide_restoration(order.id, admin, "reject", "Order was fraudulent")


class TestPurge:
    @pytest.mark.asyncio
    async def test_never_purges_before_expiry(self, engine, customer, place_order, clock):
        order = await place_order()
        await engine.soft_delete(order.id, customer)

        for offset in (timedelta(days=1), timedelta(days=30)):
            clock.current = (await engine.load(order.id))["deleted_at"] + offset
            with pytest.raises(InvalidTransitionError):
                await engine.purge_order(order.id)
            assert await engine.find_purge_candidates() == []
        assert (await engine.load(order.id)).is_deleted

    @pytest.mark.asyncio
    async def test_active_orders_are_never_purged(self, engine, place_order, clock):
        order = await place_order()
        clock.advance(days=365)
        with pytest.raises(InvalidTransitionError):
            await engine.purge_order(order.id)

    @pytest.mark.asyncio
    async def test_purge_removes_rows_and_keeps_history(
        self, store, engine, queue, customer, place_order, clock
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        await queue.submit_restoration(order.id, customer, RESTORE_REASON)

        clock.advance(days=30, seconds=1)
        await engine.purge_order(order.id)

        with pytest.raises(NotFoundError):
            await engine.load(order.id)
        async with store.session() as session:
            assert await session.scalar(
                select(func.count()).select_from(order_items).where(order_items.c.order_id == order.id)
            ) == 0
            assert await session.scalar(
                select(func.count()).select_from(order_requests).where(order_requests.c.order_id == order.id)
            ) == 0
            history = await load_events(session, order.id)
        assert history[-1]["event_type"] == events.ORDER_PURGED
        assert [e["version"] for e in history] == list(range(1, len(history) + 1))

    @pytest.mark.asyncio
    async def test_restoration_after_purge_is_not_found(
        self, engine, queue, customer, place_order, clock
    ):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        clock.advance(days=31)
        await engine.purge_order(order.id)

        with pytest.raises(NotFoundError):
            await queue.submit_restoration(order.id, customer, RESTORE_REASON)

    @pytest.mark.asyncio
    async def test_customers_cannot_purge(self, engine, customer, place_order, clock):
        order = await place_order()
        await engine.soft_delete(order.id, customer)
        clock.advance(days=31)
        with pytest.raises(ForbiddenError):
            await engine.purge_order(order.id, customer)


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_purges_only_expired(self, engine, customer, place_order, clock):
        expired = await place_order()
        await engine.soft_delete(expired.id, customer)
        clock.advance(days=10)
        recent = await place_order()
        await engine.soft_delete(recent.id, customer)
        active = await place_order()

        clock.advance(days=21)
        result = await sweep_expired_orders(engine)

        assert result == {"candidates": 1, "purged": 1, "skipped": 0, "failed": 0}
        with pytest.raises(NotFoundError):
            await engine.load(expired.id)
        assert (await engine.load(recent.id)).is_deleted
        assert not (await engine.load(active.id)).is_deleted

    @pytest.mark.asyncio
    async def test_sweep_continues_past_failures(self, engine, customer, place_order, clock):
        orders = [await place_order() for _ in range(3)]
        for order in orders:
            await engine.soft_delete(order.id, customer)
        clock.advance(days=31)

        real_purge = engine.purge_order

        async def flaky_purge(order_id, actor):
            if order_id == orders[0].id:
                raise RuntimeError("disk full")
            if order_id == orders[1].id:
                raise ConflictError("changed")
            return await real_purge(order_id, actor)

        with patch.object(engine, "purge_order", side_effect=flaky_purge):
            result = await sweep_expired_orders(engine)

        assert result == {"candidates": 3, "purged": 1, "skipped": 1, "failed": 1}
        with pytest.raises(NotFoundError):
            await engine.load(orders[2].id)
        assert (await engine.load(orders[0].id)).is_deleted
