# model/reconciliation.py
"""
Turns payment-provider notifications into ticket issuance.

The provider delivers at least once and in any order, so every transition of
a PendingOrder is a compare-and-swap on its status, keyed by the external
reference (the provider's payment session id):

    created  -> fulfilled | failed | canceled
    canceled -> fulfilled | failed      (a late success wins over a failure notice)

Fulfilment runs reserve + allocate + ticket rows + status flip in a single
transaction inside the competition's critical section, so an order is either
fulfilled with all of its tickets or not at all.
"""

from __future__ import annotations
import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    CompetitionClosedError,
    CompetitionNotFoundError,
    InvalidRangeError,
    OrderNotFoundError,
    ReservationFailedError,
    SoldOutError,
)
from ..helpers import new_order_id, now_ts
from ..infra.timings import timeit
from .db import (
    COMPETITION_OPEN,
    ORDER_CANCELED,
    ORDER_CREATED,
    ORDER_FAILED,
    ORDER_FULFILLED,
    PendingOrder,
    Ticket,
)
from .ledger import CompetitionLedger, Contended

logger = logging.getLogger(__name__)


class PaymentReconciler:
    def __init__(self, ledger: CompetitionLedger) -> None:
        self.ledger = ledger
        self.session = ledger.session
        self.gated = ledger.gated

    # --------------------------------------------------------------------------
    # Checkout initiation
    # --------------------------------------------------------------------------
    async def open_order(
        self,
        external_reference: str,
        competition_id: int,
        owner_id: str,
        quantity: int,
        amount: int,
        currency: str,
    ) -> PendingOrder:
        """
        Record a PendingOrder in `created`. Only a soft capacity check happens
        here; numbers are reserved when the payment is confirmed.
        """
        if quantity < 1:
            raise InvalidRangeError(
                "quantity must be positive", details={"quantity": quantity}
            )
        comp = await self.ledger.get_competition(competition_id)
        if comp.status != COMPETITION_OPEN:
            raise CompetitionClosedError(
                details={"competition_id": competition_id}
            )
        available = comp.capacity - comp.sold_count
        if quantity > available:
            raise SoldOutError(details={
                "competition_id": competition_id,
                "requested": quantity,
                "available": max(0, available),
            })

        order = PendingOrder(
            external_reference=external_reference,
            order_id=new_order_id(),
            competition_id=competition_id,
            owner_id=owner_id,
            quantity=quantity,
            amount=amount,
            currency=currency,
            status=ORDER_CREATED,
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.session.begin():
                self.session.add(order)
        return order

    # --------------------------------------------------------------------------
    # Notifications
    # --------------------------------------------------------------------------
    async def on_payment_confirmed(
        self,
        external_reference: str,
        competition_id: int,
        owner_id: str,
        quantity: int,
    ) -> List[Ticket]:
        """
        Issue the tickets for a paid order exactly once.

        Replays of a fulfilled reference return the tickets recorded the first
        time. If the competition cannot take the order any more, the order is
        marked failed and ReservationFailedError is raised (every time).
        """
        order = await self._get_by_reference(external_reference)
        if order is not None:
            if order.status == ORDER_FULFILLED:
                logger.info(
                    "payment %s already fulfilled; replaying tickets",
                    external_reference,
                )
                return await self.ledger.tickets_for_order(external_reference)
            if order.status == ORDER_FAILED:
                raise ReservationFailedError(details={
                    "external_reference": external_reference,
                    "reason": order.failure_reason,
                })
            if (order.competition_id, order.owner_id, order.quantity) != (
                competition_id, owner_id, quantity
            ):
                logger.warning(
                    "payment %s metadata differs from the stored order; "
                    "using the stored order", external_reference,
                )
            competition_id = order.competition_id
            owner_id = order.owner_id
            quantity = order.quantity

        async def work(session: AsyncSession) -> List[Ticket]:
            return await self._fulfill(
                session, external_reference, competition_id, owner_id,
                quantity,
            )

        try:
            async with timeit("reconcile.fulfill"):
                async with self.ledger.locks.hold(competition_id):
                    tickets = await self.ledger.in_transaction(work)
        except (SoldOutError, CompetitionClosedError) as e:
            reason = e.code
            status = await self._mark_failed(
                external_reference, competition_id, owner_id, quantity,
                reason,
            )
            if status == ORDER_FULFILLED:
                # another worker fulfilled it while we were failing
                return await self.ledger.tickets_for_order(external_reference)
            raise ReservationFailedError(details={
                "external_reference": external_reference,
                "reason": reason,
            }) from e
        return tickets

    async def _fulfill(
        self,
        session: AsyncSession,
        external_reference: str,
        competition_id: int,
        owner_id: str,
        quantity: int,
    ) -> List[Ticket]:
        order = await session.get(
            PendingOrder, external_reference, populate_existing=True
        )
        if order is None:
            # confirmation overtook checkout; the notification carries
            # everything needed
            await self._ensure_competition(session, competition_id)
            order = PendingOrder(
                external_reference=external_reference,
                order_id=new_order_id(),
                competition_id=competition_id,
                owner_id=owner_id,
                quantity=quantity,
                amount=0,
                currency="gbp",
                status=ORDER_CREATED,
                created_at=now_ts(),
            )
            session.add(order)
            await session.flush()
        elif order.status == ORDER_FULFILLED:
            # a concurrent delivery got here first
            return await self.ledger.tickets_for_order(
                external_reference, session=session
            )
        elif order.status == ORDER_FAILED:
            raise ReservationFailedError(details={
                "external_reference": external_reference,
                "reason": order.failure_reason,
            })

        tickets = await self.ledger.reserve_within(
            session, competition_id, quantity, owner_id,
            order_ref=external_reference,
        )

        row = (await session.execute(text("""
            UPDATE pending_orders
            SET status = 'fulfilled', failure_reason = NULL,
                settled_at = :now
            WHERE external_reference = :ref
              AND status IN ('created', 'canceled')
            RETURNING external_reference
        """), {"ref": external_reference, "now": now_ts()})).first()
        if row is None:
            raise Contended(f"pending order {external_reference}")

        logger.info(
            "payment %s fulfilled: %d ticket(s) in competition %s",
            external_reference, len(tickets), competition_id,
        )
        return tickets

    async def _ensure_competition(
        self, session: AsyncSession, competition_id: int
    ) -> None:
        found = (await session.execute(
            text("SELECT id FROM competitions WHERE id = :id"),
            {"id": competition_id},
        )).first()
        if found is None:
            raise CompetitionNotFoundError(
                details={"competition_id": competition_id}
            )

    async def _mark_failed(
        self,
        external_reference: str,
        competition_id: int,
        owner_id: str,
        quantity: int,
        reason: str,
    ) -> str:
        try:
            status = await self._record_failure(
                external_reference, competition_id, owner_id, quantity,
                reason,
            )
        except IntegrityError:
            # a concurrent delivery inserted the same reference first
            order = await self._get_by_reference(external_reference)
            status = order.status if order is not None else ORDER_FAILED
        if status == ORDER_FAILED:
            logger.warning(
                "payment %s could not be fulfilled (%s); refund required",
                external_reference, reason,
            )
        return status

    async def _record_failure(
        self,
        external_reference: str,
        competition_id: int,
        owner_id: str,
        quantity: int,
        reason: str,
    ) -> str:
        now = now_ts()
        status = ORDER_FAILED
        async with self.gated():
            async with self.session.begin():
                row = (await self.session.execute(text("""
                    UPDATE pending_orders
                    SET status = 'failed', failure_reason = :reason,
                        settled_at = :now
                    WHERE external_reference = :ref
                      AND status IN ('created', 'canceled')
                    RETURNING external_reference
                """), {"ref": external_reference, "reason": reason,
                       "now": now})).first()
                if row is None:
                    existing = await self.session.get(
                        PendingOrder, external_reference,
                        populate_existing=True,
                    )
                    if existing is not None:
                        status = existing.status
                    else:
                        # record the failure even without a checkout row
                        self.session.add(PendingOrder(
                            external_reference=external_reference,
                            order_id=new_order_id(),
                            competition_id=competition_id,
                            owner_id=owner_id,
                            quantity=quantity,
                            amount=0,
                            currency="gbp",
                            status=ORDER_FAILED,
                            failure_reason=reason,
                            created_at=now,
                            settled_at=now,
                        ))
        return status

    async def on_payment_voided(
        self, external_reference: str, kind: str
    ) -> Optional[str]:
        """
        Provider reported a failed or canceled payment. Only a `created` order
        moves (to canceled); returns the order status afterwards, or None for
        an unknown reference.
        """
        async with self.gated():
            async with self.session.begin():
                await self.session.execute(text("""
                    UPDATE pending_orders
                    SET status = 'canceled', failure_reason = :kind,
                        settled_at = :now
                    WHERE external_reference = :ref AND status = 'created'
                """), {"ref": external_reference, "kind": kind,
                       "now": now_ts()})
                order = await self.session.get(
                    PendingOrder, external_reference, populate_existing=True
                )
        if order is None:
            logger.info("payment %s %s for unknown order", external_reference,
                        kind)
            return None
        if order.status == ORDER_CANCELED:
            logger.info("payment %s %s; order canceled", external_reference,
                        kind)
        return order.status

    # --------------------------------------------------------------------------
    # Read APIs
    # --------------------------------------------------------------------------
    async def _get_by_reference(
        self, external_reference: str
    ) -> Optional[PendingOrder]:
        async with self.gated():
            async with self.session.begin():
                return await self.session.get(
                    PendingOrder, external_reference, populate_existing=True
                )

    async def get_order(
        self, order_id: str
    ) -> Tuple[PendingOrder, List[Ticket]]:
        async with self.gated():
            async with self.session.begin():
                order = (await self.session.execute(
                    select(PendingOrder)
                    .where(PendingOrder.order_id == order_id)
                    .execution_options(populate_existing=True)
                )).scalars().first()
        if order is None:
            raise OrderNotFoundError(details={"order_id": order_id})
        tickets: List[Ticket] = []
        if order.status == ORDER_FULFILLED:
            tickets = await self.ledger.tickets_for_order(
                order.external_reference
            )
        return order, tickets

    async def get_order_by_reference(
        self, external_reference: str
    ) -> PendingOrder:
        order = await self._get_by_reference(external_reference)
        if order is None:
            raise OrderNotFoundError(
                details={"external_reference": external_reference}
            )
        return order

    async def recent_orders(
        self, limit: int = 200, status: Optional[str] = None
    ) -> Tuple[int, List[PendingOrder]]:
        stmt = select(PendingOrder)
        count_sql = "SELECT COUNT(*) FROM pending_orders"
        params = {}
        if status:
            stmt = stmt.where(PendingOrder.status == status)
            count_sql += " WHERE status = :status"
            params["status"] = status
        stmt = (
            stmt.order_by(PendingOrder.created_at.desc())
            .limit(max(1, limit))
            .execution_options(populate_existing=True)
        )
        async with self.gated():
            async with self.session.begin():
                total = (await self.session.execute(
                    text(count_sql), params
                )).scalar_one()
                rows = (await self.session.execute(stmt)).scalars().all()
        return int(total), list(rows)
