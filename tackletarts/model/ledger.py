# model/ledger.py
"""
Competition ledger on top of the SQL store.

- competitions with a fixed capacity and a pre-generated instant-win set
- reservation of ticket numbers (sold_count + Ticket rows, one transaction)
- soft close and the one-time end draw
- read APIs: competitions, inventory, tickets per owner / order

Writers for one competition go through `locks.hold(competition_id)`. The
database still enforces the invariants on its own: sold_count moves by
compare-and-swap, (competition_id, number) is unique, and the end winner is
set only while it is NULL.
"""

from __future__ import annotations
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from sqlalchemy import and_, bindparam, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ..errors import (
    AlreadyClosedError,
    AlreadyDrawnError,
    CapacityExhaustedError,
    CompetitionClosedError,
    CompetitionNotFoundError,
    InvalidRangeError,
    NoTicketsError,
    SoldOutError,
)
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from ..infra.timings import timeit
from .allocator import (
    NUMBERING_RANDOM,
    NUMBERINGS,
    RESULT_END_WINNER,
    TicketNumberAllocator,
    classify,
    generate_instant_win_set,
)
from .db import (
    COMPETITION_OPEN,
    Competition,
    InstantWin,
    Ticket,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Contended(Exception):
    """A concurrent writer won a compare-and-swap; redo the unit of work."""


class SqlIssuedNumbers:
    """IssuedNumbers backed by the tickets table, bound to one transaction."""

    def __init__(self, session: AsyncSession, competition_id: int) -> None:
        self.session = session
        self.competition_id = competition_id

    async def taken(self, candidates: Iterable[int]) -> Set[int]:
        nums = list(candidates)
        if not nums:
            return set()
        stmt = text(
            "SELECT number FROM tickets "
            "WHERE competition_id = :cid AND number IN :nums"
        ).bindparams(bindparam("nums", expanding=True))
        rows = (await self.session.execute(
            stmt, {"cid": self.competition_id, "nums": nums}
        )).all()
        return {int(r[0]) for r in rows}

    async def all(self) -> Set[int]:
        rows = (await self.session.execute(
            text("SELECT number FROM tickets WHERE competition_id = :cid"),
            {"cid": self.competition_id},
        )).all()
        return {int(r[0]) for r in rows}


class CompetitionLedger:
    def __init__(
        self,
        session: AsyncSession,
        gated: Gated,
        locks,
        allocator: Optional[TicketNumberAllocator] = None,
        rng: Optional[random.Random] = None,
        max_attempts: int = 5,
    ) -> None:
        self.session = session
        self.gated = gated
        self.locks = locks
        self.rng = rng or random.SystemRandom()
        self.allocator = allocator or TicketNumberAllocator(rng=self.rng)
        self.max_attempts = max(1, max_attempts)

    # --------------------------------------------------------------------------
    # Units of work
    # --------------------------------------------------------------------------
    async def in_transaction(
        self, work: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        """
        Run `work` in one transaction, retrying from scratch when it loses a
        race (unique violation or lost compare-and-swap). Every attempt is
        all-or-nothing.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.gated():
                    async with self.session.begin():
                        return await work(self.session)
            except (Contended, IntegrityError) as e:
                logger.warning(
                    "concurrent update, retrying (attempt %d/%d): %s",
                    attempt, self.max_attempts, type(e).__name__,
                )
        raise CapacityExhaustedError(
            "gave up after repeated concurrent updates",
            details={"attempts": self.max_attempts},
        )

    # --------------------------------------------------------------------------
    # Admin: create / close / draw
    # --------------------------------------------------------------------------
    async def create_competition(
        self,
        name: str,
        capacity: int,
        instant_win_count: int,
        *,
        description: str = "",
        image: Optional[str] = None,
        ticket_price: int = 0,
        currency: str = "gbp",
        numbering: str = NUMBERING_RANDOM,
    ) -> Competition:
        if numbering not in NUMBERINGS:
            raise ValueError(f"numbering must be one of {NUMBERINGS}")
        if ticket_price < 0:
            raise InvalidRangeError(
                "ticket price must not be negative",
                details={"ticket_price": ticket_price},
            )
        wins = generate_instant_win_set(capacity, instant_win_count, self.rng)

        async with self.gated():
            async with self.session.begin():
                comp = Competition(
                    name=name,
                    description=description or "",
                    image=image,
                    capacity=capacity,
                    sold_count=0,
                    instant_win_count=len(wins),
                    ticket_price=ticket_price,
                    currency=currency,
                    numbering=numbering,
                    status=COMPETITION_OPEN,
                    created_at=now_ts(),
                )
                self.session.add(comp)
                await self.session.flush()
                self.session.add_all([
                    InstantWin(competition_id=comp.id, number=n)
                    for n in sorted(wins)
                ])

        logger.info(
            "competition %s created: capacity=%d instant_wins=%d numbering=%s",
            comp.id, capacity, len(wins), numbering,
        )
        return comp

    async def close(self, competition_id: int) -> Competition:
        async with self.locks.hold(competition_id):
            async with self.gated():
                async with self.session.begin():
                    row = (await self.session.execute(text("""
                        UPDATE competitions
                        SET status = 'closed', closed_at = :now
                        WHERE id = :id AND status = 'open'
                        RETURNING id
                    """), {"id": competition_id, "now": now_ts()})).first()
                    comp = await self.session.get(
                        Competition, competition_id, populate_existing=True
                    )
                    if comp is None:
                        raise CompetitionNotFoundError(
                            details={"competition_id": competition_id}
                        )
                    if row is None:
                        raise AlreadyClosedError(
                            details={"competition_id": competition_id}
                        )
        logger.info("competition %s closed", competition_id)
        return comp

    async def draw_end_winner(self, competition_id: int) -> Ticket:
        """
        Pick the grand-prize ticket uniformly among all issued tickets.
        Closes the competition first if it is still open. Succeeds once.
        """
        async with self.locks.hold(competition_id):
            async with self.gated():
                async with self.session.begin():
                    ticket = await self._draw(self.session, competition_id)
        logger.info(
            "competition %s end draw: ticket %s (number %s, owner %s)",
            competition_id, ticket.id, ticket.number, ticket.owner_id,
        )
        return ticket

    async def _draw(self, session: AsyncSession, competition_id: int) -> Ticket:
        comp = await session.get(
            Competition, competition_id, populate_existing=True
        )
        if comp is None:
            raise CompetitionNotFoundError(
                details={"competition_id": competition_id}
            )
        if comp.end_winner_ticket_id is not None:
            raise AlreadyDrawnError(
                details={"competition_id": competition_id,
                         "ticket_id": comp.end_winner_ticket_id}
            )

        issued = (await session.execute(
            select(func.count()).select_from(Ticket)
            .where(Ticket.competition_id == competition_id)
        )).scalar_one()
        if issued == 0:
            raise NoTicketsError(details={"competition_id": competition_id})

        now = now_ts()
        if comp.status == COMPETITION_OPEN:
            await session.execute(text("""
                UPDATE competitions SET status = 'closed', closed_at = :now
                WHERE id = :id AND status = 'open'
            """), {"id": competition_id, "now": now})

        offset = self.rng.randrange(int(issued))
        ticket = (await session.execute(
            select(Ticket)
            .where(Ticket.competition_id == competition_id)
            .order_by(Ticket.id)
            .offset(offset)
            .limit(1)
            .execution_options(populate_existing=True)
        )).scalar_one()

        row = (await session.execute(text("""
            UPDATE competitions
            SET end_winner_ticket_id = :tid, drawn_at = :now
            WHERE id = :id
              AND status = 'closed'
              AND end_winner_ticket_id IS NULL
            RETURNING id
        """), {"id": competition_id, "tid": ticket.id, "now": now})).first()
        if row is None:
            raise AlreadyDrawnError(details={"competition_id": competition_id})

        ticket.result = RESULT_END_WINNER
        await session.flush()
        return ticket

    # --------------------------------------------------------------------------
    # Reservation
    # --------------------------------------------------------------------------
    async def reserve(
        self,
        competition_id: int,
        quantity: int,
        owner_id: str,
        order_ref: Optional[str] = None,
    ) -> List[Ticket]:
        """
        Reserve `quantity` ticket numbers and issue them to `owner_id`.
        Raises SoldOutError when the competition cannot take `quantity` more
        tickets; nothing is issued in that case.
        """
        async with timeit("ledger.reserve"):
            async with self.locks.hold(competition_id):
                tickets = await self.in_transaction(
                    lambda s: self.reserve_within(
                        s, competition_id, quantity, owner_id, order_ref
                    )
                )
        logger.info(
            "issued %d ticket(s) in competition %s to %s",
            len(tickets), competition_id, owner_id,
        )
        return tickets

    async def reserve_within(
        self,
        session: AsyncSession,
        competition_id: int,
        quantity: int,
        owner_id: str,
        order_ref: Optional[str] = None,
    ) -> List[Ticket]:
        """
        Reservation step for a caller-owned transaction: the caller must hold
        the competition lock and run this inside `in_transaction`.
        """
        if quantity < 1:
            raise InvalidRangeError(
                "quantity must be positive", details={"quantity": quantity}
            )
        comp = await session.get(
            Competition, competition_id, populate_existing=True
        )
        if comp is None:
            raise CompetitionNotFoundError(
                details={"competition_id": competition_id}
            )
        if comp.status != COMPETITION_OPEN:
            raise CompetitionClosedError(
                details={"competition_id": competition_id}
            )
        expected = int(comp.sold_count)
        if expected + quantity > comp.capacity:
            raise SoldOutError(details={
                "competition_id": competition_id,
                "requested": quantity,
                "available": max(0, comp.capacity - expected),
            })

        numbers = await self.allocator.allocate(
            comp, quantity, SqlIssuedNumbers(session, competition_id)
        )

        row = (await session.execute(text("""
            UPDATE competitions
            SET sold_count = sold_count + :q
            WHERE id = :id
              AND status = 'open'
              AND sold_count = :expected
              AND sold_count + :q <= capacity
            RETURNING sold_count
        """), {"id": competition_id, "q": quantity,
               "expected": expected})).first()
        if row is None:
            raise Contended(f"sold_count of competition {competition_id}")
        set_committed_value(comp, "sold_count", int(row[0]))

        wins = await self._instant_wins_among(session, competition_id, numbers)
        created_at = now_ts()
        tickets = [
            Ticket(
                competition_id=competition_id,
                owner_id=owner_id,
                number=n,
                result=classify(wins, n),
                order_ref=order_ref,
                created_at=created_at,
            )
            for n in numbers
        ]
        session.add_all(tickets)
        await session.flush()
        return sorted(tickets, key=lambda t: t.id)

    async def _instant_wins_among(
        self, session: AsyncSession, competition_id: int, numbers: List[int]
    ) -> Set[int]:
        stmt = text(
            "SELECT number FROM instant_wins "
            "WHERE competition_id = :cid AND number IN :nums"
        ).bindparams(bindparam("nums", expanding=True))
        rows = (await session.execute(
            stmt, {"cid": competition_id, "nums": list(numbers)}
        )).all()
        return {int(r[0]) for r in rows}

    # --------------------------------------------------------------------------
    # Read APIs
    # --------------------------------------------------------------------------
    async def get_competition(self, competition_id: int) -> Competition:
        async with self.gated():
            async with self.session.begin():
                comp = await self.session.get(
                    Competition, competition_id, populate_existing=True
                )
        if comp is None:
            raise CompetitionNotFoundError(
                details={"competition_id": competition_id}
            )
        return comp

    async def list_competitions(
        self, status: Optional[str] = None, limit: int = 100
    ) -> List[Competition]:
        stmt = select(Competition).order_by(Competition.id.desc()).limit(limit)
        if status:
            stmt = stmt.where(Competition.status == status)
        async with self.gated():
            async with self.session.begin():
                rows = (await self.session.execute(
                    stmt.execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def instant_win_numbers(self, competition_id: int) -> List[int]:
        async with self.gated():
            async with self.session.begin():
                rows = (await self.session.execute(
                    select(InstantWin.number)
                    .where(InstantWin.competition_id == competition_id)
                    .order_by(InstantWin.number)
                )).scalars().all()
        return [int(n) for n in rows]

    async def instant_win_hits(self, competition_id: int) -> List[Ticket]:
        """Issued tickets whose number is in the instant-win set."""
        stmt = (
            select(Ticket)
            .join(InstantWin, and_(
                InstantWin.competition_id == Ticket.competition_id,
                InstantWin.number == Ticket.number,
            ))
            .where(Ticket.competition_id == competition_id)
            .order_by(Ticket.id)
        )
        async with self.gated():
            async with self.session.begin():
                rows = (await self.session.execute(
                    stmt.execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        async with self.gated():
            async with self.session.begin():
                return await self.session.get(
                    Ticket, ticket_id, populate_existing=True
                )

    async def tickets_for_competition(self, competition_id: int) -> List[Ticket]:
        async with self.gated():
            async with self.session.begin():
                rows = (await self.session.execute(
                    select(Ticket)
                    .where(Ticket.competition_id == competition_id)
                    .order_by(Ticket.id)
                    .execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def tickets_for_order(
        self, order_ref: str, session: Optional[AsyncSession] = None
    ) -> List[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.order_ref == order_ref)
            .order_by(Ticket.id)
            .execution_options(populate_existing=True)
        )
        if session is not None:
            # inside a caller-owned transaction
            return list((await session.execute(stmt)).scalars().all())
        async with self.gated():
            async with self.session.begin():
                rows = (await self.session.execute(stmt)).scalars().all()
        return list(rows)

    async def tickets_for_owner(
        self, owner_id: str, limit: int = 500
    ) -> List[Tuple[Ticket, str]]:
        stmt = (
            select(Ticket, Competition.name)
            .join(Competition, Competition.id == Ticket.competition_id)
            .where(Ticket.owner_id == owner_id)
            .order_by(Ticket.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        async with self.gated():
            async with self.session.begin():
                rows = (await self.session.execute(stmt)).all()
        return [(r[0], r[1]) for r in rows]

    async def inventory(self) -> Dict[str, Any]:
        """
        Returns:
          { "<competition id>": { "capacity": ..., "sold": ...,
                                  "available": ..., "sold_out": ...,
                                  "status": ..., "timestamp": ... } }
        """
        now = now_ts()
        out: Dict[str, Any] = {}
        for comp in await self.list_competitions(limit=1000):
            available = comp.capacity - comp.sold_count
            out[str(comp.id)] = {
                "name": comp.name,
                "capacity": comp.capacity,
                "sold": comp.sold_count,
                "available": available,
                "sold_out": available <= 0,
                "status": comp.status,
                "timestamp": to_iso(now),
            }
        return out
