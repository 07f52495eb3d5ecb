# model/allocator.py
"""
Ticket number allocation for competitions.

- instant-win sets: `count` distinct numbers drawn uniformly from
  [1, capacity] when the competition is created
- ticket numbers: either sequential (sold_count + 1, ...) or uniformly random
  over the numbers not issued yet
- classification of an issued number against the instant-win set

Random allocation samples candidates and rejects the ones already issued
while plenty of numbers are free. Once the free fraction drops below
`pool_threshold` (or the sampling rounds run out) it switches to a shuffled
pool of the remaining numbers, so a call never loops unbounded near
capacity.
"""

from __future__ import annotations
import random
from typing import Collection, Iterable, List, Optional, Protocol, Set

from ..errors import CapacityExhaustedError, InvalidRangeError

NUMBERING_RANDOM = "random"
NUMBERING_SEQUENTIAL = "sequential"
NUMBERINGS = (NUMBERING_RANDOM, NUMBERING_SEQUENTIAL)

RESULT_INSTANT_WIN = "instant_win"
RESULT_NON_WIN = "non_win"
RESULT_END_WINNER = "end_winner"

_sysrand = random.SystemRandom()


class IssuedNumbers(Protocol):
    """Lookup of the numbers already issued for one competition."""

    async def taken(self, candidates: Iterable[int]) -> Set[int]: ...

    async def all(self) -> Set[int]: ...


class CompetitionLike(Protocol):
    capacity: int
    sold_count: int
    numbering: str


def generate_instant_win_set(
    capacity: int, count: int, rng: Optional[random.Random] = None
) -> Set[int]:
    if capacity < 1:
        raise InvalidRangeError(
            "capacity must be positive", details={"capacity": capacity}
        )
    if count < 0 or count > capacity:
        raise InvalidRangeError(
            "instant win count must be within [0, capacity]",
            details={"capacity": capacity, "count": count},
        )
    rng = rng or _sysrand
    # sampling from a range object is O(count), no list of size capacity
    return set(rng.sample(range(1, capacity + 1), count))


def classify(instant_win_numbers: Collection[int], number: int) -> str:
    if number in instant_win_numbers:
        return RESULT_INSTANT_WIN
    return RESULT_NON_WIN


class TicketNumberAllocator:
    def __init__(
        self,
        rng: Optional[random.Random] = None,
        pool_threshold: float = 0.05,
        max_rounds: int = 8,
    ) -> None:
        self.rng = rng or _sysrand
        self.pool_threshold = pool_threshold
        self.max_rounds = max(1, max_rounds)

    async def next_ticket_number(
        self, competition: CompetitionLike, issued: IssuedNumbers
    ) -> int:
        numbers = await self.allocate(competition, 1, issued)
        return numbers[0]

    async def allocate(
        self,
        competition: CompetitionLike,
        quantity: int,
        issued: IssuedNumbers,
    ) -> List[int]:
        """
        Pick `quantity` unused numbers for `competition`.

        `competition.sold_count` must be the number of tickets issued so far;
        the caller persists the returned numbers in the same transaction that
        advances it.
        """
        if quantity < 1:
            raise InvalidRangeError(
                "quantity must be positive", details={"quantity": quantity}
            )
        capacity = int(competition.capacity)
        sold = int(competition.sold_count)
        free = capacity - sold
        if quantity > free:
            raise CapacityExhaustedError(
                details={"requested": quantity, "free": max(0, free)}
            )

        if competition.numbering == NUMBERING_SEQUENTIAL:
            return list(range(sold + 1, sold + quantity + 1))

        if free / capacity < self.pool_threshold:
            return await self._from_pool(capacity, quantity, issued, [])
        return await self._by_rejection(capacity, quantity, issued)

    async def _by_rejection(
        self, capacity: int, quantity: int, issued: IssuedNumbers
    ) -> List[int]:
        picked: List[int] = []
        seen: Set[int] = set()
        for _ in range(self.max_rounds):
            need = quantity - len(picked)
            candidates = [
                n for n in self.rng.sample(range(1, capacity + 1), need)
                if n not in seen
            ]
            if not candidates:
                continue
            taken = await issued.taken(candidates)
            for n in candidates:
                if n not in taken:
                    picked.append(n)
                    seen.add(n)
            if len(picked) == quantity:
                return picked
        # unlucky streak: finish from the remaining pool
        return await self._from_pool(capacity, quantity, issued, picked)

    async def _from_pool(
        self,
        capacity: int,
        quantity: int,
        issued: IssuedNumbers,
        picked: List[int],
    ) -> List[int]:
        exclude = await issued.all()
        exclude.update(picked)
        pool = [n for n in range(1, capacity + 1) if n not in exclude]
        need = quantity - len(picked)
        if need > len(pool):
            raise CapacityExhaustedError(
                details={"requested": quantity, "free": len(pool) + len(picked)}
            )
        self.rng.shuffle(pool)
        return picked + pool[:need]
