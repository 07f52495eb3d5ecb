import random
from dataclasses import dataclass

import pytest

from tackletarts.errors import CapacityExhaustedError, InvalidRangeError
from tackletarts.model.allocator import (
    NUMBERING_RANDOM,
    NUMBERING_SEQUENTIAL,
    RESULT_INSTANT_WIN,
    RESULT_NON_WIN,
    TicketNumberAllocator,
    classify,
    generate_instant_win_set,
)


@dataclass
class Comp:
    capacity: int
    sold_count: int = 0
    numbering: str = NUMBERING_RANDOM


class MemoryIssued:
    """In-memory issued-number index with a call counter."""

    def __init__(self, numbers=()):
        self.numbers = set(numbers)
        self.full_scans = 0

    async def taken(self, candidates):
        return {n for n in candidates if n in self.numbers}

    async def all(self):
        self.full_scans += 1
        return set(self.numbers)


async def issue(allocator, comp, issued, quantity):
    numbers = await allocator.allocate(comp, quantity, issued)
    issued.numbers.update(numbers)
    comp.sold_count += len(numbers)
    return numbers


# ---- instant-win sets

@pytest.mark.parametrize("capacity,count", [(1, 0), (1, 1), (10, 3), (200000, 100)])
def test_instant_win_set_has_exact_count_within_range(capacity, count):
    wins = generate_instant_win_set(capacity, count, random.Random(7))
    assert len(wins) == count
    assert all(1 <= n <= capacity for n in wins)


def test_instant_win_set_can_cover_every_number():
    assert generate_instant_win_set(5, 5, random.Random(1)) == {1, 2, 3, 4, 5}


@pytest.mark.parametrize("capacity,count", [(0, 0), (-3, 0), (10, 11), (10, -1)])
def test_instant_win_set_rejects_bad_ranges(capacity, count):
    with pytest.raises(InvalidRangeError):
        generate_instant_win_set(capacity, count)


def test_classify():
    wins = {3, 7}
    assert classify(wins, 3) == RESULT_INSTANT_WIN
    assert classify(wins, 4) == RESULT_NON_WIN
    assert classify(set(), 1) == RESULT_NON_WIN


# ---- ticket numbers

async def test_sequential_numbers_follow_sold_count():
    allocator = TicketNumberAllocator()
    comp = Comp(capacity=10, numbering=NUMBERING_SEQUENTIAL)
    issued = MemoryIssued()
    assert await issue(allocator, comp, issued, 3) == [1, 2, 3]
    assert await allocator.next_ticket_number(comp, issued) == 4


async def test_random_numbers_fill_capacity_without_duplicates():
    allocator = TicketNumberAllocator(rng=random.Random(42))
    comp = Comp(capacity=50)
    issued = MemoryIssued()
    got = []
    while comp.sold_count < comp.capacity:
        got.extend(await issue(allocator, comp, issued, 1))
    assert sorted(got) == list(range(1, 51))


async def test_random_batch_is_distinct_and_unissued():
    allocator = TicketNumberAllocator(rng=random.Random(3))
    comp = Comp(capacity=1000, sold_count=3)
    issued = MemoryIssued({1, 2, 3})
    numbers = await allocator.allocate(comp, 100, issued)
    assert len(set(numbers)) == 100
    assert not set(numbers) & {1, 2, 3}
    assert all(1 <= n <= 1000 for n in numbers)


async def test_near_capacity_uses_the_remaining_pool():
    allocator = TicketNumberAllocator(rng=random.Random(5), pool_threshold=0.05)
    comp = Comp(capacity=100, sold_count=98)
    issued = MemoryIssued(set(range(1, 101)) - {17, 64})
    numbers = await allocator.allocate(comp, 2, issued)
    assert sorted(numbers) == [17, 64]
    assert issued.full_scans == 1


async def test_allocation_beyond_free_numbers_fails():
    allocator = TicketNumberAllocator()
    comp = Comp(capacity=5, sold_count=4)
    issued = MemoryIssued({1, 2, 3, 4})
    with pytest.raises(CapacityExhaustedError):
        await allocator.allocate(comp, 2, issued)


async def test_allocation_rejects_non_positive_quantity():
    allocator = TicketNumberAllocator()
    with pytest.raises(InvalidRangeError):
        await allocator.allocate(Comp(capacity=5), 0, MemoryIssued())


async def test_random_numbers_are_spread_over_the_range():
    allocator = TicketNumberAllocator(rng=random.Random(11))
    comp = Comp(capacity=10)
    counts = {n: 0 for n in range(1, 11)}
    for _ in range(2000):
        n = await allocator.next_ticket_number(comp, MemoryIssued())
        counts[n] += 1
    # each number expected ~200 times
    assert min(counts.values()) > 120
    assert max(counts.values()) < 280
