import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ingest.weight_budget import WeightBudget


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_budget_waits_for_window_reset():
    async def _run():
        clock = FakeClock()
        budget = WeightBudget(limit=100, window_s=60, clock=clock, sleep=clock.sleep)
        await budget.acquire(60)
        clock.now = 15.0
        await budget.acquire(40)
        assert budget.remaining() == 0
        assert clock.sleeps == []

        await budget.acquire(10)
        assert clock.sleeps == [45.0]
        assert budget.waits == 1
        assert budget.current_weight == 10

    asyncio.run(_run())


def test_budget_never_exceeds_limit_within_window():
    async def _run():
        clock = FakeClock()
        budget = WeightBudget(limit=50, window_s=60, clock=clock, sleep=clock.sleep)
        for _ in range(20):
            await budget.acquire(7)
            assert budget.current_weight <= 50

    asyncio.run(_run())


def test_server_reported_weight_is_adopted():
    clock = FakeClock()
    budget = WeightBudget(limit=1200, window_s=60, clock=clock)
    budget.sync_used(1150)
    assert budget.remaining() == 50
    assert budget.would_exceed(51)
    # A lower server count never rolls the local count back
    budget.sync_used(10)
    assert budget.remaining() == 50


def test_oversized_request_rejected():
    budget = WeightBudget(limit=10)
    with pytest.raises(ValueError):
        asyncio.run(budget.acquire(11))
