from __future__ import annotations

from datetime import timedelta

import pytest

from oppsync.engine.pacing import Pacer


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_first_call_does_not_wait():
    clock = FakeClock()
    pacer = Pacer(timedelta(milliseconds=50), clock=clock, sleep=clock.sleep)
    await pacer.wait()
    assert clock.sleeps == []
    assert pacer.calls == 1


@pytest.mark.asyncio
async def test_back_to_back_calls_are_spaced():
    clock = FakeClock()
    pacer = Pacer(timedelta(milliseconds=50), clock=clock, sleep=clock.sleep)
    for _ in range(4):
        await pacer.wait()
    assert clock.sleeps == pytest.approx([0.05, 0.05, 0.05])


@pytest.mark.asyncio
async def test_slow_requests_absorb_the_interval():
    clock = FakeClock()
    pacer = Pacer(timedelta(milliseconds=100), clock=clock, sleep=clock.sleep)
    await pacer.wait()
    clock.now += 0.03  # request took 30ms
    await pacer.wait()
    clock.now += 0.5  # request took 500ms
    await pacer.wait()
    assert clock.sleeps == pytest.approx([0.07])


@pytest.mark.asyncio
async def test_run_wraps_a_call():
    clock = FakeClock()
    pacer = Pacer(timedelta(milliseconds=50), clock=clock, sleep=clock.sleep)

    async def fetch():
        return "ok"

    assert await pacer.run(fetch) == "ok"
    assert await pacer.run(fetch) == "ok"
    assert pacer.calls == 2
    assert clock.sleeps == pytest.approx([0.05])
