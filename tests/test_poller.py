import asyncio

import pytest

from origin_alpaca.origin.poller import SessionPoller


class CountingSession:
    def __init__(self, failures: int = 0) -> None:
        self.calls = 0
        self.failures = failures

    def poll(self) -> int:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("tick failed")
        return 0


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_poller_ticks_until_stopped():
    session = CountingSession()

    async with SessionPoller(session, interval=0.01) as poller:
        await _wait_for(lambda: session.calls >= 3)
        assert poller.running is True

    calls_after_stop = session.calls
    await asyncio.sleep(0.05)
    assert session.calls <= calls_after_stop + 1
    assert poller.running is False


@pytest.mark.asyncio
async def test_poller_survives_failing_ticks():
    session = CountingSession(failures=2)

    async with SessionPoller(session, interval=0.01) as poller:
        await _wait_for(lambda: session.calls >= 4)

    assert poller.ticks >= 3


def test_poller_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        SessionPoller(CountingSession(), interval=0)
