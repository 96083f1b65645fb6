from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.openai_client import OpenAIClient
from agent.polling import poll_until


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _fetcher(values):
    values = iter(values)

    async def fetch():
        return next(values)
    return fetch


@pytest.mark.asyncio
async def test_stops_as_soon_as_predicate_holds():
    sleep = FakeSleep()

    outcome = await poll_until(_fetcher(["queued", "in_progress", "completed"]), lambda s: s == "completed",
                               max_attempts=10, interval=0.5, sleep=sleep)

    assert outcome.satisfied is True
    assert outcome.value == "completed"
    assert outcome.attempts == 3
    assert sleep.delays == [0.5, 0.5]


@pytest.mark.asyncio
async def test_gives_up_after_attempt_budget():
    sleep = FakeSleep()

    outcome = await poll_until(_fetcher(["queued"] * 5), lambda s: s == "completed",
                               max_attempts=3, interval=1.0, sleep=sleep)

    assert outcome.satisfied is False
    assert outcome.value == "queued"
    assert outcome.attempts == 3
    # no sleep after the last attempt
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_backoff_is_capped():
    sleep = FakeSleep()

    await poll_until(_fetcher([0] * 5), lambda v: False, max_attempts=5,
                     interval=1.0, backoff=2.0, max_interval=3.0, sleep=sleep)

    assert sleep.delays == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_duration_budget_stops_early():
    sleep = FakeSleep()

    outcome = await poll_until(_fetcher([0] * 10), lambda v: False, max_attempts=10,
                               interval=5.0, max_duration=1.0, sleep=sleep)

    assert outcome.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_fetch_errors_propagate():
    async def fetch():
        raise RuntimeError("404")

    with pytest.raises(RuntimeError):
        await poll_until(fetch, lambda v: True, sleep=FakeSleep())


@pytest.mark.asyncio
async def test_wait_for_run_returns_last_payload():
    client = OpenAIClient("sk-test", http_client=MagicMock(), chat_client=MagicMock())
    client.retrieve_run = AsyncMock(side_effect=[
        {"id": "run_1", "status": "queued"},
        {"id": "run_1", "status": "completed", "usage": {"total_tokens": 42}},
    ])

    run = await client.wait_for_run("thread_1", "run_1", max_attempts=5, interval=0)

    assert run["status"] == "completed"
    assert client.retrieve_run.await_count == 2
