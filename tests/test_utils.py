import pytest

from cineai_rec import utils
from cineai_rec.utils import async_retry_with_backoff


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(utils.asyncio, "sleep", fake_sleep)
    return sleeps


@pytest.mark.asyncio
async def test_retries_with_exponential_backoff(no_sleep):
    attempts = 0

    @async_retry_with_backoff(max_retries=3, initial_delay=1.0, backoff_factor=2.0)
    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ConnectionError("try again")
        return "ok"

    assert await flaky() == "ok"
    assert attempts == 3
    assert no_sleep == [1.0, 2.0]


@pytest.mark.asyncio
async def test_reraises_after_last_attempt(no_sleep):
    @async_retry_with_backoff(max_retries=2, initial_delay=0.5)
    async def always_fails():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await always_fails()
    assert no_sleep == [0.5]


@pytest.mark.asyncio
async def test_only_listed_exceptions_are_retried(no_sleep):
    @async_retry_with_backoff(max_retries=3, exceptions=(ConnectionError,))
    async def bad_input():
        raise ValueError("not retryable")

    with pytest.raises(ValueError):
        await bad_input()
    assert no_sleep == []


@pytest.mark.asyncio
async def test_wraps_callable_instances(no_sleep):
    class Completion:
        async def __call__(self, prompt):
            return prompt.upper()

    wrapped = async_retry_with_backoff(max_retries=1)(Completion())

    assert await wrapped("hi") == "HI"


def test_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        async_retry_with_backoff(max_retries=0)
