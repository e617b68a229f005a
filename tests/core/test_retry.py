from __future__ import annotations

import pytest

from flowdesk_gateway.core.exceptions import PermanentError, TransientError
from flowdesk_gateway.core.retry import retry_transient, transient_attempts


@pytest.mark.anyio
async def test_retry_transient_retries_until_success() -> None:
    calls = 0

    @retry_transient(max_attempts=3, base_wait=0.0, max_wait=0.0, jitter=0.0)
    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransientError("try again")
        return "ok"

    assert await flaky() == "ok"
    assert calls == 3


@pytest.mark.anyio
async def test_retry_transient_does_not_retry_permanent_errors() -> None:
    calls = 0

    @retry_transient(max_attempts=5, base_wait=0.0, max_wait=0.0, jitter=0.0)
    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise PermanentError("no")

    with pytest.raises(PermanentError):
        await broken()
    assert calls == 1


@pytest.mark.anyio
async def test_transient_attempts_uses_injected_sleep_and_reraises() -> None:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    calls = 0
    with pytest.raises(TransientError):
        async for attempt in transient_attempts(
            max_attempts=3, base_wait=1.0, max_wait=30.0, sleep=fake_sleep
        ):
            with attempt:
                calls += 1
                raise TransientError("down")

    assert calls == 3
    assert sleeps == [1.0, 2.0]
