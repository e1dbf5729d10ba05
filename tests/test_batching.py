import asyncio

import pytest

from batching import gather_keyed


@pytest.mark.asyncio
async def test_every_key_gets_a_result():
    async def ok(value):
        return value * 2

    async def boom():
        raise RuntimeError("node down")

    results = await gather_keyed({"a": lambda: ok(1), "b": boom, "c": lambda: ok(3)}, max_concurrency=2)

    assert set(results) == {"a", "b", "c"}
    assert results["a"].ok and results["a"].value == 2
    assert results["c"].ok and results["c"].value == 6
    assert not results["b"].ok
    assert isinstance(results["b"].error, RuntimeError)


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def tracked():
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    await gather_keyed({i: tracked for i in range(20)}, max_concurrency=3)
    assert peak == 3


@pytest.mark.asyncio
async def test_empty_request_set():
    assert await gather_keyed({}) == {}
