import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

logger = logging.getLogger("Batching")


@dataclass
class KeyedResult:
    key: Hashable
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


async def gather_keyed(
    requests: Dict[Hashable, Callable[[], Awaitable[Any]]],
    max_concurrency: int = 5,
) -> Dict[Hashable, KeyedResult]:
    """
    Runs N keyed request factories with at most `max_concurrency` in flight.

    Every key gets exactly one KeyedResult back; one request failing never
    affects the others.
    """
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def _run(key, factory) -> KeyedResult:
        async with semaphore:
            try:
                return KeyedResult(key=key, ok=True, value=await factory())
            except Exception as e:
                return KeyedResult(key=key, ok=False, error=e)

    keys = list(requests.keys())
    results = await asyncio.gather(*(_run(key, requests[key]) for key in keys))
    return {result.key: result for result in results}
