"""
Request coalescing ("singleflight") for cache misses.

Concurrent callers asking for the same key while a load is in flight wait
on the first caller's future instead of issuing their own origin fetch.
All waiters receive the same result, or the same exception.
"""

from __future__ import annotations

import asyncio
import logging

from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class SingleFlight:
    """Per-key in-flight call deduplication"""

    def __init__(self):
        self._inflight: dict[str, asyncio.Future] = {}
        self.coalesced = 0

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run ``loader`` once per key among concurrent callers.

        Args:
            key: Deduplication key
            loader: Zero-argument coroutine factory performing the fetch

        Returns:
            The loader's result
        """
        existing = self._inflight.get(key)
        if existing is not None:
            self.coalesced += 1
            return await asyncio.shield(existing)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await loader()
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported by the loop
            future.exception()
            raise
        except BaseException:
            future.cancel()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
