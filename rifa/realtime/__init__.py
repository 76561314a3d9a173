import os
from typing import Iterable, Optional

import redis.asyncio as redis
from loguru import logger

from .events import ChangeEvent, LiveTable, INSERT, UPDATE, ALL

BACKEND = os.getenv("REALTIME_BACKEND", "memory").lower()  # 'memory' | 'redis'

if BACKEND == "redis":
    from ._redis import ChangeFeed as _ChangeFeed
else:
    from ._memory import ChangeFeed as _ChangeFeed


# Factory keeps server.py simple and constructor-agnostic:
def new_feed(*, r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("ChangeFeed(redis) requires r=redis.Redis")
        return _ChangeFeed(r=r)
    return _ChangeFeed()


async def fanout(feed, events: Iterable[ChangeEvent]) -> None:
    """
    Publish after commit. The store is the source of truth, so a feed outage
    must not fail a request whose writes already committed.
    """
    if feed is None:
        return
    try:
        await feed.publish(events)
    except Exception as e:
        logger.error(f"realtime publish failed, subscribers are stale: {e!r}")


ChangeFeed = _ChangeFeed
__all__ = [
    "ChangeFeed", "new_feed", "fanout", "BACKEND",
    "ChangeEvent", "LiveTable", "INSERT", "UPDATE", "ALL",
]
