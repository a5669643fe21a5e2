"""
Rolling one-hour quota computed from the usage table.

The count and the later usage insert are not one transaction: concurrent
bursts can each see spare capacity and all proceed, so the limit is soft.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tubegate.core.store import KeyStore

WINDOW = timedelta(hours=1)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_epoch: int

    def retry_after(self, now: datetime) -> int:
        return max(1, math.ceil(self.reset_epoch - now.timestamp()))


async def rolling_window_limit(
    store: KeyStore,
    api_key_id: int,
    limit: int,
    now: datetime | None = None,
) -> RateLimitResult:
    """
    The quota decision for one key: allowed while fewer than ``limit`` usage
    rows fall inside the trailing hour.
    """
    now = now or datetime.now(timezone.utc)
    window_start = now - WINDOW

    count = await store.count_usage_since(api_key_id, window_start)
    allowed = count < limit
    remaining = max(0, limit - count - 1) if allowed else 0

    # capacity frees up when the oldest counted request leaves the window
    reset_at = now + WINDOW
    if count:
        oldest = await store.oldest_usage_since(api_key_id, window_start)
        if oldest is not None:
            reset_at = oldest + WINDOW

    return RateLimitResult(
        allowed=allowed,
        limit=limit,
        remaining=remaining,
        reset_epoch=int(math.ceil(reset_at.timestamp())),
    )


async def has_capacity(
    store: KeyStore,
    api_key_id: int,
    limit_per_hour: int,
    now: datetime | None = None,
) -> bool:
    result = await rolling_window_limit(store, api_key_id, limit_per_hour, now=now)
    return result.allowed
