"""
Time helpers shared by the services.

Services take a ``clock`` and a ``sleep`` callable so that rate windows,
cool-downs and backoff delays can be driven deterministically.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


async def default_sleep(seconds: float) -> None:
    await asyncio.sleep(max(0.0, seconds))


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass through a datetime), assuming UTC for naive values."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
