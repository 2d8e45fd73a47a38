"""Interval driver for background tick functions.

Every periodic job in the engine is a plain coroutine ("tick"). Production
wraps it in `run_periodically`; tests call the tick directly.
"""

import asyncio
from typing import Awaitable, Callable

from salonping.common.logging import logger


async def run_periodically(
    name: str,
    interval_seconds: float,
    tick: Callable[[], Awaitable[object]],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Invoke `tick` forever, `interval_seconds` apart.

    A failing tick is logged and the loop continues with the next interval.
    """

    logger.info("ticker_started name=%s interval_s=%s", name, interval_seconds)
    while True:
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("ticker_error name=%s error=%s", name, exc)
        await sleep(interval_seconds)
