import asyncio
import time
from typing import Optional


class SystemClock:
    """Real time. Sessions take a clock so tests can drive time by hand."""

    def now(self) -> float:
        return time.monotonic()

    def timestamp_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float):
        await asyncio.sleep(max(0.0, seconds))


async def cancel_task(task: Optional[asyncio.Task]):
    """Cancel a background task and wait for it to finish. Safe to call repeatedly."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
