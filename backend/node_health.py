import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sensor_cache import NodeState, SensorCache
from timers import SystemClock, cancel_task


INITIAL_CHECK_DELAY = 5.0  # catches failures right after launch
CHECK_INTERVAL = 15.0


@dataclass
class NodeHealthReport:
    required: tuple
    offline: list = field(default_factory=list)
    errored: list = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.offline and not self.errored

    def describe(self) -> str:
        parts = []
        if self.errored:
            parts.append(f"error: {', '.join(self.errored)}")
        if self.offline:
            parts.append(f"offline: {', '.join(self.offline)}")
        return "; ".join(parts) or "all running"


def _check_schedule():
    yield INITIAL_CHECK_DELAY
    yield CHECK_INTERVAL - INITIAL_CHECK_DELAY
    while True:
        yield CHECK_INTERVAL


class NodeHealthMonitor:
    """Re-checks the mission's required nodes while a mission is active.

    Fail-closed: the first unhealthy check disarms the monitor and hands the
    report to ``on_failure`` exactly once.
    """

    def __init__(self, cache: SensorCache, clock=None,
                 on_failure: Optional[Callable[[NodeHealthReport], Awaitable]] = None,
                 is_connected: Optional[Callable[[], bool]] = None):
        self._cache = cache
        self._clock = clock or SystemClock()
        self._on_failure = on_failure
        self._is_connected = is_connected or (lambda: True)
        self._required: tuple = ()
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return bool(self._required) and self._task is not None

    @property
    def required_nodes(self) -> tuple:
        return self._required

    def arm(self, required_nodes):
        required = tuple(required_nodes)
        if not required:
            return
        if self._task is not None:
            self._task.cancel()
        self._required = required
        self._task = asyncio.create_task(self._run())
        print(f"[Health] Monitoring {len(required)} node(s): {', '.join(required)}")

    async def disarm(self):
        task, self._task = self._task, None
        self._required = ()
        await cancel_task(task)

    def check(self) -> Optional[NodeHealthReport]:
        """Compare the latest node status against the armed set. None when idle."""
        if not self._required or not self._is_connected():
            return None
        snapshot = self._cache.node_status
        nodes = snapshot.nodes if snapshot is not None else {}
        report = NodeHealthReport(required=self._required)
        for name in self._required:
            state = nodes.get(name)
            if state == NodeState.RUNNING.value:
                continue
            if state == NodeState.ERROR.value:
                report.errored.append(name)
            else:
                report.offline.append(name)
        return report

    async def _run(self):
        for delay in _check_schedule():
            await self._clock.sleep(delay)
            report = self.check()
            if report is None or report.healthy:
                continue
            print(f"[Health] Required node failure ({report.describe()}), ending session")
            self._task = None
            self._required = ()
            if self._on_failure is not None:
                await self._on_failure(report)
            return
