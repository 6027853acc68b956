from typing import Callable, Optional

from sensor_cache import SensorCache
from timers import SystemClock


POLL_INTERVAL = 1.0  # seconds between node-status checks


class ReadinessGate:
    """Waits until a set of remote components all report "running".

    Polls the cached node-status snapshot on a fixed cadence rather than
    reacting to frames, so a dropped status frame only delays the answer.
    """

    def __init__(self, cache: SensorCache, clock=None, is_connected: Optional[Callable[[], bool]] = None):
        self._cache = cache
        self._clock = clock or SystemClock()
        self._is_connected = is_connected or (lambda: True)

    async def wait_for_nodes_running(self, required_nodes, timeout_ms: int) -> bool:
        required = list(required_nodes)
        if not required:
            return True

        deadline = self._clock.now() + timeout_ms / 1000.0
        last_pending = None

        while True:
            if not self._is_connected():
                print("[Readiness] Session disconnected while waiting for nodes")
                return False

            snapshot = self._cache.node_status
            if snapshot is not None:
                running, errored, pending = snapshot.partition(required)
                if errored:
                    print(f"[Readiness] Node(s) in error state: {', '.join(errored)}")
                    return False
                if not pending:
                    print(f"[Readiness] All {len(running)} required nodes running")
                    return True
                if pending != last_pending:
                    states = ", ".join(f"{n}={snapshot.state_of(n) or 'missing'}" for n in pending)
                    print(f"[Readiness] Waiting on {states}")
                    last_pending = pending

            remaining = deadline - self._clock.now()
            if remaining <= 0:
                print(f"[Readiness] Timed out after {timeout_ms} ms waiting for {', '.join(required)}")
                return False
            await self._clock.sleep(min(POLL_INTERVAL, remaining))
