import asyncio
from typing import Optional

import httpx

from errors import UploadFailed
from sensor_cache import SensorCache
from timers import SystemClock, cancel_task


LOG_INTERVAL = 15.0
HEARTBEAT_PERSIST_INTERVAL = 15.0


class RoverApiClient:
    """Client for the dashboard backend's rover log and heartbeat endpoints."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _send(self, method: str, path: str, payload: dict) -> httpx.Response:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", json=payload)
        except httpx.HTTPError as e:
            raise UploadFailed(path, detail=str(e)) from e
        if not response.is_success:
            raise UploadFailed(path, status_code=response.status_code, detail=response.text[:200])
        return response

    async def post_log(self, rover_id: str, record: dict) -> httpx.Response:
        return await self._send("POST", f"/rovers/{rover_id}/logs", record)

    async def patch_heartbeat(self, rover_id: str, timestamp_ms: int) -> httpx.Response:
        return await self._send("PATCH", f"/rovers/{rover_id}/heartbeat", {"timestamp": timestamp_ms})

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()


class TelemetryLogUploader:
    """Pushes the latest GPS + orientation sample to the log endpoint every 15 s."""

    def __init__(self, rover_id: str, cache: SensorCache, api: RoverApiClient,
                 clock=None, interval: float = LOG_INTERVAL):
        self.rover_id = rover_id
        self.path_id: Optional[int] = None
        self._cache = cache
        self._api = api
        self._clock = clock or SystemClock()
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        task, self._task = self._task, None
        await cancel_task(task)

    async def _run(self):
        while True:
            await self.push_latest()
            await self._clock.sleep(self._interval)

    async def push_latest(self) -> bool:
        sample = self._cache.latest_sample()
        if sample is None:
            return False
        if self.path_id is not None:
            sample["pathId"] = self.path_id
        try:
            await self._api.post_log(self.rover_id, sample)
        except UploadFailed as e:
            print(f"[Uploader] {e}")
            return False
        return True


class HeartbeatPersister:
    """Records rover liveness on the backend, at most once per interval."""

    def __init__(self, rover_id: str, api: RoverApiClient, clock=None,
                 interval: float = HEARTBEAT_PERSIST_INTERVAL):
        self.rover_id = rover_id
        self._api = api
        self._clock = clock or SystemClock()
        self._interval = interval
        self._last_push: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    def observe(self, timestamp_ms: Optional[int] = None) -> bool:
        """Called for every inbound liveness frame. Returns True if a push was scheduled."""
        now = self._clock.now()
        if self._last_push is not None and now - self._last_push < self._interval:
            return False
        if self._task is not None and not self._task.done():
            return False
        self._last_push = now
        if timestamp_ms is None:
            timestamp_ms = self._clock.timestamp_ms()
        self._task = asyncio.create_task(self._push(timestamp_ms))
        return True

    async def _push(self, timestamp_ms: int):
        try:
            await self._api.patch_heartbeat(self.rover_id, timestamp_ms)
        except UploadFailed as e:
            print(f"[Uploader] {e}")

    async def stop(self):
        task, self._task = self._task, None
        self._last_push = None
        await cancel_task(task)
