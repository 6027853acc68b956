import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from bridge_protocol import (
    SUBSCRIBED_TOPICS,
    Topics,
    decode_frame,
    json_message,
    publish_frame,
    subscribe_frame,
    unsubscribe_frame,
    unwrap_payload,
)
from camera_signaling import CameraSignalingManager
from errors import ConnectionFailed, NodesNotReady, NotConnected
from node_health import NodeHealthMonitor, NodeHealthReport
from readiness import ReadinessGate
from rover_config import RoverConfig
from sensor_cache import SensorCache
from telemetry_uploader import HeartbeatPersister, RoverApiClient, TelemetryLogUploader
from timers import SystemClock, cancel_task


HEARTBEAT_INTERVAL = 3.0
MAX_HEARTBEAT_FAILURES = 5

COMMAND_TYPES = ("LaunchRover", "ManualControl", "Stop")
SOFTWARE_DATA_TYPES = ("waypoints", "navigation_params", "manual_command")

# (left, right) wheel speeds at speed=1.0
DRIVE_VECTORS = {
    "forward": (0.1, 0.1),
    "backward": (-0.1, -0.1),
    "left": (-0.25, 0.25),
    "right": (0.25, -0.25),
    "stop": (0.0, 0.0),
}

_SEND_ERRORS = (OSError, ConnectionClosed)


class SessionPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    FAULTED = "faulted"


@dataclass
class Waypoint:
    lat: float
    lng: float

    @classmethod
    def coerce(cls, value) -> "Waypoint":
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            lat = value.get("lat", value.get("latitude"))
            lng = value.get("lng", value.get("longitude"))
            if lat is not None and lng is not None:
                return cls(lat=float(lat), lng=float(lng))
        raise ValueError(f"Invalid waypoint: {value!r}")


@dataclass
class RoverCommand:
    type: str
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in COMMAND_TYPES:
            raise ValueError(f"Unknown command type: {self.type}")


@dataclass
class SoftwareData:
    type: str
    data: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in SOFTWARE_DATA_TYPES:
            raise ValueError(f"Unknown software data type: {self.type}")


@dataclass
class SessionState:
    is_connected: bool = False
    connection_errors: int = 0
    heartbeat_errors: int = 0
    last_heartbeat: Optional[int] = None
    rover_state: str = "unknown"
    is_navigating: bool = False
    current_waypoint: int = 0
    total_waypoints: int = 0
    required_nodes: tuple = ()

    def clear_mission(self):
        self.is_navigating = False
        self.current_waypoint = 0
        self.total_waypoints = 0
        self.required_nodes = ()


class BridgeSession:
    """One rover's link: bridge socket, heartbeat, sensor cache and cameras.

    All timers run as tasks on the caller's event loop and are cancelled on
    every path that leaves the connected state.
    """

    def __init__(self, rover_id, config: Optional[RoverConfig] = None, clock=None,
                 connect_socket=None, cameras: Optional[CameraSignalingManager] = None,
                 api: Optional[RoverApiClient] = None):
        self.rover_id = str(rover_id)
        self.config = config or RoverConfig()
        self._clock = clock or SystemClock()
        self._connect_socket = connect_socket or self._open_websocket

        self._phase = SessionPhase.IDLE
        self._state = SessionState()
        self._socket = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connect_attempt: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._state_listeners: list = []
        self._rover_state_listeners: list = []

        self.cache = SensorCache()
        self._api = api or RoverApiClient(self.config.api_base_url)
        self._gate = ReadinessGate(self.cache, self._clock, is_connected=lambda: self.is_connected)
        self._monitor = NodeHealthMonitor(
            self.cache, self._clock,
            on_failure=self._on_health_failure,
            is_connected=lambda: self.is_connected,
        )
        self._uploader = TelemetryLogUploader(self.rover_id, self.cache, self._api, self._clock)
        self._heartbeat_persister = HeartbeatPersister(self.rover_id, self._api, self._clock)
        self.cameras = cameras or CameraSignalingManager(self.config, clock=self._clock)

        self._handlers = {
            Topics.GPS: self.cache.update_gps,
            Topics.IMU_RAW: self.cache.update_orientation,
            Topics.LIDAR: self.cache.update_lidar,
            Topics.OBSTACLE_DETECTED: self.cache.update_obstacle_detected,
            Topics.OBSTACLE_DISTANCE: self.cache.update_obstacle_distance,
            Topics.NODE_STATUS: self.cache.update_node_status,
            Topics.TIMESTAMP: self._on_timestamp,
            Topics.ROVER_STATE: self._on_rover_state,
        }

    async def _open_websocket(self, url: str):
        return await websockets.connect(url, open_timeout=self.config.connect_timeout)

    # --- State ---

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected and self._socket is not None

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    @property
    def uploader(self) -> TelemetryLogUploader:
        return self._uploader

    @property
    def health_monitor(self) -> NodeHealthMonitor:
        return self._monitor

    @property
    def status(self) -> dict:
        s = self._state
        return {
            "rover_id": self.rover_id,
            "phase": self._phase.value,
            "is_connected": self.is_connected,
            "last_heartbeat": s.last_heartbeat,
            "connection_errors": s.connection_errors,
            "heartbeat_errors": s.heartbeat_errors,
            "heartbeat_active": self.heartbeat_active,
            "rover_state": s.rover_state,
            "is_navigating": s.is_navigating,
            "current_waypoint": s.current_waypoint,
            "total_waypoints": s.total_waypoints,
            "required_nodes": list(s.required_nodes),
            "health_monitor_armed": self._monitor.armed,
            "cameras": self.cameras.status(),
        }

    def on_state_change(self, callback: Callable):
        self._state_listeners.append(callback)

    def remove_state_listener(self, callback: Callable):
        if callback in self._state_listeners:
            self._state_listeners.remove(callback)

    def on_rover_state(self, callback: Callable):
        self._rover_state_listeners.append(callback)

    def _notify(self):
        status = self.status
        for callback in list(self._state_listeners):
            try:
                callback(status)
            except Exception as e:
                print(f"[Bridge] State listener error: {e}")

    # --- Connection lifecycle ---

    async def connect(self):
        if self._phase == SessionPhase.CONNECTED and self._socket is not None:
            self.cameras.start_enabled()
            return
        # Overlapping callers share one attempt and one socket
        attempt = self._connect_attempt
        if attempt is None or attempt.done():
            attempt = self._connect_attempt = asyncio.create_task(self._open())
            attempt.add_done_callback(self._connect_finished)
        await asyncio.shield(attempt)

    def _connect_finished(self, task: asyncio.Task):
        if self._connect_attempt is task:
            self._connect_attempt = None

    async def _open(self):
        await self._discard_socket()
        self._phase = SessionPhase.CONNECTING
        url = self.config.bridge_url
        print(f"[Bridge] Connecting to {url} for rover {self.rover_id}")

        try:
            socket = await self._connect_socket(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._phase = SessionPhase.FAULTED
            self._state.connection_errors += 1
            print(f"[Bridge] Connection failed: {e}")
            await self._shutdown_local()
            self._phase = SessionPhase.IDLE
            self._notify()
            raise ConnectionFailed(f"Failed to connect to rover bridge at {url}: {e}") from e

        self._socket = socket
        self._phase = SessionPhase.CONNECTED
        self._state.is_connected = True
        self._state.connection_errors = 0
        self._state.heartbeat_errors = 0
        print(f"[Bridge] Connected to rover {self.rover_id}")

        try:
            for topic in SUBSCRIBED_TOPICS:
                await socket.send(subscribe_frame(topic))
        except _SEND_ERRORS as e:
            await self._handle_connection_lost(e)
            raise ConnectionFailed(f"Bridge socket failed while subscribing: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop(socket))
        self._start_heartbeat()
        self._uploader.start()
        self.cameras.start_enabled()
        self._notify()

    async def disconnect(self):
        was_connected = self._state.is_connected
        socket, self._socket = self._socket, None
        if socket is not None:
            self._phase = SessionPhase.CLOSING

        await self._monitor.disarm()
        await self._uploader.stop()
        await self._stop_heartbeat()
        reader, self._reader_task = self._reader_task, None
        await cancel_task(reader)

        if socket is not None:
            await self._unsubscribe_all(socket)
            await self._close_socket(socket)

        await self._shutdown_local()
        self._phase = SessionPhase.IDLE
        if was_connected:
            print(f"[Bridge] Disconnected from rover {self.rover_id}")
            self._notify()

    async def aclose(self):
        await self.disconnect()
        await self._api.aclose()

    async def _discard_socket(self):
        # Reader goes first so closing the stale socket is never seen as a loss
        reader, self._reader_task = self._reader_task, None
        await cancel_task(reader)
        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_socket(socket)

    async def _read_loop(self, socket):
        error = None
        try:
            async for raw in socket:
                try:
                    self.handle_frame(raw)
                except Exception as e:
                    print(f"[Bridge] Dropped frame after handler error: {e!r}")
        except (OSError, ConnectionClosedError) as e:
            error = e
        if socket is self._socket:
            self._reader_task = None
            await self._handle_connection_lost(error)

    async def _handle_connection_lost(self, error=None):
        was_connected = self._state.is_connected
        if error is not None:
            self._phase = SessionPhase.FAULTED
            self._state.connection_errors += 1
            print(f"[Bridge] Connection error: {error}")
        else:
            print(f"[Bridge] Connection to rover {self.rover_id} closed")

        socket, self._socket = self._socket, None
        reader, self._reader_task = self._reader_task, None
        await cancel_task(reader)
        await self._shutdown_local()
        if socket is not None:
            await self._close_socket(socket)

        self._phase = SessionPhase.IDLE
        if was_connected:
            self._notify()

    async def _shutdown_local(self):
        """Stop every background activity and forget everything the rover told us."""
        await self._monitor.disarm()
        await self._uploader.stop()
        await self._stop_heartbeat()
        await self._heartbeat_persister.stop()
        await self.cameras.teardown_all()
        self._state.is_connected = False
        self._state.clear_mission()
        self._state.rover_state = "unknown"
        self.cache.clear()

    async def _unsubscribe_all(self, socket):
        for topic in SUBSCRIBED_TOPICS:
            try:
                await socket.send(unsubscribe_frame(topic))
            except _SEND_ERRORS as e:
                print(f"[Bridge] Unsubscribe failed, closing anyway: {e}")
                return

    async def _close_socket(self, socket):
        try:
            await socket.close()
        except (OSError, WebSocketException) as e:
            print(f"[Bridge] Error closing socket: {e}")

    # --- Inbound ---

    def handle_frame(self, raw):
        if not self._state.is_connected:
            return
        frame = decode_frame(raw)
        if frame is None:
            print("[Bridge] Ignoring malformed frame")
            return
        if frame.op != "publish" or frame.topic is None:
            return
        handler = self._handlers.get(frame.topic)
        if handler is None:
            print(f"[Bridge] Dropping frame for unhandled topic {frame.topic}")
            return
        try:
            handler(unwrap_payload(frame.msg))
        except (ValueError, TypeError, KeyError, OverflowError) as e:
            print(f"[Bridge] Bad payload on {frame.topic}: {e}")

    def _on_timestamp(self, payload):
        self.cache.update_timestamp(payload)
        self._heartbeat_persister.observe()

    def _on_rover_state(self, payload):
        previous = self._state.rover_state
        state = self.cache.update_rover_state(payload)
        self._state.rover_state = state
        if state == previous:
            return
        event = {"rover_id": self.rover_id, "state": state, "timestamp": self._clock.timestamp_ms()}
        for callback in list(self._rover_state_listeners):
            try:
                callback(event)
            except Exception as e:
                print(f"[Bridge] Rover state listener error: {e}")
        self._notify()

    # --- Heartbeat ---

    def _start_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _stop_heartbeat(self):
        task, self._heartbeat_task = self._heartbeat_task, None
        await cancel_task(task)

    async def _heartbeat_loop(self):
        while True:
            await self._send_heartbeat()
            if self._state.heartbeat_errors >= MAX_HEARTBEAT_FAILURES:
                print(f"[Bridge] {MAX_HEARTBEAT_FAILURES} heartbeat failures in a row, stopping heartbeat")
                self._heartbeat_task = None
                return
            await self._clock.sleep(HEARTBEAT_INTERVAL)

    async def _send_heartbeat(self):
        socket = self._socket
        if socket is None or not self._state.is_connected:
            return
        timestamp = self._clock.timestamp_ms()
        payload = {
            "rover_id": self.rover_id,
            "timestamp": timestamp,
            "status": "alive",
            "is_navigating": self._state.is_navigating,
        }
        try:
            await socket.send(publish_frame(Topics.HEARTBEAT, json_message(payload)))
        except _SEND_ERRORS as e:
            self._state.heartbeat_errors += 1
            print(f"[Bridge] Heartbeat failed ({self._state.heartbeat_errors}): {e}")
            return
        self._state.heartbeat_errors = 0
        self._state.last_heartbeat = timestamp

    # --- Outbound ---

    async def _publish(self, topic: str, msg: dict):
        socket = self._socket
        if socket is None or not self._state.is_connected:
            raise NotConnected(f"Rover {self.rover_id} is not connected")
        try:
            await socket.send(publish_frame(topic, msg))
        except _SEND_ERRORS as e:
            raise NotConnected(f"Bridge socket unavailable: {e}") from e

    async def send_command(self, command):
        if isinstance(command, dict):
            command = RoverCommand(type=command.get("type"), params=command.get("params") or {})
        payload = {
            "type": command.type,
            "params": command.params,
            "timestamp": self._clock.timestamp_ms(),
            "rover_id": self.rover_id,
        }
        await self._publish(Topics.COMMAND, json_message(payload))
        print(f"[Bridge] Sent {command.type} to rover {self.rover_id}")

    async def send_software_data(self, data):
        if isinstance(data, dict):
            data = SoftwareData(type=data.get("type"), data=data.get("data") or {})
        payload = {
            "type": data.type,
            "data": data.data,
            "timestamp": self._clock.timestamp_ms(),
            "rover_id": self.rover_id,
        }
        await self._publish(Topics.SOFTWARE_DATA, json_message(payload))

    async def drive(self, direction: str, speed: float = 1.0):
        try:
            left, right = DRIVE_VECTORS[direction]
        except KeyError:
            raise ValueError(f"Unknown drive direction: {direction}") from None
        await self._publish(Topics.DRIVE, json_message({"T": 1, "L": left * speed, "R": right * speed}))

    # --- Command flows ---

    async def wait_for_nodes_running(self, required_nodes, timeout_ms: Optional[int] = None) -> bool:
        if timeout_ms is None:
            timeout_ms = self.config.readiness_timeout_ms
        return await self._gate.wait_for_nodes_running(required_nodes, timeout_ms)

    async def launch_rover(self, waypoints):
        points = [Waypoint.coerce(w) for w in waypoints]
        if not points:
            raise ValueError("launch_rover needs at least one waypoint")

        started_connected = self._state.is_connected
        self._state.is_navigating = True
        self._state.current_waypoint = 0
        self._state.total_waypoints = len(points)
        self._notify()

        required = self.config.launch_nodes
        try:
            await self.send_command(RoverCommand(
                type="LaunchRover",
                params={"waypoint_count": len(points), "launch_mode": "autonomous"},
            ))
            ready = await self.wait_for_nodes_running(required)
        except NotConnected:
            self._rollback_mission(started_connected)
            raise
        if not ready:
            self._rollback_mission(started_connected)
            raise NodesNotReady(required, reason="launch aborted, required nodes not running")

        try:
            await self.send_software_data(SoftwareData(type="waypoints", data={
                "waypoints": [
                    {"id": i, "latitude": p.lat, "longitude": p.lng, "altitude": 0.0}
                    for i, p in enumerate(points)
                ],
            }))
        except NotConnected:
            self._rollback_mission(started_connected)
            raise

        self._state.required_nodes = tuple(required)
        self._monitor.arm(required)
        print(f"[Bridge] Rover {self.rover_id} launched with {len(points)} waypoint(s)")
        self._notify()

    def _rollback_mission(self, started_connected: bool):
        self._state.clear_mission()
        # Losing the connection mid-flow already reported the cleared mission
        if self._state.is_connected or not started_connected:
            self._notify()

    async def enable_manual_control(self):
        required = self.config.manual_nodes
        await self.send_command(RoverCommand(type="ManualControl", params={"control_mode": "manual"}))
        if not await self.wait_for_nodes_running(required):
            raise NodesNotReady(required, reason="manual control unavailable, required nodes not running")
        self._state.required_nodes = tuple(required)
        self._monitor.arm(required)
        self._notify()

    async def stop_rover(self):
        try:
            await self.send_command(RoverCommand(type="Stop", params={"emergency": False}))
        except NotConnected as e:
            print(f"[Bridge] Stop not delivered: {e}")
        await self._monitor.disarm()
        self._state.clear_mission()
        self._notify()

    async def _on_health_failure(self, report: NodeHealthReport):
        print(f"[Bridge] Ending session for rover {self.rover_id}: {report.describe()}")
        await self.disconnect()
