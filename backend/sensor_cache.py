import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Optional


class NodeState(str, Enum):
    RUNNING = "running"
    OFFLINE = "offline"
    STARTING = "starting"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class GpsFix:
    latitude: float
    longitude: float
    altitude: float = 0.0


@dataclass
class Orientation:
    # Degrees, as published on /imu/raw
    roll: float
    pitch: float
    yaw: float
    temperature: float = 0.0
    voltage: float = 0.0


@dataclass
class ObstacleReading:
    detected: Optional[bool] = None
    distance: Optional[float] = None


@dataclass
class NodeStatusSnapshot:
    timestamp: Optional[float] = None
    nodes: dict = field(default_factory=dict)  # component name -> state string

    def state_of(self, name: str) -> Optional[str]:
        return self.nodes.get(name)

    def partition(self, required) -> tuple:
        """Split required node names into (running, errored, other)."""
        running, errored, other = [], [], []
        for name in required:
            state = self.nodes.get(name)
            if state == NodeState.RUNNING.value:
                running.append(name)
            elif state == NodeState.ERROR.value:
                errored.append(name)
            else:
                other.append(name)
        return running, errored, other

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "nodes": dict(self.nodes)}


def _number(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be numeric, got {value!r}")
    try:
        return float(value)
    except OverflowError:
        raise ValueError(f"{name} is out of range") from None


def quaternion_to_euler(q: dict) -> tuple:
    """Convert an {x, y, z, w} quaternion to (roll, pitch, yaw) in degrees."""
    x, y, z, w = (_number(q[k], k) for k in ("x", "y", "z", "w"))

    sinr_cosp = 2 * (w * x + y * z)
    cosr_cosp = 1 - 2 * (x * x + y * y)
    roll = math.atan2(sinr_cosp, cosr_cosp)

    sinp = 2 * (w * y - z * x)
    pitch = math.copysign(math.pi / 2, sinp) if abs(sinp) >= 1 else math.asin(sinp)

    siny_cosp = 2 * (w * z + x * y)
    cosy_cosp = 1 - 2 * (y * y + z * z)
    yaw = math.atan2(siny_cosp, cosy_cosp)

    return math.degrees(roll), math.degrees(pitch), math.degrees(yaw)


def parse_gps(payload) -> GpsFix:
    if not isinstance(payload, dict):
        raise ValueError("GPS payload must be an object")
    return GpsFix(
        latitude=_number(payload.get("latitude"), "latitude"),
        longitude=_number(payload.get("longitude"), "longitude"),
        altitude=_number(payload.get("altitude", 0.0), "altitude"),
    )


def parse_orientation(payload) -> Orientation:
    if isinstance(payload, dict) and isinstance(payload.get("orientation"), dict):
        roll, pitch, yaw = quaternion_to_euler(payload["orientation"])
        return Orientation(roll=roll, pitch=pitch, yaw=yaw)
    if isinstance(payload, dict):
        # Float64MultiArray with layout
        payload = payload.get("data")
    if not isinstance(payload, (list, tuple)) or len(payload) != 5:
        raise ValueError("raw IMU payload must be [roll, pitch, yaw, temp, voltage]")
    roll, pitch, yaw, temperature, voltage = (_number(v, "imu") for v in payload)
    return Orientation(roll, pitch, yaw, temperature, voltage)


def parse_node_status(payload) -> NodeStatusSnapshot:
    if not isinstance(payload, dict):
        raise ValueError("node status payload must be an object")
    timestamp = payload.get("timestamp")
    if isinstance(payload.get("nodes"), dict):
        raw_nodes = payload["nodes"]
    else:
        raw_nodes = {k: v for k, v in payload.items() if k != "timestamp"}
    nodes = {}
    for name, state in raw_nodes.items():
        if not isinstance(state, str):
            raise ValueError(f"state of node {name!r} must be a string")
        nodes[str(name)] = state.strip().lower()
    return NodeStatusSnapshot(timestamp=timestamp, nodes=nodes)


def _parse_bool(payload) -> bool:
    if isinstance(payload, bool):
        return payload
    if isinstance(payload, str) and payload.lower() in ("true", "false"):
        return payload.lower() == "true"
    if isinstance(payload, (int, float)):
        return bool(payload)
    raise ValueError(f"obstacle_detected must be boolean, got {payload!r}")


class SensorCache:
    """Last-known value per inbound topic.

    Every update replaces its slot wholesale, except the two obstacle fields
    which arrive independently and are merged into one ObstacleReading.
    """

    SLOTS = ("gps", "orientation", "lidar", "obstacle", "node_status", "timestamp", "rover_state")

    def __init__(self):
        self._listeners: list = []
        self._reset()

    def _reset(self):
        self.gps: Optional[GpsFix] = None
        self.orientation: Optional[Orientation] = None
        self.lidar: Optional[dict] = None
        self.obstacle: Optional[ObstacleReading] = None
        self.node_status: Optional[NodeStatusSnapshot] = None
        self.timestamp = None
        self.rover_state: Optional[str] = None

    def add_listener(self, callback: Callable):
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _set(self, slot: str, value):
        setattr(self, slot, value)
        self._emit(slot, value)

    def _emit(self, slot, value):
        for callback in list(self._listeners):
            try:
                callback(slot, value)
            except Exception as e:
                print(f"[Cache] Listener error on {slot}: {e}")

    # --- Updates (payloads already unwrapped by the codec) ---

    def update_gps(self, payload):
        self._set("gps", parse_gps(payload))

    def update_orientation(self, payload):
        self._set("orientation", parse_orientation(payload))

    def update_lidar(self, payload):
        if not isinstance(payload, dict) or not isinstance(payload.get("ranges"), list):
            raise ValueError("lidar payload must be a LaserScan with ranges")
        self._set("lidar", dict(payload))

    def update_obstacle_detected(self, payload):
        detected = _parse_bool(payload)
        previous = self.obstacle or ObstacleReading()
        self._set("obstacle", ObstacleReading(detected=detected, distance=previous.distance))

    def update_obstacle_distance(self, payload):
        distance = _number(payload, "obstacle_distance")
        previous = self.obstacle or ObstacleReading()
        self._set("obstacle", ObstacleReading(detected=previous.detected, distance=distance))

    def update_node_status(self, payload):
        self._set("node_status", parse_node_status(payload))

    def update_timestamp(self, payload):
        if isinstance(payload, dict):
            payload = payload.get("timestamp", payload.get("data"))
        if payload is None:
            raise ValueError("timestamp payload is empty")
        self._set("timestamp", payload)

    def update_rover_state(self, payload) -> str:
        state = payload.get("state") if isinstance(payload, dict) else payload
        if not isinstance(state, str) or not state:
            raise ValueError(f"rover state must be a non-empty string, got {payload!r}")
        self._set("rover_state", state)
        return state

    # --- Reads ---

    def clear(self):
        self._reset()
        self._emit(None, None)

    def is_empty(self) -> bool:
        return all(getattr(self, slot) is None for slot in self.SLOTS)

    def latest_sample(self) -> Optional[dict]:
        """Flattened GPS + orientation record, or None if either is missing."""
        if self.gps is None or self.orientation is None:
            return None
        return {
            "latitude": self.gps.latitude,
            "longitude": self.gps.longitude,
            "altitude": self.gps.altitude,
            "roll": self.orientation.roll,
            "pitch": self.orientation.pitch,
            "yaw": self.orientation.yaw,
            "temperature": self.orientation.temperature,
            "voltage": self.orientation.voltage,
        }

    def snapshot(self) -> dict:
        return {
            "gps": asdict(self.gps) if self.gps else None,
            "orientation": asdict(self.orientation) if self.orientation else None,
            "lidar": self.lidar,
            "obstacle": asdict(self.obstacle) if self.obstacle else None,
            "node_status": self.node_status.to_dict() if self.node_status else None,
            "timestamp": self.timestamp,
            "rover_state": self.rover_state,
        }
