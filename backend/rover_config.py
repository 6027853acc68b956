import json
import os
from dataclasses import dataclass, field
from typing import Optional


SETTINGS_PATH = os.environ.get(
    "ROVER_SETTINGS",
    os.path.join(os.path.dirname(__file__), "settings.json"),
)

CAMERA_CHANNELS = ("csi", "usb", "csi2")

DEFAULT_SIGNALING_PORTS = {"csi": 8765, "usb": 8766, "csi2": 8767}
DEFAULT_CAMERA_ENABLED = {"csi": True, "usb": True, "csi2": False}

# Components that must report "running" before each command flow may proceed
LAUNCH_REQUIRED_NODES = (
    "gps_node",
    "imu_node",
    "lidar_node",
    "obstacle_detector",
    "nav2_controller",
    "waypoint_follower",
    "motor_driver",
)
MANUAL_REQUIRED_NODES = (
    "imu_node",
    "lidar_node",
    "obstacle_detector",
    "motor_driver",
)


def load_settings(path: str = None) -> dict:
    try:
        with open(path or SETTINGS_PATH, "r") as f:
            data = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class RoverConfig:
    """Connection settings for one rover. Fixed for the lifetime of a session."""

    host: str = "100.85.202.20"  # Tailscale address of the rover's Pi
    bridge_port: int = 9090
    signaling_ports: dict = field(default_factory=lambda: dict(DEFAULT_SIGNALING_PORTS))
    camera_enabled: dict = field(default_factory=lambda: dict(DEFAULT_CAMERA_ENABLED))
    api_base_url: str = "http://localhost:5173/api"
    connect_timeout: float = 5.0
    readiness_timeout_ms: int = 30000
    launch_nodes: tuple = LAUNCH_REQUIRED_NODES
    manual_nodes: tuple = MANUAL_REQUIRED_NODES
    signaling_reconnect_attempts: int = 5

    def __post_init__(self):
        for name in ("signaling_ports", "camera_enabled"):
            unknown = set(getattr(self, name)) - set(CAMERA_CHANNELS)
            if unknown:
                raise ValueError(f"Unknown camera channel(s) in {name}: {sorted(unknown)}")
        self.launch_nodes = tuple(self.launch_nodes)
        self.manual_nodes = tuple(self.manual_nodes)

    @property
    def bridge_url(self) -> str:
        return f"ws://{self.host}:{self.bridge_port}"

    def signaling_url(self, channel_id: str) -> str:
        port = self.signaling_ports[channel_id]
        return f"ws://{self.host}:{port}"

    def is_camera_enabled(self, channel_id: str) -> bool:
        return bool(self.camera_enabled.get(channel_id, False))

    @classmethod
    def from_settings(cls, settings: dict, rover_id: Optional[str] = None) -> "RoverConfig":
        """Build a config from the settings dict, applying the per-rover override block."""
        merged = {k: v for k, v in settings.items() if k != "rovers"}
        if rover_id is not None:
            overrides = settings.get("rovers", {}).get(str(rover_id), {})
            merged.update(overrides)

        kwargs = {k: merged[k] for k in _SCALAR_KEYS if k in merged}

        # Partial channel maps only override the channels they name
        ports = dict(DEFAULT_SIGNALING_PORTS)
        ports.update(merged.get("signaling_ports", {}))
        enabled = dict(DEFAULT_CAMERA_ENABLED)
        enabled.update(merged.get("camera_enabled", {}))

        return cls(
            signaling_ports={k: int(v) for k, v in ports.items()},
            camera_enabled={k: bool(v) for k, v in enabled.items()},
            **kwargs,
        )


_SCALAR_KEYS = (
    "host", "bridge_port", "api_base_url", "connect_timeout", "readiness_timeout_ms",
    "launch_nodes", "manual_nodes", "signaling_reconnect_attempts",
)
