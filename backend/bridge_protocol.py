"""Rosbridge wire codec.

Frames are JSON text of the shape ``{op, topic, type?, msg?}``. Payloads
arrive either as flat ROS messages (NavSatFix, Float64MultiArray, ...) or as
a ``std_msgs/String`` whose ``data`` field carries a JSON document, so
decoding is lenient about both encodings.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional


class Topics:
    # Outbound
    COMMAND = "/command"            # LaunchRover / ManualControl / Stop
    SOFTWARE_DATA = "/gps_waypoints"  # waypoints, navigation params
    HEARTBEAT = "/heartbeat"
    DRIVE = "/json"                 # differential-drive motor commands

    # Inbound
    GPS = "/fix"
    IMU_RAW = "/imu/raw"            # [roll, pitch, yaw, temp, voltage]
    LIDAR = "/scan"
    OBSTACLE_DETECTED = "/obstacle_detected"
    OBSTACLE_DISTANCE = "/obstacle_distance"
    TIMESTAMP = "/timestamp"
    NODE_STATUS = "/node_status"
    ROVER_STATE = "/rover_state"


TOPIC_TYPES = {
    Topics.COMMAND: "std_msgs/String",
    Topics.SOFTWARE_DATA: "std_msgs/String",
    Topics.HEARTBEAT: "std_msgs/String",
    Topics.DRIVE: "std_msgs/String",
    Topics.GPS: "sensor_msgs/NavSatFix",
    Topics.IMU_RAW: "std_msgs/Float64MultiArray",
    Topics.LIDAR: "sensor_msgs/LaserScan",
    Topics.OBSTACLE_DETECTED: "std_msgs/Bool",
    Topics.OBSTACLE_DISTANCE: "std_msgs/Float32",
    Topics.TIMESTAMP: "std_msgs/String",
    Topics.NODE_STATUS: "std_msgs/String",
    Topics.ROVER_STATE: "std_msgs/String",
}

SUBSCRIBED_TOPICS = (
    Topics.GPS,
    Topics.IMU_RAW,
    Topics.LIDAR,
    Topics.OBSTACLE_DETECTED,
    Topics.OBSTACLE_DISTANCE,
    Topics.TIMESTAMP,
    Topics.NODE_STATUS,
    Topics.ROVER_STATE,
)


@dataclass
class BridgeFrame:
    op: str
    topic: Optional[str] = None
    msg: Any = None
    type: Optional[str] = None


def subscribe_frame(topic: str) -> str:
    frame = {"op": "subscribe", "topic": topic}
    msg_type = TOPIC_TYPES.get(topic)
    if msg_type:
        frame["type"] = msg_type
    return json.dumps(frame)


def unsubscribe_frame(topic: str) -> str:
    return json.dumps({"op": "unsubscribe", "topic": topic})


def publish_frame(topic: str, msg: dict) -> str:
    return json.dumps({"op": "publish", "topic": topic, "msg": msg})


def json_message(payload) -> dict:
    """Wrap a payload as a std_msgs/String carrying JSON."""
    return {"data": json.dumps(payload)}


def decode_frame(raw) -> Optional[BridgeFrame]:
    """Parse one inbound frame. Returns None for anything that is not a frame."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("op"), str):
        return None
    topic = data.get("topic")
    if topic is not None and not isinstance(topic, str):
        return None
    return BridgeFrame(op=data["op"], topic=topic, msg=data.get("msg"), type=data.get("type"))


def _maybe_json(value):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, RecursionError):
            return value
    return value


def unwrap_payload(msg):
    """Decode a message body leniently.

    Accepts a bare JSON string, a ``{"data": "<json>"}`` wrapper, a
    ``{"data": <value>}`` wrapper, or a flat message dict (returned as-is).
    """
    if isinstance(msg, str):
        return _maybe_json(msg)
    if isinstance(msg, dict) and set(msg) == {"data"}:
        return _maybe_json(msg["data"])
    return msg


# --- Camera signaling frames ---

SIGNAL_TYPES = ("offer", "answer", "candidate", "ice-candidate")


def signal_frame(kind: str, **fields) -> str:
    if kind not in SIGNAL_TYPES:
        raise ValueError(f"Unknown signaling message type: {kind}")
    return json.dumps({"type": kind, **fields})


def decode_signal(raw) -> Optional[dict]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(data, dict) or data.get("type") not in SIGNAL_TYPES:
        return None
    return data
