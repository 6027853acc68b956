#!/usr/bin/env python3
"""
Mock rosbridge rover for bench testing the rover link.

Speaks the rosbridge JSON protocol on one websocket port: records
subscriptions, publishes GPS, raw IMU, timestamp and node-status frames to
subscribers, and reacts to LaunchRover / ManualControl / Stop commands.

Usage:
    python mock_rover.py --port 9090 --fail-node lidar_node
"""

import argparse
import asyncio
import json
import math
import time

import websockets
from websockets.exceptions import ConnectionClosed


BASE_LAT = 43.6532  # rover test field
BASE_LON = -79.3832
STEP_DEG = 0.00001  # ~1 m per tick

LAUNCH_NODES = (
    "gps_node", "imu_node", "lidar_node", "obstacle_detector",
    "nav2_controller", "waypoint_follower", "motor_driver",
)
MANUAL_NODES = ("imu_node", "lidar_node", "obstacle_detector", "motor_driver")


def _json_msg(payload) -> dict:
    return {"data": json.dumps(payload)}


class MockRover:
    """Simulates the rover side of the bridge."""

    def __init__(self, fail_node=None, interval=1.0):
        self.fail_node = fail_node
        self.interval = interval

        self.lat = BASE_LAT
        self.lon = BASE_LON
        self.yaw = 0.0
        self.state = "idle"
        self.waypoints = []
        self.nodes = {name: "offline" for name in LAUNCH_NODES}

        self.subscriptions = {}  # websocket -> set of topics
        self.received = []       # every publish frame from clients, in order
        self.heartbeats = 0

    # --- Protocol ---

    async def handler(self, websocket):
        self.subscriptions[websocket] = set()
        print("[MockRover] Client connected")
        try:
            async for message in websocket:
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    print(f"[MockRover] Bad frame: {message!r}")
                    continue
                await self.handle_frame(websocket, frame)
        except ConnectionClosed as e:
            print(f"[MockRover] Client connection closed: {e}")
        finally:
            self.subscriptions.pop(websocket, None)
            print("[MockRover] Client removed")

    async def handle_frame(self, websocket, frame: dict):
        op = frame.get("op")
        topic = frame.get("topic")
        if op == "subscribe":
            self.subscriptions[websocket].add(topic)
        elif op == "unsubscribe":
            self.subscriptions[websocket].discard(topic)
        elif op == "publish":
            self.received.append(frame)
            payload = self._payload(frame.get("msg"))
            if topic == "/heartbeat":
                self.heartbeats += 1
            elif topic == "/command":
                await self.handle_command(payload)
            elif topic == "/gps_waypoints" and payload.get("type") == "waypoints":
                self.waypoints = list(payload.get("data", {}).get("waypoints", []))
                print(f"[MockRover] Received {len(self.waypoints)} waypoint(s)")

    def _payload(self, msg) -> dict:
        data = msg.get("data") if isinstance(msg, dict) else msg
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                return {}
        return data if isinstance(data, dict) else {}

    async def handle_command(self, cmd: dict):
        kind = cmd.get("type")
        print(f"[MockRover] Command {kind}")
        if kind == "LaunchRover":
            self._start_nodes(LAUNCH_NODES)
            self.state = "navigating"
        elif kind == "ManualControl":
            self._start_nodes(MANUAL_NODES)
            self.state = "manual"
        elif kind == "Stop":
            self.state = "idle"
            self.waypoints = []
        else:
            return
        await self.publish("/rover_state", _json_msg({"state": self.state}))

    def _start_nodes(self, names):
        # Nodes report "starting" first, then "running" on the next tick
        for name in names:
            if self.nodes.get(name) != "running":
                self.nodes[name] = "starting"

    # --- Simulation ---

    def tick(self):
        for name, state in self.nodes.items():
            if state == "starting":
                self.nodes[name] = "error" if name == self.fail_node else "running"

        if self.state == "navigating" and self.waypoints:
            target = self.waypoints[0]
            dlat = target["latitude"] - self.lat
            dlon = target["longitude"] - self.lon
            dist = math.hypot(dlat, dlon)
            if dist < STEP_DEG:
                self.waypoints.pop(0)
            else:
                self.lat += STEP_DEG * dlat / dist
                self.lon += STEP_DEG * dlon / dist
                self.yaw = math.degrees(math.atan2(dlon, dlat))

    async def publish(self, topic: str, msg: dict):
        frame = json.dumps({"op": "publish", "topic": topic, "msg": msg})
        for websocket, topics in list(self.subscriptions.items()):
            if topic not in topics:
                continue
            try:
                await websocket.send(frame)
            except ConnectionClosed:
                self.subscriptions.pop(websocket, None)

    async def publish_telemetry(self):
        await self.publish("/fix", {"latitude": self.lat, "longitude": self.lon, "altitude": 0.0})
        await self.publish("/imu/raw", {"data": [0.0, 0.0, self.yaw, 36.5, 12.4]})
        await self.publish("/timestamp", {"data": str(int(time.time() * 1000))})
        await self.publish("/node_status", _json_msg({"timestamp": time.time(), "nodes": dict(self.nodes)}))

    async def run(self):
        while True:
            self.tick()
            await self.publish_telemetry()
            await asyncio.sleep(self.interval)


async def serve(rover: MockRover, host: str, port: int):
    async with websockets.serve(rover.handler, host, port):
        print(f"[MockRover] Bridge running on ws://{host}:{port}")
        await rover.run()


def main():
    parser = argparse.ArgumentParser(description="Mock rosbridge rover")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=9090, help="Bridge port (default: 9090)")
    parser.add_argument("--fail-node", default=None, help="Node that reports 'error' once started")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between telemetry frames")
    args = parser.parse_args()

    rover = MockRover(fail_node=args.fail_node, interval=args.interval)
    try:
        asyncio.run(serve(rover, args.host, args.port))
    except KeyboardInterrupt:
        print("\nStopping mock rover.")


if __name__ == "__main__":
    main()
