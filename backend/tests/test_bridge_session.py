"""Tests for the bridge session: connection lifecycle, heartbeat, dispatch and command flows."""

import asyncio
import json

import pytest

from bridge_protocol import SUBSCRIBED_TOPICS, Topics
from bridge_session import MAX_HEARTBEAT_FAILURES, SessionPhase
from errors import ConnectionFailed, NodesNotReady, NotConnected
from fakes import all_running, make_config, make_harness, node_status, settle


GPS_FRAME = {"op": "publish", "topic": "/fix", "msg": {"latitude": 43.65, "longitude": -79.38, "altitude": 0.0}}
IMU_FRAME = {"op": "publish", "topic": "/imu/raw", "msg": {"data": [1.0, 2.0, 3.0, 36.0, 12.0]}}
WAYPOINTS = [{"lat": 43.651, "lng": -79.381}, {"lat": 43.652, "lng": -79.382}]


async def connected_harness(**kwargs):
    h = make_harness(**kwargs)
    await h.session.connect()
    await settle()
    h.notes.clear()
    return h


# ===========================================================================
# Connection lifecycle
# ===========================================================================

class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_subscribes_every_topic(self):
        h = make_harness()
        await h.session.connect()
        await settle()
        assert h.bridge.urls == ["ws://rover.test:9090"]
        subscribed = [f["topic"] for f in h.socket.frames() if f["op"] == "subscribe"]
        assert subscribed == list(SUBSCRIBED_TOPICS)
        assert h.session.is_connected
        assert h.session.phase == SessionPhase.CONNECTED

    @pytest.mark.asyncio
    async def test_connect_notifies_once(self):
        h = make_harness()
        await h.session.connect()
        assert len(h.notes) == 1
        assert h.notes[0]["is_connected"] is True

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        h = await connected_harness()
        await h.session.connect()
        assert len(h.bridge.urls) == 1
        assert h.notes == []

    @pytest.mark.asyncio
    async def test_overlapping_connects_share_one_socket(self):
        h = make_harness()

        async def slow_open(url):
            await asyncio.sleep(0)
            return await h.bridge(url)

        h.session._connect_socket = slow_open
        await asyncio.gather(h.session.connect(), h.session.connect())
        assert len(h.bridge.sockets) == 1
        assert len(h.notes) == 1

        await h.session.disconnect()
        assert [s.closed for s in h.bridge.sockets] == [True]

    @pytest.mark.asyncio
    async def test_overlapping_connect_failure_reaches_both_callers(self):
        h = make_harness()
        h.bridge.fail_with = OSError("refused")
        results = await asyncio.gather(h.session.connect(), h.session.connect(), return_exceptions=True)
        assert all(isinstance(r, ConnectionFailed) for r in results)
        assert len(h.bridge.urls) == 1

    @pytest.mark.asyncio
    async def test_connect_starts_enabled_cameras_only(self):
        h = await connected_harness()
        assert sorted(h.signaling.urls) == ["ws://rover.test:8765", "ws://rover.test:8766"]

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        h = make_harness()
        h.bridge.fail_with = OSError("connection refused")
        with pytest.raises(ConnectionFailed):
            await h.session.connect()
        assert not h.session.is_connected
        assert h.session.status["connection_errors"] == 1
        assert h.session.cache.is_empty()
        assert len(h.notes) == 1
        assert h.notes[0]["is_connected"] is False
        assert not h.session.heartbeat_active

    @pytest.mark.asyncio
    async def test_successful_connect_resets_error_counter(self):
        h = make_harness()
        h.bridge.fail_with = OSError("refused")
        with pytest.raises(ConnectionFailed):
            await h.session.connect()
        h.bridge.fail_with = None
        await h.session.connect()
        assert h.session.status["connection_errors"] == 0


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_unsubscribes_then_closes(self):
        h = await connected_harness()
        socket = h.socket
        await h.session.disconnect()
        unsubscribed = [f["topic"] for f in socket.frames() if f["op"] == "unsubscribe"]
        assert unsubscribed == list(SUBSCRIBED_TOPICS)
        assert socket.closed
        assert not h.session.is_connected
        assert h.session.phase == SessionPhase.IDLE

    @pytest.mark.asyncio
    async def test_disconnect_notifies_exactly_once(self):
        h = await connected_harness()
        await h.session.disconnect()
        await h.session.disconnect()
        assert len(h.notes) == 1
        assert h.notes[0]["is_connected"] is False

    @pytest.mark.asyncio
    async def test_disconnect_when_idle_is_silent(self):
        h = make_harness()
        await h.session.disconnect()
        assert h.notes == []

    @pytest.mark.asyncio
    async def test_disconnect_clears_cache_and_stops_timers(self):
        h = await connected_harness()
        h.socket.push(GPS_FRAME)
        await settle()
        assert h.session.cache.gps is not None
        await h.session.disconnect()
        assert h.session.cache.is_empty()
        assert not h.session.heartbeat_active
        assert not h.session.uploader.running
        assert all(not c["connected"] for c in h.session.cameras.status().values())
        await h.clock.advance(60.0)
        assert h.clock.pending == 0


class TestConnectionLoss:

    @pytest.mark.asyncio
    async def test_socket_error(self):
        h = await connected_harness()
        h.socket.push(GPS_FRAME)
        await settle()
        h.socket.drop(OSError("connection reset"))
        await settle()
        assert not h.session.is_connected
        assert h.session.status["connection_errors"] == 1
        assert h.session.cache.is_empty()
        assert not h.session.heartbeat_active
        assert len(h.notes) == 1
        assert h.notes[0]["is_connected"] is False

    @pytest.mark.asyncio
    async def test_remote_close(self):
        h = await connected_harness()
        h.socket.drop()
        await settle()
        assert not h.session.is_connected
        assert h.session.status["connection_errors"] == 0
        assert len(h.notes) == 1

    @pytest.mark.asyncio
    async def test_reconnect_after_loss(self):
        h = await connected_harness()
        h.socket.drop(OSError("reset"))
        await settle()
        await h.session.connect()
        assert h.session.is_connected
        assert len(h.bridge.sockets) == 2


# ===========================================================================
# Heartbeat
# ===========================================================================

class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_first_beat_is_immediate(self):
        h = await connected_harness()
        beats = h.socket.published_json(Topics.HEARTBEAT)
        assert len(beats) == 1
        assert beats[0]["rover_id"] == "1"
        assert beats[0]["status"] == "alive"
        assert beats[0]["is_navigating"] is False
        assert h.session.status["last_heartbeat"] == beats[0]["timestamp"]

    @pytest.mark.asyncio
    async def test_beats_every_three_seconds(self):
        h = await connected_harness()
        await h.clock.advance(9.0)
        assert len(h.socket.published(Topics.HEARTBEAT)) == 4

    @pytest.mark.asyncio
    async def test_stops_after_consecutive_failures(self):
        h = await connected_harness()
        h.socket.fail_sends = True
        for _ in range(MAX_HEARTBEAT_FAILURES):
            await h.clock.advance(3.0)
        assert not h.session.heartbeat_active
        assert h.session.is_connected
        assert h.session.status["heartbeat_errors"] == MAX_HEARTBEAT_FAILURES

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        h = await connected_harness()
        h.socket.fail_sends = True
        await h.clock.advance(6.0)
        assert h.session.status["heartbeat_errors"] == 2
        h.socket.fail_sends = False
        await h.clock.advance(3.0)
        assert h.session.status["heartbeat_errors"] == 0
        assert h.session.heartbeat_active


# ===========================================================================
# Inbound dispatch
# ===========================================================================

class TestInbound:

    @pytest.mark.asyncio
    async def test_gps_and_imu_reach_cache(self):
        h = await connected_harness()
        h.socket.push(GPS_FRAME)
        h.socket.push(IMU_FRAME)
        await settle()
        sample = h.session.cache.latest_sample()
        assert sample["latitude"] == 43.65
        assert sample["yaw"] == 3.0

    @pytest.mark.asyncio
    async def test_unknown_topic_leaves_cache_unchanged(self):
        h = await connected_harness()
        h.socket.push(GPS_FRAME)
        await settle()
        before = h.session.cache.snapshot()
        h.session.handle_frame(json.dumps({"op": "publish", "topic": "/battery", "msg": {"data": 12}}))
        assert h.session.cache.snapshot() == before

    @pytest.mark.asyncio
    async def test_malformed_and_invalid_frames_are_dropped(self):
        h = await connected_harness()
        h.session.handle_frame("{{{")
        h.session.handle_frame(json.dumps({"op": "publish", "topic": "/fix", "msg": {"latitude": "x"}}))
        h.session.handle_frame(json.dumps({"op": "publish", "topic": "/imu/raw", "msg": {"data": [1, 2]}}))
        assert h.session.cache.is_empty()
        assert h.session.is_connected

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_does_not_stop_reader(self):
        h = await connected_harness()
        h.socket.push("[" * 100000 + "]" * 100000)
        h.socket.push(json.dumps({"op": "publish", "topic": "/fix", "msg": {"data": "[" * 100000}}))
        h.socket.push(GPS_FRAME)
        await settle()
        assert h.session.is_connected
        assert h.session.cache.gps.latitude == 43.65
        assert h.notes == []

    @pytest.mark.asyncio
    async def test_oversized_number_is_a_bad_payload(self):
        h = await connected_harness()
        huge = "1" + "0" * 400
        h.session.handle_frame('{"op":"publish","topic":"/fix","msg":{"latitude":%s,"longitude":2}}' % huge)
        assert h.session.cache.gps is None

        h.socket.push('{"op":"publish","topic":"/imu/raw","msg":{"data":[%s,0,0,0,0]}}' % huge)
        h.socket.push(GPS_FRAME)
        await settle()
        assert h.session.is_connected
        assert h.session.cache.orientation is None
        assert h.session.cache.gps is not None

    @pytest.mark.asyncio
    async def test_handler_error_drops_only_that_frame(self):
        h = await connected_harness()

        def broken(payload):
            raise AttributeError("listener bug")

        h.session._handlers[Topics.LIDAR] = broken
        h.socket.push({"op": "publish", "topic": Topics.LIDAR, "msg": {"ranges": [1.0]}})
        h.socket.push(GPS_FRAME)
        await settle()
        assert h.session.is_connected
        assert h.session.cache.gps is not None

    @pytest.mark.asyncio
    async def test_frames_ignored_while_disconnected(self):
        h = make_harness()
        h.session.handle_frame(json.dumps(GPS_FRAME))
        assert h.session.cache.is_empty()

    @pytest.mark.asyncio
    async def test_obstacle_frames_merge(self):
        h = await connected_harness()
        h.socket.push({"op": "publish", "topic": "/obstacle_detected", "msg": {"data": True}})
        h.socket.push({"op": "publish", "topic": "/obstacle_distance", "msg": {"data": 0.8}})
        await settle()
        assert h.session.cache.obstacle.detected is True
        assert h.session.cache.obstacle.distance == 0.8

    @pytest.mark.asyncio
    async def test_rover_state_notifies_listeners(self):
        h = await connected_harness()
        events = []
        h.session.on_rover_state(events.append)
        frame = {"op": "publish", "topic": "/rover_state", "msg": {"data": json.dumps({"state": "navigating"})}}
        h.socket.push(frame)
        h.socket.push(frame)
        await settle()
        assert [e["state"] for e in events] == ["navigating"]
        assert h.session.status["rover_state"] == "navigating"

    @pytest.mark.asyncio
    async def test_timestamp_persists_heartbeat_throttled(self):
        h = await connected_harness()
        for _ in range(5):
            h.socket.push({"op": "publish", "topic": "/timestamp", "msg": {"data": "1700000000000"}})
        await settle()
        assert len(h.api.heartbeats) == 1
        await h.clock.advance(15.0)
        h.socket.push({"op": "publish", "topic": "/timestamp", "msg": {"data": "1700000015000"}})
        await settle()
        assert len(h.api.heartbeats) == 2

    @pytest.mark.asyncio
    async def test_uploader_posts_latest_sample(self):
        h = await connected_harness()
        h.socket.push(GPS_FRAME)
        h.socket.push(IMU_FRAME)
        await h.clock.advance(15.0)
        assert len(h.api.logs) == 1
        rover_id, record = h.api.logs[0]
        assert rover_id == "1"
        assert record["latitude"] == 43.65
        assert record["voltage"] == 12.0


# ===========================================================================
# Outbound commands
# ===========================================================================

class TestCommands:

    @pytest.mark.asyncio
    async def test_command_requires_connection(self):
        h = make_harness()
        with pytest.raises(NotConnected):
            await h.session.send_command({"type": "Stop", "params": {}})

    @pytest.mark.asyncio
    async def test_command_payload(self):
        h = await connected_harness()
        await h.session.send_command({"type": "ManualControl", "params": {"control_mode": "manual"}})
        cmd = h.socket.published_json(Topics.COMMAND)[-1]
        assert cmd["type"] == "ManualControl"
        assert cmd["params"] == {"control_mode": "manual"}
        assert cmd["rover_id"] == "1"
        assert cmd["timestamp"] == h.clock.timestamp_ms()

    @pytest.mark.asyncio
    async def test_unknown_command_type(self):
        h = await connected_harness()
        with pytest.raises(ValueError):
            await h.session.send_command({"type": "SelfDestruct"})

    @pytest.mark.asyncio
    async def test_failed_send_is_not_connected(self):
        h = await connected_harness()
        h.socket.fail_sends = True
        with pytest.raises(NotConnected):
            await h.session.send_software_data({"type": "navigation_params", "data": {"speed": 1}})

    @pytest.mark.asyncio
    async def test_drive(self):
        h = await connected_harness()
        await h.session.drive("left", 0.5)
        assert h.socket.published_json(Topics.DRIVE) == [{"T": 1, "L": -0.125, "R": 0.125}]

    @pytest.mark.asyncio
    async def test_drive_unknown_direction(self):
        h = await connected_harness()
        with pytest.raises(ValueError):
            await h.session.drive("sideways")


# ===========================================================================
# Command flows
# ===========================================================================

class TestLaunch:

    @pytest.mark.asyncio
    async def test_launch_success(self):
        h = await connected_harness()
        h.socket.push(all_running(h.session.config.launch_nodes))
        await settle()

        await h.session.launch_rover(WAYPOINTS)

        launch = h.socket.published_json(Topics.COMMAND)[-1]
        assert launch["type"] == "LaunchRover"
        assert launch["params"] == {"waypoint_count": 2, "launch_mode": "autonomous"}
        data = h.socket.published_json(Topics.SOFTWARE_DATA)[-1]
        assert data["type"] == "waypoints"
        assert data["data"]["waypoints"][1] == {"id": 1, "latitude": 43.652, "longitude": -79.382, "altitude": 0.0}

        status = h.session.status
        assert status["is_navigating"] is True
        assert status["total_waypoints"] == 2
        assert status["required_nodes"] == list(h.session.config.launch_nodes)
        assert status["health_monitor_armed"] is True

    @pytest.mark.asyncio
    async def test_launch_empty_waypoints(self):
        h = await connected_harness()
        with pytest.raises(ValueError):
            await h.session.launch_rover([])
        assert h.socket.published(Topics.COMMAND) == []

    @pytest.mark.asyncio
    async def test_launch_timeout_rolls_back(self):
        h = await connected_harness(config=make_config(readiness_timeout_ms=5000))
        task = asyncio.create_task(h.session.launch_rover(WAYPOINTS))
        await settle()
        assert h.session.status["is_navigating"] is True

        await h.clock.advance(5.0)
        with pytest.raises(NodesNotReady):
            task.result()
        status = h.session.status
        assert status["is_navigating"] is False
        assert status["total_waypoints"] == 0
        assert status["health_monitor_armed"] is False
        assert h.socket.published(Topics.SOFTWARE_DATA) == []
        assert h.notes[-1]["is_navigating"] is False

    @pytest.mark.asyncio
    async def test_connection_lost_during_launch_notifies_once(self):
        h = await connected_harness()
        task = asyncio.create_task(h.session.launch_rover(WAYPOINTS))
        await settle()
        h.socket.drop(OSError("reset"))
        await settle()
        await h.clock.advance(1.0)
        with pytest.raises(NodesNotReady):
            task.result()
        disconnected = [n for n in h.notes if n["is_connected"] is False]
        assert len(disconnected) == 1
        assert disconnected[0]["is_navigating"] is False
        assert h.notes[-1] is disconnected[0]

    @pytest.mark.asyncio
    async def test_launch_aborts_on_node_error(self):
        h = await connected_harness()
        nodes = {n: "running" for n in h.session.config.launch_nodes}
        nodes["lidar_node"] = "error"
        h.socket.push(node_status(**nodes))
        await settle()
        with pytest.raises(NodesNotReady) as exc:
            await h.session.launch_rover(WAYPOINTS)
        assert "lidar_node" in exc.value.required_nodes
        assert h.clock.now() == 0.0

    @pytest.mark.asyncio
    async def test_launch_without_connection_rolls_back(self):
        h = make_harness()
        with pytest.raises(NotConnected):
            await h.session.launch_rover(WAYPOINTS)
        assert h.session.status["is_navigating"] is False


class TestManualAndStop:

    @pytest.mark.asyncio
    async def test_manual_control_arms_monitor(self):
        h = await connected_harness()
        h.socket.push(all_running(h.session.config.manual_nodes))
        await settle()
        await h.session.enable_manual_control()
        cmd = h.socket.published_json(Topics.COMMAND)[-1]
        assert cmd["params"] == {"control_mode": "manual"}
        assert h.session.status["health_monitor_armed"] is True
        assert h.session.status["is_navigating"] is False

    @pytest.mark.asyncio
    async def test_manual_control_not_ready(self):
        h = await connected_harness(config=make_config(readiness_timeout_ms=2000))
        task = asyncio.create_task(h.session.enable_manual_control())
        await h.clock.advance(2.0)
        with pytest.raises(NodesNotReady):
            task.result()
        assert h.session.status["health_monitor_armed"] is False

    @pytest.mark.asyncio
    async def test_stop_clears_mission(self):
        h = await connected_harness()
        h.socket.push(all_running(h.session.config.launch_nodes))
        await settle()
        await h.session.launch_rover(WAYPOINTS)
        await h.session.stop_rover()
        cmd = h.socket.published_json(Topics.COMMAND)[-1]
        assert cmd["type"] == "Stop"
        assert cmd["params"] == {"emergency": False}
        status = h.session.status
        assert status["is_navigating"] is False
        assert status["required_nodes"] == []
        assert status["health_monitor_armed"] is False

    @pytest.mark.asyncio
    async def test_stop_while_disconnected_does_not_raise(self):
        h = make_harness()
        await h.session.stop_rover()
        assert h.session.status["is_navigating"] is False


class TestHealthFailure:

    @pytest.mark.asyncio
    async def test_node_failure_ends_session(self):
        h = await connected_harness()
        h.socket.push(all_running(h.session.config.launch_nodes))
        await settle()
        await h.session.launch_rover(WAYPOINTS)
        socket = h.socket

        nodes = {n: "running" for n in h.session.config.launch_nodes}
        nodes["motor_driver"] = "offline"
        socket.push(node_status(**nodes))
        await h.clock.advance(5.0)

        assert not h.session.is_connected
        assert socket.closed
        disconnected = [n for n in h.notes if n["is_connected"] is False]
        assert len(disconnected) == 1
        assert h.session.cache.is_empty()

    @pytest.mark.asyncio
    async def test_healthy_mission_stays_connected(self):
        h = await connected_harness()
        h.socket.push(all_running(h.session.config.launch_nodes))
        await settle()
        await h.session.launch_rover(WAYPOINTS)
        await h.clock.advance(45.0)
        assert h.session.is_connected
        assert h.session.status["health_monitor_armed"] is True
