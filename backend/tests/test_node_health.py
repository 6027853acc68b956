"""Tests for the in-mission node health monitor."""

import pytest

from node_health import NodeHealthMonitor
from sensor_cache import SensorCache
from fakes import FakeClock, settle


def make_monitor(connected=True):
    cache = SensorCache()
    clock = FakeClock()
    failures = []
    state = {"connected": connected}

    async def on_failure(report):
        failures.append((clock.now(), report))

    monitor = NodeHealthMonitor(cache, clock, on_failure=on_failure, is_connected=lambda: state["connected"])
    return monitor, cache, clock, failures, state


def running(cache, *names, **overrides):
    nodes = {n: "running" for n in names}
    nodes.update(overrides)
    cache.update_node_status({"nodes": nodes})


class TestCheck:

    def test_idle_monitor_has_no_report(self):
        monitor, _, _, _, _ = make_monitor()
        assert monitor.check() is None

    @pytest.mark.asyncio
    async def test_classifies_error_and_offline(self):
        monitor, cache, _, _, _ = make_monitor()
        monitor.arm(["a", "b", "c", "d"])
        running(cache, "a", b="error", c="starting")
        report = monitor.check()
        assert not report.healthy
        assert report.errored == ["b"]
        assert report.offline == ["c", "d"]
        await monitor.disarm()

    @pytest.mark.asyncio
    async def test_disconnected_session_is_not_checked(self):
        monitor, _, _, _, _ = make_monitor(connected=False)
        monitor.arm(["a"])
        assert monitor.check() is None
        await monitor.disarm()


class TestSchedule:

    @pytest.mark.asyncio
    async def test_first_check_after_five_seconds(self):
        monitor, cache, clock, failures, _ = make_monitor()
        monitor.arm(["a"])
        running(cache, a="error")
        await clock.advance(4.5)
        assert failures == []
        await clock.advance(0.5)
        assert len(failures) == 1
        assert failures[0][0] == 5.0
        assert failures[0][1].errored == ["a"]

    @pytest.mark.asyncio
    async def test_second_check_at_fifteen_seconds(self):
        monitor, cache, clock, failures, _ = make_monitor()
        monitor.arm(["a"])
        running(cache, "a")
        await clock.advance(6.0)
        running(cache, a="offline")
        await clock.advance(8.5)
        assert failures == []
        await clock.advance(0.5)
        assert [t for t, _ in failures] == [15.0]

    @pytest.mark.asyncio
    async def test_then_every_fifteen_seconds(self):
        monitor, cache, clock, failures, _ = make_monitor()
        monitor.arm(["a"])
        running(cache, "a")
        await clock.advance(16.0)
        cache.update_node_status({"nodes": {}})
        await clock.advance(13.0)
        assert failures == []
        await clock.advance(1.0)
        assert [t for t, _ in failures] == [30.0]
        assert failures[0][1].offline == ["a"]

    @pytest.mark.asyncio
    async def test_failure_fires_once_and_disarms(self):
        monitor, cache, clock, failures, _ = make_monitor()
        monitor.arm(["a"])
        running(cache, a="error")
        await clock.advance(60.0)
        assert len(failures) == 1
        assert not monitor.armed
        assert monitor.required_nodes == ()

    @pytest.mark.asyncio
    async def test_disarm_stops_checks(self):
        monitor, cache, clock, failures, _ = make_monitor()
        monitor.arm(["a"])
        await monitor.disarm()
        await monitor.disarm()
        running(cache, a="error")
        await clock.advance(60.0)
        assert failures == []
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_empty_set_does_not_arm(self):
        monitor, _, _, _, _ = make_monitor()
        monitor.arm([])
        await settle()
        assert not monitor.armed
