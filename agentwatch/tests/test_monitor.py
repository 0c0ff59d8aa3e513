"""Tests for the activity monitor."""

import asyncio

import pytest

from agentwatch.daemon.analyzer import ActivityAnalyzer
from agentwatch.daemon.bus import STATUS_CHANGED
from agentwatch.daemon.config import MonitorConfig
from agentwatch.daemon.error_handling import ErrorAggregator
from agentwatch.daemon.models import AgentState, AgentStatus, Target
from agentwatch.daemon.monitor import ActivityMonitor, next_interval, should_emit
from agentwatch.daemon.sampler import TerminalSampler


WORKER = Target(name="worker1", session="multiagent", pane="0.1")


def make_monitor(mux, bus, clock, targets=None, **config):
    settings = MonitorConfig(**{"base_interval": 10, "max_interval": 60, "idle_timeout": 300, **config})
    return ActivityMonitor(
        targets or [WORKER],
        TerminalSampler(mux, sample_timeout=1.0, clock=clock),
        ActivityAnalyzer(),
        bus,
        config=settings,
        clock=clock,
        errors=ErrorAggregator()
    )


class TestPureHelpers:

    def test_should_emit_only_on_signature_change(self):
        status = AgentStatus(target="w", state=AgentState.IDLE, current_activity="Idle: Waiting for input")
        assert should_emit(None, status)
        assert should_emit((AgentState.OFFLINE, None), status)
        assert not should_emit((AgentState.IDLE, "Idle: Waiting for input"), status)

    def test_next_interval(self):
        assert next_interval(10, False, 10, 60) == 20
        assert next_interval(40, False, 10, 60) == 60
        assert next_interval(60, False, 10, 60) == 60
        assert next_interval(60, True, 10, 60) == 10


class TestStateTransitions:
    """Sample sequences drive the per-target state machine."""

    @pytest.mark.asyncio
    async def test_prompt_then_file_creation(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Human:")

        first = await monitor.poll_once("worker1")
        clock.advance(10)
        mux.screens[WORKER.address] = "Creating file: a.ts"
        second = await monitor.poll_once("worker1")
        clock.advance(10)
        third = await monitor.poll_once("worker1")

        assert first.state == AgentState.IDLE
        assert second.state == AgentState.WORKING
        assert second.working_on_file == "a.ts"
        assert third is None

        events = bus.of_type(STATUS_CHANGED)
        assert [(e.data["previous_state"], e.data["new_state"]) for e in events] == [
            ("offline", "idle"),
            ("idle", "working"),
        ]
        assert events[1].data["activity"] == "Coding: Working on a.ts"

    @pytest.mark.asyncio
    async def test_unchanged_sample_emits_once(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "$ npm install")

        for _ in range(5):
            await monitor.poll_once("worker1")
            clock.advance(5)

        assert len(bus.of_type(STATUS_CHANGED)) == 1

    @pytest.mark.asyncio
    async def test_same_activity_on_new_output_is_debounced(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Human:")
        await monitor.poll_once("worker1")

        mux.screens[WORKER.address] = "Human:\n\nHuman:"
        assert await monitor.poll_once("worker1") is None
        assert len(bus.events) == 1

    @pytest.mark.asyncio
    async def test_error_state(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Traceback (most recent call last)")

        status = await monitor.poll_once("worker1")

        assert status.state == AgentState.ERROR

    @pytest.mark.asyncio
    async def test_last_activity_never_decreases(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Human:")
        await monitor.poll_once("worker1")
        first = monitor.get_status("worker1").last_activity_at

        clock.advance(-60)
        mux.screens[WORKER.address] = "Creating file: b.py"
        await monitor.poll_once("worker1")

        assert monitor.get_status("worker1").last_activity_at == first

    @pytest.mark.asyncio
    async def test_quiet_worker_goes_idle(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Creating file: a.ts")
        await monitor.poll_once("worker1")

        clock.advance(200)
        assert await monitor.poll_once("worker1") is None

        clock.advance(120)
        status = await monitor.poll_once("worker1")
        assert status.state == AgentState.IDLE


class TestCaptureFailures:
    """CaptureError keeps state until the idle timeout, then goes offline."""

    @pytest.mark.asyncio
    async def test_offline_after_idle_timeout(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Creating file: a.ts")
        await monitor.poll_once("worker1")

        mux.broken.add(WORKER.address)
        clock.advance(200)
        assert await monitor.poll_once("worker1") is None
        assert monitor.get_status("worker1").state == AgentState.WORKING

        clock.advance(160)
        status = await monitor.poll_once("worker1")

        assert status.state == AgentState.OFFLINE
        assert bus.events[-1].data["new_state"] == "offline"
        assert monitor.errors.failures("monitor", "worker1") == 2

    @pytest.mark.asyncio
    async def test_never_reachable_stays_offline_silently(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)

        for _ in range(3):
            clock.advance(400)
            assert await monitor.poll_once("worker1") is None

        assert bus.events == []
        assert monitor.get_stats()["failed_checks"] == 3

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        clock.advance(400)
        await monitor.poll_once("worker1")

        mux.start_agent(WORKER.address, "Human:")
        status = await monitor.poll_once("worker1")

        assert status.state == AgentState.IDLE
        assert monitor.errors.failures("monitor", "worker1") == 0

    @pytest.mark.asyncio
    async def test_unchanged_screen_after_outage_leaves_offline(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Human:")
        await monitor.poll_once("worker1")

        mux.broken.add(WORKER.address)
        clock.advance(360)
        assert (await monitor.poll_once("worker1")).state == AgentState.OFFLINE

        mux.broken.discard(WORKER.address)
        status = await monitor.poll_once("worker1")
        for _ in range(2):
            assert await monitor.poll_once("worker1") is None

        assert status.state == AgentState.IDLE
        assert monitor.get_status("worker1").state == AgentState.IDLE
        assert [e.data["new_state"] for e in bus.of_type(STATUS_CHANGED)] == ["idle", "offline", "idle"]
        assert monitor.get_interval("worker1") == 40


class TestAdaptiveInterval:

    @pytest.mark.asyncio
    async def test_backoff_and_reset(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        mux.start_agent(WORKER.address, "Human:")

        intervals = []
        for _ in range(5):
            await monitor.poll_once("worker1")
            intervals.append(monitor.get_interval("worker1"))

        assert intervals == [10, 20, 40, 60, 60]

        mux.screens[WORKER.address] = "Creating file: c.go"
        await monitor.poll_once("worker1")
        assert monitor.get_interval("worker1") == 10

    @pytest.mark.asyncio
    async def test_failures_back_off(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)

        await monitor.poll_once("worker1")
        await monitor.poll_once("worker1")

        assert monitor.get_interval("worker1") == 40


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, running_mux, bus, clock, targets):
        monitor = make_monitor(running_mux, bus, clock, targets=targets)

        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop(grace=1.0)

        changed = {e.data["target"] for e in bus.of_type(STATUS_CHANGED)}
        assert changed == {t.name for t in targets}
        assert not monitor.get_stats()["running"]

    @pytest.mark.asyncio
    async def test_snapshot_is_frozen(self, mux, bus, clock):
        monitor = make_monitor(mux, bus, clock)
        snapshot = monitor.snapshot()

        with pytest.raises(AttributeError):
            snapshot["worker1"].state = AgentState.WORKING
