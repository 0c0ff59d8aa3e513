"""Tests for health aggregation."""

import pytest

from agentwatch.daemon.bus import HEALTH_CHANGED
from agentwatch.daemon.config import HealthConfig
from agentwatch.daemon.error_handling import CaptureError
from agentwatch.daemon.health import HealthAggregator, evaluate_health
from agentwatch.daemon.models import AgentState, AgentStatus, HealthLevel, Target
from agentwatch.daemon.sampler import TerminalSampler

from .conftest import FakeMultiplexer


def make_health(mux, bus, clock, targets, monitor=None, **config):
    return HealthAggregator(
        targets,
        mux,
        TerminalSampler(mux, sample_timeout=1.0, clock=clock),
        bus,
        config=HealthConfig(**config),
        monitor=monitor,
        clock=clock
    )


class TestEvaluateHealth:
    """Pure verdict function."""

    SESSIONS = {"president": True, "multiagent": True}

    def agents(self, up: int):
        names = ["president", "boss1", "worker1", "worker2", "worker3"]
        return {name: i < up for i, name in enumerate(names)}

    def test_all_up_is_healthy(self):
        assert evaluate_health(self.SESSIONS, self.agents(5), 0.6) == HealthLevel.HEALTHY

    def test_three_of_five_is_degraded(self):
        assert evaluate_health(self.SESSIONS, self.agents(3), 0.6) == HealthLevel.DEGRADED

    def test_two_of_five_is_critical(self):
        assert evaluate_health(self.SESSIONS, self.agents(2), 0.6) == HealthLevel.CRITICAL

    def test_missing_session_is_critical(self):
        sessions = {"president": True, "multiagent": False}
        assert evaluate_health(sessions, self.agents(5), 0.6) == HealthLevel.CRITICAL


class TestHealthAggregator:

    @pytest.mark.asyncio
    async def test_everything_running(self, running_mux, bus, clock, targets):
        health = make_health(running_mux, bus, clock, targets)

        verdict = await health.check()

        assert verdict.overall == HealthLevel.HEALTHY
        assert verdict.agents_up == 5
        assert health.latest is verdict

    @pytest.mark.asyncio
    async def test_three_agents_up(self, running_mux, bus, clock, targets):
        running_mux.kill_agent("multiagent:0.2")
        running_mux.kill_agent("multiagent:0.3")
        health = make_health(running_mux, bus, clock, targets)

        verdict = await health.check()

        assert verdict.overall == HealthLevel.DEGRADED
        assert verdict.down_agents == ["worker2", "worker3"]

    @pytest.mark.asyncio
    async def test_two_agents_up(self, running_mux, bus, clock, targets):
        for address in ("multiagent:0.1", "multiagent:0.2", "multiagent:0.3"):
            running_mux.kill_agent(address)
        health = make_health(running_mux, bus, clock, targets)

        verdict = await health.check()

        assert verdict.overall == HealthLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_no_sessions(self, mux, bus, clock, targets):
        health = make_health(mux, bus, clock, targets)

        verdict = await health.check()

        assert verdict.overall == HealthLevel.CRITICAL
        assert verdict.down_sessions == ["president", "multiagent"]
        assert verdict.agents_up == 0

    @pytest.mark.asyncio
    async def test_pane_process_counts_as_present(self, running_mux, bus, clock, targets):
        running_mux.screens["multiagent:0.1"] = "compiling..."
        running_mux.commands["multiagent:0.1"] = "node"
        health = make_health(running_mux, bus, clock, targets)

        verdict = await health.check()

        assert verdict.per_agent_up["worker1"]

    @pytest.mark.asyncio
    async def test_loose_words_are_not_presence(self, running_mux, bus, clock, targets):
        running_mux.kill_agent("multiagent:0.1")
        running_mux.screens["multiagent:0.1"] = "$ grep tokens auth.log\n✻ done\n$ "
        health = make_health(running_mux, bus, clock, targets)

        verdict = await health.check()

        assert not verdict.per_agent_up["worker1"]

    @pytest.mark.asyncio
    async def test_miss_tolerance(self, running_mux, bus, clock, targets):
        health = make_health(running_mux, bus, clock, targets, miss_tolerance=2)
        await health.check()

        running_mux.kill_agent("multiagent:0.1")
        first_miss = await health.check()
        second_miss = await health.check()

        assert first_miss.overall == HealthLevel.HEALTHY
        assert second_miss.overall == HealthLevel.DEGRADED
        assert second_miss.down_agents == ["worker1"]

    @pytest.mark.asyncio
    async def test_session_loss_skips_tolerance(self, running_mux, bus, clock, targets):
        health = make_health(running_mux, bus, clock, targets, miss_tolerance=3)
        await health.check()

        running_mux.sessions.discard("multiagent")
        verdict = await health.check()

        assert verdict.overall == HealthLevel.CRITICAL
        assert verdict.down_agents == ["boss1", "worker1", "worker2", "worker3"]

    @pytest.mark.asyncio
    async def test_emits_only_on_change(self, running_mux, bus, clock, targets):
        health = make_health(running_mux, bus, clock, targets)

        await health.check()
        clock.advance(15)
        await health.check()

        events = bus.of_type(HEALTH_CHANGED)
        assert len(events) == 1
        assert events[0].data["previous"] is None
        assert events[0].data["verdict"]["overall"] == "healthy"

        running_mux.sessions.discard("president")
        await health.check()
        assert len(bus.of_type(HEALTH_CHANGED)) == 2
        assert bus.events[-1].data["previous"] == "healthy"

    @pytest.mark.asyncio
    async def test_optional_targets_ignored(self, running_mux, bus, clock, targets):
        extra = Target(name="observer", session="scratch", required=False)
        health = make_health(running_mux, bus, clock, targets + [extra])

        verdict = await health.check()

        assert "observer" not in verdict.per_agent_up
        assert "scratch" not in verdict.per_session_up
        assert verdict.overall == HealthLevel.HEALTHY

    @pytest.mark.asyncio
    async def test_capture_failure_falls_back_to_monitor(self, running_mux, bus, clock, targets):
        class Snapshot:
            def snapshot(self):
                return {"worker1": AgentStatus(target="worker1", state=AgentState.WORKING)}

        running_mux.broken.add("multiagent:0.1")
        running_mux.broken.add("multiagent:0.2")
        health = make_health(running_mux, bus, clock, targets, monitor=Snapshot())

        verdict = await health.check()

        assert verdict.per_agent_up["worker1"]
        assert not verdict.per_agent_up["worker2"]
        assert health.errors.failures("health", "worker2") == 1


class UnlistableMultiplexer(FakeMultiplexer):
    """tmux that fails list-sessions and, optionally, has-session."""

    def __init__(self, has_session_works: bool = True):
        super().__init__()
        self.listing_fails = False
        self.has_session_works = has_session_works

    async def list_sessions(self):
        if self.listing_fails:
            raise CaptureError("tmux", "server not responding")
        return await super().list_sessions()

    async def session_exists(self, name):
        if self.listing_fails and not self.has_session_works:
            raise CaptureError("tmux", "server not responding")
        return await super().session_exists(name)


def start_all(mux, targets):
    for target in targets:
        mux.start_agent(target.address)
    return mux


class TestTransientTmuxFailures:

    @pytest.mark.asyncio
    async def test_failed_listing_falls_back_to_has_session(self, bus, clock, targets):
        mux = start_all(UnlistableMultiplexer(), targets)
        health = make_health(mux, bus, clock, targets)
        assert (await health.check()).overall == HealthLevel.HEALTHY

        mux.listing_fails = True
        verdict = await health.check()

        assert verdict.overall == HealthLevel.HEALTHY
        assert verdict.down_sessions == []
        assert health.errors.get_error_summary()["by_component"] == {"health": 1}

    @pytest.mark.asyncio
    async def test_unanswered_sessions_degrade_after_tolerance(self, bus, clock, targets):
        mux = start_all(UnlistableMultiplexer(has_session_works=False), targets)
        health = make_health(mux, bus, clock, targets, miss_tolerance=2)
        await health.check()

        mux.listing_fails = True
        first = await health.check()
        second = await health.check()

        assert first.overall == HealthLevel.HEALTHY
        assert second.overall == HealthLevel.CRITICAL
        assert second.down_sessions == ["president", "multiagent"]

    @pytest.mark.asyncio
    async def test_listing_recovers_before_tolerance(self, bus, clock, targets):
        mux = start_all(UnlistableMultiplexer(has_session_works=False), targets)
        health = make_health(mux, bus, clock, targets, miss_tolerance=2)
        await health.check()

        mux.listing_fails = True
        await health.check()
        mux.listing_fails = False
        await health.check()
        mux.listing_fails = True
        verdict = await health.check()

        assert verdict.overall == HealthLevel.HEALTHY
        assert len(bus.of_type(HEALTH_CHANGED)) == 1
