"""System health aggregation from session and agent liveness."""

import asyncio
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from .bus import Event, EventBus, HEALTH_CHANGED
from .config import HealthConfig
from .error_handling import CaptureError, ErrorAggregator
from .models import AgentState, HealthLevel, HealthVerdict, Target
from .sampler import TerminalSampler


def evaluate_health(
    per_session_up: Dict[str, bool],
    per_agent_up: Dict[str, bool],
    min_healthy_fraction: float
) -> HealthLevel:
    """
    Overall health from liveness maps.

    healthy: every session exists and every agent is detected
    degraded: every session exists and at least min_healthy_fraction of agents are detected
    critical: anything else
    """
    if not all(per_session_up.values()):
        return HealthLevel.CRITICAL

    total = len(per_agent_up)
    up = sum(1 for detected in per_agent_up.values() if detected)
    if up == total:
        return HealthLevel.HEALTHY
    if up / total + 1e-9 >= min_healthy_fraction:
        return HealthLevel.DEGRADED
    return HealthLevel.CRITICAL


class HealthAggregator:
    """
    Periodically checks required sessions and agents and emits
    ``health.changed`` whenever the verdict differs from the previous one.

    An agent that was up is only reported down after ``miss_tolerance``
    consecutive misses, so health degrades step-wise instead of flapping.
    Sessions get the same tolerance when tmux itself fails to answer.
    """

    def __init__(
        self,
        targets: Iterable[Target],
        multiplexer,
        sampler: TerminalSampler,
        event_bus: EventBus,
        config: Optional[HealthConfig] = None,
        monitor=None,
        clock: Callable[[], datetime] = datetime.now,
        errors: Optional[ErrorAggregator] = None,
        shutdown: Optional[asyncio.Event] = None
    ):
        self.targets: List[Target] = [t for t in targets if t.required]
        self.multiplexer = multiplexer
        self.sampler = sampler
        self.event_bus = event_bus
        self.config = config or HealthConfig()
        self.monitor = monitor
        self.clock = clock
        self.errors = errors or ErrorAggregator()
        self.shutdown = shutdown or asyncio.Event()

        self.sessions: List[str] = []
        for target in self.targets:
            if target.session not in self.sessions:
                self.sessions.append(target.session)

        self.latest: Optional[HealthVerdict] = None
        self._misses: Dict[str, int] = {t.name: 0 for t in self.targets}
        self._up: Dict[str, bool] = {t.name: False for t in self.targets}
        self._session_misses: Dict[str, int] = {s: 0 for s in self.sessions}
        self._session_up: Dict[str, bool] = {s: False for s in self.sessions}
        self._task: Optional[asyncio.Task] = None

    async def check_sessions(self) -> Dict[str, bool]:
        """
        Which required sessions exist.

        When the listing fails each session is asked about on its own. A
        session tmux cannot answer for keeps its last known state until
        ``miss_tolerance`` consecutive checks have gone unanswered.
        """
        try:
            names: Optional[Set[str]] = await asyncio.wait_for(
                self.multiplexer.list_sessions(),
                timeout=self.config.probe_timeout
            )
        except asyncio.TimeoutError:
            self.errors.record_error("health", CaptureError("tmux", "list-sessions timed out"))
            names = None
        except CaptureError as e:
            self.errors.record_error("health", e)
            names = None

        per_session: Dict[str, bool] = {}
        for session in self.sessions:
            if names is not None:
                exists: Optional[bool] = session in names
            else:
                exists = await self._session_exists(session)
            per_session[session] = self._apply_session_tolerance(session, exists)
        return per_session

    async def _session_exists(self, session: str) -> Optional[bool]:
        """None when tmux cannot tell."""
        try:
            return await asyncio.wait_for(
                self.multiplexer.session_exists(session),
                timeout=self.config.probe_timeout
            )
        except (CaptureError, asyncio.TimeoutError) as e:
            logger.debug(f"Session lookup for {session} failed: {e}")
            return None

    def _apply_session_tolerance(self, session: str, exists: Optional[bool]) -> bool:
        if exists is not None:
            self._session_misses[session] = 0
            self._session_up[session] = exists
            return exists

        self._session_misses[session] += 1
        if self._session_misses[session] >= self.config.miss_tolerance:
            self._session_up[session] = False
        return self._session_up[session]

    async def probe_agent(self, target: Target) -> bool:
        """Is an agent process running in the target's pane?"""
        try:
            sample = await self.sampler.sample(target)
        except CaptureError as e:
            self.errors.record_error("health", e, target=target.name)
            return self._fallback(target)

        if any(marker in sample.content for marker in self.config.presence_markers):
            return True

        try:
            command = await asyncio.wait_for(
                self.multiplexer.pane_command(target.address),
                timeout=self.config.probe_timeout
            )
        except (CaptureError, asyncio.TimeoutError) as e:
            logger.debug(f"Pane command lookup for {target.name} failed: {e}")
            return False
        return any(proc in command for proc in self.config.agent_processes)

    def _fallback(self, target: Target) -> bool:
        """Use the activity monitor's view when the pane cannot be probed."""
        if self.monitor is None:
            return False
        status = self.monitor.snapshot().get(target.name)
        return status is not None and status.state != AgentState.OFFLINE

    def _apply_tolerance(self, name: str, detected: bool, session_up: bool) -> bool:
        if detected:
            self._misses[name] = 0
            self._up[name] = True
            return True

        self._misses[name] += 1
        if not session_up or self._misses[name] >= self.config.miss_tolerance:
            self._up[name] = False
        return self._up[name]

    async def check(self) -> HealthVerdict:
        """Recompute the health verdict and emit it if it changed."""
        per_session = await self.check_sessions()

        async def detect(target: Target) -> bool:
            if not per_session.get(target.session, False):
                return False
            return await self.probe_agent(target)

        detections = await asyncio.gather(*(detect(t) for t in self.targets))

        per_agent: Dict[str, bool] = {}
        for target, detected in zip(self.targets, detections):
            per_agent[target.name] = self._apply_tolerance(
                target.name, detected, per_session.get(target.session, False)
            )

        verdict = HealthVerdict(
            per_session_up=per_session,
            per_agent_up=per_agent,
            overall=evaluate_health(per_session, per_agent, self.config.min_healthy_fraction),
            observed_at=self.clock()
        )

        previous = self.latest
        self.latest = verdict
        if not verdict.same_as(previous):
            await self._emit(previous, verdict)
        return verdict

    async def _emit(self, previous: Optional[HealthVerdict], verdict: HealthVerdict) -> None:
        if verdict.overall != HealthLevel.HEALTHY:
            logger.warning(
                f"System health: {verdict.overall.value} "
                f"(sessions down: {verdict.down_sessions}, agents down: {verdict.down_agents})"
            )
        else:
            logger.info("System health: healthy")

        await self.event_bus.emit(Event(
            type=HEALTH_CHANGED,
            data={
                "verdict": verdict.to_dict(),
                "previous": previous.overall.value if previous else None,
            },
            source="health_aggregator"
        ))

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run_loop(), name="health")
            logger.info(f"Health aggregator started (interval: {self.config.interval}s)")

    async def stop(self, grace: float = 5.0) -> None:
        self.shutdown.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Health check did not finish in time, cancelled")
        except asyncio.CancelledError:
            pass
        logger.info("Health aggregator stopped")

    async def _run_loop(self) -> None:
        """Fixed-cadence health loop, independent of per-target backoff."""
        while not self.shutdown.is_set():
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors.record_error("health", e)
                logger.error(f"Health check failed: {e}")

            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                continue
