"""Per-target activity monitoring with debounced status events.

State machine per target:

    offline -> idle -> working -> idle -> ...
    idle/working -> error -> idle (once error markers stop appearing)

Each target is polled by its own asyncio task. The polling interval doubles
after every unchanged (or failed) sample, up to ``max_interval``, and snaps
back to ``base_interval`` as soon as the content changes.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from .analyzer import ActivityAnalyzer, extract_new_content
from .bus import Event, EventBus, STATUS_CHANGED
from .config import MonitorConfig
from .error_handling import CaptureError, ErrorAggregator
from .models import ActivityKind, AgentState, AgentStatus, Target
from .sampler import TerminalSampler


Signature = Tuple[AgentState, Optional[str]]

IDLE_ACTIVITY = ActivityAnalyzer.describe(ActivityKind.IDLE)
OFFLINE_ACTIVITY = "Terminal unavailable"


def should_emit(last_emitted: Optional[Signature], status: AgentStatus) -> bool:
    """A status is broadcast only when (state, activity) actually changed."""
    return last_emitted != status.signature


def next_interval(current: float, changed: bool, base: float, cap: float) -> float:
    """Adaptive polling: reset on change, otherwise double up to the cap."""
    if changed:
        return base
    return min(max(current, base) * 2, cap)


@dataclass
class TargetState:
    """Bookkeeping for one target. Written only by that target's poll cycle."""
    target: Target
    status: AgentStatus
    last_emitted: Optional[Signature]
    interval: float
    last_content: Optional[str] = None
    last_success_at: Optional[datetime] = None


class ActivityMonitor:
    """
    Combines TerminalSampler and ActivityAnalyzer for every target.

    Emits ``status.changed`` events on the bus, debounced against the last
    emitted (state, activity) tuple of each target.
    """

    def __init__(
        self,
        targets: Iterable[Target],
        sampler: TerminalSampler,
        analyzer: ActivityAnalyzer,
        event_bus: EventBus,
        config: Optional[MonitorConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        errors: Optional[ErrorAggregator] = None,
        shutdown: Optional[asyncio.Event] = None
    ):
        self.sampler = sampler
        self.analyzer = analyzer
        self.event_bus = event_bus
        self.config = config or MonitorConfig()
        self.clock = clock
        self.errors = errors or ErrorAggregator()
        self.shutdown = shutdown or asyncio.Event()
        self.started_at = clock()

        self._states: Dict[str, TargetState] = {}
        for target in targets:
            initial = AgentStatus(target=target.name)
            self._states[target.name] = TargetState(
                target=target,
                status=initial,
                last_emitted=initial.signature,
                interval=self.config.base_interval
            )

        self._tasks: Dict[str, asyncio.Task] = {}
        self._durations: List[float] = []
        self.stats = {
            "total_checks": 0,
            "successful_checks": 0,
            "failed_checks": 0,
            "status_changes": 0,
        }

    @property
    def targets(self) -> List[Target]:
        return [s.target for s in self._states.values()]

    def get_status(self, name: str) -> AgentStatus:
        return self._states[name].status

    def snapshot(self) -> Dict[str, AgentStatus]:
        """Immutable view of every target's current status."""
        return {name: state.status for name, state in self._states.items()}

    def get_interval(self, name: str) -> float:
        return self._states[name].interval

    async def poll_once(self, name: str) -> Optional[AgentStatus]:
        """
        Run one poll cycle for a target.

        Returns the new status when a status.changed event was emitted,
        otherwise None.
        """
        state = self._states[name]
        started = time.perf_counter()
        self.stats["total_checks"] += 1

        try:
            sample = await self.sampler.sample(state.target)
        except CaptureError as e:
            now = self.clock()
            self.stats["failed_checks"] += 1
            self.errors.record_error("monitor", e, target=name, timestamp=now)
            new_status = self._on_capture_failure(state, now)
            changed = False
        else:
            now = sample.captured_at
            self.stats["successful_checks"] += 1
            self.errors.record_success("monitor", target=name)
            state.last_success_at = now
            new_status, changed = self._on_sample(state, sample.content, now)

        state.status = new_status
        state.interval = next_interval(
            state.interval, changed, self.config.base_interval, self.config.max_interval
        )
        self._record_duration(time.perf_counter() - started)

        if not should_emit(state.last_emitted, new_status):
            return None

        previous = state.last_emitted
        state.last_emitted = new_status.signature
        self.stats["status_changes"] += 1
        await self._emit_change(previous, new_status)
        return new_status

    def _on_capture_failure(self, state: TargetState, now: datetime) -> AgentStatus:
        """Keep the last known state until the idle timeout, then go offline."""
        status = state.status
        if status.state == AgentState.OFFLINE:
            return status

        reference = state.last_success_at or self.started_at
        silent_for = (now - reference).total_seconds()
        if silent_for <= self.config.idle_timeout:
            logger.debug(f"{state.target.name}: capture failed, keeping {status.state.value}")
            return status

        logger.warning(f"{state.target.name}: no successful capture for {silent_for:.0f}s, marking offline")
        return replace(
            status,
            state=AgentState.OFFLINE,
            current_activity=OFFLINE_ACTIVITY,
            working_on_file=None,
            executing_command=None
        )

    def _on_sample(self, state: TargetState, raw: str, now: datetime) -> Tuple[AgentStatus, bool]:
        status = state.status
        content = self._truncate(raw)

        if content == state.last_content:
            if status.state == AgentState.OFFLINE:
                # Reachable again but nothing new was printed
                logger.info(f"{state.target.name}: capture recovered, marking idle")
                return self._idle(status), True
            if status.state in (AgentState.WORKING, AgentState.ERROR) and status.last_activity_at:
                quiet_for = (now - status.last_activity_at).total_seconds()
                if quiet_for > self.config.idle_timeout:
                    logger.info(f"{state.target.name}: no output for {quiet_for:.0f}s, marking idle")
                    return self._idle(status), False
            return status, False

        fragment = extract_new_content(state.last_content, content, self.config.max_buffer_lines)
        state.last_content = content

        last_activity = status.last_activity_at
        if last_activity is None or now > last_activity:
            last_activity = now

        match = self.analyzer.analyze(fragment)
        if match is None or match.kind == ActivityKind.IDLE:
            new_status = self._idle(status)
        elif match.kind == ActivityKind.ERROR:
            new_status = replace(
                status,
                state=AgentState.ERROR,
                current_activity=match.description,
                working_on_file=match.extracted_file,
                executing_command=match.extracted_command
            )
        else:
            new_status = replace(
                status,
                state=AgentState.WORKING,
                current_activity=match.description,
                working_on_file=match.extracted_file,
                executing_command=match.extracted_command
            )
        return replace(new_status, last_activity_at=last_activity), True

    @staticmethod
    def _idle(status: AgentStatus) -> AgentStatus:
        return replace(
            status,
            state=AgentState.IDLE,
            current_activity=IDLE_ACTIVITY,
            working_on_file=None,
            executing_command=None
        )

    def _truncate(self, content: str) -> str:
        lines = content.split("\n")
        if len(lines) > self.config.max_buffer_lines:
            return "\n".join(lines[-self.config.max_buffer_lines:])
        return content

    async def _emit_change(self, previous: Optional[Signature], status: AgentStatus) -> None:
        previous_state = previous[0].value if previous else None
        logger.info(
            f"{status.target}: {previous_state} -> {status.state.value}"
            + (f" ({status.current_activity})" if status.current_activity else "")
        )
        await self.event_bus.emit(Event(
            type=STATUS_CHANGED,
            data={
                "target": status.target,
                "previous_state": previous_state,
                "new_state": status.state.value,
                "activity": status.current_activity,
                "status": status.to_dict(),
            },
            source="activity_monitor"
        ))

    def _record_duration(self, seconds: float) -> None:
        self._durations.append(seconds * 1000)
        if len(self._durations) > 100:
            self._durations = self._durations[-50:]

    async def start(self) -> None:
        """Start one polling task per target."""
        if self._tasks:
            logger.warning("Activity monitor already running")
            return
        for name in self._states:
            self._tasks[name] = asyncio.create_task(self._run_target(name), name=f"monitor:{name}")
        logger.info(f"Activity monitor started for {len(self._tasks)} target(s)")

    async def stop(self, grace: float = 5.0) -> None:
        """Stop all polling tasks, waiting at most ``grace`` seconds."""
        self.shutdown.set()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Activity monitor stopped")

    async def _run_target(self, name: str) -> None:
        """Polling loop for one target."""
        while not self.shutdown.is_set():
            try:
                await self.poll_once(name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors.record_error("monitor", e, target=name)
                logger.error(f"Monitoring cycle for {name} failed: {e}")

            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=self._states[name].interval)
            except asyncio.TimeoutError:
                continue

    def get_stats(self) -> Dict:
        average = sum(self._durations) / len(self._durations) if self._durations else 0.0
        return dict(
            self.stats,
            average_check_ms=round(average, 2),
            running=bool(self._tasks),
            intervals={name: s.interval for name, s in self._states.items()},
        )
