"""Task completion detection from agent terminal output."""

import asyncio
import inspect
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from .bus import Event, EventBus, COMPLETION_DETECTED, TASK_INFO_DETECTED
from .completion_patterns import extract_task_info, match_completion
from .config import CompletionConfig
from .error_handling import CaptureError, ErrorAggregator
from .models import CompletionSignal, Target, Task, TaskInfoUpdate, TaskStatus
from .sampler import TerminalSampler


# Returns the current tasks, either directly or as an awaitable
TaskSource = Callable[[], Any]


def new_lines(previous: Optional[str], current: str) -> str:
    """
    Lines of ``current`` not already present at the end of ``previous``.

    Tails are sliding windows, so the overlap is found by aligning the end
    of the previous tail with the start of the current one.
    """
    if not previous:
        return current
    prev = previous.split("\n")
    cur = current.split("\n")
    for k in range(min(len(prev), len(cur)), 0, -1):
        if prev[-k:] == cur[:k]:
            return "\n".join(cur[k:])
    return current


class CompletionDetector:
    """
    Watches the tail of every target that has an in-progress task and emits
    ``completion.detected`` once per task when completion phrasing appears.

    Orchestrator targets only count official declarations, are checked
    first, and are also scanned for task metadata. Task state itself is
    never modified here; consumers of the event decide what to do.
    """

    # Recent task-info announcements remembered for deduplication
    ANNOUNCED_HISTORY = 100

    def __init__(
        self,
        targets: Iterable[Target],
        sampler: TerminalSampler,
        event_bus: EventBus,
        task_source: Optional[TaskSource] = None,
        config: Optional[CompletionConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        errors: Optional[ErrorAggregator] = None,
        shutdown: Optional[asyncio.Event] = None
    ):
        # Orchestrators first
        self.targets: List[Target] = sorted(targets, key=lambda t: not t.is_orchestrator)
        self.sampler = sampler
        self.event_bus = event_bus
        self.task_source = task_source
        self.config = config or CompletionConfig()
        self.clock = clock
        self.errors = errors or ErrorAggregator()
        self.shutdown = shutdown or asyncio.Event()

        self._last_tail: Dict[str, str] = {}
        self._signalled: Set[str] = set()
        self._announced: Deque[Tuple[str, Optional[str], Optional[str]]] = deque(maxlen=self.ANNOUNCED_HISTORY)
        self._task: Optional[asyncio.Task] = None
        self.stats = {"checks": 0, "completions": 0, "too_early": 0, "task_info": 0}

    async def _in_progress(self) -> List[Task]:
        if self.task_source is None:
            return []
        result = self.task_source()
        if inspect.isawaitable(result):
            result = await result
        return [t for t in result if t.status == TaskStatus.IN_PROGRESS]

    async def check_once(self) -> List[CompletionSignal]:
        """One pass over all targets. Returns the signals emitted."""
        self.stats["checks"] += 1
        tasks = await self._in_progress()
        # Forget tasks that are no longer running
        self._signalled &= {t.id for t in tasks}

        signals: List[CompletionSignal] = []
        for target in self.targets:
            task = next((t for t in tasks if t.assigned_to == target.name), None)
            if task is None and not target.is_orchestrator:
                continue

            try:
                tail = await self.sampler.tail(target, self.config.tail_lines)
            except CaptureError as e:
                self.errors.record_error("completion", e, target=target.name)
                continue

            previous = self._last_tail.get(target.name)
            if tail == previous:
                continue
            self._last_tail[target.name] = tail
            fresh = new_lines(previous, tail)
            if not fresh.strip():
                continue

            if target.is_orchestrator:
                await self._scan_task_info(target, fresh)

            if task is None:
                continue
            signal = await self._check_task(target, task, fresh)
            if signal is None:
                continue
            signals.append(signal)
            if signal.official:
                # An official declaration ends the round
                break
        return signals

    async def _check_task(self, target: Target, task: Task, fresh: str) -> Optional[CompletionSignal]:
        if task.id in self._signalled:
            return None

        pattern = match_completion(fresh, official_only=target.is_orchestrator)
        if pattern is None:
            return None

        now = self.clock()
        if task.started_at is not None:
            elapsed = (now - task.started_at).total_seconds()
            if elapsed < self.config.min_task_duration:
                self.stats["too_early"] += 1
                logger.info(
                    f"Completion phrasing from {target.name} ignored: task {task.id} "
                    f"running for {elapsed:.0f}s < {self.config.min_task_duration:.0f}s"
                )
                return None

        lines = [line for line in fresh.split("\n") if line.strip()]
        evidence = lines[-self.config.evidence_lines:]
        signal = CompletionSignal(
            task_id=task.id,
            target=target.name,
            matched_text="\n".join(evidence),
            detected_at=now,
            pattern=pattern.source,
            official=pattern.official
        )
        self._signalled.add(task.id)
        self.stats["completions"] += 1
        logger.info(f"Task {task.id} completion detected in {target.name}: {evidence[-1]}")

        await self.event_bus.emit(Event(
            type=COMPLETION_DETECTED,
            data={"signal": signal.to_dict()},
            source="completion_detector"
        ))
        return signal

    async def _scan_task_info(self, target: Target, fresh: str) -> Optional[TaskInfoUpdate]:
        info = extract_task_info(fresh)
        if info is None:
            return None
        key = (info["task_id"], info["project_name"], info["assigned_to"])
        if key in self._announced:
            return None
        self._announced.append(key)

        update = TaskInfoUpdate(target=target.name, detected_at=self.clock(), **info)
        self.stats["task_info"] += 1
        logger.info(
            f"Task info from {target.name}: {update.task_id} "
            f"(project: {update.project_name}, assigned: {update.assigned_to})"
        )
        await self.event_bus.emit(Event(
            type=TASK_INFO_DETECTED,
            data={"update": update.to_dict()},
            source="completion_detector"
        ))
        return update

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Completion detection disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._run_loop(), name="completion")
            logger.info(f"Completion detector started (interval: {self.config.interval}s)")

    async def stop(self, grace: float = 5.0) -> None:
        self.shutdown.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Completion check did not finish in time, cancelled")
        except asyncio.CancelledError:
            pass
        logger.info("Completion detector stopped")

    async def _run_loop(self) -> None:
        while not self.shutdown.is_set():
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors.record_error("completion", e)
                logger.error(f"Completion check failed: {e}")

            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                continue

    def get_stats(self) -> Dict:
        return dict(self.stats, running=self._task is not None)
