"""Automatic recovery of missing sessions and agents.

Guards, checked in order before anything is touched:
1. Mutual exclusion - never two recovery runs at once
2. Cooldown - automatic runs are spaced at least ``cooldown`` seconds apart
3. Nothing down - no attempt is created

Every decision is emitted on the bus: ``recovery.attempted`` for a run,
``recovery.skipped`` for a guard.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

import ulid
from loguru import logger

from .bus import Event, EventBus, RECOVERY_ATTEMPTED, RECOVERY_SKIPPED, SYSTEM_RESET
from .config import RecoveryConfig
from .error_handling import ActionError, ErrorAggregator
from .models import (
    HealthLevel, HealthVerdict, RecoveryAction, RecoveryAttempt,
    RecoverySkipped, Target
)


class RecoveryOrchestrator:
    """Owns the recovery exclusion lock and the last-attempt timestamp."""

    def __init__(
        self,
        targets: Iterable[Target],
        multiplexer,
        event_bus: EventBus,
        config: Optional[RecoveryConfig] = None,
        session_panes: Optional[Dict[str, int]] = None,
        health=None,
        clock: Callable[[], datetime] = datetime.now,
        errors: Optional[ErrorAggregator] = None,
        shutdown: Optional[asyncio.Event] = None
    ):
        self.targets: List[Target] = list(targets)
        self.multiplexer = multiplexer
        self.event_bus = event_bus
        self.config = config or RecoveryConfig()
        self.health = health
        self.clock = clock
        self.errors = errors or ErrorAggregator()
        self.shutdown = shutdown or asyncio.Event()

        if session_panes is None:
            session_panes = {}
            for target in self.targets:
                session_panes[target.session] = session_panes.get(target.session, 0) + 1
        self.session_panes = session_panes

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.last_attempt_at: Optional[datetime] = None
        self.current: Optional[RecoveryAttempt] = None
        self.history: deque = deque(maxlen=20)

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def plan(self, verdict: HealthVerdict) -> Tuple[List[str], List[Target]]:
        """Sessions to create and agents to relaunch for a verdict."""
        sessions = verdict.down_sessions
        down_agents = set(verdict.down_agents)
        agents = [t for t in self.targets if t.name in down_agents]
        return sessions, agents

    async def attempt_recovery(
        self,
        verdict: HealthVerdict,
        manual: bool = False
    ) -> Union[RecoveryAttempt, RecoverySkipped]:
        """Run one recovery attempt for a verdict, unless a guard says no."""
        now = self.clock()

        if self._lock.locked():
            return await self._skip("in_progress", now, manual)

        if not manual and self.last_attempt_at is not None:
            elapsed = (now - self.last_attempt_at).total_seconds()
            if elapsed < self.config.cooldown:
                logger.info(f"Recovery attempted {elapsed:.0f}s ago, waiting for cooldown")
                return await self._skip("cooldown", now, manual)

        sessions, agents = self.plan(verdict)
        if not sessions and not agents:
            return await self._skip("nothing_to_recover", now, manual)

        async with self._lock:
            attempt = RecoveryAttempt(
                id=str(ulid.ULID()),
                started_at=now,
                trigger_verdict=verdict,
                manual=manual
            )
            self.last_attempt_at = now
            self.current = attempt
            logger.info(
                f"Starting {'manual' if manual else 'automatic'} recovery {attempt.id}: "
                f"sessions={sessions}, agents={[t.name for t in agents]}"
            )

            try:
                await self._execute(attempt, sessions, agents)
            finally:
                attempt.seal(self.clock())
                self.current = None
                self.history.append(attempt)
                logger.info(
                    f"Recovery {attempt.id} finished: {attempt.outcome.value} "
                    f"({len(attempt.actions_taken)} action(s))"
                )
                await self.event_bus.emit(Event(
                    type=RECOVERY_ATTEMPTED,
                    data={"attempt": attempt.to_dict()},
                    source="recovery_orchestrator"
                ))
        return attempt

    async def _execute(self, attempt: RecoveryAttempt, sessions: List[str], agents: List[Target]) -> None:
        created = []
        for session in sessions:
            panes = self.session_panes.get(session, 1)
            ok = await self._act(
                attempt, "create_session", session,
                lambda s=session, p=panes: self.multiplexer.create_session(s, p)
            )
            if ok:
                created.append(session)

        if created:
            await asyncio.sleep(self.config.session_settle)

        launched = 0
        for target in agents:
            if target.session in sessions and target.session not in created:
                logger.warning(f"Not launching {target.name}: session {target.session} could not be created")
                continue
            if launched:
                # Pace launches so agents do not all start at once
                await asyncio.sleep(self.config.launch_pacing)
            await self._act(
                attempt, "launch_agent", target.name,
                lambda t=target: self.multiplexer.launch_agent(t.address, t.launch_command)
            )
            launched += 1

        if attempt.actions_taken:
            await asyncio.sleep(self.config.settle)

    async def _act(
        self,
        attempt: RecoveryAttempt,
        kind: str,
        target: str,
        action: Callable[[], Awaitable[None]]
    ) -> bool:
        """Run one action with a timeout, recording it in the attempt."""
        record = RecoveryAction(kind=kind, target=target, at=self.clock())
        try:
            await asyncio.wait_for(action(), timeout=self.config.action_timeout)
            logger.info(f"{kind} {target}: ok")
        except asyncio.TimeoutError:
            error = ActionError(kind, target, f"timed out after {self.config.action_timeout}s")
            record.ok, record.error = False, str(error)
            self.errors.record_error("recovery", error, target=target)
            logger.error(str(error))
        except ActionError as e:
            record.ok, record.error = False, str(e)
            self.errors.record_error("recovery", e, target=target)
            logger.error(f"{kind} {target} failed: {e}")
        except Exception as e:
            error = ActionError(kind, target, f"{type(e).__name__}: {e}")
            record.ok, record.error = False, str(error)
            self.errors.record_error("recovery", error, target=target)
            logger.exception(f"{kind} {target} failed unexpectedly")
        attempt.actions_taken.append(record)
        return record.ok

    async def _skip(self, reason: str, now: datetime, manual: bool) -> RecoverySkipped:
        skipped = RecoverySkipped(reason=reason, at=now, manual=manual)
        logger.debug(f"Recovery skipped: {reason}")
        await self.event_bus.emit(Event(
            type=RECOVERY_SKIPPED,
            data={"skip": skipped.to_dict()},
            source="recovery_orchestrator"
        ))
        return skipped

    async def reset_agents(self) -> List[RecoveryAction]:
        """
        Interrupt every agent, leaving sessions in place.

        Used as a lightweight cleanup once work is done. Shares the recovery
        lock so it never interleaves with a recovery run.
        """
        if self._lock.locked():
            logger.warning("Recovery in progress, not resetting agents")
            return []

        actions: List[RecoveryAction] = []
        async with self._lock:
            for index, target in enumerate(self.targets):
                if index:
                    await asyncio.sleep(self.config.launch_pacing)
                record = RecoveryAction(kind="interrupt_agent", target=target.name, at=self.clock())
                try:
                    await asyncio.wait_for(
                        self.multiplexer.send_interrupt(target.address),
                        timeout=self.config.action_timeout
                    )
                except Exception as e:
                    record.ok, record.error = False, str(e) or type(e).__name__
                    self.errors.record_error("recovery", e, target=target.name)
                    logger.warning(f"Could not interrupt {target.name}: {e}")
                actions.append(record)

            await self.event_bus.emit(Event(
                type=SYSTEM_RESET,
                data={
                    "targets": [t.name for t in self.targets],
                    "actions": [a.to_dict() for a in actions],
                },
                source="recovery_orchestrator"
            ))
        logger.info(f"Interrupted {sum(a.ok for a in actions)}/{len(actions)} agent(s)")
        return actions

    def should_trigger(self, verdict: HealthVerdict) -> bool:
        threshold = HealthLevel(self.config.trigger)
        return verdict.overall.rank >= threshold.rank

    async def evaluate(self) -> Optional[Union[RecoveryAttempt, RecoverySkipped]]:
        """Attempt recovery if the latest health verdict calls for it."""
        if self.health is None or self.health.latest is None:
            return None
        verdict = self.health.latest
        if not self.should_trigger(verdict):
            return None
        logger.warning(
            f"Auto recovery triggered: {verdict.overall.value}, "
            f"{verdict.agents_up}/{len(verdict.per_agent_up)} agents up"
        )
        return await self.attempt_recovery(verdict)

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Automatic recovery disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._run_loop(), name="recovery")
            logger.info(f"Recovery orchestrator started (interval: {self.config.interval}s)")

    async def stop(self, grace: float = 5.0) -> None:
        self.shutdown.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Recovery run did not finish in time, cancelled")
        except asyncio.CancelledError:
            pass
        logger.info("Recovery orchestrator stopped")

    async def _run_loop(self) -> None:
        while not self.shutdown.is_set():
            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=self.config.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.evaluate()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors.record_error("recovery", e)
                logger.error(f"Recovery evaluation failed: {e}")

    def get_stats(self) -> Dict:
        return {
            "in_progress": self.in_progress,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "attempts": len(self.history),
            "last_outcome": self.history[-1].outcome.value if self.history else None,
        }
