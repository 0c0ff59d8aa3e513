"""Main engine process for AgentWatch."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

import psutil
from loguru import logger

from .. import __version__
from .analyzer import ActivityAnalyzer
from .bus import EventBus, COMPLETION_DETECTED, HEALTH_CHANGED, RECOVERY_ATTEMPTED, STATUS_CHANGED
from .completion import CompletionDetector, TaskSource
from .config import Config, LoggingConfig
from .error_handling import ConfigurationError, ErrorAggregator
from .health import HealthAggregator
from .monitor import ActivityMonitor
from .recovery import RecoveryOrchestrator
from .sampler import TerminalSampler
from .tmux import TmuxMultiplexer


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure loguru sinks: stderr plus a rotating file."""
    config = config or LoggingConfig()
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=config.level
    )

    if config.file:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            config.file,
            rotation=config.rotation,
            retention=config.retention,
            level="DEBUG"
        )


class AgentWatchEngine:
    """Wires sampling, monitoring, health, recovery and completion together."""

    def __init__(
        self,
        config: Config,
        multiplexer=None,
        clock: Callable[[], datetime] = datetime.now,
        task_source: Optional[TaskSource] = None
    ):
        self.config = config
        self.clock = clock
        self.start_time = clock()
        self.shutdown = asyncio.Event()
        self.errors = ErrorAggregator()

        targets = config.get_targets()
        self.multiplexer = multiplexer or TmuxMultiplexer(command_timeout=config.monitor.sample_timeout)
        self.event_bus = EventBus()
        self.sampler = TerminalSampler(self.multiplexer, config.monitor.sample_timeout, clock=clock)
        self.analyzer = ActivityAnalyzer()

        self.monitor = ActivityMonitor(
            targets, self.sampler, self.analyzer, self.event_bus,
            config=config.monitor, clock=clock, errors=self.errors, shutdown=self.shutdown
        )
        self.health = HealthAggregator(
            targets, self.multiplexer, self.sampler, self.event_bus,
            config=config.health, monitor=self.monitor, clock=clock,
            errors=self.errors, shutdown=self.shutdown
        )
        self.recovery = RecoveryOrchestrator(
            [t for t in targets if t.required], self.multiplexer, self.event_bus,
            config=config.recovery, session_panes=config.sessions(), health=self.health,
            clock=clock, errors=self.errors, shutdown=self.shutdown
        )
        self.completion = CompletionDetector(
            targets, self.sampler, self.event_bus, task_source=task_source,
            config=config.completion, clock=clock, errors=self.errors, shutdown=self.shutdown
        )

        self.stats = {
            "status_changes": 0,
            "health_changes": 0,
            "recovery_attempts": 0,
            "completions": 0,
        }
        self._running = False

    async def start(self) -> None:
        """Start all engine services."""
        logger.info("Starting AgentWatch engine...")

        await self.event_bus.start()
        self._running = True

        # Subscribe to events for stats
        self.event_bus.subscribe(STATUS_CHANGED, self._on_status)
        self.event_bus.subscribe(HEALTH_CHANGED, self._on_health)
        self.event_bus.subscribe(RECOVERY_ATTEMPTED, self._on_recovery)
        self.event_bus.subscribe(COMPLETION_DETECTED, self._on_completion)

        await self.monitor.start()
        await self.health.start()
        await self.recovery.start()
        await self.completion.start()

        logger.info(f"AgentWatch engine started with {len(self.monitor.targets)} target(s)")

    async def stop(self) -> None:
        """Stop all engine services within the shutdown grace period."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping AgentWatch engine...")

        self.shutdown.set()
        grace = self.config.shutdown_grace
        await asyncio.gather(
            self.monitor.stop(grace),
            self.health.stop(grace),
            self.recovery.stop(grace),
            self.completion.stop(grace),
        )
        await self.event_bus.stop()

        logger.info("AgentWatch engine stopped")

    async def wait_closed(self) -> None:
        await self.shutdown.wait()

    async def _on_status(self, event) -> None:
        self.stats["status_changes"] += 1

    async def _on_health(self, event) -> None:
        self.stats["health_changes"] += 1

    async def _on_recovery(self, event) -> None:
        self.stats["recovery_attempts"] += 1

    async def _on_completion(self, event) -> None:
        self.stats["completions"] += 1

    def get_status(self) -> Dict:
        """Get engine status and statistics."""
        process = psutil.Process()
        uptime = (self.clock() - self.start_time).total_seconds()
        health = self.health.latest

        return {
            "status": "running" if self._running else "stopped",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "health": health.to_dict() if health else None,
            "agents": {name: s.to_dict() for name, s in self.monitor.snapshot().items()},
            "stats": dict(
                self.stats,
                memory_mb=process.memory_info().rss / 1024 / 1024,
                cpu_percent=process.cpu_percent()
            ),
            "monitor": self.monitor.get_stats(),
            "recovery": self.recovery.get_stats(),
            "completion": self.completion.get_stats(),
            "bus": self.event_bus.get_stats(),
            "errors": self.errors.get_error_summary(),
        }


async def main(config_path: Optional[str] = None) -> int:
    """Main entry point for the engine."""
    setup_logging()

    try:
        config = Config.load(Path(config_path) if config_path else None)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(config.logging)
    engine = AgentWatchEngine(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, engine.shutdown.set)

    try:
        await engine.start()
        await engine.wait_closed()
        logger.info("Shutdown requested")
    except Exception as e:
        logger.exception(f"Engine error: {e}")
        return 1
    finally:
        await engine.stop()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
