"""Shared fakes for engine tests."""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

import pytest

from agentwatch.daemon.bus import Event
from agentwatch.daemon.error_handling import ActionError, CaptureError
from agentwatch.daemon.models import Target


START = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeMultiplexer:
    """In-memory tmux stand-in."""

    def __init__(self):
        self.sessions: Set[str] = set()
        self.screens: Dict[str, str] = {}
        self.commands: Dict[str, str] = {}
        self.broken: Set[str] = set()
        self.failing_actions: Set[Tuple[str, str]] = set()
        self.action_delay = 0.0
        self.calls: List[tuple] = []

    async def list_sessions(self) -> Set[str]:
        return set(self.sessions)

    async def session_exists(self, name: str) -> bool:
        return name in self.sessions

    async def capture_text(self, address: str, lines: Optional[int] = None) -> str:
        if address in self.broken or address.split(":")[0] not in self.sessions:
            raise CaptureError(address, "can't find pane")
        # Like tmux, history requests still include the whole visible pane
        return self.screens.get(address, "")

    async def pane_command(self, address: str) -> str:
        if address.split(":")[0] not in self.sessions:
            raise CaptureError(address, "can't find pane")
        return self.commands.get(address, "bash")

    async def create_session(self, name: str, pane_count: int = 1) -> None:
        self.calls.append(("create_session", name, pane_count))
        await self._act("create_session", name)
        self.sessions.add(name)

    async def launch_agent(self, address: str, command: str) -> None:
        self.calls.append(("launch_agent", address, command))
        await self._act("launch_agent", address)
        self.commands[address] = "claude"

    async def send_interrupt(self, address: str) -> None:
        self.calls.append(("interrupt_agent", address))
        await self._act("interrupt_agent", address)

    async def _act(self, action: str, target: str) -> None:
        if self.action_delay:
            await asyncio.sleep(self.action_delay)
        if (action, target) in self.failing_actions:
            raise ActionError(action, target, "simulated failure")

    def start_agent(self, address: str, screen: str = "Human: ") -> None:
        self.sessions.add(address.split(":")[0])
        self.screens[address] = screen
        self.commands[address] = "claude"

    def kill_agent(self, address: str) -> None:
        self.screens[address] = "$ "
        self.commands[address] = "bash"


class RecordingBus:
    """Event bus stand-in that keeps every emitted event."""

    def __init__(self):
        self.events: List[Event] = []

    async def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.type == event_type]


DEFAULT_TARGETS = [
    Target(name="president", session="president", role="orchestrator"),
    Target(name="boss1", session="multiagent", pane="0.0"),
    Target(name="worker1", session="multiagent", pane="0.1"),
    Target(name="worker2", session="multiagent", pane="0.2"),
    Target(name="worker3", session="multiagent", pane="0.3"),
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mux():
    return FakeMultiplexer()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def targets():
    return list(DEFAULT_TARGETS)


@pytest.fixture
def running_mux(targets):
    """All sessions up and every agent running."""
    fake = FakeMultiplexer()
    for target in targets:
        fake.start_agent(target.address)
    return fake
