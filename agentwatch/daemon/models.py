"""Data models for the watch engine."""

from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional, Tuple
from datetime import datetime
from enum import Enum


class ActivityKind(Enum):
    """Classification of a sample's content."""
    CODING = "coding"
    FILE_OPERATION = "file_operation"
    COMMAND = "command"
    THINKING = "thinking"
    ERROR = "error"
    IDLE = "idle"


class AgentState(Enum):
    """Observable state of one agent."""
    OFFLINE = "offline"
    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"


class HealthLevel(Enum):
    """Overall system health, ordered best to worst."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _HEALTH_RANK[self]


_HEALTH_RANK = {HealthLevel.HEALTHY: 0, HealthLevel.DEGRADED: 1, HealthLevel.CRITICAL: 2}


class RecoveryOutcome(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Target:
    """One observable pane running an agent or the orchestrator."""
    name: str
    session: str
    pane: Optional[str] = None
    role: str = "worker"
    launch_command: str = "claude --dangerously-skip-permissions"
    required: bool = True

    @property
    def address(self) -> str:
        """tmux target address, e.g. ``multiagent:0.1``."""
        if self.pane is None:
            return self.session
        return f"{self.session}:{self.pane}"

    @property
    def is_orchestrator(self) -> bool:
        return self.role == "orchestrator"


@dataclass(frozen=True)
class Sample:
    """A captured snapshot of a target's visible text."""
    target: str
    content: str
    captured_at: datetime


@dataclass(frozen=True)
class ActivityMatch:
    """Structured signal derived from one sample."""
    kind: ActivityKind
    priority: int
    description: str
    extracted_file: Optional[str] = None
    extracted_command: Optional[str] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class AgentStatus:
    """Current status of one target. Replaced wholesale, never mutated."""
    target: str
    state: AgentState = AgentState.OFFLINE
    current_activity: Optional[str] = None
    working_on_file: Optional[str] = None
    executing_command: Optional[str] = None
    last_activity_at: Optional[datetime] = None

    @property
    def signature(self) -> Tuple[AgentState, Optional[str]]:
        """The tuple compared when deciding whether to broadcast."""
        return (self.state, self.current_activity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "state": self.state.value,
            "current_activity": self.current_activity,
            "working_on_file": self.working_on_file,
            "executing_command": self.executing_command,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


@dataclass(frozen=True)
class HealthVerdict:
    """System health, recomputed wholesale on each check."""
    per_session_up: Dict[str, bool]
    per_agent_up: Dict[str, bool]
    overall: HealthLevel
    observed_at: datetime

    @property
    def down_sessions(self) -> List[str]:
        return [name for name, up in self.per_session_up.items() if not up]

    @property
    def down_agents(self) -> List[str]:
        return [name for name, up in self.per_agent_up.items() if not up]

    @property
    def agents_up(self) -> int:
        return sum(1 for up in self.per_agent_up.values() if up)

    def same_as(self, other: Optional["HealthVerdict"]) -> bool:
        """Compare content, ignoring when it was observed."""
        if other is None:
            return False
        return (
            self.overall == other.overall
            and self.per_session_up == other.per_session_up
            and self.per_agent_up == other.per_agent_up
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "per_session_up": dict(self.per_session_up),
            "per_agent_up": dict(self.per_agent_up),
            "overall": self.overall.value,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass
class RecoveryAction:
    """Descriptor of one corrective action and how it went."""
    kind: str  # create_session|launch_agent|interrupt_agent
    target: str
    at: datetime
    ok: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        return data


@dataclass
class RecoveryAttempt:
    """One recovery run; sealed once ``outcome`` is set."""
    id: str
    started_at: datetime
    trigger_verdict: HealthVerdict
    manual: bool = False
    actions_taken: List[RecoveryAction] = field(default_factory=list)
    outcome: Optional[RecoveryOutcome] = None
    finished_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.outcome is None

    def seal(self, finished_at: datetime) -> None:
        failed = [a for a in self.actions_taken if not a.ok]
        if not failed:
            self.outcome = RecoveryOutcome.SUCCESS
        elif len(failed) < len(self.actions_taken):
            self.outcome = RecoveryOutcome.PARTIAL
        else:
            self.outcome = RecoveryOutcome.FAILED
        self.finished_at = finished_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat(),
            "trigger_verdict": self.trigger_verdict.to_dict(),
            "manual": self.manual,
            "actions_taken": [a.to_dict() for a in self.actions_taken],
            "outcome": self.outcome.value if self.outcome else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class RecoverySkipped:
    """Record of a guard that prevented a recovery attempt."""
    reason: str  # in_progress|cooldown|nothing_to_recover
    at: datetime
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "at": self.at.isoformat(), "manual": self.manual}


@dataclass
class Task:
    """Task as seen by the completion detector. Owned elsewhere."""
    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: Optional[str] = None
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class CompletionSignal:
    """Emitted once per detected task completion."""
    task_id: str
    target: str
    matched_text: str
    detected_at: datetime
    pattern: str = ""
    official: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["detected_at"] = self.detected_at.isoformat()
        return data


@dataclass(frozen=True)
class TaskInfoUpdate:
    """Task metadata announced by the orchestrator in its own output."""
    task_id: str
    target: str
    detected_at: datetime
    project_name: Optional[str] = None
    assigned_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["detected_at"] = self.detected_at.isoformat()
        return data
