"""Error taxonomy and error tracking for the watch engine.

Failures inside the polling loops are never allowed to kill a loop. They are
converted into state or event data and recorded here so operators can see
what went wrong:
- CaptureError: a pane could not be read
- ActionError: a recovery action failed
- ConfigurationError: the engine cannot start
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from collections import deque

from loguru import logger


class AgentWatchError(Exception):
    """Base class for engine errors."""


class CaptureError(AgentWatchError):
    """A target's terminal text could not be captured."""

    def __init__(self, target: str, message: str = "capture failed"):
        super().__init__(f"{target}: {message}")
        self.target = target


class ActionError(AgentWatchError):
    """A corrective action against the multiplexer failed."""

    def __init__(self, action: str, target: str, message: str = "action failed"):
        super().__init__(f"{action} {target}: {message}")
        self.action = action
        self.target = target


class ConfigurationError(AgentWatchError):
    """Configuration is malformed; the engine must not start."""


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass
class ErrorEvent:
    """Represents an error event."""
    timestamp: datetime
    component: str
    error_type: str
    message: str
    severity: ErrorSeverity
    target: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'component': self.component,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'target': self.target,
            'context': self.context
        }


def classify_severity(error: Exception) -> ErrorSeverity:
    """Classify error severity."""
    if isinstance(error, ConfigurationError):
        return ErrorSeverity.CRITICAL
    elif isinstance(error, ActionError):
        return ErrorSeverity.HIGH
    elif isinstance(error, CaptureError):
        return ErrorSeverity.MEDIUM
    return ErrorSeverity.LOW


class ErrorAggregator:
    """Aggregates errors reported by the engine components."""

    def __init__(self, window_size: int = 100):
        """
        Initialize error aggregator.

        Args:
            window_size: Number of errors to keep
        """
        self.window_size = window_size
        self.errors: deque = deque(maxlen=window_size)
        self.error_counts: Dict[str, int] = {}
        self.consecutive_failures: Dict[str, int] = {}

    def record_error(
        self,
        component: str,
        error: Exception,
        target: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **context
    ) -> ErrorEvent:
        """Record an error raised inside a component."""
        event = ErrorEvent(
            timestamp=timestamp or datetime.now(),
            component=component,
            error_type=type(error).__name__,
            message=str(error),
            severity=classify_severity(error),
            target=target,
            context=context
        )
        self.errors.append(event)

        key = f"{component}:{event.error_type}"
        self.error_counts[key] = self.error_counts.get(key, 0) + 1

        scope = self._scope(component, target)
        self.consecutive_failures[scope] = self.consecutive_failures.get(scope, 0) + 1

        if event.severity == ErrorSeverity.CRITICAL:
            logger.critical(f"{component}: {error}")
        return event

    def record_success(self, component: str, target: Optional[str] = None) -> None:
        """Record a successful operation, resetting the failure streak."""
        scope = self._scope(component, target)
        if self.consecutive_failures.get(scope):
            logger.info(
                f"{scope} recovered after {self.consecutive_failures[scope]} failures"
            )
        self.consecutive_failures[scope] = 0

    def failures(self, component: str, target: Optional[str] = None) -> int:
        return self.consecutive_failures.get(self._scope(component, target), 0)

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary."""
        by_component: Dict[str, int] = {}
        by_severity = {'low': 0, 'medium': 0, 'high': 0, 'critical': 0}

        for error in self.errors:
            by_component[error.component] = by_component.get(error.component, 0) + 1
            by_severity[error.severity.name.lower()] += 1

        top_errors = sorted(
            self.error_counts.items(),
            key=lambda x: x[1],
            reverse=True
        )[:5]

        return {
            'total_errors': len(self.errors),
            'by_component': by_component,
            'by_severity': by_severity,
            'top_errors': [{'error': k, 'count': v} for k, v in top_errors],
            'failing': {k: v for k, v in self.consecutive_failures.items() if v}
        }

    @staticmethod
    def _scope(component: str, target: Optional[str]) -> str:
        return f"{component}/{target}" if target else component
