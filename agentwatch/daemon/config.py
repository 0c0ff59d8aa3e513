"""Configuration management for agentwatch."""

from pathlib import Path
from typing import Optional, Dict, Any, List, Literal
from collections import OrderedDict

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .error_handling import ConfigurationError
from .models import Target


class TargetConfig(BaseModel):
    name: str
    session: str
    pane: Optional[str] = None
    role: Literal["orchestrator", "worker"] = "worker"
    launch_command: str = "claude --dangerously-skip-permissions"
    required: bool = True

    @field_validator("name", "session")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    def to_target(self) -> Target:
        return Target(
            name=self.name,
            session=self.session,
            pane=self.pane,
            role=self.role,
            launch_command=self.launch_command,
            required=self.required,
        )


def default_targets() -> List[TargetConfig]:
    """President pane plus a four-pane multiagent session."""
    return [
        TargetConfig(name="president", session="president", role="orchestrator"),
        TargetConfig(name="boss1", session="multiagent", pane="0.0"),
        TargetConfig(name="worker1", session="multiagent", pane="0.1"),
        TargetConfig(name="worker2", session="multiagent", pane="0.2"),
        TargetConfig(name="worker3", session="multiagent", pane="0.3"),
    ]


class MonitorConfig(BaseModel):
    base_interval: float = 10.0
    max_interval: float = 60.0
    idle_timeout: float = 300.0
    sample_timeout: float = 5.0
    max_buffer_lines: int = 200

    @model_validator(mode="after")
    def validate_intervals(self) -> "MonitorConfig":
        if self.base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if self.max_interval < self.base_interval:
            raise ValueError("max_interval must be >= base_interval")
        return self


class HealthConfig(BaseModel):
    interval: float = 15.0
    min_healthy_fraction: float = 0.6
    miss_tolerance: int = 2
    probe_timeout: float = 5.0
    presence_markers: List[str] = Field(default_factory=lambda: [
        "Human:", "Assistant:", "Claude Code", "? for shortcuts",
        "Bypassing Permissions", "esc to interrupt", "IDE disconnected",
        "✻ Welcome to Claude",
    ])
    agent_processes: List[str] = Field(default_factory=lambda: ["claude", "node"])

    @field_validator("min_healthy_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("min_healthy_fraction must be between 0 and 1")
        return v

    @field_validator("miss_tolerance")
    @classmethod
    def validate_tolerance(cls, v: int) -> int:
        if v < 1:
            raise ValueError("miss_tolerance must be at least 1")
        return v


class RecoveryConfig(BaseModel):
    enabled: bool = True
    interval: float = 30.0
    cooldown: float = 300.0
    action_timeout: float = 10.0
    launch_pacing: float = 1.0
    session_settle: float = 2.0
    settle: float = 2.0
    trigger: Literal["degraded", "critical"] = "critical"


class CompletionConfig(BaseModel):
    enabled: bool = True
    interval: float = 45.0
    tail_lines: int = 50
    evidence_lines: int = 5
    min_task_duration: float = 120.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = Field(
        default_factory=lambda: Path.home() / ".local" / "share" / "agentwatch" / "logs" / "engine.log"
    )
    rotation: str = "1 day"
    retention: str = "7 days"


class Config(BaseModel):
    """Main configuration for the watch engine."""

    targets: List[TargetConfig] = Field(default_factory=default_targets)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    shutdown_grace: float = 5.0

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: List[TargetConfig]) -> List[TargetConfig]:
        if not v:
            raise ValueError("at least one target is required")
        names = [t.name for t in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate target names: {duplicates}")
        addresses = [t.to_target().address for t in v]
        duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
        if duplicates:
            raise ValueError(f"duplicate target addresses: {duplicates}")
        return v

    def get_targets(self) -> List[Target]:
        return [t.to_target() for t in self.targets]

    def sessions(self) -> Dict[str, int]:
        """Session name -> number of panes it must have, in declaration order."""
        panes: Dict[str, int] = OrderedDict()
        for target in self.get_targets():
            panes[target.session] = panes.get(target.session, 0) + 1
        return panes

    def required_sessions(self) -> List[str]:
        seen: List[str] = []
        for target in self.get_targets():
            if target.required and target.session not in seen:
                seen.append(target.session)
        return seen

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Config":
        """Validate raw settings; every problem becomes ConfigurationError."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration must be a mapping, got {type(data).__name__}")
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file, falling back to defaults."""
        if config_path is None:
            # Try default locations
            candidates = [
                Path("agentwatch.yaml"),
                Path.home() / ".config" / "agentwatch" / "config.yaml",
                Path("/etc/agentwatch/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.info("No config file found, using defaults")
                return cls()
        elif not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed YAML in {config_path}: {e}") from e

        return cls.from_dict(data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
