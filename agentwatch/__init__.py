"""AgentWatch - activity detection and recovery for terminal agents."""

__version__ = "0.1.0"
