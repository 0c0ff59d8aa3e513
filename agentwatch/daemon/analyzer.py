"""Turns captured terminal text into structured activity signals."""

import hashlib
import re
from collections import OrderedDict
from typing import Dict, Optional

from loguru import logger

from .models import ActivityKind, ActivityMatch
from .patterns import DEFAULT_CATALOG, PatternCatalog


ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")

_FILE_EXT = r"(?:tsx?|jsx?|py|go|java|cpp|c|rs|php|rb|swift|kt|html|css|json|ya?ml|xml|md|txt|toml|sh)"

FILE_PATTERNS = (
    re.compile(r"(?:Creating|Writing to|Editing|Modifying|Updating|Reading|Deleting)\s+"
               r"(?:file|script|component|module):\s*([^\s]+)", re.IGNORECASE),
    re.compile(r"(?:Write|Edit|MultiEdit|Read|fsWrite|strReplace|fsAppend|readFile|deleteFile)"
               r"\(\s*[\"']?([^\s\"')]+\." + _FILE_EXT + r")\b", re.IGNORECASE),
    re.compile(r"(?:touch|cat|vim|nano|code|edit)\s+([\w\-./]+)"),
    re.compile(r"(?:cp|mv|rm|chmod|chown)\s+(?:-\w+\s+)*(?:[^\s]+\s+)?([\w\-./]+)"),
    re.compile(r"(?:^|\s)([\w\-./]+\." + _FILE_EXT + r")(?=[\s:,)]|$)", re.IGNORECASE | re.MULTILINE),
)

COMMAND_PATTERNS = (
    re.compile(r"^\s*[$#]\s+([^\n\r]+)", re.MULTILINE),
    re.compile(r"(?:Running|Executing|Starting):\s*([^\n\r]+)", re.IGNORECASE),
    re.compile(r"\bBash\(([^)\n\r]+)\)"),
    re.compile(r"((?:npm|npx|yarn|pnpm|pip3?|poetry|uv|cargo|go|mvn|gradle|composer)\s+[^\n\r]+)"),
    re.compile(r"((?:git|docker|docker-compose|kubectl|helm|terraform|ansible-playbook)\s+[^\n\r]+)"),
    re.compile(r"((?:python3?|node|make|pytest)\s+[^\n\r]+)"),
)

ERROR_PATTERNS = (
    re.compile(r"\b(?:Error|Exception|Failed|Failure)(?::\s*\w[\w ]*|\s+to\s+\w+)", re.IGNORECASE),
    re.compile(r"\b(?:SyntaxError|TypeError|ReferenceError|RuntimeError|CompileError|ImportError"
               r"|ModuleNotFoundError|AttributeError)\b"),
    re.compile(r"\b(?:ENOENT|EACCES|EPERM|ECONNREFUSED|ETIMEDOUT|EADDRINUSE|EMFILE)\b"),
    re.compile(r"\b(?:404|500|502|503|504)\s+(?:Error|Not Found|Internal Server Error|Bad Gateway"
               r"|Service Unavailable|Gateway Timeout)"),
    re.compile(r"\b(?:Fatal|Panic|Segmentation fault|Core dumped)\b", re.IGNORECASE),
    re.compile(r"\b(?:Build failed|Compilation error|Link error)\b", re.IGNORECASE),
    re.compile(r"\b(?:Connection refused|Connection timeout|DNS resolution failed|SSL error)\b", re.IGNORECASE),
    re.compile(r"\b(?:Permission denied|File not found|No such file or directory|Disk full)\b", re.IGNORECASE),
    re.compile(r"\b(?:command not found|Terminated unexpectedly)\b", re.IGNORECASE),
)

MAX_COMMAND_DESCRIPTION = 50


def clean_output(text: str) -> str:
    """Strip ANSI escapes and carriage returns from captured text."""
    if not text:
        return ""
    return ANSI_ESCAPE.sub("", text).replace("\r", "")


def extract_new_content(previous: Optional[str], current: str, max_lines: int = 200) -> str:
    """
    Return the part of ``current`` worth analyzing.

    When the buffer grew by appending, only the suffix is new. When it was
    redrawn or scrolled, fall back to its last ``max_lines`` lines.
    """
    if previous and len(current) > len(previous) and current.startswith(previous):
        suffix = current[len(previous):]
        if suffix.strip():
            return suffix
    lines = current.split("\n")
    return "\n".join(lines[-max_lines:])


class ActivityAnalyzer:
    """
    Matches captured text against a PatternCatalog and extracts details.

    Results are cached per content hash so repeated identical screens do not
    rescan the catalog.
    """

    def __init__(self, catalog: Optional[PatternCatalog] = None, cache_size: int = 256):
        self.catalog = catalog or DEFAULT_CATALOG
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, Optional[ActivityMatch]]" = OrderedDict()
        self._max_priority = max((e.priority for e in self.catalog.entries), default=1)
        self.stats = {"analyses": 0, "cache_hits": 0, "cache_misses": 0}

    def analyze(self, text: str) -> Optional[ActivityMatch]:
        """Classify text. Returns None when no pattern matches."""
        self.stats["analyses"] += 1
        cleaned = clean_output(text).strip()
        if not cleaned:
            return None

        key = hashlib.sha1(cleaned.encode("utf-8", "replace")).hexdigest()
        if key in self._cache:
            self.stats["cache_hits"] += 1
            self._cache.move_to_end(key)
            return self._cache[key]

        self.stats["cache_misses"] += 1
        result = self._analyze(cleaned)

        self._cache[key] = result
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return result

    def _analyze(self, cleaned: str) -> Optional[ActivityMatch]:
        matched = self.catalog.find_best_match(cleaned)
        if matched is None:
            return None

        file_name = self.extract_file(cleaned)
        command = self.extract_command(cleaned)
        result = ActivityMatch(
            kind=matched.kind,
            priority=matched.priority,
            description=self.describe(matched.kind, file_name, command),
            extracted_file=file_name,
            extracted_command=command,
            confidence=self.confidence(matched.priority, file_name, command)
        )
        logger.debug(
            f"Classified output as {result.kind.value} "
            f"(priority {result.priority}, file={file_name}, command={command})"
        )
        return result

    def extract_file(self, text: str) -> Optional[str]:
        """Extract the file the agent is working on, if any."""
        for pattern in FILE_PATTERNS:
            match = pattern.search(text)
            if match:
                name = match.group(1).strip().rstrip(".,;:")
                if name and not name.startswith("-"):
                    return name
        return None

    def extract_command(self, text: str) -> Optional[str]:
        """Extract the command being executed, if any."""
        for pattern in COMMAND_PATTERNS:
            match = pattern.search(text)
            if match:
                command = match.group(1).strip()
                if command:
                    return command
        return None

    def has_error(self, text: str) -> bool:
        """Broad check for error vocabulary, regardless of priority."""
        cleaned = clean_output(text)
        return any(p.search(cleaned) for p in ERROR_PATTERNS)

    def confidence(self, priority: int, file_name: Optional[str], command: Optional[str]) -> float:
        score = priority / self._max_priority
        if file_name:
            score += 0.1
        if command:
            score += 0.1
        return round(min(score, 1.0), 2)

    @staticmethod
    def describe(kind: ActivityKind, file_name: Optional[str] = None, command: Optional[str] = None) -> str:
        """Human-readable description of an activity."""
        if kind == ActivityKind.CODING:
            return f"Coding: Working on {file_name}" if file_name else "Coding: Writing or editing code"
        if kind == ActivityKind.FILE_OPERATION:
            return f"File operation: Working with {file_name}" if file_name else "File operation: Managing files"
        if kind == ActivityKind.COMMAND:
            if command:
                if len(command) > MAX_COMMAND_DESCRIPTION:
                    command = command[:MAX_COMMAND_DESCRIPTION - 3] + "..."
                return f"Executing: {command}"
            return "Command execution: Running commands"
        if kind == ActivityKind.THINKING:
            return "Thinking: Analyzing and planning"
        if kind == ActivityKind.ERROR:
            return "Error detected in terminal output"
        return "Idle: Waiting for input"

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats, cached=len(self._cache))
