"""Prioritized activity patterns for classifying terminal text.

Each entry pairs a compiled regex with an activity kind and a priority.
Matching always scans the whole catalog and keeps the highest priority hit,
so declaration order only matters for ties.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from .models import ActivityKind


@dataclass(frozen=True)
class PatternEntry:
    """One classification rule."""
    kind: ActivityKind
    priority: int
    matcher: Pattern

    def matches(self, text: str) -> bool:
        return self.matcher.search(text) is not None


def entry(kind: ActivityKind, priority: int, regex: str, flags: int = re.IGNORECASE) -> PatternEntry:
    """Build a PatternEntry from a regex source."""
    return PatternEntry(kind=kind, priority=priority, matcher=re.compile(regex, flags))


class PatternCatalog:
    """Immutable, ordered set of activity patterns."""

    def __init__(self, entries: Iterable[PatternEntry]):
        self._entries: Tuple[PatternEntry, ...] = tuple(entries)

    @property
    def entries(self) -> Tuple[PatternEntry, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def find_best_match(self, text: str) -> Optional[PatternEntry]:
        """
        Return the highest-priority entry matching text.

        Ties are broken by declaration order (first declared wins).
        """
        if not text:
            return None

        best: Optional[PatternEntry] = None
        for candidate in self._entries:
            if best is not None and candidate.priority <= best.priority:
                continue
            if candidate.matches(text):
                best = candidate
        return best

    def find_all_matches(self, text: str) -> List[PatternEntry]:
        """All matching entries, highest priority first."""
        hits = [e for e in self._entries if e.matches(text)]
        return sorted(hits, key=lambda e: e.priority, reverse=True)

    def get_by_kind(self, kind: ActivityKind) -> List[PatternEntry]:
        """Entries of one kind, highest priority first."""
        return sorted(
            (e for e in self._entries if e.kind == kind),
            key=lambda e: e.priority,
            reverse=True
        )

    def get_stats(self) -> Dict[str, int]:
        """Number of entries per activity kind."""
        stats = {kind.value: 0 for kind in ActivityKind}
        for e in self._entries:
            stats[e.kind.value] += 1
        return stats


_SOURCE_EXT = r"(?:tsx?|jsx?|py|go|java|cpp|c|rs|php|rb|swift|kt)"

DEFAULT_PATTERNS: Tuple[PatternEntry, ...] = (
    # Errors outrank everything so failures surface immediately
    entry(ActivityKind.ERROR, 16, r"\b(?:Error|Exception|Failed|Failure)(?::\s*\w[\w ]*|\s+to\s+\w+)"),
    entry(ActivityKind.ERROR, 15, r"\b(?:SyntaxError|TypeError|ReferenceError|RuntimeError|CompileError"
                                  r"|ImportError|ModuleNotFoundError|AttributeError|KeyError|ValueError)\b"),
    entry(ActivityKind.ERROR, 15, r"Traceback \(most recent call last\)", 0),
    entry(ActivityKind.ERROR, 14, r"\b(?:ENOENT|EACCES|EPERM|ECONNREFUSED|ETIMEDOUT|EADDRINUSE)\b", 0),
    entry(ActivityKind.ERROR, 14, r"\b(?:Permission denied|command not found|Segmentation fault|core dumped)\b"),

    # Coding
    entry(ActivityKind.CODING, 15, r"\b(?:Creating|Writing to|Editing|Modifying|Updating)\s+"
                                   r"(?:file|script|component|module):\s*[\w\-./]+"),
    entry(ActivityKind.CODING, 14, r"\b(?:Write|Edit|MultiEdit|fsWrite|strReplace|fsAppend)\b.*?\." + _SOURCE_EXT + r"\b"),
    entry(ActivityKind.CODING, 13, r"```(?:typescript|javascript|python|go|java|cpp|rust|php|ruby|swift"
                                   r"|kotlin|html|css|sql|json|yaml|xml|tsx|jsx|ts|js|py|sh|bash)\b"),
    entry(ActivityKind.CODING, 12, r"```[\w]*\n.*?```", re.DOTALL),
    entry(ActivityKind.CODING, 11, r"\b(?:function|def|class|interface|enum|struct|impl|trait)\s+\w+\s*[\(\{:<]"),
    entry(ActivityKind.CODING, 10, r"^\s*(?:import\s+[\w.{]|from\s+[\w.]+\s+import\b|(?:const|let|var)\s+\w+\s*="
                                   r"|#include\s*[<\"])", re.MULTILINE),
    entry(ActivityKind.CODING, 10, r"\b(?:export|public|private|protected|static|async)\s+(?:default\s+)?"
                                   r"(?:function|class|const|def|void|interface)\b"),

    # Thinking
    entry(ActivityKind.THINKING, 12, r"\b(?:Let me|I'll|I need to|I should|I will)\s+"
                                     r"(?:analyze|check|review|examine|investigate|look|think|plan)"),
    entry(ActivityKind.THINKING, 11, r"^\s*(?:Analyzing|Checking|Reviewing|Examining|Investigating|Looking at)\b",
          re.IGNORECASE | re.MULTILINE),
    entry(ActivityKind.THINKING, 10, r"\b(?:First|Next|Then|Now|Finally),?\s+(?:I'll|let me|we need to)"),
    entry(ActivityKind.THINKING, 9, r"\b(?:Understanding|Considering|Planning|Designing|Thinking|Pondering)\b"),

    # Command execution
    entry(ActivityKind.COMMAND, 10, r"\b(?:npm|npx|yarn|pnpm|pip3?|poetry|uv|cargo|go|mvn|gradle|composer)\s+"
                                    r"(?:install|add|run|build|test|exec|publish|update|remove|init|get|mod)\b"),
    entry(ActivityKind.COMMAND, 10, r"\b(?:git|docker|docker-compose|kubectl|helm|terraform|ansible-playbook)\s+"
                                    r"[a-z][\w\-.]*"),
    entry(ActivityKind.COMMAND, 7, r"\b(?:Running|Executing|Starting):\s*\S+"),
    entry(ActivityKind.COMMAND, 7, r"^\s*[$#]\s+[\w\-./]+", re.MULTILINE),
    entry(ActivityKind.COMMAND, 6, r"\b(?:python3?|node|make|pytest|bash)\s+[\w\-./]+"),
    entry(ActivityKind.COMMAND, 5, r"\b(?:executeBash|Bash)\("),

    # File operations
    entry(ActivityKind.FILE_OPERATION, 9, r"(?:^|[\s;&|])(?:mkdir|touch|cp|mv|rm|chmod|chown)\s+(?:-\w+\s+)*[\w\-./]+",
          re.MULTILINE),
    entry(ActivityKind.FILE_OPERATION, 8, r"\b(?:File|Directory|Folder)\s+(?:created|updated|deleted|moved|copied|renamed)\b"),
    entry(ActivityKind.FILE_OPERATION, 8, r"\b(?:Creating|Deleting|Moving|Copying|Renaming)\s+(?:a\s+|the\s+)?"
                                          r"(?:file|directory|folder|temporary\s+files)\b"),
    entry(ActivityKind.FILE_OPERATION, 7, r"\b(?:listDirectory|readFile|deleteFile|fileSearch)\b"),

    # Idle markers are definitive but weakest: any real activity wins
    entry(ActivityKind.IDLE, 2, r"^\s*Human:\s*$", re.MULTILINE),
    entry(ActivityKind.IDLE, 2, r"\bWaiting for (?:input|response|user)\b"),
    entry(ActivityKind.IDLE, 1, r"\?\s+for\s+shortcuts"),
    entry(ActivityKind.IDLE, 1, r"\bPress\s+(?:Enter|any key|Ctrl\+C)"),
)

DEFAULT_CATALOG = PatternCatalog(DEFAULT_PATTERNS)
