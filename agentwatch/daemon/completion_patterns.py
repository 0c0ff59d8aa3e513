"""Phrase catalogs for task completion and orchestrator task metadata.

Agents announce finished work in prose, in Japanese or English, often next
to a ✅ or 🎉. Official declarations are reserved for the orchestrator and
outrank everything else. Exclusions drop negated, future or questioning
phrasing line by line before any completion pattern is tried.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Tuple


@dataclass(frozen=True)
class CompletionPattern:
    matcher: Pattern
    priority: int
    official: bool = False

    @property
    def source(self) -> str:
        return self.matcher.pattern


def _pattern(regex: str, priority: int, official: bool = False) -> CompletionPattern:
    return CompletionPattern(re.compile(regex, re.IGNORECASE), priority, official)


_DONE = r"(?:完了|完成|終了|done|completed?|finished)"

COMPLETION_PATTERNS: Tuple[CompletionPattern, ...] = (
    # Official declarations
    _pattern(r"プロジェクト正式完了を宣言します[。！]", 30, official=True),
    _pattern(r"プロジェクト完全成功を正式に宣言[。！]", 29, official=True),
    _pattern(r"プロジェクトが正常に完了しました[。！]", 28, official=True),
    _pattern(r"project\s+(?:has\s+been\s+|is\s+)?officially\s+(?:completed|declared\s+complete)[.!]", 27, official=True),

    # Japanese
    _pattern(r"(?:タスク|プロジェクト|作業|開発)(?:が|を)?(?:完全に|すべて)?(?:完了|終了|完成)(?:いたし|し)ました[。！]", 20),
    _pattern(r"(?:すべて|全て)(?:の)?(?:作業|実装|開発|機能)(?:が|を)?(?:完了|終了|完成)(?:いたし|し)ました[。！]", 20),
    _pattern(r"(?:納品|デリバリー)(?:完了|終了)(?:しました|です)", 17),
    _pattern(r"(?:テスト|検証)(?:も)?(?:すべて|全て)?(?:完了|成功)(?:しました|です)", 16),

    # English
    _pattern(r"(?:task|project|work|development)(?:\s+has\s+been|\s+is)?\s+(?:successfully\s+)?(?:completed|finished|done)[.!]", 18),
    _pattern(r"(?:all|everything)(?:\s+has\s+been|\s+is)?\s+(?:successfully\s+)?(?:completed|finished|done)[.!]", 18),
    _pattern(r"(?:task|project|work)\s+(?:completed|finished)\s+successfully", 14),
    _pattern(r"(?:successfully|completely)\s+(?:completed|finished|implemented)", 14),
    _pattern(r"(?:testing|verification)\s+(?:completed|passed)", 12),

    # Emoji next to completion vocabulary
    _pattern(r"[✅🎉].*" + _DONE, 10),
    _pattern(_DONE + r".*[✅🎉]", 9),
)

EXCLUSION_PATTERNS: Tuple[Pattern, ...] = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"(?:まだ|未だ).*(?:完了|完成|終了)",
    r"(?:完了|完成|終了).*(?:していません|できません|しません)",
    r"(?:完了|完成|終了).*(?:予定|見込み|目標)",
    r"(?:完了|完成|終了).*(?:したい|したく)",
    r"(?:完了|完成|終了).*(?:でしょうか|ですか|？|\?)",
    r"\bnot\s+(?:yet\s+)?(?:been\s+)?(?:completed|finished|done)",
    r"(?:completed|finished|done).*\b(?:yet|still|pending)\b",
    r"(?:will\s+be|going\s+to\s+be|planning\s+to).*(?:completed|finished|done)",
))


def is_excluded(line: str) -> bool:
    return any(p.search(line) for p in EXCLUSION_PATTERNS)


def match_completion(text: str, official_only: bool = False) -> Optional[CompletionPattern]:
    """
    Best completion pattern found in text, or None.

    Lines hit by an exclusion pattern are ignored. With official_only, only
    orchestrator declarations count.
    """
    if not text:
        return None

    candidates = [p for p in COMPLETION_PATTERNS if p.official or not official_only]
    lines = [line for line in text.split("\n") if line.strip() and not is_excluded(line)]

    best: Optional[CompletionPattern] = None
    for pattern in candidates:
        if best is not None and pattern.priority <= best.priority:
            continue
        if any(pattern.matcher.search(line) for line in lines):
            best = pattern
    return best


# Task metadata the orchestrator writes when handing out work

TASK_ID_PATTERNS: Tuple[Pattern, ...] = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"【タスク\s*ID】\s*([a-zA-Z0-9\-_]+)",
    r"タスク\s*ID[：:\s]*([a-zA-Z0-9\-_]+)",
    r"task\s+id[：:\s]*([a-zA-Z0-9\-_]+)",
))

PROJECT_NAME_PATTERNS: Tuple[Pattern, ...] = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"【プロジェクト名】\s*([a-zA-Z0-9\-_]+)",
    r"【作業ディレクトリ】\s*workspace/([a-zA-Z0-9\-_]+)",
    r"プロジェクト名[：:\s]*([a-zA-Z0-9\-_]+)",
    r"作業ディレクトリ[：:\s]*workspace/([a-zA-Z0-9\-_]+)",
    r"workspace/([a-zA-Z0-9\-_]+)\s*で作業",
    r"project\s+name[：:\s]*([a-zA-Z0-9\-_]+)",
    r"working\s+directory[：:\s]*workspace/([a-zA-Z0-9\-_]+)",
))

ASSIGNEE_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"【担当エージェント】\s*([a-zA-Z0-9]+)", re.IGNORECASE),
    re.compile(r"担当エージェント[：:\s]*([a-zA-Z0-9]+)", re.IGNORECASE),
    re.compile(r"assigned\s+to[：:\s]*([a-zA-Z0-9]+)", re.IGNORECASE),
    re.compile(r"^\./agent-send\.sh\s+(boss1|worker[1-3])\s+", re.MULTILINE),
    re.compile(r"あなたは\s*(boss1|worker[1-3])\s*です"),
)


def _first_group(patterns: Tuple[Pattern, ...], text: str) -> Optional[str]:
    for pattern in patterns:
        found = pattern.search(text)
        if found:
            return found.group(1).strip()
    return None


def extract_task_info(text: str) -> Optional[Dict[str, Optional[str]]]:
    """
    Task id, project name and assignee announced in text.

    Returns None unless a task id and at least one other field were found.
    """
    task_id = _first_group(TASK_ID_PATTERNS, text)
    if not task_id:
        return None
    info = {
        "task_id": task_id,
        "project_name": _first_group(PROJECT_NAME_PATTERNS, text),
        "assigned_to": _first_group(ASSIGNEE_PATTERNS, text),
    }
    if info["project_name"] is None and info["assigned_to"] is None:
        return None
    return info


def get_stats() -> Dict[str, int]:
    official: List[CompletionPattern] = [p for p in COMPLETION_PATTERNS if p.official]
    return {
        "completion_patterns": len(COMPLETION_PATTERNS),
        "official_patterns": len(official),
        "exclusion_patterns": len(EXCLUSION_PATTERNS),
    }
