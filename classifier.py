"""
Pattern classification for assistant and user text.

Everything here is regex/substring based and approximate:
- Refusal detection flags responses where the upstream model declined to act
  and told the user to run something themselves.
- Recovery command extraction pulls the command it suggested out of the text.
- Intent parsing guesses what the user asked for (create/read/run/edit a file).

No function in this module raises on unmatched input; a miss is an empty result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

# Matched as plain substrings of the lowercased text. A response that merely
# quotes one of these phrases is still classified as a refusal.
REFUSAL_PHRASES: tuple[str, ...] = (
    # Direct refusals
    "无法直接",
    "无法执行",
    "不能执行",
    "受到了限制",
    "没有权限",
    "无法帮你",
    "我不能",
    "我无法",
    "cannot directly",
    "cannot execute",
    "can't execute",
    "unable to",
    "don't have access",
    "i can't",
    # Redirections to the user's own machine
    "请在你的终端",
    "请在本地",
    "你需要在",
    "你可以运行",
    "run this in your terminal",
    "in your own terminal",
)

# Shell verbs accepted as the start of a suggested command line
COMMAND_VERBS: tuple[str, ...] = (
    "cat",
    "echo",
    "mkdir",
    "touch",
    "rm",
    "cp",
    "mv",
    "ls",
    "cd",
    "pwd",
)

CODE_BLOCK_PATTERN = re.compile(r"```(?:bash|sh)?\s*\n([^`]+)\n```")

# Tried in order after the fenced block; first match wins
COMMAND_LINE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(
        r"^[ \t]*(?:" + "|".join(COMMAND_VERBS) + r")[ \t]+.+$",
        re.MULTILINE,
    ),
    re.compile(r"^[ \t]*\S+[ \t]+>[ \t]+\S+", re.MULTILINE),
]


class Action:
    """Actions the intent parser can guess."""

    RUN_COMMAND = "run_command"
    READ_FILE = "read_file"
    EDIT_FILE = "edit_file"
    CREATE_FILE = "create_file"
    LIST_DIR = "list_dir"


@dataclass
class ActionPattern:
    """Patterns that indicate a given action."""

    action: str
    patterns: list[re.Pattern[str]]


# Ordered by precedence: when a request mentions both creating and running
# something, running wins.
ACTION_PATTERNS: list[ActionPattern] = [
    ActionPattern(
        action=Action.RUN_COMMAND,
        patterns=[
            re.compile(r"执行.*?命令"),
            re.compile(r"run.*?command"),
            re.compile(r"运行"),
            re.compile(r"execute"),
        ],
    ),
    ActionPattern(
        action=Action.READ_FILE,
        patterns=[
            re.compile(r"读取.*?文件"),
            re.compile(r"read.*?file"),
            re.compile(r"查看.*?文件"),
            re.compile(r"看.*?内容"),
            re.compile(r"cat\s+"),
        ],
    ),
    ActionPattern(
        action=Action.EDIT_FILE,
        patterns=[
            re.compile(r"修改.*?文件"),
            re.compile(r"编辑"),
            re.compile(r"edit.*?file"),
            re.compile(r"modify"),
        ],
    ),
    ActionPattern(
        action=Action.CREATE_FILE,
        patterns=[
            re.compile(r"创建.*?文件"),
            re.compile(r"create.*?file"),
            re.compile(r"写入.*?文件"),
            re.compile(r"write.*?to"),
            re.compile(r"帮我创建"),
            re.compile(r"新建"),
        ],
    ),
    ActionPattern(
        action=Action.LIST_DIR,
        patterns=[
            re.compile(r"列出.*?(?:文件|目录)"),
            re.compile(r"list.*?(?:files|directory|folder)"),
            re.compile(r"ls\s+"),
        ],
    ),
]

PATH_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"['\"](/[^'\"]+)['\"]"),
    re.compile(r"['\"]([^'\"]+\.\w+)['\"]"),
    re.compile(r"(\S+\.\w{1,5})\b"),
]

CONTENT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"内容[是为:：\s]+['\"]?(.+?)['\"]?\s*$", re.IGNORECASE),
    re.compile(r"content[:\s]+['\"]?(.+?)['\"]?\s*$", re.IGNORECASE),
    re.compile(r"['\"]([^'\"]+)['\"]"),
]


@dataclass
class ClassificationResult:
    """Everything the pattern classifier can say about a piece of text."""

    is_refusal: bool = False
    suggested_command: str = ""
    guessed_path: str = ""
    guessed_content: str = ""
    guessed_action: str | None = None


@dataclass
class Intent:
    """A guessed user intent."""

    action: str | None = None
    file_path: str = ""
    content: str = ""
    command: str = ""


def _join(messages: Iterable[str]) -> str:
    return " ".join(messages)


def is_refusal(text: str) -> bool:
    """Return True if the text contains any known refusal phrase."""
    lowered = text.lower()
    return any(phrase in lowered for phrase in REFUSAL_PHRASES)


def extract_recovery_command(text: str) -> str:
    """
    Pull the command a refusal suggested the user run.

    Tries a fenced bash/sh code block first, then a line starting with a
    common shell verb, then a ``token > token`` redirection line.
    Returns an empty string when nothing looks like a command.
    """
    match = CODE_BLOCK_PATTERN.search(text)
    if match:
        return match.group(1).strip()

    for pattern in COMMAND_LINE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()

    return ""


def guess_action(messages: Iterable[str]) -> str | None:
    """Guess the requested action, or None if no pattern matches."""
    text = _join(messages).lower()
    for action_pattern in ACTION_PATTERNS:
        for pattern in action_pattern.patterns:
            if pattern.search(text):
                return action_pattern.action
    return None


def _first_group(patterns: list[re.Pattern[str]], text: str) -> str:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return ""


def guess_path(messages: Iterable[str]) -> str:
    """Guess a file path mentioned in the messages (case preserved)."""
    return _first_group(PATH_PATTERNS, _join(messages))


def guess_content(messages: Iterable[str]) -> str:
    """Guess file content mentioned in the messages (case preserved)."""
    return _first_group(CONTENT_PATTERNS, _join(messages))


def classify(messages: Iterable[str]) -> ClassificationResult:
    """Run every classifier over the joined messages."""
    messages = list(messages)
    text = _join(messages)
    return ClassificationResult(
        is_refusal=is_refusal(text),
        suggested_command=extract_recovery_command(text),
        guessed_path=guess_path(messages),
        guessed_content=guess_content(messages),
        guessed_action=guess_action(messages),
    )


class IntentParser:
    """Parses a structured user intent out of raw user messages."""

    def parse_user_intent(self, messages: list[str]) -> Intent:
        return Intent(
            action=guess_action(messages),
            file_path=guess_path(messages),
            content=guess_content(messages),
            command=extract_recovery_command("\n".join(messages)),
        )
