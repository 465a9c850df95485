"""
Tool-use resolution and refusal recovery.

After the full assistant text is known, ResponseResolver decides what the
response turns into:
- structured tool calls found by the parser become tool_use blocks;
- otherwise, if the text is a refusal that suggests a command, the
  RecoveryOrchestrator runs that command once and synthesizes a
  ``text, tool_use(bash), text`` block triple describing the result;
- otherwise the text passes through untouched.
"""

import logging
from dataclasses import dataclass, field
from functools import cached_property

from classifier import extract_recovery_command, is_refusal
from events import ContentBlock, TextBlock, ToolUseBlock
from executor import BASH_TOOL, CommandExecutor, ExecutionResult
from tool_parser import ToolCallParser, ToolInvocation

logger = logging.getLogger(__name__)

EXECUTION_NOTICE = "Executing command..."
SUCCESS_MARKER = "✅ Command succeeded"
FAILURE_MARKER = "❌ Command failed"


@dataclass
class RecoveryOutcome:
    """A command recovered from a refusal and what running it produced."""

    command: str
    result: ExecutionResult
    tool_use: ToolUseBlock = field(init=False)

    def __post_init__(self) -> None:
        self.tool_use = ToolUseBlock(name=BASH_TOOL, input={"command": self.command})

    def to_blocks(self) -> list[ContentBlock]:
        if self.result.ok:
            status, detail = SUCCESS_MARKER, self.result.output
        else:
            status, detail = FAILURE_MARKER, self.result.error or ""
        return [
            TextBlock(text=EXECUTION_NOTICE),
            self.tool_use,
            TextBlock(text=f"\n\n{status}:\n```\n{detail}\n```"),
        ]


class RecoveryOrchestrator:
    """Turns refusals that suggest a command into an executed tool call."""

    def __init__(self, executor: CommandExecutor, enabled: bool = True):
        self.executor = executor
        self.enabled = enabled

    async def recover(self, text: str) -> RecoveryOutcome | None:
        """
        Attempt recovery for a response that contained no tool calls.

        Returns None when the text is not a refusal, when no command can be
        extracted, or when recovery is disabled. Never raises: executor
        failures are reported inside the outcome.
        """
        if not is_refusal(text):
            return None

        command = extract_recovery_command(text)
        if not command:
            logger.info("Refusal detected but no command to recover")
            return None

        if not self.enabled:
            logger.info(f"Refusal recovery disabled, not running: {command}")
            return None

        logger.info(f"Refusal detected, recovering with command: {command}")
        try:
            result = await self.executor.execute(BASH_TOOL, {"command": command})
        except Exception as e:
            logger.error(f"Executor raised during recovery: {e}")
            result = ExecutionResult(error=str(e))

        return RecoveryOutcome(command=command, result=result)


@dataclass
class Resolution:
    """What a finished response resolves to."""

    text: str
    invocations: list[ToolInvocation]
    remaining_text: str
    recovery: RecoveryOutcome | None = None
    refusal: bool = False

    @cached_property
    def tool_use_blocks(self) -> list[ToolUseBlock]:
        # Built once so streamed and reported blocks share ids
        return [ToolUseBlock.from_invocation(inv) for inv in self.invocations]

    def trailing_blocks(self) -> list[ContentBlock]:
        """Blocks that follow the already-streamed text block."""
        if self.invocations:
            return list(self.tool_use_blocks)
        if self.recovery is not None:
            return self.recovery.to_blocks()
        return []

    def content_blocks(self) -> list[ContentBlock]:
        """The full block list for a non-streaming response."""
        if self.recovery is not None:
            return self.recovery.to_blocks()

        blocks: list[ContentBlock] = []
        if self.remaining_text:
            blocks.append(TextBlock(text=self.remaining_text))
        blocks.extend(self.tool_use_blocks)

        if not blocks:
            blocks.append(TextBlock(text=self.text))
        return blocks


class ResponseResolver:
    """Runs the parser, then recovery only when the parser found nothing."""

    def __init__(self, parser: ToolCallParser, orchestrator: RecoveryOrchestrator):
        self.parser = parser
        self.orchestrator = orchestrator

    async def resolve(self, text: str) -> Resolution:
        parsed = self.parser.parse(text)
        resolution = Resolution(
            text=text,
            invocations=parsed.invocations,
            remaining_text=parsed.remaining_text,
        )
        if not parsed.invocations:
            resolution.refusal = is_refusal(text)
            resolution.recovery = await self.orchestrator.recover(text)
        return resolution
