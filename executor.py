"""
Command execution for refusal recovery.

Only the ``bash`` tool is supported. Each call runs at most one process and
reports failures in the returned ExecutionResult instead of raising.
Cancellation is the one exception: the process is killed and reaped, then
the CancelledError propagates.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from paths import ensure_dir

logger = logging.getLogger(__name__)

BASH_TOOL = "bash"


@dataclass
class ExecutionResult:
    """Captured output of a command, or the reason it failed."""

    output: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CommandExecutor:
    """Runs shell commands in a workspace directory with a timeout."""

    def __init__(
        self,
        workspace_dir: Path,
        timeout: float = 30.0,
        max_output: int = 10000,
    ):
        self.workspace_dir = workspace_dir
        self.timeout = timeout
        self.max_output = max_output

    def _truncate(self, output: str) -> str:
        if len(output) <= self.max_output:
            return output
        return output[: self.max_output] + f"\n... [truncated {len(output) - self.max_output} chars]"

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        # The process may exit on its own between the timeout and the kill
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()

    async def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ExecutionResult:
        """Run one tool invocation. Never raises, except to propagate cancellation."""
        if tool_name != BASH_TOOL:
            return ExecutionResult(error=f"Unsupported tool: {tool_name}")

        command = tool_input.get("command")
        if not isinstance(command, str) or not command.strip():
            return ExecutionResult(error="Missing command")

        logger.info(f"Executing recovered command: {command}")

        try:
            cwd = ensure_dir(self.workspace_dir)
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.error(f"Failed to start command: {e}")
            return ExecutionResult(error=f"Failed to start command: {e}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.warning(f"Command timed out after {self.timeout}s: {command}")
            return ExecutionResult(error=f"Command timed out after {self.timeout}s")
        except asyncio.CancelledError:
            await self._kill(process)
            logger.info(f"Request cancelled, killed command: {command}")
            raise

        output = self._truncate(stdout.decode("utf-8", errors="replace").rstrip("\n"))

        if process.returncode != 0:
            logger.info(f"Command exited with code {process.returncode}")
            message = f"Command exited with code {process.returncode}"
            if output:
                message += f"\n{output}"
            return ExecutionResult(output=output, error=message)

        return ExecutionResult(output=output)
