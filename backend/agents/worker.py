"""Agent worker contract and the sandboxed CLI implementation.

The engine treats the coding agent as a black box: it receives a role,
instructions and a file scope, works inside a sandbox, and reports success,
changed files, cost and duration.
"""

import asyncio
import shlex
import time
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from agents.utils import extract_json_from_response
from config import settings
from models.schemas import AgentResult
from sandbox.docker_sandbox import CommandResult, SandboxHandle, SandboxManager

logger = structlog.get_logger()


class AgentPayload(BaseModel):
    """Request sent to an agent worker."""

    role: str
    instructions: str = Field(min_length=1)
    file_scope: list[str] = Field(default_factory=list)
    subtask_id: str | None = None


class AgentInvocationError(RuntimeError):
    """The agent could not be run to completion."""


class AgentWorker(Protocol):
    """Runs one agent invocation inside a sandbox."""

    async def invoke(self, sandbox: SandboxHandle, payload: AgentPayload) -> AgentResult: ...


def parse_agent_output(result: CommandResult, duration_ms: int) -> AgentResult:
    """Build an AgentResult from the agent CLI's output.

    The CLI is expected to print a JSON object with ``is_error``,
    ``result`` and ``total_cost_usd`` (``cost_usd`` is also accepted).
    Non-JSON output is judged by the exit code alone.
    """
    payload: dict[str, Any] = extract_json_from_response(result.stdout) or {}

    success = result.exit_code == 0 and not bool(payload.get("is_error", False))
    raw_cost = payload.get("total_cost_usd", payload.get("cost_usd", 0.0))
    try:
        cost = max(0.0, float(raw_cost or 0.0))
    except (TypeError, ValueError):
        cost = 0.0

    changes = payload.get("changes") or payload.get("files_changed") or []
    if not isinstance(changes, list):
        changes = []

    message = payload.get("result")
    if not isinstance(message, str):
        message = result.stdout[-2000:]

    error = None
    if not success:
        error = (message if payload.get("is_error") else None) or result.stderr.strip()
        error = error or f"Agent exited with code {result.exit_code}"

    return AgentResult(
        success=success,
        changes=[str(path) for path in changes],
        cost=cost,
        duration_ms=duration_ms,
        output=message[:2000],
        error=error,
    )


class SandboxAgentWorker:
    """Runs the configured agent command inside a sandbox.

    A timed-out invocation is retried up to ``max_retries`` times; any
    other outcome is returned as-is.

    Attributes:
        sandbox_manager: Runtime used to exec the agent command.
        command: Agent command line; the instructions are appended as one argument.
        timeout: Seconds allowed per invocation.
        max_retries: Retries after a timeout.
    """

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        command: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float = 2.0,
    ) -> None:
        self.sandbox_manager = sandbox_manager
        self.command = command or settings.agent_command
        self.timeout = timeout or settings.agent_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.agent_max_retries
        self.retry_delay = retry_delay

    async def invoke(self, sandbox: SandboxHandle, payload: AgentPayload) -> AgentResult:
        """Run the agent with ``payload`` in ``sandbox``.

        Raises:
            AgentInvocationError: If every attempt timed out.
            SandboxError: If the sandbox cannot execute commands.
        """
        command = f"{self.command} {shlex.quote(payload.instructions)}"
        started = time.monotonic()
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            logger.info(
                "agent_invocation_started",
                sandbox_id=sandbox.sandbox_id,
                subtask_id=payload.subtask_id,
                role=payload.role,
                attempt=attempt + 1,
            )
            result = await self.sandbox_manager.exec(sandbox, command, timeout=self.timeout)
            if not result.timed_out:
                break
            logger.warning(
                "agent_invocation_timeout",
                sandbox_id=sandbox.sandbox_id,
                subtask_id=payload.subtask_id,
                attempt=attempt + 1,
                timeout=self.timeout,
            )
            if attempt < attempts - 1:
                await self._async_sleep(self.retry_delay)
        else:
            raise AgentInvocationError(
                f"Agent timed out after {attempts} attempt(s) of {self.timeout}s"
            )

        agent_result = parse_agent_output(result, int((time.monotonic() - started) * 1000))
        logger.info(
            "agent_invocation_complete",
            sandbox_id=sandbox.sandbox_id,
            subtask_id=payload.subtask_id,
            success=agent_result.success,
            cost=agent_result.cost,
            duration_ms=agent_result.duration_ms,
        )
        return agent_result

    async def _async_sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
