"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the agent
dispatch engine. All settings can be overridden via environment variables
(prefixed with ``AGENT_DISPATCH_``) or a .env file.
"""

import logging
import re
from pathlib import Path
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MEMORY_LIMIT_PATTERN = re.compile(r"^(\d+)([bkmg])$")


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Attributes:
        tasks_dir: Root directory of the durable task state tree.
        worktrees_dir: Root directory for per-task and per-unit git worktrees.
        task_retention_days: Age after which terminal tasks are deleted.
        sandbox_image: Docker image for agent sandboxes.
        sandbox_memory: Memory limit per sandbox (e.g. "4g", "512m").
        sandbox_cpus: CPU share per sandbox, converted to a CFS quota.
        sandbox_network_mode: Docker network mode; "none" isolates the sandbox.
        sandbox_name_prefix: Prefix for container names, used for orphan cleanup.
        sandbox_stop_timeout_seconds: Grace period before a sandbox is killed.
        sandbox_workspace_path: Mount point of the working copy inside sandboxes.
        planner_model: LiteLLM model used for task decomposition.
        planner_fallback_model: Model tried once when the planner keeps failing.
        llm_request_timeout_seconds: Timeout for a single planner request.
        llm_max_retries: Retries for transient planner errors.
        agent_command: Shell command that runs the coding agent in a sandbox.
        agent_timeout_seconds: Timeout for a single agent invocation.
        agent_max_retries: Retries for a timed-out agent invocation.
        progress_interval_seconds: Period of the parallel progress loop.
        max_parallel_units: Optional cap on concurrently executing units.
        branch_prefix: Prefix for task and unit branch names.
        git_author_name: Author name for commits made by the engine.
        git_author_email: Author email for commits made by the engine.
        test_timeout_seconds: Timeout for the project test command.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or console).
    """

    # Storage Configuration
    tasks_dir: Path = Path.home() / ".agent-dispatch" / "tasks"
    worktrees_dir: Path = Path.home() / ".agent-dispatch" / "worktrees"
    task_retention_days: int = 7

    # Sandbox Configuration
    sandbox_image: str = "agent-dispatch-sandbox:latest"
    sandbox_memory: str = "4g"
    sandbox_cpus: float = 2.0
    sandbox_network_mode: str = "none"
    sandbox_name_prefix: str = "agent-dispatch-"
    sandbox_stop_timeout_seconds: int = 2
    sandbox_workspace_path: str = "/workspace"

    # Planner Configuration
    # Model names must include provider prefix for LiteLLM (e.g., anthropic/, openai/)
    planner_model: str = "anthropic/claude-sonnet-4-5"
    planner_fallback_model: str | None = None
    llm_request_timeout_seconds: int = 120
    llm_max_retries: int = 3

    # Agent Worker Configuration
    agent_command: str = "claude -p --output-format json --dangerously-skip-permissions"
    agent_timeout_seconds: int = 1800
    agent_max_retries: int = 1

    # Orchestration
    progress_interval_seconds: float = 10.0
    max_parallel_units: int | None = None
    branch_prefix: str = "agent/"
    git_author_name: str = "agent-dispatch"
    git_author_email: str = "agent-dispatch@localhost"
    test_timeout_seconds: int = 600

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("sandbox_memory", mode="before")
    @classmethod
    def normalize_memory(cls, v: Any) -> str:
        """Lower-case the memory limit and check it matches ``<digits><b|k|m|g>``."""
        value = str(v).strip().lower()
        if not MEMORY_LIMIT_PATTERN.match(value):
            raise ValueError(f"Invalid memory limit: {v!r} (expected e.g. '512m' or '4g')")
        return value

    @field_validator("tasks_dir", "worktrees_dir", mode="after")
    @classmethod
    def expand_dirs(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("branch_prefix")
    @classmethod
    def validate_branch_prefix(cls, v: str) -> str:
        if v and not v.endswith("/") and not v.endswith("-"):
            return f"{v}/"
        return v

    model_config = SettingsConfigDict(
        env_prefix="AGENT_DISPATCH_",
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the engine.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'console' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
