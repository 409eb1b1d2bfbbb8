"""Task decomposition, agent dispatch and the task execution graph.

This module exports the key components needed for task execution:
- Planner prompts and the LLM client with retry logic
- TaskDecomposer for validating parallel splits
- Agent worker contract and the sandboxed CLI worker
- ParallelAgentManager for concurrent unit execution
- TaskExecutionGraph sequencing decompose, execute, merge and test
"""

from agents.parallel_manager import (
    ParallelAgentManager,
    ParallelExecutionError,
    ParallelExecutionResult,
    UnitExecutionError,
    UnitOutcome,
    branch_name_for,
    sandbox_name_for,
    subtask_id_for,
)
from agents.prompts import (
    DECOMPOSITION_PROMPT,
    build_sequential_instructions,
    build_unit_instructions,
)
from agents.task_decomposer import (
    DecompositionError,
    TaskDecomposer,
    detect_circular_dependencies,
    detect_file_conflicts,
)
from agents.task_graph import TaskExecutionGraph, TaskRunState, create_task_run_state
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    extract_json_from_response,
)
from agents.worker import (
    AgentInvocationError,
    AgentPayload,
    AgentWorker,
    SandboxAgentWorker,
    parse_agent_output,
)

__all__ = [
    # Prompts
    "DECOMPOSITION_PROMPT",
    "build_sequential_instructions",
    "build_unit_instructions",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_from_response",
    # Decomposition
    "DecompositionError",
    "TaskDecomposer",
    "detect_circular_dependencies",
    "detect_file_conflicts",
    # Workers
    "AgentInvocationError",
    "AgentPayload",
    "AgentWorker",
    "SandboxAgentWorker",
    "parse_agent_output",
    # Parallel execution
    "ParallelAgentManager",
    "ParallelExecutionError",
    "ParallelExecutionResult",
    "UnitExecutionError",
    "UnitOutcome",
    "branch_name_for",
    "sandbox_name_for",
    "subtask_id_for",
    # Graph
    "TaskExecutionGraph",
    "TaskRunState",
    "create_task_run_state",
]
