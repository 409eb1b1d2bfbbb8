"""Prompt templates for the planning collaborator and agent workers.

This module contains:
- DECOMPOSITION_PROMPT: Asks the planner whether a task splits into parallel units
- UNIT_INSTRUCTIONS: Scoped instructions for one unit of a parallel task
- SEQUENTIAL_INSTRUCTIONS: Instructions for a task run by a single agent
"""

DECOMPOSITION_PROMPT = """\
Analyze this coding task and decide whether it can be split into independent \
subtasks that separate agents can implement in parallel.

Task Description:
{description}

Respond with ONLY a JSON object (no markdown, no explanation):
{{
  "complexity": <integer 1-10, where 1=trivial, 10=very complex>,
  "canParallelize": <boolean>,
  "reasoning": "<why or why not>",
  "parts": [
    {{
      "role": "<{roles}>",
      "description": "<specific subtask description>",
      "files": ["<files this part will create or modify>"],
      "dependencies": [<0-based indices of parts this one depends on>]
    }}
  ]
}}

Requirements for parallelization:
1. Parts must be truly independent: no file may appear in more than one part
2. Each part should be substantial enough to warrant a separate agent
3. There must be {min_units}-{max_units} parts in total
4. If a part depends on another, list the dependency
5. Complexity must be at least {min_complexity} to warrant parallelization

Examples of parallelizable tasks:
- "Add 3 new API endpoints: /users, /posts, /comments" -> 3 parts, one file per endpoint
- "Add user authentication (backend) and login UI (frontend)" -> 2 parts, backend vs frontend

Examples of NON-parallelizable tasks:
- "Fix bug in user login" -> too simple, single part
- "Refactor authentication system" -> all files interdependent
- "Add error handling to all API endpoints" -> would touch the same files
"""

UNIT_INSTRUCTIONS = """\
You are the {role} for part {index} of {total} of a larger task that other \
agents are implementing in parallel on separate branches.

## Overall Task
{task_description}

## Your Part
{unit_description}

## File Scope
You may ONLY create or modify these files:
{file_list}

Other agents own every other file. Changes outside your scope will conflict \
when the branches are merged.

## Rules
- Work inside {workspace}; do not run git commands, the engine commits your work.
- Keep changes minimal and focused on your part.
- When you are done, reply with a short summary of what you changed.
"""

SEQUENTIAL_INSTRUCTIONS = """\
You are a coding agent working on the following task.

## Task
{task_description}

## Rules
- Work inside {workspace}; do not run git commands, the engine commits your work.
- Run the project's existing checks where practical before finishing.
- When you are done, reply with a short summary of what you changed.
"""


def build_unit_instructions(
    *,
    task_description: str,
    unit_description: str,
    role: str,
    files: list[str],
    index: int,
    total: int,
    workspace: str,
) -> str:
    """Render the scoped instructions for one parallel unit (``index`` is 1-based)."""
    file_list = "\n".join(f"- {path}" for path in files) if files else "- (no files declared)"
    return UNIT_INSTRUCTIONS.format(
        role=role,
        index=index,
        total=total,
        task_description=task_description,
        unit_description=unit_description,
        file_list=file_list,
        workspace=workspace,
    )


def build_sequential_instructions(*, task_description: str, workspace: str) -> str:
    return SEQUENTIAL_INSTRUCTIONS.format(task_description=task_description, workspace=workspace)
