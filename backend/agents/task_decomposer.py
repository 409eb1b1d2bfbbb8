"""Task decomposition into independent parallel units.

The TaskDecomposer asks the planning collaborator for a split proposal and
then validates it against fixed safety rules. It never trusts the
planner's own ``canParallelize`` flag and never raises: any planner error
or unparseable output yields a sequential fallback analysis.
"""

import math
from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from agents.prompts import DECOMPOSITION_PROMPT
from agents.utils import LLMClient, extract_json_from_response
from models.schemas import DecompositionAnalysis, DecompositionUnit, FileConflict, UnitRole

logger = structlog.get_logger()

MIN_UNITS = 2
MAX_UNITS = 5
MIN_COMPLEXITY = 3
FALLBACK_COMPLEXITY = 5

NO_DEPENDENCIES_REASON = (
    "Parts have dependencies on each other. "
    "Only fully independent tasks can be parallelized in this version."
)


class DecompositionError(ValueError):
    """The planner's response could not be turned into an analysis."""


def _as_number(value: Any) -> int | float | None:
    """Accept finite ints, floats and numeric strings; reject booleans."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and math.isfinite(value):
        return value
    return None


def _coerce_int(value: Any) -> int | None:
    """Like _as_number, but only integral values are accepted."""
    number = _as_number(value)
    if number is None or (isinstance(number, float) and not number.is_integer()):
        return None
    return int(number)


def _parse_unit(raw: Any, index: int, total: int) -> tuple[DecompositionUnit | None, str | None]:
    """Parse one proposed part. ``index`` is 1-based; returns (unit, error)."""
    if not isinstance(raw, Mapping):
        return None, f"Part {index} is not an object"

    role = raw.get("role")
    if not isinstance(role, str) or not role.strip():
        return None, f"Part {index} is missing a role"
    role = role.strip().lower()
    if role not in {r.value for r in UnitRole}:
        allowed = ", ".join(r.value for r in UnitRole)
        return None, f'Part {index} has unrecognized role "{role}" (allowed: {allowed})'

    description = raw.get("description")
    if not isinstance(description, str) or not description.strip():
        return None, f"Part {index} is missing a description"

    files = raw.get("files")
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        return None, f"Part {index} is missing a valid file list"

    raw_dependencies = raw.get("dependencies") or []
    if not isinstance(raw_dependencies, list):
        return None, f"Part {index} has an invalid dependency list"
    dependencies: list[int] = []
    for ref in raw_dependencies:
        dep = _coerce_int(ref)
        if dep is None or not 0 <= dep < total:
            return None, f"Part {index} has an invalid dependency reference: {ref!r}"
        dependencies.append(dep)

    unit = DecompositionUnit(
        role=UnitRole(role),
        description=description.strip(),
        files=[f.strip() for f in files if f.strip()],
        dependencies=dependencies,
    )
    return unit, None


def detect_file_conflicts(units: Sequence[DecompositionUnit]) -> FileConflict | None:
    """Find the first file declared by two different units.

    Paths are compared case-insensitively after trimming whitespace.

    Returns:
        The conflicting file with both 1-based unit indices, or None.
    """
    owners: dict[str, int] = {}
    for index, unit in enumerate(units):
        for path in unit.files:
            key = path.strip().lower()
            if not key:
                continue
            owner = owners.setdefault(key, index)
            if owner != index:
                return FileConflict(file=path.strip(), units=(owner + 1, index + 1))
    return None


def detect_circular_dependencies(units: Sequence[DecompositionUnit]) -> str | None:
    """Describe a dependency cycle among units, or return None.

    Dependencies are 0-based unit indices; out-of-range references are
    ignored here.
    """
    count = len(units)
    graph = [[dep for dep in unit.dependencies if 0 <= dep < count] for unit in units]
    # 0 = unvisited, 1 = on the current path, 2 = finished
    state = [0] * count
    path: list[int] = []

    def visit(node: int) -> list[int] | None:
        state[node] = 1
        path.append(node)
        for dep in graph[node]:
            if state[dep] == 1:
                return path[path.index(dep):] + [dep]
            if state[dep] == 0:
                cycle = visit(dep)
                if cycle:
                    return cycle
        path.pop()
        state[node] = 2
        return None

    for start in range(count):
        if state[start] == 0:
            cycle = visit(start)
            if cycle:
                return "Circular dependency: " + " -> ".join(f"part {i + 1}" for i in cycle)
    return None


class TaskDecomposer:
    """Decides whether a task can be split into parallel units.

    Attributes:
        planner: LLM client used as the planning collaborator.
        min_units: Fewest units a parallel split may have.
        max_units: Most units a parallel split may have.
        min_complexity: Complexity score required to parallelize.
        last_cost: Planner cost of the most recent analysis.
    """

    def __init__(
        self,
        planner: LLMClient | None = None,
        min_units: int = MIN_UNITS,
        max_units: int = MAX_UNITS,
        min_complexity: int = MIN_COMPLEXITY,
    ) -> None:
        self.planner = planner or LLMClient()
        self.min_units = min_units
        self.max_units = max_units
        self.min_complexity = min_complexity
        self.last_cost = 0.0

    def build_prompt(self, description: str) -> str:
        return DECOMPOSITION_PROMPT.format(
            description=description,
            roles="|".join(r.value for r in UnitRole),
            min_units=self.min_units,
            max_units=self.max_units,
            min_complexity=self.min_complexity,
        )

    async def analyze_task(self, description: str) -> DecompositionAnalysis:
        """Ask the planner for a split and validate it.

        Never raises: planner failures and malformed output produce a
        sequential fallback whose reasoning records the cause.

        Args:
            description: The task description.

        Returns:
            The validated DecompositionAnalysis.
        """
        self.last_cost = 0.0
        try:
            response = await self.planner.call(
                messages=[{"role": "user", "content": self.build_prompt(description)}]
            )
            self.last_cost = response.cost
            payload = extract_json_from_response(response.content)
            if payload is None:
                raise DecompositionError("Could not parse JSON response from planner")
            analysis = self.validate_analysis(payload, description)
        except Exception as e:
            logger.warning("task_analysis_failed", error=str(e), error_type=type(e).__name__)
            return DecompositionAnalysis.fallback(
                f"Analysis failed: {e}. Defaulting to sequential execution.",
                FALLBACK_COMPLEXITY,
            )

        logger.info(
            "task_analyzed",
            can_parallelize=analysis.can_parallelize,
            complexity=analysis.complexity_score,
            units=len(analysis.units),
        )
        return analysis

    def validate_analysis(self, analysis: Any, task: str = "") -> DecompositionAnalysis:
        """Apply the parallelization rules to a raw planner payload.

        Rules are checked in order and the first violation wins: payload
        shape, the planner's own verdict, complexity, unit count, per-unit
        fields and roles, shared files, dependency cycles, then any
        dependency at all.

        Args:
            analysis: Raw JSON object from the planner.
            task: Original task description, used for logging only.

        Returns:
            An accepted analysis with units, or a fallback with the reason.
        """

        def reject(reason: str, complexity: int | None = None) -> DecompositionAnalysis:
            logger.info("decomposition_rejected", reason=reason, task=task[:80])
            score = FALLBACK_COMPLEXITY if complexity is None else max(0, complexity)
            return DecompositionAnalysis.fallback(reason, score)

        if not isinstance(analysis, Mapping):
            return reject("Invalid analysis format: expected a JSON object")

        can_parallelize = analysis.get("canParallelize", analysis.get("can_parallelize"))
        raw_units = analysis.get("parts", analysis.get("units"))
        if not isinstance(can_parallelize, bool) or not isinstance(raw_units, list):
            return reject("Invalid analysis format: missing canParallelize flag or parts list")

        raw_complexity = _as_number(
            analysis.get(
                "complexity",
                analysis.get("complexityScore", analysis.get("complexity_score")),
            )
        )
        if raw_complexity is None:
            return reject("Invalid analysis format: missing numeric complexity")
        complexity = math.floor(raw_complexity)

        reasoning = str(analysis.get("reasoning") or "").strip()

        if not can_parallelize:
            return reject(
                reasoning or "Planner determined the task should run sequentially", complexity
            )

        if raw_complexity < self.min_complexity:
            return reject(
                f"Task complexity ({raw_complexity:g}) is below the minimum "
                f"({self.min_complexity}) for parallel execution",
                complexity,
            )

        if len(raw_units) < self.min_units:
            return reject(
                f"Too few parts ({len(raw_units)}); "
                f"parallel execution needs at least {self.min_units}",
                complexity,
            )
        if len(raw_units) > self.max_units:
            return reject(
                f"Too many parts ({len(raw_units)}); "
                f"parallel execution allows at most {self.max_units}",
                complexity,
            )

        units: list[DecompositionUnit] = []
        for index, raw in enumerate(raw_units, start=1):
            unit, error = _parse_unit(raw, index, len(raw_units))
            if error:
                return reject(error, complexity)
            units.append(unit)

        conflict = detect_file_conflicts(units)
        if conflict:
            first, second = conflict.units
            return reject(
                f'File conflict detected: "{conflict.file}" '
                f"would be modified by parts {first} and {second}",
                complexity,
            )

        cycle = detect_circular_dependencies(units)
        if cycle:
            return reject(f"{cycle} detected", complexity)

        if any(unit.dependencies for unit in units):
            return reject(NO_DEPENDENCIES_REASON, complexity)

        return DecompositionAnalysis(
            can_parallelize=True,
            complexity_score=complexity,
            reasoning=reasoning or f"Task splits into {len(units)} independent parts",
            units=units,
        )

    @staticmethod
    def get_summary(analysis: DecompositionAnalysis) -> str:
        """Human-readable description of the execution plan."""
        if not analysis.can_parallelize:
            return (
                f"Sequential execution (complexity {analysis.complexity_score}/10): "
                f"{analysis.reasoning}"
            )

        lines = [
            f"Parallel execution with {len(analysis.units)} units "
            f"(complexity {analysis.complexity_score}/10)",
            f"Reasoning: {analysis.reasoning}",
        ]
        for index, unit in enumerate(analysis.units, start=1):
            lines.append(f"  {index}. [{unit.role.value}] {unit.description}")
            if unit.files:
                lines.append(f"     files: {', '.join(unit.files)}")
        return "\n".join(lines)
