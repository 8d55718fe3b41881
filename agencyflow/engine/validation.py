"""Structural checks for workflow step graphs.

All checks run even if earlier ones fail so callers get the full list of
violations in one shot.
"""

from __future__ import annotations

from typing import Dict, List

from ..constants import DEFAULT_MAX_STEPS
from ..contracts import BranchStep, ParallelStep, RuleStep, Workflow, WorkflowStatus
from ..exceptions import WorkflowValidationError
from ..rules.evaluator import validate_conditions


def _find_cycle(graph: Dict[str, List[str]]) -> List[str] | None:
    """Return one cycle as a list of step ids, or ``None``."""
    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    stack: List[str] = []

    def visit(node: str) -> List[str] | None:
        color[node] = grey
        stack.append(node)
        for child in graph.get(node, []):
            if child not in color:
                continue
            if color[child] == grey:
                return stack[stack.index(child):] + [child]
            if color[child] == white:
                cycle = visit(child)
                if cycle:
                    return cycle
        stack.pop()
        color[node] = black
        return None

    for node in graph:
        if color[node] == white:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def validate_workflow(workflow: Workflow, max_steps: int = DEFAULT_MAX_STEPS) -> List[str]:
    """Return every structural violation found in ``workflow``."""
    errors: List[str] = []
    steps = workflow.steps

    if not steps:
        errors.append("Workflow has no steps.")
        return errors

    if len(steps) > max_steps:
        errors.append(f"Workflow has {len(steps)} steps; maximum allowed is {max_steps}.")

    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            errors.append(f"Duplicate step id '{step.id}'.")
        seen.add(step.id)

    step_map = workflow.step_map()
    for step in steps:
        for target in step.successors():
            if target not in step_map:
                errors.append(f"Step '{step.id}' references unknown step '{target}'.")

        if isinstance(step, BranchStep):
            if not step.config.branches and not step.config.default:
                errors.append(f"Branch step '{step.id}' has no branches and no default.")
            for case in step.config.branches:
                errors.extend(
                    f"Branch step '{step.id}': {problem}"
                    for problem in validate_conditions(case.conditions)
                )

        if isinstance(step, ParallelStep):
            for sub_id in step.config.steps:
                sub = step_map.get(sub_id)
                if sub_id == step.id:
                    errors.append(f"Parallel step '{step.id}' cannot fan out to itself.")
                elif isinstance(sub, (BranchStep, ParallelStep)):
                    errors.append(
                        f"Parallel step '{step.id}' cannot fan out to {sub.type} step '{sub_id}'."
                    )
            if len(set(step.config.steps)) != len(step.config.steps):
                errors.append(f"Parallel step '{step.id}' lists a sub-step more than once.")

        if isinstance(step, RuleStep) and step.config.conditions:
            errors.extend(
                f"Rule step '{step.id}': {problem}"
                for problem in validate_conditions(step.config.conditions)
            )

    graph = {
        step.id: [t for t in step.successors() if t in step_map] for step in steps
    }
    cycle = _find_cycle(graph)
    if cycle:
        errors.append(f"Step graph contains a cycle: {' -> '.join(cycle)}.")

    return errors


def ensure_valid(workflow: Workflow, max_steps: int = DEFAULT_MAX_STEPS) -> None:
    errors = validate_workflow(workflow, max_steps=max_steps)
    if errors:
        raise WorkflowValidationError(
            f"Workflow '{workflow.name}' is invalid", violations=errors
        )


def ensure_runnable(workflow: Workflow, max_steps: int = DEFAULT_MAX_STEPS) -> None:
    """Structural checks plus the status gate applied before every execution."""
    ensure_valid(workflow, max_steps=max_steps)
    if workflow.status != WorkflowStatus.ACTIVE:
        raise WorkflowValidationError(
            f"Workflow '{workflow.name}' is {workflow.status.value}; only active workflows run",
            violations=[f"status is {workflow.status.value}"],
        )


__all__ = ["ensure_runnable", "ensure_valid", "validate_workflow"]
