"""Workflow execution engine."""

from .collaborators import (
    ActionDispatcher,
    AgentInvoker,
    AIGenerator,
    LoggingActionDispatcher,
    PydanticAIGenerator,
)
from .context import ExecutionContext, render_template, render_value
from .engine import WorkflowEngine
from .handlers import STEP_HANDLERS, StepOutcome, register_step_handler
from .validation import ensure_runnable, ensure_valid, validate_workflow

__all__ = [
    "AIGenerator",
    "ActionDispatcher",
    "AgentInvoker",
    "ExecutionContext",
    "LoggingActionDispatcher",
    "PydanticAIGenerator",
    "STEP_HANDLERS",
    "StepOutcome",
    "WorkflowEngine",
    "ensure_runnable",
    "ensure_valid",
    "register_step_handler",
    "render_template",
    "render_value",
    "validate_workflow",
]
