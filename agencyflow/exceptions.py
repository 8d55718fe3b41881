"""Typed exception hierarchy for the automation core."""

from __future__ import annotations

from typing import Any, Optional


class AgencyFlowError(Exception):
    """Base exception for all agencyflow errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(AgencyFlowError):
    """Malformed input rejected at the boundary."""


class SignalValidationError(ValidationError):
    """Signal could not be ingested."""


class WorkflowValidationError(ValidationError):
    """Workflow definition is structurally invalid or not runnable."""

    def __init__(self, message: str, violations: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


class RuleValidationError(ValidationError):
    """Rule, rule version or condition payload is invalid."""


class NotFoundError(AgencyFlowError):
    """Referenced record does not exist."""


class StepExecutionError(AgencyFlowError):
    """A single step failed; handled through the step's error policy.

    ``terminal`` errors bypass the policy: they are raised once a policy has
    already been applied, or for failures that must never be retried.
    """

    terminal = False

    def __init__(
        self,
        message: str,
        step_id: str = "",
        retry_count: int = 0,
        terminal: Optional[bool] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.step_id = step_id
        self.retry_count = retry_count
        if terminal is not None:
            self.terminal = terminal


class BranchExhaustedError(StepExecutionError):
    """No branch condition matched and the branch step has no default."""

    terminal = True


class WorkflowTimeoutError(AgencyFlowError):
    """Execution exceeded the workflow timeout."""

    def __init__(self, message: str, timeout: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ExecutionConflictError(AgencyFlowError):
    """Storage rejected an execution for an existing (workflow_id, input_hash)."""

    def __init__(self, workflow_id: str, input_hash: str):
        super().__init__(
            f"Execution already exists for workflow {workflow_id} and input {input_hash[:12]}",
            details={"workflow_id": workflow_id, "input_hash": input_hash},
        )
        self.workflow_id = workflow_id
        self.input_hash = input_hash


class RuleVersionImmutableError(AgencyFlowError):
    """Published and deprecated rule versions cannot be edited."""
