"""At-most-one execution per workflow, trigger and normalized input."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from .contracts import Workflow, WorkflowExecution
from .exceptions import AgencyFlowError, ExecutionConflictError
from .persistence.repository import AutomationRepository
from .utils import compute_hash

logger = logging.getLogger(__name__)


def compute_input_hash(
    normalized_input: Dict[str, Any], trigger_id: Optional[str] = None
) -> str:
    """Hash the input, scoped to the triggering record when there is one.

    Two signals with identical payloads are still separate triggers; a replay
    of the same signal maps onto the same key.
    """
    if trigger_id is None:
        return compute_hash(normalized_input)
    return compute_hash({"trigger_id": trigger_id, "input": normalized_input})


class IdempotencyCoordinator:
    """Create-or-fetch executions keyed by ``(workflow_id, input_hash)``.

    Relies on the repository's uniqueness constraint: the insert is always
    attempted first and a conflict means another caller already owns the
    execution.
    """

    def __init__(self, repository: AutomationRepository):
        self.repository = repository

    async def get_or_create_execution(
        self,
        workflow: Workflow,
        normalized_input: Dict[str, Any],
        *,
        trigger_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
    ) -> Tuple[WorkflowExecution, bool]:
        input_hash = compute_input_hash(normalized_input, trigger_id)
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            trigger_id=trigger_id,
            trigger_type=trigger_type,
            trigger_payload=normalized_input,
            input_hash=input_hash,
        )
        try:
            await self.repository.insert_execution(execution)
        except ExecutionConflictError:
            existing = await self.repository.find_execution(workflow.id, input_hash)
            if existing is None:
                raise AgencyFlowError(
                    f"Execution for workflow {workflow.id} conflicted but could not be loaded",
                    details={"workflow_id": workflow.id, "input_hash": input_hash},
                )
            logger.info(
                f"Reusing execution {existing.id} for workflow {workflow.id} "
                f"(input {input_hash[:12]})"
            )
            return existing, False
        logger.info(f"Created execution {execution.id} for workflow {workflow.id}")
        return execution, True


__all__ = ["IdempotencyCoordinator", "compute_input_hash"]
