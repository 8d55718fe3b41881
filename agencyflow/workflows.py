"""Workflow definition lifecycle: registration, status toggles and revisions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .constants import DEFAULT_MAX_STEPS
from .contracts import Workflow, WorkflowStatus, new_id, utcnow
from .engine.validation import ensure_valid
from .exceptions import NotFoundError, WorkflowValidationError
from .persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)

REVISABLE_FIELDS = {
    "name",
    "description",
    "trigger_type",
    "trigger_config",
    "steps",
    "timeout",
    "retry_policy",
}


def parse_workflow(data: Dict[str, Any]) -> Workflow:
    """Validate a workflow document, turning schema errors into violations."""
    try:
        return Workflow.model_validate(data)
    except PydanticValidationError as exc:
        violations = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise WorkflowValidationError("Workflow document is invalid", violations=violations) from exc


def load_workflow_file(
    path: Union[str, Path],
    tenant_id: Optional[str] = None,
    default_timeout: Optional[int] = None,
) -> Workflow:
    """Load a YAML or JSON workflow document from disk."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise WorkflowValidationError(
            f"Workflow document {path} must be a mapping", violations=["document is not a mapping"]
        )
    if tenant_id:
        data["tenant_id"] = tenant_id
    if default_timeout and "timeout" not in data:
        data["timeout"] = default_timeout
    return parse_workflow(data)


class WorkflowRegistry:
    """Store workflow definitions once they pass structural validation.

    Definitions referenced by executions are not edited in place: only the
    status can be toggled, and ``revise`` stores a new record with the next
    version number.
    """

    def __init__(self, repository: AutomationRepository, max_steps: int = DEFAULT_MAX_STEPS):
        self.repository = repository
        self.max_steps = max_steps

    async def register(self, workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        if not isinstance(workflow, Workflow):
            workflow = parse_workflow(workflow)
        ensure_valid(workflow, max_steps=self.max_steps)
        await self.repository.save_workflow(workflow)
        logger.info(
            f"Registered workflow {workflow.name} ({workflow.id}) v{workflow.version} "
            f"as {workflow.status.value}"
        )
        return workflow

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def list(
        self, tenant_id: Optional[str] = None, status: Optional[WorkflowStatus] = None
    ) -> List[Workflow]:
        return await self.repository.list_workflows(tenant_id, status)

    async def _set_status(self, workflow_id: str, status: WorkflowStatus) -> Workflow:
        workflow = await self.get(workflow_id)
        if status == WorkflowStatus.ACTIVE:
            ensure_valid(workflow, max_steps=self.max_steps)
        workflow.status = status
        workflow.updated_at = utcnow()
        await self.repository.save_workflow(workflow)
        logger.info(f"Workflow {workflow.id} is now {status.value}")
        return workflow

    async def activate(self, workflow_id: str) -> Workflow:
        return await self._set_status(workflow_id, WorkflowStatus.ACTIVE)

    async def pause(self, workflow_id: str) -> Workflow:
        return await self._set_status(workflow_id, WorkflowStatus.PAUSED)

    async def archive(self, workflow_id: str) -> Workflow:
        return await self._set_status(workflow_id, WorkflowStatus.ARCHIVED)

    async def revise(self, workflow_id: str, **changes: Any) -> Workflow:
        """Store an edited copy as a new draft with ``version + 1``."""
        unknown = set(changes) - REVISABLE_FIELDS
        if unknown:
            raise WorkflowValidationError(
                f"Cannot revise fields: {', '.join(sorted(unknown))}",
                violations=[f"{name} is not revisable" for name in sorted(unknown)],
            )
        current = await self.get(workflow_id)
        data = current.model_dump(mode="json")
        data.update(changes)
        data.update(
            {
                "id": new_id(),
                "version": current.version + 1,
                "status": WorkflowStatus.DRAFT.value,
                "created_at": utcnow(),
                "updated_at": utcnow(),
            }
        )
        revised = parse_workflow(data)
        ensure_valid(revised, max_steps=self.max_steps)
        await self.repository.save_workflow(revised)
        logger.info(
            f"Workflow {current.id} revised as {revised.id} (v{revised.version})"
        )
        return revised


__all__ = ["WorkflowRegistry", "load_workflow_file", "parse_workflow"]
