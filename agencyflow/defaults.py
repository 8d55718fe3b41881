"""Seed definitions installed for new tenants."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from .contracts import (
    ActionStep,
    ActionStepConfig,
    RetryConfig,
    SignalRoute,
    SignalSource,
    SignalStep,
    SignalStepConfig,
    TriggerType,
    Workflow,
    WorkflowStatus,
)
from .persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_NAME = "Client Record Recommendations"
DEFAULT_SIGNAL_SOURCE = SignalSource.INTERNAL
DEFAULT_SIGNAL_TYPE = "client_record_updated"


def client_record_workflow(tenant_id: str) -> Workflow:
    return Workflow(
        tenant_id=tenant_id,
        name=DEFAULT_WORKFLOW_NAME,
        description="Default workflow for generating recommendations from client record updates.",
        status=WorkflowStatus.ACTIVE,
        trigger_type=TriggerType.SIGNAL,
        trigger_config={"signal_type": DEFAULT_SIGNAL_TYPE},
        retry_policy=RetryConfig(max_retries=1, backoff_ms=1000),
        steps=[
            SignalStep(
                id="signal_client_record_updated",
                name="Client Record Updated",
                config=SignalStepConfig(signal_type=DEFAULT_SIGNAL_TYPE),
                next="generate_recommendations",
            ),
            ActionStep(
                id="generate_recommendations",
                name="Generate Recommendations",
                config=ActionStepConfig(action_type="generate_recommendations"),
            ),
        ],
    )


async def ensure_default_workflow(
    repository: AutomationRepository, tenant_id: str
) -> Optional[Tuple[Workflow, SignalRoute]]:
    """Install the client-record workflow and its route unless a route already
    handles ``internal/client_record_updated`` for the tenant."""
    for route in await repository.list_routes(tenant_id):
        if route.source == DEFAULT_SIGNAL_SOURCE and route.type == DEFAULT_SIGNAL_TYPE:
            return None

    workflow = client_record_workflow(tenant_id)
    await repository.save_workflow(workflow)
    route = SignalRoute(
        tenant_id=tenant_id,
        workflow_id=workflow.id,
        name="Client Record Updated",
        description="Route client_record_updated signals to recommendation workflow.",
        source=DEFAULT_SIGNAL_SOURCE,
        type=DEFAULT_SIGNAL_TYPE,
        priority=100,
    )
    await repository.save_route(route)
    logger.info(f"Installed default workflow {workflow.id} for tenant {tenant_id}")
    return workflow, route


__all__ = ["client_record_workflow", "ensure_default_workflow"]
