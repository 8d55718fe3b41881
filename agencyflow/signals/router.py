"""Select the workflows a signal should trigger."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from pydantic import BaseModel

from ..contracts import ConditionLogic, Signal, SignalRoute, Workflow, WorkflowStatus
from ..persistence.repository import AutomationRepository
from ..rules import EvaluationContext, RuleEvaluator

logger = logging.getLogger(__name__)

RoutingPolicy = Literal["first_match", "all_matches"]


class RouteMatch(BaseModel):
    route: SignalRoute
    workflow: Workflow


class SignalRouter:
    """Match signals against a tenant's routes.

    Routes are tried highest priority first, ties in creation order. With
    the ``first_match`` policy only the first usable route is returned.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        *,
        policy: RoutingPolicy = "all_matches",
        evaluator: Optional[RuleEvaluator] = None,
    ):
        if policy not in ("first_match", "all_matches"):
            raise ValueError(f"Unknown routing policy: {policy}")
        self.repository = repository
        self.policy = policy
        self.evaluator = evaluator or RuleEvaluator()

    def route_matches(self, route: SignalRoute, signal: Signal) -> bool:
        if not route.enabled or route.tenant_id != signal.tenant_id:
            return False
        if route.source is not None and route.source != signal.source:
            return False
        if route.type is not None and route.type != signal.type:
            return False
        if route.urgency_filter and signal.urgency not in route.urgency_filter:
            return False
        if route.payload_filter:
            result = self.evaluator.evaluate_conditions(
                route.payload_filter,
                ConditionLogic.ALL,
                EvaluationContext(signal=signal.payload),
            )
            if not result.matched:
                return False
        return True

    async def candidate_routes(self, signal: Signal) -> List[SignalRoute]:
        routes = await self.repository.list_routes(signal.tenant_id)
        matching = [route for route in routes if self.route_matches(route, signal)]
        # stable sort keeps creation order among equal priorities
        return sorted(matching, key=lambda route: -route.priority)

    async def route(self, signal: Signal) -> List[RouteMatch]:
        if signal.is_duplicate:
            logger.debug(f"Signal {signal.id} is a duplicate, not routing")
            return []

        matches: List[RouteMatch] = []
        for route in await self.candidate_routes(signal):
            workflow = await self.repository.get_workflow(route.workflow_id)
            if workflow is None:
                logger.warning(
                    f"Route {route.id} points at missing workflow {route.workflow_id}, skipping"
                )
                continue
            if workflow.status != WorkflowStatus.ACTIVE:
                logger.warning(
                    f"Route {route.id} targets workflow {workflow.id} in status "
                    f"{workflow.status.value}, skipping"
                )
                continue
            logger.info(f"Signal {signal.id} matched route {route.name} -> workflow {workflow.id}")
            matches.append(RouteMatch(route=route, workflow=workflow))
            if self.policy == "first_match":
                break
        return matches


__all__ = ["RouteMatch", "RoutingPolicy", "SignalRouter"]
