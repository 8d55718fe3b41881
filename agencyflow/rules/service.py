"""Rule lifecycle: versioning, publishing, evaluation records and audits."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..contracts import Condition, ConditionLogic, utcnow
from ..exceptions import NotFoundError, RuleValidationError, RuleVersionImmutableError
from .evaluator import ContextLike, RuleEvaluator, as_context, validate_conditions
from .models import (
    AuditChangeType,
    RuleCategory,
    RuleEvaluationResult,
    RuleVersionStatus,
    WorkflowRule,
    WorkflowRuleAction,
    WorkflowRuleAudit,
    WorkflowRuleEvaluation,
    WorkflowRuleVersion,
)

if TYPE_CHECKING:
    from ..persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)

RULE_FIELDS = {"name", "description", "category", "enabled"}
DRAFT_FIELDS = {
    "conditions",
    "actions",
    "condition_logic",
    "threshold_config",
    "anomaly_config",
    "lifecycle_config",
}


def _coerce_conditions(items: Iterable[Union[Condition, Dict[str, Any]]]) -> List[Condition]:
    conditions = []
    for index, item in enumerate(items):
        if isinstance(item, Condition):
            conditions.append(item)
            continue
        try:
            conditions.append(Condition.model_validate({"order": index, **item}))
        except PydanticValidationError as exc:
            raise RuleValidationError(f"Invalid condition at position {index}: {exc}") from exc
    problems = validate_conditions(conditions)
    if problems:
        raise RuleValidationError("; ".join(problems), details={"problems": problems})
    return conditions


def _coerce_actions(
    items: Iterable[Union[WorkflowRuleAction, Dict[str, Any]]]
) -> List[WorkflowRuleAction]:
    actions = []
    for index, item in enumerate(items):
        if isinstance(item, WorkflowRuleAction):
            actions.append(item)
            continue
        try:
            actions.append(WorkflowRuleAction.model_validate({"order": index, **item}))
        except PydanticValidationError as exc:
            raise RuleValidationError(f"Invalid action at position {index}: {exc}") from exc
    return actions


class RuleService:
    """Manage rules and their immutable published versions."""

    def __init__(
        self,
        repository: "AutomationRepository",
        evaluator: Optional[RuleEvaluator] = None,
    ):
        self.repository = repository
        self.evaluator = evaluator or RuleEvaluator()

    async def _audit(
        self,
        rule: WorkflowRule,
        change_type: AuditChangeType,
        summary: str,
        *,
        version_id: Optional[str] = None,
        previous: Optional[Dict[str, Any]] = None,
        new: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        await self.repository.append_rule_audit(
            WorkflowRuleAudit(
                tenant_id=rule.tenant_id,
                rule_id=rule.id,
                rule_version_id=version_id,
                actor_id=actor_id,
                change_type=change_type,
                change_summary=summary,
                previous_state=previous,
                new_state=new,
            )
        )

    # ------------------------------------------------------------------
    # Rules
    async def create_rule(
        self,
        tenant_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        category: Union[RuleCategory, str] = RuleCategory.CUSTOM,
        enabled: bool = True,
        actor_id: Optional[str] = None,
    ) -> WorkflowRule:
        if not tenant_id:
            raise RuleValidationError("tenant_id is required")
        if not name:
            raise RuleValidationError("Rule name is required")
        try:
            rule = WorkflowRule(
                tenant_id=tenant_id,
                name=name,
                description=description,
                category=category,
                enabled=enabled,
                created_by=actor_id,
            )
        except PydanticValidationError as exc:
            raise RuleValidationError(str(exc)) from exc
        await self.repository.save_rule(rule)
        await self._audit(
            rule,
            AuditChangeType.CREATED,
            f'Rule "{rule.name}" created',
            new=rule.model_dump(mode="json"),
            actor_id=actor_id,
        )
        logger.info(f"Created rule {rule.id} ({rule.name}) for tenant {tenant_id}")
        return rule

    async def get_rule(self, rule_id: str) -> WorkflowRule:
        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    async def list_rules(self, tenant_id: str, enabled: Optional[bool] = None) -> List[WorkflowRule]:
        return await self.repository.list_rules(tenant_id, enabled=enabled)

    async def update_rule(
        self, rule_id: str, *, actor_id: Optional[str] = None, **changes: Any
    ) -> WorkflowRule:
        unknown = set(changes) - RULE_FIELDS
        if unknown:
            raise RuleValidationError(f"Cannot update rule fields: {', '.join(sorted(unknown))}")
        rule = await self.get_rule(rule_id)
        previous = rule.model_dump(mode="json")
        try:
            updated = WorkflowRule.model_validate(
                {**rule.model_dump(), **changes, "updated_at": utcnow()}
            )
        except PydanticValidationError as exc:
            raise RuleValidationError(str(exc)) from exc
        await self.repository.save_rule(updated)
        await self._audit(
            updated,
            AuditChangeType.UPDATED,
            "Rule updated",
            previous=previous,
            new=updated.model_dump(mode="json"),
            actor_id=actor_id,
        )
        return updated

    # ------------------------------------------------------------------
    # Versions
    async def create_version(
        self,
        rule_id: str,
        *,
        conditions: Iterable[Union[Condition, Dict[str, Any]]] = (),
        actions: Iterable[Union[WorkflowRuleAction, Dict[str, Any]]] = (),
        condition_logic: Union[ConditionLogic, str] = ConditionLogic.ALL,
        threshold_config: Optional[Dict[str, Any]] = None,
        anomaly_config: Optional[Dict[str, Any]] = None,
        lifecycle_config: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowRuleVersion:
        rule = await self.get_rule(rule_id)
        existing = await self.repository.list_rule_versions(rule_id)
        next_version = max((v.version for v in existing), default=0) + 1
        try:
            version = WorkflowRuleVersion(
                rule_id=rule.id,
                tenant_id=rule.tenant_id,
                version=next_version,
                condition_logic=condition_logic,
                threshold_config=threshold_config or {},
                anomaly_config=anomaly_config or {},
                lifecycle_config=lifecycle_config or {},
                conditions=_coerce_conditions(conditions),
                actions=_coerce_actions(actions),
                created_by=actor_id,
            )
        except PydanticValidationError as exc:
            raise RuleValidationError(str(exc)) from exc
        await self.repository.save_rule_version(version)
        await self._audit(
            rule,
            AuditChangeType.VERSION_CREATED,
            f"Version {version.version} created",
            version_id=version.id,
            new=version.model_dump(mode="json"),
            actor_id=actor_id,
        )
        return version

    async def get_version(self, version_id: str) -> WorkflowRuleVersion:
        version = await self.repository.get_rule_version(version_id)
        if version is None:
            raise NotFoundError(f"Rule version {version_id} not found")
        return version

    async def list_versions(self, rule_id: str) -> List[WorkflowRuleVersion]:
        return await self.repository.list_rule_versions(rule_id)

    async def update_draft(
        self, version_id: str, *, actor_id: Optional[str] = None, **changes: Any
    ) -> WorkflowRuleVersion:
        unknown = set(changes) - DRAFT_FIELDS
        if unknown:
            raise RuleValidationError(
                f"Cannot update version fields: {', '.join(sorted(unknown))}"
            )
        version = await self.get_version(version_id)
        if not version.is_editable:
            raise RuleVersionImmutableError(
                f"Rule version {version.version} is {version.status.value} and cannot be edited",
                details={"version_id": version.id, "status": version.status.value},
            )
        previous = version.model_dump(mode="json")
        data = version.model_dump()
        if "conditions" in changes:
            data["conditions"] = _coerce_conditions(changes.pop("conditions"))
        if "actions" in changes:
            data["actions"] = _coerce_actions(changes.pop("actions"))
        data.update(changes)
        try:
            updated = WorkflowRuleVersion.model_validate(data)
        except PydanticValidationError as exc:
            raise RuleValidationError(str(exc)) from exc
        await self.repository.save_rule_version(updated)
        rule = await self.get_rule(version.rule_id)
        await self._audit(
            rule,
            AuditChangeType.VERSION_UPDATED,
            f"Version {updated.version} updated",
            version_id=updated.id,
            previous=previous,
            new=updated.model_dump(mode="json"),
            actor_id=actor_id,
        )
        return updated

    async def publish(
        self, version_id: str, *, actor_id: Optional[str] = None
    ) -> WorkflowRuleVersion:
        """Publish a draft and make it the rule's active version.

        Any previously published version becomes deprecated. Neither
        version's conditions or actions are touched.
        """
        version = await self.get_version(version_id)
        if version.status != RuleVersionStatus.DRAFT:
            raise RuleVersionImmutableError(
                f"Only draft versions can be published (version {version.version} is {version.status.value})"
            )
        rule = await self.get_rule(version.rule_id)

        for other in await self.repository.list_rule_versions(rule.id):
            if other.id != version.id and other.status == RuleVersionStatus.PUBLISHED:
                deprecated = other.model_copy(update={"status": RuleVersionStatus.DEPRECATED})
                await self.repository.save_rule_version(deprecated)
                await self._audit(
                    rule,
                    AuditChangeType.DEPRECATED,
                    f"Version {other.version} deprecated",
                    version_id=other.id,
                    actor_id=actor_id,
                )

        published = version.model_copy(
            update={"status": RuleVersionStatus.PUBLISHED, "published_at": utcnow()}
        )
        await self.repository.save_rule_version(published)
        rule = rule.model_copy(
            update={"default_version_id": published.id, "updated_at": utcnow()}
        )
        await self.repository.save_rule(rule)
        await self._audit(
            rule,
            AuditChangeType.PUBLISHED,
            f"Version {published.version} published",
            version_id=published.id,
            new=published.model_dump(mode="json"),
            actor_id=actor_id,
        )
        logger.info(f"Published version {published.version} of rule {rule.id}")
        return published

    async def get_active_version(self, rule_id: str) -> Optional[WorkflowRuleVersion]:
        rule = await self.get_rule(rule_id)
        if not rule.default_version_id:
            return None
        version = await self.repository.get_rule_version(rule.default_version_id)
        if version is None or version.status != RuleVersionStatus.PUBLISHED:
            return None
        return version

    # ------------------------------------------------------------------
    # Evaluation
    async def evaluate_rule(
        self,
        rule: Union[WorkflowRule, str],
        context: ContextLike,
        *,
        signal_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RuleEvaluationResult:
        if isinstance(rule, str):
            rule = await self.get_rule(rule)
        if not rule.enabled:
            logger.debug(f"Rule {rule.id} is disabled, skipping")
            return RuleEvaluationResult(matched=False, rule_id=rule.id, skipped=True)

        version = await self.get_active_version(rule.id)
        if version is None:
            return RuleEvaluationResult(
                matched=False, rule_id=rule.id, no_published_version=True
            )

        ctx = as_context(context)
        result = self.evaluator.evaluate(version, ctx, now=now)
        await self.repository.append_rule_evaluation(
            WorkflowRuleEvaluation(
                tenant_id=rule.tenant_id,
                rule_id=rule.id,
                rule_version_id=version.id,
                signal_id=signal_id,
                execution_id=execution_id,
                matched=result.matched,
                condition_results=result.condition_results,
                evaluation_context=ctx.model_dump(mode="json"),
                duration_ms=result.duration_ms,
            )
        )
        return result

    async def evaluate_rules_for_signal(
        self,
        tenant_id: str,
        context: ContextLike,
        *,
        signal_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[RuleEvaluationResult]:
        results = []
        for rule in await self.repository.list_rules(tenant_id, enabled=True):
            results.append(
                await self.evaluate_rule(rule, context, signal_id=signal_id, now=now)
            )
        return results

    async def list_evaluations(
        self, rule_id: str, limit: int = 100
    ) -> List[WorkflowRuleEvaluation]:
        return await self.repository.list_rule_evaluations(rule_id, limit=limit)

    async def list_audits(self, rule_id: str) -> List[WorkflowRuleAudit]:
        return await self.repository.list_rule_audits(rule_id)
