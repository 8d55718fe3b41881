"""Wire the automation core together from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import AgencyFlowConfig, load_config
from .dispatch import SignalDispatcher
from .engine import AIGenerator, ActionDispatcher, AgentInvoker, PydanticAIGenerator, WorkflowEngine
from .persistence import AutomationRepository, get_repository
from .rules import RuleEvaluator, RuleService
from .signals import SignalRouter, SignalStore
from .workflows import WorkflowRegistry


@dataclass
class AutomationCore:
    config: AgencyFlowConfig
    repository: AutomationRepository
    store: SignalStore
    router: SignalRouter
    rules: RuleService
    engine: WorkflowEngine
    workflows: WorkflowRegistry
    dispatcher: SignalDispatcher


def build_core(
    config: Optional[AgencyFlowConfig] = None,
    repository: Optional[AutomationRepository] = None,
    *,
    action_dispatcher: Optional[ActionDispatcher] = None,
    ai_generator: Optional[AIGenerator] = None,
    agent_invoker: Optional[AgentInvoker] = None,
) -> AutomationCore:
    if repository is None:
        # the cached repository is reused unless a config is given explicitly
        repository = get_repository(config=config) if config else get_repository()
    config = config or load_config()
    evaluator = RuleEvaluator()
    rules = RuleService(repository, evaluator=evaluator)
    if ai_generator is None and config.ai.model:
        ai_generator = PydanticAIGenerator(config.ai.model)

    store = SignalStore(repository, dedup_window_seconds=config.signals.dedup_window_seconds)
    router = SignalRouter(repository, policy=config.routing.policy, evaluator=evaluator)
    engine = WorkflowEngine(
        repository,
        rule_service=rules,
        action_dispatcher=action_dispatcher,
        ai_generator=ai_generator,
        agent_invoker=agent_invoker,
        evaluator=evaluator,
        max_steps=config.engine.max_steps,
    )
    return AutomationCore(
        config=config,
        repository=repository,
        store=store,
        router=router,
        rules=rules,
        engine=engine,
        workflows=WorkflowRegistry(repository, max_steps=config.engine.max_steps),
        dispatcher=SignalDispatcher(store, router, engine),
    )


__all__ = ["AutomationCore", "build_core"]
