"""Step handlers keyed by step type."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from ..contracts import (
    ActionStep,
    AgentStep,
    AIStep,
    BranchStep,
    ParallelStep,
    RuleStep,
    SignalStep,
    Workflow,
)
from ..exceptions import BranchExhaustedError, NotFoundError, StepExecutionError
from ..rules.operators import strict_equal
from ..utils import compute_hash, get_path
from .context import ExecutionContext, render_template, render_value

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Result of one step.

    ``next_step`` overrides the step's own ``next``; ``stop`` ends the run
    as completed without following any successor. ``cancelled`` means the
    execution was cancelled while the step was waiting to retry.
    """

    output: Dict[str, Any]
    next_step: Optional[str] = None
    stop: bool = False
    cancelled: bool = False


StepHandler = Callable[
    ["WorkflowEngine", Workflow, Any, ExecutionContext], Awaitable[StepOutcome]
]

STEP_HANDLERS: Dict[str, StepHandler] = {}


def register_step_handler(step_type: str, handler: StepHandler) -> None:
    STEP_HANDLERS[step_type] = handler


def get_step_handler(step_type: str) -> StepHandler:
    handler = STEP_HANDLERS.get(step_type)
    if handler is None:
        raise StepExecutionError(f"No handler registered for step type '{step_type}'")
    return handler


def step_handler(step_type: str) -> Callable[[StepHandler], StepHandler]:
    def decorator(fn: StepHandler) -> StepHandler:
        register_step_handler(step_type, fn)
        return fn

    return decorator


def _mismatch(step, policy: str, reason: str, output: Dict[str, Any]) -> StepOutcome:
    if policy == "fail":
        raise StepExecutionError(reason, step_id=step.id)
    logger.info(f"Step {step.id}: {reason}; completing execution")
    return StepOutcome(output=output, stop=True)


@step_handler("signal")
async def handle_signal(
    engine: "WorkflowEngine", workflow: Workflow, step: SignalStep, ctx: ExecutionContext
) -> StepOutcome:
    config = step.config
    expected = config.signal_type
    actual = ctx.signal_type
    if expected and actual and expected != actual:
        return _mismatch(
            step,
            config.on_mismatch,
            f"signal type '{actual}' does not match '{expected}'",
            {"matched": False, "expected_type": expected, "actual_type": actual},
        )
    for path, value in config.filter.items():
        found = get_path(ctx.data, path)
        if not strict_equal(found, value):
            return _mismatch(
                step,
                config.on_mismatch,
                f"signal filter '{path}' expected {value!r}, got {found!r}",
                {"matched": False, "field": path, "expected": value, "actual": found},
            )
    return StepOutcome(output={"matched": True, "signal": ctx.data})


@step_handler("rule")
async def handle_rule(
    engine: "WorkflowEngine", workflow: Workflow, step: RuleStep, ctx: ExecutionContext
) -> StepOutcome:
    config = step.config
    if config.rule_id:
        try:
            result = await engine.rule_service.evaluate_rule(
                config.rule_id,
                ctx.rule_context(),
                signal_id=ctx.metadata.get("signal_id"),
                execution_id=ctx.execution_id,
            )
        except NotFoundError as exc:
            raise StepExecutionError(str(exc), step_id=step.id) from exc
    else:
        result = engine.evaluator.evaluate_conditions(
            config.conditions, config.logic, ctx.rule_context()
        )

    output: Dict[str, Any] = {
        "matched": result.matched,
        "rule_id": result.rule_id,
        "rule_version_id": result.rule_version_id,
        "condition_results": [r.model_dump(mode="json") for r in result.condition_results],
    }
    if result.no_published_version:
        output["no_published_version"] = True
    if result.skipped:
        output["skipped"] = True

    if not result.matched:
        return _mismatch(step, config.on_mismatch, "rule did not match", output)

    if config.dispatch_actions and result.rule_version_id:
        version = await engine.rule_service.get_version(result.rule_version_id)
        dispatched = []
        template_data = ctx.template_data()
        for action in version.ordered_actions():
            rendered = render_value(action.action_config, template_data)
            dispatched.append(
                {
                    "action_type": action.action_type,
                    "config": rendered,
                    "result": await engine.action_dispatcher.dispatch(
                        action.action_type, rendered, template_data
                    ),
                }
            )
        output["actions"] = dispatched
    return StepOutcome(output=output)


@step_handler("ai")
async def handle_ai(
    engine: "WorkflowEngine", workflow: Workflow, step: AIStep, ctx: ExecutionContext
) -> StepOutcome:
    if engine.ai_generator is None:
        raise StepExecutionError("No AI generator configured", step_id=step.id)
    config = step.config
    prompt = render_template(config.prompt, ctx.template_data())
    result = await engine.ai_generator.generate(
        prompt, schema=config.output_schema, use_cache=config.use_cache
    )
    return StepOutcome(
        output={
            "result": result,
            "prompt_hash": compute_hash(prompt),
            "output_hash": compute_hash(result),
            "provider": config.provider or getattr(engine.ai_generator, "provider", None),
        }
    )


@step_handler("action")
async def handle_action(
    engine: "WorkflowEngine", workflow: Workflow, step: ActionStep, ctx: ExecutionContext
) -> StepOutcome:
    template_data = ctx.template_data()
    rendered = render_value(step.config.config, template_data)
    result = await engine.action_dispatcher.dispatch(
        step.config.action_type, rendered, template_data
    )
    return StepOutcome(
        output={"action_type": step.config.action_type, "config": rendered, "result": result}
    )


@step_handler("branch")
async def handle_branch(
    engine: "WorkflowEngine", workflow: Workflow, step: BranchStep, ctx: ExecutionContext
) -> StepOutcome:
    rule_context = ctx.rule_context()
    for index, case in enumerate(step.config.branches):
        result = engine.evaluator.evaluate_conditions(case.conditions, case.logic, rule_context)
        if result.matched:
            logger.debug(f"Branch {step.id} took case {index} -> {case.next}")
            return StepOutcome(output={"branch": index, "next": case.next}, next_step=case.next)
    if step.config.default:
        logger.debug(f"Branch {step.id} fell through to default -> {step.config.default}")
        return StepOutcome(
            output={"branch": "default", "next": step.config.default},
            next_step=step.config.default,
        )
    raise BranchExhaustedError(
        f"No branch matched in step '{step.id}' and no default is configured",
        step_id=step.id,
    )


@step_handler("parallel")
async def handle_parallel(
    engine: "WorkflowEngine", workflow: Workflow, step: ParallelStep, ctx: ExecutionContext
) -> StepOutcome:
    step_map = workflow.step_map()
    sub_steps = [step_map[sub_id] for sub_id in step.config.steps]
    base = ctx.snapshot()
    results = await asyncio.gather(
        *(engine.run_step(workflow, sub, base.snapshot()) for sub in sub_steps),
        return_exceptions=True,
    )
    outputs: Dict[str, Any] = {}
    for sub, result in zip(sub_steps, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            raise StepExecutionError(
                f"Parallel sub-step '{sub.id}' failed: {result}",
                step_id=sub.id,
                terminal=True,
            ) from result
        outputs[sub.id] = result.output
    ctx.step_results.update(outputs)
    cancelled = any(r.cancelled for r in results)
    return StepOutcome(output=outputs, cancelled=cancelled)


@step_handler("agent")
async def handle_agent(
    engine: "WorkflowEngine", workflow: Workflow, step: AgentStep, ctx: ExecutionContext
) -> StepOutcome:
    if engine.agent_invoker is None:
        raise StepExecutionError("No agent invoker configured", step_id=step.id)
    config = step.config
    payload = render_value(config.input, ctx.template_data()) if config.input else dict(ctx.data)
    result = await engine.agent_invoker.invoke(
        config.domain, config.operation, config.capability, payload
    )
    return StepOutcome(
        output={
            "domain": config.domain,
            "operation": config.operation,
            "capability": config.capability,
            "agent_id": config.agent_id,
            "result": result,
        }
    )


__all__ = [
    "STEP_HANDLERS",
    "StepHandler",
    "StepOutcome",
    "get_step_handler",
    "register_step_handler",
    "step_handler",
]
