"""Interpreter for workflow step graphs."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ..constants import DEFAULT_MAX_STEPS
from ..contracts import (
    BranchStep,
    ErrorPolicy,
    EventType,
    ExecutionStatus,
    Workflow,
    WorkflowEvent,
    WorkflowExecution,
    utcnow,
)
from ..exceptions import NotFoundError, StepExecutionError, ValidationError, WorkflowTimeoutError
from ..idempotency import IdempotencyCoordinator
from ..persistence.repository import AutomationRepository
from ..rules import RuleEvaluator, RuleService
from ..utils import compute_backoff, compute_hash
from .collaborators import ActionDispatcher, AgentInvoker, AIGenerator, LoggingActionDispatcher
from .context import ExecutionContext
from .handlers import StepOutcome, get_step_handler
from .validation import ensure_runnable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _as_output(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {"value": value}


class WorkflowEngine:
    """Run workflows to a terminal state, one asyncio task per execution.

    Executions are created through the idempotency coordinator, so calling
    ``execute`` again with the same payload and trigger returns the first run
    instead of repeating its side effects.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        *,
        rule_service: Optional[RuleService] = None,
        action_dispatcher: Optional[ActionDispatcher] = None,
        ai_generator: Optional[AIGenerator] = None,
        agent_invoker: Optional[AgentInvoker] = None,
        evaluator: Optional[RuleEvaluator] = None,
        sleep: Sleep = asyncio.sleep,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        self.repository = repository
        self.evaluator = evaluator or RuleEvaluator()
        self.rule_service = rule_service or RuleService(repository, evaluator=self.evaluator)
        self.action_dispatcher = action_dispatcher or LoggingActionDispatcher()
        self.ai_generator = ai_generator
        self.agent_invoker = agent_invoker
        self.idempotency = IdempotencyCoordinator(repository)
        self.max_steps = max_steps
        self._sleep = sleep

    async def execute(
        self,
        workflow: Workflow,
        trigger_payload: Dict[str, Any],
        *,
        trigger_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        ensure_runnable(workflow, max_steps=self.max_steps)
        if not isinstance(trigger_payload, dict):
            raise ValidationError(
                f"Trigger payload must be an object, got {trigger_payload.__class__.__name__}"
            )

        execution, created = await self.idempotency.get_or_create_execution(
            workflow,
            trigger_payload,
            trigger_id=trigger_id,
            trigger_type=trigger_type or workflow.trigger_type.value,
        )
        if not created:
            return execution

        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utcnow()
        await self.repository.update_execution(execution)
        logger.info(f"Execution {execution.id} of workflow {workflow.name} started")

        ctx = ExecutionContext(
            tenant_id=workflow.tenant_id,
            execution_id=execution.id,
            workflow_id=workflow.id,
            data=copy.deepcopy(trigger_payload),
            metadata=dict(metadata or {}),
        )
        try:
            status = await self._walk_with_timeout(workflow, execution, ctx)
        except WorkflowTimeoutError as exc:
            for step_id in sorted(ctx.in_flight):
                step = workflow.step_map()[step_id]
                await self._emit(ctx, step, EventType.FAILED, error=str(exc))
            return await self._finish(execution, ExecutionStatus.FAILED, ctx, error=str(exc))
        except StepExecutionError as exc:
            return await self._finish(execution, ExecutionStatus.FAILED, ctx, error=str(exc))
        except Exception as exc:
            logger.exception(f"Execution {execution.id} crashed")
            return await self._finish(
                execution, ExecutionStatus.FAILED, ctx, error=f"Unexpected error: {exc}"
            )
        return await self._finish(execution, status, ctx)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """Flag a running execution cancelled; the run loop stops before its next step or retry."""
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        if execution.status.is_terminal:
            logger.warning(
                f"Execution {execution_id} is already {execution.status.value}, not cancelling"
            )
            return execution
        execution.status = ExecutionStatus.CANCELLED
        execution.completed_at = utcnow()
        await self.repository.update_execution(execution)
        logger.info(f"Execution {execution_id} cancelled")
        return execution

    async def _walk_with_timeout(
        self, workflow: Workflow, execution: WorkflowExecution, ctx: ExecutionContext
    ) -> ExecutionStatus:
        try:
            return await asyncio.wait_for(
                self._walk(workflow, execution, ctx), timeout=workflow.timeout
            )
        except asyncio.TimeoutError as exc:
            raise WorkflowTimeoutError(
                f"Workflow timed out after {workflow.timeout} seconds",
                timeout=workflow.timeout,
                details={"execution_id": execution.id, "in_flight": sorted(ctx.in_flight)},
            ) from exc

    async def _is_cancelled(self, execution_id: str) -> bool:
        latest = await self.repository.get_execution(execution_id)
        return latest is not None and latest.status == ExecutionStatus.CANCELLED

    async def _walk(
        self, workflow: Workflow, execution: WorkflowExecution, ctx: ExecutionContext
    ) -> ExecutionStatus:
        step_map = workflow.step_map()
        current = workflow.entry_step.id if workflow.entry_step else None
        while current:
            if await self._is_cancelled(execution.id):
                logger.info(f"Execution {execution.id} cancelled before step {current}")
                return ExecutionStatus.CANCELLED

            step = step_map[current]
            execution.current_step = step.id
            await self.repository.update_execution(execution)

            outcome = await self.run_step(workflow, step, ctx)
            if outcome.cancelled:
                logger.info(f"Execution {execution.id} cancelled during step {step.id}")
                return ExecutionStatus.CANCELLED
            ctx.step_results[step.id] = outcome.output
            if outcome.stop:
                break
            if outcome.next_step is not None:
                current = outcome.next_step
            elif isinstance(step, BranchStep):
                current = None
            else:
                current = step.next
        return ExecutionStatus.COMPLETED

    async def run_step(
        self, workflow: Workflow, step: Any, ctx: ExecutionContext
    ) -> StepOutcome:
        """Run one step under its error policy, emitting its events.

        Raises a terminal ``StepExecutionError`` once the policy gives up.
        """
        handler = get_step_handler(step.type)
        retry = step.retry_config or workflow.retry_policy
        max_retries = retry.max_retries if step.on_error == ErrorPolicy.RETRY else 0
        attempt = 0

        ctx.in_flight.add(step.id)
        await self._emit(
            ctx, step, EventType.STARTED, input={"config": step.config.model_dump(mode="json")}
        )
        while True:
            started = time.perf_counter()
            try:
                outcome = await handler(self, workflow, step, ctx)
            except Exception as exc:
                duration_ms = int((time.perf_counter() - started) * 1000)
                terminal = getattr(exc, "terminal", False)
                if not terminal and attempt < max_retries:
                    await self._emit(
                        ctx,
                        step,
                        EventType.RETRYING,
                        error=str(exc),
                        duration_ms=duration_ms,
                        retry_count=attempt,
                    )
                    delay = compute_backoff(attempt, retry.backoff_ms, retry.backoff_multiplier)
                    logger.debug(f"Retrying step {step.id} in {delay:.3f}s after: {exc}")
                    await self._sleep(delay)
                    if await self._is_cancelled(ctx.execution_id):
                        ctx.in_flight.discard(step.id)
                        logger.info(f"Step {step.id} not retried: execution cancelled")
                        return StepOutcome(output={}, cancelled=True)
                    attempt += 1
                    continue

                ctx.in_flight.discard(step.id)
                if not terminal and step.on_error == ErrorPolicy.SKIP:
                    await self._emit(
                        ctx,
                        step,
                        EventType.SKIPPED,
                        output={},
                        error=str(exc),
                        duration_ms=duration_ms,
                        retry_count=attempt,
                    )
                    logger.info(f"Step {step.id} failed and was skipped: {exc}")
                    return StepOutcome(output={})

                await self._emit(
                    ctx,
                    step,
                    EventType.FAILED,
                    error=str(exc),
                    duration_ms=duration_ms,
                    retry_count=attempt,
                )
                logger.error(f"Step {step.id} failed after {attempt} retries: {exc}")
                raise StepExecutionError(
                    f"Step '{step.id}' ({step.type}) failed: {exc}",
                    step_id=step.id,
                    retry_count=attempt,
                    terminal=True,
                ) from exc

            ctx.in_flight.discard(step.id)
            await self._emit(
                ctx,
                step,
                EventType.COMPLETED,
                output=_as_output(outcome.output),
                duration_ms=int((time.perf_counter() - started) * 1000),
                retry_count=attempt,
            )
            return outcome

    async def _emit(
        self,
        ctx: ExecutionContext,
        step: Any,
        event_type: EventType,
        *,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        retry_count: int = 0,
    ) -> None:
        await self.repository.append_event(
            WorkflowEvent(
                execution_id=ctx.execution_id,
                tenant_id=ctx.tenant_id,
                step_id=step.id,
                step_type=step.type,
                event_type=event_type,
                input=input,
                output=output,
                error=error,
                duration_ms=duration_ms,
                retry_count=retry_count,
            )
        )

    async def _finish(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        ctx: ExecutionContext,
        error: Optional[str] = None,
    ) -> WorkflowExecution:
        latest = await self.repository.get_execution(execution.id)
        if latest is not None and latest.status == ExecutionStatus.CANCELLED:
            latest.result = ctx.step_results
            latest.current_step = execution.current_step
            latest.completed_at = latest.completed_at or utcnow()
            await self.repository.update_execution(latest)
            return latest

        execution.status = status
        execution.result = ctx.step_results
        execution.error = error
        execution.completed_at = utcnow()
        if status == ExecutionStatus.COMPLETED:
            execution.output_hash = compute_hash(ctx.step_results)
            logger.info(f"Execution {execution.id} completed")
        else:
            logger.error(f"Execution {execution.id} {status.value}: {error}")
        await self.repository.update_execution(execution)
        return execution


__all__ = ["WorkflowEngine"]
