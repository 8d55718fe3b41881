"""External collaborators the engine delegates to.

The engine only records their inputs, outputs and timing; side-effect
idempotency is the collaborator's responsibility.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from pydantic_ai import Agent
from pydantic_ai.models import Model

from ..exceptions import StepExecutionError
from ..utils import compute_hash

logger = logging.getLogger(__name__)


@runtime_checkable
class ActionDispatcher(Protocol):
    async def dispatch(
        self, action_type: str, config: Dict[str, Any], context: Dict[str, Any]
    ) -> Any: ...


@runtime_checkable
class AIGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        use_cache: bool = False,
    ) -> Any: ...


@runtime_checkable
class AgentInvoker(Protocol):
    async def invoke(
        self,
        domain: Optional[str],
        operation: str,
        capability: Optional[str],
        input: Dict[str, Any],
    ) -> Any: ...


class LoggingActionDispatcher:
    """Default dispatcher: logs the action and echoes its config back."""

    def __init__(self) -> None:
        self.dispatched: List[Dict[str, Any]] = []

    async def dispatch(
        self, action_type: str, config: Dict[str, Any], context: Dict[str, Any]
    ) -> Any:
        if action_type == "log":
            logger.info(f"[workflow log] {config.get('message', '')}")
        else:
            logger.info(f"Dispatching action {action_type}")
        self.dispatched.append({"action_type": action_type, "config": config})
        return {"dispatched": True, "action_type": action_type, "config": config}


SCHEMA_INSTRUCTIONS = (
    "Respond with a single JSON document that validates against this JSON schema. "
    "Do not wrap it in markdown.\n{schema}"
)


class PydanticAIGenerator:
    """``AIGenerator`` backed by a ``pydantic_ai.Agent``.

    When a schema is given the model is asked for JSON and the reply is
    parsed; anything that is not a JSON document fails the step. Cached
    replies are keyed by the canonical hash of prompt and schema.
    """

    def __init__(
        self,
        model: Union[Model, str, None] = None,
        *,
        agent: Optional[Agent] = None,
        system_prompt: str = "You are an operations assistant for a digital agency.",
    ):
        if agent is None and model is None:
            raise ValueError("PydanticAIGenerator needs a model or an agent")
        self.agent = agent or Agent(model, system_prompt=system_prompt)
        self.provider = str(getattr(self.agent.model, "model_name", None) or model or "agent")
        self._cache: Dict[str, Any] = {}

    async def generate(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        use_cache: bool = False,
    ) -> Any:
        cache_key = compute_hash({"prompt": prompt, "schema": schema})
        if use_cache and cache_key in self._cache:
            logger.debug(f"AI cache hit {cache_key[:12]}")
            return self._cache[cache_key]

        full_prompt = prompt
        if schema:
            full_prompt = f"{prompt}\n\n{SCHEMA_INSTRUCTIONS.format(schema=json.dumps(schema))}"
        result = await self.agent.run(full_prompt)
        output = result.output

        if schema:
            try:
                output = json.loads(output) if isinstance(output, str) else output
            except json.JSONDecodeError as exc:
                raise StepExecutionError(
                    f"AI response is not valid JSON: {exc}",
                    details={"response": str(output)[:500]},
                ) from exc

        if use_cache:
            self._cache[cache_key] = output
        return output


__all__ = [
    "AIGenerator",
    "ActionDispatcher",
    "AgentInvoker",
    "LoggingActionDispatcher",
    "PydanticAIGenerator",
]
