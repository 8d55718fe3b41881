"""Per-execution state shared by step handlers."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from ..rules.models import EvaluationContext
from ..utils import get_path

_TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def render_template(template: str, data: Dict[str, Any]) -> str:
    """Replace ``{{ dotted.path }}`` markers; unresolved paths render as ``""``."""

    def _substitute(match: re.Match) -> str:
        value = get_path(data, match.group(1))
        return "" if value is None else str(value)

    return _TEMPLATE_PATTERN.sub(_substitute, template)


def render_value(value: Any, data: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, data)
    if isinstance(value, dict):
        return {key: render_value(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, data) for item in value]
    return value


@dataclass
class ExecutionContext:
    """Mutable accumulator threaded through one execution.

    ``data`` starts as the trigger payload and is never rebound; step outputs
    accumulate in ``step_results`` keyed by step id.
    """

    tenant_id: str
    execution_id: str
    workflow_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    in_flight: Set[str] = field(default_factory=set)

    @property
    def signal_type(self) -> Optional[str]:
        return self.metadata.get("signal_type")

    def snapshot(self) -> "ExecutionContext":
        """Independent copy handed to each parallel sub-step."""
        return ExecutionContext(
            tenant_id=self.tenant_id,
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            data=copy.deepcopy(self.data),
            step_results=copy.deepcopy(self.step_results),
            metadata=dict(self.metadata),
            in_flight=self.in_flight,
        )

    def template_data(self) -> Dict[str, Any]:
        merged = dict(self.data)
        merged["steps"] = self.step_results
        merged["metadata"] = self.metadata
        merged.setdefault("signal", self.data)
        return merged

    def rule_context(self) -> EvaluationContext:
        def _mapping(key: str) -> Dict[str, Any]:
            value = self.data.get(key)
            return value if isinstance(value, dict) else {}

        history = self.data.get("history")
        return EvaluationContext(
            signal=self.data,
            client=_mapping("client"),
            project=_mapping("project"),
            steps=self.step_results,
            history=history if isinstance(history, list) else [],
            previous=_mapping("previous"),
        )
