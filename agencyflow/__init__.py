"""agencyflow: signal-driven workflow automation for agency operations."""

from .consumer import SignalConsumer
from .contracts import Signal, SignalRoute, Workflow, WorkflowEvent, WorkflowExecution
from .dispatch import SignalDispatcher
from .engine import WorkflowEngine
from .idempotency import IdempotencyCoordinator
from .persistence import get_repository
from .rules import RuleEvaluator, RuleService
from .runtime import build_core
from .signals import SignalRouter, SignalStore
from .transports import get_transport
from .workflows import WorkflowRegistry

__version__ = "0.1.0"
__all__ = [
    "IdempotencyCoordinator",
    "RuleEvaluator",
    "RuleService",
    "Signal",
    "SignalConsumer",
    "SignalDispatcher",
    "SignalRoute",
    "SignalRouter",
    "SignalStore",
    "Workflow",
    "WorkflowEngine",
    "WorkflowEvent",
    "WorkflowExecution",
    "WorkflowRegistry",
    "build_core",
    "get_repository",
    "get_transport",
]
