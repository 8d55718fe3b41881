"""Shared fixtures for agencyflow tests."""

from typing import List

import pytest

from agencyflow.contracts import Workflow, WorkflowStatus
from agencyflow.engine import LoggingActionDispatcher, WorkflowEngine
from agencyflow.persistence import InMemoryAutomationRepository, reset_repository
from agencyflow.rules import RuleService


class RecordingSleep:
    """Stands in for ``asyncio.sleep`` so retry delays are observable and instant."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep tests independent of any config file or env in the caller's shell."""
    monkeypatch.setenv("AGENCYFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))
    for name in (
        "AGENCYFLOW_DATABASE_URL",
        "DATABASE_URL",
        "AGENCYFLOW_TRANSPORT",
        "AGENCYFLOW_ROUTING_POLICY",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_repository()
    yield
    reset_repository()


@pytest.fixture
def repo():
    return InMemoryAutomationRepository()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def actions():
    return LoggingActionDispatcher()


@pytest.fixture
def engine(repo, sleeper, actions):
    return WorkflowEngine(repo, action_dispatcher=actions, sleep=sleeper)


@pytest.fixture
def rule_service(repo):
    return RuleService(repo)


def make_workflow(steps, tenant_id="acme", **kwargs) -> Workflow:
    kwargs.setdefault("status", WorkflowStatus.ACTIVE)
    return Workflow.model_validate(
        {"tenant_id": tenant_id, "name": kwargs.pop("name", "test workflow"), "steps": steps, **kwargs}
    )


@pytest.fixture
def build_workflow():
    return make_workflow
