"""Pytest configuration and fixtures."""

from typing import List

import pytest

from taskflow.core.clock import ManualClock
from taskflow.engine import WorkflowEngine
from taskflow.executors import register_builtin_executors
from taskflow.models.core import TaskNode, WorkflowConfig, WorkflowDefinition
from taskflow.storage.database import Database


@pytest.fixture
def database():
    """Fresh in-memory database with all tables."""
    db = Database("sqlite:///:memory:")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def max_concurrent_nodes():
    """Executor ceiling of the engine fixture; parametrize to override."""
    return 4


@pytest.fixture
def engine(database, clock, max_concurrent_nodes):
    """Engine pumped synchronously by the tests (no background threads)."""
    workflow_engine = WorkflowEngine(
        database,
        clock=clock,
        engine_instance_id="engine-test",
        max_concurrent_nodes=max_concurrent_nodes,
        heartbeat_interval=1.0,
        lease_timeout=5.0
    )
    register_builtin_executors(workflow_engine.executors)
    workflow_engine.start(background=False)
    yield workflow_engine
    workflow_engine.shutdown(wait=False)


@pytest.fixture
def deploy(engine):
    """Create and publish a definition; retries have no backoff unless overridden."""

    def _deploy(name: str, nodes: List[TaskNode], **config) -> WorkflowDefinition:
        config.setdefault("retry_base_delay", 0)
        definition = WorkflowDefinition(name=name, nodes=nodes, config=WorkflowConfig(**config))
        return engine.deploy(definition)

    return _deploy


@pytest.fixture
def run(engine):
    """Create a started instance and drive it to a terminal status."""

    def _run(name: str, input_data=None, timeout: float = 10.0, **kwargs):
        instance = engine.create_instance(name, input_data=input_data, start=True, **kwargs)
        return engine.run(instance.id, timeout=timeout)

    return _run
