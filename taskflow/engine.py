"""Wiring of the engine components behind one Python API."""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .config import AppConfig
from .core.clock import Clock, SystemClock
from .core.definition_store import DefinitionStore
from .core.execution_log import ExecutionLog
from .core.executor_registry import Executor, ExecutorRegistry
from .core.leases import MutexLeaseTable
from .core.logging import get_logger
from .core.recovery import RecoveryManager
from .core.scheduler import Scheduler
from .core.schedules import ScheduleService
from .core.state_machine import InstanceStateMachine
from .core.supervisor import RetrySupervisor
from .models.core import (
    ExecutionLogEntry,
    InstanceStatus,
    LogLevel,
    LoopExecution,
    NodeExecution,
    Page,
    WorkflowDefinition,
    WorkflowInstance,
)
from .storage.database import Database
from .storage.repository import WorkflowRepository

logger = get_logger(__name__)


class WorkflowEngine:
    """
    All engine components sharing one database, clock and engine identity.

    Typical use::

        engine = WorkflowEngine(Database("sqlite:///taskflow.db"))
        engine.register_executor("fetch", fetch)
        engine.deploy(definition)
        instance = engine.create_instance("etl", input_data={...}, start=True)
        engine.start()
    """

    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        engine_instance_id: Optional[str] = None,
        executor_registry: Optional[ExecutorRegistry] = None,
        max_concurrent_nodes: int = 10,
        scheduler_workers: int = 2,
        tick_interval: float = 0.5,
        heartbeat_interval: float = 5.0,
        lease_timeout: float = 30.0,
        recovery_interval: float = 10.0,
        executor_pool_size: Optional[int] = None
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.engine_instance_id = engine_instance_id or f"engine-{uuid.uuid4().hex[:8]}"
        self.repository = WorkflowRepository(database)
        self.definitions = DefinitionStore(self.repository)
        self.executors = executor_registry or ExecutorRegistry()
        self.execution_log = ExecutionLog(self.repository, self.clock, self.engine_instance_id)
        self.state_machine = InstanceStateMachine(
            self.repository, self.definitions, self.execution_log, self.clock
        )
        self.supervisor = RetrySupervisor(self.clock)
        self.leases = MutexLeaseTable()
        self.schedules = ScheduleService(self.repository, self.state_machine, self.definitions, self.clock)
        self.scheduler = Scheduler(
            self.state_machine,
            self.definitions,
            self.executors,
            self.supervisor,
            self.repository,
            self.clock,
            leases=self.leases,
            max_concurrent_nodes=max_concurrent_nodes,
            scheduler_workers=scheduler_workers,
            tick_interval=tick_interval,
            heartbeat_interval=heartbeat_interval,
            executor_pool_size=executor_pool_size,
            schedules=self.schedules
        )
        self.recovery = RecoveryManager(
            self.scheduler, self.repository, self.clock,
            lease_timeout=lease_timeout, interval=recovery_interval
        )
        self._started = False

    @classmethod
    def from_config(cls, config: AppConfig, database: Optional[Database] = None,
                    clock: Optional[Clock] = None) -> "WorkflowEngine":
        return cls(
            database or Database(config.database_url, echo=config.database_echo),
            clock=clock,
            engine_instance_id=config.engine_instance_id,
            max_concurrent_nodes=config.max_concurrent_nodes,
            scheduler_workers=config.scheduler_workers,
            tick_interval=config.tick_interval,
            heartbeat_interval=config.heartbeat_interval,
            lease_timeout=config.lease_timeout,
            recovery_interval=config.recovery_interval,
            executor_pool_size=config.executor_pool_size
        )

    # Lifecycle

    def start(self, background: bool = True):
        """Create tables, recover stale attempts and (optionally) start the loops."""
        self.database.create_tables()
        report = self.recovery.sweep()
        logger.info(
            f"Engine {self.engine_instance_id} starting; recovery reclaimed "
            f"{len(report['reclaimed'])} attempts"
        )
        if background:
            self.scheduler.start()
            self.recovery.start()
        self._started = True

    def shutdown(self, wait: bool = True):
        self.recovery.stop()
        self.scheduler.stop(wait=wait)
        self._started = False
        logger.info(f"Engine {self.engine_instance_id} shut down")

    # Executors and definitions

    def register_executor(self, ref: str, executor: Union[Executor, Callable], description: str = "") -> Executor:
        return self.executors.register(ref, executor, description)

    def deploy(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a definition as a new draft version and publish it."""
        created = self.definitions.create(definition)
        return self.definitions.publish(created.name, created.version)

    # Instances

    def create_instance(
        self,
        definition_name: str,
        definition_version: Optional[int] = None,
        input_data: Optional[Dict[str, Any]] = None,
        business_key: Optional[str] = None,
        mutex_key: Optional[str] = None,
        priority: int = 0,
        start: bool = False
    ) -> WorkflowInstance:
        instance = self.state_machine.create_instance(
            definition_name, definition_version, input_data, business_key, mutex_key, priority, start
        )
        if start:
            self.scheduler.wake(instance.id)
        return instance

    def start_instance(self, instance_id: str) -> WorkflowInstance:
        return self.scheduler.start_instance(instance_id)

    def pause_instance(self, instance_id: str) -> WorkflowInstance:
        return self.scheduler.pause_instance(instance_id)

    def resume_instance(self, instance_id: str) -> WorkflowInstance:
        return self.scheduler.resume_instance(instance_id)

    def cancel_instance(self, instance_id: str, reason: str = "cancel requested") -> WorkflowInstance:
        return self.scheduler.cancel_instance(instance_id, reason)

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.state_machine.get_instance(instance_id)

    def get_instance_by_business_key(self, business_key: str) -> WorkflowInstance:
        return self.state_machine.get_by_business_key(business_key)

    def list_instances(self, status: Optional[InstanceStatus] = None, definition_name: Optional[str] = None,
                       page: int = 1, page_size: int = 20) -> Page[WorkflowInstance]:
        return self.state_machine.list_instances(status, definition_name, page, page_size)

    def node_executions(self, instance_id: str, node_id: Optional[str] = None) -> List[NodeExecution]:
        return self.state_machine.node_executions(instance_id, node_id)

    def loop_executions(self, instance_id: str) -> List[LoopExecution]:
        return self.state_machine.loop_executions(instance_id)

    def query_logs(
        self,
        instance_id: str,
        node_id: Optional[str] = None,
        level: Optional[LogLevel] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Page[ExecutionLogEntry]:
        self.state_machine.get_instance(instance_id)
        return self.execution_log.query(instance_id, node_id, level, start_time, end_time, page, page_size)

    def run(self, instance_id: str, timeout: float = 10.0) -> WorkflowInstance:
        """Drive an instance on the calling thread until it is terminal."""
        return self.scheduler.run_until_complete(instance_id, timeout=timeout)

    def recover(self) -> Dict[str, Any]:
        return self.recovery.sweep()

    def status(self) -> Dict[str, Any]:
        return {
            "engine_instance_id": self.engine_instance_id,
            "started": self._started,
            "scheduler": self.scheduler.get_status(),
            "executors": len(self.executors.list_executors()),
            "last_recovery": self.recovery.last_report,
        }
