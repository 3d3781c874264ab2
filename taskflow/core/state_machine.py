"""Instance state machine: the only writer of WorkflowInstance and of attempt terminal statuses."""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..models.core import (
    DefinitionStatus,
    ErrorKind,
    ExecutionLogEntry,
    InstanceStatus,
    LogLevel,
    LoopExecution,
    NodeExecution,
    NodeExecutionStatus,
    Page,
    WorkflowInstance,
)
from ..storage.repository import WorkflowRepository
from .clock import Clock
from .definition_store import DefinitionStore
from .exceptions import (
    ConflictError,
    InstanceNotFoundError,
    InvalidTransitionError,
)
from .execution_log import ExecutionLog
from .logging import get_logger, set_logging_context, clear_logging_context
from .resolver import DefinitionGraph

logger = get_logger(__name__)

_TRANSITIONS = {
    InstanceStatus.PENDING: {InstanceStatus.RUNNING, InstanceStatus.FAILED, InstanceStatus.CANCELLED},
    InstanceStatus.RUNNING: {
        InstanceStatus.PAUSED, InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED
    },
    InstanceStatus.PAUSED: {InstanceStatus.RUNNING, InstanceStatus.FAILED, InstanceStatus.CANCELLED},
    InstanceStatus.COMPLETED: set(),
    InstanceStatus.FAILED: set(),
    InstanceStatus.CANCELLED: set(),
}

Listener = Callable[[WorkflowInstance, InstanceStatus, InstanceStatus], None]


class Transition:
    """Changes to one instance collected under its lock and committed together."""

    def __init__(self, machine: "InstanceStateMachine", instance: WorkflowInstance):
        self.machine = machine
        self.instance = instance
        self.log_entries: List[ExecutionLogEntry] = []
        self.new_instances: List[WorkflowInstance] = []
        self.status_changes: List[Tuple[InstanceStatus, InstanceStatus]] = []
        self._executions: Dict[Tuple[str, int], NodeExecution] = {}
        self._loops: Dict[str, LoopExecution] = {}
        self._staged: Set[Tuple[str, int]] = set()
        self._staged_loops: Set[str] = set()
        self._on_commit: List[Callable[[], None]] = []
        self._on_rollback: List[Callable[[], None]] = []
        self.dirty = False

    @property
    def instance_id(self) -> str:
        return self.instance.id

    def log(self, message: str, level: LogLevel = LogLevel.INFO, node_id: Optional[str] = None,
            **details: Any):
        self.log_entries.append(
            self.machine.execution_log.entry(self.instance.id, message, level, node_id, details)
        )

    def touch(self):
        self.dirty = True

    def execution(self, node_id: str, attempt: int) -> Optional[NodeExecution]:
        key = (node_id, attempt)
        if key not in self._executions:
            found = self.machine.repository.get_node_execution(self.instance.id, node_id, attempt)
            if found is None:
                return None
            self._executions[key] = found
        return self._executions[key]

    def stage_execution(self, execution: NodeExecution):
        key = (execution.node_id, execution.attempt)
        self._executions[key] = execution
        self._staged.add(key)
        self.dirty = True

    def loop(self, node_id: str) -> Optional[LoopExecution]:
        if node_id not in self._loops:
            found = self.machine.repository.get_loop_execution(self.instance.id, node_id)
            if found is None:
                return None
            self._loops[node_id] = found
        return self._loops[node_id]

    def stage_loop(self, loop: LoopExecution):
        self._loops[loop.node_id] = loop
        self._staged_loops.add(loop.node_id)
        self.dirty = True

    def add_instance(self, instance: WorkflowInstance):
        self.new_instances.append(instance)
        self.dirty = True

    def on_commit(self, action: Callable[[], None]):
        """Run ``action`` once the transition is persisted (still under the instance lock)."""
        self._on_commit.append(action)

    def on_rollback(self, action: Callable[[], None]):
        self._on_rollback.append(action)

    @property
    def staged_executions(self) -> List[NodeExecution]:
        return [self._executions[key] for key in self._staged]

    @property
    def staged_loops(self) -> List[LoopExecution]:
        return [self._loops[node_id] for node_id in self._staged_loops]

    def has_changes(self) -> bool:
        return self.dirty or bool(self.log_entries)


class InstanceStateMachine:
    """Owns instance status and every mutation of instance state.

    All mutations run inside :meth:`transition`, which holds the instance's
    re-entrant lock, so two node completions of one instance are never
    applied concurrently. Listeners are told about status changes after the
    lock is released.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        definition_store: DefinitionStore,
        execution_log: ExecutionLog,
        clock: Clock
    ):
        self.repository = repository
        self.definition_store = definition_store
        self.execution_log = execution_log
        self.clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: List[Listener] = []
        self._local = threading.local()
        logger.info(f"InstanceStateMachine initialized for engine {execution_log.engine_instance_id}")

    @property
    def engine_instance_id(self) -> str:
        return self.execution_log.engine_instance_id

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    # Locking and transitions

    def _lock_for(self, instance_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[instance_id] = lock
            return lock

    @contextmanager
    def lock(self, instance_id: str) -> Iterator[None]:
        """Single-writer critical section of one instance."""
        with self._lock_for(instance_id):
            yield

    def _open_transitions(self) -> Dict[str, Transition]:
        open_tx = getattr(self._local, "open", None)
        if open_tx is None:
            open_tx = {}
            self._local.open = open_tx
        return open_tx

    @contextmanager
    def transition(self, instance_id: str) -> Iterator[Transition]:
        """
        Open (or join) the transition of an instance.

        The outermost transition commits instance, attempts, loop records and
        log entries in one storage transaction, then runs on-commit actions
        and finally notifies listeners outside the lock.

        Raises:
            InstanceNotFoundError: If the instance does not exist
            StorageError: If the commit fails after retries
        """
        open_tx = self._open_transitions()
        if instance_id in open_tx:
            yield open_tx[instance_id]
            return

        with self.lock(instance_id):
            tx = Transition(self, self._load(instance_id))
            open_tx[instance_id] = tx
            try:
                yield tx
                if tx.has_changes():
                    tx.instance.updated_at = self.clock.now()
                    self.repository.commit_changes(
                        instance=tx.instance,
                        node_executions=tx.staged_executions,
                        loop_executions=tx.staged_loops,
                        log_entries=tx.log_entries,
                        new_instances=tx.new_instances
                    )
            except BaseException:
                for action in tx._on_rollback:
                    action()
                raise
            finally:
                del open_tx[instance_id]
            for action in tx._on_commit:
                action()

        for old_status, new_status in tx.status_changes:
            self._notify(tx.instance, old_status, new_status)

    def _notify(self, instance: WorkflowInstance, old_status: InstanceStatus, new_status: InstanceStatus):
        for listener in self._listeners:
            try:
                listener(instance, old_status, new_status)
            except Exception as e:
                logger.error(f"Transition listener failed for {instance.id}: {str(e)}", exc_info=True)

    def _load(self, instance_id: str) -> WorkflowInstance:
        instance = self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found", instance_id=instance_id)
        return instance

    def _set_status(self, tx: Transition, new_status: InstanceStatus, reason: Optional[str] = None,
                    level: LogLevel = LogLevel.INFO):
        instance = tx.instance
        old_status = instance.status
        if new_status not in _TRANSITIONS[old_status]:
            raise InvalidTransitionError(
                f"Instance {instance.id} cannot move from {old_status.value} to {new_status.value}",
                instance_id=instance.id,
                current_status=old_status.value,
                requested_status=new_status.value
            )
        now = self.clock.now()
        instance.status = new_status
        if new_status == InstanceStatus.RUNNING and instance.started_at is None:
            instance.started_at = now
        if instance.is_terminal:
            instance.completed_at = now
            instance.current_node_id = None
        tx.touch()
        tx.status_changes.append((old_status, new_status))
        message = f"Instance {old_status.value} -> {new_status.value}"
        if reason:
            message += f": {reason}"
        tx.log(message, level, from_status=old_status.value, to_status=new_status.value)

    # Instance lifecycle

    def create_instance(
        self,
        definition_name: str,
        definition_version: Optional[int] = None,
        input_data: Optional[Dict[str, Any]] = None,
        business_key: Optional[str] = None,
        mutex_key: Optional[str] = None,
        priority: int = 0,
        start: bool = False,
        parent_instance_id: Optional[str] = None,
        parent_node_id: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Create a pending instance of an active, enabled definition.

        Args:
            definition_name: Definition to instantiate
            definition_version: Version; latest active when omitted
            input_data: Instance input
            business_key: Caller correlation id
            mutex_key: Serializes instances sharing the key
            priority: Mutex queue priority
            start: Request start immediately
            parent_instance_id: Set for subprocess children
            parent_node_id: Set for subprocess children

        Returns:
            The created instance

        Raises:
            DefinitionNotFoundError: If the definition does not exist
            ConflictError: If the definition is not active or is disabled
        """
        instance = self.build_instance(
            definition_name, definition_version, input_data, business_key, mutex_key, priority,
            start, parent_instance_id, parent_node_id
        )
        set_logging_context(instance_id=instance.id, operation="create_instance")
        try:
            entry = self.execution_log.entry(
                instance.id,
                f"Instance created from {instance.definition_name} v{instance.definition_version}",
                details={"business_key": business_key, "mutex_key": mutex_key, "start": start}
            )
            self.repository.commit_changes(new_instances=[instance], log_entries=[entry])
            logger.info(f"Created instance {instance.id}")
            return instance
        finally:
            clear_logging_context()

    def build_instance(
        self,
        definition_name: str,
        definition_version: Optional[int] = None,
        input_data: Optional[Dict[str, Any]] = None,
        business_key: Optional[str] = None,
        mutex_key: Optional[str] = None,
        priority: int = 0,
        start: bool = False,
        parent_instance_id: Optional[str] = None,
        parent_node_id: Optional[str] = None
    ) -> WorkflowInstance:
        """Validate the definition and build (without storing) a pending instance."""
        if definition_version is None:
            definition = self.definition_store.get_latest_active(definition_name)
        else:
            definition = self.definition_store.get(definition_name, definition_version)
        if definition.status != DefinitionStatus.ACTIVE:
            raise ConflictError(
                f"Definition {definition.name} v{definition.version} is {definition.status.value}; "
                f"only active definitions can be instantiated"
            )
        if not definition.enabled:
            raise ConflictError(f"Definition {definition.name} v{definition.version} is disabled")
        now = self.clock.now()
        return WorkflowInstance(
            id=str(uuid.uuid4()),
            definition_name=definition.name,
            definition_version=definition.version,
            business_key=business_key,
            mutex_key=mutex_key,
            priority=priority,
            input_data=dict(input_data or {}),
            parent_instance_id=parent_instance_id,
            parent_node_id=parent_node_id,
            start_requested_at=now if start else None,
            created_at=now,
            updated_at=now
        )

    def request_start(self, instance_id: str) -> WorkflowInstance:
        """
        Ask the scheduler to start a pending instance.

        Repeated requests are no-ops. The instance moves to running when the
        scheduler first drives it (after acquiring its mutex, if any).

        Raises:
            InvalidTransitionError: If the instance is not pending
        """
        with self.transition(instance_id) as tx:
            instance = tx.instance
            if instance.status != InstanceStatus.PENDING:
                raise InvalidTransitionError(
                    f"Instance {instance_id} is {instance.status.value} and cannot be started",
                    instance_id=instance_id,
                    current_status=instance.status.value,
                    requested_status=InstanceStatus.RUNNING.value
                )
            if instance.start_requested_at is None:
                instance.start_requested_at = self.clock.now()
                tx.touch()
                tx.log("Start requested")
        return tx.instance

    def start(self, tx: Transition):
        self._set_status(tx, InstanceStatus.RUNNING, "started")

    def pause(self, instance_id: str) -> WorkflowInstance:
        """Stop dispatching new nodes; in-flight attempts may finish."""
        with self.transition(instance_id) as tx:
            self._set_status(tx, InstanceStatus.PAUSED, "pause requested")
        return tx.instance

    def resume(self, instance_id: str) -> WorkflowInstance:
        """Allow dispatching again; the scheduler re-runs the resolver."""
        with self.transition(instance_id) as tx:
            self._set_status(tx, InstanceStatus.RUNNING, "resume requested")
        return tx.instance

    def cancel(self, instance_id: str, reason: str = "cancel requested") -> WorkflowInstance:
        """
        Cancel a non-terminal instance.

        In-flight attempts are marked cancelled when their executor returns or
        times out; completed nodes are left untouched.

        Raises:
            InvalidTransitionError: If the instance is already terminal
        """
        with self.transition(instance_id) as tx:
            self.cancel_in(tx, reason)
        return tx.instance

    def cancel_in(self, tx: Transition, reason: str):
        tx.instance.error_kind = ErrorKind.CANCELLED
        tx.instance.error_message = reason
        self._set_status(tx, InstanceStatus.CANCELLED, reason, LogLevel.WARN)

    def complete(self, tx: Transition):
        self._set_status(tx, InstanceStatus.COMPLETED, "all nodes completed")

    def fail(self, tx: Transition, message: str, kind: ErrorKind):
        """Terminal failure carrying failed_nodes, node_errors, error_message and error_kind."""
        tx.instance.error_message = message
        tx.instance.error_kind = kind
        self._set_status(tx, InstanceStatus.FAILED, message, LogLevel.ERROR)

    def fail_instance(self, instance_id: str, message: str, kind: ErrorKind = ErrorKind.INFRASTRUCTURE) -> WorkflowInstance:
        """Fail an instance from outside a running transition (engine faults)."""
        with self.transition(instance_id) as tx:
            if not tx.instance.is_terminal:
                self.fail(tx, message, kind)
        return tx.instance

    def try_complete(self, tx: Transition, graph: DefinitionGraph) -> bool:
        """Complete a running instance whose top-level nodes are all completed."""
        instance = tx.instance
        if instance.status != InstanceStatus.RUNNING:
            return False
        completed = set(instance.completed_nodes)
        failed = set(instance.failed_nodes)
        top_level = graph.scope()
        if all(node_id in completed for node_id in top_level) and not failed.intersection(top_level):
            self.complete(tx)
            return True
        return False

    # Node bookkeeping

    def record_dispatch(
        self,
        tx: Transition,
        node_id: str,
        attempt: int,
        input_data: Dict[str, Any],
        parent_node_id: Optional[str] = None
    ) -> NodeExecution:
        """Create the running NodeExecution of an attempt, carrying this engine's lease."""
        if tx.execution(node_id, attempt) is not None:
            raise ConflictError(f"Attempt {attempt} of node {node_id} already exists in {tx.instance_id}")
        now = self.clock.now()
        execution = NodeExecution(
            instance_id=tx.instance_id,
            node_id=node_id,
            parent_node_id=parent_node_id,
            attempt=attempt,
            status=NodeExecutionStatus.RUNNING,
            start_time=now,
            input_data=input_data,
            engine_instance_id=self.engine_instance_id,
            heartbeat_at=now
        )
        tx.stage_execution(execution)
        tx.instance.current_node_id = node_id
        tx.touch()
        tx.log(f"Node {node_id} attempt {attempt} dispatched", LogLevel.DEBUG, node_id, attempt=attempt)
        return execution

    def finish_attempt(
        self,
        tx: Transition,
        node_id: str,
        attempt: int,
        status: NodeExecutionStatus,
        output_data: Any = None,
        error_message: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None
    ) -> Optional[NodeExecution]:
        """
        Write the terminal status of an attempt exactly once.

        Returns:
            The updated execution, or None when the attempt is unknown or
            already terminal (replayed or late results)
        """
        execution = tx.execution(node_id, attempt)
        if execution is None or execution.status != NodeExecutionStatus.RUNNING:
            logger.debug(f"Ignoring result for {tx.instance_id}/{node_id} attempt {attempt}: not running")
            return None
        execution = execution.model_copy(update={
            "status": status,
            "end_time": self.clock.now(),
            "output_data": output_data if output_data is not None else execution.output_data,
            "error_message": error_message,
            "error_kind": error_kind,
        })
        tx.stage_execution(execution)
        level = LogLevel.INFO if status == NodeExecutionStatus.SUCCESS else LogLevel.WARN
        message = f"Node {node_id} attempt {attempt} {status.value}"
        if error_message:
            message += f": {error_message}"
        tx.log(message, level, node_id, attempt=attempt, error_kind=error_kind.value if error_kind else None)
        return execution

    def update_execution_output(self, tx: Transition, node_id: str, attempt: int, output_data: Any):
        """Record progress data (e.g. a subprocess child id) on a running attempt."""
        execution = tx.execution(node_id, attempt)
        if execution is not None:
            tx.stage_execution(execution.model_copy(update={"output_data": output_data}))

    def mark_retry(self, tx: Transition, node_id: str, attempt: int, not_before: Optional[datetime]):
        """Persist the backoff of the retry a failed attempt scheduled, so a restart keeps it."""
        execution = tx.execution(node_id, attempt)
        if execution is not None:
            tx.stage_execution(execution.model_copy(update={"retry_not_before": not_before}))

    def complete_node(self, tx: Transition, node_id: str, output_data: Any = None):
        """Mark a node completed and append it to the execution path once."""
        instance = tx.instance
        if node_id in instance.completed_nodes:
            return
        instance.completed_nodes = instance.completed_nodes + [node_id]
        instance.execution_path = instance.execution_path + [node_id]
        instance.output_data = {**instance.output_data, node_id: output_data}
        instance.node_errors = {k: v for k, v in instance.node_errors.items() if k != node_id}
        tx.touch()
        tx.log(f"Node {node_id} completed", LogLevel.INFO, node_id)

    def skip_node(self, tx: Transition, node_id: str, reason: str):
        """Mark a node skipped; it counts as satisfied for its dependents."""
        instance = tx.instance
        if node_id in instance.completed_nodes:
            return
        instance.completed_nodes = instance.completed_nodes + [node_id]
        instance.skipped_nodes = instance.skipped_nodes + [node_id]
        tx.touch()
        tx.log(f"Node {node_id} skipped: {reason}", LogLevel.INFO, node_id, reason=reason)

    def fail_node(self, tx: Transition, node_id: str, error_message: str, error_kind: ErrorKind):
        """Record a node that exhausted its retries."""
        instance = tx.instance
        if node_id in instance.failed_nodes or node_id in instance.completed_nodes:
            return
        instance.failed_nodes = instance.failed_nodes + [node_id]
        instance.node_errors = {**instance.node_errors, node_id: error_message}
        tx.touch()
        tx.log(
            f"Node {node_id} failed: {error_message}", LogLevel.ERROR, node_id,
            error_kind=error_kind.value
        )

    # Queries

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self._load(instance_id)

    def get_by_business_key(self, business_key: str) -> WorkflowInstance:
        instance = self.repository.get_instance_by_business_key(business_key)
        if instance is None:
            raise InstanceNotFoundError(f"No instance with business key '{business_key}'")
        return instance

    def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        definition_name: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Page[WorkflowInstance]:
        items, total = self.repository.list_instances(status, definition_name, page, page_size)
        return Page[WorkflowInstance].build(items, total, page, page_size)

    def node_executions(self, instance_id: str, node_id: Optional[str] = None) -> List[NodeExecution]:
        self._load(instance_id)
        return self.repository.list_node_executions(instance_id, node_id)

    def loop_executions(self, instance_id: str) -> List[LoopExecution]:
        self._load(instance_id)
        return self.repository.list_loop_executions(instance_id)
