"""
Scheduler that drives workflow instances.

Every state change happens inside the instance's transition; executors run on
a bounded worker pool and report back through an event queue, so no thread
ever blocks waiting on a node (subprocess children included).
"""

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from ..models.core import (
    ErrorKind,
    InstanceStatus,
    NodeExecution,
    NodeExecutionStatus,
    NodeType,
    TERMINAL_INSTANCE_STATUSES,
    WorkflowInstance,
)
from ..storage.repository import WorkflowRepository
from .clock import Clock
from .definition_store import DefinitionStore
from .exceptions import (
    InstanceNotFoundError,
    InvalidTransitionError,
    SchedulerError,
    WorkflowEngineError,
)
from .executor_registry import ExecutionContext, Executor, ExecutorRegistry
from .leases import MutexLeaseTable
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_handlers import HANDLERS, InFlight, UnitKey, UnitOutcome, fail_exhausted
from .resolver import DefinitionGraph, DependencyResolver, EvaluationContext
from .schedules import ScheduleService
from .state_machine import InstanceStateMachine, Transition
from .supervisor import RetrySupervisor

logger = get_logger(__name__)

_TICK = "tick"
_RESULT = "result"
_CHILD = "child"
_WAKE = "wake"


class Scheduler:
    """
    Dispatches ready nodes of running instances and applies their results.

    The scheduler can run its own worker threads (:meth:`start`) or be pumped
    synchronously by the caller (:meth:`pump`, :meth:`run_until_complete`),
    which tests use together with a ManualClock.
    """

    def __init__(
        self,
        state_machine: InstanceStateMachine,
        definition_store: DefinitionStore,
        executor_registry: ExecutorRegistry,
        supervisor: RetrySupervisor,
        repository: WorkflowRepository,
        clock: Clock,
        leases: Optional[MutexLeaseTable] = None,
        resolver: Optional[DependencyResolver] = None,
        max_concurrent_nodes: int = 10,
        scheduler_workers: int = 2,
        tick_interval: float = 0.5,
        heartbeat_interval: float = 5.0,
        executor_pool_size: Optional[int] = None,
        schedules: Optional[ScheduleService] = None
    ):
        if max_concurrent_nodes < 1:
            raise SchedulerError("max_concurrent_nodes must be at least 1")
        if executor_pool_size is not None and executor_pool_size < max_concurrent_nodes:
            raise SchedulerError("executor_pool_size must be at least max_concurrent_nodes")
        self.machine = state_machine
        self.store = definition_store
        self.registry = executor_registry
        self.supervisor = supervisor
        self.repository = repository
        self.clock = clock
        self.leases = leases or MutexLeaseTable()
        self.resolver = resolver or DependencyResolver()
        self.schedules = schedules
        self.max_concurrent_nodes = max_concurrent_nodes
        self.scheduler_workers = max(1, scheduler_workers)
        self.tick_interval = tick_interval
        self.heartbeat_interval = heartbeat_interval
        # Timed-out executors give their slot back but keep a worker thread
        # until they return, so the pool is larger than the slot ceiling.
        self.executor_pool_size = executor_pool_size or max_concurrent_nodes * 4

        self._events: "queue.Queue[Tuple[Any, ...]]" = queue.Queue()
        self._pool = ThreadPoolExecutor(max_workers=self.executor_pool_size, thread_name_prefix="taskflow-node")
        self._slots = threading.BoundedSemaphore(max_concurrent_nodes)
        self._in_flight: Dict[UnitKey, InFlight] = {}
        self._in_flight_lock = threading.RLock()
        self._workers_busy = 0
        self._abandoned = 0
        self._retry_gates: Dict[Tuple[str, str, bool], datetime] = {}
        self._gates_lock = threading.Lock()
        self._last_heartbeat: Optional[datetime] = None
        self._tick_pending = threading.Event()
        self._running = threading.Event()
        self._threads: List[threading.Thread] = []

        self.machine.add_listener(self._on_status_change)
        logger.info(
            f"Scheduler initialized for engine {self.engine_instance_id} "
            f"(max_concurrent_nodes={max_concurrent_nodes}, pool={self.executor_pool_size}, "
            f"workers={self.scheduler_workers})"
        )

    @property
    def engine_instance_id(self) -> str:
        return self.machine.engine_instance_id

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    # Lifecycle

    def start(self):
        """Start the event workers and the ticker."""
        if self._running.is_set():
            return
        self._running.set()
        for index in range(self.scheduler_workers):
            thread = threading.Thread(target=self._worker_loop, name=f"taskflow-scheduler-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        ticker = threading.Thread(target=self._ticker_loop, name="taskflow-ticker", daemon=True)
        ticker.start()
        self._threads.append(ticker)
        self.request_tick()
        logger.info("Scheduler started")

    def stop(self, wait: bool = True, timeout: float = 5.0):
        """Stop the workers; executors still running are abandoned to recovery."""
        self._running.clear()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._pool.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def _worker_loop(self):
        while self._running.is_set():
            try:
                event = self._events.get(timeout=0.1)
            except queue.Empty:
                continue
            self._process(event)

    def _ticker_loop(self):
        while self._running.is_set():
            time.sleep(self.tick_interval)
            self.request_tick()

    # Events

    def request_tick(self):
        if not self._tick_pending.is_set():
            self._tick_pending.set()
            self._events.put((_TICK,))

    def wake(self, instance_id: str):
        """Ask the scheduler to drive one instance soon."""
        self._events.put((_WAKE, instance_id))

    def pump(self, timeout: float = 0.0, max_events: Optional[int] = None) -> int:
        """
        Process queued events on the calling thread.

        Args:
            timeout: How long to wait for events before returning
            max_events: Stop after this many events

        Returns:
            Number of events processed
        """
        processed = 0
        deadline = time.monotonic() + timeout
        while max_events is None or processed < max_events:
            remaining = deadline - time.monotonic()
            try:
                if remaining > 0:
                    event = self._events.get(timeout=remaining)
                else:
                    event = self._events.get_nowait()
            except queue.Empty:
                break
            self._process(event)
            processed += 1
        return processed

    def tick(self):
        """Run one scheduling pass synchronously."""
        self._process((_TICK,))

    def run_until_complete(self, instance_id: str, timeout: float = 10.0,
                           poll_interval: float = 0.01) -> WorkflowInstance:
        """
        Drive until the instance is terminal.

        Raises:
            SchedulerError: If the instance is not terminal within ``timeout`` seconds
        """
        end = time.monotonic() + timeout
        while True:
            instance = self.machine.get_instance(instance_id)
            if instance.is_terminal:
                return instance
            if time.monotonic() >= end:
                raise SchedulerError(
                    f"Instance {instance_id} still {instance.status.value} after {timeout}s",
                    details={"instance_id": instance_id, "status": instance.status.value}
                )
            if self.is_running:
                time.sleep(poll_interval)
                continue
            self.tick()
            self.pump(timeout=poll_interval)

    def wait_idle(self, timeout: float = 10.0, poll_interval: float = 0.01) -> bool:
        """Pump until no executor is running and no event is queued."""
        end = time.monotonic() + timeout
        while time.monotonic() < end:
            if not self.is_running:
                self.pump(timeout=poll_interval)
            else:
                time.sleep(poll_interval)
            with self._in_flight_lock:
                busy = any(f.kind == InFlight.EXECUTOR for f in self._in_flight.values())
            if not busy and self._events.empty():
                return True
        return False

    def _process(self, event: Tuple[Any, ...]):
        kind = event[0]
        try:
            if kind == _TICK:
                self._tick_pending.clear()
                self._tick()
            elif kind == _RESULT:
                self.apply_result(event[1], event[2])
            elif kind == _CHILD:
                self._on_child_terminal(event[1])
            elif kind == _WAKE:
                self._drive_safely(event[1])
        except Exception as e:
            logger.error(f"Scheduler event {kind} failed: {str(e)}", exc_info=True)

    def _tick(self):
        for key in self.supervisor.expired():
            self._handle_timeout(key)
        self._heartbeat_if_due()
        self._poll_schedules()
        for instance in self.repository.find_instances([InstanceStatus.PENDING, InstanceStatus.RUNNING]):
            if instance.status == InstanceStatus.PENDING and instance.start_requested_at is None:
                continue
            self._drive_safely(instance.id)

    def _heartbeat_if_due(self):
        now = self.clock.now()
        if self._last_heartbeat and (now - self._last_heartbeat).total_seconds() < self.heartbeat_interval:
            return
        self._last_heartbeat = now
        with self._in_flight_lock:
            keys = {(k.instance_id, k.node_id, k.attempt) for k in self._in_flight}
        if keys:
            updated = self.repository.heartbeat(sorted(keys), self.engine_instance_id, now)
            logger.debug(f"Heartbeat renewed {updated} attempt leases")

    def _poll_schedules(self):
        if self.schedules is None:
            return
        try:
            started = self.schedules.poll()
        except WorkflowEngineError as e:
            logger.error(f"Schedule poll failed: {e.message}")
            return
        if started:
            logger.info(f"Schedules started {len(started)} instances")

    # Driving instances

    def _drive_safely(self, instance_id: str):
        try:
            self.drive(instance_id)
        except InstanceNotFoundError:
            logger.warning(f"Instance {instance_id} disappeared while scheduling")
        except WorkflowEngineError as e:
            logger.error(f"Scheduling instance {instance_id} failed: {e.message}")
            self._fail_on_engine_error(instance_id, e.message)
        except Exception as e:
            logger.error(f"Unexpected error scheduling instance {instance_id}: {str(e)}", exc_info=True)
            self._fail_on_engine_error(instance_id, str(e))

    def _fail_on_engine_error(self, instance_id: str, message: str):
        try:
            self.machine.fail_instance(instance_id, f"engine error: {message}", ErrorKind.INFRASTRUCTURE)
        except WorkflowEngineError as e:
            logger.error(f"Could not fail instance {instance_id}: {e.message}")

    def drive(self, instance_id: str):
        """Start, advance and complete one instance as far as it can go right now."""
        set_logging_context(instance_id=instance_id, operation="drive")
        try:
            with self.machine.transition(instance_id) as tx:
                instance = tx.instance
                if instance.is_terminal or instance.status == InstanceStatus.PAUSED:
                    return
                if instance.status == InstanceStatus.PENDING:
                    if instance.start_requested_at is None:
                        return
                    if instance.mutex_key and not self.leases.try_acquire(
                        instance.mutex_key, instance.id, instance.priority, instance.start_requested_at
                    ):
                        return
                    self.machine.start(tx)

                graph = self.store.compiled(instance.definition_name, instance.definition_version)
                for key in self._owned_containers(instance_id):
                    if tx.instance.status != InstanceStatus.RUNNING:
                        break
                    node = graph.node(key.node_id)
                    HANDLERS[node.node_type].progress(
                        self, tx, graph, node, key, EvaluationContext.from_instance(tx.instance)
                    )
                self.dispatch_scope(tx, graph, None)
                self.machine.try_complete(tx, graph)
        finally:
            clear_logging_context()

    def dispatch_scope(self, tx: Transition, graph: DefinitionGraph, parent_id: Optional[str]):
        """Skip condition-false nodes and dispatch ready ones of one scope until nothing changes."""
        scope = graph.scope(parent_id)
        while tx.instance.status == InstanceStatus.RUNNING:
            context = EvaluationContext.from_instance(tx.instance)
            resolution = self.resolver.resolve(
                graph, scope, set(tx.instance.completed_nodes), set(tx.instance.failed_nodes),
                self.active_nodes(tx), context
            )
            if not resolution:
                return
            for node_id in resolution.skippable:
                self.machine.skip_node(tx, node_id, "condition evaluated false")
            for node_id in resolution.ready:
                if tx.instance.status != InstanceStatus.RUNNING:
                    return
                if not self.dispatch_node(tx, graph, graph.node(node_id), context):
                    return
            if not resolution.skippable:
                return

    def dispatch_node(self, tx: Transition, graph: DefinitionGraph, node, context: EvaluationContext) -> bool:
        """Start the next attempt of ``node``. False when no executor slot is free."""
        attempt = self.next_attempt(tx, node.node_id)
        if attempt > node.template.max_retries + 1:
            fail_exhausted(
                self, tx, graph, node,
                f"retry budget exhausted after {attempt - 1} attempts", ErrorKind.BUSINESS
            )
            return True
        self.clear_retry(tx.instance_id, node.node_id)
        return HANDLERS[node.node_type].dispatch(self, tx, graph, node, attempt, context)

    # Attempt bookkeeping used by node handlers

    def latest_attempts(self, tx: Transition) -> Dict[str, NodeExecution]:
        """Latest attempt of every node of the instance, staged changes included."""
        latest: Dict[str, NodeExecution] = {}
        executions = self.repository.list_node_executions(tx.instance_id) + tx.staged_executions
        for execution in executions:
            current = latest.get(execution.node_id)
            if current is None or execution.attempt >= current.attempt:
                latest[execution.node_id] = execution
        return latest

    def next_attempt(self, tx: Transition, node_id: str) -> int:
        latest = self.latest_attempts(tx).get(node_id)
        return latest.attempt + 1 if latest else 1

    def running_attempt(self, tx: Transition, node_id: str) -> Optional[NodeExecution]:
        latest = self.latest_attempts(tx).get(node_id)
        if latest is not None and latest.status == NodeExecutionStatus.RUNNING:
            return latest
        return None

    def active_nodes(self, tx: Transition) -> Set[str]:
        """Nodes that are running or waiting out a retry backoff."""
        active = {
            node_id for node_id, execution in self.latest_attempts(tx).items()
            if execution.status == NodeExecutionStatus.RUNNING
        }
        now = self.clock.now()
        with self._gates_lock:
            for (instance_id, node_id, _), not_before in self._retry_gates.items():
                if instance_id == tx.instance_id and not_before > now:
                    active.add(node_id)
        return active

    def scope_busy(self, tx: Transition, graph: DefinitionGraph, parent_id: str) -> bool:
        """Whether any child of ``parent_id`` is active or still dispatchable."""
        scope = graph.scope(parent_id)
        active = self.active_nodes(tx)
        if active.intersection(scope):
            return True
        return bool(self.resolver.resolve(
            graph, scope, set(tx.instance.completed_nodes), set(tx.instance.failed_nodes), active,
            EvaluationContext.from_instance(tx.instance)
        ))

    def schedule_retry(self, instance_id: str, node_id: str, not_before: Optional[datetime],
                       iteration: bool = False):
        with self._gates_lock:
            self._retry_gates[(instance_id, node_id, iteration)] = not_before or self.clock.now()

    def retry_pending(self, instance_id: str, node_id: str, iteration: bool = False) -> bool:
        with self._gates_lock:
            not_before = self._retry_gates.get((instance_id, node_id, iteration))
            if not_before is None:
                return False
            if not_before <= self.clock.now():
                del self._retry_gates[(instance_id, node_id, iteration)]
                return False
            return True

    def clear_retry(self, instance_id: str, node_id: str):
        with self._gates_lock:
            self._retry_gates.pop((instance_id, node_id, False), None)
            self._retry_gates.pop((instance_id, node_id, True), None)

    def restore_retry_gates(self) -> int:
        """
        Rebuild node retry gates from the backoff persisted on failed attempts.

        Loop iteration gates are not restored: their loop attempt is reclaimed
        by recovery once its lease expires.

        Returns:
            Number of gates restored
        """
        now = self.clock.now()
        restored = 0
        for instance in self.repository.find_instances([InstanceStatus.RUNNING, InstanceStatus.PAUSED]):
            settled = set(instance.completed_nodes) | set(instance.failed_nodes) | set(instance.skipped_nodes)
            latest: Dict[str, NodeExecution] = {}
            for execution in self.repository.list_node_executions(instance.id):
                current = latest.get(execution.node_id)
                if current is None or execution.attempt > current.attempt:
                    latest[execution.node_id] = execution
            for node_id, execution in latest.items():
                if node_id in settled or execution.status != NodeExecutionStatus.FAILED:
                    continue
                if execution.retry_not_before is None or execution.retry_not_before <= now:
                    continue
                self.schedule_retry(instance.id, node_id, execution.retry_not_before)
                restored += 1
        if restored:
            logger.info(f"Restored {restored} retry backoffs from storage")
        return restored

    # Executor slots and in-flight units

    def acquire_slot(self) -> bool:
        """Reserve a dispatch slot and a pool worker. False when either is exhausted."""
        with self._in_flight_lock:
            if self._workers_busy >= self.executor_pool_size:
                logger.warning(
                    f"All {self.executor_pool_size} executor workers busy "
                    f"({self._abandoned} held by timed-out executors)"
                )
                return False
            if not self._slots.acquire(blocking=False):
                return False
            self._workers_busy += 1
            return True

    def release_slot(self):
        """Give back a slot and its worker reserved for a unit that never started."""
        with self._in_flight_lock:
            self._workers_busy = max(0, self._workers_busy - 1)
            self._release_semaphore()

    def _release_semaphore(self):
        try:
            self._slots.release()
        except ValueError:
            logger.error("Executor slot released more often than acquired")

    def _release_flight(self, flight: InFlight):
        with self._in_flight_lock:
            if flight.slot_held:
                flight.slot_held = False
                self._release_semaphore()

    def _worker_done(self, flight: InFlight):
        """Executor thread returned: free its worker, and its slot unless a timeout already did."""
        with self._in_flight_lock:
            self._workers_busy = max(0, self._workers_busy - 1)
            if flight.abandoned:
                self._abandoned -= 1
                logger.info(f"Timed-out executor for {flight.key} finally returned")
        self._release_flight(flight)

    def submit(self, tx: Transition, key: UnitKey, executor: Executor, input_data: Dict[str, Any],
               timeout_seconds: Optional[int], iteration: Optional[int] = None):
        """Run ``executor`` for ``key`` once the dispatch is committed. A slot must be held."""
        flight = InFlight(key, InFlight.EXECUTOR)
        flight.slot_held = True
        context = ExecutionContext(
            key.instance_id, key.node_id, key.attempt, self.engine_instance_id,
            cancel_event=flight.cancel_event, iteration=iteration
        )

        def start():
            with self._in_flight_lock:
                self._in_flight[key] = flight
            flight.started_at = self.clock.now()
            context.deadline = self.supervisor.register(key, timeout_seconds)
            try:
                flight.future = self._pool.submit(self._run_executor, flight, executor, input_data, context)
            except RuntimeError as e:
                logger.error(f"Could not submit {key}: {str(e)}")
                with self._in_flight_lock:
                    self._in_flight.pop(key, None)
                    flight.slot_held = False
                self.supervisor.clear(key)
                self.release_slot()

        def rollback():
            with self._in_flight_lock:
                flight.slot_held = False
            self.release_slot()

        tx.on_commit(start)
        tx.on_rollback(rollback)

    def _run_executor(self, flight: InFlight, executor: Executor, input_data: Dict[str, Any],
                      context: ExecutionContext):
        key = flight.key
        set_logging_context(instance_id=key.instance_id, node_id=key.node_id, attempt=key.attempt)
        try:
            outcome = UnitOutcome.from_result(executor.execute(dict(input_data), context))
        except Exception as e:
            logger.warning(f"Executor for {key.node_id} raised {type(e).__name__}: {str(e)}")
            outcome = UnitOutcome.from_exception(e)
        finally:
            clear_logging_context()
            self._worker_done(flight)
        self._events.put((_RESULT, key, outcome))

    def register_container(self, tx: Transition, key: UnitKey, timeout_seconds: Optional[int]):
        """Own a container attempt (loop, parallel, subprocess) once it is committed and still running."""
        flight = InFlight(key, InFlight.CONTAINER)

        def start():
            execution = tx.execution(key.node_id, key.attempt)
            if execution is None or execution.status != NodeExecutionStatus.RUNNING:
                return
            with self._in_flight_lock:
                self._in_flight[key] = flight
            flight.started_at = self.clock.now()
            self.supervisor.register(key, timeout_seconds)

        tx.on_commit(start)

    def release_unit(self, key: UnitKey):
        with self._in_flight_lock:
            flight = self._in_flight.pop(key, None)
        self.supervisor.clear(key)
        if flight is not None:
            flight.cancel_event.set()

    def cancel_units(self, instance_id: str, node_prefix: Optional[str] = None):
        """Signal cancellation to executors of an instance (optionally below one parallel node)."""
        with self._in_flight_lock:
            flights = [
                f for k, f in self._in_flight.items()
                if k.instance_id == instance_id and (node_prefix is None or k.node_id.startswith(node_prefix))
            ]
        for flight in flights:
            flight.cancel_event.set()

    def owns(self, instance_id: str, node_id: str, attempt: int) -> bool:
        with self._in_flight_lock:
            return any(
                k.instance_id == instance_id and k.node_id == node_id and k.attempt == attempt
                for k in self._in_flight
            )

    def _owned_containers(self, instance_id: str) -> List[UnitKey]:
        with self._in_flight_lock:
            return sorted(
                (k for k, f in self._in_flight.items()
                 if k.instance_id == instance_id and f.kind == InFlight.CONTAINER),
                key=lambda k: k.node_id
            )

    def wake_after_commit(self, tx: Transition, instance_id: str):
        tx.on_commit(lambda: self.wake(instance_id))

    def cancel_after_commit(self, tx: Transition, instance_id: str, reason: str):
        def cancel():
            try:
                self.machine.cancel(instance_id, reason)
            except InvalidTransitionError:
                pass
        tx.on_commit(cancel)

    # Results and timeouts

    def apply_result(self, key: UnitKey, outcome: UnitOutcome):
        """
        Apply an executor outcome. Replayed or late outcomes are no-ops.

        Args:
            key: Unit the outcome belongs to
            outcome: Normalized executor result
        """
        with self._in_flight_lock:
            self._in_flight.pop(key, None)
        self.supervisor.clear(key)
        set_logging_context(instance_id=key.instance_id, node_id=key.node_id, attempt=key.attempt)
        try:
            with self.machine.transition(key.instance_id) as tx:
                graph = self.store.compiled(tx.instance.definition_name, tx.instance.definition_version)
                if key.node_id not in graph:
                    logger.warning(f"Result for unknown node {key.node_id} ignored")
                    return
                node = graph.node(key.node_id)
                HANDLERS[node.node_type].on_result(self, tx, graph, node, key, outcome)
        except InstanceNotFoundError:
            logger.warning(f"Result for missing instance {key.instance_id} ignored")
            return
        finally:
            clear_logging_context()
        self._drive_safely(key.instance_id)

    def _handle_timeout(self, key: UnitKey):
        with self._in_flight_lock:
            flight = self._in_flight.pop(key, None)
            if flight is not None and flight.slot_held:
                # The executor may never return; its retry must not wait for the slot.
                flight.abandoned = True
                self._abandoned += 1
        if flight is not None:
            flight.cancel_event.set()
            self._release_flight(flight)
        logger.warning(f"Unit {key} exceeded its deadline")
        try:
            with self.machine.transition(key.instance_id) as tx:
                graph = self.store.compiled(tx.instance.definition_name, tx.instance.definition_version)
                node = graph.node(key.node_id)
                HANDLERS[node.node_type].on_timeout(self, tx, graph, node, key)
        except InstanceNotFoundError:
            return
        self._drive_safely(key.instance_id)

    def _on_child_terminal(self, child_id: str):
        child = self.repository.get_instance(child_id)
        if child is None or child.parent_instance_id is None:
            return
        try:
            with self.machine.transition(child.parent_instance_id) as tx:
                graph = self.store.compiled(tx.instance.definition_name, tx.instance.definition_version)
                if child.parent_node_id not in graph:
                    return
                node = graph.node(child.parent_node_id)
                HANDLERS[node.node_type].on_child_terminal(self, tx, graph, node, child)
        except InstanceNotFoundError:
            return
        self._drive_safely(child.parent_instance_id)

    def _on_status_change(self, instance: WorkflowInstance, old_status: InstanceStatus, new_status: InstanceStatus):
        if new_status == InstanceStatus.RUNNING and old_status == InstanceStatus.PAUSED:
            self.wake(instance.id)
            return
        if new_status not in TERMINAL_INSTANCE_STATUSES:
            return

        if instance.mutex_key and self.leases.release(instance.mutex_key, instance.id):
            self.request_tick()
        self.cancel_units(instance.id)
        self.supervisor.clear_instance(instance.id)
        with self._gates_lock:
            for gate in [g for g in self._retry_gates if g[0] == instance.id]:
                del self._retry_gates[gate]
        self._close_containers(instance.id)

        if new_status in (InstanceStatus.FAILED, InstanceStatus.CANCELLED):
            for child in self.repository.find_children(instance.id):
                if child.is_terminal:
                    continue
                try:
                    self.machine.cancel(child.id, f"parent instance {instance.id} {new_status.value}")
                except InvalidTransitionError:
                    pass
        if instance.parent_instance_id:
            self._events.put((_CHILD, instance.id))

    def _close_containers(self, instance_id: str):
        """Cancel running loop and parallel attempts of a terminal instance.

        Executor attempts are closed when their executor returns or times out,
        subprocess attempts when the cascaded child cancellation arrives.
        """
        with self._in_flight_lock:
            keys = [
                k for k, f in self._in_flight.items()
                if k.instance_id == instance_id and f.kind == InFlight.CONTAINER
            ]
        closing = []
        try:
            with self.machine.transition(instance_id) as tx:
                graph = self.store.compiled(tx.instance.definition_name, tx.instance.definition_version)
                for node_id, execution in self.latest_attempts(tx).items():
                    if execution.status != NodeExecutionStatus.RUNNING or node_id not in graph:
                        continue
                    node_type = graph.node(node_id).node_type
                    if node_type not in (NodeType.LOOP, NodeType.PARALLEL):
                        continue
                    loop = tx.loop(node_id) if node_type == NodeType.LOOP else None
                    if loop is not None and loop.status == NodeExecutionStatus.RUNNING:
                        tx.stage_loop(loop.model_copy(update={"status": NodeExecutionStatus.CANCELLED}))
                    self.machine.finish_attempt(
                        tx, node_id, execution.attempt, NodeExecutionStatus.CANCELLED,
                        error_message=f"cancelled: instance {tx.instance.status.value}",
                        error_kind=ErrorKind.CANCELLED
                    )
                    closing.append(node_id)
        except InstanceNotFoundError:
            return
        for key in keys:
            if key.node_id in closing:
                self.release_unit(key)

    # Control operations

    def start_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self.machine.request_start(instance_id)
        self.wake(instance_id)
        return instance

    def pause_instance(self, instance_id: str) -> WorkflowInstance:
        return self.machine.pause(instance_id)

    def resume_instance(self, instance_id: str) -> WorkflowInstance:
        return self.machine.resume(instance_id)

    def cancel_instance(self, instance_id: str, reason: str = "cancel requested") -> WorkflowInstance:
        return self.machine.cancel(instance_id, reason)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the scheduler's queues and leases."""
        with self._in_flight_lock:
            executors = sum(1 for f in self._in_flight.values() if f.kind == InFlight.EXECUTOR)
            containers = len(self._in_flight) - executors
            abandoned = self._abandoned
        with self._gates_lock:
            retries = len(self._retry_gates)
        return {
            "engine_instance_id": self.engine_instance_id,
            "running": self.is_running,
            "max_concurrent_nodes": self.max_concurrent_nodes,
            "executor_pool_size": self.executor_pool_size,
            "executors_in_flight": executors,
            "executors_abandoned": abandoned,
            "containers_in_flight": containers,
            "retries_waiting": retries,
            "deadlines": self.supervisor.pending_count(),
            "queued_events": self._events.qsize(),
            "mutexes": self.leases.snapshot(),
        }
