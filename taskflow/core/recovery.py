"""Reclaims attempts whose engine stopped renewing their lease."""

import threading
from typing import Any, Dict, List, Optional

from ..models.core import ErrorKind, InstanceStatus, LogLevel, NodeExecution, NodeExecutionStatus, NodeType
from ..storage.repository import WorkflowRepository
from .clock import Clock
from .exceptions import InstanceNotFoundError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger
from .node_handlers import settle_failure
from .scheduler import Scheduler

logger = get_logger(__name__)

RECLAIMED = "reclaimed"
CANCELLED = "cancelled"


class RecoveryManager:
    """
    Finds running attempts with a stale heartbeat and retries or fails them.

    An attempt is stale when this engine is not driving it and its heartbeat
    is older than ``lease_timeout`` seconds. Stale attempts are marked failed
    with an infrastructure error and then go through the normal retry
    decision, so a crashed attempt ``a`` is re-dispatched as ``a + 1``.
    The same rule covers loop, parallel and subprocess container attempts.

    One active scheduler per database is assumed; engines sharing a database
    must use distinct ``engine_instance_id`` values.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        repository: WorkflowRepository,
        clock: Clock,
        lease_timeout: float = 30.0,
        interval: float = 10.0
    ):
        self.scheduler = scheduler
        self.repository = repository
        self.clock = clock
        self.lease_timeout = lease_timeout
        self.interval = interval
        self.recovery_logger = ErrorRecoveryLogger("lease_recovery")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[Dict[str, Any]] = None

    def start(self):
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="taskflow-recovery", daemon=True)
        self._thread.start()
        logger.info(f"Recovery started (lease_timeout={self.lease_timeout}s, interval={self.interval}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Recovery sweep failed: {str(e)}", exc_info=True)

    def stale_executions(self) -> List[NodeExecution]:
        """Running attempts not driven here whose lease has expired."""
        now = self.clock.now()
        stale = []
        for execution in self.repository.find_node_executions(NodeExecutionStatus.RUNNING):
            if self.scheduler.owns(execution.instance_id, execution.node_id, execution.attempt):
                continue
            seen = execution.heartbeat_at or execution.start_time
            if seen is not None and (now - seen).total_seconds() < self.lease_timeout:
                continue
            stale.append(execution)
        # Containers before their children so children see the parent closed
        stale.sort(key=lambda e: (e.instance_id, e.parent_node_id is not None, e.node_id))
        return stale

    def sweep(self) -> Dict[str, Any]:
        """
        Run one recovery pass.

        Returns:
            Report with the reclaimed and cancelled attempts, restored mutexes
            and restored retry backoffs
        """
        report: Dict[str, Any] = {
            "reclaimed": [], "cancelled": [], "mutexes_restored": 0, "retries_restored": 0, "errors": []
        }
        for execution in self.stale_executions():
            label = f"{execution.instance_id}/{execution.node_id}#{execution.attempt}"
            try:
                outcome = self._reclaim(execution)
            except WorkflowEngineError as e:
                self.recovery_logger.log_recovery_failure(f"attempt {label}", e, 1)
                report["errors"].append({"attempt": label, "error": e.message})
                continue
            if outcome == RECLAIMED:
                report["reclaimed"].append(label)
            elif outcome == CANCELLED:
                report["cancelled"].append(label)

        report["mutexes_restored"] = self._restore_mutexes()
        report["retries_restored"] = self.scheduler.restore_retry_gates()
        self.scheduler.request_tick()
        if report["reclaimed"] or report["cancelled"]:
            logger.warning(
                f"Recovery reclaimed {len(report['reclaimed'])} and cancelled {len(report['cancelled'])} attempts"
            )
        report["timestamp"] = self.clock.now().isoformat()
        self.last_report = report
        return report

    def _reclaim(self, stale: NodeExecution) -> Optional[str]:
        machine = self.scheduler.machine
        try:
            with machine.transition(stale.instance_id) as tx:
                execution = tx.execution(stale.node_id, stale.attempt)
                if execution is None or execution.status != NodeExecutionStatus.RUNNING:
                    return None
                instance = tx.instance
                graph = self.scheduler.store.compiled(instance.definition_name, instance.definition_version)
                node = graph.node(stale.node_id) if stale.node_id in graph else None
                parent_closed = (
                    node is not None and node.parent_id is not None
                    and self.scheduler.running_attempt(tx, node.parent_id) is None
                )
                if instance.is_terminal or node is None or parent_closed:
                    machine.finish_attempt(
                        tx, stale.node_id, stale.attempt, NodeExecutionStatus.CANCELLED,
                        error_message="cancelled: lease expired after the owner stopped",
                        error_kind=ErrorKind.CANCELLED
                    )
                    return CANCELLED

                message = "lease expired"
                machine.finish_attempt(
                    tx, stale.node_id, stale.attempt, NodeExecutionStatus.FAILED,
                    error_message=message, error_kind=ErrorKind.INFRASTRUCTURE
                )
                tx.log(
                    f"Attempt {stale.attempt} of {stale.node_id} lost: lease expired",
                    LogLevel.WARN, stale.node_id,
                    attempt=stale.attempt, owner=execution.engine_instance_id,
                    last_heartbeat=execution.heartbeat_at.isoformat() if execution.heartbeat_at else None
                )
                if node.node_type == NodeType.LOOP:
                    loop = tx.loop(stale.node_id)
                    if loop is not None:
                        loop = loop.model_copy(deep=True)
                        loop.status = NodeExecutionStatus.FAILED
                        for iteration in loop.iterations:
                            if iteration.status == NodeExecutionStatus.RUNNING:
                                iteration.status = NodeExecutionStatus.FAILED
                                iteration.error_message = message
                        tx.stage_loop(loop)
                settle_failure(self.scheduler, tx, graph, node, stale.attempt, message, ErrorKind.INFRASTRUCTURE)
                self.recovery_logger.log_recovery_attempt(
                    f"attempt {stale.instance_id}/{stale.node_id}", RuntimeError(message),
                    stale.attempt, node.template.max_retries + 1
                )
                return RECLAIMED
        except InstanceNotFoundError:
            return None

    def _restore_mutexes(self) -> int:
        restored = 0
        for instance in self.repository.find_instances([InstanceStatus.RUNNING, InstanceStatus.PAUSED]):
            if not instance.mutex_key:
                continue
            if self.scheduler.leases.restore(instance.mutex_key, instance.id):
                restored += 1
            else:
                logger.warning(
                    f"Mutex '{instance.mutex_key}' already held by "
                    f"{self.scheduler.leases.holder(instance.mutex_key)}; {instance.id} keeps running"
                )
        return restored
