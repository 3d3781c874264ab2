"""Dispatch behaviour of each node type.

Every NodeType maps to exactly one handler; the mapping is checked for
completeness at import time. Handlers run inside the instance's transition
and only change state through the InstanceStateMachine.
"""

import threading
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from ..models.core import (
    ErrorHandling,
    ErrorKind,
    ExecutorResult,
    InstanceStatus,
    LogLevel,
    LoopExecution,
    LoopIteration,
    NodeExecution,
    NodeExecutionStatus,
    NodeType,
    ParallelFailurePolicy,
    WorkflowInstance,
)
from .exceptions import (
    ConfigurationError,
    ConflictError,
    DefinitionNotFoundError,
    ExecutorNotFoundError,
    StorageError,
    TransientError,
    WorkflowEngineError,
)
from .logging import get_logger
from .resolver import ArenaNode, DefinitionGraph, EvaluationContext, evaluate_condition, evaluate_expression
from .supervisor import FailureAction

logger = get_logger(__name__)


class UnitKey(NamedTuple):
    """Identity of one unit of work: an attempt, or one iteration try inside a loop attempt."""
    instance_id: str
    node_id: str
    attempt: int
    iteration: Optional[int] = None
    iteration_attempt: Optional[int] = None

    @property
    def is_iteration(self) -> bool:
        return self.iteration is not None


class InFlight:
    """A unit this engine is currently driving."""

    EXECUTOR = "executor"
    CONTAINER = "container"

    def __init__(self, key: UnitKey, kind: str, cancel_event: Optional[threading.Event] = None):
        self.key = key
        self.kind = kind
        self.cancel_event = cancel_event or threading.Event()
        self.future = None
        self.started_at: Optional[datetime] = None
        # Executor units hold a dispatch slot until they return or time out.
        self.slot_held = False
        self.abandoned = False


class UnitOutcome:
    """Normalized result of an executor call."""

    def __init__(self, success: bool, output_data: Any = None, error_message: Optional[str] = None,
                 error_kind: Optional[ErrorKind] = None):
        self.success = success
        self.output_data = output_data
        self.error_message = error_message
        self.error_kind = error_kind

    @classmethod
    def from_result(cls, result: ExecutorResult) -> "UnitOutcome":
        if result.success:
            return cls(True, result.output_data)
        return cls(False, None, result.error_message or "executor reported failure", ErrorKind.BUSINESS)

    @classmethod
    def from_exception(cls, error: Exception) -> "UnitOutcome":
        if isinstance(error, (ExecutorNotFoundError, ConfigurationError)):
            kind = ErrorKind.CONFIGURATION
        elif isinstance(error, (StorageError, TransientError)):
            kind = ErrorKind.INFRASTRUCTURE
        else:
            kind = ErrorKind.BUSINESS
        message = error.message if isinstance(error, WorkflowEngineError) else str(error)
        return cls(False, None, f"{type(error).__name__}: {message}", kind)

    @classmethod
    def timeout(cls) -> "UnitOutcome":
        return cls(False, None, "timeout", ErrorKind.TIMEOUT)

    def __repr__(self) -> str:
        if self.success:
            return "UnitOutcome(success)"
        return f"UnitOutcome(failed, {self.error_kind.value if self.error_kind else None}: {self.error_message})"


def build_input(node: ArenaNode, context: EvaluationContext, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Executor input: instance context, overlaid by the node's static input and loop variables."""
    data = dict(context.ctx)
    data.update(node.template.input_data)
    data.update(extra or {})
    return data


def _instance_closed(instance: WorkflowInstance) -> bool:
    return instance.is_terminal


def _cancel_attempt(engine, tx, node_id: str, attempt: int):
    """Close an attempt whose instance (or parallel parent) no longer accepts results."""
    reason = f"instance {tx.instance.status.value}" if tx.instance.is_terminal else "parent node finished"
    return engine.machine.finish_attempt(
        tx, node_id, attempt, NodeExecutionStatus.CANCELLED,
        error_message=f"cancelled: {reason}", error_kind=ErrorKind.CANCELLED
    )


def settle_success(engine, tx, graph: DefinitionGraph, node: ArenaNode, output_data: Any):
    engine.machine.complete_node(tx, node.node_id, output_data)
    after_settled(engine, tx, graph, node)


def settle_failure(engine, tx, graph: DefinitionGraph, node: ArenaNode, attempt: int,
                   error_message: str, error_kind: ErrorKind, max_retries: Optional[int] = None):
    """Apply the supervisor's decision to a failed attempt of ``node``."""
    decision = engine.supervisor.decide_for_node(
        node.template, attempt, error_kind, graph.definition.config, max_retries=max_retries
    )
    if decision.action == FailureAction.RETRY:
        engine.schedule_retry(tx.instance_id, node.node_id, decision.not_before)
        engine.machine.mark_retry(tx, node.node_id, attempt, decision.not_before)
        tx.log(
            f"Node {node.node_id} will retry as attempt {decision.next_attempt} in {decision.delay:.2f}s",
            LogLevel.WARN, node.node_id, next_attempt=decision.next_attempt, delay=decision.delay
        )
    elif decision.action == FailureAction.SKIP:
        engine.machine.skip_node(tx, node.node_id, f"error handling after attempt {attempt}: {error_message}")
        after_settled(engine, tx, graph, node)
    else:
        fail_exhausted(engine, tx, graph, node, error_message, error_kind)


def fail_exhausted(engine, tx, graph: DefinitionGraph, node: ArenaNode, error_message: str, error_kind: ErrorKind):
    """Record a node as failed and propagate to its parallel parent or to the instance."""
    engine.machine.fail_node(tx, node.node_id, error_message, error_kind)
    if node.parent_id is not None:
        HANDLERS[NodeType.PARALLEL].child_settled(engine, tx, graph, graph.node(node.parent_id))
    elif not tx.instance.is_terminal:
        engine.machine.fail(tx, f"Node {node.node_id} failed: {error_message}", error_kind)


def after_settled(engine, tx, graph: DefinitionGraph, node: ArenaNode):
    if node.parent_id is not None:
        HANDLERS[NodeType.PARALLEL].child_settled(engine, tx, graph, graph.node(node.parent_id))
    else:
        engine.machine.try_complete(tx, graph)


class NodeHandler:
    """Behaviour of one node type."""

    node_type: NodeType

    def dispatch(self, engine, tx, graph: DefinitionGraph, node: ArenaNode, attempt: int,
                 context: EvaluationContext) -> bool:
        """Start ``attempt`` of ``node``. False when resources are exhausted and it must wait."""
        raise NotImplementedError

    def on_result(self, engine, tx, graph: DefinitionGraph, node: ArenaNode, key: UnitKey, outcome: UnitOutcome):
        raise NotImplementedError

    def on_timeout(self, engine, tx, graph: DefinitionGraph, node: ArenaNode, key: UnitKey):
        self.on_result(engine, tx, graph, node, key, UnitOutcome.timeout())

    def progress(self, engine, tx, graph: DefinitionGraph, node: ArenaNode, key: UnitKey,
                 context: EvaluationContext):
        """Advance a running container attempt. Leaf nodes have nothing to do."""


class ExecutorNodeHandler(NodeHandler):
    """simple and task nodes: one executor call per attempt."""

    def __init__(self, node_type: NodeType):
        self.node_type = node_type

    def dispatch(self, engine, tx, graph, node, attempt, context) -> bool:
        template = node.template
        input_data = build_input(node, context)
        try:
            executor = engine.registry.resolve(template.executor_ref)
        except ExecutorNotFoundError as e:
            engine.machine.record_dispatch(tx, node.node_id, attempt, input_data, node.parent_id)
            engine.machine.finish_attempt(
                tx, node.node_id, attempt, NodeExecutionStatus.FAILED,
                error_message=e.message, error_kind=ErrorKind.CONFIGURATION
            )
            settle_failure(engine, tx, graph, node, attempt, e.message, ErrorKind.CONFIGURATION)
            return True
        if not engine.acquire_slot():
            return False
        engine.machine.record_dispatch(tx, node.node_id, attempt, input_data, node.parent_id)
        engine.submit(tx, UnitKey(tx.instance_id, node.node_id, attempt), executor, input_data,
                      template.timeout_seconds)
        return True

    def on_result(self, engine, tx, graph, node, key, outcome):
        if _instance_closed(tx.instance) or not parent_accepts(engine, tx, node):
            _cancel_attempt(engine, tx, node.node_id, key.attempt)
            return
        if outcome.success:
            if engine.machine.finish_attempt(
                tx, node.node_id, key.attempt, NodeExecutionStatus.SUCCESS, output_data=outcome.output_data
            ) is None:
                return
            settle_success(engine, tx, graph, node, outcome.output_data)
        else:
            if engine.machine.finish_attempt(
                tx, node.node_id, key.attempt, NodeExecutionStatus.FAILED,
                error_message=outcome.error_message, error_kind=outcome.error_kind
            ) is None:
                return
            settle_failure(engine, tx, graph, node, key.attempt, outcome.error_message, outcome.error_kind)


def parent_accepts(engine, tx, node: ArenaNode) -> bool:
    """A parallel child's result counts only while its parent attempt is running."""
    if node.parent_id is None:
        return True
    return engine.running_attempt(tx, node.parent_id) is not None


class ParallelNodeHandler(NodeHandler):
    """Fans out branch children in the node's own scope."""

    node_type = NodeType.PARALLEL

    def dispatch(self, engine, tx, graph, node, attempt, context) -> bool:
        engine.machine.record_dispatch(tx, node.node_id, attempt, {"branches": len(node.template.branches)})
        key = UnitKey(tx.instance_id, node.node_id, attempt)
        engine.register_container(tx, key, node.template.timeout_seconds)
        tx.log(f"Parallel node {node.node_id} fanning out {len(node.children)} branch nodes",
               LogLevel.INFO, node.node_id)
        self.progress(engine, tx, graph, node, key, context)
        return True

    def progress(self, engine, tx, graph, node, key, context):
        engine.dispatch_scope(tx, graph, node.node_id)
        self.child_settled(engine, tx, graph, node)

    def child_settled(self, engine, tx, graph, node):
        """Decide the parallel attempt once its children allow it."""
        container = engine.running_attempt(tx, node.node_id)
        if container is None:
            return
        instance = tx.instance
        children = graph.scope(node.node_id)
        completed = set(instance.completed_nodes)
        failed_children = [child for child in children if child in instance.failed_nodes]
        policy = node.template.parallel_failure_policy or graph.definition.config.parallel_failure_policy

        if failed_children:
            if policy == ParallelFailurePolicy.WAIT_ALL and engine.scope_busy(tx, graph, node.node_id):
                return
            summary = "; ".join(f"{child}: {instance.node_errors.get(child, 'failed')}" for child in failed_children)
            message = f"Branch nodes failed ({policy.value}): {summary}"
            engine.machine.finish_attempt(
                tx, node.node_id, container.attempt, NodeExecutionStatus.FAILED,
                error_message=message, error_kind=ErrorKind.BUSINESS
            )
            engine.release_unit(UnitKey(tx.instance_id, node.node_id, container.attempt))
            engine.cancel_units(tx.instance_id, node_prefix=f"{node.node_id}.")
            # child failures already consumed their own retry budgets
            settle_failure(engine, tx, graph, node, container.attempt, message, ErrorKind.BUSINESS, max_retries=0)
            return

        if all(child in completed for child in children):
            output = {
                child[len(node.node_id) + 1:]: instance.output_data.get(child)
                for child in children
                if child not in instance.skipped_nodes
            }
            engine.machine.finish_attempt(
                tx, node.node_id, container.attempt, NodeExecutionStatus.SUCCESS, output_data=output
            )
            engine.release_unit(UnitKey(tx.instance_id, node.node_id, container.attempt))
            settle_success(engine, tx, graph, node, output)

    def on_result(self, engine, tx, graph, node, key, outcome):
        # Only timeouts reach a parallel container
        if outcome.success:
            return
        if _instance_closed(tx.instance):
            _cancel_attempt(engine, tx, node.node_id, key.attempt)
            return
        if engine.machine.finish_attempt(
            tx, node.node_id, key.attempt, NodeExecutionStatus.FAILED,
            error_message=outcome.error_message, error_kind=outcome.error_kind
        ) is None:
            return
        engine.cancel_units(tx.instance_id, node_prefix=f"{node.node_id}.")
        settle_failure(engine, tx, graph, node, key.attempt, outcome.error_message, outcome.error_kind)


class LoopNodeHandler(NodeHandler):
    """Runs one iteration at a time, each with its own retry budget."""

    node_type = NodeType.LOOP

    def dispatch(self, engine, tx, graph, node, attempt, context) -> bool:
        engine.machine.record_dispatch(tx, node.node_id, attempt, build_input(node, context))
        key = UnitKey(tx.instance_id, node.node_id, attempt)
        # Iterations carry the deadlines; the container has none
        engine.register_container(tx, key, None)

        loop = tx.loop(node.node_id)
        if loop is None:
            loop = LoopExecution(instance_id=tx.instance_id, node_id=node.node_id)
        else:
            # A new attempt keeps successful iterations and gives the others a fresh budget
            loop = loop.model_copy(deep=True)
            for iteration in loop.iterations:
                if iteration.status != NodeExecutionStatus.SUCCESS:
                    iteration.status = NodeExecutionStatus.PENDING
                    iteration.attempts = 0
                    iteration.error_message = None
        loop.status = NodeExecutionStatus.RUNNING
        tx.stage_loop(loop)
        self.progress(engine, tx, graph, node, key, context)
        return True

    def _next_index(self, loop: LoopExecution) -> int:
        for iteration in loop.iterations:
            if iteration.status != NodeExecutionStatus.SUCCESS:
                return iteration.index
        return len(loop.iterations)

    def progress(self, engine, tx, graph, node, key, context):
        loop = tx.loop(node.node_id)
        if loop is None or loop.status != NodeExecutionStatus.RUNNING:
            return
        if any(iteration.status == NodeExecutionStatus.RUNNING for iteration in loop.iterations):
            return
        if engine.retry_pending(tx.instance_id, node.node_id, iteration=True):
            return

        config = node.template.loop
        index = self._next_index(loop)
        outputs = [iteration.output_data for iteration in loop.iterations if iteration.status == NodeExecutionStatus.SUCCESS]
        if index >= config.max_iterations:
            self._finish(engine, tx, graph, node, key, loop, f"reached max_iterations={config.max_iterations}")
            return

        collection = None
        try:
            if config.items is not None:
                collection = list(config.items)
            elif config.source is not None:
                collection = list(evaluate_expression(config.source, context) or [])
            elif not evaluate_condition(
                config.while_condition, context,
                {config.index_variable: index, "iterations": outputs}
            ):
                self._finish(engine, tx, graph, node, key, loop, "while condition is false")
                return
        except Exception as e:
            self._fail(engine, tx, graph, node, key, loop,
                       f"Loop source of {node.node_id} could not be evaluated: {str(e)}", ErrorKind.BUSINESS)
            return

        if collection is not None:
            loop.total_iterations = len(collection)
            if index >= len(collection):
                self._finish(engine, tx, graph, node, key, loop, "source exhausted")
                return
        else:
            loop.total_iterations = max(loop.total_iterations, index + 1)

        try:
            executor = engine.registry.resolve(node.template.executor_ref)
        except ExecutorNotFoundError as e:
            self._fail(engine, tx, graph, node, key, loop, e.message, ErrorKind.CONFIGURATION)
            return
        if not engine.acquire_slot():
            tx.stage_loop(loop)
            return

        extra = {config.index_variable: index}
        if collection is not None:
            extra[config.item_variable] = collection[index]
        input_data = build_input(node, context, extra)

        if index < len(loop.iterations):
            iteration = loop.iterations[index]
        else:
            iteration = LoopIteration(index=index)
            loop.iterations.append(iteration)
        iteration.status = NodeExecutionStatus.RUNNING
        iteration.attempts += 1
        iteration.start_time = engine.clock.now()
        iteration.end_time = None
        iteration.input_data = input_data
        loop.current_iteration = index
        tx.stage_loop(loop)
        tx.log(f"Loop {node.node_id} iteration {index} try {iteration.attempts} dispatched",
               LogLevel.DEBUG, node.node_id, iteration=index)
        engine.submit(
            tx,
            UnitKey(tx.instance_id, node.node_id, key.attempt, index, iteration.attempts),
            executor,
            input_data,
            node.template.timeout_seconds,
            iteration=index
        )

    def on_result(self, engine, tx, graph, node, key, outcome):
        if not key.is_iteration:
            return
        loop = tx.loop(node.node_id)
        if loop is None or key.iteration >= len(loop.iterations):
            return
        loop = loop.model_copy(deep=True)
        iteration = loop.iterations[key.iteration]
        if iteration.status != NodeExecutionStatus.RUNNING or iteration.attempts != key.iteration_attempt:
            logger.debug(f"Ignoring late result for loop {node.node_id} iteration {key.iteration}")
            return
        iteration.end_time = engine.clock.now()

        container = tx.execution(node.node_id, key.attempt)
        if _instance_closed(tx.instance) or container is None or container.status != NodeExecutionStatus.RUNNING:
            iteration.status = NodeExecutionStatus.CANCELLED
            loop.status = NodeExecutionStatus.CANCELLED
            tx.stage_loop(loop)
            if container is not None and container.status == NodeExecutionStatus.RUNNING:
                _cancel_attempt(engine, tx, node.node_id, key.attempt)
                engine.release_unit(UnitKey(tx.instance_id, node.node_id, key.attempt))
            return

        if outcome.success:
            iteration.status = NodeExecutionStatus.SUCCESS
            iteration.output_data = outcome.output_data
            iteration.error_message = None
            tx.stage_loop(loop)
            tx.log(f"Loop {node.node_id} iteration {key.iteration} succeeded", LogLevel.DEBUG, node.node_id,
                   iteration=key.iteration)
            return

        iteration.status = NodeExecutionStatus.FAILED
        iteration.error_message = outcome.error_message
        tx.stage_loop(loop)
        config = graph.definition.config
        decision = engine.supervisor.decide(
            iteration.attempts, node.template.loop.iteration_max_retries, outcome.error_kind,
            ErrorHandling.FAIL_FAST, config
        )
        if decision.action == FailureAction.RETRY:
            engine.schedule_retry(tx.instance_id, node.node_id, decision.not_before, iteration=True)
            tx.log(
                f"Loop {node.node_id} iteration {key.iteration} failed ({outcome.error_message}); "
                f"retrying in {decision.delay:.2f}s",
                LogLevel.WARN, node.node_id, iteration=key.iteration
            )
            return
        self._fail(
            engine, tx, graph, node, key, loop,
            f"iteration {key.iteration} failed: {outcome.error_message}", outcome.error_kind
        )

    def _finish(self, engine, tx, graph, node, key, loop: LoopExecution, reason: str):
        outputs = [iteration.output_data for iteration in loop.iterations if iteration.status == NodeExecutionStatus.SUCCESS]
        loop.status = NodeExecutionStatus.SUCCESS
        tx.stage_loop(loop)
        output = {"iterations": outputs}
        tx.log(f"Loop {node.node_id} finished after {len(outputs)} iterations: {reason}", LogLevel.INFO, node.node_id)
        engine.machine.finish_attempt(tx, node.node_id, key.attempt, NodeExecutionStatus.SUCCESS, output_data=output)
        engine.release_unit(UnitKey(tx.instance_id, node.node_id, key.attempt))
        settle_success(engine, tx, graph, node, output)

    def _fail(self, engine, tx, graph, node, key, loop: LoopExecution, message: str, kind: ErrorKind):
        loop.status = NodeExecutionStatus.FAILED
        tx.stage_loop(loop)
        if engine.machine.finish_attempt(
            tx, node.node_id, key.attempt, NodeExecutionStatus.FAILED, error_message=message, error_kind=kind
        ) is None:
            return
        engine.release_unit(UnitKey(tx.instance_id, node.node_id, key.attempt))
        settle_failure(engine, tx, graph, node, key.attempt, message, kind)


class SubprocessNodeHandler(NodeHandler):
    """Starts (or reuses) a child instance and waits for it without a thread."""

    node_type = NodeType.SUBPROCESS

    def dispatch(self, engine, tx, graph, node, attempt, context) -> bool:
        config = node.template.subprocess
        key = UnitKey(tx.instance_id, node.node_id, attempt)
        try:
            child_input = dict(node.template.input_data)
            for child_key, expression in config.input_mapping.items():
                child_input[child_key] = evaluate_expression(expression, context)
        except Exception as e:
            engine.machine.record_dispatch(tx, node.node_id, attempt, {})
            message = f"Input mapping of {node.node_id} failed: {str(e)}"
            engine.machine.finish_attempt(tx, node.node_id, attempt, NodeExecutionStatus.FAILED,
                                          error_message=message, error_kind=ErrorKind.BUSINESS)
            settle_failure(engine, tx, graph, node, attempt, message, ErrorKind.BUSINESS)
            return True

        engine.machine.record_dispatch(tx, node.node_id, attempt, child_input)
        reuse = config.reuse_existing if config.reuse_existing is not None else graph.definition.config.subprocess_reuse
        previous = engine.repository.find_children(tx.instance_id, node.node_id)

        child = None
        if reuse:
            reusable = [
                c for c in previous
                if c.status not in (InstanceStatus.FAILED, InstanceStatus.CANCELLED)
            ]
            child = reusable[-1] if reusable else None
        else:
            for abandoned in previous:
                if not abandoned.is_terminal:
                    engine.cancel_after_commit(tx, abandoned.id, f"superseded by attempt {attempt} of {node.node_id}")

        if child is None:
            try:
                child = engine.machine.build_instance(
                    config.definition_name,
                    config.definition_version,
                    child_input,
                    priority=tx.instance.priority,
                    start=True,
                    parent_instance_id=tx.instance_id,
                    parent_node_id=node.node_id
                )
            except (DefinitionNotFoundError, ConflictError) as e:
                engine.machine.finish_attempt(tx, node.node_id, attempt, NodeExecutionStatus.FAILED,
                                              error_message=e.message, error_kind=ErrorKind.CONFIGURATION)
                settle_failure(engine, tx, graph, node, attempt, e.message, ErrorKind.CONFIGURATION)
                return True
            tx.add_instance(child)
            tx.log(f"Started child instance {child.id} of {child.definition_name} v{child.definition_version}",
                   LogLevel.INFO, node.node_id, child_instance_id=child.id)
            engine.wake_after_commit(tx, child.id)
        else:
            tx.log(f"Reusing child instance {child.id} ({child.status.value})", LogLevel.INFO, node.node_id,
                   child_instance_id=child.id)

        engine.machine.update_execution_output(tx, node.node_id, attempt, {"child_instance_id": child.id})
        engine.register_container(tx, key, node.template.timeout_seconds)
        if child.is_terminal:
            self.settle_child(engine, tx, graph, node, attempt, child)
        return True

    def on_child_terminal(self, engine, tx, graph, node, child: WorkflowInstance):
        attempt = self._attempt_waiting_on(engine, tx, node, child.id)
        if attempt is None:
            logger.debug(f"No attempt of {node.node_id} waits on child {child.id}")
            return
        self.settle_child(engine, tx, graph, node, attempt, child)

    def _attempt_waiting_on(self, engine, tx, node, child_id: str) -> Optional[int]:
        execution: Optional[NodeExecution] = engine.running_attempt(tx, node.node_id)
        if execution is None:
            return None
        output = execution.output_data or {}
        if isinstance(output, dict) and output.get("child_instance_id") == child_id:
            return execution.attempt
        return None

    def settle_child(self, engine, tx, graph, node, attempt: int, child: WorkflowInstance):
        engine.release_unit(UnitKey(tx.instance_id, node.node_id, attempt))
        if _instance_closed(tx.instance):
            _cancel_attempt(engine, tx, node.node_id, attempt)
            return
        if child.status == InstanceStatus.COMPLETED:
            output = dict(child.output_data)
            if engine.machine.finish_attempt(tx, node.node_id, attempt, NodeExecutionStatus.SUCCESS,
                                             output_data=output) is None:
                return
            settle_success(engine, tx, graph, node, output)
            return
        kind = ErrorKind.INFRASTRUCTURE if child.error_kind == ErrorKind.INFRASTRUCTURE else ErrorKind.BUSINESS
        message = f"Child instance {child.id} {child.status.value}"
        if child.error_message:
            message += f": {child.error_message}"
        if engine.machine.finish_attempt(tx, node.node_id, attempt, NodeExecutionStatus.FAILED,
                                         error_message=message, error_kind=kind) is None:
            return
        settle_failure(engine, tx, graph, node, attempt, message, kind)

    def on_result(self, engine, tx, graph, node, key, outcome):
        # Only timeouts reach a subprocess container
        if outcome.success:
            return
        engine.release_unit(key)
        if _instance_closed(tx.instance):
            _cancel_attempt(engine, tx, node.node_id, key.attempt)
            return
        if engine.machine.finish_attempt(
            tx, node.node_id, key.attempt, NodeExecutionStatus.FAILED,
            error_message=outcome.error_message, error_kind=outcome.error_kind
        ) is None:
            return
        settle_failure(engine, tx, graph, node, key.attempt, outcome.error_message, outcome.error_kind)


HANDLERS: Dict[NodeType, NodeHandler] = {
    NodeType.SIMPLE: ExecutorNodeHandler(NodeType.SIMPLE),
    NodeType.TASK: ExecutorNodeHandler(NodeType.TASK),
    NodeType.LOOP: LoopNodeHandler(),
    NodeType.PARALLEL: ParallelNodeHandler(),
    NodeType.SUBPROCESS: SubprocessNodeHandler(),
}

_missing = set(NodeType) - set(HANDLERS)
if _missing:
    raise ImportError(f"No handler for node types: {sorted(t.value for t in _missing)}")
