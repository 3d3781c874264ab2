"""Capability table mapping executor_ref to the executor that performs a node's work."""

import importlib
import inspect
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from ..models.core import ExecutorResult
from .exceptions import ExecutorNotFoundError, ExecutorRegistryError
from .logging import get_logger

logger = get_logger(__name__)


class ExecutionContext:
    """What an executor knows about the attempt it is running.

    ``attempt`` doubles as an idempotency hint: delivery is at-least-once, so
    an executor may see the same (instance_id, node_id) again with a higher
    attempt after a crash or a timeout.
    """

    def __init__(
        self,
        instance_id: str,
        node_id: str,
        attempt: int,
        engine_instance_id: str,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[datetime] = None,
        iteration: Optional[int] = None
    ):
        self.instance_id = instance_id
        self.node_id = node_id
        self.attempt = attempt
        self.engine_instance_id = engine_instance_id
        self.cancel_event = cancel_event or threading.Event()
        self.deadline = deadline
        self.iteration = iteration

    @property
    def idempotency_key(self) -> str:
        key = f"{self.instance_id}:{self.node_id}:{self.attempt}"
        if self.iteration is not None:
            key += f":{self.iteration}"
        return key

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Executor:
    """Interface implemented by every executor variant."""

    description: str = ""

    def execute(self, input_data: Dict[str, Any], context: ExecutionContext) -> ExecutorResult:
        raise NotImplementedError


class FunctionExecutor(Executor):
    """Adapts a plain callable.

    The callable receives ``input_data`` and, if it accepts a second
    parameter, the ExecutionContext. A returned ExecutorResult is passed
    through; any other return value becomes a successful result's output.
    """

    def __init__(self, function: Callable, description: str = ""):
        if not callable(function):
            raise ExecutorRegistryError(f"Executor function {function!r} is not callable")
        self.function = function
        self.description = description or (inspect.getdoc(function) or "").split("\n")[0]
        self._wants_context = self._accepts_context(function)

    @staticmethod
    def _accepts_context(function: Callable) -> bool:
        try:
            sig = inspect.signature(function)
        except (ValueError, TypeError):
            return False
        params = [
            p for p in sig.parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        ]
        has_varargs = any(p.kind == p.VAR_POSITIONAL for p in sig.parameters.values())
        return len(params) >= 2 or has_varargs

    def execute(self, input_data: Dict[str, Any], context: ExecutionContext) -> ExecutorResult:
        if self._wants_context:
            result = self.function(input_data, context)
        else:
            result = self.function(input_data)
        if isinstance(result, ExecutorResult):
            return result
        return ExecutorResult.ok(result)

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self.function, '__qualname__', self.function)!r})"


class ExecutorRegistry:
    """In-memory registry of executors addressed by executor_ref."""

    def __init__(self):
        self._executors: Dict[str, Executor] = {}
        self._sources: Dict[str, str] = {}
        self._lock = threading.RLock()

    def register(self, ref: str, executor: Union[Executor, Callable], description: str = "") -> Executor:
        """Register an executor (or a callable to wrap) under ``ref``.

        Args:
            ref: Capability name referenced by TaskNode.executor_ref
            executor: Executor instance or plain callable
            description: Optional description

        Returns:
            The registered Executor

        Raises:
            ExecutorRegistryError: If ``ref`` is empty, taken, or the executor is invalid
        """
        if not ref or not ref.strip():
            raise ExecutorRegistryError("Executor ref cannot be empty")
        ref = ref.strip()

        if not isinstance(executor, Executor):
            executor = FunctionExecutor(executor, description)
        elif description:
            executor.description = description

        with self._lock:
            if ref in self._executors:
                raise ExecutorRegistryError(f"Executor '{ref}' is already registered", executor_ref=ref)
            self._executors[ref] = executor
            self._sources[ref] = repr(executor)

        logger.info(f"Registered executor '{ref}' -> {executor!r}")
        return executor

    def register_from_path(self, ref: str, path: str, description: str = "") -> Executor:
        """Register ``module.sub:function`` (or ``module.sub.function``) under ``ref``."""
        module_name, _, attr = path.partition(":") if ":" in path else path.rpartition(".")
        if not module_name or not attr:
            raise ExecutorRegistryError(f"Invalid executor path '{path}'", executor_ref=ref)
        try:
            module = importlib.import_module(module_name)
            target = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise ExecutorRegistryError(f"Cannot load executor '{ref}' from '{path}': {e}", executor_ref=ref)
        if inspect.isclass(target) and issubclass(target, Executor):
            target = target()
        executor = self.register(ref, target, description)
        with self._lock:
            self._sources[ref] = path
        return executor

    def resolve(self, ref: Optional[str]) -> Executor:
        """
        Look up the executor for ``ref``.

        Raises:
            ExecutorNotFoundError: If nothing is registered under ``ref``
        """
        with self._lock:
            executor = self._executors.get(ref.strip()) if ref else None
        if executor is None:
            raise ExecutorNotFoundError(f"Executor '{ref}' is not registered", executor_ref=ref)
        return executor

    def unregister(self, ref: str) -> bool:
        with self._lock:
            removed = self._executors.pop(ref, None)
            self._sources.pop(ref, None)
        if removed is not None:
            logger.info(f"Unregistered executor '{ref}'")
        return removed is not None

    def exists(self, ref: str) -> bool:
        with self._lock:
            return ref in self._executors

    def list_executors(self) -> Dict[str, str]:
        """Map of executor_ref to description."""
        with self._lock:
            return {ref: executor.description for ref, executor in sorted(self._executors.items())}

    def get_info(self, ref: str) -> Dict[str, str]:
        executor = self.resolve(ref)
        with self._lock:
            source = self._sources.get(ref, "")
        return {"ref": ref, "description": executor.description, "source": source}

    def clear(self):
        with self._lock:
            self._executors.clear()
            self._sources.clear()
