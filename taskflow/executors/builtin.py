"""General purpose executors registered by the application factory."""

import time
from typing import Any, Dict

from ..core.exceptions import NodeExecutionError
from ..core.executor_registry import ExecutionContext, ExecutorRegistry
from ..core.logging import get_logger
from ..models.core import ExecutorResult

logger = get_logger(__name__)


def echo(input_data: Dict[str, Any]) -> Dict[str, Any]:
    """Return the input unchanged."""
    return dict(input_data)


def math(input_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply an arithmetic operation to ``result``.

    Args:
        input_data: ``result`` (default 0), ``operation`` (add, subtract,
            multiply, divide) and ``value`` (default 1)

    Returns:
        Dictionary with the new ``result``
    """
    current = input_data.get("result", 0)
    operation = input_data.get("operation", "add")
    value = input_data.get("value", 1)

    if operation == "add":
        new_value = current + value
    elif operation == "subtract":
        new_value = current - value
    elif operation == "multiply":
        new_value = current * value
    elif operation == "divide":
        if value == 0:
            raise NodeExecutionError("Cannot divide by zero")
        new_value = current / value
    else:
        return ExecutorResult.fail(f"Unknown operation: {operation}")

    logger.debug(f"math {operation}: {current} -> {new_value}")
    return {"result": new_value, "last_operation": operation}


def sleep(input_data: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    """Sleep ``seconds`` (default 1), returning early when cancelled."""
    seconds = float(input_data.get("seconds", 1))
    context.cancel_event.wait(seconds)
    return {"slept": seconds, "cancelled": context.is_cancelled()}


def fail(input_data: Dict[str, Any]) -> ExecutorResult:
    """Always report a business failure with ``message``."""
    return ExecutorResult.fail(input_data.get("message", "failed on purpose"))


def collect(input_data: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    """Record the loop item and index the executor was called with."""
    return {
        "item": input_data.get("item"),
        "index": input_data.get("index"),
        "attempt": context.attempt,
        "at": time.time(),
    }


BUILTIN_EXECUTORS = {
    "echo": (echo, "Return the input unchanged"),
    "math": (math, "Arithmetic on the 'result' field"),
    "sleep": (sleep, "Sleep for 'seconds', honouring cancellation"),
    "fail": (fail, "Always fail with 'message'"),
    "collect": (collect, "Record loop item and index"),
}


def register_builtin_executors(registry: ExecutorRegistry) -> int:
    """Register every builtin executor not already present. Returns the number added."""
    added = 0
    for ref, (function, description) in BUILTIN_EXECUTORS.items():
        if registry.exists(ref):
            logger.info(f"Executor already exists: {ref}")
            continue
        registry.register(ref, function, description)
        added += 1
    logger.info(f"Builtin executors registered: {added}")
    return added
