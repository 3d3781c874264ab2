"""Core engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionValidationError,
    DefinitionNotFoundError,
    InstanceNotFoundError,
    ConflictError,
    InvalidTransitionError,
    NodeExecutionError,
    ExecutorNotFoundError,
    ExecutorRegistryError,
    SchedulerError,
    StorageError,
    TransientError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "DefinitionValidationError",
    "DefinitionNotFoundError",
    "InstanceNotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "NodeExecutionError",
    "ExecutorNotFoundError",
    "ExecutorRegistryError",
    "SchedulerError",
    "StorageError",
    "TransientError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
