"""Data models for the orchestration engine."""

from .core import (
    DefinitionStatus,
    NodeType,
    InstanceStatus,
    NodeExecutionStatus,
    LogLevel,
    ErrorHandling,
    ParallelFailurePolicy,
    ErrorKind,
    ValidationResult,
    LoopConfig,
    SubprocessConfig,
    TaskNode,
    ParallelBranch,
    EdgeDefinition,
    WorkflowConfig,
    WorkflowDefinition,
    DefinitionSummary,
    WorkflowInstance,
    NodeExecution,
    LoopIteration,
    LoopExecution,
    ExecutionLogEntry,
    ExecutorResult,
    Page,
)

__all__ = [
    "DefinitionStatus",
    "NodeType",
    "InstanceStatus",
    "NodeExecutionStatus",
    "LogLevel",
    "ErrorHandling",
    "ParallelFailurePolicy",
    "ErrorKind",
    "ValidationResult",
    "LoopConfig",
    "SubprocessConfig",
    "TaskNode",
    "ParallelBranch",
    "EdgeDefinition",
    "WorkflowConfig",
    "WorkflowDefinition",
    "DefinitionSummary",
    "WorkflowInstance",
    "NodeExecution",
    "LoopIteration",
    "LoopExecution",
    "ExecutionLogEntry",
    "ExecutorResult",
    "Page",
]
