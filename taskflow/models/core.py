"""Core Pydantic models for the orchestration engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator


NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class DefinitionStatus(str, Enum):
    """Lifecycle of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class NodeType(str, Enum):
    """Closed set of node variants."""
    SIMPLE = "simple"
    TASK = "task"
    LOOP = "loop"
    PARALLEL = "parallel"
    SUBPROCESS = "subprocess"


class InstanceStatus(str, Enum):
    """Enumeration of workflow instance statuses."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_INSTANCE_STATUSES = frozenset({
    InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED
})


class NodeExecutionStatus(str, Enum):
    """Enumeration of node attempt statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_NODE_STATUSES = frozenset({
    NodeExecutionStatus.SUCCESS, NodeExecutionStatus.FAILED,
    NodeExecutionStatus.SKIPPED, NodeExecutionStatus.CANCELLED
})


class LogLevel(str, Enum):
    """Execution log levels."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ErrorHandling(str, Enum):
    """What happens to a node once its retry budget is exhausted."""
    FAIL_FAST = "fail-fast"
    CONTINUE = "continue"
    SKIP = "skip"


class ParallelFailurePolicy(str, Enum):
    FAIL_FAST = "fail-fast"
    WAIT_ALL = "wait-all"


class ErrorKind(str, Enum):
    """Distinguishes 'the work failed' from 'the engine could not run the work'."""
    BUSINESS = "business"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"
    CANCELLED = "cancelled"


class ValidationResult(BaseModel):
    """Result of definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


def _check_node_id(value: str, what: str = "Node ID") -> str:
    if not value or not value.strip():
        raise ValueError(f"{what} cannot be empty")
    value = value.strip()
    if not NODE_ID_PATTERN.match(value):
        raise ValueError(f"{what} must contain only alphanumeric characters, underscores, and hyphens")
    return value


class LoopConfig(BaseModel):
    """Loop source and bounds for a loop node."""
    items: Optional[List[Any]] = Field(None, description="Static collection to iterate")
    source: Optional[str] = Field(None, description="Expression producing the collection, re-evaluated per iteration")
    while_condition: Optional[str] = Field(None, description="Iterate while this condition holds")
    max_iterations: int = Field(1000, ge=1, description="Hard cap on iterations")
    iteration_max_retries: int = Field(0, ge=0, description="Retry budget of each iteration")
    item_variable: str = Field("item", description="Input key receiving the current item")
    index_variable: str = Field("index", description="Input key receiving the iteration index")

    @model_validator(mode='after')
    def validate_single_source(self):
        """Exactly one loop source must be configured."""
        sources = [s for s in (self.items, self.source, self.while_condition) if s is not None]
        if len(sources) != 1:
            raise ValueError("Loop must set exactly one of items, source or while_condition")
        return self


class SubprocessConfig(BaseModel):
    """Child workflow started by a subprocess node."""
    definition_name: str = Field(..., description="Name of the child definition")
    definition_version: Optional[int] = Field(None, description="Child version; latest active when omitted")
    input_mapping: Dict[str, str] = Field(default_factory=dict, description="Child input key -> expression over parent context")
    reuse_existing: Optional[bool] = Field(None, description="Overrides the definition-level subprocess_reuse flag")


class TaskNode(BaseModel):
    """Template element of a workflow definition."""
    node_id: str = Field(..., description="Unique identifier within the definition")
    name: Optional[str] = Field(None, description="Display name")
    node_type: NodeType = Field(NodeType.TASK, description="Node variant")
    executor_ref: Optional[str] = Field(None, description="Capability name resolved by the executor registry")
    depends_on: List[str] = Field(default_factory=list, description="Node ids that must complete first")
    max_retries: int = Field(0, ge=0, description="Retries after the first attempt")
    timeout_seconds: Optional[int] = Field(None, description="Wall-clock deadline per attempt")
    condition: Optional[str] = Field(None, description="Boolean guard over the instance context")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Static input merged into the executor input")
    priority: int = Field(0, description="Dispatch tie-break, higher first")
    error_handling: Optional[ErrorHandling] = Field(None, description="Overrides the definition default")
    loop: Optional[LoopConfig] = None
    branches: List["ParallelBranch"] = Field(default_factory=list)
    parallel_failure_policy: Optional[ParallelFailurePolicy] = None
    subprocess: Optional[SubprocessConfig] = None

    @field_validator('node_id')
    @classmethod
    def validate_id_format(cls, node_id):
        """Ensure node ID follows valid format."""
        return _check_node_id(node_id)

    @field_validator('depends_on')
    @classmethod
    def validate_depends_on(cls, depends_on):
        """Dependencies form a set; keep them unique and sorted."""
        return sorted({dep.strip() for dep in depends_on if dep and dep.strip()})

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, timeout):
        """Ensure timeout is positive if specified."""
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be a positive integer")
        return timeout

    @model_validator(mode='after')
    def validate_type_config(self):
        """Each node variant carries the configuration it needs."""
        if self.node_id in self.depends_on:
            raise ValueError(f"Node '{self.node_id}' cannot depend on itself")
        if self.node_type in (NodeType.SIMPLE, NodeType.TASK, NodeType.LOOP):
            if not self.executor_ref or not self.executor_ref.strip():
                raise ValueError(f"Node '{self.node_id}' of type {self.node_type.value} requires executor_ref")
        if self.node_type == NodeType.LOOP and self.loop is None:
            raise ValueError(f"Loop node '{self.node_id}' requires loop configuration")
        if self.node_type == NodeType.PARALLEL and not self.branches:
            raise ValueError(f"Parallel node '{self.node_id}' requires at least one branch")
        if self.node_type == NodeType.SUBPROCESS and self.subprocess is None:
            raise ValueError(f"Subprocess node '{self.node_id}' requires subprocess configuration")
        return self


class ParallelBranch(BaseModel):
    """An independent sub-chain fanned out by a parallel node."""
    branch_id: str = Field(..., description="Branch identifier within the parallel node")
    nodes: List[TaskNode] = Field(..., description="Nodes of this branch")

    @field_validator('branch_id')
    @classmethod
    def validate_branch_id(cls, branch_id):
        return _check_node_id(branch_id, "Branch ID")

    @field_validator('nodes')
    @classmethod
    def validate_branch_nodes(cls, nodes):
        """Branches hold simple/task nodes with unique ids."""
        if not nodes:
            raise ValueError("Branch must contain at least one node")
        ids = [node.node_id for node in nodes]
        if len(ids) != len(set(ids)):
            raise ValueError("Node IDs within a branch must be unique")
        for node in nodes:
            if node.node_type not in (NodeType.SIMPLE, NodeType.TASK):
                raise ValueError(f"Branch node '{node.node_id}' must be simple or task")
        return nodes


TaskNode.model_rebuild()


class EdgeDefinition(BaseModel):
    """Explicit dependency edge; from_node must complete before to_node."""
    from_node: str = Field(..., description="Source node ID")
    to_node: str = Field(..., description="Target node ID")

    @field_validator('from_node', 'to_node')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode='after')
    def validate_edge(self):
        """Validate edge definition."""
        if self.from_node == self.to_node:
            raise ValueError("Self-referencing edges are not allowed")
        return self


class WorkflowConfig(BaseModel):
    """Definition-wide execution policy."""
    error_handling: ErrorHandling = ErrorHandling.FAIL_FAST
    parallel_failure_policy: ParallelFailurePolicy = ParallelFailurePolicy.FAIL_FAST
    subprocess_reuse: bool = False
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(60.0, ge=0)


class WorkflowDefinition(BaseModel):
    """Versioned workflow template. Identity is (name, version)."""
    name: str = Field(..., description="Name of the workflow")
    version: int = Field(1, ge=1, description="Version number")
    description: str = Field("", description="Description of the workflow")
    status: DefinitionStatus = Field(DefinitionStatus.DRAFT, description="Lifecycle status")
    enabled: bool = Field(True, description="Whether new instances may be created")
    nodes: List[TaskNode] = Field(..., description="Nodes of the workflow")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Optional explicit edges")
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name or not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        if not nodes:
            raise ValueError("Workflow must contain at least one node")
        node_ids = [node.node_id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode='after')
    def merge_edges_into_dependencies(self):
        """Each explicit edge adds from_node to to_node.depends_on."""
        by_id = {node.node_id: node for node in self.nodes}
        for edge in self.edges:
            target = by_id.get(edge.to_node)
            if target is not None and edge.from_node not in target.depends_on:
                target.depends_on = sorted(set(target.depends_on) | {edge.from_node})
        return self

    def get_node(self, node_id: str) -> Optional[TaskNode]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None


class DefinitionSummary(BaseModel):
    """Listing view of a definition."""
    name: str
    version: int
    status: DefinitionStatus
    enabled: bool
    description: str = ""
    node_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowInstance(BaseModel):
    """One runtime execution of a definition."""
    id: str = Field(..., description="Instance id (uuid)")
    definition_name: str
    definition_version: int
    status: InstanceStatus = InstanceStatus.PENDING
    business_key: Optional[str] = None
    mutex_key: Optional[str] = None
    priority: int = 0
    current_node_id: Optional[str] = None
    completed_nodes: List[str] = Field(default_factory=list)
    failed_nodes: List[str] = Field(default_factory=list)
    skipped_nodes: List[str] = Field(default_factory=list)
    execution_path: List[str] = Field(default_factory=list)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict, description="Node outputs keyed by node id")
    node_errors: Dict[str, str] = Field(default_factory=dict, description="Last error per failed node")
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    parent_instance_id: Optional[str] = None
    parent_node_id: Optional[str] = None
    start_requested_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES


class NodeExecution(BaseModel):
    """One attempt of one node."""
    id: Optional[int] = None
    instance_id: str
    node_id: str
    parent_node_id: Optional[str] = None
    attempt: int = Field(1, ge=1)
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Any] = None
    engine_instance_id: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    retry_not_before: Optional[datetime] = Field(None, description="Earliest start of the retry this failure scheduled")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES


class LoopIteration(BaseModel):
    index: int
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Any] = None
    error_message: Optional[str] = None
    attempts: int = 0


class LoopExecution(BaseModel):
    """Iteration record of a loop node."""
    instance_id: str
    node_id: str
    iterations: List[LoopIteration] = Field(default_factory=list)
    current_iteration: int = 0
    total_iterations: int = 0
    status: NodeExecutionStatus = NodeExecutionStatus.RUNNING


class ExecutionLogEntry(BaseModel):
    """Append-only record of a state transition."""
    id: Optional[int] = None
    instance_id: str
    node_id: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str
    timestamp: datetime
    engine_instance_id: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ExecutorResult(BaseModel):
    """Outcome reported by an executor."""
    success: bool
    output_data: Optional[Any] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, output_data: Any = None) -> "ExecutorResult":
        return cls(success=True, output_data=output_data)

    @classmethod
    def fail(cls, error_message: str) -> "ExecutorResult":
        return cls(success=False, error_message=error_message)


class WorkflowSchedule(BaseModel):
    """Cron trigger that starts instances of a definition."""
    id: Optional[int] = None
    name: str = Field(..., description="Unique schedule name")
    description: str = Field("", description="Description of the schedule")
    definition_name: str = Field(..., description="Definition started on every run")
    definition_version: Optional[int] = Field(None, description="Version; latest active at run time when omitted")
    cron_expression: str = Field(..., description="Five-field cron expression (min hour dom mon dow)")
    timezone: str = Field("UTC", description="Zone the cron expression is evaluated in")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Input of every started instance")
    enabled: bool = Field(True, description="Disabled schedules never fire")
    max_instances: int = Field(1, ge=1, description="Runs skipped while this many started instances are unfinished")
    start_time: Optional[datetime] = Field(None, description="No runs before this time (UTC)")
    end_time: Optional[datetime] = Field(None, description="No runs after this time (UTC)")
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_instance_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        if not NODE_ID_PATTERN.match(name):
            raise ValueError("Schedule name must contain only letters, digits, '_' and '-'")
        return name

    @field_validator('cron_expression')
    @classmethod
    def validate_cron_expression(cls, expression):
        if not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression: '{expression}'")
        return expression

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, name):
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: '{name}'")
        return name

    @model_validator(mode='after')
    def validate_window(self):
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def business_key(self) -> str:
        """Business key carried by every instance this schedule starts."""
        return f"schedule:{self.name}"


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of a paginated query."""
    items: List[T]
    total: int
    page: int
    page_size: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, items: List[T], total: int, page: int, page_size: int) -> "Page[T]":
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            has_next=page * page_size < total,
            has_previous=page > 1
        )
