"""Persistence of definitions, instances, node/loop executions and the execution log."""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import ConflictError, StorageError, TransientError
from ..core.logging import get_logger
from ..models.core import (
    DefinitionStatus,
    ExecutionLogEntry,
    InstanceStatus,
    LogLevel,
    LoopExecution,
    NodeExecution,
    NodeExecutionStatus,
    TERMINAL_INSTANCE_STATUSES,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowSchedule,
)
from .database import Database
from .models import (
    DefinitionModel,
    ExecutionLogModel,
    InstanceModel,
    LoopExecutionModel,
    NodeExecutionModel,
    ScheduleModel,
)

logger = get_logger(__name__)

STORAGE_RETRY = RetryConfig(max_attempts=3, retryable_exceptions=[StorageError, TransientError])

_INSTANCE_JSON_FIELDS = (
    "completed_nodes", "failed_nodes", "skipped_nodes", "execution_path",
    "input_data", "output_data", "node_errors",
)
_INSTANCE_PLAIN_FIELDS = (
    "definition_name", "definition_version", "business_key", "mutex_key", "priority",
    "current_node_id", "error_message", "parent_instance_id", "parent_node_id",
    "start_requested_at", "started_at", "completed_at",
)


def _enum_value(value):
    return value.value if value is not None and hasattr(value, "value") else value


class WorkflowRepository:
    """Transactional access to every persisted engine record.

    Each public method runs in its own transaction and is retried on
    StorageError. ``commit_changes`` writes a whole state transition
    (instance, attempts, loop record, log lines) atomically.
    """

    def __init__(self, database: Database):
        self.database = database

    @contextmanager
    def _transaction(self, operation: str, table: Optional[str] = None) -> Iterator[Session]:
        with self.database.session() as db:
            try:
                yield db
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(
                    f"Conflicting write during {operation}: {str(e.orig)}",
                    details={"operation": operation, "table": table}
                )
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Storage failure during {operation}: {str(e)}")
                raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table=table)
            except Exception:
                db.rollback()
                raise

    # Definitions

    @with_retry(STORAGE_RETRY)
    def insert_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        now = datetime.utcnow()
        with self._transaction("insert definition", "workflow_definitions") as db:
            row = DefinitionModel(
                name=definition.name,
                version=definition.version,
                status=definition.status.value,
                enabled=definition.enabled,
                description=definition.description,
                definition=self._definition_body(definition),
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.flush()
            return self._to_definition(row)

    @with_retry(STORAGE_RETRY)
    def update_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._transaction("update definition", "workflow_definitions") as db:
            row = self._definition_row(db, definition.name, definition.version)
            if row is None:
                raise StorageError(
                    f"Definition {definition.name} v{definition.version} disappeared during update",
                    operation="update definition"
                )
            row.status = definition.status.value
            row.enabled = definition.enabled
            row.description = definition.description
            row.definition = self._definition_body(definition)
            row.updated_at = datetime.utcnow()
            db.flush()
            return self._to_definition(row)

    @with_retry(STORAGE_RETRY)
    def get_definition(self, name: str, version: int) -> Optional[WorkflowDefinition]:
        with self._transaction("get definition", "workflow_definitions") as db:
            row = self._definition_row(db, name, version)
            return self._to_definition(row) if row else None

    @with_retry(STORAGE_RETRY)
    def latest_version(self, name: str) -> int:
        """Highest version number stored for ``name``, 0 when none exist."""
        with self._transaction("get latest version", "workflow_definitions") as db:
            value = db.query(func.max(DefinitionModel.version)).filter(DefinitionModel.name == name).scalar()
            return value or 0

    @with_retry(STORAGE_RETRY)
    def latest_active(self, name: str) -> Optional[WorkflowDefinition]:
        with self._transaction("get latest active definition", "workflow_definitions") as db:
            row = (
                db.query(DefinitionModel)
                .filter(DefinitionModel.name == name, DefinitionModel.status == DefinitionStatus.ACTIVE.value)
                .order_by(DefinitionModel.version.desc())
                .first()
            )
            return self._to_definition(row) if row else None

    @with_retry(STORAGE_RETRY)
    def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[WorkflowDefinition], int]:
        with self._transaction("list definitions", "workflow_definitions") as db:
            query = db.query(DefinitionModel)
            if name:
                query = query.filter(DefinitionModel.name == name)
            if status:
                query = query.filter(DefinitionModel.status == _enum_value(status))
            total = query.count()
            rows = (
                query.order_by(DefinitionModel.name, DefinitionModel.version.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [self._to_definition(row) for row in rows], total

    @with_retry(STORAGE_RETRY)
    def delete_definition(self, name: str, version: int) -> bool:
        with self._transaction("delete definition", "workflow_definitions") as db:
            row = self._definition_row(db, name, version)
            if row is None:
                return False
            db.delete(row)
            return True

    @with_retry(STORAGE_RETRY)
    def count_instances_of(self, name: str, version: int) -> int:
        with self._transaction("count instances", "workflow_instances") as db:
            return (
                db.query(InstanceModel)
                .filter(InstanceModel.definition_name == name, InstanceModel.definition_version == version)
                .count()
            )

    # Instances

    @with_retry(STORAGE_RETRY)
    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        with self._transaction("get instance", "workflow_instances") as db:
            row = db.get(InstanceModel, instance_id)
            return self._to_instance(row) if row else None

    @with_retry(STORAGE_RETRY)
    def get_instance_by_business_key(self, business_key: str) -> Optional[WorkflowInstance]:
        """Most recently created instance carrying ``business_key``."""
        with self._transaction("get instance by business key", "workflow_instances") as db:
            row = (
                db.query(InstanceModel)
                .filter(InstanceModel.business_key == business_key)
                .order_by(InstanceModel.created_at.desc())
                .first()
            )
            return self._to_instance(row) if row else None

    @with_retry(STORAGE_RETRY)
    def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        definition_name: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[WorkflowInstance], int]:
        with self._transaction("list instances", "workflow_instances") as db:
            query = db.query(InstanceModel)
            if status:
                query = query.filter(InstanceModel.status == _enum_value(status))
            if definition_name:
                query = query.filter(InstanceModel.definition_name == definition_name)
            total = query.count()
            rows = (
                query.order_by(InstanceModel.created_at.desc(), InstanceModel.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [self._to_instance(row) for row in rows], total

    @with_retry(STORAGE_RETRY)
    def find_instances(self, statuses: Iterable[InstanceStatus]) -> List[WorkflowInstance]:
        """All instances in the given statuses, highest priority first, then oldest."""
        values = [_enum_value(status) for status in statuses]
        with self._transaction("find instances", "workflow_instances") as db:
            rows = (
                db.query(InstanceModel)
                .filter(InstanceModel.status.in_(values))
                .order_by(InstanceModel.priority.desc(), InstanceModel.created_at, InstanceModel.id)
                .all()
            )
            return [self._to_instance(row) for row in rows]

    @with_retry(STORAGE_RETRY)
    def find_children(self, parent_instance_id: str, parent_node_id: Optional[str] = None) -> List[WorkflowInstance]:
        with self._transaction("find child instances", "workflow_instances") as db:
            query = db.query(InstanceModel).filter(InstanceModel.parent_instance_id == parent_instance_id)
            if parent_node_id:
                query = query.filter(InstanceModel.parent_node_id == parent_node_id)
            rows = query.order_by(InstanceModel.created_at, InstanceModel.id).all()
            return [self._to_instance(row) for row in rows]

    # Node and loop executions

    @with_retry(STORAGE_RETRY)
    def get_node_execution(self, instance_id: str, node_id: str, attempt: int) -> Optional[NodeExecution]:
        with self._transaction("get node execution", "node_executions") as db:
            row = self._node_execution_row(db, instance_id, node_id, attempt)
            return self._to_node_execution(row) if row else None

    @with_retry(STORAGE_RETRY)
    def list_node_executions(self, instance_id: str, node_id: Optional[str] = None) -> List[NodeExecution]:
        with self._transaction("list node executions", "node_executions") as db:
            query = db.query(NodeExecutionModel).filter(NodeExecutionModel.instance_id == instance_id)
            if node_id:
                query = query.filter(NodeExecutionModel.node_id == node_id)
            rows = query.order_by(NodeExecutionModel.id).all()
            return [self._to_node_execution(row) for row in rows]

    @with_retry(STORAGE_RETRY)
    def find_node_executions(self, status: NodeExecutionStatus) -> List[NodeExecution]:
        with self._transaction("find node executions", "node_executions") as db:
            rows = (
                db.query(NodeExecutionModel)
                .filter(NodeExecutionModel.status == status.value)
                .order_by(NodeExecutionModel.id)
                .all()
            )
            return [self._to_node_execution(row) for row in rows]

    @with_retry(STORAGE_RETRY)
    def heartbeat(self, keys: Sequence[Tuple[str, str, int]], engine_instance_id: str, at: datetime) -> int:
        """Refresh the lease of running attempts owned by ``engine_instance_id``."""
        touched = 0
        with self._transaction("heartbeat", "node_executions") as db:
            for instance_id, node_id, attempt in keys:
                touched += (
                    db.query(NodeExecutionModel)
                    .filter(
                        NodeExecutionModel.instance_id == instance_id,
                        NodeExecutionModel.node_id == node_id,
                        NodeExecutionModel.attempt == attempt,
                        NodeExecutionModel.status == NodeExecutionStatus.RUNNING.value,
                        NodeExecutionModel.engine_instance_id == engine_instance_id,
                    )
                    .update({NodeExecutionModel.heartbeat_at: at}, synchronize_session=False)
                )
        return touched

    @with_retry(STORAGE_RETRY)
    def get_loop_execution(self, instance_id: str, node_id: str) -> Optional[LoopExecution]:
        with self._transaction("get loop execution", "loop_executions") as db:
            row = self._loop_row(db, instance_id, node_id)
            return self._to_loop_execution(row) if row else None

    @with_retry(STORAGE_RETRY)
    def list_loop_executions(self, instance_id: str) -> List[LoopExecution]:
        with self._transaction("list loop executions", "loop_executions") as db:
            rows = (
                db.query(LoopExecutionModel)
                .filter(LoopExecutionModel.instance_id == instance_id)
                .order_by(LoopExecutionModel.id)
                .all()
            )
            return [self._to_loop_execution(row) for row in rows]

    # Execution log

    @with_retry(STORAGE_RETRY)
    def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        with self._transaction("append log entry", "execution_logs") as db:
            row = self._log_row(entry)
            db.add(row)
            db.flush()
            return self._to_log_entry(row)

    @with_retry(STORAGE_RETRY)
    def query_logs(
        self,
        instance_id: str,
        node_id: Optional[str] = None,
        level: Optional[LogLevel] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Tuple[List[ExecutionLogEntry], int]:
        with self._transaction("query logs", "execution_logs") as db:
            query = db.query(ExecutionLogModel).filter(ExecutionLogModel.instance_id == instance_id)
            if node_id:
                query = query.filter(ExecutionLogModel.node_id == node_id)
            if level:
                query = query.filter(ExecutionLogModel.level == _enum_value(level))
            if start_time:
                query = query.filter(ExecutionLogModel.timestamp >= start_time)
            if end_time:
                query = query.filter(ExecutionLogModel.timestamp <= end_time)
            total = query.count()
            rows = (
                query.order_by(ExecutionLogModel.timestamp, ExecutionLogModel.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [self._to_log_entry(row) for row in rows], total

    # Atomic transition

    @with_retry(STORAGE_RETRY)
    def commit_changes(
        self,
        instance: Optional[WorkflowInstance] = None,
        node_executions: Sequence[NodeExecution] = (),
        loop_executions: Sequence[LoopExecution] = (),
        log_entries: Sequence[ExecutionLogEntry] = (),
        new_instances: Sequence[WorkflowInstance] = ()
    ) -> None:
        """Write one state transition in a single transaction."""
        with self._transaction("commit state transition") as db:
            for created in new_instances:
                db.add(self._apply_instance(InstanceModel(id=created.id, created_at=created.created_at), created))
            if instance is not None:
                row = db.get(InstanceModel, instance.id)
                if row is None:
                    row = InstanceModel(id=instance.id, created_at=instance.created_at)
                    db.add(row)
                self._apply_instance(row, instance)
                db.flush()
            for execution in node_executions:
                row = self._node_execution_row(db, execution.instance_id, execution.node_id, execution.attempt)
                if row is None:
                    row = NodeExecutionModel(
                        instance_id=execution.instance_id,
                        node_id=execution.node_id,
                        attempt=execution.attempt,
                    )
                    db.add(row)
                self._apply_node_execution(row, execution)
            for loop in loop_executions:
                row = self._loop_row(db, loop.instance_id, loop.node_id)
                if row is None:
                    row = LoopExecutionModel(instance_id=loop.instance_id, node_id=loop.node_id)
                    db.add(row)
                dumped = loop.model_dump(mode="json")
                row.iterations = dumped["iterations"]
                row.current_iteration = loop.current_iteration
                row.total_iterations = loop.total_iterations
                row.status = loop.status.value
            for entry in log_entries:
                db.add(self._log_row(entry))

    # Schedules

    @with_retry(STORAGE_RETRY)
    def insert_schedule(self, schedule: WorkflowSchedule) -> WorkflowSchedule:
        now = datetime.utcnow()
        with self._transaction("insert schedule", "workflow_schedules") as db:
            row = ScheduleModel(created_at=now)
            self._apply_schedule(row, schedule)
            row.updated_at = now
            db.add(row)
            db.flush()
            return self._to_schedule(row)

    @with_retry(STORAGE_RETRY)
    def update_schedule(self, schedule: WorkflowSchedule) -> WorkflowSchedule:
        with self._transaction("update schedule", "workflow_schedules") as db:
            row = db.get(ScheduleModel, schedule.id)
            if row is None:
                raise StorageError(f"Schedule {schedule.id} disappeared during update", operation="update schedule")
            self._apply_schedule(row, schedule)
            row.updated_at = datetime.utcnow()
            db.flush()
            return self._to_schedule(row)

    @with_retry(STORAGE_RETRY)
    def get_schedule(self, schedule_id: int) -> Optional[WorkflowSchedule]:
        with self._transaction("get schedule", "workflow_schedules") as db:
            row = db.get(ScheduleModel, schedule_id)
            return self._to_schedule(row) if row else None

    @with_retry(STORAGE_RETRY)
    def list_schedules(
        self,
        definition_name: Optional[str] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[WorkflowSchedule], int]:
        with self._transaction("list schedules", "workflow_schedules") as db:
            query = db.query(ScheduleModel)
            if definition_name:
                query = query.filter(ScheduleModel.definition_name == definition_name)
            if enabled is not None:
                query = query.filter(ScheduleModel.enabled == enabled)
            total = query.count()
            rows = (
                query.order_by(ScheduleModel.name)
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [self._to_schedule(row) for row in rows], total

    @with_retry(STORAGE_RETRY)
    def delete_schedule(self, schedule_id: int) -> bool:
        with self._transaction("delete schedule", "workflow_schedules") as db:
            row = db.get(ScheduleModel, schedule_id)
            if row is None:
                return False
            db.delete(row)
            return True

    @with_retry(STORAGE_RETRY)
    def find_due_schedules(self, now: datetime) -> List[WorkflowSchedule]:
        """Enabled schedules whose next run is at or before ``now``, earliest first."""
        with self._transaction("find due schedules", "workflow_schedules") as db:
            rows = (
                db.query(ScheduleModel)
                .filter(
                    ScheduleModel.enabled.is_(True),
                    ScheduleModel.next_run_at.isnot(None),
                    ScheduleModel.next_run_at <= now,
                )
                .order_by(ScheduleModel.next_run_at, ScheduleModel.id)
                .all()
            )
            return [self._to_schedule(row) for row in rows]

    @with_retry(STORAGE_RETRY)
    def claim_schedule_run(self, schedule_id: int, due_at: datetime, next_run_at: Optional[datetime],
                           run_at: datetime) -> bool:
        """
        Move a due schedule to its next run unless another engine already did.

        Returns:
            True when this caller owns the run that was due at ``due_at``
        """
        with self._transaction("claim schedule run", "workflow_schedules") as db:
            claimed = (
                db.query(ScheduleModel)
                .filter(ScheduleModel.id == schedule_id, ScheduleModel.next_run_at == due_at)
                .update(
                    {
                        ScheduleModel.next_run_at: next_run_at,
                        ScheduleModel.last_run_at: run_at,
                        ScheduleModel.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False
                )
            )
            return claimed == 1

    @with_retry(STORAGE_RETRY)
    def record_schedule_instance(self, schedule_id: int, instance_id: str) -> None:
        with self._transaction("record schedule instance", "workflow_schedules") as db:
            db.query(ScheduleModel).filter(ScheduleModel.id == schedule_id).update(
                {ScheduleModel.last_instance_id: instance_id}, synchronize_session=False
            )

    @with_retry(STORAGE_RETRY)
    def count_unfinished_instances(self, business_key: str) -> int:
        terminal = [status.value for status in TERMINAL_INSTANCE_STATUSES]
        with self._transaction("count unfinished instances", "workflow_instances") as db:
            return (
                db.query(InstanceModel)
                .filter(InstanceModel.business_key == business_key, InstanceModel.status.notin_(terminal))
                .count()
            )

    def check(self) -> Dict[str, Any]:
        """Health check query."""
        try:
            message = self.database.check_connection()
        except SQLAlchemyError as e:
            raise StorageError(f"Database health check failed: {str(e)}", operation="health check")
        return {"message": message, "database_url": self.database.database_url.split("@")[-1]}

    # Row helpers

    @staticmethod
    def _definition_row(db: Session, name: str, version: int) -> Optional[DefinitionModel]:
        return (
            db.query(DefinitionModel)
            .filter(DefinitionModel.name == name, DefinitionModel.version == version)
            .first()
        )

    @staticmethod
    def _node_execution_row(db: Session, instance_id: str, node_id: str, attempt: int) -> Optional[NodeExecutionModel]:
        return (
            db.query(NodeExecutionModel)
            .filter(
                NodeExecutionModel.instance_id == instance_id,
                NodeExecutionModel.node_id == node_id,
                NodeExecutionModel.attempt == attempt,
            )
            .first()
        )

    @staticmethod
    def _loop_row(db: Session, instance_id: str, node_id: str) -> Optional[LoopExecutionModel]:
        return (
            db.query(LoopExecutionModel)
            .filter(LoopExecutionModel.instance_id == instance_id, LoopExecutionModel.node_id == node_id)
            .first()
        )

    @staticmethod
    def _definition_body(definition: WorkflowDefinition) -> Dict[str, Any]:
        return definition.model_dump(mode="json", include={"nodes", "edges", "config"})

    @staticmethod
    def _to_definition(row: DefinitionModel) -> WorkflowDefinition:
        body = row.definition or {}
        return WorkflowDefinition(
            name=row.name,
            version=row.version,
            description=row.description or "",
            status=row.status,
            enabled=row.enabled,
            nodes=body.get("nodes", []),
            edges=body.get("edges", []),
            config=body.get("config", {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _apply_instance(row: InstanceModel, instance: WorkflowInstance) -> InstanceModel:
        dumped = instance.model_dump(mode="json", include=set(_INSTANCE_JSON_FIELDS))
        for field in _INSTANCE_JSON_FIELDS:
            setattr(row, field, dumped[field])
        for field in _INSTANCE_PLAIN_FIELDS:
            setattr(row, field, getattr(instance, field))
        row.status = instance.status.value
        row.error_kind = _enum_value(instance.error_kind)
        row.updated_at = instance.updated_at or datetime.utcnow()
        if instance.created_at is not None:
            row.created_at = instance.created_at
        return row

    @staticmethod
    def _to_instance(row: InstanceModel) -> WorkflowInstance:
        return WorkflowInstance(
            id=row.id,
            definition_name=row.definition_name,
            definition_version=row.definition_version,
            status=row.status,
            business_key=row.business_key,
            mutex_key=row.mutex_key,
            priority=row.priority or 0,
            current_node_id=row.current_node_id,
            completed_nodes=row.completed_nodes or [],
            failed_nodes=row.failed_nodes or [],
            skipped_nodes=row.skipped_nodes or [],
            execution_path=row.execution_path or [],
            input_data=row.input_data or {},
            output_data=row.output_data or {},
            node_errors=row.node_errors or {},
            error_message=row.error_message,
            error_kind=row.error_kind,
            parent_instance_id=row.parent_instance_id,
            parent_node_id=row.parent_node_id,
            start_requested_at=row.start_requested_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _apply_node_execution(row: NodeExecutionModel, execution: NodeExecution) -> None:
        dumped = execution.model_dump(mode="json", include={"input_data", "output_data"})
        row.parent_node_id = execution.parent_node_id
        row.status = execution.status.value
        row.start_time = execution.start_time
        row.end_time = execution.end_time
        row.error_message = execution.error_message
        row.error_kind = _enum_value(execution.error_kind)
        row.input_data = dumped["input_data"]
        row.output_data = dumped["output_data"]
        row.engine_instance_id = execution.engine_instance_id
        row.heartbeat_at = execution.heartbeat_at
        row.retry_not_before = execution.retry_not_before

    @staticmethod
    def _to_node_execution(row: NodeExecutionModel) -> NodeExecution:
        return NodeExecution(
            id=row.id,
            instance_id=row.instance_id,
            node_id=row.node_id,
            parent_node_id=row.parent_node_id,
            attempt=row.attempt,
            status=row.status,
            start_time=row.start_time,
            end_time=row.end_time,
            error_message=row.error_message,
            error_kind=row.error_kind,
            input_data=row.input_data or {},
            output_data=row.output_data,
            engine_instance_id=row.engine_instance_id,
            heartbeat_at=row.heartbeat_at,
            retry_not_before=row.retry_not_before,
        )

    @staticmethod
    def _to_loop_execution(row: LoopExecutionModel) -> LoopExecution:
        return LoopExecution(
            instance_id=row.instance_id,
            node_id=row.node_id,
            iterations=row.iterations or [],
            current_iteration=row.current_iteration,
            total_iterations=row.total_iterations,
            status=row.status,
        )

    @staticmethod
    def _log_row(entry: ExecutionLogEntry) -> ExecutionLogModel:
        details = entry.model_dump(mode="json", include={"details"})["details"]
        return ExecutionLogModel(
            instance_id=entry.instance_id,
            node_id=entry.node_id,
            level=entry.level.value,
            message=entry.message,
            timestamp=entry.timestamp,
            engine_instance_id=entry.engine_instance_id,
            details=details,
        )

    @staticmethod
    def _to_log_entry(row: ExecutionLogModel) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            id=row.id,
            instance_id=row.instance_id,
            node_id=row.node_id,
            level=row.level,
            message=row.message,
            timestamp=row.timestamp,
            engine_instance_id=row.engine_instance_id,
            details=row.details or {},
        )

    @staticmethod
    def _apply_schedule(row: ScheduleModel, schedule: WorkflowSchedule) -> None:
        row.name = schedule.name
        row.description = schedule.description
        row.definition_name = schedule.definition_name
        row.definition_version = schedule.definition_version
        row.cron_expression = schedule.cron_expression
        row.timezone = schedule.timezone
        row.input_data = schedule.model_dump(mode="json", include={"input_data"})["input_data"]
        row.enabled = schedule.enabled
        row.max_instances = schedule.max_instances
        row.start_time = schedule.start_time
        row.end_time = schedule.end_time
        row.next_run_at = schedule.next_run_at
        row.last_run_at = schedule.last_run_at
        row.last_instance_id = schedule.last_instance_id

    @staticmethod
    def _to_schedule(row: ScheduleModel) -> WorkflowSchedule:
        return WorkflowSchedule(
            id=row.id,
            name=row.name,
            description=row.description or "",
            definition_name=row.definition_name,
            definition_version=row.definition_version,
            cron_expression=row.cron_expression,
            timezone=row.timezone,
            input_data=row.input_data or {},
            enabled=row.enabled,
            max_instances=row.max_instances,
            start_time=row.start_time,
            end_time=row.end_time,
            next_run_at=row.next_run_at,
            last_run_at=row.last_run_at,
            last_instance_id=row.last_instance_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
