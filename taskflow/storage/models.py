"""SQLAlchemy database models for the orchestration engine."""

from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, Boolean, ForeignKey, UniqueConstraint
)
from .database import Base


class DefinitionModel(Base):
    """Database model for versioned workflow definitions."""
    __tablename__ = "workflow_definitions"
    __table_args__ = (UniqueConstraint("name", "version", name="uq_definition_name_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, index=True)  # draft, active, deprecated, archived
    enabled = Column(Boolean, nullable=False, default=True)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # nodes, edges and config
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InstanceModel(Base):
    """Database model for workflow instances."""
    __tablename__ = "workflow_instances"

    id = Column(String(36), primary_key=True)
    definition_name = Column(String(255), nullable=False, index=True)
    definition_version = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, index=True)
    business_key = Column(String(255), index=True)
    mutex_key = Column(String(255), index=True)
    priority = Column(Integer, nullable=False, default=0)
    current_node_id = Column(String(255))
    completed_nodes = Column(JSON)
    failed_nodes = Column(JSON)
    skipped_nodes = Column(JSON)
    execution_path = Column(JSON)
    input_data = Column(JSON)
    output_data = Column(JSON)
    node_errors = Column(JSON)
    error_message = Column(Text)
    error_kind = Column(String(32))
    parent_instance_id = Column(String(36), index=True)
    parent_node_id = Column(String(255))
    start_requested_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class NodeExecutionModel(Base):
    """One row per node attempt; engine_instance_id and heartbeat_at form the dispatch lease."""
    __tablename__ = "node_executions"
    __table_args__ = (
        UniqueConstraint("instance_id", "node_id", "attempt", name="uq_node_execution_attempt"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(36), ForeignKey("workflow_instances.id"), nullable=False, index=True)
    node_id = Column(String(255), nullable=False)
    parent_node_id = Column(String(255))
    attempt = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, index=True)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    error_message = Column(Text)
    error_kind = Column(String(32))
    input_data = Column(JSON)
    output_data = Column(JSON)
    engine_instance_id = Column(String(255))
    heartbeat_at = Column(DateTime)
    retry_not_before = Column(DateTime)


class LoopExecutionModel(Base):
    """Database model for loop iteration records."""
    __tablename__ = "loop_executions"
    __table_args__ = (UniqueConstraint("instance_id", "node_id", name="uq_loop_execution_node"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(36), ForeignKey("workflow_instances.id"), nullable=False, index=True)
    node_id = Column(String(255), nullable=False)
    iterations = Column(JSON)
    current_iteration = Column(Integer, nullable=False, default=0)
    total_iterations = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False)


class ExecutionLogModel(Base):
    """Database model for execution log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(36), nullable=False, index=True)
    node_id = Column(String(255), index=True)
    level = Column(String(16), nullable=False)  # debug, info, warn, error
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    engine_instance_id = Column(String(255), nullable=False)
    details = Column(JSON)


class ScheduleModel(Base):
    """Cron schedules; next_run_at doubles as the claim token of the next run."""
    __tablename__ = "workflow_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    definition_name = Column(String(255), nullable=False, index=True)
    definition_version = Column(Integer)
    cron_expression = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    input_data = Column(JSON)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    max_instances = Column(Integer, nullable=False, default=1)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    next_run_at = Column(DateTime, index=True)
    last_run_at = Column(DateTime)
    last_instance_id = Column(String(36))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
