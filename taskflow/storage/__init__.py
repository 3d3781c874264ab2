"""Database models and storage layer."""

from .database import Base, Database, get_database, reset_database, get_db, create_tables, drop_tables
from .models import (
    DefinitionModel, InstanceModel, NodeExecutionModel, LoopExecutionModel, ExecutionLogModel, ScheduleModel
)
from .repository import WorkflowRepository

__all__ = [
    "Base",
    "Database",
    "get_database",
    "reset_database",
    "get_db",
    "create_tables",
    "drop_tables",
    "DefinitionModel",
    "InstanceModel",
    "NodeExecutionModel",
    "LoopExecutionModel",
    "ExecutionLogModel",
    "ScheduleModel",
    "WorkflowRepository",
]
