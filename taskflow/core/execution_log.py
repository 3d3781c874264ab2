"""Append-only execution log of node and instance transitions."""

from datetime import datetime
from typing import Any, Dict, Optional

from ..models.core import ExecutionLogEntry, LogLevel, Page
from ..storage.repository import WorkflowRepository
from .clock import Clock
from .logging import get_logger

logger = get_logger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class ExecutionLog:
    """Writes and queries ExecutionLogEntry rows tagged with this engine's id.

    Entries produced by :meth:`entry` are not persisted on their own; the
    state machine hands them to the repository together with the transition
    they describe so the log and the state never disagree.
    """

    def __init__(self, repository: WorkflowRepository, clock: Clock, engine_instance_id: str):
        self.repository = repository
        self.clock = clock
        self.engine_instance_id = engine_instance_id

    def entry(
        self,
        instance_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> ExecutionLogEntry:
        """Build an entry and mirror it to the process logger."""
        logger.log(
            _PY_LEVELS[level],
            f"[{instance_id}{'/' + node_id if node_id else ''}] {message}"
        )
        return ExecutionLogEntry(
            instance_id=instance_id,
            node_id=node_id,
            level=level,
            message=message,
            timestamp=self.clock.now(),
            engine_instance_id=self.engine_instance_id,
            details=details or {}
        )

    def append(
        self,
        instance_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> ExecutionLogEntry:
        """Persist a standalone entry."""
        return self.repository.append_log(self.entry(instance_id, message, level, node_id, details))

    def query(
        self,
        instance_id: str,
        node_id: Optional[str] = None,
        level: Optional[LogLevel] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Page[ExecutionLogEntry]:
        """
        Query the log of one instance.

        Args:
            instance_id: Instance whose entries are returned
            node_id: Restrict to one node
            level: Restrict to one level
            start_time: Inclusive lower bound on the timestamp
            end_time: Inclusive upper bound on the timestamp
            page: 1-based page number
            page_size: Entries per page

        Returns:
            Page of entries in timestamp order
        """
        items, total = self.repository.query_logs(
            instance_id,
            node_id=node_id,
            level=level,
            start_time=start_time,
            end_time=end_time,
            page=page,
            page_size=page_size
        )
        return Page[ExecutionLogEntry].build(items, total, page, page_size)
