"""Versioned workflow definitions: authoring, publication and lookup."""

import threading
from typing import Dict, Optional, Tuple

from ..models.core import (
    DefinitionStatus,
    DefinitionSummary,
    Page,
    ValidationResult,
    WorkflowDefinition,
)
from ..storage.repository import WorkflowRepository
from .exceptions import (
    ConflictError,
    DefinitionNotFoundError,
    DefinitionValidationError,
)
from .logging import get_logger
from .resolver import DefinitionGraph, find_subprocess_cycle, validate_definition

logger = get_logger(__name__)

# Allowed forward moves of a definition's status
_STATUS_MOVES = {
    DefinitionStatus.DRAFT: {DefinitionStatus.ACTIVE, DefinitionStatus.ARCHIVED},
    DefinitionStatus.ACTIVE: {DefinitionStatus.DEPRECATED, DefinitionStatus.ARCHIVED},
    DefinitionStatus.DEPRECATED: {DefinitionStatus.ARCHIVED},
    DefinitionStatus.ARCHIVED: set(),
}


class DefinitionStore:
    """Manages workflow definitions, their validation and their lifecycle.

    A definition is editable while ``draft``. Publishing validates it as a DAG
    and makes it ``active``; from then on only its status (forward) and its
    ``enabled`` flag may change. Compiled arenas of published definitions are
    cached since they never change.
    """

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository
        self._compiled: Dict[Tuple[str, int], DefinitionGraph] = {}
        self._cache_lock = threading.Lock()

    def next_version(self, name: str) -> int:
        return self.repository.latest_version(name) + 1

    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Store a new draft definition.

        Args:
            definition: Definition to store; its status is forced to draft

        Returns:
            The stored definition

        Raises:
            ConflictError: If (name, version) already exists
            StorageError: If storage operation fails
        """
        logger.info(f"Creating definition {definition.name} v{definition.version}")
        draft = definition.model_copy(update={"status": DefinitionStatus.DRAFT}, deep=True)
        stored = self.repository.insert_definition(draft)
        result = validate_definition(stored)
        if result.warnings:
            logger.warning(f"Definition {stored.name} v{stored.version} warnings: {'; '.join(result.warnings)}")
        return stored

    def get(self, name: str, version: Optional[int] = None) -> WorkflowDefinition:
        """
        Retrieve a definition by name and version (latest version when omitted).

        Raises:
            DefinitionNotFoundError: If no such definition exists
        """
        if version is None:
            version = self.repository.latest_version(name)
        definition = self.repository.get_definition(name, version) if version else None
        if definition is None:
            raise DefinitionNotFoundError(
                f"Definition '{name}' version {version} not found", name=name, version=version
            )
        return definition

    def get_latest_active(self, name: str) -> WorkflowDefinition:
        definition = self.repository.latest_active(name)
        if definition is None:
            raise DefinitionNotFoundError(f"No active version of definition '{name}'", name=name)
        return definition

    def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Page[DefinitionSummary]:
        """List definitions, newest version first within each name."""
        definitions, total = self.repository.list_definitions(name, status, page, page_size)
        summaries = [
            DefinitionSummary(
                name=d.name,
                version=d.version,
                status=d.status,
                enabled=d.enabled,
                description=d.description,
                node_count=len(d.nodes),
                created_at=d.created_at,
                updated_at=d.updated_at
            )
            for d in definitions
        ]
        return Page[DefinitionSummary].build(summaries, total, page, page_size)

    def update(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Replace the body of a draft definition.

        Raises:
            DefinitionNotFoundError: If the definition does not exist
            ConflictError: If the definition is no longer a draft
        """
        current = self.get(definition.name, definition.version)
        if current.status != DefinitionStatus.DRAFT:
            raise ConflictError(
                f"Definition {current.name} v{current.version} is {current.status.value} and cannot be modified",
                details={"status": current.status.value}
            )
        updated = definition.model_copy(update={"status": DefinitionStatus.DRAFT}, deep=True)
        logger.info(f"Updating draft definition {updated.name} v{updated.version}")
        return self.repository.update_definition(updated)

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        return validate_definition(definition)

    def publish(self, name: str, version: int) -> WorkflowDefinition:
        """
        Validate a draft and make it active.

        Raises:
            DefinitionValidationError: If the definition is not a valid DAG
            ConflictError: If the definition is not a draft
        """
        definition = self.get(name, version)
        self._check_move(definition, DefinitionStatus.ACTIVE)
        result = validate_definition(definition)
        if result.is_valid:
            cycle = find_subprocess_cycle(definition, self._subprocess_target)
            if cycle:
                result.errors.append(f"Subprocess cycle detected: {' -> '.join(cycle)}")
                result.is_valid = False
        if not result.is_valid:
            error_msg = f"Definition validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise DefinitionValidationError(error_msg, validation_errors=result.errors, definition_name=name)
        if result.warnings:
            logger.warning(f"Definition {name} v{version} warnings: {'; '.join(result.warnings)}")
        published = self.repository.update_definition(
            definition.model_copy(update={"status": DefinitionStatus.ACTIVE})
        )
        logger.info(f"Published definition {name} v{version}")
        return published

    def deprecate(self, name: str, version: int) -> WorkflowDefinition:
        return self._move(name, version, DefinitionStatus.DEPRECATED)

    def archive(self, name: str, version: int) -> WorkflowDefinition:
        return self._move(name, version, DefinitionStatus.ARCHIVED)

    def set_enabled(self, name: str, version: int, enabled: bool) -> WorkflowDefinition:
        definition = self.get(name, version)
        logger.info(f"{'Enabling' if enabled else 'Disabling'} definition {name} v{version}")
        return self.repository.update_definition(definition.model_copy(update={"enabled": enabled}))

    def delete(self, name: str, version: int) -> bool:
        """
        Delete a definition that is not active and has no instances.

        Raises:
            DefinitionNotFoundError: If the definition does not exist
            ConflictError: If it is active or instances reference it
        """
        definition = self.get(name, version)
        if definition.status == DefinitionStatus.ACTIVE:
            raise ConflictError(f"Active definition {name} v{version} cannot be deleted")
        if self.repository.count_instances_of(name, version):
            raise ConflictError(f"Definition {name} v{version} has instances and cannot be deleted")
        with self._cache_lock:
            self._compiled.pop((name, version), None)
        logger.info(f"Deleting definition {name} v{version}")
        return self.repository.delete_definition(name, version)

    def new_version(self, name: str, base_version: Optional[int] = None) -> WorkflowDefinition:
        """Copy an existing version (latest by default) into a new draft."""
        base = self.get(name, base_version)
        draft = base.model_copy(
            update={
                "version": self.next_version(name),
                "status": DefinitionStatus.DRAFT,
                "enabled": True,
                "created_at": None,
                "updated_at": None,
            },
            deep=True
        )
        logger.info(f"Creating definition {name} v{draft.version} from v{base.version}")
        return self.repository.insert_definition(draft)

    def compiled(self, name: str, version: int) -> DefinitionGraph:
        """Arena of a published definition."""
        key = (name, version)
        with self._cache_lock:
            graph = self._compiled.get(key)
        if graph is not None:
            return graph
        definition = self.get(name, version)
        graph = DefinitionGraph.compile(definition)
        if definition.status != DefinitionStatus.DRAFT:
            with self._cache_lock:
                self._compiled[key] = graph
        return graph

    def _subprocess_target(self, name: str, version: Optional[int]) -> Optional[WorkflowDefinition]:
        if version is None:
            return self.repository.latest_active(name)
        return self.repository.get_definition(name, version)

    def _move(self, name: str, version: int, target: DefinitionStatus) -> WorkflowDefinition:
        definition = self.get(name, version)
        self._check_move(definition, target)
        moved = self.repository.update_definition(definition.model_copy(update={"status": target}))
        logger.info(f"Definition {name} v{version}: {definition.status.value} -> {target.value}")
        return moved

    @staticmethod
    def _check_move(definition: WorkflowDefinition, target: DefinitionStatus):
        if target not in _STATUS_MOVES[definition.status]:
            raise ConflictError(
                f"Definition {definition.name} v{definition.version} cannot move from "
                f"{definition.status.value} to {target.value}",
                details={"current_status": definition.status.value, "requested_status": target.value}
            )
