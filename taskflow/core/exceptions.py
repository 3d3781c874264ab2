"""Custom exceptions for the orchestration engine with detailed error information."""

import traceback
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    RESOURCE = "resource"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all orchestration engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class DefinitionValidationError(WorkflowEngineError):
    """Raised when a workflow definition is not a valid DAG."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        definition_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if definition_name:
            self.add_context(definition_name=definition_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class DefinitionNotFoundError(WorkflowEngineError):
    """Raised when a workflow definition does not exist."""

    def __init__(self, message: str, name: Optional[str] = None, version: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        if name:
            self.add_context(definition_name=name)
        if version is not None:
            self.add_context(definition_version=version)


class InstanceNotFoundError(WorkflowEngineError):
    """Raised when a workflow instance does not exist."""

    def __init__(self, message: str, instance_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)


class ScheduleNotFoundError(WorkflowEngineError):
    """Raised when a workflow schedule does not exist."""

    def __init__(self, message: str, schedule_id: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        if schedule_id is not None:
            self.add_context(schedule_id=schedule_id)


class ConflictError(WorkflowEngineError):
    """Raised when a request conflicts with the current state of a resource."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(
            message,
            category=ErrorCategory.CONFLICT,
            **kwargs
        )


class InvalidTransitionError(ConflictError):
    """Raised when a state transition is not allowed from the current status."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.current_status = current_status
        self.requested_status = requested_status
        if instance_id:
            self.add_context(instance_id=instance_id)
        if current_status:
            self.add_details(current_status=current_status)
        if requested_status:
            self.add_details(requested_status=requested_status)


class NodeExecutionError(WorkflowEngineError):
    """Raised when an executor reports or raises a business failure."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        attempt: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.BUSINESS_LOGIC,
            recoverable=True,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if instance_id:
            self.add_context(instance_id=instance_id)
        if attempt is not None:
            self.add_details(attempt=attempt)


class ExecutorNotFoundError(WorkflowEngineError):
    """Raised when an executor_ref cannot be resolved. Never retried."""

    def __init__(
        self,
        message: str,
        executor_ref: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            recoverable=False,
            **kwargs
        )
        self.executor_ref = executor_ref
        if executor_ref:
            self.add_context(executor_ref=executor_ref)


class ExecutorRegistryError(WorkflowEngineError):
    """Raised when executor registration fails."""

    def __init__(self, message: str, executor_ref: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if executor_ref:
            self.add_context(executor_ref=executor_ref)


class SchedulerError(WorkflowEngineError):
    """Raised when scheduler operations fail."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            retry_after=5,
            **kwargs
        )


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def http_status_for(error: WorkflowEngineError) -> int:
    """Map an engine error onto the HTTP status the REST layer returns."""
    if isinstance(error, DefinitionValidationError):
        return 400
    if isinstance(error, (DefinitionNotFoundError, InstanceNotFoundError, ScheduleNotFoundError)):
        return 404
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, ExecutorNotFoundError):
        return 422
    if isinstance(error, TransientError):
        return 503
    return 500


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
