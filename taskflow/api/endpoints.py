"""FastAPI REST endpoints for the taskflow engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.exceptions import WorkflowEngineError, create_error_response, http_status_for
from ..core.logging import get_logger
from ..engine import WorkflowEngine
from ..models.core import (
    DefinitionStatus,
    DefinitionSummary,
    ExecutionLogEntry,
    InstanceStatus,
    LogLevel,
    LoopExecution,
    NodeExecution,
    Page,
    ValidationResult,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowSchedule,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["taskflow"])

# Initialized by the application factory
_engine: Optional[WorkflowEngine] = None


def init_dependencies(engine: Optional[WorkflowEngine]):
    """Initialize the global engine dependency."""
    global _engine
    _engine = engine


def get_engine() -> WorkflowEngine:
    """Dependency to get the workflow engine."""
    if _engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow engine not initialized"
        )
    return _engine


def _http_error(error: WorkflowEngineError, action: str) -> HTTPException:
    """Log an engine error and convert it into an HTTPException."""
    code = http_status_for(error)
    if code >= 500:
        logger.error(f"Error while {action}: {error.message}")
    else:
        logger.warning(f"Rejected {action}: {error.message}")
    return HTTPException(status_code=code, detail=create_error_response(error))


# Request/Response models

class CreateDefinitionRequest(BaseModel):
    """Request model for creating a definition."""
    definition: WorkflowDefinition = Field(..., description="Definition to store as a draft")


class DefinitionResponse(BaseModel):
    """Response model for definition writes."""
    name: str = Field(..., description="Definition name")
    version: int = Field(..., description="Definition version")
    status: DefinitionStatus = Field(..., description="Definition status")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class NewVersionRequest(BaseModel):
    base_version: Optional[int] = Field(None, description="Version to copy; latest when omitted")


class EnabledRequest(BaseModel):
    enabled: bool = Field(..., description="Whether new instances may be created")


class CreateInstanceRequest(BaseModel):
    """Request model for creating an instance."""
    definition_name: str = Field(..., description="Definition to instantiate")
    definition_version: Optional[int] = Field(None, description="Version; latest active when omitted")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Instance input")
    business_key: Optional[str] = Field(None, description="Caller correlation id")
    mutex_key: Optional[str] = Field(None, description="Instances sharing a key run one at a time")
    priority: int = Field(0, description="Priority in the mutex wait queue")
    start: bool = Field(False, description="Request start immediately")


class CancelRequest(BaseModel):
    reason: str = Field("cancel requested", description="Reason recorded on the instance")


class UpdateScheduleRequest(BaseModel):
    """Partial update of a schedule; omitted fields keep their value."""
    description: Optional[str] = None
    definition_name: Optional[str] = None
    definition_version: Optional[int] = None
    cron_expression: Optional[str] = Field(None, description="Five-field cron expression")
    timezone: Optional[str] = None
    input_data: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None
    max_instances: Optional[int] = Field(None, ge=1)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class ToggleScheduleRequest(BaseModel):
    enabled: Optional[bool] = Field(None, description="Target flag; flips the current one when omitted")


class DeleteResponse(BaseModel):
    name: str
    version: int
    deleted: bool
    message: str


def _definition_response(definition: WorkflowDefinition, message: str,
                         warnings: Optional[List[str]] = None) -> DefinitionResponse:
    return DefinitionResponse(
        name=definition.name,
        version=definition.version,
        status=definition.status,
        message=message,
        validation_warnings=warnings or []
    )


# Definitions

@router.post(
    "/definitions",
    response_model=DefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft definition"
)
async def create_definition(
    request: CreateDefinitionRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> DefinitionResponse:
    """
    Store a new draft definition.

    Structural problems are reported as warnings here and enforced at publish.
    """
    try:
        definition = engine.definitions.create(request.definition)
        validation = engine.definitions.validate(definition)
        return _definition_response(
            definition,
            f"Definition '{definition.name}' v{definition.version} created",
            validation.errors + validation.warnings
        )
    except WorkflowEngineError as e:
        raise _http_error(e, "creating definition")


@router.get("/definitions", response_model=Page[DefinitionSummary], summary="List definitions")
async def list_definitions(
    name: Optional[str] = Query(None, description="Filter by name"),
    definition_status: Optional[DefinitionStatus] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    engine: WorkflowEngine = Depends(get_engine)
) -> Page[DefinitionSummary]:
    try:
        return engine.definitions.list_definitions(name, definition_status, page, page_size)
    except WorkflowEngineError as e:
        raise _http_error(e, "listing definitions")


@router.get("/definitions/{name}", response_model=WorkflowDefinition, summary="Get the latest version")
async def get_latest_definition(name: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowDefinition:
    try:
        return engine.definitions.get(name)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting definition {name}")


@router.get(
    "/definitions/{name}/versions/{version}",
    response_model=WorkflowDefinition,
    summary="Get one definition version"
)
async def get_definition(name: str, version: int, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowDefinition:
    try:
        return engine.definitions.get(name, version)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting definition {name} v{version}")


@router.put(
    "/definitions/{name}/versions/{version}",
    response_model=DefinitionResponse,
    summary="Replace a draft definition"
)
async def update_definition(
    name: str,
    version: int,
    request: CreateDefinitionRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> DefinitionResponse:
    try:
        body = request.definition.model_copy(update={"name": name, "version": version})
        definition = engine.definitions.update(body)
        validation = engine.definitions.validate(definition)
        return _definition_response(
            definition, f"Definition '{name}' v{version} updated", validation.errors + validation.warnings
        )
    except WorkflowEngineError as e:
        raise _http_error(e, f"updating definition {name} v{version}")


@router.post(
    "/definitions/{name}/versions/{version}/validate",
    response_model=ValidationResult,
    summary="Validate a stored definition"
)
async def validate_definition(name: str, version: int, engine: WorkflowEngine = Depends(get_engine)) -> ValidationResult:
    try:
        return engine.definitions.validate(engine.definitions.get(name, version))
    except WorkflowEngineError as e:
        raise _http_error(e, f"validating definition {name} v{version}")


@router.post(
    "/definitions/{name}/versions/{version}/publish",
    response_model=DefinitionResponse,
    summary="Publish a draft"
)
async def publish_definition(name: str, version: int, engine: WorkflowEngine = Depends(get_engine)) -> DefinitionResponse:
    try:
        definition = engine.definitions.publish(name, version)
        return _definition_response(definition, f"Definition '{name}' v{version} is active")
    except WorkflowEngineError as e:
        raise _http_error(e, f"publishing definition {name} v{version}")


@router.post(
    "/definitions/{name}/versions/{version}/deprecate",
    response_model=DefinitionResponse,
    summary="Deprecate an active definition"
)
async def deprecate_definition(name: str, version: int, engine: WorkflowEngine = Depends(get_engine)) -> DefinitionResponse:
    try:
        definition = engine.definitions.deprecate(name, version)
        return _definition_response(definition, f"Definition '{name}' v{version} deprecated")
    except WorkflowEngineError as e:
        raise _http_error(e, f"deprecating definition {name} v{version}")


@router.post(
    "/definitions/{name}/versions/{version}/archive",
    response_model=DefinitionResponse,
    summary="Archive a definition"
)
async def archive_definition(name: str, version: int, engine: WorkflowEngine = Depends(get_engine)) -> DefinitionResponse:
    try:
        definition = engine.definitions.archive(name, version)
        return _definition_response(definition, f"Definition '{name}' v{version} archived")
    except WorkflowEngineError as e:
        raise _http_error(e, f"archiving definition {name} v{version}")


@router.put(
    "/definitions/{name}/versions/{version}/enabled",
    response_model=DefinitionResponse,
    summary="Enable or disable instantiation"
)
async def set_definition_enabled(
    name: str,
    version: int,
    request: EnabledRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> DefinitionResponse:
    try:
        definition = engine.definitions.set_enabled(name, version, request.enabled)
        state = "enabled" if request.enabled else "disabled"
        return _definition_response(definition, f"Definition '{name}' v{version} {state}")
    except WorkflowEngineError as e:
        raise _http_error(e, f"toggling definition {name} v{version}")


@router.post(
    "/definitions/{name}/versions",
    response_model=DefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Copy a version into a new draft"
)
async def new_definition_version(
    name: str,
    request: NewVersionRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> DefinitionResponse:
    try:
        definition = engine.definitions.new_version(name, request.base_version)
        return _definition_response(definition, f"Definition '{name}' v{definition.version} created")
    except WorkflowEngineError as e:
        raise _http_error(e, f"creating new version of {name}")


@router.delete(
    "/definitions/{name}/versions/{version}",
    response_model=DeleteResponse,
    summary="Delete a non-active definition without instances"
)
async def delete_definition(name: str, version: int, engine: WorkflowEngine = Depends(get_engine)) -> DeleteResponse:
    try:
        deleted = engine.definitions.delete(name, version)
        return DeleteResponse(
            name=name, version=version, deleted=deleted, message=f"Definition '{name}' v{version} deleted"
        )
    except WorkflowEngineError as e:
        raise _http_error(e, f"deleting definition {name} v{version}")


# Instances

@router.post(
    "/instances",
    response_model=WorkflowInstance,
    status_code=status.HTTP_201_CREATED,
    summary="Create an instance"
)
async def create_instance(
    request: CreateInstanceRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowInstance:
    try:
        logger.info(f"Creating instance of {request.definition_name}")
        return engine.create_instance(
            request.definition_name,
            request.definition_version,
            request.input_data,
            business_key=request.business_key,
            mutex_key=request.mutex_key,
            priority=request.priority,
            start=request.start
        )
    except WorkflowEngineError as e:
        raise _http_error(e, f"creating instance of {request.definition_name}")


@router.get("/instances", response_model=Page[WorkflowInstance], summary="List instances")
async def list_instances(
    instance_status: Optional[InstanceStatus] = Query(None, alias="status", description="Filter by status"),
    definition_name: Optional[str] = Query(None, description="Filter by definition"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    engine: WorkflowEngine = Depends(get_engine)
) -> Page[WorkflowInstance]:
    try:
        return engine.list_instances(instance_status, definition_name, page, page_size)
    except WorkflowEngineError as e:
        raise _http_error(e, "listing instances")


@router.get(
    "/instances/by-business-key/{business_key}",
    response_model=WorkflowInstance,
    summary="Get an instance by business key"
)
async def get_instance_by_business_key(
    business_key: str,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowInstance:
    try:
        return engine.get_instance_by_business_key(business_key)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting instance by business key {business_key}")


@router.get("/instances/{instance_id}", response_model=WorkflowInstance, summary="Get an instance")
async def get_instance(instance_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowInstance:
    try:
        return engine.get_instance(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting instance {instance_id}")


@router.post("/instances/{instance_id}/start", response_model=WorkflowInstance, summary="Start an instance")
async def start_instance(instance_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowInstance:
    try:
        return engine.start_instance(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"starting instance {instance_id}")


@router.post("/instances/{instance_id}/pause", response_model=WorkflowInstance, summary="Pause an instance")
async def pause_instance(instance_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowInstance:
    try:
        return engine.pause_instance(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"pausing instance {instance_id}")


@router.post("/instances/{instance_id}/resume", response_model=WorkflowInstance, summary="Resume an instance")
async def resume_instance(instance_id: str, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowInstance:
    try:
        return engine.resume_instance(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"resuming instance {instance_id}")


@router.post("/instances/{instance_id}/cancel", response_model=WorkflowInstance, summary="Cancel an instance")
async def cancel_instance(
    instance_id: str,
    request: Optional[CancelRequest] = None,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowInstance:
    try:
        reason = request.reason if request else "cancel requested"
        return engine.cancel_instance(instance_id, reason)
    except WorkflowEngineError as e:
        raise _http_error(e, f"cancelling instance {instance_id}")


@router.get(
    "/instances/{instance_id}/nodes",
    response_model=List[NodeExecution],
    summary="Node executions of an instance"
)
async def get_node_executions(
    instance_id: str,
    node_id: Optional[str] = Query(None, description="Only attempts of this node"),
    engine: WorkflowEngine = Depends(get_engine)
) -> List[NodeExecution]:
    try:
        return engine.node_executions(instance_id, node_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting node executions of {instance_id}")


@router.get(
    "/instances/{instance_id}/loops",
    response_model=List[LoopExecution],
    summary="Loop executions of an instance"
)
async def get_loop_executions(instance_id: str, engine: WorkflowEngine = Depends(get_engine)) -> List[LoopExecution]:
    try:
        return engine.loop_executions(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting loop executions of {instance_id}")


@router.get(
    "/instances/{instance_id}/logs",
    response_model=Page[ExecutionLogEntry],
    summary="Execution log of an instance"
)
async def get_execution_logs(
    instance_id: str,
    node_id: Optional[str] = Query(None, description="Filter by node"),
    level: Optional[LogLevel] = Query(None, description="Filter by level"),
    start_time: Optional[datetime] = Query(None, description="Entries at or after this time"),
    end_time: Optional[datetime] = Query(None, description="Entries at or before this time"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    engine: WorkflowEngine = Depends(get_engine)
) -> Page[ExecutionLogEntry]:
    try:
        return engine.query_logs(instance_id, node_id, level, start_time, end_time, page, page_size)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting logs of {instance_id}")


# Schedules

@router.post(
    "/schedules",
    response_model=WorkflowSchedule,
    status_code=status.HTTP_201_CREATED,
    summary="Create a cron schedule"
)
async def create_schedule(
    schedule: WorkflowSchedule,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowSchedule:
    """
    Store a schedule that starts an instance of a definition on every cron match.

    The target definition must exist (an active version when no version is given).
    """
    try:
        return engine.schedules.create(schedule)
    except WorkflowEngineError as e:
        raise _http_error(e, f"creating schedule {schedule.name}")


@router.get("/schedules", response_model=Page[WorkflowSchedule], summary="List schedules")
async def list_schedules(
    definition_name: Optional[str] = Query(None, description="Filter by definition"),
    enabled: Optional[bool] = Query(None, description="Filter by enabled flag"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    engine: WorkflowEngine = Depends(get_engine)
) -> Page[WorkflowSchedule]:
    try:
        return engine.schedules.list_schedules(definition_name, enabled, page, page_size)
    except WorkflowEngineError as e:
        raise _http_error(e, "listing schedules")


@router.post("/schedules/poll", summary="Start every due schedule now")
async def poll_schedules(engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        started = engine.schedules.poll()
    except WorkflowEngineError as e:
        raise _http_error(e, "polling schedules")
    for instance_id in started:
        engine.scheduler.wake(instance_id)
    return {"started": started}


@router.get("/schedules/{schedule_id}", response_model=WorkflowSchedule, summary="Get a schedule")
async def get_schedule(schedule_id: int, engine: WorkflowEngine = Depends(get_engine)) -> WorkflowSchedule:
    try:
        return engine.schedules.get(schedule_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"getting schedule {schedule_id}")


@router.put("/schedules/{schedule_id}", response_model=WorkflowSchedule, summary="Update a schedule")
async def update_schedule(
    schedule_id: int,
    request: UpdateScheduleRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowSchedule:
    try:
        return engine.schedules.update(schedule_id, request.model_dump(exclude_unset=True))
    except WorkflowEngineError as e:
        raise _http_error(e, f"updating schedule {schedule_id}")
    except ValueError as e:
        logger.warning(f"Rejected update of schedule {schedule_id}: {str(e)}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/schedules/{schedule_id}/toggle", response_model=WorkflowSchedule, summary="Enable or disable a schedule")
async def toggle_schedule(
    schedule_id: int,
    request: Optional[ToggleScheduleRequest] = None,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowSchedule:
    """Set the enabled flag, or flip it when the body is omitted."""
    try:
        return engine.schedules.set_enabled(schedule_id, request.enabled if request else None)
    except WorkflowEngineError as e:
        raise _http_error(e, f"toggling schedule {schedule_id}")


@router.delete("/schedules/{schedule_id}", summary="Delete a schedule")
async def delete_schedule(schedule_id: int, engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        deleted = engine.schedules.delete(schedule_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"deleting schedule {schedule_id}")
    return {"id": schedule_id, "deleted": deleted, "message": f"Schedule {schedule_id} deleted"}


# Operations

@router.post("/recovery/sweep", summary="Run a recovery sweep now")
async def trigger_recovery(engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return engine.recover()
    except WorkflowEngineError as e:
        raise _http_error(e, "running recovery")


@router.get("/executors", summary="Registered executors")
async def list_executors(engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    executors = engine.executors.list_executors()
    return {"executors": executors, "total_count": len(executors)}


@router.get("/scheduler/status", summary="Scheduler queues and mutex leases")
async def scheduler_status(engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.status()
