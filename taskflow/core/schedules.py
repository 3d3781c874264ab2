"""Cron schedules that start workflow instances."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from ..models.core import Page, WorkflowSchedule
from ..storage.repository import WorkflowRepository
from .clock import Clock
from .definition_store import DefinitionStore
from .exceptions import ConflictError, DefinitionNotFoundError, ScheduleNotFoundError
from .logging import get_logger
from .state_machine import InstanceStateMachine

logger = get_logger(__name__)

# Changing any of these moves the next run
_TIMING_FIELDS = ("cron_expression", "timezone", "start_time", "end_time", "enabled")


class ScheduleService:
    """
    Stores cron schedules and starts an instance whenever one is due.

    ``next_run_at`` is a naive UTC datetime like every other stored time.
    Each due run is claimed with a conditional update of ``next_run_at``, so
    engines polling the same database start it once. Runs missed while no
    engine was polling collapse into a single run.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        state_machine: InstanceStateMachine,
        definition_store: DefinitionStore,
        clock: Clock
    ):
        self.repository = repository
        self.machine = state_machine
        self.store = definition_store
        self.clock = clock
        self._poll_lock = threading.Lock()

    def next_run(self, schedule: WorkflowSchedule, after: datetime) -> Optional[datetime]:
        """First cron time strictly after ``after`` inside the schedule's window, or None."""
        base = after
        if schedule.start_time and schedule.start_time > after:
            base = schedule.start_time - timedelta(seconds=1)
        local = base.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(schedule.timezone))
        upcoming = croniter(schedule.cron_expression, local).get_next(datetime)
        next_utc = upcoming.astimezone(timezone.utc).replace(tzinfo=None)
        if schedule.end_time and next_utc > schedule.end_time:
            return None
        return next_utc

    def create(self, schedule: WorkflowSchedule) -> WorkflowSchedule:
        """
        Store a new schedule and compute its first run.

        Raises:
            DefinitionNotFoundError: If the target definition does not exist
            ConflictError: If a schedule with the same name exists
        """
        self._check_target(schedule)
        prepared = schedule.model_copy(update={
            "id": None,
            "next_run_at": self.next_run(schedule, self.clock.now()) if schedule.enabled else None,
            "last_run_at": None,
            "last_instance_id": None,
        })
        stored = self.repository.insert_schedule(prepared)
        logger.info(
            f"Created schedule {stored.name} ({stored.cron_expression} {stored.timezone}) "
            f"for {stored.definition_name}; next run {stored.next_run_at}"
        )
        return stored

    def get(self, schedule_id: int) -> WorkflowSchedule:
        schedule = self.repository.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found", schedule_id=schedule_id)
        return schedule

    def list_schedules(
        self,
        definition_name: Optional[str] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Page[WorkflowSchedule]:
        schedules, total = self.repository.list_schedules(definition_name, enabled, page, page_size)
        return Page[WorkflowSchedule].build(schedules, total, page, page_size)

    def update(self, schedule_id: int, changes: Dict[str, Any]) -> WorkflowSchedule:
        """
        Apply a partial update; the next run is recomputed when timing changes.

        Raises:
            ScheduleNotFoundError: If the schedule does not exist
            ValueError: If the result is not a valid schedule
        """
        current = self.get(schedule_id)
        updated = WorkflowSchedule.model_validate({**current.model_dump(), **changes, "id": current.id})
        if "definition_name" in changes or "definition_version" in changes:
            self._check_target(updated)
        if not updated.enabled:
            updated.next_run_at = None
        elif any(field in changes for field in _TIMING_FIELDS) or updated.next_run_at is None:
            updated.next_run_at = self.next_run(updated, self.clock.now())
        logger.info(f"Updating schedule {updated.name}: {sorted(changes)}")
        return self.repository.update_schedule(updated)

    def set_enabled(self, schedule_id: int, enabled: Optional[bool] = None) -> WorkflowSchedule:
        """Enable or disable a schedule; flips the current flag when ``enabled`` is None."""
        current = self.get(schedule_id)
        target = not current.enabled if enabled is None else enabled
        logger.info(f"{'Enabling' if target else 'Disabling'} schedule {current.name}")
        return self.update(schedule_id, {"enabled": target})

    def delete(self, schedule_id: int) -> bool:
        schedule = self.get(schedule_id)
        logger.info(f"Deleting schedule {schedule.name}")
        return self.repository.delete_schedule(schedule_id)

    def poll(self) -> List[str]:
        """
        Start an instance for every due schedule.

        Returns:
            Ids of the instances started
        """
        now = self.clock.now()
        started: List[str] = []
        with self._poll_lock:
            for schedule in self.repository.find_due_schedules(now):
                due_at = schedule.next_run_at
                if not self.repository.claim_schedule_run(schedule.id, due_at, self.next_run(schedule, now), now):
                    logger.debug(f"Run of schedule {schedule.name} due {due_at} claimed elsewhere")
                    continue
                instance_id = self._fire(schedule, due_at)
                if instance_id:
                    started.append(instance_id)
        return started

    def _fire(self, schedule: WorkflowSchedule, due_at: datetime) -> Optional[str]:
        unfinished = self.repository.count_unfinished_instances(schedule.business_key)
        if unfinished >= schedule.max_instances:
            logger.warning(
                f"Schedule {schedule.name} run due {due_at} skipped: "
                f"{unfinished} of max {schedule.max_instances} instances still unfinished"
            )
            return None
        try:
            instance = self.machine.create_instance(
                schedule.definition_name,
                schedule.definition_version,
                dict(schedule.input_data),
                business_key=schedule.business_key,
                start=True
            )
        except (DefinitionNotFoundError, ConflictError) as e:
            logger.warning(f"Schedule {schedule.name} run due {due_at} skipped: {e.message}")
            return None
        self.repository.record_schedule_instance(schedule.id, instance.id)
        logger.info(f"Schedule {schedule.name} started instance {instance.id} (due {due_at})")
        return instance.id

    def _check_target(self, schedule: WorkflowSchedule):
        if schedule.definition_version is None:
            self.store.get_latest_active(schedule.definition_name)
        else:
            self.store.get(schedule.definition_name, schedule.definition_version)
