"""Tests for cron schedules and the schedule poller."""

import threading
from datetime import datetime

import pytest
from pydantic import ValidationError

from taskflow.core.exceptions import DefinitionNotFoundError, ScheduleNotFoundError
from taskflow.models.core import InstanceStatus, TaskNode, WorkflowSchedule


@pytest.fixture
def report(deploy):
    """An active single-node definition for schedules to start."""
    return deploy("report", [TaskNode(node_id="build", executor_ref="echo")])


def schedule(name="every-five", cron="*/5 * * * *", **kwargs):
    return WorkflowSchedule(name=name, definition_name="report", cron_expression=cron, **kwargs)


def started_instances(engine):
    return engine.list_instances(definition_name="report").items


class TestScheduleDefinitions:
    """Creating, updating and toggling schedules."""

    def test_create_computes_first_run(self, engine, report):
        created = engine.schedules.create(schedule(cron="0 2 * * *"))

        assert created.id is not None
        assert created.next_run_at == datetime(2024, 1, 1, 2, 0)
        assert engine.schedules.get(created.id).cron_expression == "0 2 * * *"

    def test_cron_is_evaluated_in_the_schedule_timezone(self, engine, report):
        """09:00 in Berlin is 08:00 UTC in winter."""
        created = engine.schedules.create(schedule(cron="0 9 * * *", timezone="Europe/Berlin"))

        assert created.next_run_at == datetime(2024, 1, 1, 8, 0)

    def test_invalid_cron_and_timezone_are_rejected(self):
        with pytest.raises(ValidationError, match="Invalid cron expression"):
            schedule(cron="every five minutes")
        with pytest.raises(ValidationError, match="Unknown timezone"):
            schedule(timezone="Mars/Olympus")

    def test_unknown_definition_is_rejected(self, engine):
        with pytest.raises(DefinitionNotFoundError):
            engine.schedules.create(schedule())

    def test_start_time_delays_the_first_run(self, engine, report):
        created = engine.schedules.create(schedule(start_time=datetime(2024, 1, 2, 0, 0)))

        assert created.next_run_at == datetime(2024, 1, 2, 0, 0)

    def test_end_time_stops_the_schedule(self, engine, report):
        created = engine.schedules.create(schedule(cron="0 2 * * *", end_time=datetime(2024, 1, 1, 1, 0)))

        assert created.next_run_at is None

    def test_disabling_clears_the_next_run(self, engine, report, clock):
        created = engine.schedules.create(schedule())

        disabled = engine.schedules.set_enabled(created.id, False)
        assert disabled.enabled is False
        assert disabled.next_run_at is None

        clock.advance(600)
        flipped = engine.schedules.set_enabled(created.id)
        assert flipped.enabled is True
        assert flipped.next_run_at == datetime(2024, 1, 1, 0, 15)

    def test_changing_the_cron_moves_the_next_run(self, engine, report):
        created = engine.schedules.create(schedule())

        updated = engine.schedules.update(created.id, {"cron_expression": "30 * * * *"})

        assert updated.next_run_at == datetime(2024, 1, 1, 0, 30)

    def test_delete(self, engine, report):
        created = engine.schedules.create(schedule())

        assert engine.schedules.delete(created.id) is True
        with pytest.raises(ScheduleNotFoundError):
            engine.schedules.get(created.id)


class TestSchedulePolling:
    """The scheduler tick starts instances of due schedules."""

    def test_due_schedule_starts_an_instance(self, engine, report, clock):
        created = engine.schedules.create(schedule(input_data={"format": "pdf"}))

        clock.advance(299)
        engine.scheduler.tick()
        assert started_instances(engine) == []

        clock.advance(1)
        engine.scheduler.tick()

        [instance] = started_instances(engine)
        assert instance.business_key == "schedule:every-five"
        assert instance.input_data == {"format": "pdf"}
        assert engine.run(instance.id).status == InstanceStatus.COMPLETED

        fired = engine.schedules.get(created.id)
        assert fired.last_run_at == datetime(2024, 1, 1, 0, 5)
        assert fired.last_instance_id == instance.id
        assert fired.next_run_at == datetime(2024, 1, 1, 0, 10)

    def test_missed_runs_collapse_into_one(self, engine, report, clock):
        created = engine.schedules.create(schedule())

        clock.advance(3600)
        engine.scheduler.tick()
        engine.scheduler.tick()

        assert len(started_instances(engine)) == 1
        assert engine.schedules.get(created.id).next_run_at == datetime(2024, 1, 1, 1, 5)

    def test_unfinished_instances_hold_back_new_runs(self, engine, deploy, clock):
        release = threading.Event()
        engine.register_executor("gate", lambda data: release.wait(10) and {"released": True})
        deploy("report", [TaskNode(node_id="build", executor_ref="gate")])
        created = engine.schedules.create(schedule())

        clock.advance(300)
        engine.scheduler.tick()
        clock.advance(300)
        engine.scheduler.tick()

        [instance] = started_instances(engine)
        assert engine.schedules.get(created.id).next_run_at == datetime(2024, 1, 1, 0, 15)

        release.set()
        assert engine.run(instance.id).status == InstanceStatus.COMPLETED

    def test_disabled_definition_skips_the_run(self, engine, report, clock):
        created = engine.schedules.create(schedule())
        engine.definitions.set_enabled("report", 1, False)

        clock.advance(300)
        engine.scheduler.tick()

        assert started_instances(engine) == []
        assert engine.schedules.get(created.id).next_run_at == datetime(2024, 1, 1, 0, 10)

    def test_a_due_run_is_claimed_once(self, engine, report, clock):
        """Engines sharing a database race on next_run_at; only one wins."""
        created = engine.schedules.create(schedule())
        due = created.next_run_at
        clock.advance(300)

        first = engine.repository.claim_schedule_run(created.id, due, datetime(2024, 1, 1, 0, 10), clock.now())
        second = engine.repository.claim_schedule_run(created.id, due, datetime(2024, 1, 1, 0, 10), clock.now())

        assert (first, second) == (True, False)
        assert engine.schedules.poll() == []
