"""Tests for lease heartbeats and crash recovery."""

import threading
from datetime import timedelta

from taskflow.engine import WorkflowEngine
from taskflow.models.core import (
    ErrorKind,
    InstanceStatus,
    NodeExecutionStatus,
    TaskNode,
)


def task(node_id, executor="echo", **kwargs):
    return TaskNode(node_id=node_id, executor_ref=executor, **kwargs)


def orphan_attempt(engine, instance_id, node_id, attempt=1):
    """Leave a running attempt behind as if its engine had crashed after dispatch."""
    machine = engine.state_machine
    with machine.transition(instance_id) as tx:
        if tx.instance.status == InstanceStatus.PENDING:
            machine.start(tx)
        machine.record_dispatch(tx, node_id, attempt, {})


class TestLeaseRecovery:
    """Stale attempts are failed with an infrastructure error and retried."""

    def test_stale_attempt_is_retried_once(self, engine, deploy, clock):
        deploy("recoverable", [task("a", max_retries=1), task("b", depends_on=["a"])])
        instance = engine.create_instance("recoverable")
        orphan_attempt(engine, instance.id, "a")

        clock.advance(6)
        report = engine.recover()

        assert report["reclaimed"] == [f"{instance.id}/a#1"]
        [lost] = engine.node_executions(instance.id, "a")
        assert lost.status == NodeExecutionStatus.FAILED
        assert lost.error_message == "lease expired"
        assert lost.error_kind == ErrorKind.INFRASTRUCTURE

        finished = engine.run(instance.id)

        assert finished.status == InstanceStatus.COMPLETED
        assert [(e.attempt, e.status) for e in engine.node_executions(instance.id, "a")] == [
            (1, NodeExecutionStatus.FAILED),
            (2, NodeExecutionStatus.SUCCESS),
        ]
        assert finished.execution_path == ["a", "b"]

    def test_fresh_lease_is_left_alone(self, engine, deploy, clock):
        deploy("recoverable", [task("a", max_retries=1)])
        instance = engine.create_instance("recoverable")
        orphan_attempt(engine, instance.id, "a")

        clock.advance(2)
        report = engine.recover()

        assert report["reclaimed"] == []
        assert engine.node_executions(instance.id, "a")[0].status == NodeExecutionStatus.RUNNING

    def test_exhausted_budget_fails_instance(self, engine, deploy, clock):
        deploy("fragile", [task("a")])
        instance = engine.create_instance("fragile")
        orphan_attempt(engine, instance.id, "a")

        clock.advance(6)
        engine.recover()

        failed = engine.get_instance(instance.id)
        assert failed.status == InstanceStatus.FAILED
        assert failed.error_kind == ErrorKind.INFRASTRUCTURE
        assert failed.node_errors["a"] == "lease expired"

    def test_attempt_of_terminal_instance_is_cancelled(self, engine, deploy, clock):
        deploy("abandoned", [task("a", max_retries=3)])
        instance = engine.create_instance("abandoned")
        orphan_attempt(engine, instance.id, "a")
        engine.cancel_instance(instance.id)

        clock.advance(6)
        report = engine.recover()

        assert report["cancelled"] == [f"{instance.id}/a#1"]
        assert report["reclaimed"] == []
        [execution] = engine.node_executions(instance.id, "a")
        assert execution.status == NodeExecutionStatus.CANCELLED

    def test_owned_attempts_are_not_reclaimed(self, engine, deploy, clock):
        release = threading.Event()
        engine.register_executor("gate", lambda data: release.wait(5) and {"done": True})
        deploy("busy", [task("a", "gate")])
        instance = engine.create_instance("busy", start=True)

        engine.scheduler.tick()
        clock.advance(60)
        report = engine.recover()
        release.set()
        finished = engine.run(instance.id)

        assert report["reclaimed"] == []
        assert finished.status == InstanceStatus.COMPLETED
        assert len(engine.node_executions(instance.id, "a")) == 1

    def test_heartbeat_renews_lease(self, engine, deploy, clock):
        release = threading.Event()
        engine.register_executor("gate", lambda data: release.wait(5) and {"done": True})
        deploy("busy", [task("a", "gate")])
        instance = engine.create_instance("busy", start=True)

        engine.scheduler.tick()
        renewed_at = clock.advance(2)
        engine.scheduler.tick()

        [execution] = engine.node_executions(instance.id, "a")
        assert execution.heartbeat_at == renewed_at
        assert execution.engine_instance_id == "engine-test"

        release.set()
        assert engine.run(instance.id).status == InstanceStatus.COMPLETED

    def test_recovery_restores_mutex_holders(self, engine, deploy):
        deploy("ledger", [task("post")])
        holder = engine.create_instance("ledger", mutex_key="acct-9")
        orphan_attempt(engine, holder.id, "post")

        report = engine.recover()

        assert report["mutexes_restored"] == 1
        assert engine.leases.holder("acct-9") == holder.id
        waiting = engine.create_instance("ledger", mutex_key="acct-9", start=True)
        engine.scheduler.tick()
        assert engine.get_instance(waiting.id).status == InstanceStatus.PENDING

    def test_last_report_is_kept(self, engine):
        report = engine.recover()

        assert engine.status()["last_recovery"] == report
        assert "timestamp" in report

    def test_retry_backoff_survives_restart(self, engine, deploy, clock, database):
        """A restarted engine waits out the backoff its predecessor scheduled."""

        def fail_first(data, context):
            if context.attempt == 1:
                raise RuntimeError("upstream busy")
            return {"attempt": context.attempt}

        engine.register_executor("fail_first", fail_first)
        deploy("patient", [task("a", "fail_first", max_retries=1)], retry_base_delay=10)
        instance = engine.create_instance("patient", start=True)
        engine.scheduler.tick()
        assert engine.scheduler.wait_idle()

        [failed] = engine.node_executions(instance.id, "a")
        assert failed.status == NodeExecutionStatus.FAILED
        assert failed.retry_not_before == clock.now() + timedelta(seconds=20)

        restarted = WorkflowEngine(
            database, clock=clock, engine_instance_id="engine-restarted",
            heartbeat_interval=1.0, lease_timeout=5.0
        )
        restarted.register_executor("fail_first", fail_first)
        restarted.start(background=False)
        try:
            assert restarted.recovery.last_report["retries_restored"] == 1
            restarted.scheduler.tick()
            assert len(restarted.node_executions(instance.id, "a")) == 1

            clock.advance(21)
            finished = restarted.run(instance.id)
        finally:
            restarted.shutdown(wait=False)

        assert finished.status == InstanceStatus.COMPLETED
        assert [(e.attempt, e.status) for e in restarted.node_executions(instance.id, "a")] == [
            (1, NodeExecutionStatus.FAILED),
            (2, NodeExecutionStatus.SUCCESS),
        ]
