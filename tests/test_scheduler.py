"""Tests for scheduling, retries, timeouts and instance control."""

import threading

import pytest

from taskflow.core.exceptions import InvalidTransitionError
from taskflow.core.node_handlers import UnitKey, UnitOutcome
from taskflow.models.core import (
    ErrorHandling,
    ErrorKind,
    ExecutorResult,
    InstanceStatus,
    NodeExecutionStatus,
    TaskNode,
)


def task(node_id, executor="echo", **kwargs):
    return TaskNode(node_id=node_id, executor_ref=executor, **kwargs)


def attempts(engine, instance_id, node_id):
    return [(e.attempt, e.status) for e in engine.node_executions(instance_id, node_id)]


class TestDependencyOrdering:
    """Nodes run only after every dependency completed."""

    def test_diamond(self, engine, deploy, run):
        engine.register_executor("tag", lambda data, context: {f"{context.node_id}_done": True})
        deploy("diamond", [
            task("a", "tag"),
            task("b", "tag", depends_on=["a"]),
            task("c", "tag", depends_on=["a"]),
            task("d", "tag", depends_on=["b", "c"]),
        ])

        instance = run("diamond", {"order": 42})

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.execution_path[0] == "a"
        assert set(instance.execution_path[1:3]) == {"b", "c"}
        assert instance.execution_path[3] == "d"
        [d_attempt] = engine.node_executions(instance.id, "d")
        assert d_attempt.input_data["b_done"] and d_attempt.input_data["c_done"]
        assert d_attempt.input_data["order"] == 42
        assert instance.output_data["d"] == {"d_done": True}

    def test_static_input_overrides_context(self, engine, deploy, run):
        deploy("calc", [
            task("start", "math", input_data={"operation": "add", "value": 5}),
            task("double", "math", depends_on=["start"], input_data={"operation": "multiply", "value": 2}),
        ])

        instance = run("calc", {"result": 1})

        assert instance.output_data["double"]["result"] == 12

    def test_each_node_completes_once(self, engine, deploy, run):
        deploy("chain", [task("a"), task("b", depends_on=["a"]), task("c", depends_on=["b"])])

        instance = run("chain")

        assert instance.execution_path == ["a", "b", "c"]
        assert instance.completed_nodes == ["a", "b", "c"]
        for node_id in ("a", "b", "c"):
            assert attempts(engine, instance.id, node_id) == [(1, NodeExecutionStatus.SUCCESS)]


class TestRetries:
    """Failed attempts retry up to max_retries, then error handling applies."""

    def test_succeeds_on_third_attempt(self, engine, deploy, run):
        def flaky(data, context):
            if context.attempt < 3:
                return ExecutorResult.fail(f"attempt {context.attempt} failed")
            return {"ok": True}

        engine.register_executor("flaky", flaky)
        deploy("retrying", [task("a", "flaky", max_retries=2)])

        instance = run("retrying")

        assert instance.status == InstanceStatus.COMPLETED
        assert attempts(engine, instance.id, "a") == [
            (1, NodeExecutionStatus.FAILED),
            (2, NodeExecutionStatus.FAILED),
            (3, NodeExecutionStatus.SUCCESS),
        ]

    def test_exhausted_retries_fail_the_instance(self, engine, deploy, run):
        deploy("failing", [
            task("a", "fail", max_retries=1, input_data={"message": "bad data"}),
            task("b", depends_on=["a"]),
        ])

        instance = run("failing")

        assert instance.status == InstanceStatus.FAILED
        assert instance.failed_nodes == ["a"]
        assert instance.node_errors["a"] == "bad data"
        assert instance.error_kind == ErrorKind.BUSINESS
        assert len(engine.node_executions(instance.id, "a")) == 2
        assert engine.node_executions(instance.id, "b") == []

    def test_raised_exception_is_a_business_failure(self, engine, deploy, run):
        def explode(data):
            raise ValueError("unexpected shape")

        engine.register_executor("explode", explode)
        deploy("exploding", [task("a", "explode")])

        instance = run("exploding")

        [execution] = engine.node_executions(instance.id, "a")
        assert execution.error_kind == ErrorKind.BUSINESS
        assert execution.error_message == "ValueError: unexpected shape"
        assert instance.status == InstanceStatus.FAILED

    def test_continue_skips_and_satisfies_dependents(self, engine, deploy, run):
        deploy("tolerant", [
            task("a"),
            task("b", "fail", depends_on=["a"], error_handling=ErrorHandling.CONTINUE),
            task("c", depends_on=["b"]),
        ])

        instance = run("tolerant")

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.skipped_nodes == ["b"]
        assert instance.execution_path == ["a", "c"]
        assert "b" not in instance.output_data

    def test_definition_level_error_handling(self, engine, deploy, run):
        deploy("lenient", [task("a", "fail"), task("b", depends_on=["a"])], error_handling=ErrorHandling.SKIP)

        instance = run("lenient")

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.skipped_nodes == ["a"]

    def test_missing_executor_fails_fast(self, engine, deploy, run):
        deploy("misconfigured", [task("a", "not-registered", max_retries=3, error_handling=ErrorHandling.CONTINUE)])

        instance = run("misconfigured")

        assert instance.status == InstanceStatus.FAILED
        assert instance.error_kind == ErrorKind.CONFIGURATION
        [execution] = engine.node_executions(instance.id, "a")
        assert execution.error_kind == ErrorKind.CONFIGURATION

    def test_false_condition_skips_node(self, engine, deploy, run):
        deploy("guarded", [
            task("check"),
            task("notify", depends_on=["check"], condition="send"),
            task("after", depends_on=["notify"]),
        ])

        instance = run("guarded", {"send": False})

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.skipped_nodes == ["notify"]
        assert engine.node_executions(instance.id, "notify") == []
        assert instance.execution_path == ["check", "after"]


class TestTimeoutsAndIdempotency:
    """Deadlines and at-most-once application of results."""

    def test_timeout_retries_and_late_result_is_discarded(self, engine, deploy, clock):
        release = threading.Event()

        def hang_once(data, context):
            if context.attempt == 1:
                release.wait(5)
            return {"attempt": context.attempt}

        engine.register_executor("hang_once", hang_once)
        deploy("slow", [task("a", "hang_once", timeout_seconds=5, max_retries=1)])
        instance = engine.create_instance("slow", start=True)

        engine.scheduler.tick()
        clock.advance(6)
        finished = engine.run(instance.id)

        release.set()
        engine.shutdown(wait=True)
        engine.scheduler.pump()

        first, second = engine.node_executions(instance.id, "a")
        assert first.status == NodeExecutionStatus.FAILED
        assert first.error_message == "timeout"
        assert first.error_kind == ErrorKind.TIMEOUT
        assert second.status == NodeExecutionStatus.SUCCESS
        assert finished.status == InstanceStatus.COMPLETED
        assert engine.get_instance(instance.id).output_data["a"] == {"attempt": 2}

    def test_timeout_without_retries_fails_instance(self, engine, deploy, clock):
        engine.register_executor("block", lambda data, context: {"cancelled": context.cancel_event.wait(5)})
        deploy("stuck", [task("a", "block", timeout_seconds=2)])
        instance = engine.create_instance("stuck", start=True)

        engine.scheduler.tick()
        clock.advance(3)
        finished = engine.run(instance.id)

        assert finished.status == InstanceStatus.FAILED
        assert finished.error_kind == ErrorKind.TIMEOUT

    @pytest.mark.parametrize("max_concurrent_nodes", [1])
    def test_timed_out_executor_frees_its_slot_for_the_retry(self, engine, deploy, clock):
        release = threading.Event()
        engine.register_executor("hang", lambda data: release.wait(10) and {})
        deploy("wedged", [task("a", "hang", timeout_seconds=1, max_retries=1)])
        instance = engine.create_instance("wedged", start=True)

        engine.scheduler.tick()
        clock.advance(2)
        engine.scheduler.tick()

        assert attempts(engine, instance.id, "a") == [
            (1, NodeExecutionStatus.FAILED), (2, NodeExecutionStatus.RUNNING)
        ]

        clock.advance(2)
        engine.scheduler.tick()

        finished = engine.get_instance(instance.id)
        assert finished.status == InstanceStatus.FAILED
        assert finished.error_kind == ErrorKind.TIMEOUT
        assert attempts(engine, instance.id, "a") == [
            (1, NodeExecutionStatus.FAILED), (2, NodeExecutionStatus.FAILED)
        ]
        assert engine.scheduler.get_status()["executors_abandoned"] == 2

        release.set()
        engine.shutdown(wait=True)
        engine.scheduler.pump()

        assert engine.scheduler.get_status()["executors_abandoned"] == 0
        assert engine.get_instance(instance.id).status == InstanceStatus.FAILED

    def test_replayed_results_are_ignored(self, engine, deploy, run):
        deploy("once", [task("a"), task("b", depends_on=["a"])])
        instance = run("once", {"x": 1})
        before = engine.get_instance(instance.id)

        key = UnitKey(instance.id, "a", 1)
        engine.scheduler.apply_result(key, UnitOutcome(True, {"x": 99}))
        engine.scheduler.apply_result(key, UnitOutcome(False, None, "late failure", ErrorKind.BUSINESS))

        after = engine.get_instance(instance.id)
        assert after.execution_path == before.execution_path
        assert after.output_data == before.output_data
        assert after.status == InstanceStatus.COMPLETED
        assert attempts(engine, instance.id, "a") == [(1, NodeExecutionStatus.SUCCESS)]

    def test_result_for_unknown_attempt_is_ignored(self, engine, deploy):
        deploy("once", [task("a")])
        instance = engine.create_instance("once")

        engine.scheduler.apply_result(UnitKey(instance.id, "a", 7), UnitOutcome(True, {}))

        assert engine.get_instance(instance.id).status == InstanceStatus.PENDING
        assert engine.node_executions(instance.id) == []


class TestConcurrencyCeiling:
    """max_concurrent_nodes bounds executor calls across the engine."""

    @pytest.mark.parametrize("max_concurrent_nodes", [2])
    def test_only_ceiling_many_executors_run_at_once(self, engine, deploy):
        release = threading.Event()
        engine.register_executor("gate", lambda data: release.wait(10) and {"released": True})
        deploy("wide", [task(f"n{index}", "gate") for index in range(5)])
        instance = engine.create_instance("wide", start=True)

        engine.scheduler.tick()

        running = [
            e for e in engine.node_executions(instance.id) if e.status == NodeExecutionStatus.RUNNING
        ]
        assert len(running) == 2
        assert engine.scheduler.get_status()["executors_in_flight"] == 2

        release.set()
        finished = engine.run(instance.id)

        assert finished.status == InstanceStatus.COMPLETED
        assert sorted(finished.completed_nodes) == [f"n{index}" for index in range(5)]
        statuses = [e.status for e in engine.node_executions(instance.id)]
        assert statuses == [NodeExecutionStatus.SUCCESS] * 5


class TestInstanceControl:
    """Pause, resume and cancel."""

    def test_pause_stops_dispatch_until_resume(self, engine, deploy):
        release = threading.Event()
        engine.register_executor("gate", lambda data: release.wait(5) and {"released": True})
        deploy("pausable", [task("a", "gate"), task("b", depends_on=["a"])])
        instance = engine.create_instance("pausable", start=True)

        engine.scheduler.tick()
        engine.pause_instance(instance.id)
        release.set()
        assert engine.scheduler.wait_idle()

        paused = engine.get_instance(instance.id)
        assert paused.status == InstanceStatus.PAUSED
        assert paused.completed_nodes == ["a"]
        assert engine.node_executions(instance.id, "b") == []

        engine.resume_instance(instance.id)
        finished = engine.run(instance.id)

        assert finished.status == InstanceStatus.COMPLETED
        assert finished.execution_path == ["a", "b"]

    def test_cancel_running_instance(self, engine, deploy):
        engine.register_executor("wait", lambda data, context: {"cancelled": context.cancel_event.wait(5)})
        deploy("cancellable", [task("a", "wait", timeout_seconds=30), task("b", depends_on=["a"])])
        instance = engine.create_instance("cancellable", start=True)

        engine.scheduler.tick()
        assert engine.supervisor.pending_count() == 1
        engine.cancel_instance(instance.id, "operator request")
        assert engine.supervisor.pending_count() == 0
        assert engine.scheduler.wait_idle()

        cancelled = engine.get_instance(instance.id)
        [execution] = engine.node_executions(instance.id, "a")
        assert cancelled.status == InstanceStatus.CANCELLED
        assert cancelled.error_message == "operator request"
        assert execution.status == NodeExecutionStatus.CANCELLED
        assert cancelled.completed_nodes == []

    def test_cancel_completed_instance_is_rejected(self, engine, deploy, run):
        deploy("done", [task("a")])
        instance = run("done")

        with pytest.raises(InvalidTransitionError):
            engine.cancel_instance(instance.id)
        assert engine.get_instance(instance.id).status == InstanceStatus.COMPLETED

    def test_pending_instance_without_start_is_not_driven(self, engine, deploy):
        deploy("idle", [task("a")])
        instance = engine.create_instance("idle")

        engine.scheduler.tick()

        assert engine.get_instance(instance.id).status == InstanceStatus.PENDING


class TestMutualExclusion:
    """Instances sharing a mutex key never run at the same time."""

    def test_shared_mutex_serializes_instances(self, engine, deploy):
        gates = {}

        def hold(data, context):
            gates[context.instance_id].wait(5)
            return {"posted": context.instance_id}

        engine.register_executor("hold", hold)
        deploy("ledger", [task("post", "hold")])
        first = engine.create_instance("ledger", mutex_key="acct-1", start=True)
        gates[first.id] = threading.Event()
        engine.scheduler.tick()
        low = engine.create_instance("ledger", mutex_key="acct-1", start=True)
        high = engine.create_instance("ledger", mutex_key="acct-1", priority=5, start=True)
        gates[low.id] = threading.Event()
        gates[high.id] = threading.Event()
        engine.scheduler.tick()

        assert engine.leases.holder("acct-1") == first.id
        assert engine.get_instance(low.id).status == InstanceStatus.PENDING
        assert engine.get_instance(high.id).status == InstanceStatus.PENDING

        gates[first.id].set()
        assert engine.run(first.id).status == InstanceStatus.COMPLETED
        engine.scheduler.tick()

        assert engine.leases.holder("acct-1") == high.id
        assert engine.get_instance(high.id).status == InstanceStatus.RUNNING
        assert engine.get_instance(low.id).status == InstanceStatus.PENDING

        gates[high.id].set()
        assert engine.run(high.id).status == InstanceStatus.COMPLETED
        gates[low.id].set()
        assert engine.run(low.id).status == InstanceStatus.COMPLETED
        assert engine.leases.holder("acct-1") is None

    def test_different_keys_run_concurrently(self, engine, deploy):
        deploy("ledger", [task("post")])
        one = engine.create_instance("ledger", mutex_key="acct-1", start=True)
        two = engine.create_instance("ledger", mutex_key="acct-2", start=True)

        engine.scheduler.tick()

        assert engine.get_instance(one.id).status != InstanceStatus.PENDING
        assert engine.get_instance(two.id).status != InstanceStatus.PENDING
