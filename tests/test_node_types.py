"""Tests for loop, parallel and subprocess nodes."""

import threading

from taskflow.models.core import (
    ErrorHandling,
    ErrorKind,
    ExecutorResult,
    InstanceStatus,
    LoopConfig,
    NodeExecutionStatus,
    NodeType,
    ParallelBranch,
    ParallelFailurePolicy,
    SubprocessConfig,
    TaskNode,
)


def task(node_id, executor="echo", **kwargs):
    return TaskNode(node_id=node_id, executor_ref=executor, **kwargs)


def loop_node(node_id, executor="collect", **loop):
    return TaskNode(node_id=node_id, node_type=NodeType.LOOP, executor_ref=executor, loop=LoopConfig(**loop))


def parallel_node(node_id, branches, **kwargs):
    return TaskNode(
        node_id=node_id,
        node_type=NodeType.PARALLEL,
        branches=[ParallelBranch(branch_id=branch_id, nodes=nodes) for branch_id, nodes in branches.items()],
        **kwargs
    )


def subprocess_node(node_id, definition_name, **kwargs):
    config_keys = ("input_mapping", "reuse_existing", "definition_version")
    config = {key: kwargs.pop(key) for key in config_keys if key in kwargs}
    return TaskNode(
        node_id=node_id,
        node_type=NodeType.SUBPROCESS,
        subprocess=SubprocessConfig(definition_name=definition_name, **config),
        **kwargs
    )


class TestLoopNodes:
    """One iteration at a time, each with its own retry budget."""

    def test_iterates_static_items(self, engine, deploy, run):
        deploy("looping", [loop_node("each", items=[10, 20, 30, 40, 50]), task("after", depends_on=["each"])])

        instance = run("looping")

        assert instance.status == InstanceStatus.COMPLETED
        iterations = instance.output_data["each"]["iterations"]
        assert [i["item"] for i in iterations] == [10, 20, 30, 40, 50]
        assert [i["index"] for i in iterations] == [0, 1, 2, 3, 4]
        [loop] = engine.loop_executions(instance.id)
        assert loop.status == NodeExecutionStatus.SUCCESS
        assert loop.total_iterations == 5
        assert all(i.status == NodeExecutionStatus.SUCCESS and i.attempts == 1 for i in loop.iterations)
        assert len(engine.node_executions(instance.id, "each")) == 1

    def test_iterates_source_expression(self, engine, deploy, run):
        engine.register_executor("load_file", lambda data: {"loaded": data["file"]})
        deploy("batch", [loop_node("each", "load_file", source="input['files']", item_variable="file")])

        instance = run("batch", {"files": ["a.csv", "b.csv"]})

        assert instance.output_data["each"]["iterations"] == [{"loaded": "a.csv"}, {"loaded": "b.csv"}]
        [loop] = engine.loop_executions(instance.id)
        assert [i.input_data["index"] for i in loop.iterations] == [0, 1]

    def test_while_condition(self, engine, deploy, run):
        deploy("counting", [loop_node("count", while_condition="index < 3")])

        instance = run("counting")

        assert len(instance.output_data["count"]["iterations"]) == 3

    def test_max_iterations_caps_the_loop(self, engine, deploy, run):
        deploy("endless", [loop_node("spin", while_condition="True", max_iterations=4)])

        instance = run("endless")

        assert instance.status == InstanceStatus.COMPLETED
        assert len(instance.output_data["spin"]["iterations"]) == 4

    def test_iteration_retries_independently(self, engine, deploy, run):
        tries = {}
        lock = threading.Lock()

        def picky(data):
            with lock:
                tries[data["index"]] = tries.get(data["index"], 0) + 1
                count = tries[data["index"]]
            if data["index"] == 2 and count == 1:
                return ExecutorResult.fail("transient glitch")
            return {"index": data["index"]}

        engine.register_executor("picky", picky)
        deploy("retry-loop", [loop_node("each", "picky", items=[1, 2, 3, 4], iteration_max_retries=1)])

        instance = run("retry-loop")

        assert instance.status == InstanceStatus.COMPLETED
        [loop] = engine.loop_executions(instance.id)
        assert [i.attempts for i in loop.iterations] == [1, 1, 2, 1]
        assert tries == {0: 1, 1: 1, 2: 2, 3: 1}

    def test_exhausted_iteration_fails_the_loop(self, engine, deploy, run):
        engine.register_executor("third_fails", lambda data: ExecutorResult.fail("bad row") if data["index"] == 2 else {})
        deploy("failing-loop", [loop_node("each", "third_fails", items=[1, 2, 3, 4])])

        instance = run("failing-loop")

        assert instance.status == InstanceStatus.FAILED
        assert instance.failed_nodes == ["each"]
        assert "iteration 2 failed: bad row" in instance.node_errors["each"]
        [loop] = engine.loop_executions(instance.id)
        assert loop.status == NodeExecutionStatus.FAILED
        assert len(loop.iterations) == 3

    def test_loop_retry_keeps_successful_iterations(self, engine, deploy, run):
        calls = []

        def second_fails_once(data):
            calls.append(data["index"])
            if data["index"] == 1 and calls.count(1) == 1:
                return ExecutorResult.fail("first pass")
            return {}

        engine.register_executor("second_fails_once", second_fails_once)
        deploy("resumable", [
            TaskNode(
                node_id="each",
                node_type=NodeType.LOOP,
                executor_ref="second_fails_once",
                max_retries=1,
                loop=LoopConfig(items=["a", "b", "c"]),
            )
        ])

        instance = run("resumable")

        assert instance.status == InstanceStatus.COMPLETED
        assert calls == [0, 1, 1, 2]
        assert [e.status for e in engine.node_executions(instance.id, "each")] == [
            NodeExecutionStatus.FAILED, NodeExecutionStatus.SUCCESS
        ]


class TestParallelNodes:
    """Fan-out of branch sub-chains."""

    def test_all_branches_complete(self, engine, deploy, run):
        deploy("fanout", [
            parallel_node("fan", {
                "left": [task("x"), task("y", depends_on=["x"])],
                "right": [task("z", input_data={"side": "right"})],
            }),
            task("after", depends_on=["fan"]),
        ])

        instance = run("fanout", {"order": 1})

        assert instance.status == InstanceStatus.COMPLETED
        assert set(instance.output_data["fan"]) == {"left.x", "left.y", "right.z"}
        assert instance.output_data["fan"]["right.z"]["side"] == "right"
        assert instance.execution_path[-1] == "after"
        assert instance.execution_path.index("fan.left.y") > instance.execution_path.index("fan.left.x")
        [child] = engine.node_executions(instance.id, "fan.left.x")
        assert child.parent_node_id == "fan"

    def test_fail_fast_cancels_siblings(self, engine, deploy):
        engine.register_executor("slow", lambda data, context: {"cancelled": context.cancel_event.wait(5)})
        deploy("fragile", [
            parallel_node("fan", {"left": [task("slow", "slow")], "right": [task("bad", "fail")]}),
        ])
        instance = engine.create_instance("fragile", start=True)

        finished = engine.run(instance.id)
        assert engine.scheduler.wait_idle()

        assert finished.status == InstanceStatus.FAILED
        assert set(finished.failed_nodes) == {"fan.right.bad", "fan"}
        assert "fail-fast" in finished.node_errors["fan"]
        [slow] = engine.node_executions(instance.id, "fan.left.slow")
        assert slow.status == NodeExecutionStatus.CANCELLED

    def test_wait_all_lets_siblings_finish(self, engine, deploy):
        release = threading.Event()
        engine.register_executor("gated", lambda data: release.wait(5) and {"done": True})
        deploy("patient", [
            parallel_node(
                "fan",
                {"left": [task("gated", "gated")], "right": [task("bad", "fail")]},
                parallel_failure_policy=ParallelFailurePolicy.WAIT_ALL,
            ),
        ])
        instance = engine.create_instance("patient", start=True)

        engine.scheduler.tick()
        engine.scheduler.pump(timeout=0.5)

        waiting = engine.get_instance(instance.id)
        assert waiting.status == InstanceStatus.RUNNING
        assert "fan.right.bad" in waiting.failed_nodes
        assert engine.node_executions(instance.id, "fan")[0].status == NodeExecutionStatus.RUNNING

        release.set()
        finished = engine.run(instance.id)

        assert finished.status == InstanceStatus.FAILED
        [gated] = engine.node_executions(instance.id, "fan.left.gated")
        assert gated.status == NodeExecutionStatus.SUCCESS
        assert "wait-all" in finished.node_errors["fan"]

    def test_failed_branch_with_continue(self, engine, deploy, run):
        deploy("best-effort", [
            parallel_node(
                "fan",
                {"left": [task("ok")], "right": [task("bad", "fail")]},
                error_handling=ErrorHandling.CONTINUE,
            ),
            task("after", depends_on=["fan"]),
        ])

        instance = run("best-effort")

        assert instance.status == InstanceStatus.COMPLETED
        assert "fan" in instance.skipped_nodes
        assert instance.execution_path[-1] == "after"

    def test_branch_child_retries(self, engine, deploy, run):
        engine.register_executor(
            "flaky", lambda data, context: ExecutorResult.fail("once") if context.attempt == 1 else {"ok": True}
        )
        deploy("retrying-fan", [parallel_node("fan", {"only": [task("flaky", "flaky", max_retries=1)]})])

        instance = run("retrying-fan")

        assert instance.status == InstanceStatus.COMPLETED
        assert [e.status for e in engine.node_executions(instance.id, "fan.only.flaky")] == [
            NodeExecutionStatus.FAILED, NodeExecutionStatus.SUCCESS
        ]
        assert len(engine.node_executions(instance.id, "fan")) == 1


class TestSubprocessNodes:
    """Child instances started by subprocess nodes."""

    def test_child_output_becomes_node_output(self, engine, deploy, run):
        deploy("child", [task("c")])
        deploy("parent", [
            task("prep", input_data={"value": 5}),
            subprocess_node("sub", "child", depends_on=["prep"], input_mapping={"value": "value * 2"}),
            task("after", depends_on=["sub"]),
        ])

        instance = run("parent")

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.output_data["sub"] == {"c": {"value": 10}}
        [child] = engine.repository.find_children(instance.id)
        assert child.status == InstanceStatus.COMPLETED
        assert child.parent_node_id == "sub"
        assert child.input_data == {"value": 10}
        [attempt] = engine.node_executions(instance.id, "sub")
        assert attempt.output_data == {"c": {"value": 10}}

    def test_failed_child_fails_the_node(self, engine, deploy, run):
        deploy("child", [task("c", "fail", input_data={"message": "child broke"})])
        deploy("parent", [subprocess_node("sub", "child")])

        instance = run("parent")

        assert instance.status == InstanceStatus.FAILED
        assert instance.error_kind == ErrorKind.BUSINESS
        assert "child broke" in instance.node_errors["sub"]

    def test_unknown_child_definition_is_configuration_error(self, engine, deploy, run):
        deploy("parent", [subprocess_node("sub", "nowhere", max_retries=2)])

        instance = run("parent")

        assert instance.status == InstanceStatus.FAILED
        assert instance.error_kind == ErrorKind.CONFIGURATION
        assert len(engine.node_executions(instance.id, "sub")) == 1

    def _time_out_first_attempt(self, engine, deploy, clock, reuse):
        release = threading.Event()
        engine.register_executor("slow_child", lambda data: release.wait(5) and {"done": True})
        deploy("child", [task("c", "slow_child")])
        deploy("parent", [subprocess_node("sub", "child", reuse_existing=reuse, timeout_seconds=5, max_retries=1)])
        instance = engine.create_instance("parent", start=True)

        engine.scheduler.tick()
        engine.scheduler.pump()
        clock.advance(6)
        engine.scheduler.tick()
        release.set()
        return engine.run(instance.id)

    def test_retry_reuses_running_child(self, engine, deploy, clock):
        finished = self._time_out_first_attempt(engine, deploy, clock, reuse=True)

        assert finished.status == InstanceStatus.COMPLETED
        [child] = engine.repository.find_children(finished.id)
        assert child.status == InstanceStatus.COMPLETED
        first, second = engine.node_executions(finished.id, "sub")
        assert first.error_message == "timeout"
        assert first.output_data == {"child_instance_id": child.id}
        assert second.status == NodeExecutionStatus.SUCCESS

    def test_retry_starts_fresh_child(self, engine, deploy, clock):
        finished = self._time_out_first_attempt(engine, deploy, clock, reuse=False)

        assert finished.status == InstanceStatus.COMPLETED
        old, new = engine.repository.find_children(finished.id)
        assert old.status == InstanceStatus.CANCELLED
        assert new.status == InstanceStatus.COMPLETED
        first, second = engine.node_executions(finished.id, "sub")
        assert first.output_data == {"child_instance_id": old.id}
        assert second.output_data == new.output_data
        assert finished.output_data["sub"] == new.output_data

    def test_cancelling_parent_cancels_child(self, engine, deploy):
        engine.register_executor("wait", lambda data, context: {"cancelled": context.cancel_event.wait(5)})
        deploy("child", [task("c", "wait")])
        deploy("parent", [subprocess_node("sub", "child")])
        instance = engine.create_instance("parent", start=True)

        engine.scheduler.tick()
        engine.scheduler.pump()
        [child] = engine.repository.find_children(instance.id)
        assert engine.get_instance(child.id).status == InstanceStatus.RUNNING

        engine.cancel_instance(instance.id)
        assert engine.scheduler.wait_idle()

        assert engine.get_instance(child.id).status == InstanceStatus.CANCELLED
        [attempt] = engine.node_executions(instance.id, "sub")
        assert attempt.status == NodeExecutionStatus.CANCELLED
