"""Tests for the dependency resolver and expression evaluation."""

import pytest

from taskflow.core.resolver import (
    DefinitionGraph,
    DependencyResolver,
    EvaluationContext,
    evaluate_condition,
    evaluate_expression,
    validate_definition,
)
from taskflow.models.core import InstanceStatus, TaskNode, WorkflowDefinition, WorkflowInstance


def diamond():
    return DefinitionGraph.compile(WorkflowDefinition(
        name="diamond",
        nodes=[
            TaskNode(node_id="a", executor_ref="echo"),
            TaskNode(node_id="b", executor_ref="echo", depends_on=["a"]),
            TaskNode(node_id="c", executor_ref="echo", depends_on=["a"], priority=5),
            TaskNode(node_id="d", executor_ref="echo", depends_on=["b", "c"]),
        ],
    ))


def empty_context():
    return EvaluationContext({}, {}, {})


class TestDependencyResolver:
    """Ready-node computation."""

    def test_roots_are_ready_first(self):
        graph = diamond()
        ready = DependencyResolver().ready_nodes(graph, graph.scope(), set(), set(), set(), empty_context())

        assert ready == ["a"]

    def test_ready_nodes_ordered_by_priority_then_id(self):
        """c has the higher priority so it is dispatched before b."""
        graph = diamond()
        ready = DependencyResolver().ready_nodes(graph, graph.scope(), {"a"}, set(), set(), empty_context())

        assert ready == ["c", "b"]

    def test_join_waits_for_every_dependency(self):
        graph = diamond()
        resolver = DependencyResolver()

        assert resolver.ready_nodes(graph, graph.scope(), {"a", "b"}, set(), {"c"}, empty_context()) == []
        assert resolver.ready_nodes(graph, graph.scope(), {"a", "b", "c"}, set(), set(), empty_context()) == ["d"]

    def test_failed_and_in_flight_nodes_are_not_ready(self):
        graph = diamond()
        ready = DependencyResolver().ready_nodes(graph, graph.scope(), {"a"}, {"b"}, {"c"}, empty_context())

        assert ready == []

    def test_false_condition_makes_node_skippable(self):
        graph = DefinitionGraph.compile(WorkflowDefinition(
            name="guarded",
            nodes=[
                TaskNode(node_id="check", executor_ref="echo"),
                TaskNode(node_id="notify", executor_ref="echo", depends_on=["check"], condition="score > 10"),
            ],
        ))
        context = EvaluationContext({}, {"check": {"score": 3}}, {"score": 3})

        resolution = DependencyResolver().resolve(graph, graph.scope(), {"check"}, set(), set(), context)

        assert resolution.ready == []
        assert resolution.skippable == ["notify"]


class TestExpressions:
    """Conditions and expressions over the instance context."""

    def test_context_merges_outputs_in_completion_order(self):
        instance = WorkflowInstance(
            id="i-1",
            definition_name="flow",
            definition_version=1,
            status=InstanceStatus.RUNNING,
            input_data={"value": 1, "source": "input"},
            execution_path=["first", "second"],
            output_data={"first": {"value": 2}, "second": {"value": 3, "extra": True}},
        )
        context = EvaluationContext.from_instance(instance)

        assert context.ctx == {"value": 3, "source": "input", "extra": True}
        assert evaluate_expression("input['value'] + outputs['first']['value']", context) == 3

    def test_condition_errors_evaluate_false(self):
        assert evaluate_condition("missing_name > 1", empty_context()) is False

    def test_builtins_are_restricted(self):
        with pytest.raises(NameError):
            evaluate_expression("open('/etc/passwd')", empty_context())

    def test_extra_names_are_visible(self):
        assert evaluate_condition("index < 3", empty_context(), {"index": 2}) is True


class TestValidateDefinition:
    """Publish-time validation rules."""

    def test_valid_definition(self):
        result = validate_definition(diamond().definition)

        assert result.is_valid
        assert result.errors == []

    def test_invalid_condition_syntax(self):
        definition = WorkflowDefinition(
            name="broken",
            nodes=[TaskNode(node_id="a", executor_ref="echo", condition="value >")],
        )

        result = validate_definition(definition)

        assert not result.is_valid
        assert "invalid expression" in result.errors[0]

    def test_edges_merge_into_dependencies(self):
        definition = WorkflowDefinition(
            name="edges",
            nodes=[
                TaskNode(node_id="a", executor_ref="echo"),
                TaskNode(node_id="b", executor_ref="echo"),
            ],
            edges=[{"from_node": "a", "to_node": "b"}],
        )

        assert definition.get_node("b").depends_on == ["a"]
        assert validate_definition(definition).is_valid
