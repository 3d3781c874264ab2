"""Definition arena, publish-time validation and ready-node computation."""

from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..models.core import NodeType, TaskNode, ValidationResult, WorkflowDefinition, WorkflowInstance
from .logging import get_logger

logger = get_logger(__name__)

SAFE_BUILTINS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'isinstance': isinstance,
    'min': min,
    'max': max,
    'sum': sum,
    'any': any,
    'all': all,
}


class EvaluationContext:
    """Names visible to conditions, loop sources and input mappings.

    ``input`` is the instance input, ``outputs`` maps node id to output and
    ``ctx`` is the input merged with every dict output in completion order.
    Each ``ctx`` key is also bound as a bare name.
    """

    def __init__(self, input_data: Dict[str, Any], outputs: Dict[str, Any], ctx: Dict[str, Any]):
        self.input = input_data
        self.outputs = outputs
        self.ctx = ctx

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "EvaluationContext":
        ctx = dict(instance.input_data)
        for node_id in instance.execution_path:
            output = instance.output_data.get(node_id)
            if isinstance(output, dict):
                ctx.update(output)
        return cls(dict(instance.input_data), dict(instance.output_data), ctx)

    def names(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        names = {key: value for key, value in self.ctx.items() if isinstance(key, str) and key.isidentifier()}
        names.update(extra or {})
        names['input'] = self.input
        names['outputs'] = self.outputs
        names['ctx'] = self.ctx
        return names


def evaluate_expression(expression: str, context: EvaluationContext, extra: Optional[Dict[str, Any]] = None) -> Any:
    """Evaluate an expression with no builtins beyond SAFE_BUILTINS. Errors propagate."""
    return eval(expression, {"__builtins__": SAFE_BUILTINS}, context.names(extra))


def evaluate_condition(condition: str, context: EvaluationContext, extra: Optional[Dict[str, Any]] = None) -> bool:
    """
    Evaluate a boolean guard.

    Args:
        condition: Expression to evaluate
        context: Instance evaluation context
        extra: Additional names (loop variables)

    Returns:
        True if the condition holds, False if it does not or cannot be evaluated
    """
    try:
        return bool(evaluate_expression(condition, context, extra))
    except Exception as e:
        logger.warning(f"Failed to evaluate condition '{condition}': {str(e)}")
        return False


class ArenaNode:
    """A node of the compiled definition addressed by its qualified id."""

    def __init__(
        self,
        node_id: str,
        template: TaskNode,
        depends_on: List[str],
        parent_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ):
        self.node_id = node_id
        self.template = template
        self.depends_on = depends_on
        self.parent_id = parent_id
        self.branch_id = branch_id
        self.children: List[str] = []

    @property
    def node_type(self) -> NodeType:
        return self.template.node_type

    def __repr__(self) -> str:
        return f"ArenaNode({self.node_id!r}, {self.node_type.value})"


def qualify(parent_id: str, branch_id: str, node_id: str) -> str:
    """Id of a parallel branch child. Dots never occur in declared ids."""
    return f"{parent_id}.{branch_id}.{node_id}"


class DefinitionGraph:
    """Flat arena of a definition's nodes; parallel children hang off their parent by id."""

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self.nodes: Dict[str, ArenaNode] = {}
        self.top_level: List[str] = []

    @classmethod
    def compile(cls, definition: WorkflowDefinition) -> "DefinitionGraph":
        graph = cls(definition)
        for node in definition.nodes:
            arena_node = ArenaNode(node.node_id, node, list(node.depends_on))
            graph.nodes[node.node_id] = arena_node
            graph.top_level.append(node.node_id)
            if node.node_type == NodeType.PARALLEL:
                for branch in node.branches:
                    for child in branch.nodes:
                        child_id = qualify(node.node_id, branch.branch_id, child.node_id)
                        graph.nodes[child_id] = ArenaNode(
                            child_id,
                            child,
                            [qualify(node.node_id, branch.branch_id, dep) for dep in child.depends_on],
                            parent_id=node.node_id,
                            branch_id=branch.branch_id
                        )
                        arena_node.children.append(child_id)
        return graph

    def node(self, node_id: str) -> ArenaNode:
        return self.nodes[node_id]

    def scope(self, parent_id: Optional[str] = None) -> List[str]:
        """Ids of the top level, or of one parallel node's children."""
        if parent_id is None:
            return list(self.top_level)
        return list(self.nodes[parent_id].children)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes


class Resolution:
    """Outcome of one resolver pass over a scope."""

    def __init__(self, ready: List[str], skippable: List[str]):
        self.ready = ready
        self.skippable = skippable

    def __bool__(self) -> bool:
        return bool(self.ready or self.skippable)


class DependencyResolver:
    """Computes which nodes of a scope may be dispatched next."""

    def resolve(
        self,
        graph: DefinitionGraph,
        scope: Iterable[str],
        completed: Set[str],
        failed: Set[str],
        in_flight: Set[str],
        context: EvaluationContext
    ) -> Resolution:
        """
        Split the scope's waiting nodes into ready and skippable ones.

        A node is considered when every dependency is in ``completed`` and the
        node itself is not completed, failed or in flight. It is ready when its
        condition (if any) holds and skippable when the condition is false.

        Returns:
            Resolution with both lists ordered by priority desc, then id asc
        """
        ready: List[ArenaNode] = []
        skippable: List[ArenaNode] = []
        for node_id in scope:
            if node_id in completed or node_id in failed or node_id in in_flight:
                continue
            node = graph.node(node_id)
            if not all(dep in completed for dep in node.depends_on):
                continue
            condition = node.template.condition
            if condition and not evaluate_condition(condition, context):
                skippable.append(node)
            else:
                ready.append(node)

        def order(items: List[ArenaNode]) -> List[str]:
            return [n.node_id for n in sorted(items, key=lambda n: (-n.template.priority, n.node_id))]

        return Resolution(order(ready), order(skippable))

    def ready_nodes(self, graph, scope, completed, failed, in_flight, context) -> List[str]:
        return self.resolve(graph, scope, completed, failed, in_flight, context).ready


def _find_cycle(node_ids: List[str], depends_on: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one dependency cycle if present, using DFS with a recursion stack."""
    visited: Set[str] = set()
    rec_stack: List[str] = []
    on_stack: Set[str] = set()

    def visit(node_id: str) -> Optional[List[str]]:
        visited.add(node_id)
        rec_stack.append(node_id)
        on_stack.add(node_id)
        for dep in depends_on.get(node_id, []):
            if dep not in depends_on:
                continue
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
            elif dep in on_stack:
                return rec_stack[rec_stack.index(dep):] + [dep]
        rec_stack.pop()
        on_stack.discard(node_id)
        return None

    for node_id in sorted(node_ids):
        if node_id not in visited:
            cycle = visit(node_id)
            if cycle:
                return cycle
    return None


def subprocess_targets(nodes: List[TaskNode]) -> List[Tuple[str, Optional[int]]]:
    """(definition_name, definition_version) of every subprocess node, branches included."""
    targets: List[Tuple[str, Optional[int]]] = []
    for node in nodes:
        if node.node_type == NodeType.SUBPROCESS and node.subprocess is not None:
            targets.append((node.subprocess.definition_name, node.subprocess.definition_version))
        for branch in node.branches:
            targets.extend(subprocess_targets(branch.nodes))
    return targets


def find_subprocess_cycle(
    definition: WorkflowDefinition,
    lookup: Callable[[str, Optional[int]], Optional[WorkflowDefinition]]
) -> Optional[List[str]]:
    """
    Follow subprocess targets from ``definition`` and return a path back to it.

    Args:
        definition: Definition about to be published
        lookup: Resolves (name, version) to a definition; version None means
            the latest active one. Returns None for unknown targets.

    Returns:
        Definition names forming the cycle, or None
    """
    seen: Set[Tuple[str, Optional[int]]] = set()
    stack: List[Tuple[List[str], List[TaskNode]]] = [([definition.name], definition.nodes)]
    while stack:
        path, nodes = stack.pop()
        for name, version in subprocess_targets(nodes):
            if name == definition.name:
                return path + [name]
            if (name, version) in seen:
                continue
            seen.add((name, version))
            target = lookup(name, version)
            if target is not None:
                stack.append((path + [name], target.nodes))
    return None


def _check_expression(expression: str, label: str, errors: List[str]):
    try:
        compile(expression, f"<{label}>", "eval")
    except SyntaxError as e:
        errors.append(f"{label} has invalid expression '{expression}': {e.msg}")


def _validate_scope(nodes: List[TaskNode], label: str, errors: List[str], warnings: List[str]):
    ids = {node.node_id for node in nodes}
    depends_on = {node.node_id: list(node.depends_on) for node in nodes}
    for node in nodes:
        for dep in node.depends_on:
            if dep not in ids:
                errors.append(f"Node '{node.node_id}'{label} depends on non-existent node '{dep}'")
        if node.condition:
            _check_expression(node.condition, f"Condition of node '{node.node_id}'", errors)
    cycle = _find_cycle(list(ids), depends_on)
    if cycle:
        # depends_on points backwards, so reverse for execution order
        errors.append(f"Dependency cycle detected{label}: {' -> '.join(reversed(cycle))}")


def validate_definition(definition: WorkflowDefinition) -> ValidationResult:
    """
    Validate a definition for publication.

    Checks dangling dependencies and edges, dependency cycles (top level and
    inside every parallel branch), expression syntax, and subprocess targets.

    Args:
        definition: The definition to validate

    Returns:
        ValidationResult with errors and warnings
    """
    errors: List[str] = []
    warnings: List[str] = []
    node_ids = {node.node_id for node in definition.nodes}

    for edge in definition.edges:
        if edge.from_node not in node_ids:
            errors.append(f"Edge references non-existent source node: '{edge.from_node}'")
        if edge.to_node not in node_ids:
            errors.append(f"Edge references non-existent target node: '{edge.to_node}'")

    _validate_scope(definition.nodes, "", errors, warnings)

    for node in definition.nodes:
        if node.node_type == NodeType.PARALLEL:
            branch_ids = [branch.branch_id for branch in node.branches]
            if len(branch_ids) != len(set(branch_ids)):
                errors.append(f"Parallel node '{node.node_id}' has duplicate branch ids")
            for branch in node.branches:
                _validate_scope(branch.nodes, f" in branch '{node.node_id}.{branch.branch_id}'", errors, warnings)
        elif node.node_type == NodeType.LOOP and node.loop is not None:
            if node.loop.source:
                _check_expression(node.loop.source, f"Loop source of node '{node.node_id}'", errors)
            if node.loop.while_condition:
                _check_expression(node.loop.while_condition, f"Loop condition of node '{node.node_id}'", errors)
        elif node.node_type == NodeType.SUBPROCESS and node.subprocess is not None:
            if node.subprocess.definition_name == definition.name:
                errors.append(f"Subprocess node '{node.node_id}' cannot start its own definition")
            for key, expression in node.subprocess.input_mapping.items():
                _check_expression(expression, f"Input mapping '{key}' of node '{node.node_id}'", errors)
        if node.node_type != NodeType.PARALLEL and node.branches:
            warnings.append(f"Node '{node.node_id}' declares branches but is not a parallel node")

    if definition.config.retry_max_delay < definition.config.retry_base_delay:
        warnings.append("retry_max_delay is lower than retry_base_delay; every retry uses retry_max_delay")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
