"""
Structural validation of workflow graphs.

Validation is static: it looks only at nodes, connections and the templates
embedded in node configuration, never at a run environment. Errors block
activation; warnings are advisory.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from ..config import settings
from ..errors import ManifestError, TemplateSyntaxError
from .compiler import connection_from_dict, iter_config_strings, load_workflow, node_from_dict
from .expressions import compile_expression, compile_template, has_placeholders
from .guards import OPERATORS
from .models import (
    ActionConfig, ApprovalConfig, ConditionConfig, Connection, CreateRecordConfig,
    DataTransformConfig, DelayConfig, EmailConfig, LoopConfig, Node, NodeType,
    ParallelConfig, SmsConfig, UpdateRecordConfig, WorkflowDefinition,
)


@dataclass(frozen=True)
class ValidationIssue:
    message: str
    node_id: Optional[str] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None
    path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [_issue_dict(i) for i in self.errors],
            "warnings": [_issue_dict(i) for i in self.warnings],
        }


def _issue_dict(issue: ValidationIssue) -> Dict[str, Any]:
    out = {k: v for k, v in asdict(issue).items() if v not in (None, ())}
    if issue.path:
        out["path"] = list(issue.path)
    return out


@dataclass
class _Report:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def error(self, message: str, node_id: Optional[str] = None, field: Optional[str] = None, **kw):
        self.errors.append(ValidationIssue(message, node_id, field, **kw))

    def warn(self, message: str, node_id: Optional[str] = None, suggestion: Optional[str] = None, **kw):
        self.warnings.append(ValidationIssue(message, node_id, suggestion=suggestion, **kw))

    def result(self) -> ValidationResult:
        return ValidationResult(not self.errors, tuple(self.errors), tuple(self.warnings))


# -------------------------
# PER-NODE CHECKS
# -------------------------

def _check_condition(node: Node, cfg: ConditionConfig, report: _Report) -> None:
    if not cfg.conditions:
        report.error("Condition node must have at least one condition", node.node_id, "conditions")
    for i, clause in enumerate(cfg.conditions):
        if clause.operator not in OPERATORS:
            report.error(f"Condition uses unsupported operator '{clause.operator}'",
                         node.node_id, f"conditions[{i}].operator")
        if not clause.field:
            report.error("Condition clause must name a field", node.node_id, f"conditions[{i}].field")
        else:
            _check_expression(node, clause.field, f"conditions[{i}].field", report)
    if cfg.logical_operator not in ("AND", "OR"):
        report.error(f"Unsupported logical operator '{cfg.logical_operator}'", node.node_id, "logicalOperator")


def _check_loop(node: Node, cfg: LoopConfig, report: _Report) -> None:
    if not cfg.data_source:
        report.error("Loop node must have a data source", node.node_id, "dataSource")
    else:
        _check_expression(node, cfg.data_source, "dataSource", report)
    clause = cfg.break_condition
    if clause is not None:
        if clause.operator not in OPERATORS:
            report.error(f"Break condition uses unsupported operator '{clause.operator}'",
                         node.node_id, "breakCondition.operator")
        if not clause.field:
            report.error("Break condition must name a field", node.node_id, "breakCondition.field")
        else:
            _check_expression(node, clause.field, "breakCondition.field", report)
    if cfg.max_iterations and cfg.max_iterations > settings.max_loop_iterations_warning:
        report.warn("Loop has a very high max iterations limit", node.node_id,
                    "Consider reducing max iterations to improve performance")


def _check_parallel(node: Node, cfg: ParallelConfig, report: _Report) -> None:
    if not cfg.parallel_node_ids:
        report.error("Parallel node must have at least one parallel node", node.node_id, "parallelNodeIds")
    if len(cfg.parallel_node_ids) > settings.max_parallel_branches_warning:
        report.warn("Parallel node has many parallel executions", node.node_id,
                    "Consider splitting into multiple parallel nodes")


def _check_data_transform(node: Node, cfg: DataTransformConfig, report: _Report) -> None:
    if not cfg.operation:
        report.error("Data transform node must have an operation", node.node_id, "operation")


def _check_approval(node: Node, cfg: ApprovalConfig, report: _Report) -> None:
    if not cfg.approver_ids:
        report.error("Approval node must have at least one approver", node.node_id, "approverIds")


def _check_create_record(node: Node, cfg: CreateRecordConfig, report: _Report) -> None:
    if not cfg.model:
        report.error("Create record node must have a model", node.node_id, "model")
    if not cfg.field_mappings:
        report.error("Create record node must have field mappings", node.node_id, "fieldMappings")


def _check_update_record(node: Node, cfg: UpdateRecordConfig, report: _Report) -> None:
    if not cfg.model:
        report.error("Update record node must have a model", node.node_id, "model")
    if not cfg.record_id:
        report.error("Update record node must have a record ID", node.node_id, "recordId")
    if not cfg.field_mappings:
        report.error("Update record node must have field mappings", node.node_id, "fieldMappings")


def _check_email(node: Node, cfg: EmailConfig, report: _Report) -> None:
    if not cfg.subject:
        report.error("Email node must have a subject", node.node_id, "subject")
    if not cfg.html_body:
        report.error("Email node must have a body", node.node_id, "htmlBody")


def _check_sms(node: Node, cfg: SmsConfig, report: _Report) -> None:
    if not cfg.message:
        report.error("SMS node must have a message", node.node_id, "message")


def _check_action(node: Node, cfg: ActionConfig, report: _Report) -> None:
    if not cfg.action_type:
        report.warn("Action node has no action type", node.node_id, "Set actionType so the node does something")


def _check_delay(node: Node, cfg: DelayConfig, report: _Report) -> None:
    if not cfg.delay_until and cfg.delay_ms is None:
        report.warn("Delay node has neither delayUntil nor delayMs", node.node_id,
                    "Without a delay the node passes straight through")


_NODE_CHECKS = {
    NodeType.CONDITION: _check_condition,
    NodeType.LOOP: _check_loop,
    NodeType.PARALLEL: _check_parallel,
    NodeType.DATA_TRANSFORM: _check_data_transform,
    NodeType.APPROVAL: _check_approval,
    NodeType.CREATE_RECORD: _check_create_record,
    NodeType.UPDATE_RECORD: _check_update_record,
    NodeType.EMAIL: _check_email,
    NodeType.SMS: _check_sms,
    NodeType.ACTION: _check_action,
    NodeType.DELAY: _check_delay,
}


def _check_expression(node: Node, text: str, field_name: str, report: _Report) -> None:
    try:
        compile_expression(text)
    except TemplateSyntaxError as e:
        report.error(f"Invalid expression: {e}", node.node_id, field_name)


def _check_templates(node: Node, report: _Report) -> None:
    for path, text in iter_config_strings(node.config):
        if not has_placeholders(text):
            continue
        try:
            compile_template(text)
        except TemplateSyntaxError as e:
            report.error(f"Invalid template: {e}", node.node_id, path)


def validate_node(node: Node, report: Optional[_Report] = None) -> ValidationResult:
    report = report if report is not None else _Report()
    if not node.name or not node.name.strip():
        report.warn("Node has no name", node.node_id, "Add a descriptive name to help identify this node")
    check = _NODE_CHECKS.get(node.type)
    if check:
        check(node, node.config, report)
    _check_templates(node, report)
    return report.result()


# -------------------------
# GRAPH CHECKS
# -------------------------

def _check_references(nodes: Sequence[Node], node_ids: Set[str], report: _Report) -> None:
    for node in nodes:
        for field_name, target in node.references():
            if target not in node_ids:
                report.error(f"{field_name} references non-existent node: {target}", node.node_id, field_name)
            elif target == node.node_id:
                report.error(f"{field_name} cannot reference the node itself", node.node_id, field_name)


def _check_connections(connections: Sequence[Connection], node_ids: Set[str], report: _Report) -> None:
    for connection in connections:
        if connection.source_node_id not in node_ids:
            report.error(f"Connection references non-existent source node: {connection.source_node_id}")
        if connection.target_node_id not in node_ids:
            report.error(f"Connection references non-existent target node: {connection.target_node_id}")
        if connection.source_node_id == connection.target_node_id:
            report.error("Node cannot connect to itself", connection.source_node_id)


def find_orphaned_nodes(nodes: Sequence[Node], connections: Sequence[Connection]) -> List[str]:
    """ Non-trigger nodes that no connection touches, in declaration order. """
    connected = set()
    for connection in connections:
        connected.add(connection.source_node_id)
        connected.add(connection.target_node_id)
    return [n.node_id for n in nodes if n.node_id not in connected and n.type != NodeType.TRIGGER]


def find_cycle(node_ids: Sequence[str], edges: Iterable[Tuple[str, str]]) -> List[str]:
    """
    Depth-first search with a recursion stack. Returns the first cycle found
    as the path slice starting at the revisited node, or [] if acyclic.
    """
    graph: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for source, target in edges:
        if source in graph and target in graph:
            graph[source].append(target)

    visited: Set[str] = set()
    on_stack: Set[str] = set()
    path: List[str] = []

    def visit(node_id: str) -> List[str]:
        visited.add(node_id)
        on_stack.add(node_id)
        path.append(node_id)
        for neighbor in graph[node_id]:
            if neighbor not in visited:
                cycle = visit(neighbor)
                if cycle:
                    return cycle
            elif neighbor in on_stack:
                return path[path.index(neighbor):]
        on_stack.discard(node_id)
        path.pop()
        return []

    for node_id in node_ids:
        if node_id not in visited:
            cycle = visit(node_id)
            if cycle:
                return list(cycle)
    return []


def canonical_edges(nodes: Sequence[Node], connections: Sequence[Connection]) -> List[Tuple[str, str, str]]:
    """ Connections plus node-embedded references as (source, target, origin) edges. """
    edges = [(c.source_node_id, c.target_node_id, "connection") for c in connections]
    for node in nodes:
        edges += [(node.node_id, target, field_name) for field_name, target in node.references()]
    return edges


def _coerce_nodes(nodes: Iterable[Union[Node, Mapping[str, Any]]]) -> List[Node]:
    return [node_from_dict(n) if isinstance(n, Mapping) else n for n in nodes]


def _coerce_connections(connections: Iterable[Union[Connection, Mapping[str, Any]]]) -> List[Connection]:
    return [connection_from_dict(c) if isinstance(c, Mapping) else c for c in connections]


def validate(nodes: Iterable[Union[Node, Mapping[str, Any]]],
             connections: Iterable[Union[Connection, Mapping[str, Any]]] = ()) -> ValidationResult:
    """
    Validate a workflow graph. Nodes and connections may be model objects or
    manifest-shaped mappings (nodeId/type/config, sourceNodeId/targetNodeId).
    """
    nodes = _coerce_nodes(nodes)
    connections = _coerce_connections(connections or ())
    report = _Report()

    if not nodes:
        report.error("Workflow must have at least one node")
        return report.result()

    seen: Set[str] = set()
    for node in nodes:
        if node.node_id in seen:
            report.error(f"Duplicate node id: {node.node_id}", node.node_id, "nodeId")
        seen.add(node.node_id)
        validate_node(node, report)

    _check_references(nodes, seen, report)
    _check_connections(connections, seen, report)

    embedded_targets = {target for n in nodes for _, target in n.references()}
    for node_id in find_orphaned_nodes(nodes, connections):
        if node_id in embedded_targets:
            report.warn("Node is only referenced as a branch or loop body, not by any connection", node_id,
                        "Add a connection to this node so the graph reflects how it is reached")
        else:
            report.warn("Node is not connected to any other nodes", node_id,
                        "Connect this node or remove it from the workflow")

    ordered_ids = list(dict.fromkeys(n.node_id for n in nodes))
    connection_edges = [(c.source_node_id, c.target_node_id) for c in connections
                        if c.source_node_id != c.target_node_id]
    cycle = find_cycle(ordered_ids, connection_edges)
    if cycle:
        report.error(f"Circular dependency detected: {' -> '.join(cycle)}", path=tuple(cycle))
    else:
        unified = [(s, t) for s, t, _ in canonical_edges(nodes, connections) if s != t]
        cycle = find_cycle(ordered_ids, unified)
        if cycle:
            report.error(f"Circular dependency through branch references: {' -> '.join(cycle)}",
                         path=tuple(cycle))

    return report.result()


def validate_workflow(definition: WorkflowDefinition) -> ValidationResult:
    result = validate(definition.nodes, definition.connections)
    errors = list(result.errors)
    if not definition.triggers:
        errors.append(ValidationIssue("Workflow must declare at least one trigger", field="triggers"))
    trigger_node_ids = {n.node_id for n in definition.trigger_nodes}
    for i, trigger in enumerate(definition.triggers):
        if trigger.node_id and trigger.node_id not in trigger_node_ids:
            errors.append(ValidationIssue(f"Trigger references unknown trigger node: {trigger.node_id}",
                                          trigger.node_id, f"triggers[{i}].nodeId"))
    if len(errors) == len(result.errors):
        return result
    return ValidationResult(False, tuple(errors), result.warnings)


def validate_manifest(manifest: Union[str, bytes, Mapping[str, Any], WorkflowDefinition]) -> ValidationResult:
    """ Pre-flight gate for a manifest; unparseable manifests are reported, not raised. """
    if isinstance(manifest, WorkflowDefinition):
        return validate_workflow(manifest)
    try:
        definition = load_workflow(manifest)
    except ManifestError as e:
        return ValidationResult(False, (ValidationIssue(str(e)),))
    return validate_workflow(definition)
