""" Load workflow manifests into definitions and compile them for execution. """
import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Tuple, Union

from ..errors import ManifestError
from .expressions import TemplateCache
from .guards import clause_from_dict
from .models import (
    ActionConfig, ApprovalConfig, ConditionConfig, Connection,
    CreateRecordConfig, DataTransformConfig, DelayConfig, EmailConfig,
    FailureHandling, LoopConfig, Node, NodeConfig, NodeType, ParallelConfig,
    SmsConfig, Trigger, TriggerNodeConfig, UpdateRecordConfig, Variable,
    WorkflowDefinition,
)
from .schema import (
    ConnectionSpec, NodeSpec, TriggerSpec, VariableSpec, WorkflowManifest,
    dump_manifest, parse_manifest,
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# manifest key for every typed config attribute
_CONFIG_KEYS = {
    "conditions": "conditions", "logical_operator": "logicalOperator",
    "true_branch": "trueBranch", "false_branch": "falseBranch",
    "data_source": "dataSource", "item_variable": "itemVariable",
    "max_iterations": "maxIterations", "loop_body_node_id": "loopBodyNodeId",
    "output_variable": "outputVariable", "parallel_node_ids": "parallelNodeIds",
    "failure_handling": "failureHandling", "operation": "operation", "source": "source",
    "query_filters": "queryFilters", "aggregation": "aggregation",
    "aggregate_field": "aggregateField", "extract_fields": "extractFields",
    "model": "model", "field_mappings": "fieldMappings", "record_id": "recordId",
    "subject": "subject", "html_body": "htmlBody", "recipient_email": "recipientEmail",
    "recipient_type": "recipientType", "message": "message",
    "recipient_phone": "recipientPhone", "action_type": "actionType",
    "delay_until": "delayUntil", "delay_ms": "delayMs", "delay_type": "delayType",
    "approver_ids": "approverIds", "approved_branch": "approvedBranch",
    "rejected_branch": "rejectedBranch", "break_condition": "breakCondition",
}


def normalize_node_type(value: Union[str, NodeType]) -> NodeType:
    """ Accept TRIGGER, Trigger, DataTransform, data-transform... """
    if isinstance(value, NodeType):
        return value
    key = _CAMEL_BOUNDARY.sub("_", str(value).strip()).replace("-", "_").upper()
    try:
        return NodeType(key)
    except ValueError:
        raise ManifestError(f"Unknown node type: {value}") from None


def _int_or_none(value: Any, key: str) -> Any:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ManifestError(f"{key} must be an integer, got {value!r}") from None


def _ids(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def build_config(node_type: NodeType, raw: Mapping[str, Any]) -> NodeConfig:
    """ Turn a free-form config mapping into the typed variant for node_type. """
    raw = dict(raw or {})
    g = raw.get

    if node_type == NodeType.CONDITION:
        return ConditionConfig(
            conditions=tuple(clause_from_dict(c) for c in (g("conditions") or []) if isinstance(c, Mapping)),
            logical_operator=str(g("logicalOperator") or "AND").upper(),
            true_branch=g("trueBranch"),
            false_branch=g("falseBranch"),
        )
    if node_type == NodeType.LOOP:
        brk = g("breakCondition")
        return LoopConfig(
            data_source=g("dataSource"),
            item_variable=g("itemVariable") or "item",
            max_iterations=_int_or_none(g("maxIterations"), "maxIterations"),
            loop_body_node_id=g("loopBodyNodeId"),
            output_variable=g("outputVariable"),
            break_condition=clause_from_dict(brk) if isinstance(brk, Mapping) else None,
        )
    if node_type == NodeType.PARALLEL:
        handling = g("failureHandling") or FailureHandling.FAIL_FAST.value
        try:
            failure_handling = FailureHandling(handling)
        except ValueError:
            raise ManifestError(f"Unknown failureHandling: {handling}") from None
        return ParallelConfig(parallel_node_ids=_ids(g("parallelNodeIds")), failure_handling=failure_handling)
    if node_type == NodeType.DATA_TRANSFORM:
        return DataTransformConfig(
            operation=g("operation"),
            source=g("source"),
            query_filters=dict(g("queryFilters") or {}),
            aggregation=g("aggregation"),
            aggregate_field=g("aggregateField"),
            extract_fields=_ids(g("extractFields")),
            output_variable=g("outputVariable"),
        )
    if node_type == NodeType.CREATE_RECORD:
        return CreateRecordConfig(
            model=g("model"),
            field_mappings=dict(g("fieldMappings") or {}),
            output_variable=g("outputVariable"),
        )
    if node_type == NodeType.UPDATE_RECORD:
        return UpdateRecordConfig(
            model=g("model"),
            record_id=g("recordId"),
            field_mappings=dict(g("fieldMappings") or {}),
            output_variable=g("outputVariable"),
        )
    if node_type == NodeType.EMAIL:
        return EmailConfig(
            subject=g("subject"),
            html_body=g("htmlBody"),
            recipient_email=g("recipientEmail"),
            recipient_type=g("recipientType"),
        )
    if node_type == NodeType.SMS:
        return SmsConfig(message=g("message"), recipient_phone=g("recipientPhone") or g("recipient"))
    if node_type == NodeType.ACTION:
        params = {k: v for k, v in raw.items() if k not in ("actionType", "outputVariable")}
        return ActionConfig(action_type=g("actionType"), output_variable=g("outputVariable"), params=params)
    if node_type == NodeType.DELAY:
        return DelayConfig(
            delay_until=g("delayUntil"),
            delay_ms=_int_or_none(g("delayMs"), "delayMs"),
            delay_type=g("delayType"),
        )
    if node_type == NodeType.APPROVAL:
        return ApprovalConfig(
            approver_ids=_ids(g("approverIds")),
            message=g("message"),
            output_variable=g("outputVariable"),
            approved_branch=g("approvedBranch"),
            rejected_branch=g("rejectedBranch"),
        )
    return TriggerNodeConfig()


def config_to_dict(config: NodeConfig) -> Dict[str, Any]:
    """ Inverse of build_config: typed config back to manifest keys. """
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(config):
        value = getattr(config, f.name)
        if f.name == "params":
            out.update(value)
            continue
        if value is None or value == () or value == {}:
            continue
        if f.name == "conditions":
            value = [dataclasses.asdict(c) for c in value]
        elif f.name == "break_condition":
            value = dataclasses.asdict(value)
        elif isinstance(value, FailureHandling):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        out[_CONFIG_KEYS[f.name]] = value
    return out


def iter_config_strings(config: NodeConfig) -> Iterator[Tuple[str, str]]:
    """ Yield (manifest path, text) for every string inside a typed config. """
    def walk(path: str, value: Any):
        if isinstance(value, str):
            yield path, value
        elif isinstance(value, Mapping):
            for k, v in value.items():
                yield from walk(f"{path}.{k}", v)
        elif isinstance(value, (list, tuple)):
            for i, v in enumerate(value):
                yield from walk(f"{path}[{i}]", v)
        elif dataclasses.is_dataclass(value):
            for f in dataclasses.fields(value):
                yield from walk(f"{path}.{f.name}", getattr(value, f.name))

    for f in dataclasses.fields(config):
        name = "" if f.name == "params" else _CONFIG_KEYS.get(f.name, f.name)
        for path, text in walk(name, getattr(config, f.name)):
            yield path.lstrip("."), text


# -------------------------
# MANIFEST <-> DEFINITION
# -------------------------

def node_from_spec(spec: NodeSpec) -> Node:
    node_type = normalize_node_type(spec.type)
    return Node(
        node_id=spec.node_id,
        type=node_type,
        name=spec.name or "",
        execution_order=spec.execution_order,
        config=build_config(node_type, spec.config or {}),
        is_optional=spec.is_optional,
        retry_limit=spec.retry_limit,
    )


def node_from_dict(raw: Mapping[str, Any]) -> Node:
    return node_from_spec(NodeSpec.model_validate(raw))


def connection_from_dict(raw: Mapping[str, Any]) -> Connection:
    spec = ConnectionSpec.model_validate(raw)
    return Connection(spec.source_node_id, spec.target_node_id, spec.execution_order, spec.conditions)


def build_definition(manifest: WorkflowManifest) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=manifest.id,
        name=manifest.name,
        description=manifest.description or "",
        category=manifest.category or "",
        version=manifest.version,
        triggers=tuple(
            Trigger(t.type, t.module, t.entity_type, t.event_type, dict(t.conditions or {}), t.node_id)
            for t in manifest.triggers
        ),
        nodes=tuple(node_from_spec(n) for n in manifest.nodes),
        connections=tuple(
            Connection(c.source_node_id, c.target_node_id, c.execution_order, c.conditions)
            for c in manifest.connections
        ),
        variables=tuple(
            Variable(v.name, v.type, v.description or "", v.default_value)
            for v in manifest.variables
        ),
    )


def load_workflow(raw: Union[str, bytes, Mapping[str, Any]]) -> WorkflowDefinition:
    """
    Load a WorkflowDefinition from a YAML/JSON string or a mapping.
    No structural validation happens here; see validator.validate_workflow.
    """
    return build_definition(parse_manifest(dict(raw) if isinstance(raw, Mapping) else raw))


def to_manifest(definition: WorkflowDefinition) -> Dict[str, Any]:
    manifest = WorkflowManifest(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        category=definition.category,
        version=definition.version,
        triggers=[
            TriggerSpec(type=t.type, module=t.module, entity_type=t.entity_type,
                        event_type=t.event_type, conditions=dict(t.conditions) or None,
                        node_id=t.node_id)
            for t in definition.triggers
        ],
        nodes=[
            NodeSpec(node_id=n.node_id, type=n.type.value, name=n.name or None,
                     execution_order=n.execution_order, config=config_to_dict(n.config),
                     is_optional=n.is_optional, retry_limit=n.retry_limit)
            for n in definition.nodes
        ],
        connections=[
            ConnectionSpec(source_node_id=c.source_node_id, target_node_id=c.target_node_id,
                           execution_order=c.execution_order, conditions=c.conditions)
            for c in definition.connections
        ],
        variables=[
            VariableSpec(name=v.name, type=v.type, description=v.description or None,
                         default_value=v.default_value)
            for v in definition.variables
        ],
    )
    return dump_manifest(manifest)


# -------------------------
# COMPILATION
# -------------------------

@dataclass
class CompiledWorkflow:
    """ A validated definition plus its precompiled templates and edge index. """
    definition: WorkflowDefinition
    templates: TemplateCache = field(default_factory=TemplateCache)
    nodes: Dict[str, Node] = field(default_factory=dict)
    outgoing: Dict[str, List[Connection]] = field(default_factory=dict)
    # every node a traversal may continue to after node_id, within the same scope
    flow: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.definition.id

    def successors(self, node_id: str) -> List[Connection]:
        return self.outgoing.get(node_id, [])

    def flow_targets(self, node_id: str) -> List[str]:
        return self.flow.get(node_id, [])


def compile_workflow(definition: WorkflowDefinition) -> CompiledWorkflow:
    """ Compile every template and control-flow expression once, ahead of any run. """
    compiled = CompiledWorkflow(definition)
    compiled.nodes = {n.node_id: n for n in definition.nodes}

    order = {n.node_id: i for i, n in enumerate(definition.nodes)}
    for connection in definition.connections:
        compiled.outgoing.setdefault(connection.source_node_id, []).append(connection)
    for edges in compiled.outgoing.values():
        edges.sort(key=lambda c: (c.execution_order, order.get(c.target_node_id, 0)))

    for node in definition.nodes:
        cfg = node.config
        nested = set()
        if isinstance(cfg, LoopConfig):
            nested = {cfg.loop_body_node_id}
        elif isinstance(cfg, ParallelConfig):
            nested = set(cfg.parallel_node_ids)
        targets = [c.target_node_id for c in compiled.successors(node.node_id) if c.target_node_id not in nested]
        if isinstance(cfg, (ConditionConfig, ApprovalConfig)):
            targets += [target for _, target in node.references()]
        compiled.flow[node.node_id] = [t for t in dict.fromkeys(targets) if t in compiled.nodes]

    for node in definition.nodes:
        cfg = node.config
        for _, text in iter_config_strings(cfg):
            compiled.templates.warm(text)
        if isinstance(cfg, ConditionConfig):
            for clause in cfg.conditions:
                compiled.templates.expression(clause.field)
        elif isinstance(cfg, LoopConfig):
            if cfg.data_source:
                compiled.templates.expression(cfg.data_source)
            if cfg.break_condition:
                compiled.templates.expression(cfg.break_condition.field)
    for connection in definition.connections:
        compiled.templates.warm(connection.conditions or {})
    for variable in definition.variables:
        compiled.templates.warm(variable.default_value)
    return compiled
