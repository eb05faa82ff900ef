""" Data models for workflow representation """

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class NodeType(str, Enum):
    TRIGGER = "TRIGGER"
    CONDITION = "CONDITION"
    LOOP = "LOOP"
    PARALLEL = "PARALLEL"
    DATA_TRANSFORM = "DATA_TRANSFORM"
    CREATE_RECORD = "CREATE_RECORD"
    UPDATE_RECORD = "UPDATE_RECORD"
    EMAIL = "EMAIL"
    SMS = "SMS"
    ACTION = "ACTION"
    DELAY = "DELAY"
    APPROVAL = "APPROVAL"


class TriggerKind(str, Enum):
    ENTITY_EVENT = "entity_event"
    SCHEDULE = "schedule"


class FailureHandling(str, Enum):
    CONTINUE_ON_FAILURE = "continue_on_failure"
    FAIL_FAST = "fail_fast"


# -------------------------
# TYPED NODE CONFIGURATION
# -------------------------

@dataclass(frozen=True)
class ConditionClause:
    field: str
    operator: str = "equals"
    value: Any = None


@dataclass(frozen=True)
class TriggerNodeConfig:
    pass


@dataclass(frozen=True)
class ConditionConfig:
    conditions: Tuple[ConditionClause, ...] = ()
    logical_operator: str = "AND"
    true_branch: Optional[str] = None
    false_branch: Optional[str] = None

    @property
    def has_branches(self) -> bool:
        return self.true_branch is not None or self.false_branch is not None


@dataclass(frozen=True)
class LoopConfig:
    data_source: Optional[str] = None
    item_variable: str = "item"
    max_iterations: Optional[int] = None
    loop_body_node_id: Optional[str] = None
    output_variable: Optional[str] = None
    break_condition: Optional[ConditionClause] = None


@dataclass(frozen=True)
class ParallelConfig:
    parallel_node_ids: Tuple[str, ...] = ()
    failure_handling: FailureHandling = FailureHandling.FAIL_FAST


@dataclass(frozen=True)
class DataTransformConfig:
    operation: Optional[str] = None       # query | aggregate | extract
    source: Optional[str] = None
    query_filters: Dict[str, Any] = field(default_factory=dict)
    aggregation: Optional[str] = None
    aggregate_field: Optional[str] = None
    extract_fields: Tuple[str, ...] = ()
    output_variable: Optional[str] = None


@dataclass(frozen=True)
class CreateRecordConfig:
    model: Optional[str] = None
    field_mappings: Dict[str, Any] = field(default_factory=dict)
    output_variable: Optional[str] = None


@dataclass(frozen=True)
class UpdateRecordConfig:
    model: Optional[str] = None
    record_id: Optional[str] = None
    field_mappings: Dict[str, Any] = field(default_factory=dict)
    output_variable: Optional[str] = None


@dataclass(frozen=True)
class EmailConfig:
    subject: Optional[str] = None
    html_body: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_type: Optional[str] = None


@dataclass(frozen=True)
class SmsConfig:
    message: Optional[str] = None
    recipient_phone: Optional[str] = None


@dataclass(frozen=True)
class ActionConfig:
    action_type: Optional[str] = None
    output_variable: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DelayConfig:
    delay_until: Optional[str] = None
    delay_ms: Optional[int] = None
    delay_type: Optional[str] = None      # until_date | duration


@dataclass(frozen=True)
class ApprovalConfig:
    approver_ids: Tuple[str, ...] = ()
    message: Optional[str] = None
    output_variable: Optional[str] = None
    approved_branch: Optional[str] = None
    rejected_branch: Optional[str] = None


NodeConfig = Union[
    TriggerNodeConfig, ConditionConfig, LoopConfig, ParallelConfig,
    DataTransformConfig, CreateRecordConfig, UpdateRecordConfig, EmailConfig,
    SmsConfig, ActionConfig, DelayConfig, ApprovalConfig,
]

CONFIG_TYPES = {
    NodeType.TRIGGER: TriggerNodeConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.PARALLEL: ParallelConfig,
    NodeType.DATA_TRANSFORM: DataTransformConfig,
    NodeType.CREATE_RECORD: CreateRecordConfig,
    NodeType.UPDATE_RECORD: UpdateRecordConfig,
    NodeType.EMAIL: EmailConfig,
    NodeType.SMS: SmsConfig,
    NodeType.ACTION: ActionConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.APPROVAL: ApprovalConfig,
}


# -------------------------
# GRAPH
# -------------------------

@dataclass(frozen=True)
class Node:
    node_id: str
    type: NodeType
    name: str = ""
    execution_order: int = 0
    config: NodeConfig = field(default_factory=TriggerNodeConfig)
    is_optional: bool = False
    retry_limit: Optional[int] = None

    def references(self) -> Tuple[Tuple[str, str], ...]:
        """ Node ids embedded in the configuration, as (field, target) pairs. """
        cfg = self.config
        refs = []
        if isinstance(cfg, ConditionConfig):
            refs += [("trueBranch", cfg.true_branch), ("falseBranch", cfg.false_branch)]
        elif isinstance(cfg, LoopConfig):
            refs.append(("loopBodyNodeId", cfg.loop_body_node_id))
        elif isinstance(cfg, ParallelConfig):
            refs += [("parallelNodeIds", target) for target in cfg.parallel_node_ids]
        elif isinstance(cfg, ApprovalConfig):
            refs += [("approvedBranch", cfg.approved_branch), ("rejectedBranch", cfg.rejected_branch)]
        return tuple((name, target) for name, target in refs if target)


@dataclass(frozen=True)
class Connection:
    source_node_id: str
    target_node_id: str
    execution_order: int = 0
    conditions: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Variable:
    name: str
    type: str = "string"
    description: str = ""
    default_value: Any = None


@dataclass(frozen=True)
class Trigger:
    type: str
    module: Optional[str] = None
    entity_type: Optional[str] = None
    event_type: Optional[str] = None
    conditions: Dict[str, Any] = field(default_factory=dict)
    node_id: Optional[str] = None

    @property
    def kind(self) -> TriggerKind:
        if self.type.upper().startswith("SCHEDULED") or "cronExpression" in self.conditions:
            return TriggerKind.SCHEDULE
        return TriggerKind.ENTITY_EVENT


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    description: str = ""
    category: str = ""
    version: int = 1
    triggers: Tuple[Trigger, ...] = ()
    nodes: Tuple[Node, ...] = ()
    connections: Tuple[Connection, ...] = ()
    variables: Tuple[Variable, ...] = ()

    def node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise KeyError(node_id)

    @property
    def trigger_nodes(self) -> Tuple[Node, ...]:
        return tuple(n for n in self.nodes if n.type == NodeType.TRIGGER)

    def entry_nodes(self, trigger: Trigger) -> Tuple[str, ...]:
        """
        Trigger nodes a run started by `trigger` begins from. An explicit
        nodeId wins. When unlinked triggers and unclaimed trigger nodes come
        in equal numbers they pair up in declaration order; otherwise every
        unlinked trigger starts from all unclaimed trigger nodes.
        """
        if trigger.node_id:
            return (trigger.node_id,)
        claimed = {t.node_id for t in self.triggers if t.node_id}
        free_nodes = [n.node_id for n in self.trigger_nodes if n.node_id not in claimed]
        unlinked = [t for t in self.triggers if not t.node_id]
        if len(unlinked) != len(free_nodes) or trigger not in unlinked:
            return tuple(free_nodes)
        return (free_nodes[unlinked.index(trigger)],)
