from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..gateway import ActionGateway
from ..workflow.context import ExecutionContext
from ..workflow.expressions import TemplateCache, resolve_required, resolve_value
from ..workflow.models import Node
from ..workflow.run import StepRecord, SuspensionKind


@dataclass(frozen=True)
class SuspendRequest:
    kind: SuspensionKind
    wake_at: Optional[datetime] = None
    approver_ids: Tuple[str, ...] = ()
    message: Optional[str] = None


@dataclass
class NodeOutcome:
    """ What a node produced; recorded on its step so a replay can reuse it. """
    bindings: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    passed: Optional[bool] = None
    items: Optional[List[Any]] = None
    warnings: List[str] = field(default_factory=list)
    suspend: Optional[SuspendRequest] = None

    @classmethod
    def from_record(cls, record: StepRecord) -> "NodeOutcome":
        return cls(
            bindings=dict(record.bindings),
            result=dict(record.result),
            passed=record.passed,
            items=list(record.items) if record.items is not None else None,
            warnings=list(record.warnings),
        )


@dataclass
class NodeContext:
    env: ExecutionContext
    gateway: ActionGateway
    run_id: str
    step_key: str
    now: datetime
    invoke: Callable[..., Any]
    bindings: Dict[str, Any] = field(default_factory=dict)

    def bind(self, name: str, value: Any) -> None:
        self.bindings[name] = value

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """ Call the gateway, bounded by the action timeout. """
        return self.invoke(fn, *args, **kwargs)


class BaseNode(ABC):
    """ Abstract base class for all node handlers. """

    def __init__(self, node: Node, templates: TemplateCache):
        self.node = node
        self.config = node.config
        self.templates = templates

    @property
    def node_id(self) -> str:
        return self.node.node_id

    def render(self, value: Any, env: ExecutionContext) -> Any:
        """ Resolve templates in a config value; missing references become empty. """
        return resolve_value(value, env, self.templates)

    def require(self, expression: str, env: ExecutionContext) -> Any:
        """ Resolve a control-flow expression; a missing reference is fatal. """
        return resolve_required(expression, env, self.node_id, self.templates)

    @abstractmethod
    def execute(self, ctx: NodeContext) -> NodeOutcome:
        """
        Run the node once. Raise on failure; the engine owns retries and
        the optional-node policy.
        """
        pass
