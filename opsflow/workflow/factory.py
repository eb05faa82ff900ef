""" Factory for creating node handlers based on node type. """
from typing import Dict, Type

from ..nodes.action import ActionNode
from ..nodes.approval import ApprovalNode
from ..nodes.base import BaseNode
from ..nodes.condition import ConditionNode
from ..nodes.delay import DelayNode
from ..nodes.loop import LoopNode
from ..nodes.notify import EmailNode, SmsNode
from ..nodes.parallel import ParallelNode
from ..nodes.records import CreateRecordNode, UpdateRecordNode
from ..nodes.transform import DataTransformNode
from ..nodes.trigger import TriggerNode
from .expressions import TemplateCache
from .models import Node, NodeType

_HANDLER_MAP: Dict[NodeType, Type[BaseNode]] = {
    NodeType.TRIGGER: TriggerNode,
    NodeType.CONDITION: ConditionNode,
    NodeType.LOOP: LoopNode,
    NodeType.PARALLEL: ParallelNode,
    NodeType.DATA_TRANSFORM: DataTransformNode,
    NodeType.CREATE_RECORD: CreateRecordNode,
    NodeType.UPDATE_RECORD: UpdateRecordNode,
    NodeType.EMAIL: EmailNode,
    NodeType.SMS: SmsNode,
    NodeType.ACTION: ActionNode,
    NodeType.DELAY: DelayNode,
    NodeType.APPROVAL: ApprovalNode,
}


def make_handler(node: Node, templates: TemplateCache) -> BaseNode:
    cls = _HANDLER_MAP.get(node.type)
    if not cls:
        raise ValueError(f"Unsupported node type: {node.type}")
    return cls(node, templates)
