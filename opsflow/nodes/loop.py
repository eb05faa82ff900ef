import logging

from ..config import settings
from ..errors import NodeExecutionError
from .base import BaseNode, NodeContext, NodeOutcome

logger = logging.getLogger(__name__)


class LoopNode(BaseNode):
    """
    Resolves the collection to iterate. The engine runs the loop body once per
    returned item, binding it to `itemVariable` along with `loopIndex` and
    `loopCount`, and collects each iteration's bindings into `outputVariable`.
    """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        collection = self.require(cfg.data_source, ctx.env)
        if collection is None:
            collection = []
        if isinstance(collection, dict):
            collection = [collection]
        if not isinstance(collection, (list, tuple)):
            raise NodeExecutionError(self.node_id, f"dataSource {cfg.data_source!r} is not a list")

        limit = cfg.max_iterations if cfg.max_iterations is not None else settings.default_max_iterations
        items = list(collection)
        warnings = []
        if len(items) > limit:
            warnings.append(f"Loop truncated to {limit} of {len(items)} items")
            logger.warning("Loop %s truncated to %d of %d items", self.node_id, limit, len(items))
            items = items[:limit]

        return NodeOutcome(items=items, warnings=warnings, result={"count": len(items)})
