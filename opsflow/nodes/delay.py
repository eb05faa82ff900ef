import logging
from datetime import timedelta

from ..errors import NodeExecutionError
from ..workflow.helpers import to_datetime
from ..workflow.run import SuspensionKind
from .base import BaseNode, NodeContext, NodeOutcome, SuspendRequest

logger = logging.getLogger(__name__)


class DelayNode(BaseNode):
    """
    Suspends the run until `delayUntil` (a resolved timestamp) or for `delayMs`.
    A wake time already in the past passes straight through.
    """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        if cfg.delay_until:
            raw = self.render(cfg.delay_until, ctx.env)
            try:
                wake_at = to_datetime(raw)
            except (ValueError, TypeError, OverflowError) as e:
                raise NodeExecutionError(self.node_id, f"delayUntil {raw!r} is not a timestamp") from e
        elif cfg.delay_ms is not None:
            wake_at = ctx.now + timedelta(milliseconds=cfg.delay_ms)
        else:
            return NodeOutcome(warnings=["Delay node has no delay; passing through"])

        if wake_at <= ctx.now:
            logger.debug("Delay %s wake time %s already passed", self.node_id, wake_at)
            return NodeOutcome(result={"wakeAt": wake_at.isoformat()})
        return NodeOutcome(suspend=SuspendRequest(SuspensionKind.DELAY, wake_at=wake_at))
