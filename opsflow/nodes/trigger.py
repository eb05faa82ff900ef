from .base import BaseNode, NodeContext, NodeOutcome


class TriggerNode(BaseNode):
    """ Entry point. The trigger payload is already bound as `payload` when the run starts. """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        return NodeOutcome(result={"payloadKeys": sorted(ctx.env.get("payload") or {})})
