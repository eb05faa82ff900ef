from .base import BaseNode, NodeContext, NodeOutcome


class ParallelNode(BaseNode):
    """ Fan-out marker; the engine runs the branches and records the rendezvous. """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        return NodeOutcome(result={
            "branches": list(cfg.parallel_node_ids),
            "failureHandling": cfg.failure_handling.value,
        })
