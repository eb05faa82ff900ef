from ..workflow.guards import evaluate_clauses
from .base import BaseNode, NodeContext, NodeOutcome


class ConditionNode(BaseNode):
    """ Evaluates its clauses; the engine routes on `passed`. """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        passed = evaluate_clauses(cfg.conditions, ctx.env, cfg.logical_operator,
                                  strict=True, node_id=self.node_id, cache=self.templates)
        branch = cfg.true_branch if passed else cfg.false_branch
        return NodeOutcome(passed=passed, result={"branch": branch})
