from ..errors import NodeExecutionError
from ..workflow.run import ApprovalDecision, SuspensionKind
from .base import BaseNode, NodeContext, NodeOutcome, SuspendRequest


class ApprovalNode(BaseNode):
    """ Suspends until one of the declared approvers decides. """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        if not cfg.approver_ids:
            raise NodeExecutionError(self.node_id, "no approvers declared")
        approvers = tuple(str(a) for a in self.render(list(cfg.approver_ids), ctx.env) if a)
        message = self.render(cfg.message, ctx.env) if cfg.message else None
        return NodeOutcome(suspend=SuspendRequest(SuspensionKind.APPROVAL, approver_ids=approvers, message=message))

    def decide(self, decision: ApprovalDecision) -> NodeOutcome:
        """ Outcome recorded when the run is resumed with a decision. """
        value = {"approved": decision.approved, "approverId": decision.approver_id, "comment": decision.comment}
        bindings = {self.config.output_variable: value} if self.config.output_variable else {}
        return NodeOutcome(bindings=bindings, passed=decision.approved, result=value)
