from ..actions.registry import run_action
from ..errors import NodeExecutionError
from .base import BaseNode, NodeContext, NodeOutcome


class ActionNode(BaseNode):
    """ Runs a named action from the action registry. """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        if not cfg.action_type:
            return NodeOutcome(warnings=["Action node has no action type; nothing to do"])
        params = self.render(cfg.params, ctx.env)
        try:
            result = run_action(cfg.action_type, params, ctx)
        except ValueError as e:
            raise NodeExecutionError(self.node_id, str(e)) from e

        bindings = dict(ctx.bindings)
        if cfg.output_variable:
            bindings[cfg.output_variable] = result
        if not isinstance(result, dict):
            result = {"result": result}
        return NodeOutcome(bindings=bindings, result=result)
