from ..errors import NodeExecutionError
from .base import BaseNode, NodeContext, NodeOutcome


class CreateRecordNode(BaseNode):

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        fields = self.render(cfg.field_mappings, ctx.env)
        record_id = ctx.call(ctx.gateway.create_record, cfg.model, fields)
        if not record_id:
            raise NodeExecutionError(self.node_id, f"{cfg.model} was not created")
        bindings = {cfg.output_variable: record_id} if cfg.output_variable else {}
        return NodeOutcome(bindings=bindings, result={"model": cfg.model, "recordId": record_id})


class UpdateRecordNode(BaseNode):

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        record_id = self.render(cfg.record_id, ctx.env)
        if record_id in (None, ""):
            raise NodeExecutionError(self.node_id, f"recordId {cfg.record_id!r} resolved to nothing")
        fields = self.render(cfg.field_mappings, ctx.env)
        ctx.call(ctx.gateway.update_record, cfg.model, str(record_id), fields)
        bindings = {cfg.output_variable: record_id} if cfg.output_variable else {}
        return NodeOutcome(bindings=bindings, result={"model": cfg.model, "recordId": record_id})
