""" Email and SMS delivery nodes. """
from ..errors import NodeExecutionError
from ..gateway import DeliveryResult
from .base import BaseNode, NodeContext, NodeOutcome


def _delivered(node_id: str, result: DeliveryResult) -> NodeOutcome:
    if not result.delivered:
        raise NodeExecutionError(node_id, result.error or "delivery failed")
    return NodeOutcome(result={"messageId": result.message_id})


class EmailNode(BaseNode):

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        recipient = self.render(cfg.recipient_email, ctx.env) or None
        if recipient is None and not cfg.recipient_type:
            raise NodeExecutionError(self.node_id, "email has no recipient")
        subject = self.render(cfg.subject, ctx.env)
        body = self.render(cfg.html_body, ctx.env)
        result = ctx.call(ctx.gateway.send_email, recipient, subject, body, cfg.recipient_type)
        return _delivered(self.node_id, result)


class SmsNode(BaseNode):

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        recipient = self.render(cfg.recipient_phone, ctx.env) or None
        if recipient is None:
            raise NodeExecutionError(self.node_id, "sms has no recipient")
        message = self.render(cfg.message, ctx.env)
        return _delivered(self.node_id, ctx.call(ctx.gateway.send_sms, recipient, message))
