from typing import Any, Dict, List

from ..errors import NodeExecutionError
from ..workflow.expressions import MISSING
from .base import BaseNode, NodeContext, NodeOutcome


def _pick(record: Any, fields) -> Any:
    if not isinstance(record, dict):
        return record
    if not fields:
        return dict(record)
    return {f: record.get(f) for f in fields}


class DataTransformNode(BaseNode):
    """
    query:     gateway.query(source, queryFilters)
    aggregate: gateway.aggregate(source, aggregateField, aggregation, queryFilters)
    extract:   pull extractFields out of the record(s) found at `source` in the run
    """

    def execute(self, ctx: NodeContext) -> NodeOutcome:
        cfg = self.config
        operation = (cfg.operation or "").lower()
        filters: Dict[str, Any] = self.render(cfg.query_filters, ctx.env)

        if operation == "query":
            value: Any = ctx.call(ctx.gateway.query, cfg.source, filters)
        elif operation == "aggregate":
            if not cfg.aggregate_field:
                raise NodeExecutionError(self.node_id, "aggregate requires aggregateField")
            value = ctx.call(ctx.gateway.aggregate, cfg.source, cfg.aggregate_field,
                             (cfg.aggregation or "sum").lower(), filters)
        elif operation == "extract":
            value = self._extract(ctx)
        else:
            raise NodeExecutionError(self.node_id, f"Unsupported operation: {cfg.operation}")

        bindings = {cfg.output_variable: value} if cfg.output_variable else {}
        summary = {"operation": operation}
        if isinstance(value, list):
            summary["count"] = len(value)
        return NodeOutcome(bindings=bindings, result=summary)

    def _extract(self, ctx: NodeContext) -> Any:
        cfg = self.config
        if not cfg.source:
            raise NodeExecutionError(self.node_id, "extract requires a source")
        records = self.templates.expression(cfg.source).evaluate(ctx.env)
        if records is MISSING or records is None:
            return None
        if isinstance(records, (list, tuple)):
            extracted: List[Any] = [_pick(r, cfg.extract_fields) for r in records]
            return extracted
        return _pick(records, cfg.extract_fields)
