""" Trigger ingestion: match incoming events against registered workflows and start runs. """
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from .guards import evaluate_guard
from .helpers import to_datetime
from .models import Trigger, TriggerKind, WorkflowDefinition
from .run import Run, utcnow

logger = logging.getLogger(__name__)


def _same(expected: Optional[str], actual: Optional[str]) -> bool:
    """ Unset expectations match anything; comparison ignores case. """
    if not expected:
        return True
    return (actual or "").strip().lower() == expected.strip().lower()


def _normalize_cron(expression: Optional[str]) -> str:
    return " ".join((expression or "").split())


def trigger_metadata(trigger: Trigger, **extra) -> Dict[str, Any]:
    meta = {
        "type": trigger.type,
        "kind": trigger.kind.value,
        "module": trigger.module,
        "entityType": trigger.entity_type,
        "eventType": trigger.event_type,
        "nodeId": trigger.node_id,
    }
    meta.update(extra)
    return meta


def matches_entity_event(trigger: Trigger, module: str, entity_type: str, event_type: str,
                         payload: Mapping[str, Any]) -> bool:
    if trigger.kind != TriggerKind.ENTITY_EVENT:
        return False
    if not (_same(trigger.module, module) and _same(trigger.entity_type, entity_type)):
        return False
    if not _same(trigger.event_type or trigger.type, event_type):
        return False

    conditions = dict(trigger.conditions or {})
    wanted = conditions.pop("changedFields", None)
    if wanted:
        wanted = {wanted} if isinstance(wanted, str) else set(wanted)
        if not wanted & set(payload.get("changedFields") or ()):
            return False
    # trigger conditions name payload fields directly ("status"), or via "payload.status"
    env = dict(payload)
    env["payload"] = payload
    return evaluate_guard(conditions, env, strict=False)


def matches_schedule(trigger: Trigger, cron_expression: str, timezone: Optional[str]) -> bool:
    if trigger.kind != TriggerKind.SCHEDULE:
        return False
    conditions = trigger.conditions or {}
    if _normalize_cron(conditions.get("cronExpression")) != _normalize_cron(cron_expression):
        return False
    return _same(conditions.get("timezone") or "UTC", timezone or "UTC")


class TriggerDispatcher:
    """
    Starts one run per matching workflow. When several of a workflow's
    triggers match the same event the run starts from each of their trigger
    nodes; trigger nodes owned by triggers that did not match stay idle.
    """

    def __init__(self, engine):
        self.engine = engine

    def _definitions(self) -> List[WorkflowDefinition]:
        return self.engine.workflows

    def _start(self, definition: WorkflowDefinition, matched: List[Trigger], payload: Dict[str, Any],
               **extra) -> Run:
        node_ids: List[str] = []
        for trigger in matched:
            node_ids.extend(n for n in definition.entry_nodes(trigger) if n not in node_ids)
        meta = trigger_metadata(matched[0], nodeIds=node_ids, **extra)
        return self.engine.start(definition.id, payload, trigger=meta)

    def on_entity_event(self, module: str, entity_type: str, event_type: str,
                        payload: Optional[Mapping[str, Any]] = None) -> List[Run]:
        payload = dict(payload or {})
        runs = []
        for definition in self._definitions():
            matched = [t for t in definition.triggers
                       if matches_entity_event(t, module, entity_type, event_type, payload)]
            if not matched:
                logger.debug("Event %s/%s/%s did not match workflow %s",
                             module, entity_type, event_type, definition.id)
                continue
            logger.info("Event %s/%s/%s matched workflow %s", module, entity_type, event_type, definition.id)
            runs.append(self._start(definition, matched, payload, receivedAt=utcnow().isoformat()))
        return runs

    def on_schedule_fired(self, cron_expression: str, timezone: Optional[str] = "UTC",
                          fired_at: Union[datetime, str, None] = None) -> List[Run]:
        fired_at = to_datetime(fired_at) if fired_at is not None else utcnow()
        payload = {
            "cronExpression": cron_expression,
            "timezone": timezone or "UTC",
            "firedAt": fired_at.isoformat(),
        }
        runs = []
        for definition in self._definitions():
            matched = [t for t in definition.triggers if matches_schedule(t, cron_expression, timezone)]
            if matched:
                logger.info("Schedule %r (%s) matched workflow %s", cron_expression, timezone, definition.id)
                runs.append(self._start(definition, matched, payload, firedAt=payload["firedAt"]))
        return runs
