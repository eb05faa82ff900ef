"""Tests for trigger matching and dispatch."""

from dataclasses import replace

import pytest

from opsflow.workflow.compiler import load_workflow
from opsflow.workflow.models import Trigger, TriggerKind
from opsflow.workflow.run import RunStatus
from opsflow.workflow.triggers import (
    TriggerDispatcher, matches_entity_event, matches_schedule, trigger_metadata,
)

WON = Trigger("DEAL_STATUS_CHANGED", "CRM", "Deal", "DEAL_STATUS_CHANGED",
              {"field": "status", "operator": "equals", "value": "CLOSED_WON"})
DAILY = Trigger("SCHEDULED_DAILY", "SCHEDULER", "Schedule", "DAILY_CRON",
                {"cronExpression": "0 9 * * *", "timezone": "UTC"})


def test_trigger_kind():
    assert WON.kind == TriggerKind.ENTITY_EVENT
    assert DAILY.kind == TriggerKind.SCHEDULE


def test_entity_event_matching():
    assert matches_entity_event(WON, "CRM", "Deal", "DEAL_STATUS_CHANGED", {"status": "CLOSED_WON"})
    assert matches_entity_event(WON, "crm", "deal", "deal_status_changed", {"status": "CLOSED_WON"})
    assert not matches_entity_event(WON, "CRM", "Deal", "DEAL_STATUS_CHANGED", {"status": "LOST"})
    assert not matches_entity_event(WON, "CRM", "Deal", "DEAL_STATUS_CHANGED", {})
    assert not matches_entity_event(WON, "FINANCE", "Deal", "DEAL_STATUS_CHANGED", {"status": "CLOSED_WON"})
    assert not matches_entity_event(DAILY, "SCHEDULER", "Schedule", "DAILY_CRON", {})


def test_entity_event_payload_prefix_and_changed_fields():
    trigger = Trigger("CONTRACT_UPDATED", "SALES", "Contract", None, {
        "changedFields": ["endDate", "status"],
        "field": "payload.value", "operator": "greater_than", "value": 1000,
    })
    assert matches_entity_event(trigger, "SALES", "Contract", "CONTRACT_UPDATED",
                                {"value": 5000, "changedFields": ["status"]})
    assert not matches_entity_event(trigger, "SALES", "Contract", "CONTRACT_UPDATED",
                                    {"value": 5000, "changedFields": ["notes"]})


def test_schedule_matching():
    assert matches_schedule(DAILY, "0  9 * * *", "utc")
    assert matches_schedule(DAILY, "0 9 * * *", None)
    assert not matches_schedule(DAILY, "0 10 * * *", "UTC")
    assert not matches_schedule(DAILY, "0 9 * * *", "Europe/Paris")
    assert not matches_schedule(WON, "0 9 * * *", "UTC")


def deal_workflow(workflow_id, status):
    return {
        "id": workflow_id,
        "name": workflow_id,
        "triggers": [
            {"type": "DEAL_STATUS_CHANGED", "module": "CRM", "entityType": "Deal",
             "conditions": {"field": "status", "operator": "equals", "value": status}},
            {"type": "DEAL_STATUS_CHANGED", "module": "CRM", "entityType": "Deal"},
        ],
        "nodes": [
            {"nodeId": "t", "type": "TRIGGER", "name": "Deal changed"},
            {"nodeId": "sms", "type": "SMS", "name": "Ping",
             "config": {"message": "{{trigger.type}} {{payload.status}}", "recipientPhone": "555"}},
        ],
        "connections": [{"sourceNodeId": "t", "targetNodeId": "sms"}],
    }


def test_dispatch_entity_event_starts_one_run_per_workflow(engine, gateway):
    engine.register(deal_workflow("won", "CLOSED_WON"))
    dispatcher = TriggerDispatcher(engine)

    runs = dispatcher.on_entity_event("CRM", "Deal", "DEAL_STATUS_CHANGED", {"id": "d1", "status": "CLOSED_WON"})

    assert len(runs) == 1
    assert runs[0].status == RunStatus.COMPLETED
    assert runs[0].trigger["module"] == "CRM"
    assert "receivedAt" in runs[0].trigger
    assert [s["message"] for s in gateway.named("send_sms")] == ["DEAL_STATUS_CHANGED CLOSED_WON"]


def test_dispatch_ignores_other_events(engine, gateway):
    engine.register(deal_workflow("won", "CLOSED_WON"))
    dispatcher = TriggerDispatcher(engine)

    assert dispatcher.on_entity_event("FINANCE", "Invoice", "INVOICE_PAID", {}) == []
    assert gateway.calls == []


def test_dispatch_schedule(engine, gateway):
    engine.register({
        "id": "daily",
        "name": "Daily",
        "triggers": [{"type": "SCHEDULED_DAILY", "conditions": {"cronExpression": "0 9 * * *"}}],
        "nodes": [
            {"nodeId": "t", "type": "TRIGGER", "name": "Tick"},
            {"nodeId": "sms", "type": "SMS", "name": "Ping",
             "config": {"message": "fired {{formatDate(payload.firedAt, '%Y-%m-%d')}}", "recipientPhone": "555"}},
        ],
        "connections": [{"sourceNodeId": "t", "targetNodeId": "sms"}],
    })
    dispatcher = TriggerDispatcher(engine)

    assert dispatcher.on_schedule_fired("0 10 * * *") == []
    runs = dispatcher.on_schedule_fired("0 9 * * *", "UTC", fired_at="2026-05-04T09:00:00Z")

    assert len(runs) == 1
    assert runs[0].trigger_payload["cronExpression"] == "0 9 * * *"
    assert [s["message"] for s in gateway.named("send_sms")] == ["fired 2026-05-04"]


def invoice_workflow(linked):
    triggers = [
        {"type": "INVOICE_CREATED", "module": "FINANCE", "entityType": "Invoice"},
        {"type": "SCHEDULED_DAILY", "conditions": {"cronExpression": "0 9 * * *"}},
    ]
    if linked:
        triggers[0]["nodeId"], triggers[1]["nodeId"] = "on_created", "on_tick"
    return {
        "id": "invoices",
        "name": "Invoices",
        "triggers": triggers,
        "nodes": [
            {"nodeId": "on_created", "type": "TRIGGER", "name": "Invoice created"},
            {"nodeId": "on_tick", "type": "TRIGGER", "name": "Daily tick"},
            {"nodeId": "welcome", "type": "SMS", "name": "Welcome",
             "config": {"message": "created", "recipientPhone": "555"}},
            {"nodeId": "sweep", "type": "SMS", "name": "Sweep",
             "config": {"message": "swept", "recipientPhone": "555"}},
        ],
        "connections": [
            {"sourceNodeId": "on_created", "targetNodeId": "welcome"},
            {"sourceNodeId": "on_tick", "targetNodeId": "sweep"},
        ],
    }


@pytest.mark.parametrize("linked", [True, False])
def test_dispatch_starts_only_from_the_matched_trigger_node(engine, gateway, linked):
    engine.register(invoice_workflow(linked))
    dispatcher = TriggerDispatcher(engine)

    [run] = dispatcher.on_entity_event("FINANCE", "Invoice", "INVOICE_CREATED", {"id": "inv-1"})

    assert run.trigger["nodeIds"] == ["on_created"]
    assert [s["message"] for s in gateway.named("send_sms")] == ["created"]
    assert run.step("on_tick") is None

    [run] = dispatcher.on_schedule_fired("0 9 * * *")

    assert run.trigger["nodeIds"] == ["on_tick"]
    assert [s["message"] for s in gateway.named("send_sms")] == ["created", "swept"]


def test_entry_nodes():
    definition = load_workflow(invoice_workflow(linked=False))
    created, daily = definition.triggers
    assert definition.entry_nodes(created) == ("on_created",)
    assert definition.entry_nodes(daily) == ("on_tick",)

    lone = replace(definition, triggers=(created,))
    assert lone.entry_nodes(created) == ("on_created", "on_tick")

    linked = replace(definition, triggers=(replace(created, node_id="on_tick"), daily))
    assert linked.entry_nodes(linked.triggers[0]) == ("on_tick",)
    assert linked.entry_nodes(daily) == ("on_created",)

    shared = replace(definition, nodes=tuple(n for n in definition.nodes if n.node_id != "on_tick"))
    assert shared.entry_nodes(created) == ("on_created",)
    assert shared.entry_nodes(daily) == ("on_created",)


def test_trigger_metadata_carries_node_id():
    meta = trigger_metadata(Trigger("INVOICE_CREATED", node_id="on_created"), receivedAt="now")
    assert meta["nodeId"] == "on_created"
    assert meta["kind"] == "entity_event"
    assert meta["receivedAt"] == "now"
