"""Tests for run persistence."""

from datetime import timedelta
from decimal import Decimal

import pytest

from opsflow.errors import RunNotFoundError
from opsflow.workflow.executor import WorkflowEngine
from opsflow.workflow.run import (
    Run, RunStatus, StepRecord, StepStatus, Suspension, SuspensionKind, utcnow,
)


def make_run(run_id="run-1", workflow_id="wf", wake_in=None, status=RunStatus.RUNNING):
    run = Run(run_id=run_id, workflow_id=workflow_id, trigger_payload={"id": 7}, status=status)
    run.variables = {"payload": {"id": 7}, "when": utcnow(), "tags": ["a", "b"]}
    run.steps["start"] = StepRecord("start", "start", status=StepStatus.SUCCEEDED, attempts=1,
                                    started_at=utcnow(), finished_at=utcnow())
    if wake_in is not None:
        run.status = RunStatus.SUSPENDED
        token = f"tok-{run_id}"
        run.suspensions[token] = Suspension(token, "wait", "wait", SuspensionKind.DELAY,
                                            wake_at=utcnow() + wake_in)
    return run


@pytest.fixture(params=["memory", "sql"])
def any_store(request, store, sql_store):
    return store if request.param == "memory" else sql_store


def test_save_and_get(any_store):
    run = make_run()
    any_store.save(run)

    loaded = any_store.get("run-1")

    assert loaded.run_id == "run-1"
    assert loaded.status == RunStatus.RUNNING
    assert loaded.trigger_payload == {"id": 7}
    assert loaded.steps["start"].status == StepStatus.SUCCEEDED
    assert loaded.steps["start"].finished_at is not None


def test_get_missing_run(any_store):
    with pytest.raises(RunNotFoundError):
        any_store.get("nope")


def test_save_overwrites(any_store):
    run = make_run()
    any_store.save(run)
    run.status = RunStatus.COMPLETED
    any_store.save(run)
    assert any_store.get("run-1").status == RunStatus.COMPLETED


def test_find_by_token(any_store):
    run = make_run(wake_in=timedelta(days=1))
    any_store.save(run)

    found = any_store.find_by_token("tok-run-1")

    assert found.run_id == "run-1"
    assert found.suspensions["tok-run-1"].kind == SuspensionKind.DELAY
    assert any_store.find_by_token("tok-unknown") is None


def test_consumed_token_is_gone(any_store):
    run = make_run(wake_in=timedelta(days=1))
    any_store.save(run)
    run.suspensions.clear()
    any_store.save(run)
    assert any_store.find_by_token("tok-run-1") is None


def test_due_returns_only_elapsed_delays(any_store):
    any_store.save(make_run("soon", wake_in=timedelta(hours=1)))
    any_store.save(make_run("later", wake_in=timedelta(days=7)))
    any_store.save(make_run("idle"))

    assert any_store.due(utcnow()) == []
    assert any_store.due(utcnow() + timedelta(days=1)) == [("soon", "tok-soon")]
    assert [run_id for run_id, _ in any_store.due(utcnow() + timedelta(days=8))] == ["soon", "later"]


def test_list_runs_filters(any_store):
    any_store.save(make_run("a", workflow_id="one"))
    any_store.save(make_run("b", workflow_id="two", status=RunStatus.COMPLETED))
    any_store.save(make_run("c", workflow_id="two"))

    assert {r.run_id for r in any_store.list_runs()} == {"a", "b", "c"}
    assert {r.run_id for r in any_store.list_runs(workflow_id="two")} == {"b", "c"}
    assert [r.run_id for r in any_store.list_runs(status=RunStatus.COMPLETED)] == ["b"]


def test_memory_store_returns_copies(store):
    run = make_run()
    store.save(run)
    run.status = RunStatus.FAILED
    assert store.get("run-1").status == RunStatus.RUNNING


def test_run_dict_round_trip():
    run = make_run(wake_in=timedelta(hours=2))
    restored = Run.from_dict(run.to_dict())
    assert restored == run


def test_sql_store_keeps_timestamps_aware(sql_store):
    run = make_run(wake_in=timedelta(hours=2))
    sql_store.save(run)

    loaded = sql_store.get("run-1")

    assert loaded.updated_at.tzinfo is not None
    assert loaded.suspensions["tok-run-1"].wake_at.tzinfo is not None
    assert sql_store.due(utcnow() + timedelta(hours=3)) == [("run-1", "tok-run-1")]


def test_decimal_payload_survives_sql_store(gateway, sql_store, test_settings):
    engine = WorkflowEngine(gateway, store=sql_store, settings=test_settings)
    engine.register({
        "id": "invoice",
        "name": "Invoice",
        "triggers": [{"type": "INVOICE_CREATED", "module": "FINANCE", "entityType": "Invoice"}],
        "nodes": [
            {"nodeId": "t", "type": "TRIGGER", "name": "Created"},
            {"nodeId": "big", "type": "CONDITION", "name": "Large invoice",
             "config": {"conditions": [{"field": "payload.amount", "operator": "greater_than", "value": 10}]}},
            {"nodeId": "sms", "type": "SMS", "name": "Ping",
             "config": {"message": "Amount {{payload.amount}}", "recipientPhone": "555"}},
        ],
        "connections": [{"sourceNodeId": "t", "targetNodeId": "big"},
                        {"sourceNodeId": "big", "targetNodeId": "sms"}],
    })
    try:
        run = engine.start("invoice", {"amount": Decimal("10.50")})
    finally:
        engine.close()

    assert run.status == RunStatus.COMPLETED
    assert [s["message"] for s in gateway.named("send_sms")] == ["Amount 10.50"]
    assert sql_store.get(run.run_id).trigger_payload["amount"] == "10.50"
