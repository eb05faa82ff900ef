"""Tests for the built-in workflow templates."""

from datetime import timedelta

import pytest

from opsflow.errors import UnknownWorkflowError
from opsflow.workflow.catalog import (
    get_template, get_template_categories, get_templates_by_category, list_templates,
)
from opsflow.workflow.helpers import to_datetime
from opsflow.workflow.run import RunStatus, StepStatus, utcnow
from opsflow.workflow.triggers import TriggerDispatcher

TEMPLATE_IDS = {
    "invoice-lifecycle", "contract-renewal-reminder", "project-health-monitor", "lead-to-client-auto-setup",
    "project-kickoff-pack", "retainer-recurring-invoice", "task-reminder-escalation",
}


def test_catalog_lists_builtin_templates():
    assert {t.id for t in list_templates()} == TEMPLATE_IDS
    assert get_template("invoice-lifecycle").name == "Invoice Lifecycle Automation"
    assert get_template_categories() == ["CRM", "Finance", "Projects", "Sales"]
    assert [t.id for t in get_templates_by_category("finance")] == ["invoice-lifecycle", "retainer-recurring-invoice"]
    with pytest.raises(UnknownWorkflowError):
        get_template("does-not-exist")


@pytest.mark.parametrize("template_id", sorted(TEMPLATE_IDS))
def test_templates_register(engine, template_id):
    definition = engine.register(get_template(template_id))
    assert engine.get_workflow(template_id) is definition


def invoice_payload(due):
    return {
        "id": "inv-1", "status": "SENT", "invoiceNumber": "INV-001", "customerName": "Ada Lovelace",
        "customerEmail": "ada@example.com", "issueDate": "2026-01-01T00:00:00Z", "dueDate": due.isoformat(),
        "currency": "EUR", "totalAmount": 1200,
    }


def test_invoice_lifecycle_overdue_path(engine, gateway):
    gateway.action_results["create_payment_link"] = "https://pay.example.com/inv-1"
    gateway.query_results["Invoice"] = [{"id": "inv-1", "status": "SENT"}]
    engine.register(get_template("invoice-lifecycle"))

    [run] = TriggerDispatcher(engine).on_entity_event(
        "FINANCE", "Invoice", "INVOICE_STATUS_CHANGED", invoice_payload(utcnow() - timedelta(days=2)))

    assert run.status == RunStatus.SUSPENDED
    assert run.cursor == "delay-3"
    subjects = [e["subject"] for e in gateway.emails]
    assert subjects == [
        "Invoice INV-001 from Our Team",
        "Payment Reminder: Invoice INV-001 Due Soon",
        "OVERDUE: Invoice INV-001 Payment Required",
    ]
    assert "https://pay.example.com/inv-1" in gateway.emails[0]["body"]
    assert "overdue\nby 2 days" in gateway.emails[2]["body"]
    assert run.variables["daysOverdue"] == 2

    [resumed] = engine.wake_due(utcnow() + timedelta(days=8))

    assert resumed.status == RunStatus.COMPLETED
    assert [e["subject"] for e in gateway.emails][3:] == [
        "URGENT: Invoice INV-001 - 7 Days Overdue",
        "Action Required: Invoice INV-001 - 7 Days Overdue",
    ]
    assert gateway.emails[4]["recipient_type"] == "account_manager"


def test_invoice_lifecycle_stops_when_paid(engine, gateway):
    gateway.query_results["Invoice"] = [{"id": "inv-1", "status": "PAID"}]
    engine.register(get_template("invoice-lifecycle"))

    run = engine.start("invoice-lifecycle", invoice_payload(utcnow() + timedelta(days=10)))

    assert run.status == RunStatus.SUSPENDED
    assert run.cursor == "delay-1"
    [suspension] = run.suspensions.values()
    expected = utcnow() + timedelta(days=7)
    assert abs((suspension.wake_at - expected).total_seconds()) < 60

    resumed = engine.resume(suspension.token, force=True)

    assert resumed.status == RunStatus.COMPLETED
    assert len(gateway.emails) == 1
    assert resumed.step("condition-2").passed is False


def test_invoice_lifecycle_ignores_draft(engine, gateway):
    engine.register(get_template("invoice-lifecycle"))
    payload = dict(invoice_payload(utcnow()), status="DRAFT")

    run = engine.start("invoice-lifecycle", payload)

    assert run.status == RunStatus.COMPLETED
    assert gateway.calls == []


def test_invoice_payment_link_failure_is_optional(engine, gateway):
    gateway.fail["create_payment_link"] = 1
    gateway.query_results["Invoice"] = [{"id": "inv-1", "status": "PAID"}]
    engine.register(get_template("invoice-lifecycle"))

    run = engine.start("invoice-lifecycle", invoice_payload(utcnow() - timedelta(days=5)))

    assert run.step("create-payment-link-1").status == StepStatus.FAILED
    assert gateway.emails[0]["subject"] == "Invoice INV-001 from Our Team"
    assert "Pay Invoice Online" not in gateway.emails[0]["body"]
    assert run.status == RunStatus.COMPLETED


def contracts_until(contracts):
    def query(filters):
        limit = to_datetime(filters["endDate"]["lte"])
        return [c for c in contracts if to_datetime(c["endDate"]) <= limit]
    return query


def test_contract_renewal_reminder(engine, gateway):
    contracts = [
        {"id": "c1", "name": "Support", "endDate": (utcnow() + timedelta(days=20)).isoformat(),
         "organizationId": "org", "accountManagerId": "u1", "customer": {"firstName": "Ada", "lastName": "L"}},
        {"id": "c2", "name": "Hosting", "endDate": (utcnow() + timedelta(days=5)).isoformat(),
         "organizationId": "org", "accountManagerId": "u2", "accountManager": {"name": "Grace"}},
    ]
    gateway.query_results["contracts"] = contracts_until(contracts)
    engine.register(get_template("contract-renewal-reminder"))

    [run] = TriggerDispatcher(engine).on_schedule_fired("0 10 * * *", "UTC")

    assert run.status == RunStatus.COMPLETED
    assert [c["fields"]["title"] for c in gateway.named("create_record")] == [
        "Contract Renewal: Support", "Contract Renewal: Hosting"]
    assert [c["record_id"] for c in gateway.named("update_record")] == ["c1", "c2"]
    assert [e["subject"] for e in gateway.emails] == [
        "Contract Renewal Required: Support",
        "Contract Renewal Required: Hosting",
        "URGENT: Contract Expires in 14 Days - Hosting",
        "CRITICAL: Contract Expires in 7 Days - Hosting",
    ]
    assert "Grace" in gateway.emails[3]["body"]
    assert "loop-1[1]/update-contract-1" in run.steps


def test_project_health_monitor(engine, gateway):
    now = utcnow()
    projects = [
        {"id": "p1", "name": "Apollo", "status": "IN_PROGRESS", "budget": 1000, "currency": "USD",
         "lastActivityDate": (now - timedelta(days=30)).isoformat()},
        {"id": "p2", "name": "Gemini", "status": "IN_PROGRESS", "budget": 1000, "currency": "USD",
         "lastActivityDate": (now - timedelta(days=1)).isoformat()},
    ]
    gateway.query_results.update({"projects": projects, "tasks": [], "milestones": []})
    gateway.aggregate_results[("expenses", "amount", "sum")] = 100
    engine.register(get_template("project-health-monitor"))

    [run] = TriggerDispatcher(engine).on_schedule_fired("0 8 * * *")

    assert run.status == RunStatus.COMPLETED
    assert [e["subject"] for e in gateway.emails] == ["Project Health Alert: Apollo"]
    assert "No activity recorded" in gateway.emails[0]["body"]
    assert run.steps["loop-1[0]/parallel-1"].result["branchStatus"]["check-stale-1"] == "succeeded"
    assert run.steps["loop-1[1]/condition-1"].passed is False


def test_project_health_monitor_tolerates_failed_check(engine, gateway):
    projects = [{"id": "p1", "name": "Apollo", "status": "IN_PROGRESS", "budget": 1000, "currency": "USD",
                 "lastActivityDate": utcnow().isoformat()}]
    gateway.query_results.update({"projects": projects, "tasks": [{"id": "t1"}], "milestones": []})
    gateway.fail["milestones"] = 1
    engine.register(get_template("project-health-monitor"))

    [run] = TriggerDispatcher(engine).on_schedule_fired("0 8 * * *")

    parallel = run.steps["loop-1[0]/parallel-1"]
    assert parallel.partial_failure is True
    assert run.status == RunStatus.COMPLETED
    assert "1 task(s) are overdue" in gateway.emails[0]["body"]


def test_lead_to_client_auto_setup(engine, gateway):
    engine.register(get_template("lead-to-client-auto-setup"))
    payload = {
        "id": "deal-1", "status": "CLOSED_WON", "title": "Website Redesign", "value": 15000, "currency": "USD",
        "organizationId": "org-1", "createdById": "u1",
        "customer": {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com", "company": "AE"},
    }

    [run] = TriggerDispatcher(engine).on_entity_event("CRM", "Deal", "DEAL_STATUS_CHANGED", payload)

    assert run.status == RunStatus.COMPLETED
    created = gateway.named("create_record")
    assert [c["model"] for c in created] == ["Customer", "Project"] + ["Task"] * 5 + ["Invoice"]
    assert created[0]["fields"]["notes"] == "Converted from deal: Website Redesign"
    assert created[2]["fields"]["projectId"] == run.variables["projectId"]
    assert created[2]["fields"]["title"] == "Client Onboarding Call"
    first_due = to_datetime(created[2]["fields"]["dueDate"])
    assert timedelta(days=1) < first_due - utcnow() <= timedelta(days=2)
    invoice = created[-1]["fields"]
    assert invoice["customerId"] == run.variables["customerId"]
    assert invoice["customerName"] == "Ada Lovelace"
    assert invoice["invoiceNumber"].startswith("INV-")
    assert [e["recipient_type"] for e in gateway.emails] == ["project_manager", "account_owner"]
    assert run.variables["invoiceId"] in gateway.emails[1]["body"]


def test_lead_to_client_ignores_lost_deals(engine, gateway):
    engine.register(get_template("lead-to-client-auto-setup"))

    runs = TriggerDispatcher(engine).on_entity_event("CRM", "Deal", "DEAL_STATUS_CHANGED", {"status": "LOST"})

    assert runs == []
    assert gateway.calls == []


def test_project_kickoff_pack_creates_checklist(engine, gateway):
    engine.register(get_template("project-kickoff-pack"))
    payload = {"id": "p1", "name": "Apollo", "organizationId": "org-1", "createdById": "u1",
               "status": "PLANNED", "budget": 5000, "currency": "USD", "startDate": "2026-03-02T00:00:00Z"}

    [run] = TriggerDispatcher(engine).on_entity_event("PROJECTS", "Project", "PROJECT_CREATED", payload)

    assert run.status == RunStatus.COMPLETED
    assert run.trigger["nodeIds"] == ["trigger-1"]
    tasks = gateway.named("create_record")
    assert len(tasks) == 7
    assert tasks[0]["fields"]["title"] == "Client Onboarding Call"
    assert {t["fields"]["projectId"] for t in tasks} == {"p1"}
    [calendar] = gateway.named("run_action")
    assert calendar["action_type"] == "create_calendar_event"
    assert calendar["params"]["title"] == "Project Kickoff: Apollo"
    assert calendar["params"]["attendees"] == ["u1"]
    assert calendar["params"]["taskId"] == run.variables["kickoffTaskId"]
    assert [e["recipient_type"] for e in gateway.emails] == ["project_manager", "team_members"]
    assert gateway.named("query") == []
    assert run.step("trigger-2") is None


def test_project_kickoff_pack_moves_project_on_when_checklist_is_done(engine, gateway):
    engine.register(get_template("project-kickoff-pack"))
    dispatcher = TriggerDispatcher(engine)
    done = {"id": "t7", "status": "DONE", "projectId": "p1", "project": {"name": "Apollo"}}

    gateway.query_results["tasks"] = [{"id": "t3", "title": "Assign Team Members"}]
    [run] = dispatcher.on_entity_event("PROJECTS", "Task", "TASK_STATUS_CHANGED", done)

    assert run.status == RunStatus.COMPLETED
    assert run.step("condition-1").passed is False
    assert gateway.named("query")[0]["filters"]["projectId"] == "p1"
    assert gateway.named("update_record") == []

    gateway.query_results["tasks"] = []
    [run] = dispatcher.on_entity_event("PROJECTS", "Task", "TASK_STATUS_CHANGED", done)

    assert run.status == RunStatus.COMPLETED
    assert gateway.named("update_record") == [
        {"model": "Project", "record_id": "p1", "fields": {"status": "IN_PROGRESS"}}]
    assert [e["subject"] for e in gateway.emails] == ["Project Apollo - Kickoff Complete"]
    assert gateway.named("create_record") == []

    assert dispatcher.on_entity_event("PROJECTS", "Task", "TASK_STATUS_CHANGED", dict(done, status="TODO")) == []


def test_retainer_recurring_invoice(engine, gateway):
    gateway.query_results["retainerClients"] = [
        {"id": "r1", "organizationId": "org-1", "customerId": "c1", "amount": 500, "currency": "EUR",
         "customer": {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}},
        {"id": "r2", "organizationId": "org-1", "customerId": "c2", "amount": 750, "currency": "EUR",
         "customer": {"firstName": "Charles", "lastName": "Babbage", "email": "charles@example.com"}},
    ]
    engine.register(get_template("retainer-recurring-invoice"))

    [run] = TriggerDispatcher(engine).on_schedule_fired("0 0 1 * *")

    assert run.status == RunStatus.COMPLETED
    assert gateway.named("query")[0]["filters"]["isActive"] is True
    invoices = [c["fields"] for c in gateway.named("create_record")]
    assert [i["customerName"] for i in invoices] == ["Ada Lovelace", "Charles Babbage"]
    assert [i["totalAmount"] for i in invoices] == [500, 750]
    assert invoices[1]["invoiceNumber"].startswith("RET-")
    assert invoices[1]["invoiceNumber"].endswith("-r2")
    assert [e["recipient"] for e in gateway.emails] == ["ada@example.com", "charles@example.com"]
    assert [u["record_id"] for u in gateway.named("update_record")] == ["r1", "r2"]

    generated = run.variables["generatedInvoices"]
    assert [g["item"]["id"] for g in generated] == ["r1", "r2"]
    assert f"/invoices/{generated[0]['result']['invoiceId']}" in gateway.emails[0]["body"]


def test_task_reminder_escalation(engine, gateway):
    now = utcnow()
    upcoming = [{"id": "t1", "title": "Draft spec", "dueDate": (now + timedelta(hours=6)).isoformat(),
                 "project": {"name": "Apollo"}}]
    overdue = [
        {"id": "t2", "title": "Review", "daysOverdue": 1, "dueDate": (now - timedelta(days=1)).isoformat()},
        {"id": "t3", "title": "Deploy", "daysOverdue": 3, "dueDate": (now - timedelta(days=3)).isoformat()},
        {"id": "t4", "title": "Bill", "daysOverdue": 8, "dueDate": (now - timedelta(days=8)).isoformat()},
    ]
    gateway.query_results["tasks"] = lambda filters: upcoming if "gte" in filters["dueDate"] else overdue
    engine.register(get_template("task-reminder-escalation"))

    [run] = TriggerDispatcher(engine).on_schedule_fired("0 9 * * *")

    assert run.status == RunStatus.COMPLETED
    assert [(e["subject"], e["recipient_type"]) for e in gateway.emails] == [
        ("Reminder: Task Due Tomorrow - Draft spec", "task_assignee"),
        ("OVERDUE: Task Past Due Date - Review", "task_assignee"),
        ("Escalation: Task Overdue 2+ Days - Deploy", "project_manager"),
        ("URGENT: Task Overdue 5+ Days - Bill", "department_manager"),
    ]
    assert run.steps["loop-2[2]/condition-1"].passed is True
    assert "loop-2[2]/condition-2" not in run.steps
