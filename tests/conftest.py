"""Shared fixtures: a recording gateway and an engine wired to it."""

import itertools
import threading

import pytest
from sqlalchemy.pool import StaticPool

from opsflow.config import Settings
from opsflow.gateway import ActionGateway, DeliveryResult
from opsflow.workflow.executor import WorkflowEngine
from opsflow.workflow.store import InMemoryRunStore, SqlRunStore


class FakeGateway(ActionGateway):
    """Records every call. `fail` maps a call name (or email subject) to a number of failures to raise."""

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.query_results = {}
        self.aggregate_results = {}
        self.action_results = {}
        self.undelivered = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _record(self, name, **kwargs):
        with self._lock:
            self.calls.append((name, kwargs))
            for key in (name, kwargs.get("subject"), kwargs.get("source"), kwargs.get("action_type")):
                if key is not None and self.fail.get(key):
                    self.fail[key] -= 1
                    raise RuntimeError(f"{key} is unavailable")

    def named(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    @property
    def emails(self):
        return self.named("send_email")

    def create_record(self, model, field_mappings):
        self._record("create_record", model=model, fields=field_mappings)
        return f"{model.lower()}-{next(self._ids)}"

    def update_record(self, model, record_id, field_mappings):
        self._record("update_record", model=model, record_id=record_id, fields=field_mappings)

    def send_email(self, recipient, subject, html_body, recipient_type=None):
        self._record("send_email", recipient=recipient, subject=subject, body=html_body,
                     recipient_type=recipient_type)
        if subject in self.undelivered:
            return DeliveryResult(False, error="mailbox full")
        return DeliveryResult(True, message_id=f"msg-{next(self._ids)}")

    def send_sms(self, recipient, message):
        self._record("send_sms", recipient=recipient, message=message)
        return DeliveryResult(True, message_id=f"sms-{next(self._ids)}")

    def run_action(self, action_type, params):
        self._record("run_action", action_type=action_type, params=params)
        return self.action_results.get(action_type, f"{action_type}-result")

    def query(self, source, filters):
        self._record("query", source=source, filters=filters)
        result = self.query_results.get(source, [])
        return result(filters) if callable(result) else result

    def aggregate(self, source, field, op, filters=None):
        self._record("aggregate", source=source, field=field, op=op, filters=filters)
        return self.aggregate_results.get((source, field, op), 0)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def test_settings():
    return Settings(action_timeout_seconds=2.0, parallel_max_workers=4, default_max_iterations=50)


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def sql_store():
    return SqlRunStore.from_url(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def engine(gateway, store, test_settings):
    eng = WorkflowEngine(gateway, store=store, settings=test_settings)
    yield eng
    eng.close()
