"""Example: run the built-in invoice lifecycle template against a console gateway.

The run suspends at each wait; we fast-forward the clock with wake_due() to
show the reminders and overdue notices being sent.
"""
from datetime import timedelta

from opsflow.config import configure_logging
from opsflow.gateway import ActionGateway, DeliveryResult
from opsflow.workflow.catalog import get_template
from opsflow.workflow.executor import WorkflowEngine
from opsflow.workflow.run import utcnow
from opsflow.workflow.store import SqlRunStore
from opsflow.workflow.triggers import TriggerDispatcher


class ConsoleGateway(ActionGateway):
    """ Prints every side effect instead of performing it. """

    def __init__(self):
        self.invoice_status = 'SENT'

    def create_record(self, model, field_mappings):
        print(f'[create] {model}: {field_mappings}')
        return f'{model.lower()}-1'

    def update_record(self, model, record_id, field_mappings):
        print(f'[update] {model} {record_id}: {field_mappings}')

    def send_email(self, recipient, subject, html_body, recipient_type=None):
        print(f'[email] to={recipient or recipient_type!r} subject={subject!r}')
        return DeliveryResult(True, message_id='console')

    def send_sms(self, recipient, message):
        print(f'[sms] to={recipient!r} {message!r}')
        return DeliveryResult(True, message_id='console')

    def run_action(self, action_type, params):
        print(f'[action] {action_type} {params}')
        if action_type == 'create_payment_link':
            return f'https://pay.example.com/{params.get("invoiceId")}'
        return None

    def query(self, source, filters):
        return [{'id': filters.get('id'), 'status': self.invoice_status}]

    def aggregate(self, source, field, op, filters=None):
        return 0


def main():
    configure_logging('WARNING')
    gateway = ConsoleGateway()
    store = SqlRunStore.from_url('sqlite:///./opsflow-example.db')
    engine = WorkflowEngine(gateway, store=store)
    engine.register(get_template('invoice-lifecycle'))

    due = utcnow() + timedelta(days=10)
    payload = {
        'id': 'inv-1001', 'status': 'SENT', 'invoiceNumber': 'INV-1001',
        'customerName': 'Ada Lovelace', 'customerEmail': 'ada@example.com',
        'issueDate': utcnow().isoformat(), 'dueDate': due.isoformat(),
        'currency': 'EUR', 'totalAmount': 1200,
    }
    [run] = TriggerDispatcher(engine).on_entity_event('FINANCE', 'Invoice', 'INVOICE_STATUS_CHANGED', payload)
    print(f'run {run.run_id}: {run.status.value} at {run.cursor}')

    clock = utcnow()
    while run.status.value == 'suspended':
        clock += timedelta(days=4)
        for resumed in engine.wake_due(clock):
            run = resumed
            print(f'{clock:%Y-%m-%d}: run {run.status.value} at {run.cursor}')

    print('\n--- RUN RESULT ---')
    print('status:', run.status.value)
    print('steps:', ', '.join(f'{k}={s.status.value}' for k, s in run.steps.items()))
    print('warnings:', run.warnings)
    engine.close()


if __name__ == '__main__':
    main()
