""" Interface to the external systems a workflow acts upon. """
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ActionGateway(ABC):
    """
    Implemented by the host application. Every call is made from an engine
    worker thread and bounded by `settings.action_timeout_seconds`.
    """

    @abstractmethod
    def create_record(self, model: str, field_mappings: Dict[str, Any]) -> str:
        """ Create a business record and return its id. """

    @abstractmethod
    def update_record(self, model: str, record_id: str, field_mappings: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def send_email(self, recipient: Optional[str], subject: str, html_body: str,
                   recipient_type: Optional[str] = None) -> DeliveryResult:
        """ Either `recipient` (an address) or `recipient_type` (e.g. "client") is set. """

    @abstractmethod
    def send_sms(self, recipient: Optional[str], message: str) -> DeliveryResult:
        ...

    @abstractmethod
    def run_action(self, action_type: str, params: Dict[str, Any]) -> Any:
        """ Create an external artifact (payment link, calendar event, ...). """

    @abstractmethod
    def query(self, source: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def aggregate(self, source: str, field: str, op: str, filters: Optional[Dict[str, Any]] = None) -> Any:
        ...
