""" Persisted run state: the run record, its step log and pending suspensions. """
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    SUSPENDED = "suspended"


class SuspensionKind(str, Enum):
    DELAY = "delay"
    APPROVAL = "approval"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepRecord:
    """
    One node execution. `step_key` includes the loop/parallel scope so the same
    node run in different iterations has a separate record.
    """
    step_key: str
    node_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    bindings: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    passed: Optional[bool] = None
    items: Optional[List[Any]] = None
    partial_failure: bool = False
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class Suspension:
    token: str
    step_key: str
    node_id: str
    kind: SuspensionKind
    wake_at: Optional[datetime] = None
    approver_ids: Tuple[str, ...] = ()
    message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ApprovalDecision:
    approver_id: str
    approved: bool
    comment: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ApprovalDecision":
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                approver_id=str(value.get("approverId", value.get("approver_id", ""))),
                approved=bool(value.get("approved")),
                comment=value.get("comment"),
            )
        raise TypeError(f"Cannot interpret {value!r} as an approval decision")


@dataclass
class Run:
    run_id: str
    workflow_id: str
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    trigger: Dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    variables: Dict[str, Any] = field(default_factory=dict)
    cursor: Optional[str] = None
    steps: Dict[str, StepRecord] = field(default_factory=dict)
    suspensions: Dict[str, Suspension] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def step(self, node_id: str) -> Optional[StepRecord]:
        """ The top-level record for a node (first match on node id if scoped). """
        if node_id in self.steps:
            return self.steps[node_id]
        for record in self.steps.values():
            if record.node_id == node_id:
                return record
        return None

    def steps_for(self, node_id: str) -> List[StepRecord]:
        return [r for r in self.steps.values() if r.node_id == node_id]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Run":
        data = dict(raw)
        data["status"] = RunStatus(data.get("status", RunStatus.PENDING))
        data["steps"] = {key: _step_from_dict(step) for key, step in (data.get("steps") or {}).items()}
        data["suspensions"] = {
            token: _suspension_from_dict(s) for token, s in (data.get("suspensions") or {}).items()
        }
        for key in ("created_at", "updated_at"):
            if data.get(key) is not None:
                data[key] = _parse_datetime(data[key])
        return cls(**data)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return date_parser.isoparse(value)


def _step_from_dict(raw: Dict[str, Any]) -> StepRecord:
    data = dict(raw)
    data["status"] = StepStatus(data.get("status", StepStatus.PENDING))
    for key in ("started_at", "finished_at"):
        data[key] = _parse_datetime(data.get(key))
    return StepRecord(**data)


def _suspension_from_dict(raw: Dict[str, Any]) -> Suspension:
    data = dict(raw)
    data["kind"] = SuspensionKind(data["kind"])
    data["approver_ids"] = tuple(data.get("approver_ids") or ())
    data["wake_at"] = _parse_datetime(data.get("wake_at"))
    if data.get("created_at") is not None:
        data["created_at"] = _parse_datetime(data["created_at"])
    return Suspension(**data)
