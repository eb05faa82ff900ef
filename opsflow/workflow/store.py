"""
Run persistence.

A run is saved after every step so a suspended run (Delay, Approval) can be
picked up by another engine process after a restart.
"""
import copy
import json
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Column, DateTime, Engine
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..errors import RunNotFoundError
from .run import Run, RunStatus, SuspensionKind


class RunStore(ABC):
    @abstractmethod
    def save(self, run: Run) -> None:
        ...

    @abstractmethod
    def get(self, run_id: str) -> Run:
        """ Load a run; raises RunNotFoundError. """

    @abstractmethod
    def find_by_token(self, token: str) -> Optional[Run]:
        ...

    @abstractmethod
    def due(self, now: datetime) -> List[Tuple[str, str]]:
        """ (run_id, token) for every delay suspension whose wake time has passed. """

    @abstractmethod
    def list_runs(self, workflow_id: Optional[str] = None,
                  status: Optional[RunStatus] = None) -> List[Run]:
        ...


class InMemoryRunStore(RunStore):
    """ Keeps deep copies so callers never share mutable state with the store. """

    def __init__(self):
        self._runs: Dict[str, Run] = {}
        self._lock = threading.Lock()

    def save(self, run: Run) -> None:
        with self._lock:
            self._runs[run.run_id] = copy.deepcopy(run)

    def get(self, run_id: str) -> Run:
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFoundError(f"Run not found: {run_id}")
            return copy.deepcopy(self._runs[run_id])

    def find_by_token(self, token: str) -> Optional[Run]:
        with self._lock:
            for run in self._runs.values():
                if token in run.suspensions:
                    return copy.deepcopy(run)
        return None

    def due(self, now: datetime) -> List[Tuple[str, str]]:
        found = []
        with self._lock:
            for run in self._runs.values():
                for token, suspension in run.suspensions.items():
                    if suspension.kind == SuspensionKind.DELAY and suspension.wake_at and suspension.wake_at <= now:
                        found.append((suspension.wake_at, run.run_id, token))
        return [(run_id, token) for _, run_id, token in sorted(found)]

    def list_runs(self, workflow_id=None, status=None) -> List[Run]:
        with self._lock:
            runs = [copy.deepcopy(r) for r in self._runs.values()]
        if workflow_id is not None:
            runs = [r for r in runs if r.workflow_id == workflow_id]
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return runs


# -------------------------
# SQL
# -------------------------

class WorkflowRunRow(SQLModel, table=True):
    """ One row per run; the full run state is kept as JSON. """
    __tablename__ = "workflowrun"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    status: str = Field(index=True)
    data: str
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunSuspensionRow(SQLModel, table=True):
    """ Pending suspensions, indexed so due delays can be found without loading every run. """
    __tablename__ = "runsuspension"

    token: str = Field(primary_key=True)
    run_id: str = Field(index=True)
    kind: str
    wake_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), index=True))


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # every stored timestamp is aware UTC so they compare in one zone on any dialect
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlRunStore(RunStore):
    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SqlRunStore":
        store = cls(create_engine(url, **kwargs))
        store.create_schema()
        return store

    def create_schema(self):
        """ Create the run tables. """
        SQLModel.metadata.create_all(self.engine, tables=[
            WorkflowRunRow.__table__, RunSuspensionRow.__table__,
        ])

    def save(self, run: Run) -> None:
        payload = json.dumps(run.to_dict(), default=_json_default)
        with Session(self.engine) as session:
            row = session.get(WorkflowRunRow, run.run_id)
            if row is None:
                row = WorkflowRunRow(id=run.run_id, workflow_id=run.workflow_id,
                                     status=run.status.value, data=payload, updated_at=_utc(run.updated_at))
            else:
                row.status = run.status.value
                row.data = payload
                row.updated_at = _utc(run.updated_at)
            session.add(row)

            existing = session.exec(select(RunSuspensionRow).where(RunSuspensionRow.run_id == run.run_id)).all()
            for suspension_row in existing:
                if suspension_row.token not in run.suspensions:
                    session.delete(suspension_row)
            known = {s.token for s in existing}
            for token, suspension in run.suspensions.items():
                if token not in known:
                    session.add(RunSuspensionRow(token=token, run_id=run.run_id, kind=suspension.kind.value,
                                                 wake_at=_utc(suspension.wake_at)))
            session.commit()

    def get(self, run_id: str) -> Run:
        with Session(self.engine) as session:
            row = session.get(WorkflowRunRow, run_id)
            if row is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            return Run.from_dict(json.loads(row.data))

    def find_by_token(self, token: str) -> Optional[Run]:
        with Session(self.engine) as session:
            suspension_row = session.get(RunSuspensionRow, token)
            if suspension_row is None:
                return None
            run_id = suspension_row.run_id
        return self.get(run_id)

    def due(self, now: datetime) -> List[Tuple[str, str]]:
        statement = (
            select(RunSuspensionRow)
            .where(RunSuspensionRow.kind == SuspensionKind.DELAY.value)
            .where(RunSuspensionRow.wake_at != None)  # noqa: E711
            .where(RunSuspensionRow.wake_at <= _utc(now))
            .order_by(RunSuspensionRow.wake_at)
        )
        with Session(self.engine) as session:
            return [(row.run_id, row.token) for row in session.exec(statement).all()]

    def list_runs(self, workflow_id=None, status=None) -> List[Run]:
        statement = select(WorkflowRunRow)
        if workflow_id is not None:
            statement = statement.where(WorkflowRunRow.workflow_id == workflow_id)
        if status is not None:
            statement = statement.where(WorkflowRunRow.status == RunStatus(status).value)
        with Session(self.engine) as session:
            return [Run.from_dict(json.loads(row.data)) for row in session.exec(statement).all()]
