"""
Execution engine.

A run is never held as a live call stack. Every node execution is recorded as
a step on the persisted Run; suspending (Delay, Approval) saves the run and
unwinds. Resuming replays the traversal from the trigger nodes: steps that
already succeeded are not executed again, their recorded bindings and routing
decisions are reused, so side effects happen once.
"""
import copy
import logging
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..config import Settings, settings as default_settings
from ..errors import ResumeError, UnknownWorkflowError, UnresolvedVariableError, WorkflowValidationError
from ..gateway import ActionGateway
from ..nodes.approval import ApprovalNode
from ..nodes.base import NodeContext, NodeOutcome, SuspendRequest
from .compiler import CompiledWorkflow, compile_workflow, load_workflow
from .context import ExecutionContext
from .expressions import resolve_value
from .factory import make_handler
from .guards import evaluate_clause, evaluate_guard
from .helpers import to_datetime
from .models import FailureHandling, Node, NodeType, WorkflowDefinition
from .run import (
    ApprovalDecision, Run, RunStatus, StepRecord, StepStatus, Suspension,
    SuspensionKind, utcnow,
)
from .store import InMemoryRunStore, RunStore
from .validator import validate_workflow

logger = logging.getLogger(__name__)


class _Suspended(Exception):
    """ Unwinds the traversal once the run has a pending suspension. """


class _Cancelled(Exception):
    pass


class _NodeFailed(Exception):
    def __init__(self, node_id: str, error: str, fatal: bool = False):
        self.node_id = node_id
        self.error = error
        self.fatal = fatal
        super().__init__(f"Node {node_id} failed: {error}")


@dataclass
class _RunState:
    run: Run
    compiled: CompiledWorkflow
    env: ExecutionContext
    lock: threading.RLock


class WorkflowEngine:
    """ Interprets registered workflows against trigger events. """

    def __init__(self, gateway: ActionGateway, store: Optional[RunStore] = None,
                 settings: Optional[Settings] = None):
        self.gateway = gateway
        self.store = store if store is not None else InMemoryRunStore()
        self.settings = settings or default_settings
        self._workflows: Dict[str, CompiledWorkflow] = {}
        self._cancelled = set()
        self._active = set()
        self._pool = ThreadPoolExecutor(max_workers=self.settings.parallel_max_workers,
                                        thread_name_prefix="opsflow-action")

    # -------------------------
    # REGISTRY
    # -------------------------

    def register(self, definition: Union[WorkflowDefinition, str, bytes, Mapping[str, Any]]) -> WorkflowDefinition:
        """ Validate and compile a workflow so it can be started. """
        if not isinstance(definition, WorkflowDefinition):
            definition = load_workflow(definition)
        result = validate_workflow(definition)
        if not result.valid:
            raise WorkflowValidationError(result)
        for warning in result.warnings:
            logger.warning("Workflow %s: %s (%s)", definition.id, warning.message, warning.node_id)
        self._workflows[definition.id] = compile_workflow(definition)
        logger.info("Registered workflow %s (%d nodes)", definition.id, len(definition.nodes))
        return definition

    def unregister(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)

    @property
    def workflows(self) -> List[WorkflowDefinition]:
        return [compiled.definition for compiled in self._workflows.values()]

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self._compiled(workflow_id).definition

    def _compiled(self, workflow_id: str) -> CompiledWorkflow:
        if workflow_id not in self._workflows:
            raise UnknownWorkflowError(f"Workflow not registered: {workflow_id}")
        return self._workflows[workflow_id]

    # -------------------------
    # RUN LIFECYCLE
    # -------------------------

    def start(self, workflow_id: str, payload: Optional[Mapping[str, Any]] = None,
              trigger: Optional[Mapping[str, Any]] = None) -> Run:
        compiled = self._compiled(workflow_id)
        run = Run(
            run_id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            trigger_payload=dict(payload or {}),
            trigger=dict(trigger or {}),
        )
        run.variables = self._initial_variables(compiled, run)
        self.store.save(run)
        logger.info("Run %s started for workflow %s", run.run_id, workflow_id)
        return self._drive(run, compiled)

    def resume(self, token: str, decision: Union[ApprovalDecision, Mapping[str, Any], None] = None, *,
               force: bool = False, now: Optional[datetime] = None) -> Run:
        """
        Continue a suspended run. A Delay may only resume once its wake time has
        passed (or with force=True); an Approval needs a decision from one of
        its declared approvers.
        """
        run = self.store.find_by_token(token)
        if run is None:
            raise ResumeError(f"Unknown or already used resumption token: {token}")
        if run.is_terminal:
            raise ResumeError(f"Run {run.run_id} is {run.status.value}")
        compiled = self._compiled(run.workflow_id)
        now = to_datetime(now) if now is not None else utcnow()

        suspension = run.suspensions[token]
        node = compiled.nodes[suspension.node_id]
        if suspension.kind == SuspensionKind.DELAY:
            if suspension.wake_at and suspension.wake_at > now and not force:
                raise ResumeError(f"Delay {node.node_id} is not due until {suspension.wake_at.isoformat()}")
            outcome = NodeOutcome(result={
                "wakeAt": suspension.wake_at.isoformat() if suspension.wake_at else None,
                "resumedAt": now.isoformat(),
            })
        else:
            if decision is None:
                raise ResumeError(f"Approval {node.node_id} requires a decision")
            try:
                decision = ApprovalDecision.coerce(decision)
            except TypeError as e:
                raise ResumeError(str(e)) from e
            if decision.approver_id not in suspension.approver_ids:
                raise ResumeError(f"{decision.approver_id} is not an approver for {node.node_id}")
            outcome = ApprovalNode(node, compiled.templates).decide(decision)

        del run.suspensions[token]
        self._complete(run, run.steps[suspension.step_key], outcome)
        logger.info("Run %s resumed at %s (%s)", run.run_id, suspension.step_key, suspension.kind.value)
        return self._drive(run, compiled)

    def wake_due(self, now: Optional[datetime] = None) -> List[Run]:
        """ Resume every delayed run whose wake time has passed. """
        now = to_datetime(now) if now is not None else utcnow()
        resumed = []
        for run_id, token in self.store.due(now):
            try:
                resumed.append(self.resume(token, now=now))
            except (ResumeError, UnknownWorkflowError) as e:
                logger.warning("Could not wake run %s: %s", run_id, e)
        return resumed

    def recover(self, run_id: str) -> Run:
        """
        Re-enter a run whose process stopped mid-traversal. Steps that succeeded
        replay from their records; a step left running executes again.
        """
        run = self.store.get(run_id)
        if run.is_terminal:
            raise ResumeError(f"Run {run_id} is {run.status.value}")
        if run.suspensions:
            raise ResumeError(f"Run {run_id} is waiting on {len(run.suspensions)} suspension(s); use resume()")
        compiled = self._compiled(run.workflow_id)
        logger.warning("Recovering run %s from %s", run_id, run.cursor)
        return self._drive(run, compiled)

    def cancel(self, run_id: str) -> Run:
        run = self.store.get(run_id)
        if run.is_terminal:
            logger.info("Run %s already %s, not cancelling", run_id, run.status.value)
            return run
        if run_id in self._active:
            # the traversal in flight stops before its next node
            self._cancelled.add(run_id)
        run.status = RunStatus.CANCELLED
        run.suspensions.clear()
        run.updated_at = utcnow()
        self.store.save(run)
        logger.info("Run %s cancelled", run_id)
        return run

    def get_run(self, run_id: str) -> Run:
        return self.store.get(run_id)

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # -------------------------
    # TRAVERSAL
    # -------------------------

    def _initial_variables(self, compiled: CompiledWorkflow, run: Run) -> Dict[str, Any]:
        variables = {
            "payload": copy.deepcopy(run.trigger_payload),
            "trigger": copy.deepcopy(run.trigger),
        }
        for variable in compiled.definition.variables:
            default = resolve_value(copy.deepcopy(variable.default_value), variables, compiled.templates)
            variables[variable.name] = default
        return variables

    def _entry_nodes(self, run: Run, compiled: CompiledWorkflow) -> List[str]:
        """ The trigger nodes named by the dispatcher, or every trigger node for a direct start. """
        named = run.trigger.get("nodeIds")
        if named is None:
            return [n.node_id for n in compiled.definition.trigger_nodes]
        return [node_id for node_id in named if node_id in compiled.nodes]

    def _drive(self, run: Run, compiled: CompiledWorkflow) -> Run:
        run.status = RunStatus.RUNNING
        run.error = None
        state = _RunState(run, compiled, ExecutionContext.from_dict(run.variables), threading.RLock())
        self._save(state)

        entry = self._entry_nodes(run, compiled)
        if not entry and "No trigger node to start from" not in run.warnings:
            run.warnings.append("No trigger node to start from")
        self._active.add(run.run_id)
        try:
            self._walk(state, entry, "", state.env)
        except _Suspended:
            run.status = RunStatus.SUSPENDED
        except _Cancelled:
            run.status = RunStatus.CANCELLED
        except _NodeFailed as e:
            run.status = RunStatus.FAILED
            run.error = str(e)
        else:
            run.status = RunStatus.SUSPENDED if run.suspensions else RunStatus.COMPLETED
        finally:
            self._active.discard(run.run_id)

        if run.run_id in self._cancelled:
            run.status = RunStatus.CANCELLED
        if run.status in (RunStatus.CANCELLED, RunStatus.FAILED):
            run.suspensions.clear()
        if run.is_terminal:
            self._cancelled.discard(run.run_id)
        self._save(state)

        log = logger.error if run.status == RunStatus.FAILED else logger.info
        log("Run %s %s%s", run.run_id, run.status.value, f": {run.error}" if run.error else "")
        return run

    def _walk(self, state: _RunState, start: Iterable[str], scope: str, env: ExecutionContext,
              abort: Optional[threading.Event] = None) -> None:
        """
        Run the sub-graph reachable from `start` in dependency order. A node is
        released once each of its reachable predecessors has either run or been
        pruned; it runs if at least one of them took the edge to it, and is
        pruned otherwise.
        """
        compiled = state.compiled
        start = list(dict.fromkeys(start))
        reachable = list(start)
        for node_id in reachable:
            for target in compiled.flow_targets(node_id):
                if target not in reachable:
                    reachable.append(target)

        waiting: Dict[str, set] = {n: set() for n in reachable if n not in start}
        for source in reachable:
            for target in compiled.flow_targets(source):
                if target in waiting:
                    waiting[target].add(source)
        taken = set(start)
        queue = deque(start)

        def settle(source: str, chosen: Iterable[str]) -> None:
            pending = [(source, set(chosen))]
            while pending:
                node_id, targets = pending.pop()
                for target in compiled.flow_targets(node_id):
                    if target not in waiting:
                        continue
                    if target in targets:
                        taken.add(target)
                    waiting[target].discard(node_id)
                    if waiting[target]:
                        continue
                    if target in taken:
                        queue.append(target)
                    else:
                        logger.debug("Run %s: node %s%s pruned", state.run.run_id, scope, target)
                        pending.append((target, set()))

        while queue:
            node_id = queue.popleft()
            if abort is not None and abort.is_set():
                return
            if state.run.run_id in self._cancelled:
                raise _Cancelled()
            settle(node_id, self._visit(state, compiled.nodes[node_id], scope, env, abort))

    def _visit(self, state: _RunState, node: Node, scope: str, env: ExecutionContext,
               abort: Optional[threading.Event]) -> List[str]:
        key = scope + node.node_id
        outcome = self._step(state, node, key, env)
        if outcome is None:
            # optional node failed: carry on along its connections
            return self._follow(state, node, env, exclude={target for _, target in node.references()})

        cfg = node.config
        if node.type == NodeType.CONDITION:
            if cfg.has_branches:
                target = cfg.true_branch if outcome.passed else cfg.false_branch
                return [target] if target else []
            return self._follow(state, node, env) if outcome.passed else []

        if node.type == NodeType.APPROVAL:
            if cfg.approved_branch or cfg.rejected_branch:
                target = cfg.approved_branch if outcome.passed else cfg.rejected_branch
                return [target] if target else []
            return self._follow(state, node, env) if outcome.passed else []

        if node.type == NodeType.LOOP:
            self._iterate(state, node, key, outcome.items or [], env, abort)
            return self._follow(state, node, env, exclude={cfg.loop_body_node_id})

        if node.type == NodeType.PARALLEL:
            self._fan_out(state, node, key, env)
            return self._follow(state, node, env, exclude=set(cfg.parallel_node_ids))

        return self._follow(state, node, env)

    def _follow(self, state: _RunState, node: Node, env: ExecutionContext, exclude=()) -> List[str]:
        targets = []
        for connection in state.compiled.successors(node.node_id):
            if connection.target_node_id in exclude:
                continue
            if evaluate_guard(connection.conditions, env, strict=False,
                              node_id=node.node_id, cache=state.compiled.templates):
                targets.append(connection.target_node_id)
            else:
                logger.debug("Connection %s -> %s not taken", node.node_id, connection.target_node_id)
        return targets

    def _iterate(self, state: _RunState, node: Node, key: str, items: List[Any], env: ExecutionContext,
                 abort: Optional[threading.Event]) -> None:
        """ Run the loop body once per item, each iteration in its own step scope. """
        cfg = node.config
        results = []
        broke_at = None
        for index, item in enumerate(items):
            env.set_many({cfg.item_variable: item, "loopIndex": index, "loopCount": len(items)})
            if cfg.break_condition is not None and self._should_break(state, node, key, env):
                broke_at = index
                logger.info("Run %s: loop %s stopped at item %d", state.run.run_id, key, index)
                break
            scope = f"{key}[{index}]/"
            if cfg.loop_body_node_id:
                self._walk(state, [cfg.loop_body_node_id], scope, env, abort)
            results.append({"index": index, "item": item, "result": self._scope_bindings(state, scope)})

        record = state.run.steps[key]
        with state.lock:
            record.result = dict(record.result, iterations=len(results), breakEarly=broke_at is not None)
            if cfg.output_variable:
                record.bindings[cfg.output_variable] = results
                env.set(cfg.output_variable, results)
        self._save(state)

    def _should_break(self, state: _RunState, node: Node, key: str, env: ExecutionContext) -> bool:
        try:
            return evaluate_clause(node.config.break_condition, env, strict=True,
                                   node_id=node.node_id, cache=state.compiled.templates)
        except UnresolvedVariableError as e:
            self._fail_step(state, state.run.steps[key], str(e))
            logger.error("Run %s: loop %s cannot resolve %s", state.run.run_id, key, e.expression)
            raise _NodeFailed(node.node_id, str(e), fatal=True) from e

    def _scope_bindings(self, state: _RunState, scope: str) -> Dict[str, Any]:
        """ Variables bound by the steps that succeeded inside one loop iteration. """
        merged: Dict[str, Any] = {}
        with state.lock:
            for step_key, record in state.run.steps.items():
                if step_key.startswith(scope) and record.status == StepStatus.SUCCEEDED:
                    merged.update(record.bindings)
        return copy.deepcopy(merged)

    def _fan_out(self, state: _RunState, node: Node, key: str, env: ExecutionContext) -> None:
        """
        Run the branches of a Parallel node concurrently and merge their
        variables back in declaration order.
        """
        cfg = node.config
        branches = list(cfg.parallel_node_ids)
        forks = [env.fork() for _ in branches]
        group_abort = threading.Event()
        fail_fast = cfg.failure_handling == FailureHandling.FAIL_FAST
        errors: Dict[str, Exception] = {}

        workers = max(1, min(len(branches), self.settings.parallel_max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"opsflow-{node.node_id}") as pool:
            futures = {
                pool.submit(self._walk, state, [branch], f"{key}<{branch}>/", fork, group_abort): branch
                for branch, fork in zip(branches, forks)
            }
            for future in as_completed(futures):
                branch = futures[future]
                try:
                    future.result()
                except _NodeFailed as e:
                    errors[branch] = e
                    if fail_fast or e.fatal:
                        group_abort.set()
                except (_Suspended, _Cancelled) as e:
                    errors[branch] = e

        for fork in forks:
            env.merge(fork)

        failures = {b: e for b, e in errors.items() if isinstance(e, _NodeFailed)}
        for error in failures.values():
            if error.fatal:
                raise error
        if any(isinstance(e, _Cancelled) for e in errors.values()):
            raise _Cancelled()

        record = state.run.steps[key]
        with state.lock:
            record.result = dict(record.result, branchStatus={
                b: "failed" if b in failures else "suspended" if b in errors else "succeeded"
                for b in branches
            })
            if failures and fail_fast:
                record.status = StepStatus.FAILED
                record.error = "; ".join(str(e) for e in failures.values())
            elif failures:
                record.partial_failure = True
                for branch, error in failures.items():
                    warning = f"Branch {branch} failed: {error.error}"
                    if warning not in record.warnings:
                        record.warnings.append(warning)
                        state.run.warnings.append(f"{key}: {warning}")
        self._save(state)

        if record.status == StepStatus.FAILED:
            logger.warning("Parallel %s failed fast: %s", node.node_id, record.error)
            self._failed(node, record)
            return
        if failures:
            logger.warning("Parallel %s completed with %d failed branch(es)", node.node_id, len(failures))
        if any(isinstance(e, _Suspended) for e in errors.values()):
            raise _Suspended(key)

    # -------------------------
    # STEPS
    # -------------------------

    def _step(self, state: _RunState, node: Node, key: str, env: ExecutionContext) -> Optional[NodeOutcome]:
        """ Execute a node (or replay its recorded outcome). None means an optional node failed. """
        run = state.run
        record = run.steps.get(key)
        if record is not None:
            if record.status == StepStatus.SUCCEEDED:
                outcome = NodeOutcome.from_record(record)
                env.set_many(outcome.bindings)
                return outcome
            if record.status == StepStatus.FAILED:
                return self._failed(node, record)
            if record.status == StepStatus.SUSPENDED and any(
                    s.step_key == key for s in run.suspensions.values()):
                raise _Suspended(key)

        handler = make_handler(node, state.compiled.templates)
        record = StepRecord(key, node.node_id, status=StepStatus.RUNNING, started_at=utcnow())
        with state.lock:
            run.steps[key] = record
            run.cursor = key
        self._save(state)
        logger.info("Run %s: node %s started", run.run_id, key)

        attempts = 1 + (node.retry_limit or 0)
        error: Optional[Exception] = None
        outcome = None
        for attempt in range(1, attempts + 1):
            record.attempts = attempt
            ctx = NodeContext(env, self.gateway, run.run_id, key, utcnow(), self._invoke)
            try:
                outcome = handler.execute(ctx)
                break
            except UnresolvedVariableError as e:
                # the path after this node is undecidable
                self._fail_step(state, record, str(e))
                logger.error("Run %s: node %s cannot resolve %s", run.run_id, key, e.expression)
                raise _NodeFailed(node.node_id, str(e), fatal=True) from e
            except Exception as e:  # gateway failures surface as arbitrary exceptions
                error = e
                logger.warning("Run %s: node %s attempt %d/%d failed: %s", run.run_id, key, attempt, attempts, e)

        if outcome is None:
            self._fail_step(state, record, str(error))
            return self._failed(node, record)

        if outcome.suspend is not None:
            self._suspend(state, node, record, outcome.suspend)

        with state.lock:
            env.set_many(outcome.bindings)
            self._complete(run, record, outcome)
        self._save(state)
        logger.info("Run %s: node %s succeeded", run.run_id, key)
        return outcome

    def _complete(self, run: Run, record: StepRecord, outcome: NodeOutcome) -> None:
        record.status = StepStatus.SUCCEEDED
        record.bindings = dict(outcome.bindings)
        record.result = dict(outcome.result)
        record.passed = outcome.passed
        record.items = list(outcome.items) if outcome.items is not None else None
        record.error = None
        record.finished_at = utcnow()
        for warning in outcome.warnings:
            if warning not in record.warnings:
                record.warnings.append(warning)
                run.warnings.append(f"{record.step_key}: {warning}")

    def _fail_step(self, state: _RunState, record: StepRecord, error: str) -> None:
        with state.lock:
            record.status = StepStatus.FAILED
            record.error = error
            record.finished_at = utcnow()
        self._save(state)

    def _failed(self, node: Node, record: StepRecord) -> None:
        if node.is_optional:
            logger.warning("Optional node %s failed, continuing: %s", record.step_key, record.error)
            return None
        raise _NodeFailed(node.node_id, record.error or "failed")

    def _suspend(self, state: _RunState, node: Node, record: StepRecord, request: SuspendRequest) -> None:
        token = uuid.uuid4().hex
        suspension = Suspension(
            token=token,
            step_key=record.step_key,
            node_id=node.node_id,
            kind=request.kind,
            wake_at=request.wake_at,
            approver_ids=request.approver_ids,
            message=request.message,
        )
        with state.lock:
            state.run.suspensions[token] = suspension
            record.status = StepStatus.SUSPENDED
            record.result = {"token": token}
        self._save(state)
        when = f" until {request.wake_at.isoformat()}" if request.wake_at else ""
        logger.info("Run %s suspended at %s (%s%s)", state.run.run_id, record.step_key, request.kind.value, when)
        raise _Suspended(record.step_key)

    def _save(self, state: _RunState) -> None:
        with state.lock:
            state.run.variables = state.env.snapshot()
            state.run.updated_at = utcnow()
            self.store.save(state.run)

    def _invoke(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.settings.action_timeout_seconds)
        except FutureTimeout:
            future.cancel()
            name = getattr(fn, "__name__", repr(fn))
            raise TimeoutError(f"{name} timed out after {self.settings.action_timeout_seconds}s") from None
