from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from .errors import LockError, PartialApplyError, ReconcilerError, StalePlanError
from .executor import Executor
from .graph import ResourceGraph
from .models import (
    AppliedStep,
    ChangePlan,
    CycleReport,
    DesiredConfiguration,
    EnvironmentSpec,
    LockRecord,
    PipelineState,
    PushEvent,
    StateSnapshot,
    utc_now,
)
from .planner import Planner, render_plan, validate_references
from .stack import BranchRoutes, load_stack, resolve_desired
from .state_store import EnvironmentStateStore

logger = logging.getLogger(__name__)

ConfigLoader = Callable[[EnvironmentSpec, PushEvent], DesiredConfiguration]

APPROVE = "APPROVE"
REJECT = "REJECT"
MODE_APPLY = "apply"
MODE_TEARDOWN = "teardown"

# States in which an environment accepts a new cycle.
_RESTING_STATES = frozenset({PipelineState.IDLE, PipelineState.SUCCEEDED, PipelineState.FAILED})


def stack_file_loader(path: Path) -> ConfigLoader:
    """Re-read the stack file for every cycle so each commit's content is used."""

    def _load(env: EnvironmentSpec, event: PushEvent) -> DesiredConfiguration:
        return resolve_desired(load_stack(path), env.environment_id, event.commit_ref)

    return _load


class CycleState(TypedDict, total=False):
    environment_id: str
    commit_ref: str
    mode: str
    auto_apply: bool
    desired: dict[str, Any]
    order: list[str]
    lock: dict[str, Any] | None
    plan: dict[str, Any] | None
    decision: str
    final_state: str
    applied: list[dict[str, Any]]
    failed_module: str | None
    error: str | None


@dataclass
class _EnvironmentSlot:
    state: PipelineState = PipelineState.IDLE
    pending: PushEvent | None = None
    thread_id: str | None = None
    cycle_id: str | None = None
    started_at: datetime | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    history: list[CycleReport] = field(default_factory=list)


class PipelineController:
    """Per-environment gate: Idle -> Planning -> AwaitingApproval -> Applying -> Succeeded | Failed.

    Each cycle runs as a LangGraph StateGraph whose approval gate is an
    ``interrupt``; ``approve``/``reject`` resume it. While an environment is
    busy, new events are coalesced so only the newest one runs next.

    ``status`` keeps reporting ``Succeeded`` or ``Failed`` after a cycle ends,
    until the next event starts a new cycle; Idle only means nothing has run
    yet. Terminal states accept new events exactly like Idle.
    """

    def __init__(
        self,
        *,
        routes: BranchRoutes,
        store: EnvironmentStateStore,
        executor: Executor,
        config_loader: ConfigLoader,
        planner: Planner | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
        checkpoint_path: Path | None = None,
    ) -> None:
        self.routes = routes
        self.store = store
        self.executor = executor
        self.config_loader = config_loader
        self.planner = planner or Planner()
        self._mutex = threading.Lock()
        self._slots: dict[str, _EnvironmentSlot] = {}
        self._conn: sqlite3.Connection | None = None

        if checkpointer is None:
            path = checkpoint_path or (store.root / "checkpoints" / "pipeline.sqlite")
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(path, check_same_thread=False)
            checkpointer = SqliteSaver(self._conn)
        self._checkpointer = checkpointer
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(CycleState)
        graph.add_node("validate", self._validate_node)
        graph.add_node("plan", self._plan_node)
        graph.add_node("approval_gate", self._approval_gate_node)
        graph.add_node("apply", self._apply_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "validate")
        graph.add_conditional_edges("validate", self._terminal_route, {"continue": "plan", "finalize": "finalize"})
        graph.add_conditional_edges(
            "plan", self._terminal_route, {"continue": "approval_gate", "finalize": "finalize"}
        )
        graph.add_conditional_edges("approval_gate", self._approval_route, {"apply": "apply", "finalize": "finalize"})
        graph.add_edge("apply", "finalize")
        graph.add_edge("finalize", END)
        return graph

    @staticmethod
    def _terminal_route(state: CycleState) -> str:
        return "finalize" if state.get("final_state") else "continue"

    @staticmethod
    def _approval_route(state: CycleState) -> str:
        return "apply" if state.get("decision") == APPROVE else "finalize"

    def _validate_node(self, state: CycleState) -> dict[str, Any]:
        # Planning-time validation runs without the lock: nothing is mutated yet.
        env_id = state["environment_id"]
        self._set_state(env_id, PipelineState.PLANNING)
        env = self.routes.environment(env_id)
        event = PushEvent(branch=env.branch, commit_ref=state.get("commit_ref", ""))
        if state.get("mode") == MODE_TEARDOWN:
            return {"order": self._declared_order(env, event)}
        try:
            desired = self.config_loader(env, event)
            if desired.environment_id != env_id:
                raise ValueError(f"config loader returned configuration for {desired.environment_id!r}")
            order = ResourceGraph(desired.modules).build()
            modules = desired.by_id()
            for module in desired.modules:
                validate_references(module, modules)
        except (ReconcilerError, ValueError, KeyError, OSError) as exc:
            logger.error("planning %s failed during validation: %s", env_id, exc)
            return {"final_state": PipelineState.FAILED.value, "error": str(exc)}
        return {"desired": desired.model_dump(mode="json"), "order": order}

    def _declared_order(self, env: EnvironmentSpec, event: PushEvent) -> list[str]:
        # Teardown proceeds without a loadable stack; declaration order only breaks ties.
        try:
            desired = self.config_loader(env, event)
        except (ReconcilerError, ValueError, KeyError, OSError) as exc:
            logger.warning("%s: stack unavailable, tearing down in recorded order: %s", env.environment_id, exc)
            return []
        return [module.module_id for module in desired.modules]

    def _plan_node(self, state: CycleState) -> dict[str, Any]:
        env_id = state["environment_id"]
        try:
            lock = self.store.acquire_lock(env_id)
        except LockError as exc:
            logger.error("planning %s failed: %s", env_id, exc)
            return {"final_state": PipelineState.FAILED.value, "error": str(exc)}

        try:
            snapshot = self.store.load_snapshot(env_id)
            if state.get("mode") == MODE_TEARDOWN:
                plan = self.planner.plan_teardown(
                    snapshot, commit_ref=state.get("commit_ref", ""), declared=state.get("order") or []
                )
            else:
                desired = DesiredConfiguration.model_validate(state["desired"])
                plan = self.planner.plan(desired, snapshot, list(state["order"]))
        except (ReconcilerError, ValueError) as exc:
            self.store.release_lock(lock)
            logger.error("planning %s failed: %s", env_id, exc)
            return {"final_state": PipelineState.FAILED.value, "error": str(exc)}
        except BaseException:
            self.store.release_lock(lock)
            raise

        logger.info("%s", render_plan(plan).rstrip())
        if not plan.has_changes:
            self.store.release_lock(lock)
            return {"plan": plan.model_dump(mode="json"), "lock": None, "final_state": PipelineState.SUCCEEDED.value}
        return {"plan": plan.model_dump(mode="json"), "lock": lock.model_dump(mode="json")}

    def _approval_gate_node(self, state: CycleState) -> dict[str, Any]:
        env_id = state["environment_id"]
        if self._slot(env_id).cancel_event.is_set():
            return {"decision": REJECT, "final_state": PipelineState.FAILED.value, "error": "plan rejected: cancelled"}
        if state.get("auto_apply"):
            return {"decision": APPROVE}
        self._set_state(env_id, PipelineState.AWAITING_APPROVAL)
        plan = ChangePlan.model_validate(state["plan"])
        decision = interrupt(
            {
                "environment_id": env_id,
                "commit_ref": state.get("commit_ref", ""),
                "plan": render_plan(plan),
                "options": [APPROVE, REJECT],
            }
        )
        action = str(decision.get("action", REJECT)).upper()
        if action != APPROVE:
            reason = decision.get("reason") or "no reason given"
            return {"decision": REJECT, "final_state": PipelineState.FAILED.value, "error": f"plan rejected: {reason}"}
        return {"decision": APPROVE}

    def _apply_node(self, state: CycleState) -> dict[str, Any]:
        env_id = state["environment_id"]
        self._set_state(env_id, PipelineState.APPLYING)
        plan = ChangePlan.model_validate(state["plan"])
        held = {"lock": LockRecord.model_validate(state["lock"])}
        cancel_event = self._slot(env_id).cancel_event

        def _on_step(_step: AppliedStep, working: StateSnapshot) -> None:
            held["lock"] = self.store.refresh_lock(held["lock"])
            self.store.commit_snapshot(env_id, working, held["lock"])

        try:
            # No step may run unless the lock is still ours after the approval wait.
            held["lock"] = self.store.refresh_lock(held["lock"])
            current = self.store.load_snapshot(env_id)
            if current.serial != plan.base_serial:
                raise StalePlanError(env_id, plan.base_serial, current.serial)
            outcome = self.executor.apply(plan, current, cancel_event=cancel_event, on_step=_on_step)
            self.store.commit_snapshot(env_id, outcome.snapshot, held["lock"])
        except PartialApplyError as exc:
            error = str(exc)
            try:
                self.store.commit_snapshot(env_id, exc.snapshot, held["lock"])
            except LockError as commit_exc:
                logger.error("could not commit partial snapshot for %s: %s", env_id, commit_exc)
                error = f"{error}; partial snapshot not committed: {commit_exc}"
            return {
                "lock": None,
                "final_state": PipelineState.FAILED.value,
                "applied": [step.model_dump(mode="json") for step in exc.applied],
                "failed_module": exc.failed_action.module_id if exc.failed_action is not None else None,
                "error": error,
            }
        except LockError as exc:
            logger.error("apply for %s failed: %s", env_id, exc)
            return {"lock": None, "final_state": PipelineState.FAILED.value, "error": str(exc)}
        finally:
            self.store.release_lock(held["lock"])

        return {
            "lock": None,
            "final_state": PipelineState.SUCCEEDED.value,
            "applied": [step.model_dump(mode="json") for step in outcome.applied],
        }

    def _finalize_node(self, state: CycleState) -> dict[str, Any]:
        lock = state.get("lock")
        if lock:
            self.store.release_lock(LockRecord.model_validate(lock))
        return {"lock": None}

    # ------------------------------------------------------------------
    # Environment slots
    # ------------------------------------------------------------------

    def _slot(self, environment_id: str) -> _EnvironmentSlot:
        slot = self._slots.get(environment_id)
        if slot is None:
            slot = self._slots[environment_id] = _EnvironmentSlot()
        return slot

    def _set_state(self, environment_id: str, state: PipelineState) -> None:
        with self._mutex:
            slot = self._slot(environment_id)
            if slot.state != state:
                logger.info("%s: %s -> %s", environment_id, slot.state.value, state.value)
            slot.state = state

    def status(self, environment_id: str) -> PipelineState:
        with self._mutex:
            return self._slot(environment_id).state

    def history(self, environment_id: str) -> list[CycleReport]:
        with self._mutex:
            return list(self._slot(environment_id).history)

    def pending(self, environment_id: str) -> PushEvent | None:
        with self._mutex:
            return self._slot(environment_id).pending

    def pending_approval(self, environment_id: str) -> str | None:
        """Rendered plan of the cycle waiting at the approval gate, if any."""
        with self._mutex:
            slot = self._slot(environment_id)
            if slot.state != PipelineState.AWAITING_APPROVAL:
                return None
            config = self._config(slot)
        for task in self.graph.get_state(config).tasks:
            for pending in task.interrupts:
                return str(pending.value.get("plan", ""))
        return None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self, event: PushEvent) -> CycleReport | None:
        """Route a source-control event and run its cycle.

        Returns the report of the cycle this event started, or ``None`` when
        the branch is unmapped, the event was queued behind a running cycle,
        or the cycle is waiting for approval.
        """
        env = self.routes.route(event)
        if env is None:
            return None
        with self._mutex:
            slot = self._slot(env.environment_id)
            if slot.state not in _RESTING_STATES:
                if slot.pending is not None:
                    logger.info(
                        "%s: event %s supersedes queued %s",
                        env.environment_id,
                        event.commit_ref,
                        slot.pending.commit_ref,
                    )
                slot.pending = event
                return None
            if slot.pending is not None:
                logger.info(
                    "%s: event %s supersedes queued %s",
                    env.environment_id,
                    event.commit_ref,
                    slot.pending.commit_ref,
                )
                slot.pending = None
            self._begin_cycle(slot)
        report = self._start_cycle(env, event.commit_ref, mode=MODE_APPLY, auto_apply=env.auto_apply)
        self._drain(env.environment_id)
        return report

    def teardown(self, environment_id: str, *, auto_approve: bool | None = None) -> CycleReport | None:
        """Destroy every module recorded for *environment_id*, dependents first."""
        env = self.routes.environment(environment_id)
        with self._mutex:
            slot = self._slot(environment_id)
            if slot.state not in _RESTING_STATES:
                raise ReconcilerError(f"environment {environment_id!r} is busy ({slot.state.value})")
            self._begin_cycle(slot)
        auto = env.auto_apply if auto_approve is None else auto_approve
        report = self._start_cycle(env, "", mode=MODE_TEARDOWN, auto_apply=auto)
        self._drain(environment_id)
        return report

    def approve(self, environment_id: str) -> CycleReport | None:
        return self._resume(environment_id, {"action": APPROVE})

    def reject(self, environment_id: str, reason: str = "") -> CycleReport | None:
        return self._resume(environment_id, {"action": REJECT, "reason": reason})

    def cancel(self, environment_id: str) -> bool:
        """Request cancellation; honoured before the next apply step, never mid-step."""
        with self._mutex:
            slot = self._slot(environment_id)
            state = slot.state
            if state in (PipelineState.PLANNING, PipelineState.APPLYING):
                slot.cancel_event.set()
                logger.warning("%s: cancellation requested while %s", environment_id, state.value)
                return True
        if state == PipelineState.AWAITING_APPROVAL:
            self.reject(environment_id, "cancelled")
            return True
        return False

    # ------------------------------------------------------------------
    # Cycle driving
    # ------------------------------------------------------------------

    @staticmethod
    def _begin_cycle(slot: _EnvironmentSlot) -> None:
        slot.state = PipelineState.PLANNING
        slot.thread_id = f"cycle-{uuid.uuid4().hex[:12]}"
        slot.cycle_id = f"CYC-{uuid.uuid4().hex[:12]}"
        slot.started_at = utc_now()
        slot.cancel_event = threading.Event()

    def _config(self, slot: _EnvironmentSlot) -> dict[str, Any]:
        return {"configurable": {"thread_id": slot.thread_id}}

    def _start_cycle(self, env: EnvironmentSpec, commit_ref: str, *, mode: str, auto_apply: bool) -> CycleReport | None:
        logger.info("%s: starting %s cycle for %s", env.environment_id, mode, commit_ref or "-")
        initial: CycleState = {
            "environment_id": env.environment_id,
            "commit_ref": commit_ref,
            "mode": mode,
            "auto_apply": auto_apply,
            "lock": None,
            "plan": None,
            "applied": [],
        }
        return self._run_graph(env.environment_id, initial)

    def _resume(self, environment_id: str, decision: dict[str, str]) -> CycleReport | None:
        with self._mutex:
            slot = self._slot(environment_id)
            if slot.state != PipelineState.AWAITING_APPROVAL:
                raise ReconcilerError(
                    f"environment {environment_id!r} is not awaiting approval ({slot.state.value})"
                )
        report = self._run_graph(environment_id, Command(resume=decision))
        self._drain(environment_id)
        return report

    def _run_graph(self, environment_id: str, graph_input: CycleState | Command) -> CycleReport | None:
        slot = self._slot(environment_id)
        config = self._config(slot)
        try:
            self.graph.invoke(graph_input, config=config)
        except BaseException:
            with self._mutex:
                slot.state = PipelineState.IDLE
            raise

        snapshot = self.graph.get_state(config)
        if snapshot.next:
            logger.info("%s: awaiting approval for cycle %s", environment_id, slot.cycle_id)
            return None
        return self._complete(environment_id, snapshot.values)

    def _complete(self, environment_id: str, values: dict[str, Any]) -> CycleReport:
        slot = self._slot(environment_id)
        final_state = PipelineState(values.get("final_state", PipelineState.FAILED.value))
        plan = values.get("plan")
        report = CycleReport(
            cycle_id=slot.cycle_id or f"CYC-{uuid.uuid4().hex[:12]}",
            environment_id=environment_id,
            commit_ref=values.get("commit_ref", ""),
            final_state=final_state,
            plan=ChangePlan.model_validate(plan) if plan else None,
            applied=[AppliedStep.model_validate(step) for step in values.get("applied", [])],
            failed_module=values.get("failed_module"),
            error=values.get("error"),
            started_at=slot.started_at or utc_now(),
            finished_at=utc_now(),
        )
        self.store.write_report(report)
        with self._mutex:
            logger.info("%s: %s -> %s", environment_id, slot.state.value, final_state.value)
            slot.history.append(report)
            slot.state = final_state
        return report

    def _drain(self, environment_id: str) -> None:
        """Run the newest queued event, if any, once the environment is at rest again."""
        while True:
            with self._mutex:
                slot = self._slot(environment_id)
                if slot.state not in _RESTING_STATES or slot.pending is None:
                    return
                event = slot.pending
                slot.pending = None
                self._begin_cycle(slot)
            env = self.routes.environment(environment_id)
            self._start_cycle(env, event.commit_ref, mode=MODE_APPLY, auto_apply=env.auto_apply)
