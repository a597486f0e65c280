from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from .canonical import fingerprint_inputs
from .errors import ApplyCancelledError, PartialApplyError, ProvisionError, ReconcilerError, UnresolvedReferenceError
from .models import ActionType, AppliedStep, ChangePlan, ModuleSpec, ModuleState, PlanAction, StateSnapshot
from .planner import resolve_inputs
from .provisioners import ProvisionerRegistry, ProvisionRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")

StepCallback = Callable[[AppliedStep, StateSnapshot], None]


@dataclass
class ApplyOutcome:
    snapshot: StateSnapshot
    applied: list[AppliedStep] = field(default_factory=list)


class Executor:
    """Applies a change plan step by step, strictly in plan order.

    Failure policy is forward-only: the first failing step halts the apply,
    nothing already applied is rolled back, and the partial snapshot travels
    with the raised :class:`PartialApplyError`.
    """

    def __init__(self, registry: ProvisionerRegistry, *, step_timeout_seconds: float | None = 1_800.0) -> None:
        self.registry = registry
        self.step_timeout_seconds = step_timeout_seconds

    def apply(
        self,
        plan: ChangePlan,
        snapshot: StateSnapshot,
        *,
        cancel_event: threading.Event | None = None,
        on_step: StepCallback | None = None,
    ) -> ApplyOutcome:
        """Apply *plan* on top of *snapshot* and return the resulting snapshot.

        ``cancel_event`` is only checked between steps. ``on_step`` runs after
        every successful step with the snapshot as it stands.

        Raises:
            PartialApplyError: A step failed; carries every successful step.
            ApplyCancelledError: Cancellation was requested before a step.
        """
        if plan.environment_id != snapshot.environment_id:
            raise ValueError(f"plan is for {plan.environment_id!r}, snapshot is for {snapshot.environment_id!r}")

        working = snapshot.model_copy(deep=True)
        applied: list[AppliedStep] = []
        for action in plan.actions:
            if action.action == ActionType.NO_OP:
                state = working.modules.get(action.module_id)
                if state is not None:
                    state.depends_on = list(action.depends_on)
                continue

            if cancel_event is not None and cancel_event.is_set():
                logger.warning("apply for %s cancelled before %s", plan.environment_id, action.module_id)
                raise ApplyCancelledError(applied=applied, snapshot=working)

            logger.info("%s %s [%s]", action.action.value, action.module_id, action.kind)
            try:
                step = self._run_step(action, working)
            except ProvisionError as exc:
                logger.error("step %s %s failed: %s", action.action.value, action.module_id, exc.detail)
                raise PartialApplyError(applied=applied, snapshot=working, failed_action=action, cause=exc) from exc
            applied.append(step)

            if on_step is not None:
                try:
                    on_step(step, working)
                except ReconcilerError as exc:
                    raise PartialApplyError(applied=applied, snapshot=working, failed_action=None, cause=exc) from exc

        working.commit_ref = plan.commit_ref
        return ApplyOutcome(snapshot=working, applied=applied)

    def _run_step(self, action: PlanAction, working: StateSnapshot) -> AppliedStep:
        try:
            provisioner = self.registry.for_kind(action.kind)
        except KeyError as exc:
            raise ProvisionError(action.module_id, str(exc.args[0])) from exc

        if action.action == ActionType.DELETE:
            prior = working.modules.get(action.module_id)
            request = ProvisionRequest(
                module_id=action.module_id,
                kind=action.kind,
                inputs=dict(prior.inputs) if prior is not None else {},
                fingerprint=None,
                prior_fingerprint=action.prior_fingerprint,
                declared_outputs=list(action.outputs),
                prior_outputs=dict(prior.outputs) if prior is not None else {},
            )
            self._call(action.module_id, lambda: provisioner.destroy(request))
            working.modules.pop(action.module_id, None)
            return AppliedStep(module_id=action.module_id, action=action.action)

        module = ModuleSpec(
            module_id=action.module_id,
            kind=action.kind,
            depends_on=action.depends_on,
            outputs=action.outputs,
            inputs=action.inputs,
        )
        known_outputs = {module_id: state.outputs for module_id, state in working.modules.items()}
        try:
            resolved = resolve_inputs(module, known_outputs, strict=True)
        except UnresolvedReferenceError as exc:
            raise ProvisionError(action.module_id, str(exc)) from exc
        fingerprint = fingerprint_inputs(module.module_id, module.kind, resolved)
        prior = working.modules.get(action.module_id)
        request = ProvisionRequest(
            module_id=action.module_id,
            kind=action.kind,
            inputs=resolved,
            fingerprint=fingerprint,
            prior_fingerprint=action.prior_fingerprint,
            declared_outputs=list(action.outputs),
            prior_outputs=dict(prior.outputs) if prior is not None else {},
        )
        result = self._call(action.module_id, lambda: provisioner.apply(request))
        missing = [name for name in action.outputs if name not in result.outputs]
        if missing:
            raise ProvisionError(action.module_id, f"provisioner did not return declared outputs {missing}")

        outputs = dict(result.outputs)
        working.modules[action.module_id] = ModuleState(
            kind=action.kind,
            fingerprint=fingerprint,
            depends_on=list(action.depends_on),
            inputs=resolved,
            outputs=outputs,
        )
        return AppliedStep(module_id=action.module_id, action=action.action, fingerprint=fingerprint, outputs=outputs)

    def _call(self, module_id: str, fn: Callable[[], T]) -> T:
        """Run one collaborator call, bounded by the per-step timeout.

        A timed-out call keeps running in its worker thread; the apply halts
        regardless and the resource must be reconciled by the next run.
        """
        if self.step_timeout_seconds is None:
            return self._invoke(module_id, fn)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"provision-{module_id}")
        try:
            future = pool.submit(self._invoke, module_id, fn)
            done, _ = wait([future], timeout=self.step_timeout_seconds)
            if not done:
                raise ProvisionError(module_id, f"timed out after {self.step_timeout_seconds}s")
            return future.result()
        finally:
            pool.shutdown(wait=False)

    @staticmethod
    def _invoke(module_id: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except ProvisionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ProvisionError(module_id, f"{type(exc).__name__}: {exc}") from exc
