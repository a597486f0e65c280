from __future__ import annotations

import logging
from typing import Any, Collection, Mapping, Sequence

from .canonical import fingerprint_inputs
from .errors import UnresolvedReferenceError
from .graph import ResourceGraph
from .models import (
    ActionType,
    ChangePlan,
    DesiredConfiguration,
    ModuleSpec,
    OutputRef,
    PlanAction,
    StateSnapshot,
    iter_output_refs,
)

logger = logging.getLogger(__name__)

PENDING_VALUE = "(known after apply: {token})"

_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.DELETE: "-",
    ActionType.NO_OP: " ",
}


def validate_references(module: ModuleSpec, modules: Mapping[str, ModuleSpec]) -> None:
    """Check that every ``from_output`` in *module* names a declared output of a dependency.

    Raises:
        UnresolvedReferenceError: On a malformed reference, a non-dependency, or an undeclared output.
    """
    for name, value in module.inputs.items():
        try:
            refs = iter_output_refs(value)
        except ValueError as exc:
            raise UnresolvedReferenceError(module.module_id, name, str(exc)) from exc
        for ref in refs:
            if ref.module not in module.depends_on:
                raise UnresolvedReferenceError(
                    module.module_id, ref.token, f"{ref.module!r} is not listed in depends_on"
                )
            target = modules.get(ref.module)
            if target is not None and ref.output not in target.outputs:
                raise UnresolvedReferenceError(
                    module.module_id, ref.token, f"{ref.module!r} does not declare output {ref.output!r}"
                )


def resolve_inputs(
    module: ModuleSpec,
    outputs_by_module: Mapping[str, Mapping[str, Any]],
    *,
    pending: Collection[str] = (),
    strict: bool = False,
) -> dict[str, Any]:
    """Replace every output reference in the module's inputs with its value.

    References to a module in *pending* (or whose value is not known yet)
    become a ``known after apply`` marker. With ``strict=True`` an unknown
    value raises instead.
    """

    def _resolve(value: Any) -> Any:
        ref = OutputRef.parse(value)
        if ref is not None:
            known = outputs_by_module.get(ref.module)
            if ref.module not in pending and known is not None and ref.output in known:
                return known[ref.output]
            if strict:
                raise UnresolvedReferenceError(module.module_id, ref.token, "output value is not available")
            return PENDING_VALUE.format(token=ref.token)
        if isinstance(value, dict):
            return {key: _resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [_resolve(item) for item in value]
        return value

    return {name: _resolve(value) for name, value in module.inputs.items()}


class Planner:
    """Diffs a desired configuration against the last applied snapshot."""

    def plan(self, desired: DesiredConfiguration, snapshot: StateSnapshot, order: list[str]) -> ChangePlan:
        """Classify every module as create/update/delete/no-op in execution order.

        Creates, updates and no-ops follow *order*. A module whose dependency
        is being created or updated is itself updated, since the outputs it
        consumes may change at apply time. Deletions come last, dependents
        before their dependencies.

        Raises:
            UnresolvedReferenceError: An input references something it may not.
            ValueError: *order* does not cover exactly the desired modules.
        """
        if desired.environment_id != snapshot.environment_id:
            raise ValueError(
                f"desired configuration is for {desired.environment_id!r}, "
                f"snapshot is for {snapshot.environment_id!r}"
            )
        modules = desired.by_id()
        if sorted(order) != sorted(modules):
            raise ValueError(f"order {order} does not match desired modules {sorted(modules)}")

        prior_outputs = {module_id: state.outputs for module_id, state in snapshot.modules.items()}
        changing: set[str] = set()
        actions: list[PlanAction] = []

        planned: set[str] = set()
        for module_id in order:
            module = modules[module_id]
            validate_references(module, modules)
            for dep in module.depends_on:
                if dep not in planned:
                    raise ValueError(f"order places {module_id!r} before its dependency {dep!r}")
            planned.add(module_id)

            resolved = resolve_inputs(module, prior_outputs, pending=changing)
            fingerprint = fingerprint_inputs(module.module_id, module.kind, resolved)
            prior = snapshot.modules.get(module_id)
            changing_deps = [dep for dep in module.depends_on if dep in changing]

            if prior is None:
                action, reason = ActionType.CREATE, "not in state"
            elif changing_deps:
                action, reason = ActionType.UPDATE, f"dependency {changing_deps[0]} is changing"
            elif prior.fingerprint != fingerprint or prior.kind != module.kind:
                action, reason = ActionType.UPDATE, "inputs changed"
            else:
                action, reason = ActionType.NO_OP, "unchanged"

            if action in (ActionType.CREATE, ActionType.UPDATE):
                changing.add(module_id)
            actions.append(
                PlanAction(
                    module_id=module_id,
                    kind=module.kind,
                    action=action,
                    reason=reason,
                    prior_fingerprint=prior.fingerprint if prior is not None else None,
                    fingerprint=fingerprint,
                    depends_on=list(module.depends_on),
                    outputs=list(module.outputs),
                    inputs=dict(module.inputs),
                )
            )

        removed = [module_id for module_id in snapshot.modules if module_id not in modules]
        actions.extend(self._delete_actions(snapshot, removed, reason="removed from configuration"))

        plan = ChangePlan(
            environment_id=desired.environment_id,
            commit_ref=desired.commit_ref,
            base_serial=snapshot.serial,
            actions=actions,
        )
        logger.info("plan for %s@%s: %s", plan.environment_id, plan.commit_ref or "-", plan.summary())
        return plan

    def plan_teardown(
        self, snapshot: StateSnapshot, *, commit_ref: str = "", declared: Sequence[str] = ()
    ) -> ChangePlan:
        """Delete every recorded module, dependents first.

        Independent modules are torn down in reverse *declared* order when the
        stack is known, so the result is the exact reverse of the build order;
        modules missing from *declared* keep their recorded order.
        """
        rank = {module_id: idx for idx, module_id in enumerate(declared)}
        recorded = sorted(snapshot.modules, key=lambda module_id: rank.get(module_id, len(rank)))
        actions = self._delete_actions(snapshot, recorded, reason="teardown")
        return ChangePlan(
            environment_id=snapshot.environment_id,
            commit_ref=commit_ref,
            base_serial=snapshot.serial,
            actions=actions,
        )

    @staticmethod
    def _delete_actions(snapshot: StateSnapshot, removed: list[str], *, reason: str) -> list[PlanAction]:
        # Removed modules are gone from the desired graph, so order them by the
        # edges recorded when they were applied.
        removed_set = set(removed)
        edges = {
            module_id: [dep for dep in snapshot.modules[module_id].depends_on if dep in removed_set]
            for module_id in removed
        }
        order = ResourceGraph.from_edges(edges).teardown_order()
        actions: list[PlanAction] = []
        for module_id in order:
            state = snapshot.modules[module_id]
            actions.append(
                PlanAction(
                    module_id=module_id,
                    kind=state.kind,
                    action=ActionType.DELETE,
                    reason=reason,
                    prior_fingerprint=state.fingerprint,
                    depends_on=list(state.depends_on),
                    outputs=sorted(state.outputs),
                )
            )
        return actions


def render_plan(plan: ChangePlan) -> str:
    lines = [f"Plan for {plan.environment_id} at {plan.commit_ref or '(no commit)'} (base serial {plan.base_serial}):"]
    for action in plan.actions:
        lines.append(f"  {_SYMBOLS[action.action]} {action.action.value:<6} {action.module_id} [{action.kind}] ({action.reason})")
    if not plan.actions:
        lines.append("  (no modules)")
    lines.append(f"Plan: {plan.summary()}.")
    return "\n".join(lines) + "\n"
