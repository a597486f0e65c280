"""Exception taxonomy for the reconciler.

Every failure ends the current plan/apply cycle. Recovery is always a fresh
triggered run, which re-plans against whatever snapshot was last committed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AppliedStep, LockRecord, PlanAction, StateSnapshot


class ReconcilerError(Exception):
    """Root of every error raised by this package."""


# ---------------------------------------------------------------------------
# Graph errors: fatal to the cycle, raised before any lock is taken
# ---------------------------------------------------------------------------


class GraphError(ReconcilerError):
    """The module dependency graph or its references are invalid."""


class CycleError(GraphError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownDependencyError(GraphError):
    def __init__(self, module_id: str, dependency: str) -> None:
        self.module_id = module_id
        self.dependency = dependency
        super().__init__(f"module {module_id!r} depends on unknown module {dependency!r}")


class DuplicateModuleError(GraphError):
    def __init__(self, module_id: str) -> None:
        self.module_id = module_id
        super().__init__(f"module {module_id!r} is declared more than once")


class UnresolvedReferenceError(GraphError):
    def __init__(self, module_id: str, reference: str, reason: str) -> None:
        self.module_id = module_id
        self.reference = reference
        super().__init__(f"module {module_id!r} references {reference!r}: {reason}")


# ---------------------------------------------------------------------------
# Lock errors: fatal to the cycle, safe to retry later
# ---------------------------------------------------------------------------


class LockError(ReconcilerError):
    """The environment lock could not be obtained or is no longer valid."""


class LockHeldError(LockError):
    def __init__(self, environment_id: str, holder: LockRecord, *, stale: bool = False) -> None:
        self.environment_id = environment_id
        self.holder = holder
        self.stale = stale
        hint = " (stale; force-release to recover)" if stale else ""
        super().__init__(
            f"environment {environment_id!r} is locked by {holder.owner} "
            f"(lock {holder.lock_id}, expires {holder.expires_at.isoformat()}){hint}"
        )


class LockExpiredError(LockError):
    def __init__(self, environment_id: str, lock_id: str) -> None:
        self.environment_id = environment_id
        self.lock_id = lock_id
        super().__init__(f"lock {lock_id} on environment {environment_id!r} is expired or no longer held")


class StalePlanError(LockError):
    def __init__(self, environment_id: str, planned_serial: int, current_serial: int) -> None:
        self.environment_id = environment_id
        self.planned_serial = planned_serial
        self.current_serial = current_serial
        super().__init__(
            f"plan for {environment_id!r} was computed against snapshot serial {planned_serial}, "
            f"but the stored snapshot is at serial {current_serial}"
        )


# ---------------------------------------------------------------------------
# Apply errors
# ---------------------------------------------------------------------------


class ProvisionError(ReconcilerError):
    """A single step's call into the provisioning collaborator failed."""

    def __init__(self, module_id: str, detail: str) -> None:
        self.module_id = module_id
        self.detail = detail
        super().__init__(f"provisioning {module_id!r} failed: {detail}")


class PartialApplyError(ReconcilerError):
    """An apply halted after some steps succeeded.

    ``snapshot`` already reflects every successful step; the caller must commit
    it before surfacing the error.
    """

    def __init__(
        self,
        *,
        applied: list[AppliedStep],
        snapshot: StateSnapshot,
        failed_action: PlanAction | None,
        cause: ReconcilerError | None,
    ) -> None:
        self.applied = list(applied)
        self.snapshot = snapshot
        self.failed_action = failed_action
        self.cause = cause
        if failed_action is not None:
            message = (
                f"apply halted at {failed_action.action.value} {failed_action.module_id!r} "
                f"after {len(self.applied)} successful step(s): {cause}"
            )
        else:
            message = f"apply halted after {len(self.applied)} successful step(s): {cause}"
        super().__init__(message)


class ApplyCancelledError(PartialApplyError):
    """Cancellation was honoured between two steps."""

    def __init__(self, *, applied: list[AppliedStep], snapshot: StateSnapshot) -> None:
        super().__init__(applied=applied, snapshot=snapshot, failed_action=None, cause=None)

    def __str__(self) -> str:
        return f"apply cancelled after {len(self.applied)} successful step(s)"
