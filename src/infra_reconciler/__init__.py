from importlib.metadata import version

from .canonical import fingerprint_inputs, to_canonical_json
from .errors import (
    ApplyCancelledError,
    CycleError,
    DuplicateModuleError,
    GraphError,
    LockError,
    LockExpiredError,
    LockHeldError,
    PartialApplyError,
    ProvisionError,
    ReconcilerError,
    StalePlanError,
    UnknownDependencyError,
    UnresolvedReferenceError,
)
from .executor import ApplyOutcome, Executor
from .graph import ResourceGraph
from .models import (
    ActionType,
    AppliedStep,
    ChangePlan,
    CycleReport,
    DesiredConfiguration,
    EnvironmentSpec,
    LockRecord,
    ModuleSpec,
    ModuleState,
    OutputRef,
    PipelineState,
    PlanAction,
    PushEvent,
    StackDefinition,
    StateSnapshot,
)
from .pipeline import PipelineController, stack_file_loader
from .planner import Planner, render_plan
from .provisioners import Provisioner, ProvisionerRegistry, ProvisionRequest, ProvisionResult, RecordingProvisioner
from .stack import BranchRoutes, load_stack, resolve_desired
from .state_store import EnvironmentStateStore, LockPolicy


def get_version() -> str:
    try:
        return version("infra-reconciler")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActionType",
    "AppliedStep",
    "ApplyCancelledError",
    "ApplyOutcome",
    "BranchRoutes",
    "ChangePlan",
    "CycleError",
    "CycleReport",
    "DesiredConfiguration",
    "DuplicateModuleError",
    "EnvironmentSpec",
    "EnvironmentStateStore",
    "Executor",
    "GraphError",
    "LockError",
    "LockExpiredError",
    "LockHeldError",
    "LockPolicy",
    "LockRecord",
    "ModuleSpec",
    "ModuleState",
    "OutputRef",
    "PartialApplyError",
    "PipelineController",
    "PipelineState",
    "PlanAction",
    "Planner",
    "ProvisionError",
    "ProvisionRequest",
    "ProvisionResult",
    "Provisioner",
    "ProvisionerRegistry",
    "PushEvent",
    "ReconcilerError",
    "RecordingProvisioner",
    "ResourceGraph",
    "StackDefinition",
    "StalePlanError",
    "StateSnapshot",
    "UnknownDependencyError",
    "UnresolvedReferenceError",
    "fingerprint_inputs",
    "get_version",
    "load_stack",
    "render_plan",
    "resolve_desired",
    "stack_file_loader",
    "to_canonical_json",
]
