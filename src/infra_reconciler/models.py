from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
# Output names never contain a dot, so the last dot of a reference splits module from output.
OUTPUT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
OUTPUT_REF_KEY = "from_output"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _check_identifier(value: str, label: str) -> str:
    stripped = value.strip()
    if not IDENTIFIER_RE.match(stripped):
        raise ValueError(f"{label} must match {IDENTIFIER_RE.pattern}, got: {value!r}")
    return stripped


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


class OutputRef(StrictModel):
    """Reference from an input value to a dependency's declared output.

    Stack files spell it ``{"from_output": "network.vpc_id"}``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    module: str
    output: str

    @property
    def token(self) -> str:
        return f"{self.module}.{self.output}"

    @classmethod
    def parse(cls, value: Any) -> OutputRef | None:
        """Return the reference encoded by *value*, or ``None`` for a plain value."""
        if not isinstance(value, dict) or set(value) != {OUTPUT_REF_KEY}:
            return None
        raw = value[OUTPUT_REF_KEY]
        if not isinstance(raw, str) or raw.count(".") < 1:
            raise ValueError(f"{OUTPUT_REF_KEY} must be '<module>.<output>', got: {raw!r}")
        module, output = raw.rsplit(".", 1)
        if not module or not output:
            raise ValueError(f"{OUTPUT_REF_KEY} must be '<module>.<output>', got: {raw!r}")
        return cls(module=module, output=output)


def iter_output_refs(value: Any) -> list[OutputRef]:
    """Collect every reference nested anywhere inside an input value."""
    ref = OutputRef.parse(value)
    if ref is not None:
        return [ref]
    found: list[OutputRef] = []
    if isinstance(value, dict):
        for item in value.values():
            found.extend(iter_output_refs(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(iter_output_refs(item))
    return found


class ModuleSpec(StrictModel):
    """A named, independently provisionable unit of infrastructure."""

    module_id: str
    kind: str
    depends_on: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    inputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("module_id", "kind")
    @classmethod
    def _identifier(cls, value: str) -> str:
        return _check_identifier(value, "module_id/kind")

    @field_validator("depends_on", "outputs")
    @classmethod
    def _unique(cls, values: list[str]) -> list[str]:
        if len(set(values)) != len(values):
            raise ValueError(f"entries must be unique, got: {values}")
        return values

    @field_validator("outputs")
    @classmethod
    def _output_names(cls, values: list[str]) -> list[str]:
        for name in values:
            if not OUTPUT_NAME_RE.match(name):
                raise ValueError(f"output names must match {OUTPUT_NAME_RE.pattern}, got: {name!r}")
        return values


class EnvironmentSpec(StrictModel):
    environment_id: str
    branch: str
    auto_apply: bool = False
    overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("environment_id")
    @classmethod
    def _identifier(cls, value: str) -> str:
        return _check_identifier(value, "environment_id")

    @field_validator("branch")
    @classmethod
    def _branch(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("branch must be non-empty")
        return value.strip()


class StackDefinition(StrictModel):
    """Module catalog plus the environment table, as read from a stack file."""

    modules: list[ModuleSpec]
    environments: list[EnvironmentSpec]

    @model_validator(mode="after")
    def _unique_environments(self) -> StackDefinition:
        seen_ids: set[str] = set()
        seen_branches: dict[str, str] = {}
        for env in self.environments:
            if env.environment_id in seen_ids:
                raise ValueError(f"duplicate environment_id: {env.environment_id}")
            seen_ids.add(env.environment_id)
            if env.branch in seen_branches:
                raise ValueError(
                    f"branch {env.branch!r} is mapped to both {seen_branches[env.branch]!r} "
                    f"and {env.environment_id!r}"
                )
            seen_branches[env.branch] = env.environment_id
        return self

    def environment(self, environment_id: str) -> EnvironmentSpec:
        for env in self.environments:
            if env.environment_id == environment_id:
                return env
        raise KeyError(f"unknown environment: {environment_id}")


class DesiredConfiguration(StrictModel):
    """Fully resolved target state for one environment; immutable for a cycle."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    environment_id: str
    commit_ref: str = ""
    modules: list[ModuleSpec] = Field(default_factory=list)

    def by_id(self) -> dict[str, ModuleSpec]:
        return {module.module_id: module for module in self.modules}


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------


class ModuleState(StrictModel):
    kind: str
    fingerprint: str
    depends_on: list[str] = Field(default_factory=list)
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    applied_at: datetime = Field(default_factory=utc_now)


class StateSnapshot(StrictModel):
    """Last successfully applied state of one environment."""

    environment_id: str
    serial: int = 0
    lineage: str = ""
    commit_ref: str = ""
    updated_at: datetime | None = None
    modules: dict[str, ModuleState] = Field(default_factory=dict)

    @classmethod
    def empty(cls, environment_id: str) -> StateSnapshot:
        return cls(environment_id=environment_id)

    @property
    def is_empty(self) -> bool:
        return self.serial == 0 and not self.modules


class LockRecord(StrictModel):
    lock_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    environment_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at


# ---------------------------------------------------------------------------
# Plans and apply results
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


class PlanAction(StrictModel):
    module_id: str
    kind: str
    action: ActionType
    reason: str
    prior_fingerprint: str | None = None
    fingerprint: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    inputs: dict[str, Any] = Field(default_factory=dict)


class ChangePlan(StrictModel):
    environment_id: str
    commit_ref: str = ""
    base_serial: int = 0
    actions: list[PlanAction] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(action.action != ActionType.NO_OP for action in self.actions)

    def count(self, action_type: ActionType) -> int:
        return sum(1 for action in self.actions if action.action == action_type)

    def summary(self) -> str:
        return (
            f"{self.count(ActionType.CREATE)} to create, "
            f"{self.count(ActionType.UPDATE)} to update, "
            f"{self.count(ActionType.DELETE)} to delete, "
            f"{self.count(ActionType.NO_OP)} unchanged"
        )


class AppliedStep(StrictModel):
    module_id: str
    action: ActionType
    fingerprint: str | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class PushEvent(StrictModel):
    branch: str
    commit_ref: str


class PipelineState(str, Enum):
    IDLE = "Idle"
    PLANNING = "Planning"
    AWAITING_APPROVAL = "AwaitingApproval"
    APPLYING = "Applying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class CycleReport(StrictModel):
    """Operator-facing record of one plan/apply cycle."""

    cycle_id: str = Field(default_factory=lambda: f"CYC-{uuid.uuid4().hex[:12]}")
    environment_id: str
    commit_ref: str = ""
    final_state: PipelineState
    plan: ChangePlan | None = None
    applied: list[AppliedStep] = Field(default_factory=list)
    failed_module: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
