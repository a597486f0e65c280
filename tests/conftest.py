from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from infra_reconciler.executor import Executor
from infra_reconciler.models import DesiredConfiguration, ModuleSpec
from infra_reconciler.provisioners import ProvisionerRegistry, RecordingProvisioner
from infra_reconciler.state_store import EnvironmentStateStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def module(module_id: str, *deps: str, outputs: list[str] | None = None, kind: str | None = None, **inputs) -> ModuleSpec:  # noqa: ANN003
    return ModuleSpec(
        module_id=module_id,
        kind=kind or module_id,
        depends_on=list(deps),
        outputs=outputs if outputs is not None else ["id"],
        inputs=inputs,
    )


def ref(token: str) -> dict[str, str]:
    return {"from_output": token}


def platform_modules(*, cidr: str = "10.0.0.0/16", node_count: int = 3) -> list[ModuleSpec]:
    return [
        module("network", outputs=["vpc_id", "subnet_ids"], cidr=cidr),
        module("cluster", "network", outputs=["endpoint"], vpc_id=ref("network.vpc_id"), version="1.29"),
        module("node-pool", "cluster", kind="node_pool", outputs=["pool_id"], cluster=ref("cluster.endpoint"), count=node_count),
        module("storage-addon", "cluster", kind="addon", outputs=["release"], cluster=ref("cluster.endpoint"), chart="ebs-csi"),
        module("ingress-addon", "cluster", kind="addon", outputs=["release"], cluster=ref("cluster.endpoint"), chart="nginx"),
    ]


def desired(modules: list[ModuleSpec], *, environment_id: str = "dev", commit_ref: str = "c1") -> DesiredConfiguration:
    return DesiredConfiguration(environment_id=environment_id, commit_ref=commit_ref, modules=modules)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> EnvironmentStateStore:
    return EnvironmentStateStore(tmp_path / "state", stale_after_seconds=600, lock_timeout_seconds=2, poll_interval_seconds=0.05)


@pytest.fixture
def recorder() -> RecordingProvisioner:
    return RecordingProvisioner()


@pytest.fixture
def executor(recorder: RecordingProvisioner) -> Executor:
    return Executor(ProvisionerRegistry(default=recorder), step_timeout_seconds=None)
