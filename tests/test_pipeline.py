from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

import pytest
from langgraph.checkpoint.memory import InMemorySaver

from conftest import FakeClock, desired, module, platform_modules
from infra_reconciler import (
    BranchRoutes,
    DesiredConfiguration,
    EnvironmentSpec,
    EnvironmentStateStore,
    Executor,
    PipelineController,
    PipelineState,
    ProvisionerRegistry,
    ProvisionRequest,
    ProvisionResult,
    PushEvent,
    ReconcilerError,
    RecordingProvisioner,
    ResourceGraph,
    StateSnapshot,
)

ModuleFactory = Callable[[], list]


def _controller(
    store: EnvironmentStateStore,
    *,
    modules: ModuleFactory = platform_modules,
    auto_apply: bool = True,
    provisioner: RecordingProvisioner | None = None,
    seen: list[str] | None = None,
) -> PipelineController:
    def _load(env: EnvironmentSpec, event: PushEvent) -> DesiredConfiguration:
        if seen is not None:
            seen.append(event.commit_ref)
        return desired(modules(), environment_id=env.environment_id, commit_ref=event.commit_ref)

    routes = BranchRoutes(
        [
            EnvironmentSpec(environment_id="dev", branch="main", auto_apply=auto_apply),
            EnvironmentSpec(environment_id="prod", branch="release", auto_apply=False),
        ]
    )
    executor = Executor(ProvisionerRegistry(default=provisioner or RecordingProvisioner()), step_timeout_seconds=None)
    return PipelineController(
        routes=routes,
        store=store,
        executor=executor,
        config_loader=_load,
        checkpointer=InMemorySaver(),
    )


def _push(commit_ref: str, branch: str = "main") -> PushEvent:
    return PushEvent(branch=branch, commit_ref=commit_ref)


def test_auto_apply_cycle_succeeds_and_records_state(store: EnvironmentStateStore) -> None:
    controller = _controller(store)
    report = controller.submit(_push("c1"))

    assert report is not None
    assert report.final_state == PipelineState.SUCCEEDED
    assert [step.module_id for step in report.applied] == [
        "network",
        "cluster",
        "node-pool",
        "storage-addon",
        "ingress-addon",
    ]
    snapshot = store.load_snapshot("dev")
    assert snapshot.commit_ref == "c1"
    assert len(snapshot.modules) == 5
    assert store.read_lock("dev") is None
    assert controller.status("dev") == PipelineState.SUCCEEDED
    assert store.list_reports("dev") == [report.cycle_id]
    assert store.read_report("dev", report.cycle_id).final_state == PipelineState.SUCCEEDED


def test_unmapped_branch_is_ignored(store: EnvironmentStateStore) -> None:
    controller = _controller(store)
    assert controller.submit(_push("c1", branch="feature/x")) is None
    assert store.list_reports("dev") == []
    assert controller.status("dev") == PipelineState.IDLE


def test_unchanged_configuration_succeeds_without_applying(store: EnvironmentStateStore) -> None:
    controller = _controller(store)
    controller.submit(_push("c1"))
    report = controller.submit(_push("c2"))

    assert report is not None
    assert report.final_state == PipelineState.SUCCEEDED
    assert report.applied == []
    assert report.plan is not None and not report.plan.has_changes
    assert store.load_snapshot("dev").serial == 6
    assert store.read_lock("dev") is None


def test_manual_approval_gate_holds_lock_until_approved(store: EnvironmentStateStore) -> None:
    controller = _controller(store, auto_apply=False)
    assert controller.submit(_push("c1")) is None

    assert controller.status("dev") == PipelineState.AWAITING_APPROVAL
    rendered = controller.pending_approval("dev")
    assert rendered is not None and "+ create network [network]" in rendered
    assert store.read_lock("dev") is not None
    assert store.load_snapshot("dev").is_empty

    report = controller.approve("dev")
    assert report is not None and report.final_state == PipelineState.SUCCEEDED
    assert len(store.load_snapshot("dev").modules) == 5
    assert store.read_lock("dev") is None
    assert controller.pending_approval("dev") is None


def test_rejected_plan_fails_without_applying(store: EnvironmentStateStore) -> None:
    provisioner = RecordingProvisioner()
    controller = _controller(store, auto_apply=False, provisioner=provisioner)
    controller.submit(_push("c1"))

    report = controller.reject("dev", "not during the freeze")
    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert report.error == "plan rejected: not during the freeze"
    assert provisioner.calls == []
    assert store.load_snapshot("dev").is_empty
    assert store.read_lock("dev") is None
    assert controller.status("dev") == PipelineState.FAILED


def test_approve_requires_a_waiting_cycle(store: EnvironmentStateStore) -> None:
    controller = _controller(store)
    with pytest.raises(ReconcilerError):
        controller.approve("dev")


def test_graph_error_fails_before_locking(store: EnvironmentStateStore) -> None:
    def _cyclic() -> list:
        return [module("a", "b"), module("b", "a")]

    controller = _controller(store, modules=_cyclic)
    report = controller.submit(_push("c1"))

    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert report.plan is None
    assert "cycle" in (report.error or "")
    assert store.read_lock("dev") is None
    assert not store.snapshot_path("dev").exists()


def test_partial_failure_commits_completed_steps(store: EnvironmentStateStore) -> None:
    class _FailCluster(RecordingProvisioner):
        def apply(self, request: ProvisionRequest) -> ProvisionResult:
            if request.module_id == "cluster":
                raise RuntimeError("api unavailable")
            return super().apply(request)

    controller = _controller(store, provisioner=_FailCluster())
    report = controller.submit(_push("c1"))

    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert report.failed_module == "cluster"
    assert [step.module_id for step in report.applied] == ["network"]
    assert sorted(store.load_snapshot("dev").modules) == ["network"]
    assert store.read_lock("dev") is None
    assert controller.status("dev") == PipelineState.FAILED


def test_events_during_a_cycle_coalesce_to_the_newest(store: EnvironmentStateStore) -> None:
    seen: list[str] = []
    holder: dict[str, PipelineController] = {}

    class _PushDuringApply(RecordingProvisioner):
        def apply(self, request: ProvisionRequest) -> ProvisionResult:
            if request.module_id == "network" and len(seen) == 1:
                for commit_ref in ("c2", "c3", "c4"):
                    assert holder["controller"].submit(_push(commit_ref)) is None
                assert holder["controller"].pending("dev") == _push("c4")
            return super().apply(request)

    controller = _controller(store, provisioner=_PushDuringApply(), seen=seen)
    holder["controller"] = controller
    first = controller.submit(_push("c1"))

    assert first is not None and first.commit_ref == "c1"
    assert seen == ["c1", "c4"]
    history = controller.history("dev")
    assert [report.commit_ref for report in history] == ["c1", "c4"]
    assert all(report.final_state == PipelineState.SUCCEEDED for report in history)
    assert controller.pending("dev") is None
    assert store.load_snapshot("dev").commit_ref == "c4"


def test_lock_held_elsewhere_fails_the_cycle(store: EnvironmentStateStore) -> None:
    other = EnvironmentStateStore(store.root, owner="other-runner")
    other.acquire_lock("dev")
    controller = _controller(store)

    report = controller.submit(_push("c1"))
    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert "other-runner" in (report.error or "")
    holder = store.read_lock("dev")
    assert holder is not None and holder.owner == "other-runner"


def test_cancel_during_apply_stops_before_next_step(store: EnvironmentStateStore) -> None:
    holder: dict[str, PipelineController] = {}

    class _CancelAfterNetwork(RecordingProvisioner):
        def apply(self, request: ProvisionRequest) -> ProvisionResult:
            result = super().apply(request)
            if request.module_id == "network":
                assert holder["controller"].cancel("dev")
            return result

    controller = _controller(store, provisioner=_CancelAfterNetwork())
    holder["controller"] = controller
    report = controller.submit(_push("c1"))

    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert report.error == "apply cancelled after 1 successful step(s)"
    assert sorted(store.load_snapshot("dev").modules) == ["network"]
    assert store.read_lock("dev") is None


def test_cancel_while_awaiting_approval_rejects(store: EnvironmentStateStore) -> None:
    controller = _controller(store, auto_apply=False)
    controller.submit(_push("c1"))
    assert controller.cancel("dev")
    assert controller.status("dev") == PipelineState.FAILED
    assert controller.history("dev")[-1].error == "plan rejected: cancelled"
    assert not controller.cancel("dev")


def test_plan_is_rejected_when_snapshot_moved_on(store: EnvironmentStateStore) -> None:
    controller = _controller(store, auto_apply=False)
    controller.submit(_push("c1"))
    assert store.read_lock("dev") is not None

    # Snapshot advanced behind the lock holder's back.
    moved = StateSnapshot(environment_id="dev", serial=1, lineage="elsewhere")
    store.snapshot_path("dev").write_text(moved.model_dump_json(), encoding="utf-8")

    report = controller.approve("dev")
    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert "serial 0" in (report.error or "")
    assert store.load_snapshot("dev").serial == 1


def test_teardown_destroys_dependents_first(store: EnvironmentStateStore) -> None:
    provisioner = RecordingProvisioner()
    controller = _controller(store, provisioner=provisioner)
    controller.submit(_push("c1"))
    provisioner.calls.clear()

    report = controller.teardown("dev")
    assert report is not None and report.final_state == PipelineState.SUCCEEDED
    destroyed = [module_id for call, module_id in provisioner.calls if call == "destroy"]
    assert destroyed[-1] == "network"
    assert destroyed.index("node-pool") < destroyed.index("cluster")
    assert destroyed == ResourceGraph(platform_modules()).teardown_order()
    assert store.load_snapshot("dev").modules == {}


def test_teardown_refuses_a_busy_environment(store: EnvironmentStateStore) -> None:
    controller = _controller(store, auto_apply=False)
    controller.submit(_push("c1"))
    with pytest.raises(ReconcilerError):
        controller.teardown("dev")


def test_environments_progress_independently(store: EnvironmentStateStore) -> None:
    controller = _controller(store)
    controller.submit(_push("r1", branch="release"))
    assert controller.status("prod") == PipelineState.AWAITING_APPROVAL

    report = controller.submit(_push("c1"))
    assert report is not None and report.final_state == PipelineState.SUCCEEDED
    assert store.load_snapshot("prod").is_empty
    assert controller.status("prod") == PipelineState.AWAITING_APPROVAL


def test_approval_after_lock_went_stale_applies_nothing(tmp_path: Path, clock: FakeClock) -> None:
    store = EnvironmentStateStore(tmp_path / "state", stale_after_seconds=600, clock=clock)
    provisioner = RecordingProvisioner()
    controller = _controller(store, auto_apply=False, provisioner=provisioner)
    controller.submit(_push("c1"))

    clock.advance(601)
    report = controller.approve("dev")

    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert "expired or no longer held" in (report.error or "")
    assert provisioner.calls == []
    assert store.load_snapshot("dev").is_empty


def test_approval_after_lock_takeover_leaves_new_holder_alone(tmp_path: Path, clock: FakeClock) -> None:
    store = EnvironmentStateStore(tmp_path / "state", stale_after_seconds=600, clock=clock)
    provisioner = RecordingProvisioner()
    controller = _controller(store, auto_apply=False, provisioner=provisioner)
    controller.submit(_push("c1"))

    clock.advance(601)
    other = EnvironmentStateStore(store.root, stale_after_seconds=600, clock=clock, owner="runner-b")
    taken = other.acquire_lock("dev", force=True)
    report = controller.approve("dev")

    assert report is not None
    assert report.final_state == PipelineState.FAILED
    assert provisioner.calls == []
    assert store.load_snapshot("dev").is_empty
    holder = store.read_lock("dev")
    assert holder is not None and holder.lock_id == taken.lock_id


def test_event_at_rest_supersedes_a_queued_event(store: EnvironmentStateStore, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[str] = []
    holder: dict[str, PipelineController] = {}

    class _PushDuringApply(RecordingProvisioner):
        def apply(self, request: ProvisionRequest) -> ProvisionResult:
            if request.module_id == "network" and seen == ["c1"]:
                assert holder["controller"].submit(_push("c2")) is None
            return super().apply(request)

    controller = _controller(store, provisioner=_PushDuringApply(), seen=seen)
    holder["controller"] = controller

    # Hold the first submitter between finishing c1 and draining its queue.
    reached_drain = threading.Event()
    release_drain = threading.Event()
    drain = controller._drain
    delayed: list[bool] = [True]

    def _delayed_drain(environment_id: str) -> None:
        if delayed and delayed.pop():
            reached_drain.set()
            release_drain.wait(timeout=10)
        drain(environment_id)

    monkeypatch.setattr(controller, "_drain", _delayed_drain)
    first = threading.Thread(target=controller.submit, args=(_push("c1"),))
    first.start()
    assert reached_drain.wait(timeout=10)
    assert controller.pending("dev") == _push("c2")

    report = controller.submit(_push("c3"))
    release_drain.set()
    first.join(timeout=10)

    assert report is not None and report.commit_ref == "c3"
    assert seen == ["c1", "c3"]
    assert [r.commit_ref for r in controller.history("dev")] == ["c1", "c3"]
    assert controller.pending("dev") is None
    assert store.load_snapshot("dev").commit_ref == "c3"


def test_status_reports_terminal_state_until_next_cycle(store: EnvironmentStateStore) -> None:
    controller = _controller(store, auto_apply=False)
    assert controller.status("dev") == PipelineState.IDLE
    controller.submit(_push("c1"))
    controller.reject("dev", "wrong window")
    assert controller.status("dev") == PipelineState.FAILED

    assert controller.submit(_push("c2")) is None
    assert controller.status("dev") == PipelineState.AWAITING_APPROVAL
    controller.approve("dev")
    assert controller.status("dev") == PipelineState.SUCCEEDED
