"""Entry point for `python -m infra_reconciler` and the `reconcile` CLI script."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from infra_reconciler.errors import LockError, ReconcilerError
from infra_reconciler.executor import Executor
from infra_reconciler.graph import ResourceGraph
from infra_reconciler.models import CycleReport, PipelineState, PushEvent
from infra_reconciler.pipeline import PipelineController, stack_file_loader
from infra_reconciler.planner import Planner, render_plan
from infra_reconciler.provisioners import ProvisionerRegistry, RecordingProvisioner, load_registry
from infra_reconciler.settings import RuntimeSettings
from infra_reconciler.stack import BranchRoutes, load_stack, resolve_desired
from infra_reconciler.state_store import EnvironmentStateStore, LockPolicy


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan and apply infrastructure changes per environment")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument("--root", type=Path, default=None, help="Directory relative paths resolve against (default: cwd)")
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Show the change plan for an environment without taking the lock")
    plan.add_argument("--environment", required=True)
    plan.add_argument("--commit", default="", help="Commit ref recorded on the plan")

    apply = sub.add_parser("apply", help="Run a full plan/apply cycle for an environment")
    apply.add_argument("--environment", required=True)
    apply.add_argument("--commit", default="")
    apply.add_argument("--auto-approve", action="store_true", help="Skip the interactive approval gate")

    trigger = sub.add_parser("trigger", help="Handle a source-control push event")
    trigger.add_argument("--branch", required=True)
    trigger.add_argument("--commit", required=True)
    trigger.add_argument("--auto-approve", action="store_true")

    show = sub.add_parser("show-state", help="Print the committed snapshot and current lock")
    show.add_argument("--environment", required=True)

    unlock = sub.add_parser("force-unlock", help="Release a stale lock, or a live one by id")
    unlock.add_argument("--environment", required=True)
    unlock.add_argument("--lock-id", default=None)

    teardown = sub.add_parser("teardown", help="Destroy every module recorded for an environment")
    teardown.add_argument("--environment", required=True)
    teardown.add_argument("--auto-approve", action="store_true")
    return parser.parse_args(argv)


def build_store(settings: RuntimeSettings, root: Path) -> EnvironmentStateStore:
    return EnvironmentStateStore(
        settings.state_store_path(root),
        stale_after_seconds=settings.lock_stale_after_seconds,
        lock_timeout_seconds=settings.lock_timeout_seconds,
        poll_interval_seconds=settings.lock_poll_interval_seconds,
        policy=LockPolicy(settings.lock_policy),
    )


def build_registry(settings: RuntimeSettings) -> ProvisionerRegistry:
    if settings.provisioners:
        return load_registry(settings.provisioners)
    logging.warning("RECONCILER_PROVISIONERS is unset; using the recording provisioner (no real changes)")
    return ProvisionerRegistry(default=RecordingProvisioner())


def build_controller(settings: RuntimeSettings, root: Path) -> PipelineController:
    stack_path = settings.stack_path(root)
    stack = load_stack(stack_path)
    return PipelineController(
        routes=BranchRoutes.from_stack(stack),
        store=build_store(settings, root),
        executor=Executor(build_registry(settings), step_timeout_seconds=settings.step_timeout_seconds),
        config_loader=stack_file_loader(stack_path),
        checkpoint_path=settings.checkpoint_path(root),
    )


def _print_report(report: CycleReport) -> None:
    print(f"environment={report.environment_id}")
    print(f"final_state={report.final_state.value}")
    if report.plan is not None:
        print(render_plan(report.plan), end="")
    for step in report.applied:
        print(f"applied {step.action.value} {step.module_id}")
    if report.failed_module:
        print(f"failed_module={report.failed_module}")
    if report.error:
        print(f"error={report.error}")


def _await_decision(controller: PipelineController, environment_id: str, auto_approve: bool) -> CycleReport | None:
    if auto_approve:
        return controller.approve(environment_id)
    answer = input(f"Apply these changes to {environment_id}? Only 'yes' will be accepted: ").strip()
    if answer == "yes":
        return controller.approve(environment_id)
    return controller.reject(environment_id, "declined at prompt")


def _finish(controller: PipelineController, environment_id: str, report: CycleReport | None, auto_approve: bool) -> int:
    if report is None and controller.status(environment_id) == PipelineState.AWAITING_APPROVAL:
        print(controller.pending_approval(environment_id) or "", end="")
        report = _await_decision(controller, environment_id, auto_approve)
    if report is None:
        print(f"{environment_id}: cycle did not complete ({controller.status(environment_id).value})")
        return 1
    _print_report(report)
    return 0 if report.final_state == PipelineState.SUCCEEDED else 1


def _run_cycle(controller: PipelineController, event: PushEvent, auto_approve: bool) -> int:
    env = controller.routes.route(event)
    if env is None:
        print(f"branch {event.branch} is not mapped to an environment; nothing to do")
        return 0
    return _finish(controller, env.environment_id, controller.submit(event), auto_approve)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv()
    root = (args.root or Path.cwd()).resolve()

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        if args.command == "plan":
            stack = load_stack(settings.stack_path(root))
            desired = resolve_desired(stack, args.environment, args.commit)
            order = ResourceGraph(desired.modules).build()
            snapshot = build_store(settings, root).load_snapshot(args.environment)
            print(render_plan(Planner().plan(desired, snapshot, order)), end="")
            return 0

        if args.command == "show-state":
            store = build_store(settings, root)
            print(store.load_snapshot(args.environment).model_dump_json(indent=2))
            lock = store.read_lock(args.environment)
            print(f"lock={lock.model_dump_json() if lock is not None else 'none'}")
            return 0

        if args.command == "force-unlock":
            removed = build_store(settings, root).force_release(args.environment, lock_id=args.lock_id)
            print(f"released={removed.lock_id if removed is not None else 'none'}")
            return 0

        controller = build_controller(settings, root)
        try:
            if args.command == "teardown":
                report = controller.teardown(args.environment, auto_approve=False)
                return _finish(controller, args.environment, report, args.auto_approve)
            if args.command == "apply":
                env = controller.routes.environment(args.environment)
                event = PushEvent(branch=env.branch, commit_ref=args.commit)
            else:
                event = PushEvent(branch=args.branch, commit_ref=args.commit)
            return _run_cycle(controller, event, args.auto_approve)
        finally:
            controller.close()
    except LockError as exc:
        logging.error("Environment is locked: %s", exc)
        return 1
    except (ReconcilerError, OSError, ValueError, KeyError) as exc:
        logging.error("Reconcile failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
