from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from .models import DesiredConfiguration, EnvironmentSpec, ModuleSpec, PushEvent, StackDefinition

logger = logging.getLogger(__name__)


def load_stack(path: Path) -> StackDefinition:
    """Read and validate a JSON stack file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, not UTF-8, or fails validation.
    """
    if not path.is_file():
        raise FileNotFoundError(f"stack file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"stack file at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"stack file at {path} is empty")
    try:
        return StackDefinition.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"stack file at {path} failed validation: {exc}") from exc


def resolve_desired(stack: StackDefinition, environment_id: str, commit_ref: str = "") -> DesiredConfiguration:
    """Apply one environment's overrides to the module catalog.

    Overrides replace whole parameters and may only target declared ones.
    """
    env = stack.environment(environment_id)
    catalog = {module.module_id: module for module in stack.modules}
    unknown = sorted(set(env.overrides) - set(catalog))
    if unknown:
        raise ValueError(f"environment {environment_id!r} overrides unknown modules: {unknown}")

    modules: list[ModuleSpec] = []
    for module in stack.modules:
        overrides = env.overrides.get(module.module_id, {})
        undeclared = sorted(set(overrides) - set(module.inputs))
        if undeclared:
            raise ValueError(
                f"environment {environment_id!r} overrides undeclared inputs of {module.module_id!r}: {undeclared}"
            )
        inputs = {name: overrides.get(name, value) for name, value in module.inputs.items()}
        modules.append(module.model_copy(update={"inputs": inputs}, deep=True))
    return DesiredConfiguration(environment_id=environment_id, commit_ref=commit_ref, modules=modules)


class BranchRoutes:
    """The single branch -> environment lookup table.

    Unmapped branches route nowhere; a branch can never reach two environments.
    """

    def __init__(self, environments: Iterable[EnvironmentSpec]) -> None:
        self._routes: dict[str, EnvironmentSpec] = {}
        for env in environments:
            existing = self._routes.get(env.branch)
            if existing is not None:
                raise ValueError(
                    f"branch {env.branch!r} is mapped to both {existing.environment_id!r} and {env.environment_id!r}"
                )
            self._routes[env.branch] = env

    @classmethod
    def from_stack(cls, stack: StackDefinition) -> BranchRoutes:
        return cls(stack.environments)

    def route(self, event: PushEvent) -> EnvironmentSpec | None:
        env = self._routes.get(event.branch)
        if env is None:
            logger.debug("branch %s is not mapped to an environment; ignoring %s", event.branch, event.commit_ref)
        return env

    def environment(self, environment_id: str) -> EnvironmentSpec:
        for env in self._routes.values():
            if env.environment_id == environment_id:
                return env
        raise KeyError(f"unknown environment: {environment_id}")

    def table(self) -> dict[str, str]:
        return {branch: env.environment_id for branch, env in self._routes.items()}
