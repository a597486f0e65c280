"""Capability interface for the external provisioning collaborator.

One implementation per module kind; the executor looks implementations up
by the module's declared ``kind`` and never interprets their outputs.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionRequest:
    module_id: str
    kind: str
    inputs: dict[str, Any]
    fingerprint: str | None
    prior_fingerprint: str | None
    declared_outputs: list[str] = field(default_factory=list)
    prior_outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisionResult:
    outputs: dict[str, Any] = field(default_factory=dict)


class Provisioner(Protocol):
    def apply(self, request: ProvisionRequest) -> ProvisionResult:
        """Create or update the resource; raise on failure."""
        ...

    def destroy(self, request: ProvisionRequest) -> None:
        """Remove the resource; raise on failure."""
        ...


class ProvisionerRegistry:
    """Maps module kinds to provisioner implementations."""

    def __init__(self, provisioners: Mapping[str, Provisioner] | None = None, *, default: Provisioner | None = None) -> None:
        self._by_kind: dict[str, Provisioner] = dict(provisioners or {})
        self.default = default

    def register(self, kind: str, provisioner: Provisioner) -> None:
        if kind in self._by_kind:
            raise ValueError(f"provisioner already registered for kind {kind!r}")
        self._by_kind[kind] = provisioner

    def for_kind(self, kind: str) -> Provisioner:
        provisioner = self._by_kind.get(kind, self.default)
        if provisioner is None:
            raise KeyError(f"no provisioner registered for kind {kind!r}")
        return provisioner

    def kinds(self) -> list[str]:
        return sorted(self._by_kind)


class RecordingProvisioner:
    """Provisioner that touches nothing and echoes deterministic outputs.

    Used for dry runs from the CLI and as the collaborator in tests.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def apply(self, request: ProvisionRequest) -> ProvisionResult:
        self.calls.append(("apply", request.module_id))
        suffix = (request.fingerprint or "")[:8]
        return ProvisionResult(outputs={name: f"{request.module_id}/{name}/{suffix}" for name in request.declared_outputs})

    def destroy(self, request: ProvisionRequest) -> None:
        self.calls.append(("destroy", request.module_id))


def load_registry(path: str) -> ProvisionerRegistry:
    """Import ``package.module:factory`` and call it to build a registry."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"provisioner factory must look like 'package.module:factory', got: {path!r}")
    module = importlib.import_module(module_name)
    factory: Callable[[], ProvisionerRegistry] = getattr(module, attribute)
    registry = factory()
    if not isinstance(registry, ProvisionerRegistry):
        raise TypeError(f"{path} returned {type(registry).__name__}, expected ProvisionerRegistry")
    logger.info("loaded provisioners for kinds %s from %s", registry.kinds(), path)
    return registry
