from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Iterable

from .errors import CycleError, DuplicateModuleError, UnknownDependencyError
from .models import ModuleSpec

logger = logging.getLogger(__name__)


class ResourceGraph:
    """Dependency DAG over modules with a reproducible execution order.

    The order is computed once per cycle and shared by the planner and the
    executor. Independent modules keep their declaration order.
    """

    def __init__(self, modules: Iterable[ModuleSpec]) -> None:
        self.modules: dict[str, ModuleSpec] = {}
        for module in modules:
            if module.module_id in self.modules:
                raise DuplicateModuleError(module.module_id)
            self.modules[module.module_id] = module
        self._position = {module_id: idx for idx, module_id in enumerate(self.modules)}
        self._order: list[str] | None = None

    @classmethod
    def from_edges(cls, edges: dict[str, list[str]], *, kind: str = "recorded") -> ResourceGraph:
        """Build a graph from bare ``module -> dependencies`` edges (e.g. a snapshot)."""
        return cls(ModuleSpec(module_id=module_id, kind=kind, depends_on=deps) for module_id, deps in edges.items())

    def build(self) -> list[str]:
        """Return a topological order; every module follows all of its dependencies.

        Raises:
            UnknownDependencyError: A module names a dependency that is not declared.
            CycleError: The dependency relation is not acyclic.
        """
        if self._order is not None:
            return list(self._order)

        indegree = {module_id: 0 for module_id in self.modules}
        dependents: dict[str, list[str]] = defaultdict(list)
        for module in self.modules.values():
            for dep in module.depends_on:
                if dep not in self.modules:
                    raise UnknownDependencyError(module.module_id, dep)
                indegree[module.module_id] += 1
                dependents[dep].append(module.module_id)

        ready = [self._position[module_id] for module_id, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ids = list(self.modules)
        order: list[str] = []
        while ready:
            current = ids[heapq.heappop(ready)]
            order.append(current)
            for nxt in dependents[current]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(ready, self._position[nxt])

        if len(order) != len(self.modules):
            remaining = [module_id for module_id in ids if indegree[module_id] > 0]
            raise CycleError(self._find_cycle(remaining))

        logger.debug("resource graph order: %s", order)
        self._order = order
        return list(order)

    def _find_cycle(self, remaining: list[str]) -> list[str]:
        # Each leftover module still waits on at least one leftover dependency,
        # so following the first such edge must revisit a module.
        pending = set(remaining)
        path: list[str] = []
        seen_at: dict[str, int] = {}
        current = remaining[0]
        while current not in seen_at:
            seen_at[current] = len(path)
            path.append(current)
            current = next(dep for dep in self.modules[current].depends_on if dep in pending)
        cycle = path[seen_at[current]:]
        return cycle + [current]

    def teardown_order(self) -> list[str]:
        """Exact reverse of :meth:`build`."""
        return list(reversed(self.build()))

    def dependents(self, module_id: str) -> list[str]:
        if module_id not in self.modules:
            raise KeyError(f"unknown module: {module_id}")
        return [m.module_id for m in self.modules.values() if module_id in m.depends_on]
