"""
Stage dependency graph and deterministic topological ordering.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional, Set

from pipewright.errors import CycleError, DuplicateStageError, UnknownDependencyError
from pipewright.models import StageSpec


class StageGraph:
    """
    Directed acyclic graph of stages.

    Validation happens in the constructor so that a bad graph can never
    reach the executor.
    """

    def __init__(self, stages: Iterable[StageSpec]) -> None:
        self._stages: Dict[str, StageSpec] = {}
        self._index: Dict[str, int] = {}

        for stage in stages:
            if stage.name in self._stages:
                raise DuplicateStageError(stage.name)
            self._index[stage.name] = len(self._stages)
            self._stages[stage.name] = stage

        for stage in self._stages.values():
            for dep in stage.needs:
                if dep not in self._stages:
                    raise UnknownDependencyError(stage.name, dep)

        self._children: Dict[str, List[str]] = {name: [] for name in self._stages}
        for stage in self._stages.values():
            for dep in stage.needs:
                self._children[dep].append(stage.name)

        self._order = self._toposort()

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self):
        return iter(self._order)

    def __getitem__(self, name: str) -> StageSpec:
        return self._stages[name]

    @property
    def names(self) -> List[str]:
        """Stage names in declaration order."""
        return list(self._stages)

    def order(self) -> List[str]:
        """Topological order; ties broken by declaration order."""
        return list(self._order)

    def upstream(self, name: str) -> List[str]:
        """Direct dependencies of a stage."""
        return list(self._stages[name].needs)

    def downstream(self, name: str) -> Set[str]:
        """All stages that transitively depend on ``name``."""
        seen: Set[str] = set()
        stack = list(self._children[name])
        while stack:
            child = stack.pop()
            if child in seen:
                continue
            seen.add(child)
            stack.extend(self._children[child])
        return seen

    def roots(self) -> List[str]:
        """Stages without dependencies, in declaration order."""
        return [name for name, stage in self._stages.items() if not stage.needs]

    def ready(self, succeeded: Set[str], started: Set[str]) -> List[str]:
        """Stages not yet started whose dependencies have all succeeded, in order."""
        return [
            name
            for name in self._order
            if name not in started and all(dep in succeeded for dep in self._stages[name].needs)
        ]

    def _toposort(self) -> List[str]:
        indegree = {name: len(set(stage.needs)) for name, stage in self._stages.items()}
        heap = [self._index[name] for name, deg in indegree.items() if deg == 0]
        heapq.heapify(heap)
        names = list(self._stages)
        order: List[str] = []

        while heap:
            name = names[heapq.heappop(heap)]
            order.append(name)
            for child in dict.fromkeys(self._children[name]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(heap, self._index[child])

        if len(order) != len(self._stages):
            remaining = [name for name in names if name not in set(order)]
            raise CycleError(self._find_cycle(remaining))
        return order

    def _find_cycle(self, remaining: List[str]) -> List[str]:
        """Return one cycle among ``remaining`` as a closed path."""
        pending = set(remaining)
        visiting: List[str] = []
        on_path: Set[str] = set()
        done: Set[str] = set()

        def visit(name: str) -> Optional[List[str]]:
            visiting.append(name)
            on_path.add(name)
            for dep in self._stages[name].needs:
                if dep not in pending or dep in done:
                    continue
                if dep in on_path:
                    start = visiting.index(dep)
                    return visiting[start:] + [dep]
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            on_path.discard(name)
            done.add(name)
            return None

        for name in remaining:
            if name not in done:
                cycle = visit(name)
                if cycle:
                    return cycle
        return remaining
