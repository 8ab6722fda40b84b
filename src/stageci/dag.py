# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from .errors import CyclicDependencyError, UnknownDependencyError
from .model import Stage


@dataclass(frozen=True)
class StageGraph:
    """
    Dependency graph of a run.

    adj:   stage -> stages that need it (edges point downstream)
    indeg: stage -> number of stages it needs
    """
    adj: Dict[str, Set[str]]
    indeg: Dict[str, int]
    order: List[str]

    def dependents(self, name: str) -> Set[str]:
        return self.adj.get(name, set())


def build_graph(stages: Iterable[Stage]) -> StageGraph:
    """
    Build and validate the DAG.

    Raises UnknownDependencyError for a `needs` entry that names no stage and
    CyclicDependencyError when a topological sort cannot place every stage.
    """
    stages = list(stages)
    names = [s.name for s in stages]
    name_set = set(names)

    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for stage in stages:
        for dep in stage.needs:
            if dep not in name_set:
                raise UnknownDependencyError(stage.name, dep)
            # edge dep -> stage (dep must finish before stage)
            if stage.name not in adj[dep]:
                adj[dep].add(stage.name)
                indeg[stage.name] += 1

    order = _topo_order(adj, indeg)
    return StageGraph(adj=adj, indeg=indeg, order=order)


def _topo_order(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[str]:
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n, d in indeg.items() if d == 0)
    order: List[str] = []

    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(adj.get(node, set())):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(order) != len(indeg):
        stuck = [n for n, d in indeg.items() if d > 0]
        raise CyclicDependencyError(stuck)

    return order


def topo_levels(graph: StageGraph) -> List[List[str]]:
    """
    Group stages into levels: every stage of a level only needs stages of
    earlier levels, so a level could run fully in parallel.
    """
    indeg = dict(graph.indeg)
    level = sorted(n for n, d in indeg.items() if d == 0)
    levels: List[List[str]] = []

    while level:
        levels.append(level)
        nxt: List[str] = []
        for node in level:
            for child in graph.dependents(node):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        level = sorted(nxt)

    return levels
