# resolver.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Mapping, Set, Tuple

from .errors import CyclicDependency, UnknownDependency
from .model import Formula

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


def resolve(target: str, formulas: Mapping[str, Formula]) -> List[str]:
    """
    Compute an install order for `target`.

    Depth-first from the target, following build and runtime dependencies
    in declaration order. Every dependency precedes its dependents and the
    target comes last. Pure: touches nothing but its inputs.

    Raises:
      UnknownDependency: target or a dependency is not in `formulas`
      CyclicDependency: a dependency cycle is reachable from target
    """
    if target not in formulas:
        raise UnknownDependency.for_name(target, target, list(formulas))

    marks: Dict[str, int] = {}
    path: List[str] = []
    order: List[str] = []

    def visit(name: str) -> None:
        mark = marks.get(name, _UNVISITED)
        if mark == _DONE:
            return
        if mark == _IN_PROGRESS:
            start = path.index(name)
            raise CyclicDependency.for_cycle(path[start:] + [name])

        marks[name] = _IN_PROGRESS
        path.append(name)
        for dep in formulas[name].dependency_names:
            if dep not in formulas:
                raise UnknownDependency.for_name(name, dep, list(formulas))
            visit(dep)
        path.pop()
        marks[name] = _DONE
        order.append(name)

    visit(target)
    return order


def build_graph(
    order: List[str], formulas: Mapping[str, Formula]
) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Adjacency over an already-resolved set.

    Returns (dependents, indeg):
      dependents[dep] = formulas that need dep (in resolution order)
      indeg[name]     = number of dependencies of name inside the set
    """
    included = set(order)
    dependents: Dict[str, List[str]] = {n: [] for n in order}
    indeg: Dict[str, int] = {n: 0 for n in order}

    for name in order:
        for dep in formulas[name].dependency_names:
            if dep not in included:
                raise UnknownDependency.for_name(name, dep, list(formulas))
            dependents[dep].append(name)
            indeg[name] += 1

    return dependents, indeg


def stages(order: List[str], formulas: Mapping[str, Formula]) -> List[List[str]]:
    """
    Group a resolved order into topological "levels".
    Members of one level are independent and may be built in parallel.
    """
    dependents, indeg = build_graph(order, formulas)
    indeg = dict(indeg)
    position = {n: i for i, n in enumerate(order)}
    current = [n for n in order if indeg[n] == 0]

    levels: List[List[str]] = []
    while current:
        levels.append(current)
        nxt: List[str] = []
        for node in current:
            for child in dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        current = sorted(nxt, key=position.__getitem__)

    return levels


def dependents_of(name: str, order: List[str], formulas: Mapping[str, Formula]) -> List[str]:
    """Transitive dependents of `name` inside the resolved set, in resolution order."""
    dependents, _ = build_graph(order, formulas)
    seen: Set[str] = set()
    q = deque(dependents.get(name, []))
    while q:
        n = q.popleft()
        if n in seen:
            continue
        seen.add(n)
        q.extend(dependents[n])
    return [n for n in order if n in seen]
