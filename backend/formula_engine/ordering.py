"""
Execution order resolver.

Orders a query's compiled outputs so every output runs after the outputs it
references. Kahn's algorithm with ties broken by insertion order keeps the
result deterministic; cycles are reported as strongly connected components.
"""

import heapq
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

import structlog

from backend.exceptions import OutputCycleError
from backend.formula_engine.models import CompiledOutput

logger = structlog.get_logger(__name__)


def resolve_execution_order(outputs: Sequence[CompiledOutput]) -> List[CompiledOutput]:
    """
    Return the outputs in dependency order with dense 1-based execution_order.

    References to names that are not outputs of this query are ignored here;
    the evaluator reports them.

    Raises:
        OutputCycleError: Outputs reference each other in a cycle. No partial
            order is returned.
    """
    deps = _dependency_indices(outputs)
    order = _topological_order(deps, excluded=set())
    if len(order) < len(outputs):
        raise _cycle_error(outputs, *_find_cycles(deps, resolved=set(order)))
    return _assign_order(outputs, order)


def partition_execution_order(
    outputs: Sequence[CompiledOutput],
) -> Tuple[List[CompiledOutput], Optional[OutputCycleError]]:
    """
    Non-raising ordering.

    Orders everything outside cycles (edges into cycle members are ignored),
    then appends the cycle members. Returns the ordered outputs together with
    the cycle error, if there was one, so the caller can fail the cycle
    members without blocking their siblings.
    """
    deps = _dependency_indices(outputs)
    order = _topological_order(deps, excluded=set())
    if len(order) == len(outputs):
        return _assign_order(outputs, order), None

    cycles, blocked = _find_cycles(deps, resolved=set(order))
    error = _cycle_error(outputs, cycles, blocked)
    members = {i for component in cycles for i in component}
    order = _topological_order(deps, excluded=members) + sorted(members)
    return _assign_order(outputs, order), error


def _dependency_indices(outputs: Sequence[CompiledOutput]) -> List[List[int]]:
    index: Dict[str, int] = {}
    for i, output in enumerate(outputs):
        index.setdefault(output.name, i)

    deps: List[List[int]] = []
    for output in outputs:
        found: List[int] = []
        for name in output.dependencies.outputs:
            j = index.get(name)
            if j is not None and j not in found:
                found.append(j)
        deps.append(found)
    return deps


def _topological_order(deps: List[List[int]], excluded: Set[int]) -> List[int]:
    """Kahn's algorithm over the non-excluded outputs, smallest index first."""
    indegree = [0] * len(deps)
    dependents: List[List[int]] = [[] for _ in deps]
    for i, targets in enumerate(deps):
        if i in excluded:
            continue
        for j in targets:
            if j in excluded:
                continue
            indegree[i] += 1
            dependents[j].append(i)

    ready = [i for i in range(len(deps)) if i not in excluded and indegree[i] == 0]
    heapq.heapify(ready)
    order: List[int] = []
    while ready:
        i = heapq.heappop(ready)
        order.append(i)
        for k in dependents[i]:
            indegree[k] -= 1
            if indegree[k] == 0:
                heapq.heappush(ready, k)
    return order


def _strongly_connected(deps: List[List[int]], nodes: Sequence[int]) -> List[List[int]]:
    """Tarjan's algorithm restricted to the given nodes."""
    allowed = set(nodes)
    counter = [0]
    indices: Dict[int, int] = {}
    lowlink: Dict[int, int] = {}
    on_stack: Set[int] = set()
    stack: List[int] = []
    components: List[List[int]] = []

    def visit(v: int) -> None:
        indices[v] = lowlink[v] = counter[0]
        counter[0] += 1
        stack.append(v)
        on_stack.add(v)
        for w in deps[v]:
            if w not in allowed:
                continue
            if w not in indices:
                visit(w)
                lowlink[v] = min(lowlink[v], lowlink[w])
            elif w in on_stack:
                lowlink[v] = min(lowlink[v], indices[w])
        if lowlink[v] == indices[v]:
            component: List[int] = []
            while True:
                w = stack.pop()
                on_stack.discard(w)
                component.append(w)
                if w == v:
                    break
            components.append(sorted(component))

    for v in nodes:
        if v not in indices:
            visit(v)
    return components


def _find_cycles(deps: List[List[int]], resolved: Set[int]) -> Tuple[List[List[int]], List[int]]:
    """Split the unresolved outputs into cycles (SCCs, self-loops included) and outputs blocked behind them."""
    unresolved = [i for i in range(len(deps)) if i not in resolved]
    cycles = [
        component
        for component in _strongly_connected(deps, unresolved)
        if len(component) > 1 or component[0] in deps[component[0]]
    ]
    cycles.sort(key=lambda component: component[0])
    in_cycle = {i for component in cycles for i in component}
    return cycles, [i for i in unresolved if i not in in_cycle]


def _cycle_error(
    outputs: Sequence[CompiledOutput],
    cycles: List[List[int]],
    blocked: List[int],
) -> OutputCycleError:
    error = OutputCycleError(
        cycles=[[outputs[i].name for i in component] for component in cycles],
        blocked=[outputs[i].name for i in blocked],
    )
    logger.warning("Circular dependency between outputs", cycles=error.cycles, blocked=error.blocked)
    return error


def _assign_order(outputs: Sequence[CompiledOutput], order: List[int]) -> List[CompiledOutput]:
    return [replace(outputs[i], execution_order=rank) for rank, i in enumerate(order, start=1)]
