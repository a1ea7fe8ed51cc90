"""Dependency graph checks for tasks.

``can_execute`` answers whether every dependency of a task is completed.
Dangling references count as unsatisfied; they are a data-quality problem the
consistency auditor reports, not an error here. Cycle detection also lives
here but is only surfaced by the auditor.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import NotFoundError
from .models import ExecutionCheck, Task, TaskCollection, TaskStatus

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def check_dependencies(task: Task, tasks_by_id: Mapping[str, Task]) -> ExecutionCheck:
    """Pure dependency check against an id -> task mapping."""
    blocked_by: List[str] = []
    seen: set[str] = set()
    for dep_id in task.dependencies:
        if dep_id in seen:
            continue
        seen.add(dep_id)
        dependency = tasks_by_id.get(dep_id)
        if dependency is None or dependency.status != TaskStatus.COMPLETED:
            blocked_by.append(dep_id)
    return ExecutionCheck(task_id=task.id, can_execute=not blocked_by, blocked_by=blocked_by)


def can_execute(collection: TaskCollection, task_id: str) -> ExecutionCheck:
    """Check whether ``task_id``'s dependencies are all completed."""
    task = collection.find(task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    return check_dependencies(task, collection.by_id())


def find_dangling(tasks: Sequence[Task]) -> List[Tuple[Task, str]]:
    """Return (task, missing_dependency_id) pairs for unresolved references."""
    known = {task.id for task in tasks if task.id}
    dangling: List[Tuple[Task, str]] = []
    for task in tasks:
        for dep_id in task.dependencies:
            if dep_id not in known:
                dangling.append((task, dep_id))
    return dangling


def dependents_of(tasks: Iterable[Task], task_id: str) -> List[Task]:
    """Tasks that list ``task_id`` as a dependency."""
    return [task for task in tasks if task.id != task_id and task_id in task.dependencies]


def find_cycles(tasks: Sequence[Task]) -> List[List[str]]:
    """Find dependency cycles with an iterative depth-first search.

    Each cycle is returned once as a list of ids starting at its smallest id,
    e.g. ``["a", "b"]`` for a <-> b. A task depending on itself is a cycle of
    length one. References to unknown ids are ignored.
    """
    graph: Dict[str, List[str]] = {}
    for task in tasks:
        if task.id and task.id not in graph:
            graph[task.id] = list(dict.fromkeys(task.dependencies))

    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    cycles: List[List[str]] = []
    seen_cycles: set[Tuple[str, ...]] = set()

    for start in graph:
        if color[start] != white:
            continue
        path: List[str] = [start]
        stack: List[Tuple[str, int]] = [(start, 0)]
        color[start] = grey
        while stack:
            node, next_index = stack[-1]
            edges = graph[node]
            if next_index >= len(edges):
                stack.pop()
                path.pop()
                color[node] = black
                continue
            stack[-1] = (node, next_index + 1)
            target = edges[next_index]
            if target not in graph:
                continue
            if color[target] == grey:
                cycle = path[path.index(target):]
                key = _canonical_cycle(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(list(key))
            elif color[target] == white:
                color[target] = grey
                path.append(target)
                stack.append((target, 0))
    return cycles


def _canonical_cycle(cycle: Sequence[str]) -> Tuple[str, ...]:
    pivot = cycle.index(min(cycle))
    return tuple(cycle[pivot:]) + tuple(cycle[:pivot])


def resolve_dependency_refs(
    refs: Iterable[str],
    name_to_id: Mapping[str, str],
    known_ids: Iterable[str],
) -> List[str]:
    """Resolve dependency references given as task names or task ids.

    Anything that looks like a UUID must name a known task; anything else is
    looked up by task name. Unresolvable references are dropped.
    """
    known = set(known_ids)
    resolved: List[str] = []
    for ref in refs:
        ref = (ref or "").strip()
        if not ref:
            continue
        target: Optional[str]
        if UUID_PATTERN.match(ref) or ref in known:
            target = ref if ref in known else None
        else:
            target = name_to_id.get(ref)
        if target and target not in resolved:
            resolved.append(target)
    return resolved
