"""
Task dependency resolution.

`depends_on` edges only ever connect tasks of the same staging. The graph
is rebuilt from the document by id lookups each time it is needed, and a
proposed edge set is checked for cycles before anything is written.
"""

import logging
from typing import Optional

from planstate.errors import (
    CircularDependencyError,
    DependencyScopeError,
    TaskNotFoundError,
    ValidationError,
)
from planstate.state.models import StateDocument

logger = logging.getLogger(__name__)

Graph = dict[str, list[str]]


def build_graph(document: StateDocument, staging_id: str) -> Graph:
    """Adjacency view task_id -> depends_on ids for one staging."""
    staging = document.require_staging(staging_id)
    graph: Graph = {}
    for task_id in staging.tasks:
        task = document.tasks.get(task_id)
        if task is not None:
            graph[task_id] = list(task.depends_on)
    return graph


def find_cycle(graph: Graph, origin: str, proposed: list[str]) -> Optional[list[str]]:
    """Look for a cycle once `origin`'s edges are replaced by `proposed`.

    Iterative depth-first walk from `origin`. Returns the chain of ids ending
    in the revisited node (e.g. ``[x, y, x]``), or None when acyclic.
    """
    edges = dict(graph)
    edges[origin] = list(proposed)

    path: list[str] = [origin]
    on_path = {origin}
    finished: set[str] = set()
    stack = [iter(edges.get(origin, []))]

    while stack:
        node = next(stack[-1], None)
        if node is None:
            stack.pop()
            done = path.pop()
            on_path.discard(done)
            finished.add(done)
            continue
        if node in on_path:
            return path + [node]
        if node in finished:
            continue
        path.append(node)
        on_path.add(node)
        stack.append(iter(edges.get(node, [])))

    return None


def check_acyclic(graph: Graph) -> None:
    """Raise CircularDependencyError if any cycle exists in `graph`."""
    for task_id in graph:
        chain = find_cycle(graph, task_id, graph[task_id])
        if chain:
            raise CircularDependencyError(task_id, chain)


def validate_dependencies(
    document: StateDocument,
    task_id: str,
    staging_id: str,
    depends_on: list[str],
) -> list[str]:
    """Check a proposed depends_on list for `task_id` and return it de-duplicated.

    `task_id` need not exist yet (new task). Nothing is mutated.

    Raises:
        CircularDependencyError: self-dependency or cycle
        TaskNotFoundError: unknown dependency id
        DependencyScopeError: dependency in another staging
    """
    deduped: list[str] = []
    for dep_id in depends_on:
        if dep_id == task_id:
            raise CircularDependencyError(task_id, [task_id, task_id])
        dep = document.tasks.get(dep_id)
        if dep is None:
            raise TaskNotFoundError(dep_id)
        if dep.staging_id != staging_id:
            raise DependencyScopeError(task_id, dep_id, staging_id, dep.staging_id)
        if dep_id not in deduped:
            deduped.append(dep_id)

    chain = find_cycle(build_graph(document, staging_id), task_id, deduped)
    if chain:
        logger.debug(f"[STATE] Rejected dependencies for {task_id}: cycle {' -> '.join(chain)}")
        raise CircularDependencyError(task_id, chain)
    return deduped


def resolve_index_dependencies(task_ids: list[str], indices: list[int], position: int) -> list[str]:
    """Map creation-time task indices within a staging to task ids.

    Raises:
        ValidationError: index out of range or pointing at the task itself
    """
    resolved: list[str] = []
    for index in indices:
        if index < 0 or index >= len(task_ids):
            raise ValidationError(
                f"depends_on_index {index} out of range for staging with {len(task_ids)} tasks",
                field=f"tasks.{position}.depends_on_index",
            )
        if index == position:
            raise ValidationError(
                f"Task at index {position} cannot depend on itself",
                field=f"tasks.{position}.depends_on_index",
            )
        task_id = task_ids[index]
        if task_id not in resolved:
            resolved.append(task_id)
    return resolved
