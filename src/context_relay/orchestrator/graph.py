"""Deterministic decomposition of a task into budget-bounded subtasks."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath
from uuid import uuid4

from context_relay.orchestrator.errors import GraphError, GraphErrorKind
from context_relay.orchestrator.models import Budget, Subtask, Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskGraph:
    """Planned task with its subtask DAG."""

    task: Task
    subtasks: list[Subtask]


@dataclass(slots=True)
class _Chunk:
    resources: list[str]
    oversized: bool = False


class TaskGraphBuilder:
    """Groups resources by directory affinity and dependency components.

    Components that fit the budget are packed whole; larger ones are cut
    along a lexicographic topological order. Identical input always yields
    identical subtasks.
    """

    def build(  # noqa: PLR0913
        self,
        description: str,
        resources: Iterable[str],
        dependency_edges: Iterable[tuple[str, str]],
        budget: Budget,
        *,
        task_id: str | None = None,
        resource_costs: Mapping[str, int] | None = None,
    ) -> TaskGraph:
        unique = sorted(set(resources))
        if not unique:
            raise GraphError(GraphErrorKind.EMPTY)
        known = set(unique)
        edges = sorted({(before, after) for before, after in dependency_edges})
        unknown = sorted({resource for edge in edges for resource in edge if resource not in known})
        if unknown:
            raise GraphError(GraphErrorKind.UNKNOWN_RESOURCE, tuple(unknown))

        order = topological_order(unique, edges)
        position = {resource: index for index, resource in enumerate(order)}
        costs = resource_costs or {}
        oversized = {
            resource for resource in unique if costs.get(resource, 0) > budget.soft_threshold
        }

        chunks = _chunk_components(
            components=weak_components(unique, edges),
            position=position,
            oversized=oversized,
            limit=budget.max_resources_per_subtask,
        )

        task_id = task_id or str(uuid4())
        subtasks: list[Subtask] = []
        owner: dict[str, str] = {}
        for index, chunk in enumerate(chunks, start=1):
            subtask_id = f"{task_id}.s{index}"
            for resource in chunk.resources:
                owner[resource] = subtask_id
            subtasks.append(
                Subtask(
                    subtask_id=subtask_id,
                    task_id=task_id,
                    resources=tuple(chunk.resources),
                    oversized=chunk.oversized,
                ),
            )

        depends_on: dict[str, set[str]] = {subtask.subtask_id: set() for subtask in subtasks}
        for before, after in edges:
            if owner[before] != owner[after]:
                depends_on[owner[after]].add(owner[before])
        for subtask in subtasks:
            subtask.depends_on = tuple(sorted(depends_on[subtask.subtask_id]))

        task = Task(
            task_id=task_id,
            description=description,
            resources=tuple(unique),
            dependency_edges=tuple(edges),
            subtask_ids=[subtask.subtask_id for subtask in subtasks],
        )
        logger.debug(
            "Planned task %s: resources=%d subtasks=%d oversized=%d",
            task_id,
            len(unique),
            len(subtasks),
            len(oversized),
        )
        return TaskGraph(task=task, subtasks=subtasks)


def topological_order(resources: list[str], edges: list[tuple[str, str]]) -> list[str]:
    """Kahn's algorithm with lowest-id-first tie-break; raises on cycles."""

    successors: dict[str, list[str]] = {resource: [] for resource in resources}
    indegree = dict.fromkeys(resources, 0)
    for before, after in edges:
        successors[before].append(after)
        indegree[after] += 1

    heap = [resource for resource in resources if indegree[resource] == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        resource = heapq.heappop(heap)
        order.append(resource)
        for successor in successors[resource]:
            indegree[successor] -= 1
            if indegree[successor] == 0:
                heapq.heappush(heap, successor)

    if len(order) != len(resources):
        cyclic = tuple(sorted(resource for resource in resources if indegree[resource] > 0))
        raise GraphError(GraphErrorKind.CYCLIC, cyclic)
    return order


def weak_components(resources: list[str], edges: list[tuple[str, str]]) -> list[list[str]]:
    """Undirected connected components, each sorted, ordered by smallest member."""

    neighbours: dict[str, set[str]] = {resource: set() for resource in resources}
    for before, after in edges:
        neighbours[before].add(after)
        neighbours[after].add(before)

    seen: set[str] = set()
    components: list[list[str]] = []
    for start in sorted(resources):
        if start in seen:
            continue
        seen.add(start)
        stack = [start]
        members: list[str] = []
        while stack:
            current = stack.pop()
            members.append(current)
            for neighbour in neighbours[current]:
                if neighbour not in seen:
                    seen.add(neighbour)
                    stack.append(neighbour)
        components.append(sorted(members))
    return components


def affinity_key(resource: str) -> str:
    return str(PurePosixPath(resource).parent)


def _chunk_components(
    *,
    components: list[list[str]],
    position: dict[str, int],
    oversized: set[str],
    limit: int,
) -> list[_Chunk]:
    groups: dict[str, list[list[str]]] = {}
    for component in components:
        groups.setdefault(affinity_key(component[0]), []).append(component)

    chunks: list[_Chunk] = []
    for key in sorted(groups):
        open_chunk: list[str] = []
        for component in groups[key]:
            ordered = sorted(component, key=position.__getitem__)
            if len(component) <= limit and not oversized.intersection(component):
                if len(open_chunk) + len(component) > limit:
                    chunks.append(_Chunk(open_chunk))
                    open_chunk = []
                open_chunk.extend(ordered)
                continue

            running: list[str] = []
            for resource in ordered:
                if resource in oversized:
                    if running:
                        chunks.append(_Chunk(running))
                        running = []
                    chunks.append(_Chunk([resource], oversized=True))
                    continue
                running.append(resource)
                if len(running) == limit:
                    chunks.append(_Chunk(running))
                    running = []
            if running:
                chunks.append(_Chunk(running))
        if open_chunk:
            chunks.append(_Chunk(open_chunk))
    return chunks
