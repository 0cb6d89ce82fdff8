"""Dependency evaluation and dependency-graph validation.

:class:`DependencyResolver` answers "may this task start now?" from direct
dependencies only.  :class:`DependencyGraph` is the write-time check: it lays
the tasks out in an index arena and rejects dangling references and cycles
before a task set is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..errors import NotFound, ValidationError
from .model import Task, TaskSet, TaskStatus


@dataclass(frozen=True)
class ExecutionCheck:
    """Result of :meth:`DependencyResolver.can_execute`."""

    task_id: str
    allowed: bool
    blocked_by: list[str] = field(default_factory=list)
    already_completed: bool = False


class DependencyResolver:
    """Evaluate a task's direct dependencies against a task set."""

    def __init__(self, task_set: TaskSet) -> None:
        self._tasks = {t.id: t for t in task_set}

    def blocking(self, task: Task) -> list[str]:
        """IDs of dependencies that are not yet completed, in dependency order.

        A reference to a task that no longer exists blocks as well.
        """
        blocked: list[str] = []
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                blocked.append(dep_id)
        return blocked

    def can_execute(self, task_id: str) -> ExecutionCheck:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        if task.status == TaskStatus.COMPLETED:
            return ExecutionCheck(task_id=task_id, allowed=False, already_completed=True)
        blocked = self.blocking(task)
        return ExecutionCheck(task_id=task_id, allowed=not blocked, blocked_by=blocked)


class DependencyGraph:
    """Directed graph over tasks: node index -> indexes of its dependencies."""

    def __init__(self, tasks: Sequence[Task]) -> None:
        self.nodes: list[Task] = list(tasks)
        self.index: dict[str, int] = {t.id: i for i, t in enumerate(self.nodes)}
        self.edges: list[list[int]] = [[] for _ in self.nodes]
        self.dangling: list[tuple[str, str]] = []
        for i, task in enumerate(self.nodes):
            for dep_id in task.dependencies:
                j = self.index.get(dep_id)
                if j is None:
                    self.dangling.append((task.id, dep_id))
                else:
                    self.edges[i].append(j)

    def find_cycle(self) -> Optional[list[str]]:
        """Return the task IDs of one cycle (first node repeated last), or None."""
        white, grey, black = 0, 1, 2
        color = [white] * len(self.nodes)
        for root in range(len(self.nodes)):
            if color[root] != white:
                continue
            # Iterative DFS; each frame is (node, next edge position).
            stack: list[tuple[int, int]] = [(root, 0)]
            path: list[int] = [root]
            color[root] = grey
            while stack:
                node, pos = stack[-1]
                if pos < len(self.edges[node]):
                    stack[-1] = (node, pos + 1)
                    nxt = self.edges[node][pos]
                    if color[nxt] == grey:
                        start = path.index(nxt)
                        return [self.nodes[k].id for k in path[start:]] + [self.nodes[nxt].id]
                    if color[nxt] == white:
                        color[nxt] = grey
                        stack.append((nxt, 0))
                        path.append(nxt)
                else:
                    color[node] = black
                    stack.pop()
                    path.pop()
        return None

    def validate(self) -> None:
        """Raise :class:`ValidationError` on dangling references or a cycle."""
        if self.dangling:
            detail = ", ".join(f"{tid} -> {dep}" for tid, dep in self.dangling)
            raise ValidationError(f"Unknown dependency references: {detail}")
        cycle = self.find_cycle()
        if cycle:
            names = " -> ".join(self.nodes[self.index[tid]].name or tid for tid in cycle)
            raise ValidationError(f"Dependency cycle detected: {names}")

    def execution_batches(self, include_completed: bool = False) -> list[list[str]]:
        """Topological sort into batches of independent tasks (Kahn's algorithm).

        Completed tasks are treated as already satisfied unless
        *include_completed* is set.
        """
        live = [
            i for i, t in enumerate(self.nodes)
            if include_completed or t.status != TaskStatus.COMPLETED
        ]
        live_set = set(live)
        in_degree = {i: 0 for i in live}
        dependents: dict[int, list[int]] = {i: [] for i in live}
        for i in live:
            for j in self.edges[i]:
                if j in live_set:
                    in_degree[i] += 1
                    dependents[j].append(i)

        batches: list[list[str]] = []
        queue = [i for i in live if in_degree[i] == 0]
        while queue:
            batches.append([self.nodes[i].id for i in queue])
            next_queue: list[int] = []
            for i in queue:
                for k in dependents[i]:
                    in_degree[k] -= 1
                    if in_degree[k] == 0:
                        next_queue.append(k)
            queue = sorted(next_queue)
        return batches