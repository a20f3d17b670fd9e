"""
Explicit task DAG.

Each weakly connected component is one task graph: exactly one root (no
predecessors) carrying the cron schedule, every other node firing on its
predecessors. Activation order is computed, never left to operators.
"""

import logging
from collections import OrderedDict
from graphlib import CycleError, TopologicalSorter
from typing import Dict, Iterable, Iterator, List, Set

from retail_dwh.common.exceptions import TaskGraphError
from .models import TaskConfig
from .triggers import CronTrigger

logger = logging.getLogger(__name__)


class TaskGraph:
    def __init__(self, tasks: Iterable[TaskConfig] = ()):
        self._tasks: Dict[str, TaskConfig] = OrderedDict()
        for task in tasks:
            self.add(task)

    def add(self, task: TaskConfig) -> 'TaskGraph':
        if task.name in self._tasks:
            raise TaskGraphError(f"Duplicate task {task.name}")
        self._tasks[task.name] = task
        return self

    def __getitem__(self, name: str) -> TaskConfig:
        return self._tasks[name]

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def __iter__(self) -> Iterator[TaskConfig]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def names(self) -> List[str]:
        return list(self._tasks)

    def dependents(self, name: str) -> List[str]:
        return [t.name for t in self._tasks.values() if name in t.predecessors]

    def roots(self) -> List[str]:
        return [t.name for t in self._tasks.values() if t.is_root]

    def components(self) -> List[Set[str]]:
        """Weakly connected components, in task declaration order."""
        neighbours: Dict[str, Set[str]] = {name: set() for name in self._tasks}
        for task in self._tasks.values():
            for pred in task.predecessors:
                if pred in neighbours:
                    neighbours[task.name].add(pred)
                    neighbours[pred].add(task.name)

        seen: Set[str] = set()
        components = []
        for name in self._tasks:
            if name in seen:
                continue
            stack, members = [name], set()
            while stack:
                node = stack.pop()
                if node in members:
                    continue
                members.add(node)
                stack.extend(neighbours[node] - members)
            seen |= members
            components.append(members)
        return components

    def component(self, root: str) -> Set[str]:
        for members in self.components():
            if root in members:
                return members
        raise TaskGraphError(f"Unknown task {root}")

    def validate(self) -> 'TaskGraph':
        for task in self._tasks.values():
            missing = [p for p in task.predecessors if p not in self._tasks]
            if missing:
                raise TaskGraphError(f"Task {task.name} has unknown predecessors {missing}")
            if task.name in task.predecessors:
                raise TaskGraphError(f"Task {task.name} depends on itself")

        try:
            TopologicalSorter({t.name: t.predecessors for t in self._tasks.values()}).prepare()
        except CycleError as e:
            raise TaskGraphError(f"Task graph has a cycle: {e.args[1]}")

        for members in self.components():
            roots = [name for name in members if self._tasks[name].is_root]
            if len(roots) != 1:
                raise TaskGraphError(f"Task graph {sorted(members)} must have exactly one root, found {sorted(roots)}")
            root = self._tasks[roots[0]]
            if not root.schedule:
                raise TaskGraphError(f"Root task {root.name} needs a schedule")
            CronTrigger.parse(root.schedule)
            scheduled_children = [n for n in members if n != root.name and self._tasks[n].schedule]
            if scheduled_children:
                raise TaskGraphError(f"Only the root may carry a schedule; also scheduled: {sorted(scheduled_children)}")

        logger.debug(f"Task graph valid: {len(self._tasks)} tasks, roots={self.roots()}")
        return self

    def activation_order(self, root: str) -> List[str]:
        """Topological order of the root's component (predecessors first)."""
        if root not in self._tasks or not self._tasks[root].is_root:
            raise TaskGraphError(f"{root} is not a root task")
        members = self.component(root)
        sorter = TopologicalSorter({name: self._tasks[name].predecessors for name in members})
        return list(sorter.static_order())

    def sorter(self, root: str) -> TopologicalSorter:
        members = self.component(root)
        sorter = TopologicalSorter({name: self._tasks[name].predecessors for name in members})
        sorter.prepare()
        return sorter
