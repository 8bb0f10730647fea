from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from agent_substrate.errors import (
    DependencyCycle,
    DependencyUnresolved,
    InvalidDependency,
    InvalidTransition,
    UnknownTask,
)
from agent_substrate.symbol_cache.utils import format_rfc3339, utc_now
from agent_substrate.tasks.models import (
    Plan,
    Progress,
    Task,
    TaskSpec,
    TaskStatus,
    TaskSummary,
)

logger = logging.getLogger(__name__)

INITIAL_TASK_ID = 1

_ALLOWED_TRANSITIONS: Mapping[str, frozenset[str]] = {
    "pending": frozenset({"running", "skipped"}),
    "running": frozenset({"completed", "failed"}),
}


def find_cycle(edges: Mapping[int, Sequence[int]]) -> Optional[list[int]]:
    """Return one dependency cycle as a list of ids (first id repeated at the end), or None."""
    visiting, done = 1, 2
    state: Dict[int, int] = {}

    for root in edges:
        if state.get(root) == done:
            continue
        path: list[int] = [root]
        iterators = [iter(edges.get(root, ()))]
        state[root] = visiting
        while iterators:
            dep = next(iterators[-1], None)
            if dep is None:
                state[path.pop()] = done
                iterators.pop()
                continue
            dep_state = state.get(dep)
            if dep_state == visiting:
                return path[path.index(dep) :] + [dep]
            if dep_state == done:
                continue
            state[dep] = visiting
            path.append(dep)
            iterators.append(iter(edges.get(dep, ())))
    return None


def _percent(completed: int, total: int) -> int:
    if total == 0:
        return 0
    # Rounds half up: 12.5 -> 13.
    return (200 * completed + total) // (2 * total)


class TaskGraph:
    """
    FIFO task list with a dependency gate.

    Task order is the intended execution order; dependencies only hold a task
    back until everything it depends on has completed. They never reorder.
    """

    def __init__(self) -> None:
        self._tasks: list[Task] = []
        self._by_id: Dict[int, Task] = {}
        self._next_id = INITIAL_TASK_ID
        self._plan: Optional[Plan] = None

    @property
    def plan(self) -> Optional[Plan]:
        return self._plan

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: int) -> Task:
        task = self._by_id.get(task_id)
        if task is None:
            raise UnknownTask(task_id)
        return task

    def create_plan(
        self,
        description: str,
        initial_tasks: Iterable[TaskSpec | str | Mapping[str, Any]],
    ) -> Plan:
        """
        Replace the current plan and task list.

        A task may depend on tasks earlier in the same batch (ids are allocated
        in order starting at the current counter), never on later ones. Nothing
        changes if validation fails.
        """
        specs = [TaskSpec.coerce(item) for item in initial_tasks]
        first_id = self._next_id
        new_tasks = [
            Task(
                id=first_id + offset,
                name=spec.name,
                dependencies=tuple(dict.fromkeys(spec.dependencies)),
                priority=spec.priority,
                kind=spec.kind,
            )
            for offset, spec in enumerate(specs)
        ]
        by_id = {task.id: task for task in new_tasks}
        self._validate(new_tasks, by_id)

        now = utc_now()
        self._tasks = new_tasks
        self._by_id = by_id
        self._next_id = first_id + len(new_tasks)
        self._plan = Plan(
            id=f"plan_{now:%Y%m%d_%H%M%S_%f}",
            description=description,
            created_at=format_rfc3339(now),
        )
        logger.info("Task plan created. plan_id=%s tasks=%d", self._plan.id, len(new_tasks))
        return self._plan

    def add_task(self, spec: TaskSpec | str | Mapping[str, Any]) -> Task:
        spec = TaskSpec.coerce(spec)
        task = Task(
            id=self._next_id,
            name=spec.name,
            dependencies=tuple(dict.fromkeys(spec.dependencies)),
            priority=spec.priority,
            kind=spec.kind,
        )
        by_id = dict(self._by_id)
        by_id[task.id] = task
        self._validate([*self._tasks, task], by_id, check_only=[task])

        self._tasks.append(task)
        self._by_id = by_id
        self._next_id += 1
        if self._plan is not None and self._plan.status != "in_progress":
            self._plan.status = "in_progress"
        logger.debug("Task added. task_id=%s name=%s", task.id, task.name)
        return task

    def _validate(
        self,
        tasks: Sequence[Task],
        by_id: Mapping[int, Task],
        *,
        check_only: Optional[Sequence[Task]] = None,
    ) -> None:
        for task in check_only if check_only is not None else tasks:
            # Only ids assigned before this task may be referenced; its own id is caught as a cycle.
            missing = [dep for dep in task.dependencies if dep not in by_id or dep > task.id]
            if missing:
                raise InvalidDependency(
                    f"Task {task.id} ({task.name!r}) depends on unknown or later task ids: {missing}"
                )
        cycle = find_cycle({task.id: task.dependencies for task in tasks})
        if cycle is not None:
            raise DependencyCycle(cycle)

    def next_runnable(self) -> Optional[Task]:
        """First pending task, in insertion order, whose dependencies are all completed."""
        for task in self._tasks:
            if task.status != "pending":
                continue
            if all(self._by_id[dep].status == "completed" for dep in task.dependencies):
                return task
        return None

    def transition(
        self,
        task_id: int,
        new_status: TaskStatus,
        *,
        result: Any = None,
        error: Optional[str] = None,
    ) -> Task:
        task = self.get(task_id)
        if new_status not in _ALLOWED_TRANSITIONS.get(task.status, frozenset()):
            raise InvalidTransition(task_id, task.status, new_status)

        stamp = format_rfc3339(utc_now())
        task.status = new_status
        if new_status == "running":
            task.started_at = stamp
        else:
            task.completed_at = stamp
            if result is not None:
                task.result = result
            if error is not None:
                task.error = error
        logger.debug("Task transitioned. task_id=%s status=%s", task_id, new_status)
        return task

    def start(self, task_id: int) -> Task:
        return self.transition(task_id, "running")

    def complete(self, task_id: int, result: Any = None) -> Task:
        return self.transition(task_id, "completed", result=result)

    def fail(self, task_id: int, error: str) -> Task:
        return self.transition(task_id, "failed", error=error)

    def skip(self, task_id: int, reason: Optional[str] = None) -> Task:
        return self.transition(task_id, "skipped", result=reason)

    def current_task(self) -> Optional[Task]:
        for task in self._tasks:
            if task.status == "running":
                return task
        return None

    def tasks_with_status(self, *statuses: TaskStatus) -> list[Task]:
        return [task for task in self._tasks if task.status in statuses]

    def progress(self) -> Progress:
        counts = {status: 0 for status in ("pending", "running", "completed", "failed", "skipped")}
        for task in self._tasks:
            counts[task.status] += 1
        total = len(self._tasks)
        return Progress(
            total=total,
            completed=counts["completed"],
            failed=counts["failed"],
            running=counts["running"],
            pending=counts["pending"],
            skipped=counts["skipped"],
            percent_complete=_percent(counts["completed"], total),
        )

    def is_complete(self) -> bool:
        return all(task.is_terminal for task in self._tasks)

    def check_stall(self) -> Optional[DependencyUnresolved]:
        """
        Report a plan that can make no progress.

        Returns None while work remains runnable or a task is running, and marks the
        plan completed once every task is terminal. Dependents of failed or skipped
        tasks are left pending; they show up here.
        """
        if self.is_complete():
            if self._plan is not None and self._tasks:
                self._plan.status = "completed"
            return None
        if self.current_task() is not None or self.next_runnable() is not None:
            return None

        blocked = {
            task.id: [dep for dep in task.dependencies if self._by_id[dep].status != "completed"]
            for task in self._tasks
            if task.status == "pending"
        }
        if self._plan is not None:
            self._plan.status = "stalled"
        stall = DependencyUnresolved(blocked)
        logger.warning("Task plan stalled. %s", stall)
        return stall

    def reset(self) -> None:
        self._tasks = []
        self._by_id = {}
        self._next_id = INITIAL_TASK_ID
        self._plan = None
        logger.info("Task graph reset.")

    def summary(self) -> TaskSummary:
        return TaskSummary(plan=self._plan, tasks=self.tasks, progress=self.progress())

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_id": self._next_id,
            "plan": self._plan.to_dict() if self._plan else None,
            "tasks": [task.to_dict() for task in self._tasks],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TaskGraph:
        graph = cls()
        tasks = [Task.from_dict(item) for item in payload.get("tasks") or ()]
        by_id = {task.id: task for task in tasks}
        if len(by_id) != len(tasks):
            raise ValueError("Task snapshot contains duplicate task ids.")
        graph._validate(tasks, by_id)

        next_id = int(payload.get("next_id", INITIAL_TASK_ID))
        if tasks and next_id <= max(by_id):
            raise ValueError(f"Task snapshot id counter {next_id} would reuse an existing id.")
        plan_payload = payload.get("plan")

        graph._tasks = tasks
        graph._by_id = by_id
        graph._next_id = next_id
        graph._plan = Plan.from_dict(plan_payload) if plan_payload else None
        return graph
