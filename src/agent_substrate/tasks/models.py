from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional, Sequence, get_args

TaskStatus = Literal["pending", "running", "completed", "failed", "skipped"]
TaskPriority = Literal["high", "normal", "low"]
TaskKind = Literal["task", "subtask", "intel"]
PlanStatus = Literal["in_progress", "completed", "stalled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "skipped"})


def _check_literal(value: str, literal: Any, label: str) -> str:
    allowed = get_args(literal)
    if value not in allowed:
        raise ValueError(f"Invalid task {label}: {value!r}. Expected one of {list(allowed)}")
    return value


@dataclass(frozen=True, slots=True)
class TaskSpec:
    name: str
    dependencies: tuple[int, ...] = ()
    priority: TaskPriority = "normal"
    kind: TaskKind = "task"

    @classmethod
    def coerce(cls, value: TaskSpec | str | Mapping[str, Any]) -> TaskSpec:
        """Accept a TaskSpec, a bare task name, or a mapping as produced by a planner."""
        if isinstance(value, TaskSpec):
            return value
        if isinstance(value, str):
            return cls(name=value)
        name = str(value.get("name") or "").strip()
        if not name:
            raise ValueError(f"Task is missing a name: {dict(value)!r}")
        return cls(
            name=name,
            dependencies=tuple(int(dep) for dep in value.get("dependencies") or ()),
            priority=_check_literal(str(value.get("priority") or "normal"), TaskPriority, "priority"),
            kind=_check_literal(str(value.get("type") or value.get("kind") or "task"), TaskKind, "kind"),
        )


@dataclass(slots=True)
class Task:
    id: int
    name: str
    dependencies: tuple[int, ...] = ()
    priority: TaskPriority = "normal"
    kind: TaskKind = "task"
    status: TaskStatus = "pending"
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "kind": self.kind,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Task:
        return cls(
            id=int(payload["id"]),
            name=str(payload["name"]),
            dependencies=tuple(int(dep) for dep in payload.get("dependencies") or ()),
            priority=_check_literal(payload.get("priority", "normal"), TaskPriority, "priority"),
            kind=_check_literal(payload.get("kind", "task"), TaskKind, "kind"),
            status=_check_literal(payload.get("status", "pending"), TaskStatus, "status"),
            result=payload.get("result"),
            error=payload.get("error"),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class Plan:
    id: str
    description: str
    created_at: str
    status: PlanStatus = "in_progress"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "created_at": self.created_at,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Plan:
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            created_at=str(payload.get("created_at", "")),
            status=_check_literal(payload.get("status", "in_progress"), PlanStatus, "plan status"),
        )


@dataclass(frozen=True, slots=True)
class Progress:
    total: int
    completed: int
    failed: int
    running: int
    pending: int
    skipped: int
    percent_complete: int


@dataclass(frozen=True, slots=True)
class TaskSummary:
    plan: Optional[Plan]
    tasks: Sequence[Task] = field(default_factory=tuple)
    progress: Optional[Progress] = None
