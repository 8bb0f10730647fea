"""Dependency-gated task scheduler."""

from agent_substrate.tasks.graph import TaskGraph, find_cycle
from agent_substrate.tasks.models import Plan, Progress, Task, TaskSpec, TaskSummary

__all__ = ["Plan", "Progress", "Task", "TaskGraph", "TaskSpec", "TaskSummary", "find_cycle"]
