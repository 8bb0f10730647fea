from __future__ import annotations

from typing import Iterable, Optional

from agent_substrate.errors import DependencyUnresolved
from agent_substrate.symbol_cache import CacheStats, SymbolMatch
from agent_substrate.tasks import Progress, Task, TaskSummary

_STATUS_MARKERS = {
    "pending": "[ ]",
    "running": "[>]",
    "completed": "[x]",
    "failed": "[!]",
    "skipped": "[-]",
}


def format_cache_stats(stats: CacheStats) -> str:
    lines = [
        f"Files: {stats.file_count}",
        f"Symbols: {stats.total_symbol_count}",
    ]
    if stats.per_kind:
        lines.append("By kind:")
        for kind, count in stats.per_kind.items():
            lines.append(f"  {kind}: {count}")
    return "\n".join(lines)


def format_symbol_matches(matches: Iterable[SymbolMatch]) -> str:
    lines = [f"{match.key}: {match.name_path} ({match.kind})" for match in matches]
    if not lines:
        return "No matching symbols."
    return "\n".join(lines)


def format_progress(progress: Progress) -> str:
    return (
        f"{progress.completed}/{progress.total} completed ({progress.percent_complete}%), "
        f"running={progress.running} pending={progress.pending} "
        f"failed={progress.failed} skipped={progress.skipped}"
    )


def format_task_line(task: Task) -> str:
    """
    Formats a task as one line: status marker, id, name, then dependencies and
    the error message when present.
    """
    marker = _STATUS_MARKERS.get(task.status, "[?]")
    line = f"{marker} {task.id}. {task.name}"
    if task.kind != "task":
        line += f" <{task.kind}>"
    if task.priority != "normal":
        line += f" priority={task.priority}"
    if task.dependencies:
        line += f" after={','.join(str(dep) for dep in task.dependencies)}"
    if task.error:
        line += f" error={task.error}"
    return line


def format_task_summary(summary: TaskSummary, stall: Optional[DependencyUnresolved] = None) -> str:
    if summary.plan is None and not summary.tasks:
        return "No active plan."
    lines: list[str] = []
    if summary.plan is not None:
        lines.append(f"Plan {summary.plan.id} [{summary.plan.status}]: {summary.plan.description}")
    lines.extend(format_task_line(task) for task in summary.tasks)
    lines.append(format_progress(summary.progress))
    if stall is not None:
        lines.append(f"Stalled: {stall}")
    return "\n".join(lines)
