from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from agent_substrate.config.models import AppConfig
from agent_substrate.errors import (
    DependencyUnresolved,
    FatalInvocationError,
    RetriesExhausted,
    SubstrateError,
)
from agent_substrate.invoker import CallOutcome, CallRequest, ResilientInvoker, build_connections, result_text
from agent_substrate.store import DurableStore, FileSystemStore
from agent_substrate.store.io import decode_json, encode_json
from agent_substrate.symbol_cache import CacheStats, SymbolCache, SymbolMatch, SymbolNode, compute_fingerprint, parse_symbols
from agent_substrate.tasks import Plan, Task, TaskGraph, TaskSpec

logger = logging.getLogger(__name__)

TaskExecutor = Callable[[Task, "AgentRuntime"], Awaitable[Any]]


def decode_symbol_result(result: Any) -> tuple[SymbolNode, ...]:
    """Turn a symbol-overview tool result into symbol nodes."""
    if isinstance(result, list):
        return parse_symbols(result)
    if isinstance(result, dict) and isinstance(result.get("symbols"), list):
        return parse_symbols(result["symbols"])
    text = result_text(result)
    if text is None:
        raise ValueError(f"Unrecognized symbol result: {type(result).__name__}")
    decoded = json.loads(text)
    if isinstance(decoded, dict):
        decoded = decoded.get("symbols", [])
    if not isinstance(decoded, list):
        raise ValueError("Symbol result must decode to a list of symbols.")
    return parse_symbols(decoded)


@dataclass(slots=True)
class IndexReport:
    indexed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    stats: Optional[CacheStats] = None


@dataclass(frozen=True, slots=True)
class StepOutcome:
    task: Optional[Task]
    stall: Optional[DependencyUnresolved] = None


class AgentRuntime:
    """
    Wires the symbol cache, the invoker and the task graph together.

    Symbols are served from the cache when the live fingerprint matches and are
    otherwise fetched from the configured endpoint and registered. Tasks run one
    at a time; a task may fan out a batch of tool calls through `run_step`.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        store: DurableStore,
        cache: SymbolCache,
        invoker: ResilientInvoker,
        tasks: Optional[TaskGraph] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.cache = cache
        self.invoker = invoker
        self.tasks = tasks if tasks is not None else TaskGraph()
        self._project_path = Path(config.app.project_path)

    @classmethod
    def from_config(cls, config: AppConfig) -> AgentRuntime:
        store = FileSystemStore(config.store.root_dir)
        cache = SymbolCache(
            store,
            key_prefix=config.cache.key_prefix,
            reload_batch_size=config.cache.reload_batch_size,
        )
        invoker = ResilientInvoker(build_connections(config.endpoints), config.invoker)
        return cls(config=config, store=store, cache=cache, invoker=invoker)

    async def start(self) -> None:
        await self.load_tasks()
        if self.config.cache.reload_in_background:
            self.cache.start_background_reload()

    async def stop(self) -> None:
        await self.cache.close()
        await self.invoker.close_all()

    # Symbols

    def source_path(self, file_key: str) -> Path:
        return self._project_path / file_key

    async def get_file_symbols(
        self,
        file_key: str,
        *,
        force_refresh: bool = False,
        depth: Optional[int] = None,
    ) -> tuple[SymbolNode, ...]:
        path = self.source_path(file_key)
        fingerprint = await asyncio.to_thread(compute_fingerprint, path)
        if not force_refresh:
            cached = await self.cache.lookup(file_key, fingerprint)
            if cached is not None:
                logger.info("Using cached symbols. key=%s", file_key)
                return cached

        settings = self.config.cache
        logger.info("Fetching symbols from endpoint. key=%s endpoint=%s", file_key, settings.symbols_endpoint)
        result = await self.invoker.call(
            settings.symbols_endpoint,
            settings.symbols_operation,
            {"relative_path": file_key, "depth": settings.symbols_depth if depth is None else depth},
        )
        symbols = decode_symbol_result(result)

        # Register only if the file did not change while the endpoint was reading it.
        current = await asyncio.to_thread(compute_fingerprint, path)
        if fingerprint is None or current != fingerprint:
            logger.warning("Fingerprint unavailable or changed during fetch, not caching. key=%s", file_key)
            return symbols
        await self.cache.register(file_key, fingerprint, symbols)
        return symbols

    async def index_files(self, file_keys: Iterable[str], *, depth: Optional[int] = None) -> IndexReport:
        report = IndexReport()
        keys = list(dict.fromkeys(file_keys))

        async def _index(file_key: str) -> None:
            if not await self.cache.needs_refresh(file_key, self.source_path(file_key)):
                report.skipped.append(file_key)
                return
            try:
                await self.get_file_symbols(file_key, force_refresh=True, depth=depth)
            except (SubstrateError, ValueError) as e:
                logger.warning("Failed to index file. key=%s error=%s", file_key, e)
                report.failed[file_key] = str(e)
                return
            report.indexed.append(file_key)

        results = await asyncio.gather(*(_index(key) for key in keys), return_exceptions=True)
        for file_key, result in zip(keys, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("Unexpected error while indexing file. key=%s", file_key, exc_info=result)
                report.failed[file_key] = str(result) or type(result).__name__
        await self.cache.wait_loaded()
        report.stats = self.cache.stats()
        logger.info(
            "Indexing finished. indexed=%d skipped=%d failed=%d",
            len(report.indexed),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def search_symbols(
        self,
        query: str,
        *,
        kind: Optional[str] = None,
        exact_match: bool = False,
    ) -> list[SymbolMatch]:
        await self.cache.wait_loaded()
        return list(self.cache.search(query, kind=kind, exact_match=exact_match))

    async def cache_stats(self) -> CacheStats:
        await self.cache.wait_loaded()
        return self.cache.stats()

    async def invalidate(self, file_keys: Iterable[str]) -> int:
        removed = 0
        for file_key in file_keys:
            if await self.cache.invalidate(file_key):
                removed += 1
        return removed

    async def clear_cache(self) -> None:
        await self.cache.clear()

    # Tasks

    async def load_tasks(self) -> None:
        data = await self.store.get(self.config.tasks.state_key)
        if data is None:
            return
        try:
            self.tasks = TaskGraph.from_dict(decode_json(data))
        except (ValueError, KeyError, TypeError):
            logger.exception("Failed to restore task state, starting empty. key=%s", self.config.tasks.state_key)
            self.tasks = TaskGraph()

    async def save_tasks(self) -> None:
        await self.store.put(self.config.tasks.state_key, encode_json(self.tasks.to_dict()))

    async def create_plan(self, description: str, tasks: Iterable[TaskSpec | str | Mapping[str, Any]]) -> Plan:
        plan = self.tasks.create_plan(description, tasks)
        await self.save_tasks()
        return plan

    async def add_task(self, spec: TaskSpec | str | Mapping[str, Any]) -> Task:
        task = self.tasks.add_task(spec)
        await self.save_tasks()
        return task

    async def reset_tasks(self) -> None:
        self.tasks.reset()
        await self.store.delete(self.config.tasks.state_key)

    async def run_step(self, requests: Sequence[CallRequest]) -> list[CallOutcome]:
        return await self.invoker.call_many(requests)

    async def run_next_task(self, executor: TaskExecutor) -> StepOutcome:
        """
        Run the next runnable task to a terminal state.

        Invocation failures mark the task failed and are not raised. Any other
        exception also fails the task and is then re-raised.
        """
        task = self.tasks.next_runnable()
        if task is None:
            return StepOutcome(task=None, stall=self.tasks.check_stall())

        self.tasks.start(task.id)
        await self.save_tasks()
        try:
            result = await executor(task, self)
        except (RetriesExhausted, FatalInvocationError) as e:
            logger.warning("Task failed on a tool call. task_id=%s error=%s", task.id, e)
            self._fail_if_running(task, str(e))
        except Exception as e:
            logger.warning("Task executor raised, marking task failed. task_id=%s error=%r", task.id, e)
            self._fail_if_running(task, str(e) or type(e).__name__)
            await self.save_tasks()
            raise
        else:
            self.tasks.complete(task.id, result)
        await self.save_tasks()
        return StepOutcome(task=task)

    def _fail_if_running(self, task: Task, error: str) -> None:
        # The executor may already have moved the task on.
        if task.status == "running":
            self.tasks.fail(task.id, error)

    async def run_until_blocked(self, executor: TaskExecutor) -> Optional[DependencyUnresolved]:
        """Run tasks until none is runnable; returns the stall report, or None when the plan finished."""
        while True:
            outcome = await self.run_next_task(executor)
            if outcome.task is None:
                return outcome.stall
