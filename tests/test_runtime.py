import json
import tempfile
import unittest
from pathlib import Path
from typing import Any, Mapping

from agent_substrate.config.models import AppConfig, AppSettings, InvokerSettings
from agent_substrate.errors import DependencyUnresolved, InvalidTransition, RetriesExhausted, RetryableInvocationError
from agent_substrate.invoker import CallRequest, EndpointConnection, OperationInfo, ResilientInvoker
from agent_substrate.runtime import AgentRuntime, decode_symbol_result
from agent_substrate.store import InMemoryStore
from agent_substrate.symbol_cache import SymbolCache
from agent_substrate.tasks import TaskGraph

_SYMBOLS = [
    {"name": "Parser", "kind": 5, "children": [{"name": "parse", "kind": 6}]},
    {"name": "main", "kind": 12},
]


class SymbolServer:
    """In-process stand-in for a symbol endpoint; records every invocation."""

    def __init__(self) -> None:
        self.name = "serena"
        self.calls: list[tuple[str, dict]] = []

    async def connect(self) -> None:
        return None

    async def list_operations(self, timeout: float) -> list[OperationInfo]:
        return [OperationInfo(name="get_symbols_overview")]

    async def invoke(self, operation: str, args: Mapping[str, Any], timeout: float) -> Any:
        self.calls.append((operation, dict(args)))
        if operation == "get_symbols_overview":
            return {"content": [{"type": "text", "text": json.dumps(_SYMBOLS)}]}
        return {"operation": operation, "args": dict(args)}

    async def close(self) -> None:
        return None


async def _no_sleep(delay: float) -> None:
    return None


class RuntimeTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.project = Path(self._tmp.name)
        self.store = InMemoryStore()
        self.server = SymbolServer()
        self.runtime = self._build_runtime()

    async def asyncTearDown(self) -> None:
        await self.runtime.stop()
        self._tmp.cleanup()

    def _build_runtime(self) -> AgentRuntime:
        config = AppConfig(app=AppSettings(project_path=str(self.project)))
        connection = EndpointConnection("serena", lambda: self.server)
        return AgentRuntime(
            config=config,
            store=self.store,
            cache=SymbolCache(self.store),
            invoker=ResilientInvoker({"serena": connection}, InvokerSettings(), sleep=_no_sleep),
        )

    def _write(self, name: str, text: str) -> None:
        path = self.project / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


class FileSymbolsTests(RuntimeTestCase):
    async def test_second_request_is_served_from_cache(self) -> None:
        self._write("src/parser.py", "class Parser: ...\n")

        first = await self.runtime.get_file_symbols("src/parser.py")
        second = await self.runtime.get_file_symbols("src/parser.py")

        self.assertEqual(first, second)
        self.assertEqual([node.name for node in first], ["Parser", "main"])
        self.assertEqual(len(self.server.calls), 1)
        self.assertEqual(self.server.calls[0], ("get_symbols_overview", {"relative_path": "src/parser.py", "depth": 1}))

    async def test_edit_invalidates_cached_symbols(self) -> None:
        self._write("src/parser.py", "class Parser: ...\n")
        await self.runtime.get_file_symbols("src/parser.py")

        self._write("src/parser.py", "class Parser:\n    def parse(self): ...\n")
        await self.runtime.get_file_symbols("src/parser.py")

        self.assertEqual(len(self.server.calls), 2)

    async def test_unreadable_file_is_fetched_but_not_cached(self) -> None:
        symbols = await self.runtime.get_file_symbols("src/missing.py")

        self.assertEqual(len(symbols), 2)
        self.assertEqual(self.runtime.cache.stats().file_count, 0)

    async def test_index_files_skips_fresh_entries(self) -> None:
        self._write("a.py", "a = 1\n")
        self._write("b.py", "b = 2\n")

        report = await self.runtime.index_files(["a.py", "b.py"])
        self.assertEqual(sorted(report.indexed), ["a.py", "b.py"])
        self.assertEqual(report.stats.file_count, 2)
        self.assertEqual(report.stats.total_symbol_count, 6)

        report = await self.runtime.index_files(["a.py", "b.py"])
        self.assertEqual(sorted(report.skipped), ["a.py", "b.py"])
        self.assertEqual(len(self.server.calls), 2)

    async def test_search_and_invalidate(self) -> None:
        self._write("a.py", "a = 1\n")
        await self.runtime.index_files(["a.py"])

        matches = await self.runtime.search_symbols("parse", exact_match=True)
        self.assertEqual([m.name_path for m in matches], ["Parser/parse"])

        self.assertEqual(await self.runtime.invalidate(["a.py", "never-indexed.py"]), 1)
        self.assertEqual((await self.runtime.cache_stats()).file_count, 0)

    async def test_index_files_reports_missing_endpoint_per_file(self) -> None:
        self._write("a.py", "a = 1\n")
        self._write("b.py", "b = 2\n")
        runtime = AgentRuntime(
            config=AppConfig(app=AppSettings(project_path=str(self.project))),
            store=self.store,
            cache=SymbolCache(self.store),
            invoker=ResilientInvoker({}, InvokerSettings(), sleep=_no_sleep),
        )

        report = await runtime.index_files(["a.py", "b.py"])

        self.assertEqual(report.indexed, [])
        self.assertEqual(sorted(report.failed), ["a.py", "b.py"])
        self.assertEqual(report.failed["a.py"], "Endpoint is not configured: serena")
        self.assertEqual(report.stats.file_count, 0)

    def test_decode_symbol_result_shapes(self) -> None:
        self.assertEqual(len(decode_symbol_result(_SYMBOLS)), 2)
        self.assertEqual(len(decode_symbol_result({"symbols": _SYMBOLS})), 2)
        self.assertEqual(len(decode_symbol_result(json.dumps(_SYMBOLS))), 2)
        with self.assertRaises(ValueError):
            decode_symbol_result(42)


class TaskExecutionTests(RuntimeTestCase):
    async def test_executor_result_completes_task(self) -> None:
        await self.runtime.create_plan("demo", ["inspect", {"name": "edit", "dependencies": [1]}])

        async def executor(task, runtime):
            outcomes = await runtime.run_step(
                [
                    CallRequest("serena", "find_symbol", {"name_path": "Parser"}),
                    CallRequest("serena", "find_referencing_symbols", {"name_path": "Parser"}),
                ]
            )
            return [outcome.ok for outcome in outcomes]

        stall = await self.runtime.run_until_blocked(executor)

        self.assertIsNone(stall)
        self.assertEqual([t.status for t in self.runtime.tasks.tasks], ["completed", "completed"])
        self.assertEqual(self.runtime.tasks.get(1).result, [True, True])
        self.assertEqual(self.runtime.tasks.plan.status, "completed")

    async def test_exhausted_retries_fail_the_task_and_block_dependents(self) -> None:
        await self.runtime.create_plan("demo", ["inspect", {"name": "edit", "dependencies": [1]}])

        async def executor(task, runtime):
            cause = RetryableInvocationError("serena", "find_symbol", "connection reset")
            raise RetriesExhausted("serena", "find_symbol", 3, cause)

        stall = await self.runtime.run_until_blocked(executor)

        task = self.runtime.tasks.get(1)
        self.assertEqual(task.status, "failed")
        self.assertTrue(task.error.startswith("Tool 'find_symbol' on endpoint 'serena' failed after 3 attempts"))
        self.assertIsInstance(stall, DependencyUnresolved)
        self.assertEqual(stall.blocked, {2: (1,)})

    async def test_unexpected_errors_fail_the_task_and_propagate(self) -> None:
        await self.runtime.create_plan("demo", ["inspect"])

        async def executor(task, runtime):
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            await self.runtime.run_next_task(executor)

        self.assertEqual(self.runtime.tasks.get(1).status, "failed")
        self.assertEqual(self.runtime.tasks.get(1).error, "boom")

    async def test_invalid_transition_from_executor_is_surfaced(self) -> None:
        await self.runtime.create_plan("demo", ["inspect"])

        async def executor(task, runtime):
            runtime.tasks.complete(task.id)
            runtime.tasks.start(task.id)

        with self.assertRaises(InvalidTransition):
            await self.runtime.run_next_task(executor)

        self.assertEqual(self.runtime.tasks.get(1).status, "completed")

    async def test_task_state_survives_restart(self) -> None:
        await self.runtime.create_plan("demo", ["inspect", "edit"])

        async def executor(task, runtime):
            return "done"

        await self.runtime.run_next_task(executor)

        restarted = self._build_runtime()
        await restarted.load_tasks()
        self.assertEqual([t.status for t in restarted.tasks.tasks], ["completed", "pending"])
        self.assertEqual(restarted.tasks.add_task("verify").id, 3)

        await restarted.reset_tasks()
        self.assertIsNone(await self.store.get("tasks/state"))
        self.assertEqual(len(restarted.tasks), 0)

    async def test_corrupt_task_state_starts_empty(self) -> None:
        await self.store.put("tasks/state", b"[1, 2]")

        await self.runtime.load_tasks()

        self.assertIsInstance(self.runtime.tasks, TaskGraph)
        self.assertEqual(len(self.runtime.tasks), 0)


if __name__ == "__main__":
    unittest.main()
