import unittest

from agent_substrate.errors import (
    DependencyCycle,
    DependencyUnresolved,
    InvalidDependency,
    InvalidTransition,
    UnknownTask,
)
from agent_substrate.tasks import TaskGraph, TaskSpec, find_cycle


def _chain() -> TaskGraph:
    graph = TaskGraph()
    graph.create_plan(
        "Refactor the parser",
        [
            "Read the grammar",
            {"name": "Rewrite the lexer", "dependencies": [1]},
            {"name": "Update the tests", "dependencies": [2]},
        ],
    )
    return graph


class TaskGatingTests(unittest.TestCase):
    def test_dependencies_gate_without_reordering(self) -> None:
        graph = _chain()

        self.assertEqual(graph.next_runnable().id, 1)
        graph.start(1)
        self.assertIsNone(graph.next_runnable())
        graph.complete(1, "grammar read")
        self.assertEqual(graph.next_runnable().id, 2)
        graph.start(2)
        graph.complete(2)
        self.assertEqual(graph.next_runnable().id, 3)

    def test_siblings_run_in_insertion_order(self) -> None:
        graph = TaskGraph()
        graph.create_plan("p", ["A", {"name": "B", "dependencies": [1]}, {"name": "C", "dependencies": [1]}])

        self.assertEqual(graph.next_runnable().name, "A")
        graph.start(1)
        graph.complete(1)
        self.assertEqual(graph.next_runnable().name, "B")

    def test_independent_task_runs_while_earlier_one_waits(self) -> None:
        graph = TaskGraph()
        graph.create_plan("p", ["first", {"name": "second", "dependencies": [1]}, "third"])
        graph.start(1)

        self.assertEqual(graph.next_runnable().id, 3)

    def test_failed_dependency_leaves_dependents_blocked(self) -> None:
        graph = _chain()
        graph.start(1)
        graph.fail(1, "grammar missing")

        self.assertIsNone(graph.next_runnable())
        stall = graph.check_stall()

        self.assertIsInstance(stall, DependencyUnresolved)
        self.assertEqual(stall.blocked, {2: (1,), 3: (2,)})
        self.assertEqual([t.id for t in graph.tasks_with_status("pending", "running")], [2, 3])
        self.assertEqual(graph.plan.status, "stalled")
        self.assertEqual(graph.get(2).status, "pending")

    def test_check_stall_is_quiet_while_work_remains(self) -> None:
        graph = _chain()
        self.assertIsNone(graph.check_stall())
        graph.start(1)
        self.assertIsNone(graph.check_stall())
        self.assertEqual(graph.plan.status, "in_progress")


class TaskTransitionTests(unittest.TestCase):
    def test_invalid_transitions_raise(self) -> None:
        graph = _chain()

        with self.assertRaises(InvalidTransition):
            graph.complete(1)
        graph.start(1)
        with self.assertRaises(InvalidTransition):
            graph.start(1)
        with self.assertRaises(InvalidTransition):
            graph.skip(1)
        graph.complete(1)
        with self.assertRaises(InvalidTransition):
            graph.start(1)

    def test_timestamps_and_results_are_recorded(self) -> None:
        graph = _chain()
        graph.start(1)
        task = graph.complete(1, {"files": 3})

        self.assertIsNotNone(task.started_at)
        self.assertIsNotNone(task.completed_at)
        self.assertEqual(task.result, {"files": 3})

        skipped = graph.skip(2, "not needed")
        self.assertEqual(skipped.result, "not needed")
        self.assertIsNone(skipped.started_at)

    def test_unknown_task_is_a_key_error(self) -> None:
        graph = _chain()
        with self.assertRaises(UnknownTask):
            graph.start(42)
        with self.assertRaises(KeyError):
            graph.get(42)


class TaskProgressTests(unittest.TestCase):
    def _five(self) -> TaskGraph:
        graph = TaskGraph()
        graph.create_plan("p", [f"task {i}" for i in range(1, 6)])
        return graph

    def test_percent_complete(self) -> None:
        graph = self._five()
        for task_id in (1, 2):
            graph.start(task_id)
            graph.complete(task_id)

        progress = graph.progress()
        self.assertEqual(progress.total, 5)
        self.assertEqual(progress.completed, 2)
        self.assertEqual(progress.pending, 3)
        self.assertEqual(progress.percent_complete, 40)

    def test_skipped_tasks_count_towards_completion(self) -> None:
        graph = self._five()
        for task_id in (1, 2, 3):
            graph.start(task_id)
            graph.complete(task_id)
        graph.skip(4)
        graph.skip(5)

        self.assertTrue(graph.is_complete())
        self.assertEqual(graph.progress().percent_complete, 60)
        self.assertIsNone(graph.check_stall())
        self.assertEqual(graph.plan.status, "completed")

    def test_percent_rounds_half_up(self) -> None:
        graph = TaskGraph()
        graph.create_plan("p", [f"t{i}" for i in range(8)])
        graph.start(1)
        graph.complete(1)

        self.assertEqual(graph.progress().percent_complete, 13)

    def test_empty_graph(self) -> None:
        graph = TaskGraph()
        self.assertEqual(graph.progress().percent_complete, 0)
        self.assertTrue(graph.is_complete())
        self.assertIsNone(graph.next_runnable())


class TaskCreationTests(unittest.TestCase):
    def test_cycle_is_rejected_and_plan_unchanged(self) -> None:
        graph = _chain()
        before = graph.to_dict()

        with self.assertRaises(DependencyCycle) as ctx:
            graph.create_plan("cyclic", ["a", {"name": "b", "dependencies": [4, 5]}])

        self.assertEqual(set(ctx.exception.cycle), {5})
        self.assertEqual(graph.to_dict(), before)

    def test_batch_task_cannot_depend_on_a_later_one(self) -> None:
        graph = _chain()
        before = graph.to_dict()

        with self.assertRaises(InvalidDependency):
            graph.create_plan("forward", [{"name": "a", "dependencies": [5]}, "b"])
        with self.assertRaises(InvalidDependency):
            graph.create_plan(
                "mutual",
                [{"name": "a", "dependencies": [5]}, {"name": "b", "dependencies": [4]}],
            )

        self.assertEqual(graph.to_dict(), before)
        graph.create_plan("backward", ["a", {"name": "b", "dependencies": [4]}])
        self.assertEqual(graph.get(5).dependencies, (4,))

    def test_unknown_dependency_is_rejected(self) -> None:
        graph = _chain()
        with self.assertRaises(InvalidDependency):
            graph.add_task({"name": "late", "dependencies": [99]})
        self.assertEqual(len(graph), 3)

    def test_self_dependency_is_a_cycle(self) -> None:
        graph = _chain()
        with self.assertRaises(DependencyCycle):
            graph.add_task(TaskSpec(name="loop", dependencies=(4,)))

    def test_ids_are_never_reused_until_reset(self) -> None:
        graph = _chain()
        graph.create_plan("second plan", ["x", {"name": "y", "dependencies": [4]}])

        self.assertEqual([task.id for task in graph.tasks], [4, 5])
        self.assertEqual(graph.add_task("z").id, 6)

        graph.reset()
        self.assertIsNone(graph.plan)
        graph.create_plan("fresh", ["a"])
        self.assertEqual(graph.tasks[0].id, 1)

    def test_add_task_reopens_finished_plan(self) -> None:
        graph = TaskGraph()
        graph.create_plan("p", ["only"])
        graph.start(1)
        graph.complete(1)
        graph.check_stall()
        self.assertEqual(graph.plan.status, "completed")

        graph.add_task({"name": "follow-up", "dependencies": [1], "type": "intel", "priority": "high"})

        self.assertEqual(graph.plan.status, "in_progress")
        self.assertEqual(graph.get(2).kind, "intel")
        self.assertEqual(graph.get(2).priority, "high")

    def test_task_spec_rejects_unknown_priority(self) -> None:
        with self.assertRaises(ValueError):
            TaskSpec.coerce({"name": "x", "priority": "urgent"})

    def test_find_cycle(self) -> None:
        self.assertIsNone(find_cycle({1: (), 2: (1,), 3: (1, 2)}))
        self.assertEqual(find_cycle({1: (3,), 2: (1,), 3: (2,)}), [1, 3, 2, 1])


class TaskSnapshotTests(unittest.TestCase):
    def test_round_trip(self) -> None:
        graph = _chain()
        graph.start(1)
        graph.complete(1, "ok")

        restored = TaskGraph.from_dict(graph.to_dict())

        self.assertEqual(restored.to_dict(), graph.to_dict())
        self.assertEqual(restored.next_runnable().id, 2)
        self.assertEqual(restored.add_task("next").id, 4)

    def test_rejects_counter_that_would_reuse_ids(self) -> None:
        payload = _chain().to_dict()
        payload["next_id"] = 2

        with self.assertRaises(ValueError):
            TaskGraph.from_dict(payload)


if __name__ == "__main__":
    unittest.main()
