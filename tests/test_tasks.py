import asyncio
import tempfile
import unittest
from pathlib import Path


class TestTaskQueue(unittest.TestCase):
    def test_fifo_take_next(self) -> None:
        from mterm.kernel.tasks import Task, TaskQueue

        q = TaskQueue()
        a = Task(command="echo a")
        b = Task(command="echo b")
        q.enqueue(a)
        snapshot = q.enqueue(b)
        self.assertEqual([t["command"] for t in snapshot], ["echo a", "echo b"])

        started = q.take_next()
        self.assertIs(started, a)
        self.assertEqual(a.status, "running")
        self.assertEqual([t["id"] for t in q.snapshot()], [b.id])
        self.assertEqual(len(q), 1)

    def test_execute_next_runs_head_and_reports_remaining(self) -> None:
        from mterm.kernel.tasks import Task, TaskQueue

        with tempfile.TemporaryDirectory() as td:
            q = TaskQueue(default_cwd=Path(td))
            a = Task(command="echo first")
            b = Task(command="echo second")
            q.enqueue(a)
            q.enqueue(b)

            result = asyncio.run(q.execute_next())
            assert result is not None
            self.assertTrue(result.ok)
            self.assertIs(result.task, a)
            self.assertEqual(a.status, "completed")
            self.assertEqual(result.stdout.strip(), "first")
            self.assertEqual([t["id"] for t in result.queue], [b.id])
            self.assertIsNone(q.running)

    def test_execute_uses_task_cwd(self) -> None:
        from mterm.kernel.tasks import Task, TaskQueue

        with tempfile.TemporaryDirectory() as td:
            Path(td, "marker.txt").write_text("x", encoding="utf-8")
            q = TaskQueue()
            q.enqueue(Task(command="ls", cwd=td))
            result = asyncio.run(q.execute_next())
            assert result is not None
            self.assertIn("marker.txt", result.stdout)

    def test_failure_is_reported_and_queue_continues(self) -> None:
        from mterm.kernel.tasks import Task, TaskQueue

        with tempfile.TemporaryDirectory() as td:
            q = TaskQueue(default_cwd=Path(td))
            bad = Task(command="echo oops >&2; exit 3")
            good = Task(command="echo fine")
            q.enqueue(bad)
            q.enqueue(good)

            async def run_both():
                return await q.execute_next(), await q.execute_next()

            first, second = asyncio.run(run_both())
            assert first is not None and second is not None
            self.assertFalse(first.ok)
            self.assertEqual(bad.status, "failed")
            self.assertIn("exit 3", first.error)
            self.assertIn("oops", first.error)
            self.assertEqual([t["id"] for t in first.queue], [good.id])

            self.assertTrue(second.ok)
            self.assertEqual(second.queue, [])

    def test_execute_on_empty_queue(self) -> None:
        from mterm.kernel.tasks import TaskQueue

        self.assertIsNone(asyncio.run(TaskQueue().execute_next()))

    def test_timeout_raises_task_error(self) -> None:
        from mterm.kernel.tasks import TaskExecutionError, run_shell_command

        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(TaskExecutionError):
                asyncio.run(run_shell_command("sleep 5", cwd=Path(td), timeout=0.2))

    def test_task_dict_shape(self) -> None:
        from mterm.kernel.tasks import Task

        d = Task(command="make", cwd="/tmp").to_dict()
        self.assertEqual(set(d), {"id", "command", "status", "createdAt", "cwd"})
        self.assertNotIn("cwd", Task(command="make").to_dict())


if __name__ == "__main__":
    unittest.main()
