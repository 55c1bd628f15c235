import asyncio
import unittest


class TestTimerScope(unittest.TestCase):
    def test_fires_plain_and_coroutine_callbacks(self) -> None:
        from mterm.util.timers import TimerScope

        seen = []

        async def main() -> None:
            scope = TimerScope(name="t")

            async def later() -> None:
                seen.append("coro")

            scope.call_later(0.01, lambda: seen.append("plain"))
            scope.call_later(0.02, later)
            await asyncio.sleep(0.1)
            self.assertEqual(scope.pending(), 0)
            scope.close()

        asyncio.run(main())
        self.assertEqual(seen, ["plain", "coro"])

    def test_close_cancels_timers_and_tasks(self) -> None:
        from mterm.util.timers import TimerScope

        seen = []

        async def main() -> None:
            scope = TimerScope(name="t")
            scope.call_later(0.05, lambda: seen.append("timer"))
            task = scope.spawn(asyncio.sleep(10))
            self.assertEqual(scope.pending(), 2)
            scope.close()
            self.assertTrue(scope.closed)
            self.assertIsNone(scope.call_later(0.0, lambda: seen.append("late")))
            await asyncio.sleep(0.1)
            assert task is not None
            self.assertTrue(task.cancelled())

        asyncio.run(main())
        self.assertEqual(seen, [])


if __name__ == "__main__":
    unittest.main()
