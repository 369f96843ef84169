import threading
import time
import unittest

from live_capture.task_queue import TaskQueue


class TaskQueueTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = TaskQueue(max_concurrent=1)

    def tearDown(self) -> None:
        self.queue.shutdown(wait=True)

    def test_rejects_invalid_concurrency(self) -> None:
        with self.assertRaises(ValueError):
            TaskQueue(max_concurrent=0)

    def test_never_exceeds_max_concurrent(self) -> None:
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}
        observed: list[int] = []

        def task(value: int) -> int:
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            observed.append(self.queue.stats().running)
            time.sleep(0.01)
            with lock:
                state["running"] -= 1
            return value * 2

        futures = [self.queue.submit(task, (value,)) for value in range(3)]
        results = [future.result(timeout=5) for future in futures]

        self.assertEqual(results, [0, 2, 4])
        self.assertEqual(state["peak"], 1)
        self.assertEqual(len(observed), 3)
        self.assertLessEqual(max(observed), 1)
        self.assertTrue(self.queue.drain(timeout=5))
        stats = self.queue.stats()
        self.assertEqual((stats.total, stats.completed, stats.failed, stats.pending), (3, 3, 0, 0))

    def test_failed_task_is_retried_at_tail(self) -> None:
        release = threading.Event()
        order: list[str] = []
        calls = {"a": 0}

        def flaky() -> str:
            calls["a"] += 1
            order.append("a")
            if calls["a"] == 1:
                release.wait(5)
                raise RuntimeError("transient")
            return "a"

        def steady(name: str) -> str:
            order.append(name)
            return name

        first = self.queue.submit(flaky, max_retries=2)
        second = self.queue.submit(steady, ("b",))
        third = self.queue.submit(steady, ("c",))
        release.set()

        self.assertEqual(first.result(timeout=5), "a")
        self.assertEqual(second.result(timeout=5), "b")
        self.assertEqual(third.result(timeout=5), "c")
        self.assertTrue(self.queue.drain(timeout=5))
        self.assertEqual(order, ["a", "b", "c", "a"])
        self.assertEqual(self.queue.stats().failed, 0)

    def test_task_fails_after_max_retries(self) -> None:
        calls = {"count": 0}

        def broken() -> None:
            calls["count"] += 1
            raise ValueError("boom")

        future = self.queue.submit(broken, max_retries=2)

        with self.assertRaises(ValueError):
            future.result(timeout=5)
        self.assertTrue(self.queue.drain(timeout=5))
        self.assertEqual(calls["count"], 2)
        stats = self.queue.stats()
        self.assertEqual(stats.failed, 1)
        self.assertEqual(stats.completed, 0)

    def test_drain_times_out_while_busy(self) -> None:
        release = threading.Event()
        self.queue.submit(release.wait, (5,))

        self.assertFalse(self.queue.drain(timeout=0.05))
        release.set()
        self.assertTrue(self.queue.drain(timeout=5))

    def test_clear_cancels_queued_tasks(self) -> None:
        release = threading.Event()
        running = self.queue.submit(release.wait, (5,))
        queued = [self.queue.submit(str, (value,)) for value in range(2)]

        self.assertEqual(self.queue.clear(), 2)
        release.set()

        self.assertTrue(running.result(timeout=5))
        self.assertTrue(all(future.cancelled() for future in queued))
        self.assertTrue(self.queue.drain(timeout=5))

    def test_shutdown_during_failing_task_resolves_its_future(self) -> None:
        release = threading.Event()
        started = threading.Event()

        def flaky() -> None:
            started.set()
            release.wait(5)
            raise RuntimeError("transient")

        future = self.queue.submit(flaky, max_retries=3)
        queued = self.queue.submit(str, (1,))
        self.assertTrue(started.wait(5))

        self.queue.shutdown(wait=False)
        release.set()

        with self.assertRaises(RuntimeError):
            future.result(timeout=5)
        self.assertTrue(queued.cancelled())
        self.assertTrue(self.queue.drain(timeout=5))
        stats = self.queue.stats()
        self.assertEqual((stats.failed, stats.pending), (1, 0))

    def test_submit_after_shutdown_is_rejected(self) -> None:
        self.queue.shutdown(wait=True)

        with self.assertRaises(RuntimeError):
            self.queue.submit(str, (1,))
        self.assertEqual(self.queue.stats().total, 0)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
